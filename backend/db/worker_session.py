"""Worker-safe database sessions for Celery tasks.

Each Celery task runs its coroutine on a fresh event loop, and async
database connections cannot move between loops, so every task gets its
own short-lived engine.
"""

from contextlib import asynccontextmanager

from db.database import close_db, create_db_engine, create_session_factory


@asynccontextmanager
async def worker_session_factory():
    """Yield a session factory bound to an engine that lives for one task.

    Usage:
        async with worker_session_factory() as session_factory:
            async with session_factory() as session:
                ...
    """
    engine = create_db_engine()
    try:
        yield create_session_factory(engine)
    finally:
        await close_db(engine)
