"""Composition root.

Builds every long-lived object once and wires them together. The API
process keeps the resulting ``Runtime`` on ``app.state``; Celery tasks
build just the runner they need with ``build_runner``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from cryptography.fernet import Fernet
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from app.config import Settings, get_settings
from capabilities.registry import CapabilityRegistry, build_default_registry
from core.security import CredentialVault
from db.database import create_db_engine, create_session_factory, init_db, close_db
from db.models.job_log import JobLog
from services.credential_service import CredentialResolver
from services.storage_service import EphemeralStorage
from services.usage_service import UsageTracker
from triggers.dispatcher import TriggerDispatcher
from triggers.manager import TriggerManager
from triggers.scheduler import ScheduledJob, Scheduler
from worker.pool import WorkerPool
from worker.queue import ExecutionQueue, QueueBackend
from worker.runner import WorkflowRunner
from workflow.engine import WorkflowEngine
from workflow.resilience import get_resilience_layer
from workflow.validation import WorkflowValidator

logger = logging.getLogger(__name__)

_dev_key: Optional[str] = None


@dataclass
class Runtime:
    """Everything the API needs, owned by the application lifespan."""

    settings: Settings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker
    registry: CapabilityRegistry
    validator: WorkflowValidator
    engine: WorkflowEngine
    vault: CredentialVault
    storage: EphemeralStorage
    usage: UsageTracker
    runner: WorkflowRunner
    queue: ExecutionQueue
    scheduler: Scheduler
    dispatcher: TriggerDispatcher
    triggers: TriggerManager

    async def start(self) -> None:
        await init_db(self.db_engine)
        await self.triggers.start()

    async def close(self) -> None:
        await self.triggers.stop()
        await self.queue.close(self.settings.QUEUE_SHUTDOWN_GRACE_SECONDS)
        await close_db(self.db_engine)


def build_engine(usage: Optional[UsageTracker] = None) -> WorkflowEngine:
    registry = build_default_registry()
    resilience = get_resilience_layer()
    if usage is not None:
        resilience.usage = usage
    return WorkflowEngine(registry, resilience=resilience, validator=WorkflowValidator(registry))


def build_vault(settings: Optional[Settings] = None) -> CredentialVault:
    """Credential vault keyed from ``ENCRYPTION_KEY``.

    Outside production an unset key falls back to a random per-process
    key, so credentials stored in that process cannot be read after a
    restart.
    """
    global _dev_key
    settings = settings or get_settings()
    if settings.ENCRYPTION_KEY:
        return CredentialVault(settings.ENCRYPTION_KEY)
    settings.validate_secrets()
    if _dev_key is None:
        _dev_key = Fernet.generate_key().decode()
        logger.warning("ENCRYPTION_KEY is not set; using a temporary key for this process")
    return CredentialVault(_dev_key)


def build_runner(
    session_factory: async_sessionmaker,
    settings: Optional[Settings] = None,
    engine: Optional[WorkflowEngine] = None,
) -> WorkflowRunner:
    settings = settings or get_settings()
    return WorkflowRunner(
        session_factory,
        engine or build_engine(UsageTracker(session_factory)),
        CredentialResolver(session_factory, build_vault(settings)),
        storage=EphemeralStorage(session_factory),
    )


def build_queue_backend(
    settings: Settings,
    runner: WorkflowRunner,
    session_factory: async_sessionmaker,
) -> Optional[QueueBackend]:
    """Backend named by ``QUEUE_BACKEND``; None means direct execution."""
    backend = settings.QUEUE_BACKEND.lower()
    if backend == "local":
        return WorkerPool.from_settings(runner, settings)
    if backend == "celery":
        from worker.celery_backend import CeleryQueueBackend

        return CeleryQueueBackend(session_factory, settings)
    if backend != "direct":
        logger.warning(f"Unknown QUEUE_BACKEND '{settings.QUEUE_BACKEND}'; running jobs directly")
    return None


def job_log_recorder(session_factory: async_sessionmaker):
    """Scheduler ``on_run`` callback that writes one JobLog row per run."""

    async def record(job: ScheduledJob, status: str, message: str, duration_ms: int) -> None:
        async with session_factory() as session:
            session.add(JobLog(
                job_name=job.name,
                status=status,
                message=message,
                details={"cron": job.cron, "run_count": job.run_count},
                duration_ms=duration_ms,
            ))
            await session.commit()

    return record


def build_runtime(
    settings: Optional[Settings] = None,
    db_engine: Optional[AsyncEngine] = None,
) -> Runtime:
    settings = settings or get_settings()
    db_engine = db_engine or create_db_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(db_engine)

    usage = UsageTracker(session_factory)
    engine = build_engine(usage)
    vault = build_vault(settings)
    storage = EphemeralStorage(session_factory)
    runner = WorkflowRunner(
        session_factory, engine, CredentialResolver(session_factory, vault), storage=storage
    )
    queue = ExecutionQueue(build_queue_backend(settings, runner, session_factory), runner)
    scheduler = Scheduler(on_run=job_log_recorder(session_factory))
    dispatcher = TriggerDispatcher(queue, session_factory, engine.validator, settings)
    triggers = TriggerManager(scheduler, dispatcher, session_factory, storage=storage, settings=settings)

    logger.info(f"Runtime built: queue={queue.mode}, concurrency={settings.queue_concurrency}")
    return Runtime(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        registry=engine.registry,
        validator=engine.validator,
        engine=engine,
        vault=vault,
        storage=storage,
        usage=usage,
        runner=runner,
        queue=queue,
        scheduler=scheduler,
        dispatcher=dispatcher,
        triggers=triggers,
    )
