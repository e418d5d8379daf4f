"""Workflow runner — one execution attempt for one queued job.

Loads the stored workflow, resolves its credentials, builds a fresh
ExecutionContext, runs the engine and records a WorkflowRun row. A
failed attempt raises, so the queue backend can decide whether to retry.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import RunStatus
from core.exceptions import AutomationError
from db.models.workflow_run import WorkflowRun
from services.credential_service import CredentialResolver
from services.workflow_service import WorkflowService
from worker.queue import QueueJob
from workflow.engine import ExecutionContext, ExecutionResult, WorkflowEngine
from workflow.validation import credential_keys_for

logger = logging.getLogger(__name__)


class WorkflowRunner:
    """Runs queued jobs through the workflow engine."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        engine: WorkflowEngine,
        credentials: CredentialResolver,
        storage: Any = None,
    ):
        self._session_factory = session_factory
        self.engine = engine
        self.credentials = credentials
        self.storage = storage

    async def __call__(self, job: QueueJob, attempt: int) -> ExecutionResult:
        return await self.run(job, attempt)

    async def run(self, job: QueueJob, attempt: int = 1) -> ExecutionResult:
        """Execute one attempt.

        Raises:
            StepExecutionError: a step failed (carries the step id and the result)
            ValidationError: the stored workflow no longer validates
            CredentialNotFoundError: a required credential is missing
        """
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            async with self._session_factory() as session:
                definition = await WorkflowService(session, self.engine.validator).get_definition(
                    job.workflow_id
                )

            report = self.engine.validator.prepare(definition)
            user_id = job.user_id or definition.user_id
            organization_id = job.organization_id or definition.organization_id
            credentials = await self.credentials.resolve(
                user_id, organization_id, credential_keys_for(definition, report)
            )

            context = ExecutionContext(
                workflow_id=definition.id,
                workflow_name=definition.name,
                user_id=user_id,
                organization_id=organization_id,
                trigger_type=job.trigger_type.value,
                trigger_payload=job.payload,
                credentials=credentials,
                attempt=attempt,
                job_id=job.job_id,
                storage=self.storage,
            )
            result = await self.engine.execute(definition, context)
        except AutomationError as e:
            await self._record(job, attempt, started_at, started, error=e)
            raise

        await self._record(job, attempt, started_at, started, result=result)
        if not result.success:
            raise result.to_exception()
        return result

    async def _record(
        self,
        job: QueueJob,
        attempt: int,
        started_at: datetime,
        started: float,
        result: Optional[ExecutionResult] = None,
        error: Optional[Exception] = None,
    ) -> None:
        run = WorkflowRun(
            workflow_id=job.workflow_id,
            user_id=job.user_id,
            job_id=job.job_id,
            attempt=attempt,
            trigger_type=job.trigger_type.value,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if result is not None:
            run.status = RunStatus.SUCCESS.value if result.success else RunStatus.ERROR.value
            run.step_results = [s.to_dict() for s in result.steps]
            run.output = result.return_value
            run.error = result.error
            run.failed_step_id = result.failed_step_id
        else:
            run.status = RunStatus.ERROR.value
            run.error = str(error)
            run.step_results = []

        try:
            async with self._session_factory() as session:
                session.add(run)
                await session.commit()
        except Exception as e:
            # The attempt's outcome stands even if its history row is lost
            logger.error(f"Could not record run of workflow {job.workflow_id}: {e}")

        if run.status == RunStatus.ERROR.value:
            logger.warning(
                f"Workflow {job.workflow_id} attempt {attempt} failed"
                f"{f' at step {run.failed_step_id}' if run.failed_step_id else ''}: {run.error}"
            )
