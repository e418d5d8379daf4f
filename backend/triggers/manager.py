"""Trigger Manager — keeps the scheduler in step with stored workflows.

At startup every enabled cron workflow gets a ``workflow:<id>`` job and
every enabled inbound-email workflow an ``inbox:<id>`` polling job. The
manager also owns the maintenance registrations (expired storage
cleanup). After a workflow is imported, enabled or disabled, ``sync``
re-reads it and adds, replaces or removes its jobs.

Webhook, chat and bot triggers need no registration; they arrive over
HTTP and go straight to the dispatcher.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from core.constants import TriggerType
from core.exceptions import AutomationError, NotFoundError
from services.workflow_service import WorkflowService, to_definition
from triggers.dispatcher import TriggerDispatcher
from triggers.email_poller import InboxPoller
from triggers.scheduler import Scheduler
from workflow.definition import WorkflowDefinition

logger = logging.getLogger(__name__)

STORAGE_CLEANUP_JOB = "maintenance:storage-cleanup"


def cron_job_name(workflow_id: str) -> str:
    return f"workflow:{workflow_id}"


def inbox_job_name(workflow_id: str) -> str:
    return f"inbox:{workflow_id}"


class TriggerManager:
    """Registers scheduled triggers for workflows."""

    def __init__(
        self,
        scheduler: Scheduler,
        dispatcher: TriggerDispatcher,
        session_factory: async_sessionmaker,
        storage=None,
        poller: Optional[InboxPoller] = None,
        settings: Optional[Settings] = None,
    ):
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self._session_factory = session_factory
        self.storage = storage
        self.settings = settings or get_settings()
        self.poller = poller or InboxPoller(self.settings)

    async def start(self) -> int:
        """Register all enabled scheduled workflows and start the scheduler.

        Returns:
            Number of workflows activated
        """
        async with self._session_factory() as session:
            service = WorkflowService(session, self.dispatcher.validator)
            workflows = await service.list_by_trigger(TriggerType.CRON)
            workflows += await service.list_by_trigger(TriggerType.INBOUND_EMAIL)
            definitions = [to_definition(w) for w in workflows]

        activated = 0
        for definition in definitions:
            try:
                if self.activate(definition):
                    activated += 1
            except AutomationError as e:
                # One broken workflow must not keep the others from starting
                logger.error(f"Could not activate triggers of workflow {definition.id}: {e.message}")

        if self.storage is not None and not self.scheduler.has_job(STORAGE_CLEANUP_JOB):
            self.scheduler.register(
                STORAGE_CLEANUP_JOB,
                self.settings.STORAGE_CLEANUP_CRON,
                self.storage.cleanup_expired,
                description="Delete expired ephemeral storage records",
            )

        if not self.scheduler.is_running:
            self.scheduler.start()
        logger.info(f"Trigger manager started: {activated} scheduled workflows")
        return activated

    async def stop(self) -> None:
        await self.scheduler.stop()

    def activate(self, definition: WorkflowDefinition) -> bool:
        """Register (or replace) the scheduled jobs for one workflow.

        Returns:
            True if a job is now scheduled for the workflow

        Raises:
            ValidationError: the trigger's cron expression is invalid
        """
        if not definition.is_enabled:
            self.deactivate(definition.id)
            return False

        trigger = definition.trigger
        workflow_id = definition.id

        if trigger.type == TriggerType.CRON:
            self.scheduler.unregister(inbox_job_name(workflow_id))
            self.scheduler.register_or_update(
                cron_job_name(workflow_id),
                trigger.cron_expression,
                lambda: self._fire_cron(workflow_id),
                description=f"Run workflow '{definition.name}'",
            )
            return True

        if trigger.type == TriggerType.INBOUND_EMAIL:
            self.scheduler.unregister(cron_job_name(workflow_id))
            self.scheduler.register_or_update(
                inbox_job_name(workflow_id),
                trigger.config.get("pollCron") or self.settings.EMAIL_POLL_CRON,
                lambda: self.poll_inbox(workflow_id),
                description=f"Poll inbox for workflow '{definition.name}'",
            )
            return True

        self.deactivate(workflow_id)
        return False

    def deactivate(self, workflow_id: str) -> None:
        removed = self.scheduler.unregister(cron_job_name(workflow_id))
        removed = self.scheduler.unregister(inbox_job_name(workflow_id)) or removed
        if removed:
            logger.info(f"Deactivated scheduled triggers of workflow {workflow_id}")

    async def sync(self, workflow_id: str) -> bool:
        """Re-read one workflow and bring its scheduled jobs up to date."""
        try:
            definition = await self.dispatcher.load(workflow_id)
        except NotFoundError:
            self.deactivate(workflow_id)
            return False
        return self.activate(definition)

    # ─── Job bodies ───────────────────────────────────────────

    async def _fire_cron(self, workflow_id: str) -> str:
        result = await self.dispatcher.handle_cron(workflow_id)
        return f"job {result.job_id}"

    async def poll_inbox(self, workflow_id: str) -> str:
        """Poll the workflow's inbox and enqueue one execution per new message."""
        definition = await self.dispatcher.load(workflow_id)
        messages = await self.poller.poll(definition.trigger.config)
        for message in messages:
            await self.dispatcher.handle_email(workflow_id, message)
        return f"{len(messages)} messages"
