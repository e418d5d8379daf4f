"""Trigger Dispatcher — turns external events into queued executions.

Every trigger type ends in exactly one ``ExecutionQueue.enqueue`` call;
nothing here runs a workflow. The handlers only normalize the incoming
event into a trigger payload and check what the trigger type needs
checked (webhook signature, bot secret token, enabled flag).

Payloads seen by workflows as ``{{trigger.*}}``:

    manual          the request's ``input`` object
    webhook         {body, headers, query, method}
    chat            {userInput, messages}
    inbound-email   {from, to, subject, text, messageId, date}
    messaging-bot   {platform, text, chatId, userId, username, messageId, update}
    cron            {scheduledAt, cron}
"""

import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from core.constants import TriggerType
from core.exceptions import ConflictError, UnauthorizedError, ValidationError
from core.webhook_signing import verify_webhook_signature
from services.workflow_service import WorkflowService
from worker.queue import EnqueueResult, ExecutionQueue, QueueJob
from workflow.definition import WorkflowDefinition
from workflow.validation import WorkflowValidator

logger = logging.getLogger(__name__)

# Triggers that may fire any workflow, whatever its configured trigger.
_UNRESTRICTED = (TriggerType.MANUAL, TriggerType.CHAT, TriggerType.CHAT_INPUT)

# Header names whose values are never copied into the trigger payload.
_HIDDEN_HEADERS = ("authorization", "cookie", "x-telegram-bot-api-secret-token")

TELEGRAM_SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


@dataclass
class TriggerEvent:
    """One normalized trigger firing, ready to become a QueueJob."""

    workflow_id: str
    trigger_type: TriggerType
    payload: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    priority: Optional[int] = None
    delay: float = 0.0
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        self.trigger_type = TriggerType(self.trigger_type)


class TriggerDispatcher:
    """Normalizes trigger events and enqueues them."""

    def __init__(
        self,
        queue: ExecutionQueue,
        session_factory: async_sessionmaker,
        validator: WorkflowValidator,
        settings: Optional[Settings] = None,
    ):
        self.queue = queue
        self._session_factory = session_factory
        self.validator = validator
        self.settings = settings or get_settings()

    # ─── Core ─────────────────────────────────────────────────

    async def load(self, workflow_id: str) -> WorkflowDefinition:
        async with self._session_factory() as session:
            return await WorkflowService(session, self.validator).get_definition(workflow_id)

    async def dispatch(
        self, event: TriggerEvent, definition: Optional[WorkflowDefinition] = None
    ) -> EnqueueResult:
        """Enqueue one execution for ``event``.

        Raises:
            NotFoundError: unknown workflow
            ConflictError: the workflow is disabled, or is not configured for this trigger
        """
        if definition is None:
            definition = await self.load(event.workflow_id)

        if event.trigger_type not in _UNRESTRICTED:
            if not definition.is_enabled:
                raise ConflictError(f"Workflow {definition.id} is disabled")
            if definition.trigger.type != event.trigger_type:
                raise ConflictError(
                    f"Workflow {definition.id} is not triggered by {event.trigger_type.value} "
                    f"(configured: {definition.trigger.type.value})"
                )

        job = QueueJob(
            workflow_id=definition.id,
            user_id=event.user_id or definition.user_id,
            organization_id=definition.organization_id,
            trigger_type=event.trigger_type,
            payload=event.payload,
            priority=self.settings.QUEUE_DEFAULT_PRIORITY if event.priority is None else event.priority,
            delay=max(event.delay or 0.0, 0.0),
        )
        result = await self.queue.enqueue(job)
        logger.info(
            f"Dispatched {event.trigger_type.value} trigger for workflow {definition.id} "
            f"-> job {result.job_id} (queued={result.queued})"
        )
        return result

    # ─── Manual ───────────────────────────────────────────────

    async def handle_manual(
        self,
        workflow_id: str,
        input: Optional[dict] = None,
        user_id: Optional[str] = None,
        priority: Optional[int] = None,
        delay: float = 0.0,
    ) -> EnqueueResult:
        if input is not None and not isinstance(input, dict):
            raise ValidationError("'input' must be an object")
        return await self.dispatch(TriggerEvent(
            workflow_id=workflow_id,
            trigger_type=TriggerType.MANUAL,
            payload=dict(input or {}),
            user_id=user_id,
            priority=priority,
            delay=delay,
        ))

    # ─── Webhook ──────────────────────────────────────────────

    async def handle_webhook(
        self,
        workflow_id: str,
        raw_body: bytes,
        headers: Optional[dict[str, str]] = None,
        query: Optional[dict[str, Any]] = None,
        method: str = "POST",
    ) -> EnqueueResult:
        """Verify and enqueue a webhook call.

        When the workflow's trigger config carries a ``secret``, the
        request must carry a valid HMAC-SHA256 signature of the raw body.

        Raises:
            UnauthorizedError: signature missing or wrong
        """
        definition = await self.load(workflow_id)
        headers = {k.lower(): v for k, v in (headers or {}).items()}

        secret = definition.trigger.config.get("secret")
        if secret:
            signature = headers.get(self.settings.WEBHOOK_SIGNATURE_HEADER.lower())
            if not verify_webhook_signature(raw_body, secret, signature):
                logger.warning(f"Rejected webhook for workflow {workflow_id}: bad or missing signature")
                raise UnauthorizedError("Invalid webhook signature")

        payload = {
            "body": _parse_body(raw_body),
            "headers": {
                k: v for k, v in headers.items()
                if k not in _HIDDEN_HEADERS and k != self.settings.WEBHOOK_SIGNATURE_HEADER.lower()
            },
            "query": dict(query or {}),
            "method": method.upper(),
        }
        return await self.dispatch(
            TriggerEvent(workflow_id=workflow_id, trigger_type=TriggerType.WEBHOOK, payload=payload),
            definition,
        )

    async def describe_webhook(self, workflow_id: str) -> dict:
        """Trigger metadata and active status for the webhook URL. Never enqueues."""
        definition = await self.load(workflow_id)
        trigger = definition.trigger
        is_webhook = trigger.type == TriggerType.WEBHOOK
        path = f"{self.settings.API_V1_PREFIX}/workflows/{definition.id}/webhook"
        return {
            "workflow_id": definition.id,
            "workflow_name": definition.name,
            "trigger_type": trigger.type.value,
            "active": definition.is_enabled and is_webhook,
            "signed": is_webhook and bool(trigger.config.get("secret")),
            "signature_header": self.settings.WEBHOOK_SIGNATURE_HEADER,
            "url": f"{self.settings.PUBLIC_BASE_URL.rstrip('/')}{path}",
        }

    # ─── Chat ─────────────────────────────────────────────────

    async def handle_chat(
        self,
        workflow_id: str,
        messages: Optional[list[dict]] = None,
        message: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> EnqueueResult:
        """Enqueue a chat turn; the last user message becomes ``userInput``."""
        if not messages and message:
            messages = [{"role": "user", "content": message}]
        if not messages:
            raise ValidationError("Chat trigger needs 'messages' or 'message'")

        user_messages = [m for m in messages if isinstance(m, dict) and m.get("role", "user") == "user"]
        user_input = user_messages[-1].get("content", "") if user_messages else ""

        definition = await self.load(workflow_id)
        trigger_type = (
            TriggerType.CHAT_INPUT
            if definition.trigger.type == TriggerType.CHAT_INPUT
            else TriggerType.CHAT
        )
        return await self.dispatch(
            TriggerEvent(
                workflow_id=workflow_id,
                trigger_type=trigger_type,
                payload={"userInput": user_input, "messages": list(messages)},
                user_id=user_id,
            ),
            definition,
        )

    # ─── Inbound email ────────────────────────────────────────

    async def handle_email(self, workflow_id: str, message: dict) -> EnqueueResult:
        """Enqueue one normalized inbound message (see ``email_poller.normalize_message``)."""
        return await self.dispatch(TriggerEvent(
            workflow_id=workflow_id,
            trigger_type=TriggerType.INBOUND_EMAIL,
            payload=dict(message),
        ))

    # ─── Messaging bots ───────────────────────────────────────

    async def handle_messaging_bot(
        self,
        workflow_id: str,
        platform: str,
        update: dict,
        secret_token: Optional[str] = None,
    ) -> EnqueueResult:
        """Enqueue a Telegram or Discord style bot update.

        Raises:
            UnauthorizedError: the trigger has a ``secretToken`` and the request's does not match
            ValidationError: the update carries no message
        """
        definition = await self.load(workflow_id)
        config = definition.trigger.config

        expected = config.get("secretToken")
        if expected and not hmac.compare_digest(str(expected).encode(), (secret_token or "").encode()):
            logger.warning(f"Rejected {platform} update for workflow {workflow_id}: bad secret token")
            raise UnauthorizedError("Invalid bot secret token")

        configured = config.get("platform")
        if configured and configured.lower() != platform.lower():
            raise ConflictError(f"Workflow {workflow_id} listens to {configured}, not {platform}")

        payload = normalize_bot_update(platform, update)
        return await self.dispatch(
            TriggerEvent(workflow_id=workflow_id, trigger_type=TriggerType.MESSAGING_BOT, payload=payload),
            definition,
        )

    # ─── Cron ─────────────────────────────────────────────────

    async def handle_cron(self, workflow_id: str, scheduled_at: Optional[datetime] = None) -> EnqueueResult:
        definition = await self.load(workflow_id)
        fired = scheduled_at or datetime.now(timezone.utc)
        return await self.dispatch(
            TriggerEvent(
                workflow_id=workflow_id,
                trigger_type=TriggerType.CRON,
                payload={"scheduledAt": fired.isoformat(), "cron": definition.trigger.cron_expression},
            ),
            definition,
        )


def _parse_body(raw_body: bytes) -> Any:
    if not raw_body:
        return {}
    text = raw_body.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def normalize_bot_update(platform: str, update: dict) -> dict:
    """Flatten a platform update into the messaging-bot trigger payload."""
    if not isinstance(update, dict):
        raise ValidationError("Bot update must be an object")

    platform = platform.lower()
    if platform == "telegram":
        message = update.get("message") or update.get("edited_message") or update.get("channel_post")
        if not message:
            raise ValidationError("Telegram update carries no message")
        sender = message.get("from") or {}
        return {
            "platform": platform,
            "text": message.get("text") or message.get("caption") or "",
            "chatId": (message.get("chat") or {}).get("id"),
            "userId": sender.get("id"),
            "username": sender.get("username") or sender.get("first_name"),
            "messageId": message.get("message_id"),
            "update": update,
        }

    if platform == "discord":
        message = update.get("d") if isinstance(update.get("d"), dict) else update
        if "content" not in message:
            raise ValidationError("Discord update carries no message content")
        author = message.get("author") or {}
        return {
            "platform": platform,
            "text": message.get("content") or "",
            "chatId": message.get("channel_id"),
            "userId": author.get("id"),
            "username": author.get("username"),
            "messageId": message.get("id"),
            "update": update,
        }

    # Generic bots: {text, chatId, userId, username, messageId}
    return {
        "platform": platform,
        "text": update.get("text", ""),
        "chatId": update.get("chatId"),
        "userId": update.get("userId"),
        "username": update.get("username"),
        "messageId": update.get("messageId"),
        "update": update,
    }
