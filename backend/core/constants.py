"""Constants and enums for the workflow automation engine."""

from enum import Enum


class TriggerType(str, Enum):
    """Event type that causes a workflow to be enqueued."""

    MANUAL = "manual"
    CRON = "cron"
    WEBHOOK = "webhook"
    CHAT = "chat"
    CHAT_INPUT = "chat-input"
    INBOUND_EMAIL = "inbound-email"
    MESSAGING_BOT = "messaging-bot"


class JobStatus(str, Enum):
    """Lifecycle state of a queued execution job."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class RunStatus(str, Enum):
    """Outcome of a single execution attempt."""

    SUCCESS = "success"
    ERROR = "error"


class CredentialScope(str, Enum):
    """Owner of a stored credential."""

    USER = "user"
    ORGANIZATION = "organization"


class OutputDisplayType(str, Enum):
    """Shape hint for rendering a workflow's return value."""

    TABLE = "table"
    LIST = "list"
    TEXT = "text"
    MARKDOWN = "markdown"
    JSON = "json"
    IMAGE = "image"
    IMAGES = "images"
    NUMBER = "number"


class JobLogStatus(str, Enum):
    """Outcome of one scheduled job run."""

    SUCCESS = "success"
    ERROR = "error"


# Interpolation roots that are always bound.
TRIGGER_ROOT = "trigger"
CREDENTIAL_ROOTS = ("credential", "user")
WORKFLOW_ROOT = "workflow"
RESERVED_ROOTS = (TRIGGER_ROOT, WORKFLOW_ROOT) + CREDENTIAL_ROOTS

# Returned instead of a job id when a job ran without a queue backend.
DIRECT_EXECUTION_JOB_ID = "direct-execution"
