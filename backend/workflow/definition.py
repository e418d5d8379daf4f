"""Workflow document model.

The import/export format:

    {
      "version": "1.0",
      "name": "Reply to new mentions",
      "description": "...",
      "trigger": {"type": "cron", "config": {"schedule": "*/15 * * * *"}},
      "config": {
        "steps": [
          {"id": "search", "module": "social.twitter.searchTweets",
           "inputs": {"query": "@acme", "accessToken": "{{credential.twitter}}"},
           "outputAs": "mentions"},
          {"id": "fresh", "module": "data.storage.filterNew",
           "inputs": {"table": "replied", "items": "{{mentions}}", "keyField": "id"},
           "outputAs": "fresh"},
          {"id": "reply", "type": "forEach", "items": "{{fresh}}", "itemAs": "tweet",
           "steps": [...], "outputAs": "replies"}
        ],
        "returnValue": "{{replies}}",
        "outputDisplay": {"type": "table"}
      },
      "metadata": {"requiresCredentials": ["twitter"], "tags": ["social"]}
    }
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.constants import OutputDisplayType, TriggerType
from core.exceptions import ValidationError

SECRET_CONFIG_KEYS = ("secret", "secretToken", "password")
REDACTED = "********"


class StepKind(str, Enum):
    """Step discriminator."""

    PLAIN = "plain"
    FOR_EACH = "forEach"
    CONDITIONAL = "conditional"


_KIND_ALIASES = {
    "": StepKind.PLAIN,
    "plain": StepKind.PLAIN,
    "action": StepKind.PLAIN,
    "module": StepKind.PLAIN,
    "foreach": StepKind.FOR_EACH,
    "for_each": StepKind.FOR_EACH,
    "loop": StepKind.FOR_EACH,
    "conditional": StepKind.CONDITIONAL,
    "condition": StepKind.CONDITIONAL,
    "if": StepKind.CONDITIONAL,
}

_TRIGGER_ALIASES = {
    "schedule": TriggerType.CRON,
    "scheduled": TriggerType.CRON,
    "telegram": TriggerType.MESSAGING_BOT,
    "discord": TriggerType.MESSAGING_BOT,
    "gmail": TriggerType.INBOUND_EMAIL,
    "outlook": TriggerType.INBOUND_EMAIL,
    "email": TriggerType.INBOUND_EMAIL,
}


class StepDefinition(BaseModel):
    """One step: plain capability call, forEach block or conditional block."""

    id: str = Field(min_length=1)
    kind: StepKind = Field(default=StepKind.PLAIN, alias="type")
    name: Optional[str] = None
    capability: Optional[str] = Field(default=None, alias="module")
    inputs: dict[str, Any] = Field(default_factory=dict)
    output_as: Optional[str] = Field(default=None, alias="outputAs")

    # forEach
    items: Any = None
    item_as: str = Field(default="item", alias="itemAs")
    index_as: Optional[str] = Field(default=None, alias="indexAs")
    steps: list["StepDefinition"] = Field(default_factory=list)

    # conditional
    condition: Any = None
    then: list["StepDefinition"] = Field(default_factory=list)
    otherwise: list["StepDefinition"] = Field(default_factory=list, alias="else")

    class Config:
        populate_by_name = True

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value):
        if value is None or isinstance(value, StepKind):
            return value or StepKind.PLAIN
        kind = _KIND_ALIASES.get(str(value).strip().lower())
        if kind is None:
            raise ValueError(f"unknown step type '{value}'")
        return kind

    def children(self) -> list["StepDefinition"]:
        """Nested steps of every block, in document order."""
        if self.kind == StepKind.FOR_EACH:
            return list(self.steps)
        if self.kind == StepKind.CONDITIONAL:
            return list(self.then) + list(self.otherwise)
        return []

    def to_document(self) -> dict:
        doc: dict[str, Any] = {"id": self.id}
        if self.name:
            doc["name"] = self.name
        if self.kind != StepKind.PLAIN:
            doc["type"] = self.kind.value
        if self.kind == StepKind.PLAIN:
            doc["module"] = self.capability
            doc["inputs"] = self.inputs
        elif self.kind == StepKind.FOR_EACH:
            doc["items"] = self.items
            doc["itemAs"] = self.item_as
            if self.index_as:
                doc["indexAs"] = self.index_as
            doc["steps"] = [s.to_document() for s in self.steps]
        else:
            doc["condition"] = self.condition
            doc["then"] = [s.to_document() for s in self.then]
            doc["else"] = [s.to_document() for s in self.otherwise]
        if self.output_as:
            doc["outputAs"] = self.output_as
        return doc


StepDefinition.model_rebuild()


class TriggerSpec(BaseModel):
    type: TriggerType = TriggerType.MANUAL
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value):
        if isinstance(value, str):
            return _TRIGGER_ALIASES.get(value.strip().lower(), value.strip().lower())
        return value

    @property
    def cron_expression(self) -> Optional[str]:
        """Cron schedule of a cron trigger (``schedule`` or ``cron`` key)."""
        return self.config.get("schedule") or self.config.get("cron")

    def redacted_config(self) -> dict:
        return {
            key: (REDACTED if key in SECRET_CONFIG_KEYS and value else value)
            for key, value in self.config.items()
        }


class OutputDisplay(BaseModel):
    type: OutputDisplayType = OutputDisplayType.JSON

    class Config:
        extra = "allow"


class WorkflowConfig(BaseModel):
    steps: list[StepDefinition] = Field(default_factory=list)
    return_value: Any = Field(default=None, alias="returnValue")
    output_display: Optional[OutputDisplay] = Field(default=None, alias="outputDisplay")

    class Config:
        populate_by_name = True


class WorkflowMetadata(BaseModel):
    requires_credentials: list[str] = Field(default_factory=list, alias="requiresCredentials")
    tags: list[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True
        extra = "allow"


class WorkflowDocument(BaseModel):
    """Portable workflow document (import/export format)."""

    version: str = "1.0"
    name: str = Field(min_length=1)
    description: str = ""
    trigger: TriggerSpec = Field(default_factory=TriggerSpec)
    config: WorkflowConfig = Field(default_factory=WorkflowConfig)
    metadata: WorkflowMetadata = Field(default_factory=WorkflowMetadata)

    @classmethod
    def parse(cls, data: Any) -> "WorkflowDocument":
        """Parse a raw document, reporting shape errors as ValidationError."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            issues = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            ]
            raise ValidationError(issues=issues) from e

    @property
    def steps(self) -> list[StepDefinition]:
        return self.config.steps

    def to_document(self, redact_secrets: bool = True) -> dict:
        config: dict[str, Any] = {"steps": [s.to_document() for s in self.steps]}
        if self.config.return_value is not None:
            config["returnValue"] = self.config.return_value
        if self.config.output_display is not None:
            config["outputDisplay"] = self.config.output_display.model_dump(mode="json")
        metadata = self.metadata.model_dump(by_alias=True, mode="json")
        return {
            "version": self.version,
            "name": self.name,
            "description": self.description,
            "trigger": {
                "type": self.trigger.type.value,
                "config": self.trigger.redacted_config() if redact_secrets else dict(self.trigger.config),
            },
            "config": config,
            "metadata": metadata,
        }


class WorkflowDefinition(WorkflowDocument):
    """A stored workflow as the engine sees it: document plus ownership."""

    id: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    is_enabled: bool = True
