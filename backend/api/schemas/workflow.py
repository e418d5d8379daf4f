"""Workflow import/export and trigger request schemas."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ImportResponse(BaseModel):
    """Result of importing a workflow document."""

    id: str = Field(description="Workflow ID")
    name: str = Field(description="Workflow name")
    trigger_type: str = Field(description="Configured trigger type")
    is_enabled: bool = Field(description="Whether triggers may fire the workflow")
    changes: List[str] = Field(default=[], description="Auto-corrections applied on import")


class ValidateResponse(BaseModel):
    """Static validation report for a workflow document."""

    valid: bool
    issues: List[str] = Field(default=[], description="Problems that block import")
    changes: List[str] = Field(default=[], description="Auto-corrections that would be applied")
    credentials: List[str] = Field(default=[], description="Credential keys the workflow needs")


class WorkflowSummary(BaseModel):
    id: str
    name: str
    description: str
    trigger_type: str
    is_enabled: bool
    user_id: Optional[str] = None
    organization_id: Optional[str] = None

    class Config:
        from_attributes = True


class WorkflowListResponse(BaseModel):
    """Paginated list of workflows."""

    workflows: List[WorkflowSummary]
    total: int
    page: int
    per_page: int


class ExecuteRequest(BaseModel):
    """Manual execution request."""

    input: Dict[str, Any] = Field(default={}, description="Trigger payload, available as {{trigger.*}}")
    priority: Optional[int] = Field(default=None, ge=0, le=9, description="Lower runs first")
    delay: float = Field(default=0.0, ge=0, description="Seconds to wait before the job may start")


class ChatMessage(BaseModel):
    role: str = "user"
    content: str = ""


class ChatRequest(BaseModel):
    """Chat turn: a full message history or a single message."""

    messages: List[ChatMessage] = Field(default=[])
    message: Optional[str] = None


class EnqueueResponse(BaseModel):
    """Where an execution request went."""

    job_id: str = Field(description="Queue job ID, or 'direct-execution'")
    queued: bool = Field(description="False when the job ran synchronously without a queue")
    result: Optional[Any] = Field(default=None, description="Execution result when not queued")
