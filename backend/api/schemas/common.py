"""Common schemas used across the API."""

from pydantic import BaseModel, Field
from typing import Any, Optional


class PaginationParams(BaseModel):
    """Pagination parameters for list endpoints."""

    page: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    per_page: int = Field(
        default=20, ge=1, le=100, description="Items per page (max 100)"
    )


class MessageResponse(BaseModel):
    """Simple message response."""

    message: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(description="Human-readable error message")
    request_id: Optional[str] = Field(default=None, description="X-Request-ID of the failed request")


class CredentialStoreRequest(BaseModel):
    """Create or replace a stored credential."""

    value: Any = Field(description="Secret value: a string or a JSON object")
    scope: str = Field(default="user", description="user or organization")
    platform: Optional[str] = None


class QueueStatsResponse(BaseModel):
    mode: str = Field(description="Backend in use, or 'direct'")
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int
