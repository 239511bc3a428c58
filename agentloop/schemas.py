"""Pydantic schemas shared by the extractor, permission gate, loop and API."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Transcript message roles."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Message(BaseModel):
    """A single transcript entry."""

    role: Role
    text: str
    timestamp: datetime = Field(default_factory=utcnow)


# --- Tool calls ---


class ToolCall(BaseModel):
    """A structured call extracted from model text. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    name: str
    arguments: dict[str, str] = Field(default_factory=dict, validate_default=True)

    @field_validator("arguments", mode="after")
    @classmethod
    def _freeze_arguments(cls, value: dict[str, str]) -> Mapping[str, str]:
        # Read-only view over a private copy
        return MappingProxyType(dict(value))

    @field_serializer("arguments")
    def _serialize_arguments(self, value: Mapping[str, str]) -> dict[str, Any]:
        return dict(value)

    def dedup_key(self) -> str:
        """Key used for cycle detection: name plus serialized arguments."""
        return f"{self.name}:{json.dumps(dict(self.arguments), sort_keys=True)}"


class ToolResult(BaseModel):
    """Result of a capability invocation. ``is_error`` stops the loop."""

    output: str
    is_error: bool = False

    @classmethod
    def error(cls, output: str) -> ToolResult:
        return cls(output=output, is_error=True)


# --- Permissions ---


class PermissionStatus(str, Enum):
    """Outcome of a permission check."""

    GRANTED = "granted"
    DENIED = "denied"
    NEEDS_APPROVAL = "needs_approval"


class PermissionScope(BaseModel):
    """A stored grant for one tool, optionally path-restricted and time-limited."""

    tool_name: str
    allowed_path_prefixes: list[str] | None = None  # None = all paths allowed
    granted_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    session_only: bool = True

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())


class AuditEntry(BaseModel):
    """Record of a single approval or denial."""

    tool_name: str
    arguments: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    approved: bool
    path: str | None = None


# --- Loop outcome ---


class LoopStatus(str, Enum):
    """How an agent loop invocation ended."""

    COMPLETED = "completed"
    TOOL_ERROR = "tool_error"
    REPEATED_CALL = "repeated_call"
    TURN_LIMIT = "turn_limit"
    INFERENCE_ERROR = "inference_error"
    CANCELLED = "cancelled"


class LoopOutcome(BaseModel):
    """Final result of one user request."""

    status: LoopStatus
    answer: str = ""
    error: str | None = None
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    turns: int = 0
    model: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == LoopStatus.COMPLETED


# --- HTTP API ---


class ChatRequest(BaseModel):
    """Request body for POST /chat."""

    message: str = Field(..., min_length=1)


class ApprovalDecision(BaseModel):
    """Request body for POST /approvals/{id}."""

    approved: bool


class ActionResponse(BaseModel):
    """Result of a state-changing request."""

    ok: bool
    detail: str = ""


class PendingApprovalView(BaseModel):
    """A tool call waiting for a human decision."""

    request_id: str
    tool_call: ToolCall
    created_at: datetime


class HealthResponse(BaseModel):
    """Health check response."""

    api: Literal["healthy", "unhealthy"] = "healthy"
    ollama: Literal["healthy", "unhealthy"] = "healthy"
    busy: bool = False
    pending_approvals: int = 0


class ErrorResponse(BaseModel):
    """Error response for failed requests."""

    detail: str
    error_code: str | None = None
