"""Error taxonomy for the inference client and the agent loop."""

from __future__ import annotations

from typing import Any


class AgentLoopError(Exception):
    """Base exception for AgentLoop."""

    pass


class NetworkFailure(AgentLoopError):
    """An underlying networking failure (timeout, connection reset, etc)."""

    def __init__(self, underlying: BaseException, transient: bool = True):
        super().__init__(f"Network error: {underlying}")
        self.underlying = underlying
        self.transient = transient


class InvalidResponse(AgentLoopError):
    """The backend responded with a non-2xx status code."""

    def __init__(self, status_code: int, detail: str = ""):
        message = f"Unexpected response from model server (HTTP {status_code})."
        if detail:
            message += f" {detail}"
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class DecodingFailure(AgentLoopError):
    """A response chunk could not be decoded."""

    def __init__(self, underlying: BaseException):
        super().__init__(f"Failed to decode model response: {underlying}")
        self.underlying = underlying


class ModelNotAvailable(AgentLoopError):
    """The requested model is unknown to the backend or not pulled yet."""

    def __init__(self, model: str):
        super().__init__(
            f"The requested model '{model}' is not available. Make sure it is pulled in Ollama."
        )
        self.model = model


class Cancelled(AgentLoopError):
    """The request was cancelled."""

    def __init__(self, message: str = "The operation was cancelled."):
        super().__init__(message)


class InternalInconsistentState(AgentLoopError):
    """Internal state did not match expectations."""

    def __init__(self, message: str):
        super().__init__(f"Internal state error: {message}")


class UnknownError(AgentLoopError):
    """Catch-all for errors without a dedicated type."""

    def __init__(self, message: str = ""):
        super().__init__(message or "An unknown error occurred.")


class RepeatedCallError(AgentLoopError):
    """The model asked for a tool call that already ran in this loop."""

    def __init__(self, call: Any):
        super().__init__(f"Repeated call to '{call.name}' with identical arguments; stopping.")
        self.call = call


class TurnLimitExceeded(AgentLoopError):
    """The loop hit its maximum number of inference turns."""

    def __init__(self, max_turns: int):
        super().__init__(f"Stopped after reaching the limit of {max_turns} turns.")
        self.max_turns = max_turns
