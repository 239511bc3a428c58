"""Transcript container and history windowing."""

from __future__ import annotations

from typing import Iterable, Iterator, Sequence

from agentloop.schemas import Message, Role

# Conservative default token budget for the prompt history
DEFAULT_TOKEN_BUDGET = 8192


def estimate_tokens(text: str) -> int:
    """Estimate token count: roughly 4 characters per token."""
    return len(text) // 4


class Transcript:
    """Ordered conversation. Only ever grows by appends."""

    def __init__(self, messages: Iterable[Message] | None = None):
        self._messages: list[Message] = list(messages or [])

    def append(self, role: Role, text: str) -> Message:
        message = Message(role=role, text=text)
        self._messages.append(message)
        return message

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def last_user_text(self) -> str:
        return last_user_text(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)


def window_history(
    messages: Sequence[Message],
    max_tokens: int = DEFAULT_TOKEN_BUDGET,
) -> list[Message]:
    """Keep the newest messages that fit in ``max_tokens``.

    Oldest messages are dropped first. The most recent message is always kept,
    even when it alone exceeds the budget.

    Args:
        messages: Full transcript, oldest first
        max_tokens: Token budget (characters / 4)

    Returns:
        The windowed suffix of ``messages``
    """
    kept: list[Message] = []
    used = 0

    for message in reversed(messages):
        estimated = estimate_tokens(message.text)
        if used + estimated > max_tokens:
            if not kept:
                kept.append(message)
            break
        kept.append(message)
        used += estimated

    kept.reverse()
    return kept


def render_transcript(messages: Iterable[Message]) -> str:
    """Render messages as ``User:`` / ``Assistant:`` lines for prompt-mode calls.

    Tool observations are rendered as-is, after a blank line.
    """
    lines = []
    for message in messages:
        if message.role == Role.SYSTEM:
            continue
        if message.role == Role.TOOL:
            lines.append(f"\n{message.text}")
            continue
        speaker = "User" if message.role == Role.USER else "Assistant"
        lines.append(f"{speaker}: {message.text}")
    return "\n".join(lines) + ("\n" if lines else "")


def last_user_text(messages: Sequence[Message]) -> str:
    """Text of the most recent user message, or an empty string."""
    for message in reversed(messages):
        if message.role == Role.USER:
            return message.text
    return ""
