"""Turns a raw tool observation into the user-facing answer."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from agentloop.cancellation import CancellationToken
from agentloop.inference import InferenceClient, TokenCallback, emit_token
from agentloop.parser import strip_tool_syntax
from agentloop.prompts import build_summary_prompt, build_summary_system_prompt
from agentloop.schemas import ToolCall

logger = logging.getLogger(__name__)

# Character limit for an answer built from the observation itself
MAX_FALLBACK_CHARS = 1500

SUMMARY_TEMPERATURE = 0.3

# "Short bare numeric string": digits only, e.g. the output of `ls | wc -l`
_NUMERIC_RE = re.compile(r"^\d{1,12}$")

# (singular, plural) nouns recognised in the user's request, most specific first
REQUEST_NOUNS: list[tuple[str, str]] = [
    ("image", "images"),
    ("photo", "photos"),
    ("picture", "pictures"),
    ("screenshot", "screenshots"),
    ("video", "videos"),
    ("movie", "movies"),
    ("song", "songs"),
    ("PDF", "PDFs"),
    ("document", "documents"),
    ("download", "downloads"),
    ("folder", "folders"),
    ("directory", "directories"),
    ("application", "applications"),
    ("app", "apps"),
    ("process", "processes"),
    ("line", "lines"),
    ("file", "files"),
    ("item", "items"),
]

EXTENSION_NOUNS: dict[str, tuple[str, str]] = {
    "png": ("image", "images"),
    "jpg": ("image", "images"),
    "jpeg": ("image", "images"),
    "gif": ("image", "images"),
    "heic": ("image", "images"),
    "webp": ("image", "images"),
    "mp4": ("video", "videos"),
    "mov": ("video", "videos"),
    "mkv": ("video", "videos"),
    "mp3": ("audio file", "audio files"),
    "wav": ("audio file", "audio files"),
    "m4a": ("audio file", "audio files"),
    "pdf": ("PDF", "PDFs"),
    "doc": ("document", "documents"),
    "docx": ("document", "documents"),
    "txt": ("text file", "text files"),
    "md": ("Markdown file", "Markdown files"),
    "py": ("Python file", "Python files"),
    "app": ("application", "applications"),
}

PATH_NOUNS: dict[str, tuple[str, str]] = {
    "pictures": ("image", "images"),
    "photos": ("photo", "photos"),
    "movies": ("video", "videos"),
    "music": ("song", "songs"),
    "applications": ("application", "applications"),
    "documents": ("document", "documents"),
    "downloads": ("file", "files"),
}

DEFAULT_NOUN = ("item", "items")

_EXTENSION_RE = re.compile(r"\.([A-Za-z0-9]{1,5})\b")
_PATH_SEGMENT_RE = re.compile(r"[/\\]([A-Za-z]+)")


@dataclass
class Summary:
    """Final answer text and how it was produced."""

    text: str
    model_used: str | None = None  # None when no model was called
    was_shortcut: bool = False


def _truncate_to_chars(text: str, max_chars: int = MAX_FALLBACK_CHARS) -> str:
    """Truncate text to max_chars, breaking at word boundary."""
    if len(text) <= max_chars:
        return text
    truncated = text[: max_chars - 3]
    last_space = truncated.rfind(" ")
    if last_space > max_chars // 2:
        truncated = truncated[:last_space]
    return truncated + "..."


def _noun_from_request(request: str) -> tuple[str, str] | None:
    lower = request.lower()
    for singular, plural in REQUEST_NOUNS:
        if re.search(rf"\b({re.escape(singular.lower())}|{re.escape(plural.lower())})\b", lower):
            return singular, plural
    return None


def _noun_from_call(call: ToolCall | None) -> tuple[str, str] | None:
    if call is None:
        return None
    values = list(call.arguments.values())
    for value in values:
        for ext in _EXTENSION_RE.findall(value):
            noun = EXTENSION_NOUNS.get(ext.lower())
            if noun:
                return noun
    for value in values:
        for segment in _PATH_SEGMENT_RE.findall(value):
            noun = PATH_NOUNS.get(segment.lower())
            if noun:
                return noun
    return None


def infer_noun(request: str, call: ToolCall | None = None) -> tuple[str, str]:
    """Pick a (singular, plural) noun for a bare count.

    The user's own wording wins; otherwise file extensions and well-known
    folder names in the call's arguments are used.
    """
    return _noun_from_request(request) or _noun_from_call(call) or DEFAULT_NOUN


def is_numeric_observation(observation: str) -> bool:
    """Whether ``observation`` is a short bare number that needs no model call."""
    return bool(_NUMERIC_RE.match(observation.strip()))


def numeric_shortcut(observation: str, request: str, call: ToolCall | None = None) -> str | None:
    """Answer a bare count without a model call.

    Returns:
        "You have N <noun>." when ``observation`` is a short bare number, else None
    """
    if not is_numeric_observation(observation):
        return None
    count = int(observation.strip())
    singular, plural = infer_noun(request, call)
    return f"You have {count} {singular if count == 1 else plural}."


class Summarizer:
    """Condenses an observation into the answer via a constrained model call."""

    def __init__(self, client: InferenceClient):
        self.client = client

    async def summarize(
        self,
        request: str,
        call: ToolCall,
        observation: str,
        *,
        model: str,
        on_token: TokenCallback | None = None,
        token: CancellationToken | None = None,
    ) -> Summary:
        """Produce the final answer for ``request`` from ``observation``.

        Args:
            request: The user's original message
            call: The tool call that produced the observation
            observation: Raw tool output
            model: Model for the summarization call
            on_token: Receives the final answer text
            token: Cancellation token

        Returns:
            Summary with the answer text
        """
        shortcut = numeric_shortcut(observation, request, call)
        if shortcut is not None:
            logger.info(f"Numeric shortcut: {shortcut}")
            await emit_token(on_token, shortcut)
            return Summary(text=shortcut, was_shortcut=True)

        result = await self.client.generate(
            build_summary_prompt(request, call, observation),
            model=model,
            system=build_summary_system_prompt(),
            token=token,
            temperature=SUMMARY_TEMPERATURE,
        )
        # Output is emitted only after tool syntax is stripped
        text = strip_tool_syntax(result.text)
        model_used: str | None = result.model

        if not text:
            logger.warning("Summarizer returned no usable text, falling back to the observation")
            text = _truncate_to_chars(observation.strip()) or "Done! Let me know if you need anything else."
            model_used = "truncation-fallback"

        await emit_token(on_token, text)
        return Summary(text=text, model_used=model_used)
