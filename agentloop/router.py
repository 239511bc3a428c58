"""Keyword-heuristic model selection and chat-vs-tools routing."""

from __future__ import annotations

import logging
import re
from typing import Iterable, Sequence

from agentloop.config import Settings
from agentloop.schemas import Message

logger = logging.getLogger(__name__)

EXPLICIT_KEYWORDS = (
    "explicit", "nsfw", "dirty joke", "sexual", "sexually",
    "adult", "edgy", "dark humor", "dark joke",
    "uncensored", "no filter", "unfiltered",
    "inappropriate", "offensive", "raunchy",
    "profanity", "vulgar", "crude",
)

CODING_KEYWORDS = (
    "python", "swift", "xcode", "compiler", "build failed",
    "error:", "exception", "traceback", "stack trace",
    "crashed", "debug", "async", "await",
    "func ", "def ", "class ", "struct ",
    "protocol ", "extension ",
    "```",
    "return ", "init(", "var ", "let ",
)

DIAGNOSTIC_KEYWORDS = (
    "why is", "what caused", "crash", "freeze",
    "log", "report", "trace", "wifi", "network",
    "ollama", "model isn't", "nothing happens",
    "it won't respond", "it doesn't work",
)

GENERAL_KEYWORDS = (
    "what's", "how do", "explain", "tell me",
    "can you", "should i", "why does",
    "compare", "summarize", "walk me through",
)

TRIVIAL_CHAT_KEYWORDS = (
    "hello", "hi", "hey", "thanks", "thank you", "ok", "okay",
    "cool", "nice", "great", "bye", "goodbye", "lol",
)

TOOL_KEYWORDS = (
    "file", "read", "write", "create", "delete", "save",
    "search web", "google", "look up", "find online",
    "screenshot", "see my screen", "capture",
    "run", "execute", "command", "terminal",
    "clipboard", "copy", "paste",
    "list", "directory", "folder",
    "open", "finder", "launch", "start",
    "download", "fetch", "url",
    "how many", "count", "number of",
    "show me", "what's in", "what is in",
    "applications", "apps", "installed",
)

CHAT_INDICATORS = (
    "what is", "what's", "how does", "how do", "why", "when", "who",
    "tell me about", "explain", "describe",
    "hello", "hi", "hey", "thanks", "thank you", "bye", "goodbye",
)

SHORT_PROMPT_CHARS = 100
TRIVIAL_CHAT_CHARS = 40
SHORT_CHAT_CHARS = 50
# How far back to look for code blocks when applying stickiness
STICKY_WINDOW = 4


def _keyword_pattern(keywords: Iterable[str]) -> re.Pattern[str]:
    # Anchor word-like keywords at a word start so "hi" does not match "this"
    parts = []
    for keyword in keywords:
        escaped = re.escape(keyword)
        parts.append(rf"(?<!\w){escaped}" if keyword[0].isalnum() else escaped)
    return re.compile("|".join(parts))


_EXPLICIT_RE = _keyword_pattern(EXPLICIT_KEYWORDS)
_CODING_RE = _keyword_pattern(CODING_KEYWORDS)
_DIAGNOSTIC_RE = _keyword_pattern(DIAGNOSTIC_KEYWORDS)
_GENERAL_RE = _keyword_pattern(GENERAL_KEYWORDS)
_TRIVIAL_RE = _keyword_pattern(TRIVIAL_CHAT_KEYWORDS)
_TOOL_RE = _keyword_pattern(TOOL_KEYWORDS)
_CHAT_RE = _keyword_pattern(CHAT_INDICATORS)


class ModelRouter:
    """Chooses a backend model for the latest user utterance.

    Heuristics are ordered: explicit-content intent, coding intent,
    code-block stickiness, diagnostic intent, general chat, short-utterance
    fast path, then the default chat model.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def select(self, text: str, recent_messages: Sequence[Message] = ()) -> str:
        """Pick a model name.

        Args:
            text: Latest user utterance
            recent_messages: Recent transcript, used for code-block stickiness

        Returns:
            The model name to request from the backend
        """
        lower = text.lower()
        s = self.settings

        if _EXPLICIT_RE.search(lower):
            return self._chosen(s.EXPLICIT_MODEL, "explicit")
        if _CODING_RE.search(lower):
            return self._chosen(s.CODE_MODEL, "coding")
        if self._has_recent_code(recent_messages) and not self.is_trivial_chat(text):
            return self._chosen(s.CODE_MODEL, "code stickiness")
        if _DIAGNOSTIC_RE.search(lower):
            return self._chosen(s.CODE_MODEL, "diagnostic")
        if _GENERAL_RE.search(lower):
            return self._chosen(s.CHAT_MODEL, "general chat")
        if len(lower) < SHORT_PROMPT_CHARS:
            return self._chosen(s.FAST_MODEL, "short prompt")
        return self._chosen(s.CHAT_MODEL, "default")

    @staticmethod
    def is_trivial_chat(text: str) -> bool:
        """Short greetings and acknowledgements."""
        stripped = text.strip()
        return len(stripped) < TRIVIAL_CHAT_CHARS and bool(_TRIVIAL_RE.search(stripped.lower()))

    @staticmethod
    def needs_tools(text: str) -> bool:
        """Whether a message should go through the agent loop rather than plain chat.

        Tool keywords win over chat indicators; short messages with neither
        go to chat; anything else ambiguous goes to the agent loop.
        """
        stripped = text.strip()
        lower = stripped.lower()
        has_tool_keyword = bool(_TOOL_RE.search(lower))
        has_chat_indicator = bool(_CHAT_RE.search(lower))

        if has_tool_keyword:
            return True
        if has_chat_indicator:
            return False
        return len(stripped) >= SHORT_CHAT_CHARS

    @staticmethod
    def _has_recent_code(messages: Sequence[Message]) -> bool:
        return any("```" in message.text for message in list(messages)[-STICKY_WINDOW:])

    @staticmethod
    def _chosen(model: str, reason: str) -> str:
        logger.info(f"Routing -> {model} ({reason})")
        return model
