"""Tool-call extraction from free-form model output.

Local models do not follow a stable tool-call protocol, so extraction is an
ordered chain of independent strategies, most specific first. Each strategy is
a pure function ``text -> ToolCall | None``; the first one that yields a
well-formed call wins:

1. Canonical wrapped form:   <tool_code>name(key="value")</tool_code>
2. Normalized delimiters:    <Tool Automated Code>name(...)</tool-code>
3. Malformed split form:     <tool_code>name</tool_code>\nkey="value"
4. Self-closing tag:         <name key="value" />
5. Vendor special tokens:    function<｜tool▁sep｜>name\nkey="value"<｜tool▁call▁end｜>
6. Strict bare function:     name(key="value")   (whole line, known tools only)
7. Fuzzy scan:               ...name(key="value")... anywhere (known tools only)

Strategies 1-4 and 6 take the last match in the text (the model's most recent
stated intent); the vendor form takes the first; the fuzzy scan takes the
leftmost candidate across all tools.
"""

from __future__ import annotations

import json
import logging
import re
from functools import partial
from typing import Callable, Iterable, Mapping

from agentloop.schemas import ToolCall

logger = logging.getLogger(__name__)

Strategy = Callable[[str], "ToolCall | None"]

CANONICAL_OPEN = "<tool_code>"
CANONICAL_CLOSE = "</tool_code>"

# Anything shaped like <tool ... code>, any case, any interior words/separators
_OPEN_TAG_RE = re.compile(r"<\s*tool[\w\s\-]*?code\s*>", re.IGNORECASE)
_CLOSE_TAG_RE = re.compile(r"<\s*/\s*tool[\w\s\-]*?code\s*>", re.IGNORECASE)

_WRAPPED_RE = re.compile(r"<tool_code>\s*(\w+)\s*\((.*?)\)\s*</tool_code>", re.DOTALL)
_SPLIT_RE = re.compile(
    r"<tool_code>\s*(\w+)\s*</tool_code>[ \t]*\n?(.*?)(?:\n[ \t]*\n|\Z)",
    re.DOTALL,
)
_SELF_CLOSING_RE = re.compile(r"<(\w+)\s+([^<>]*?)/>")

_VENDOR_BEGIN_RE = re.compile(r"<[|｜]\s*tool[\s_▁]*calls?[\s_▁]*begin\s*[|｜]>", re.IGNORECASE)
_VENDOR_SEP = r"<[|｜]?\s*(?:tool[\s_▁]*)?sep\s*[|｜]?>"
_VENDOR_END = r"<[|｜]\s*tool[\s_▁]*calls?[\s_▁]*end\s*[|｜]>"
_VENDOR_CALL_RE = re.compile(
    rf"function\s*{_VENDOR_SEP}\s*(\w+)(.*?)(?:{_VENDOR_END}|\Z)",
    re.DOTALL | re.IGNORECASE,
)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

# key="value" where value may contain \" \\ and \n escapes
_ARG_RE = re.compile(r'(\w+)\s*=\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_ESCAPE_RE = re.compile(r'\\(["\\n])')
_UNESCAPES = {'"': '"', "\\": "\\", "n": "\n"}


# ---------------------------------------------------------------------------
# Argument handling (shared by all strategies)
# ---------------------------------------------------------------------------


def unescape_value(raw: str) -> str:
    """Undo ``\\"``, ``\\\\`` and ``\\n`` escapes; other backslashes are kept."""
    return _ESCAPE_RE.sub(lambda m: _UNESCAPES[m.group(1)], raw)


def escape_value(value: str) -> str:
    """Escape a value so it survives a round trip through ``parse_arguments``."""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def parse_arguments(text: str) -> dict[str, str]:
    """Parse ``key="value", key2="value2"`` pairs in order of appearance."""
    return {m.group(1): unescape_value(m.group(2)) for m in _ARG_RE.finditer(text)}


def parse_argument_block(block: str) -> dict[str, str] | None:
    """Parse an argument block.

    Returns:
        ``{}`` for an explicitly empty block, the parsed pairs otherwise, or
        None when a non-empty block contains no parseable pair.
    """
    if not block.strip():
        return {}
    return parse_arguments(block) or None


def format_arguments(arguments: Mapping[str, str]) -> str:
    """Serialize arguments as ``key="value", ...`` with escaping."""
    return ", ".join(f'{key}="{escape_value(value)}"' for key, value in arguments.items())


def format_tool_call(call: ToolCall) -> str:
    """Render a call in the canonical wrapped form."""
    return f"{CANONICAL_OPEN}{call.name}({format_arguments(call.arguments)}){CANONICAL_CLOSE}"


def normalize_delimiters(text: str) -> str:
    """Rewrite any delimiter that loosely resembles ``<tool_code>`` to canonical form."""
    text = _OPEN_TAG_RE.sub(CANONICAL_OPEN, text)
    return _CLOSE_TAG_RE.sub(CANONICAL_CLOSE, text)


def _find_closing_paren(text: str, start: int) -> int | None:
    """Return the index of the ``)`` closing a call whose body starts at ``start``.

    Parentheses inside quoted strings are ignored; backslash escapes inside
    quotes are honoured.
    """
    depth = 1
    quote: str | None = None
    escaped = False
    i = start
    while i < len(text):
        ch = text[i]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return None


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def parse_wrapped(text: str) -> ToolCall | None:
    """Strategy 1: ``<tool_code>name(args)</tool_code>``, last match wins."""
    for match in reversed(list(_WRAPPED_RE.finditer(text))):
        args = parse_argument_block(match.group(2))
        if args is not None:
            return ToolCall(name=match.group(1), arguments=args)
    return None


def parse_normalized(text: str) -> ToolCall | None:
    """Strategy 2: canonicalize look-alike delimiters, then retry strategy 1."""
    normalized = normalize_delimiters(text)
    if normalized == text:
        return None
    return parse_wrapped(normalized)


def parse_split_form(text: str) -> ToolCall | None:
    """Strategy 3: name alone inside the tags, arguments on the following lines.

    ``<tool_code>run_command</tool_code>`` followed by ``command="ls"``.
    Requires at least one parsed argument; the last such match wins.
    """
    for match in reversed(list(_SPLIT_RE.finditer(normalize_delimiters(text)))):
        args = parse_arguments(match.group(2).strip())
        if args:
            return ToolCall(name=match.group(1), arguments=args)
    return None


def parse_self_closing(text: str) -> ToolCall | None:
    """Strategy 4: ``<name key="value" ... />``, last well-formed match wins."""
    for match in reversed(list(_SELF_CLOSING_RE.finditer(normalize_delimiters(text)))):
        args = parse_arguments(match.group(2))
        if args:
            return ToolCall(name=match.group(1), arguments=args)
    return None


def _parse_vendor_arguments(block: str) -> dict[str, str] | None:
    args = parse_argument_block(block)
    if args is not None:
        return args
    # Some vendor templates put a JSON object (often fenced) after the name
    json_match = _JSON_OBJECT_RE.search(block)
    if json_match is None:
        return None
    try:
        data = json.loads(json_match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not data:
        return None
    return {str(key): value if isinstance(value, str) else json.dumps(value) for key, value in data.items()}


def parse_vendor_tokens(text: str) -> ToolCall | None:
    """Strategy 5: ``function<｜tool▁sep｜>name`` followed by argument lines.

    Terminated by a tool-call end token or end of text; first match wins.
    """
    cleaned = _VENDOR_BEGIN_RE.sub("", text)
    match = _VENDOR_CALL_RE.search(cleaned)
    if match is None:
        return None
    args = _parse_vendor_arguments(match.group(2))
    if args is None:
        return None
    return ToolCall(name=match.group(1), arguments=args)


def parse_bare_function(text: str, known_tools: Iterable[str]) -> ToolCall | None:
    """Strategy 6: ``name(args)`` on its own line, for registered names only.

    The ``)`` must close the call opened at the start of the line and be
    followed only by whitespace up to the end of that line.
    """
    names = sorted(set(known_tools), key=len, reverse=True)
    if not names:
        return None
    text = normalize_delimiters(text)
    pattern = re.compile(
        rf"^[ \t]*({'|'.join(re.escape(name) for name in names)})\(",
        re.MULTILINE,
    )
    for match in reversed(list(pattern.finditer(text))):
        end = _find_closing_paren(text, match.end())
        if end is None:
            continue
        line_end = text.find("\n", end)
        if line_end == -1:
            line_end = len(text)
        if text[end + 1:line_end].strip():
            continue
        args = parse_argument_block(text[match.end():end])
        if args is not None:
            return ToolCall(name=match.group(1), arguments=args)
    return None


def parse_fuzzy(
    text: str,
    known_tools: Iterable[str],
    zero_argument_tools: Iterable[str] = (),
) -> ToolCall | None:
    """Strategy 7: last-resort scan for ``name(...)`` anywhere in the text.

    A candidate counts when its argument block parses to at least one pair, or
    is explicitly empty for a zero-argument tool. The leftmost candidate across
    all tools wins.
    """
    zero_args = set(zero_argument_tools)
    best: tuple[int, ToolCall] | None = None

    for name in set(known_tools):
        for match in re.finditer(rf"(?<!\w){re.escape(name)}\s*\(", text):
            end = _find_closing_paren(text, match.end())
            if end is None:
                continue
            block = text[match.end():end]
            if not block.strip():
                if name not in zero_args:
                    continue
                args: dict[str, str] = {}
            else:
                args = parse_arguments(block)
                if not args:
                    continue
            if best is None or match.start() < best[0]:
                best = (match.start(), ToolCall(name=name, arguments=args))
            break

    return best[1] if best else None


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


def build_strategies(
    known_tools: Iterable[str] = (),
    zero_argument_tools: Iterable[str] = (),
) -> list[tuple[str, Strategy]]:
    """Ordered (name, strategy) pairs, most specific first."""
    known = tuple(known_tools)
    zero = tuple(zero_argument_tools)
    return [
        ("wrapped", parse_wrapped),
        ("normalized", parse_normalized),
        ("split", parse_split_form),
        ("self_closing", parse_self_closing),
        ("vendor_tokens", parse_vendor_tokens),
        ("bare_function", partial(parse_bare_function, known_tools=known)),
        ("fuzzy", partial(parse_fuzzy, known_tools=known, zero_argument_tools=zero)),
    ]


def first_success(strategies: Iterable[tuple[str, Strategy]], text: str) -> ToolCall | None:
    """Run strategies in order and return the first call found."""
    for name, strategy in strategies:
        call = strategy(text)
        if call is not None:
            logger.debug(f"Extracted {call.name} via {name} strategy")
            return call
    return None


def extract_tool_call(
    text: str,
    known_tools: Iterable[str] = (),
    zero_argument_tools: Iterable[str] = (),
) -> ToolCall | None:
    """Extract at most one tool call from ``text``.

    Args:
        text: Accumulated model response
        known_tools: Registered capability names (enables strategies 6 and 7)
        zero_argument_tools: Names that may be called with ``()``

    Returns:
        The extracted ToolCall, or None when the text is a direct answer
    """
    return first_success(build_strategies(known_tools, zero_argument_tools), text)


def strip_tool_syntax(text: str) -> str:
    """Remove wrapped tool-call blocks and stray delimiters from ``text``."""
    normalized = normalize_delimiters(text)
    normalized = re.sub(r"<tool_code>.*?</tool_code>", "", normalized, flags=re.DOTALL)
    normalized = normalized.replace(CANONICAL_OPEN, "").replace(CANONICAL_CLOSE, "")
    return normalized.strip()


class CallExtractor:
    """Extraction chain bound to a set of registered tool names."""

    def __init__(
        self,
        known_tools: Iterable[str] = (),
        zero_argument_tools: Iterable[str] = (),
    ):
        self.known_tools = tuple(known_tools)
        self.zero_argument_tools = tuple(zero_argument_tools)
        self._strategies = build_strategies(self.known_tools, self.zero_argument_tools)

    @classmethod
    def from_registry(cls, registry) -> CallExtractor:
        return cls(registry.names(), registry.zero_argument_names())

    def extract(self, text: str) -> ToolCall | None:
        return first_success(self._strategies, text)
