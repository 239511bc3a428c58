"""System prompts for the agent loop, plain chat and summarization."""

from __future__ import annotations

import getpass
from pathlib import Path
from typing import Iterable

from agentloop.capabilities.base import Capability
from agentloop.schemas import ToolCall

OBSERVATION_HEADER = "Observation:"

# Observations longer than this are clipped before summarization
MAX_OBSERVATION_CHARS = 6000


def build_tool_system_prompt(capabilities: Iterable[Capability], home: Path | None = None) -> str:
    """System prompt for agent-loop turns: available tools and the call format."""
    home = home or Path.home()
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"

    parts = ["You are an autonomous assistant that EXECUTES actions on the user's machine."]
    parts.append("")
    parts.append("When the user asks you to do something that needs a tool, respond with the tool call only.")
    parts.append("Do not explain how the user could do it themselves. Do not wrap the call in prose.")
    parts.append("When no tool is needed, answer directly and concisely.")
    parts.append("")
    parts.append("SYSTEM PATHS:")
    parts.append(f"- Home: {home}")
    parts.append(f"- Desktop: {home / 'Desktop'}")
    parts.append(f"- Documents: {home / 'Documents'}")
    parts.append(f"- User: {user}")
    parts.append("")
    parts.append("AVAILABLE TOOLS:")
    for capability in capabilities:
        parts.append(f"- {capability.name}: {capability.description}")
        parts.append(f"  Usage: {capability.usage_template}")
    parts.append("")
    parts.append('FORMAT: <tool_code>tool_name(arg="value")</tool_code>')
    parts.append("Use double quotes around every value. Escape quotes as \\\" and newlines as \\n.")
    parts.append("")
    parts.append("EXAMPLES:")
    parts.append('- List a folder: <tool_code>list_dir(path="/tmp")</tool_code>')
    parts.append('- Create a file: <tool_code>write_file(path="/tmp/note.txt", content="hello")</tool_code>')
    parts.append('- Run a command: <tool_code>run_command(command="ls ~/Pictures | wc -l")</tool_code>')
    parts.append("")
    parts.append("Output at most ONE tool call per response.")

    return "\n".join(parts)


def build_chat_system_prompt() -> str:
    """System prompt for plain conversation, without tool instructions."""
    parts = ["You are a helpful local assistant."]
    parts.append("Be concise, direct and accurate. Answer in plain text or Markdown.")
    parts.append("You cannot run tools in this mode; do not output tool-call syntax.")
    return "\n".join(parts)


def build_summary_system_prompt() -> str:
    """System prompt for turning a tool observation into the final answer."""
    parts = ["You turn raw tool output into a short answer to the user's request."]
    parts.append("Rules:")
    parts.append("- Answer the user's question directly using only the observation.")
    parts.append("- Be brief: one or two sentences unless the user asked for details.")
    parts.append("- NEVER output tool calls, <tool_code> tags or function-call syntax.")
    parts.append("- Do not mention the observation, the tool or these instructions.")
    return "\n".join(parts)


def format_observation(output: str) -> str:
    """Observation text recorded in the transcript after a tool runs."""
    return f"{OBSERVATION_HEADER}\n{output}"


def build_summary_prompt(request: str, call: ToolCall, observation: str) -> str:
    """Prompt for the summarization call."""
    if len(observation) > MAX_OBSERVATION_CHARS:
        observation = observation[:MAX_OBSERVATION_CHARS] + "\n... [truncated]"

    parts = [f"User request: {request}"]
    parts.append(f"Action taken: {call.name}")
    parts.append("")
    parts.append(OBSERVATION_HEADER)
    parts.append(observation)
    parts.append("")
    parts.append("Answer:")
    return "\n".join(parts)
