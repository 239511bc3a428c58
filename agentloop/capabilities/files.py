"""Filesystem capabilities: read, list and write."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Mapping

from agentloop.capabilities.base import Capability
from agentloop.schemas import ToolResult

logger = logging.getLogger(__name__)

# Refuse to load anything bigger than this into the transcript
MAX_READ_BYTES = 256 * 1024  # 256KB


def _read_text(path: Path) -> ToolResult:
    size = path.stat().st_size
    if size > MAX_READ_BYTES:
        return ToolResult.error(f"Error reading file: {path} is {size} bytes, limit is {MAX_READ_BYTES}.")
    data = path.read_bytes()
    try:
        return ToolResult(output=data.decode("utf-8"))
    except UnicodeDecodeError:
        return ToolResult.error("Error: File is not valid UTF-8 text.")


def _list_dir(path: Path) -> ToolResult:
    entries = sorted(
        f"{child.name}/" if child.is_dir() else child.name for child in path.iterdir()
    )
    if not entries:
        return ToolResult(output="(Directory is empty)")
    return ToolResult(output="\n".join(entries))


def _write_text(path: Path, content: str) -> ToolResult:
    # Write to a sibling temp file first so a failed write never truncates the target
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(content, encoding="utf-8")
    tmp_path.replace(path)
    return ToolResult(output=f"Successfully wrote to {path}.")


class ReadFile(Capability):
    name = "read_file"
    description = "Reads the contents of a UTF-8 text file at the given absolute path."
    usage_template = '<tool_code>read_file(path="<absolute_path>")</tool_code>'
    requires_permission = True
    cacheable = True
    required_arguments = ("path",)

    async def run(self, arguments: Mapping[str, str]) -> ToolResult:
        path = Path(arguments["path"]).expanduser()
        try:
            return await asyncio.to_thread(_read_text, path)
        except OSError as e:
            logger.warning(f"read_file failed for {path}: {e}")
            return ToolResult.error(f"Error reading file: {e}")


class ListDir(Capability):
    name = "list_dir"
    description = "Lists the files and subdirectories in a directory. Directories end with '/'."
    usage_template = '<tool_code>list_dir(path="<absolute_path>")</tool_code>'
    requires_permission = False
    cacheable = False
    required_arguments = ("path",)

    async def run(self, arguments: Mapping[str, str]) -> ToolResult:
        path = Path(arguments["path"]).expanduser()
        try:
            return await asyncio.to_thread(_list_dir, path)
        except OSError as e:
            logger.warning(f"list_dir failed for {path}: {e}")
            return ToolResult.error(f"Error listing directory: {e}")


class WriteFile(Capability):
    name = "write_file"
    description = "Writes content to the file at the given absolute path, overwriting it if it exists."
    usage_template = '<tool_code>write_file(path="<absolute_path>", content="<file_content>")</tool_code>'
    requires_permission = True
    cacheable = False
    required_arguments = ("path", "content")

    async def run(self, arguments: Mapping[str, str]) -> ToolResult:
        path = Path(arguments["path"]).expanduser()
        try:
            return await asyncio.to_thread(_write_text, path, arguments["content"])
        except OSError as e:
            logger.warning(f"write_file failed for {path}: {e}")
            return ToolResult.error(f"Error writing file: {e}")
