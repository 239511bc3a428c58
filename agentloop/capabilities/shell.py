"""Shell command capability with output capture and timeout escalation."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import threading
from typing import Callable, Iterable, Mapping

from agentloop.capabilities.base import Capability
from agentloop.schemas import ToolResult

logger = logging.getLogger(__name__)

# Output limits
MAX_OUTPUT_BYTES = 10 * 1024  # 10KB

# Default timeout
DEFAULT_TIMEOUT = 60.0  # seconds
DEFAULT_KILL_GRACE = 5.0  # seconds between SIGINT and SIGKILL

READ_CHUNK_BYTES = 4096
TRUNCATION_NOTE = "\n... [output truncated]"

# Destructive command shapes, always denied
BLOCKLIST = [
    r"rm\s+-[a-z]*r[a-z]*f[a-z]*\s+(/|~)(\s|$)",
    r"rm\s+-[a-z]*f[a-z]*r[a-z]*\s+(/|~)(\s|$)",
    r"\bsudo\b",
    r"\bsu\s",
    r"\bdd\b\s+.*of=/dev/",
    r"\bmkfs\b",
    r"\bshutdown\b",
    r"\breboot\b",
    r"\bhalt\b",
    r":\(\)\s*\{\s*:\|:&\s*\};:",  # Fork bomb
    r">\s*/dev/(sd|disk|nvme)",  # Overwrite a block device
    r"\|\s*(ba|z)?sh\b",  # Pipe to shell
]


class OutputBuffer:
    """Lock-protected byte accumulator shared between reader tasks and the caller.

    Holds at most ``limit`` bytes; anything past that is dropped and sets
    ``truncated``.
    """

    def __init__(self, limit: int | None = None) -> None:
        self.limit = limit
        self.truncated = False
        self._chunks: list[bytes] = []
        self._size = 0
        self._lock = threading.Lock()

    def append(self, chunk: bytes) -> None:
        with self._lock:
            if self.limit is not None:
                room = self.limit - self._size
                if len(chunk) > room:
                    chunk = chunk[:max(room, 0)]
                    self.truncated = True
            if chunk:
                self._chunks.append(chunk)
                self._size += len(chunk)

    def read(self) -> bytes:
        with self._lock:
            return b"".join(self._chunks)

    def text(self) -> str:
        if self.truncated:
            # The cut may have split a multi-byte character
            return self.read().decode("utf-8", errors="ignore") + TRUNCATION_NOTE
        return self.read().decode("utf-8", errors="replace")


def validate_command(command: str) -> tuple[bool, str]:
    """Validate command against the blocklist.

    Returns:
        Tuple of (allowed, reason)
    """
    for pattern in BLOCKLIST:
        if re.search(pattern, command, re.IGNORECASE):
            return False, f"Blocked: matches dangerous pattern '{pattern}'"
    return True, "Allowed"


async def _drain(stream: asyncio.StreamReader | None, buffer: OutputBuffer) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        buffer.append(chunk)


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    # The shell runs in its own session, so signal the whole group
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


class RunCommand(Capability):
    """Runs a command through ``/bin/sh -c`` and returns its output."""

    name = "run_command"
    description = "Executes a shell command on the system and returns stdout and stderr. Use with caution."
    usage_template = '<tool_code>run_command(command="<command_string>")</tool_code>'
    requires_permission = True
    cacheable = False
    required_arguments = ("command",)

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        capability_names: Callable[[], Iterable[str]] | None = None,
    ):
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.max_output_bytes = max_output_bytes
        self._capability_names = capability_names or (lambda: ())

    async def run(self, arguments: Mapping[str, str]) -> ToolResult:
        command = arguments.get("command", "").strip()
        if not command:
            return ToolResult.error("Error: Missing 'command' argument.")

        misuse = self._capability_misuse(command)
        if misuse:
            return ToolResult.error(misuse)

        allowed, reason = validate_command(command)
        if not allowed:
            logger.warning(f"Command blocked: {command} - {reason}")
            return ToolResult.error(f"Command blocked: {reason}")

        logger.info(f"Executing command: {command}")
        try:
            return await self._execute(command, arguments.get("cwd") or None)
        except OSError as e:
            logger.error(f"Command execution failed: {e}")
            return ToolResult.error(f"Failed to run command: {e}")

    def _capability_misuse(self, command: str) -> str | None:
        program = command.split()[0]
        names = set(self._capability_names()) - {self.name}
        if program not in names:
            return None
        return (
            f"Error: '{program}' is a tool, not a shell command.\n\n"
            f"Call it directly instead, for example: <tool_code>{program}(...)</tool_code>\n\n"
            "Do not use run_command for this."
        )

    async def _execute(self, command: str, cwd: str | None) -> ToolResult:
        process = await asyncio.create_subprocess_exec(
            "/bin/sh",
            "-c",
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            start_new_session=True,
        )
        stdout = OutputBuffer(self.max_output_bytes)
        stderr = OutputBuffer(self.max_output_bytes)
        readers = [
            asyncio.create_task(_drain(process.stdout, stdout)),
            asyncio.create_task(_drain(process.stderr, stderr)),
        ]
        timed_out = False

        try:
            await asyncio.wait_for(process.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"Command timed out after {self.timeout}s: {command}")
            await self._terminate(process)
        except asyncio.CancelledError:
            logger.info(f"Command cancelled: {command}")
            await self._terminate(process)
            raise
        finally:
            _, pending = await asyncio.wait(readers, timeout=self.kill_grace)
            for reader in pending:
                reader.cancel()

        output = stdout.text()
        errors = stderr.text()
        combined = output + (f"\nSTDERR:\n{errors}" if errors else "")

        if timed_out:
            return ToolResult.error(f"Command timed out after {self.timeout:g} seconds.\n{combined}".rstrip())
        if process.returncode != 0:
            return ToolResult.error(f"Command failed (Exit {process.returncode}):\n{combined}")
        return ToolResult(output=combined.strip())

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Interrupt the process group, then kill it if it outlives the grace period."""
        if process.returncode is not None:
            return
        _signal_group(process, signal.SIGINT)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} ignored SIGINT; sending SIGKILL")
            _signal_group(process, signal.SIGKILL)
            await process.wait()
