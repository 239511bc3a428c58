"""Pytest configuration and fixtures for AgentLoop tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Mapping

import httpx
import pytest

from agentloop.capabilities.base import Capability, CapabilityRegistry
from agentloop.config import Settings
from agentloop.inference import GenerationResult, emit_token
from agentloop.permissions import PermissionGate
from agentloop.schemas import ToolResult


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the user's environment, with no retry delay."""
    return Settings(
        DATA_DIR=str(tmp_path / "data"),
        OLLAMA_BASE_URL="http://ollama.test",
        RETRY_INITIAL_BACKOFF=0.0,
        COMMAND_TIMEOUT=10.0,
        COMMAND_KILL_GRACE=1.0,
        CHAT_ROUTING=True,
    )


@pytest.fixture
def gate() -> PermissionGate:
    """In-memory permission gate."""
    return PermissionGate()


class FakeCapability(Capability):
    """Capability returning a canned result and recording its calls."""

    def __init__(
        self,
        name: str,
        output: str = "ok",
        is_error: bool = False,
        requires_permission: bool = False,
        cacheable: bool = False,
        required_arguments: tuple[str, ...] = (),
        raises: Exception | None = None,
    ):
        self.name = name
        self.description = f"Fake {name}"
        self.usage_template = f"<tool_code>{name}()</tool_code>"
        self.requires_permission = requires_permission
        self.cacheable = cacheable
        self.required_arguments = required_arguments
        self.output = output
        self.is_error = is_error
        self.raises = raises
        self.calls: list[dict[str, str]] = []

    async def run(self, arguments: Mapping[str, str]) -> ToolResult:
        self.calls.append(dict(arguments))
        if self.raises is not None:
            raise self.raises
        return ToolResult(output=self.output, is_error=self.is_error)


@pytest.fixture
def make_capability() -> Callable[..., FakeCapability]:
    return FakeCapability


@pytest.fixture
def registry() -> CapabilityRegistry:
    """Registry with fake file and shell capabilities."""
    return CapabilityRegistry([
        FakeCapability("read_file", output="file contents", requires_permission=True,
                       cacheable=True, required_arguments=("path",)),
        FakeCapability("list_dir", output="a.txt\nb.txt", required_arguments=("path",)),
        FakeCapability("run_command", output="5", requires_permission=True,
                       required_arguments=("command",)),
    ])


class ScriptedClient:
    """Stands in for InferenceClient, replaying scripted responses in order.

    Each entry is either response text or an exception to raise.
    """

    def __init__(self, responses: list[Any], chat_responses: list[Any] | None = None):
        self.responses = list(responses)
        self.chat_responses = list(chat_responses or [])
        self.prompts: list[str] = []
        self.systems: list[str | None] = []
        self.models: list[str] = []
        self.chat_calls = 0

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def _reply(self, queue: list[Any], model: str, on_token) -> GenerationResult:
        if not queue:
            raise AssertionError("ScriptedClient ran out of responses")
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        await emit_token(on_token, item)
        return GenerationResult(text=item, model=model)

    async def generate(self, prompt, *, model, system=None, on_token=None, token=None, temperature=None):
        self.prompts.append(prompt)
        self.systems.append(system)
        self.models.append(model)
        if token is not None:
            token.raise_if_cancelled()
        return await self._reply(self.responses, model, on_token)

    async def chat(self, messages, *, model, system=None, on_token=None, token=None, temperature=None):
        self.chat_calls += 1
        self.models.append(model)
        return await self._reply(self.chat_responses, model, on_token)

    async def check_health(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


@pytest.fixture
def make_client() -> Callable[..., ScriptedClient]:
    return ScriptedClient


def _ndjson(*chunks: dict[str, Any]) -> bytes:
    return b"".join(json.dumps(chunk).encode("utf-8") + b"\n" for chunk in chunks)


@pytest.fixture
def ndjson() -> Callable[..., bytes]:
    """Line-delimited JSON body as streamed by Ollama."""
    return _ndjson


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an AsyncClient whose requests are answered by ``handler``."""

    def build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return build
