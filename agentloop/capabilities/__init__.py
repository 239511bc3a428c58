"""Capabilities the agent loop can invoke."""

from __future__ import annotations

from agentloop.capabilities.base import Capability, CapabilityRegistry
from agentloop.capabilities.files import ListDir, ReadFile, WriteFile
from agentloop.capabilities.shell import RunCommand
from agentloop.capabilities.web import FetchUrl
from agentloop.config import Settings

__all__ = [
    "Capability",
    "CapabilityRegistry",
    "FetchUrl",
    "ListDir",
    "ReadFile",
    "RunCommand",
    "WriteFile",
    "default_registry",
]


def default_registry(settings: Settings) -> CapabilityRegistry:
    """Registry with the built-in capabilities configured from ``settings``."""
    registry = CapabilityRegistry()
    registry.register(ReadFile())
    registry.register(ListDir())
    registry.register(WriteFile())
    registry.register(
        RunCommand(
            timeout=settings.COMMAND_TIMEOUT,
            kill_grace=settings.COMMAND_KILL_GRACE,
            max_output_bytes=settings.MAX_OUTPUT_BYTES,
            capability_names=registry.names,
        )
    )
    registry.register(FetchUrl())
    return registry
