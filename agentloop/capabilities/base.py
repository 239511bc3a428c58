"""Capability contract and registry."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterator, Mapping

from agentloop.schemas import ToolResult

logger = logging.getLogger(__name__)


class Capability(ABC):
    """A tool the agent loop can invoke.

    Subclasses set the descriptive class attributes and implement ``run``.
    ``run`` receives the raw string arguments extracted from model output and
    must return a ToolResult; it may raise, in which case the loop wraps the
    exception into an error result.
    """

    name: str = ""
    description: str = ""
    usage_template: str = ""
    requires_permission: bool = False
    cacheable: bool = False
    required_arguments: tuple[str, ...] = ()

    def missing_arguments(self, arguments: Mapping[str, str]) -> list[str]:
        """Required argument names absent from ``arguments``."""
        return [key for key in self.required_arguments if key not in arguments]

    @abstractmethod
    async def run(self, arguments: Mapping[str, str]) -> ToolResult:
        """Execute the capability."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class CapabilityRegistry:
    """Capabilities keyed by their unique name, in registration order."""

    def __init__(self, capabilities: list[Capability] | None = None):
        self._capabilities: dict[str, Capability] = {}
        for capability in capabilities or []:
            self.register(capability)

    def register(self, capability: Capability) -> Capability:
        """Add a capability.

        Raises:
            ValueError: If the name is empty or already registered
        """
        if not capability.name:
            raise ValueError(f"Capability {type(capability).__name__} has no name.")
        if capability.name in self._capabilities:
            raise ValueError(f"Capability '{capability.name}' is already registered.")
        logger.debug(f"Registering capability '{capability.name}'")
        self._capabilities[capability.name] = capability
        return capability

    def get(self, name: str) -> Capability | None:
        return self._capabilities.get(name)

    def names(self) -> list[str]:
        return list(self._capabilities)

    def zero_argument_names(self) -> list[str]:
        """Names of capabilities that may be called with no arguments."""
        return [c.name for c in self._capabilities.values() if not c.required_arguments]

    def __contains__(self, name: object) -> bool:
        return name in self._capabilities

    def __iter__(self) -> Iterator[Capability]:
        return iter(self._capabilities.values())

    def __len__(self) -> int:
        return len(self._capabilities)
