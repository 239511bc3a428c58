"""Service wiring: every component is built once here and injected."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from agentloop.capabilities import CapabilityRegistry, default_registry
from agentloop.config import Settings
from agentloop.inference import InferenceClient
from agentloop.orchestrator import AgentLoop
from agentloop.permissions import ApprovalBroker, PermissionGate
from agentloop.router import ModelRouter
from agentloop.session import AgentSession

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The object graph shared by the CLI and the HTTP API."""

    settings: Settings
    client: InferenceClient
    registry: CapabilityRegistry
    gate: PermissionGate
    approvals: ApprovalBroker
    router: ModelRouter
    loop: AgentLoop
    session: AgentSession

    async def aclose(self) -> None:
        await self.session.cancel()
        await self.client.aclose()


def build_services(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    registry: CapabilityRegistry | None = None,
    gate: PermissionGate | None = None,
) -> Services:
    """Construct all services from ``settings``.

    Args:
        settings: Configuration; read from the environment when omitted
        http_client: HTTP client for the inference backend (tests inject a mock transport)
        registry: Capability registry; the built-ins when omitted
        gate: Permission gate; SQLite-backed under ``DATA_DIR`` when omitted

    Returns:
        Services with a ready AgentSession
    """
    settings = settings or Settings()
    client = InferenceClient(settings, http_client=http_client)
    if registry is None:
        registry = default_registry(settings)
    if gate is None:
        gate = PermissionGate(
            db_path=settings.permissions_db_path,
            audit_capacity=settings.AUDIT_CAPACITY,
            persist_approvals=settings.PERSIST_APPROVALS,
        )
    approvals = ApprovalBroker(timeout=settings.APPROVAL_TIMEOUT)
    router = ModelRouter(settings)
    loop = AgentLoop(settings, client, registry, gate, router=router)
    session = AgentSession(settings, client, loop, approvals, router=router)

    logger.debug(f"Services built with {len(registry)} capabilities")
    return Services(
        settings=settings,
        client=client,
        registry=registry,
        gate=gate,
        approvals=approvals,
        router=router,
        loop=loop,
        session=session,
    )
