"""HTTP API for the agent session."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from agentloop import __version__
from agentloop.schemas import (
    ActionResponse,
    ApprovalDecision,
    AuditEntry,
    ChatRequest,
    ErrorResponse,
    HealthResponse,
    LoopOutcome,
    PendingApprovalView,
    PermissionScope,
)
from agentloop.services import Services, build_services

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    """Services attached to the app, built on first use when none were injected."""
    services = request.app.state.services
    if services is None:
        services = build_services()
        request.app.state.services = services
    return services


def create_app(services: Services | None = None) -> FastAPI:
    """Build the API.

    Args:
        services: Pre-built services; when omitted they are built from the
            environment on the first request

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if app.state.services is not None:
            await app.state.services.aclose()

    app = FastAPI(
        title="AgentLoop API",
        description="Tool-calling agent loop over a local Ollama backend",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.post("/chat", response_model=LoopOutcome)
    async def chat(request: ChatRequest, services: Services = Depends(get_services)) -> LoopOutcome:
        """Answer a message. Cancels any request still in flight."""
        logger.info(f"Received chat request ({len(request.message)} chars)")
        try:
            outcome = await services.session.submit(request.message)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        logger.info(f"Completed chat request: status={outcome.status.value}, turns={outcome.turns}")
        return outcome

    @app.post("/cancel", response_model=ActionResponse)
    async def cancel(services: Services = Depends(get_services)) -> ActionResponse:
        cancelled = await services.session.cancel()
        return ActionResponse(ok=cancelled, detail="" if cancelled else "No active request")

    @app.get("/approvals", response_model=list[PendingApprovalView])
    async def list_approvals(services: Services = Depends(get_services)) -> list[PendingApprovalView]:
        """Tool calls waiting for a decision."""
        return [
            PendingApprovalView(request_id=p.request_id, tool_call=p.call, created_at=p.created_at)
            for p in services.approvals.pending()
        ]

    @app.post("/approvals/{request_id}", response_model=ActionResponse)
    async def resolve_approval(
        request_id: str,
        decision: ApprovalDecision,
        services: Services = Depends(get_services),
    ) -> ActionResponse:
        if not services.approvals.resolve(request_id, decision.approved):
            raise HTTPException(
                status_code=404,
                detail=f"No pending approval with id: {request_id}",
            )
        return ActionResponse(ok=True)

    @app.get("/permissions", response_model=list[PermissionScope])
    async def list_permissions(services: Services = Depends(get_services)) -> list[PermissionScope]:
        return services.gate.scopes()

    @app.delete("/permissions/{tool_name}", response_model=ActionResponse)
    async def revoke_permission(tool_name: str, services: Services = Depends(get_services)) -> ActionResponse:
        if not services.gate.revoke(tool_name):
            raise HTTPException(
                status_code=404,
                detail=f"No permission stored for tool: {tool_name}",
            )
        return ActionResponse(ok=True)

    @app.get("/audit", response_model=list[AuditEntry])
    async def audit(
        limit: int = Query(100, ge=1, le=10_000),
        services: Services = Depends(get_services),
    ) -> list[AuditEntry]:
        """Most recent approvals and denials, oldest first."""
        return services.gate.audit_entries(limit=limit)

    @app.get("/health", response_model=HealthResponse)
    async def health(services: Services = Depends(get_services)) -> HealthResponse:
        """Check API and Ollama health."""
        ollama_healthy = await services.client.check_health()
        return HealthResponse(
            api="healthy",
            ollama="healthy" if ollama_healthy else "unhealthy",
            busy=services.session.busy,
            pending_approvals=len(services.approvals.pending()),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                detail=str(exc),
                error_code="INTERNAL_ERROR",
            ).model_dump(),
        )

    return app


app = create_app()
