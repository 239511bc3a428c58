"""Conversation session: owns the transcript and the single active request."""

from __future__ import annotations

import asyncio
import logging

from agentloop.cancellation import CancellationToken
from agentloop.config import Settings
from agentloop.errors import AgentLoopError, Cancelled
from agentloop.history import Transcript, window_history
from agentloop.inference import InferenceClient, TokenCallback, emit_token
from agentloop.orchestrator import UNCLEAR_FALLBACK, AgentLoop
from agentloop.permissions import ApprovalBroker, ApprovalCallback
from agentloop.prompts import build_chat_system_prompt
from agentloop.router import ModelRouter
from agentloop.schemas import LoopOutcome, LoopStatus, Role

logger = logging.getLogger(__name__)


class AgentSession:
    """One conversation with at most one request in flight.

    Submitting a new message cancels whatever is still running. Messages that
    do not look like they need tools are answered by plain chat when
    ``CHAT_ROUTING`` is enabled; everything else goes through the agent loop.
    """

    def __init__(
        self,
        settings: Settings,
        client: InferenceClient,
        loop: AgentLoop,
        approvals: ApprovalBroker,
        router: ModelRouter | None = None,
    ):
        self.settings = settings
        self.client = client
        self.loop = loop
        self.approvals = approvals
        self.router = router or loop.router
        self.transcript = Transcript()
        self._task: asyncio.Task | None = None
        self._token: CancellationToken | None = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def submit(
        self,
        text: str,
        on_token: TokenCallback | None = None,
        approve: ApprovalCallback | None = None,
    ) -> LoopOutcome:
        """Answer ``text``, cancelling any request still in flight.

        Args:
            text: User message
            on_token: Receives streamed output
            approve: Approval handler; defaults to the session's ApprovalBroker

        Returns:
            LoopOutcome for this message
        """
        text = text.strip()
        if not text:
            raise ValueError("Message must not be empty")

        await self.cancel()
        self.transcript.append(Role.USER, text)

        token = CancellationToken()
        task = asyncio.create_task(self._process(text, on_token, approve or self.approvals.request, token))
        self._token, self._task = token, task
        try:
            return await task
        finally:
            if self._task is task:
                self._task, self._token = None, None

    async def cancel(self) -> bool:
        """Cancel the active request and reject pending approvals.

        Returns:
            True if a request was running
        """
        task, token = self._task, self._token
        if token is not None:
            token.cancel()
        self.approvals.cancel_all()
        if task is None or task.done():
            return False

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Cancelled request ended with error: {e}")
        logger.info("Active request cancelled")
        return True

    async def clear(self) -> None:
        """Cancel any active request and start a fresh transcript."""
        await self.cancel()
        self.transcript = Transcript()

    async def _process(
        self,
        text: str,
        on_token: TokenCallback | None,
        approve: ApprovalCallback,
        token: CancellationToken,
    ) -> LoopOutcome:
        if self.settings.CHAT_ROUTING and not self.router.needs_tools(text):
            logger.info("Routing to plain chat")
            outcome = await self._chat(text, on_token, token)
        else:
            logger.info("Routing to agent loop")
            outcome = await self.loop.run(
                self.transcript.messages, on_token=on_token, approve=approve, token=token
            )

        if outcome.answer and outcome.status != LoopStatus.CANCELLED:
            self.transcript.append(Role.ASSISTANT, outcome.answer)
        return outcome

    async def _chat(self, text: str, on_token: TokenCallback | None, token: CancellationToken) -> LoopOutcome:
        windowed = window_history(self.transcript.messages, self.settings.HISTORY_TOKEN_BUDGET)
        model = self.router.select(text, windowed[:-1])
        try:
            result = await self.client.chat(
                windowed,
                model=model,
                system=build_chat_system_prompt(),
                on_token=on_token,
                token=token,
            )
        except Cancelled as e:
            return LoopOutcome(status=LoopStatus.CANCELLED, error=str(e), turns=1, model=model)
        except asyncio.CancelledError:
            if not token.cancelled:
                raise
            return LoopOutcome(status=LoopStatus.CANCELLED, error=str(Cancelled()), turns=1, model=model)
        except AgentLoopError as e:
            logger.error(f"Chat failed: {e}")
            return LoopOutcome(status=LoopStatus.INFERENCE_ERROR, error=str(e), turns=1, model=model)

        answer = result.text.strip()
        if not answer:
            answer = UNCLEAR_FALLBACK
            await emit_token(on_token, answer)
        return LoopOutcome(status=LoopStatus.COMPLETED, answer=answer, turns=1, model=result.model)
