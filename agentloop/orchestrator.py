"""The agent loop: model turns, tool execution and final summarization."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

from agentloop.cancellation import CancellationToken
from agentloop.capabilities.base import CapabilityRegistry
from agentloop.config import Settings
from agentloop.errors import AgentLoopError, Cancelled, RepeatedCallError, TurnLimitExceeded
from agentloop.history import last_user_text, render_transcript, window_history
from agentloop.inference import InferenceClient, TokenCallback, emit_token
from agentloop.parser import CallExtractor
from agentloop.permissions import ApprovalCallback, PermissionGate
from agentloop.prompts import build_tool_system_prompt, format_observation
from agentloop.router import ModelRouter
from agentloop.schemas import LoopOutcome, LoopStatus, Message, PermissionStatus, Role, ToolCall, ToolResult
from agentloop.summarizer import Summarizer, is_numeric_observation

logger = logging.getLogger(__name__)

DONE_FALLBACK = "Done! Let me know if you need anything else."
UNCLEAR_FALLBACK = "I'm not sure how to help with that. Could you rephrase your question or be more specific?"
REJECTED_MESSAGE = "User rejected the action."


@dataclass
class _LoopState:
    """Per-request bookkeeping, discarded when the request ends."""

    turns: int = 0
    hops: int = 0
    executed_keys: set[str] = field(default_factory=set)
    model: str | None = None
    last_call: ToolCall | None = None
    last_result: ToolResult | None = None

    def outcome(self, status: LoopStatus, answer: str = "", error: str | None = None) -> LoopOutcome:
        return LoopOutcome(
            status=status,
            answer=answer,
            error=error,
            tool_call=self.last_call,
            tool_result=self.last_result,
            turns=self.turns,
            model=self.model,
        )


class AgentLoop:
    """Drives one user request from transcript to final answer.

    Each inference turn streams a response, then the extractor looks for a
    tool call. No call means the response is the answer. A call is checked
    against the permission gate, executed, and its observation is appended to
    the prompt. After ``MAX_TOOL_HOPS`` executions the observation is
    summarized into the answer and the loop stops. The loop also stops on a
    repeated call, a failing tool, an inference error, cancellation, or once
    ``MAX_TURNS`` inference calls have been made.
    """

    def __init__(
        self,
        settings: Settings,
        client: InferenceClient,
        registry: CapabilityRegistry,
        gate: PermissionGate,
        router: ModelRouter | None = None,
        summarizer: Summarizer | None = None,
        extractor: CallExtractor | None = None,
    ):
        self.settings = settings
        self.client = client
        self.registry = registry
        self.gate = gate
        self.router = router or ModelRouter(settings)
        self.summarizer = summarizer or Summarizer(client)
        self.extractor = extractor or CallExtractor.from_registry(registry)

    async def run(
        self,
        messages: Sequence[Message],
        *,
        on_token: TokenCallback | None = None,
        approve: ApprovalCallback | None = None,
        token: CancellationToken | None = None,
    ) -> LoopOutcome:
        """Run the loop over ``messages``.

        Args:
            messages: Transcript ending with the user's request
            on_token: Receives streamed text as it is generated
            approve: Asked for a decision when a call needs approval; with no
                callback such calls are rejected
            token: Cancellation token for this request

        Returns:
            LoopOutcome describing how the request ended
        """
        token = token or CancellationToken()
        state = _LoopState()
        try:
            return await self._run(messages, state, on_token, approve, token)
        except Cancelled as e:
            logger.info(f"Request cancelled after {state.turns} turns")
            return state.outcome(LoopStatus.CANCELLED, error=str(e))
        except asyncio.CancelledError:
            if not token.cancelled:
                raise
            logger.info(f"Request cancelled after {state.turns} turns")
            return state.outcome(LoopStatus.CANCELLED, error=str(Cancelled()))

    async def _run(
        self,
        messages: Sequence[Message],
        state: _LoopState,
        on_token: TokenCallback | None,
        approve: ApprovalCallback | None,
        token: CancellationToken,
    ) -> LoopOutcome:
        max_turns = self.settings.MAX_TURNS
        budget = self.settings.HISTORY_TOKEN_BUDGET
        windowed = window_history(messages, budget)
        request = last_user_text(windowed)
        state.model = self.router.select(request, windowed[:-1])
        system = build_tool_system_prompt(self.registry)
        # Grows with this request's responses and observations
        working = list(messages)

        while True:
            if state.turns >= max_turns:
                return self._turn_limit(state)
            state.turns += 1
            prompt = render_transcript(window_history(working, budget))
            logger.info(f"Turn {state.turns}/{max_turns} ({len(prompt)} chars of context)")

            try:
                result = await self.client.generate(
                    prompt, model=state.model, system=system, on_token=on_token, token=token
                )
            except Cancelled:
                raise
            except AgentLoopError as e:
                logger.error(f"Inference failed: {e}")
                return state.outcome(LoopStatus.INFERENCE_ERROR, error=str(e))

            state.model = result.model
            response = result.text
            working.append(Message(role=Role.ASSISTANT, text=response))

            call = self.extractor.extract(response)
            if call is None:
                return await self._direct_answer(state, response, on_token)

            logger.info(f"Tool call detected: {call.name}")
            state.last_call = call
            state.last_result = None

            key = call.dedup_key()
            if key in state.executed_keys:
                error = RepeatedCallError(call)
                logger.warning(str(error))
                return state.outcome(LoopStatus.REPEATED_CALL, error=str(error))
            state.executed_keys.add(key)

            tool_result = await self.execute(call, approve=approve, token=token)
            state.last_result = tool_result
            if tool_result.is_error:
                logger.warning(f"Tool {call.name} failed: {tool_result.output[:200]}")
                return state.outcome(LoopStatus.TOOL_ERROR, error=tool_result.output)

            state.hops += 1
            working.append(Message(role=Role.TOOL, text=format_observation(tool_result.output)))
            if state.hops >= self.settings.MAX_TOOL_HOPS:
                return await self._summarize(state, request, call, tool_result, on_token, token)

    async def _direct_answer(
        self,
        state: _LoopState,
        response: str,
        on_token: TokenCallback | None,
    ) -> LoopOutcome:
        answer = response.strip()
        if not answer:
            logger.info("Empty response; emitting fallback answer")
            answer = DONE_FALLBACK if state.hops else UNCLEAR_FALLBACK
            await emit_token(on_token, answer)
        return state.outcome(LoopStatus.COMPLETED, answer=answer)

    async def _summarize(
        self,
        state: _LoopState,
        request: str,
        call: ToolCall,
        tool_result: ToolResult,
        on_token: TokenCallback | None,
        token: CancellationToken,
    ) -> LoopOutcome:
        # The shortcut makes no inference call, so it does not consume a turn
        if not is_numeric_observation(tool_result.output):
            if state.turns >= self.settings.MAX_TURNS:
                return self._turn_limit(state)
            state.turns += 1

        try:
            summary = await self.summarizer.summarize(
                request, call, tool_result.output, model=state.model, on_token=on_token, token=token
            )
        except Cancelled:
            raise
        except AgentLoopError as e:
            logger.error(f"Summarization failed: {e}")
            return state.outcome(LoopStatus.INFERENCE_ERROR, error=str(e))

        return state.outcome(LoopStatus.COMPLETED, answer=summary.text)

    def _turn_limit(self, state: _LoopState) -> LoopOutcome:
        error = TurnLimitExceeded(self.settings.MAX_TURNS)
        logger.warning(str(error))
        return state.outcome(LoopStatus.TURN_LIMIT, error=str(error))

    async def execute(
        self,
        call: ToolCall,
        *,
        approve: ApprovalCallback | None = None,
        token: CancellationToken | None = None,
    ) -> ToolResult:
        """Authorize and run a single tool call.

        Every failure, including a capability raising, comes back as an
        error ToolResult. Only cancellation propagates.
        """
        token = token or CancellationToken()
        capability = self.registry.get(call.name)
        if capability is None:
            return ToolResult.error(f"Error: Tool '{call.name}' not found.")

        missing = capability.missing_arguments(call.arguments)
        if missing:
            return ToolResult.error(f"Error: Missing '{missing[0]}' argument.")

        if capability.requires_permission:
            status = self.gate.check(call)
            if status == PermissionStatus.DENIED:
                self.gate.log_denial(call)
                return ToolResult.error(f"Permission denied for '{call.name}'.")
            if status == PermissionStatus.NEEDS_APPROVAL:
                if approve is None:
                    logger.warning(f"No approval handler; rejecting {call.name}")
                    approved = False
                else:
                    approved = await token.wait_for(approve(call))
                if not approved:
                    self.gate.log_denial(call)
                    return ToolResult.error(REJECTED_MESSAGE)
                self.gate.record_approval(call, cacheable=capability.cacheable)

        logger.info(f"Executing {call.name}")
        try:
            return await token.wait_for(capability.run(call.arguments))
        except Cancelled:
            raise
        except Exception as e:
            logger.exception(f"Capability {call.name} raised")
            return ToolResult.error(f"Error executing tool: {e}")
