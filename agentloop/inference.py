"""Async Ollama client: streaming generation, retry and model fallback."""

from __future__ import annotations

import inspect
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence, Union

import httpx

from agentloop.cancellation import CancellationToken
from agentloop.config import Settings
from agentloop.errors import (
    DecodingFailure,
    InternalInconsistentState,
    InvalidResponse,
    ModelNotAvailable,
    NetworkFailure,
)
from agentloop.retry import RetryPolicy
from agentloop.schemas import Message

logger = logging.getLogger(__name__)

GENERATE_ENDPOINT = "/api/generate"
CHAT_ENDPOINT = "/api/chat"
TAGS_ENDPOINT = "/api/tags"

HEALTH_TIMEOUT = 5.0

TokenCallback = Callable[[str], Union[Awaitable[None], None]]

# Errors that say nothing about the request itself and may succeed on retry
_TRANSIENT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)
_MODEL_MISSING_RE = re.compile(r"model\b.*\bnot found", re.IGNORECASE)


@dataclass
class GenerationResult:
    """Accumulated output of one backend call.

    ``finish_reason`` is one of ``done`` (backend finished), ``stop_marker``,
    ``max_chars`` or ``eof`` (stream ended without a done chunk).
    """

    text: str
    model: str
    finish_reason: str = "done"


class _StreamingUnsupported(Exception):
    """Backend rejected a streaming request with 501."""


def truncate_at_stop_marker(text: str, markers: Sequence[str]) -> tuple[str, bool]:
    """Cut ``text`` at the earliest stop marker.

    Returns:
        Tuple of (text before the marker, whether a marker was found)
    """
    cut = -1
    for marker in markers:
        if not marker:
            continue
        index = text.find(marker)
        if index != -1 and (cut == -1 or index < cut):
            cut = index
    if cut == -1:
        return text, False
    return text[:cut], True


async def emit_token(on_token: TokenCallback | None, piece: str) -> None:
    if on_token is None:
        return
    result = on_token(piece)
    if inspect.isawaitable(result):
        await result


class InferenceClient:
    """Talks to the local Ollama backend.

    Every public generation call goes through the retry policy (transient
    network failures only) and, once a model is exhausted or reported missing,
    the configured fallback graph, bounded by ``MAX_TOTAL_ATTEMPTS``.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.settings = settings
        self.base_url = settings.OLLAMA_BASE_URL.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT)
        self._owns_client = http_client is None
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            initial_backoff=settings.RETRY_INITIAL_BACKOFF,
            multiplier=settings.RETRY_MULTIPLIER,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        system: str | None = None,
        on_token: TokenCallback | None = None,
        token: CancellationToken | None = None,
        temperature: float | None = None,
    ) -> GenerationResult:
        """Prompt-mode generation via ``/api/generate``.

        Args:
            prompt: Full prompt text (rendered transcript)
            model: Preferred model; fallbacks are tried if it is unavailable
            system: Optional system instruction
            on_token: Called with each emitted piece of text, sync or async
            token: Cancellation token checked on every received line
            temperature: Overrides the configured sampling temperature

        Returns:
            GenerationResult with the accumulated text and the model that produced it
        """
        body: dict[str, Any] = {
            "prompt": prompt,
            "system": system,
            "options": self._options(temperature),
        }
        return await self._run_with_fallback(GENERATE_ENDPOINT, body, model, on_token, token)

    async def chat(
        self,
        messages: Sequence[Message],
        *,
        model: str,
        system: str | None = None,
        on_token: TokenCallback | None = None,
        token: CancellationToken | None = None,
        temperature: float | None = None,
    ) -> GenerationResult:
        """Messages-mode generation via ``/api/chat``. Same semantics as ``generate``."""
        chat_messages = []
        if system:
            chat_messages.append({"role": "system", "content": system})
        chat_messages.extend({"role": m.role.value, "content": m.text} for m in messages)
        body: dict[str, Any] = {
            "messages": chat_messages,
            "options": self._options(temperature),
        }
        return await self._run_with_fallback(CHAT_ENDPOINT, body, model, on_token, token)

    async def check_health(self) -> bool:
        """Check if the Ollama service is reachable."""
        try:
            response = await self._client.get(self._url(TAGS_ENDPOINT), timeout=HEALTH_TIMEOUT)
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Ollama health check failed: {e}")
            return False

    async def list_models(self) -> list[str]:
        """Names of the models the backend has pulled."""
        try:
            response = await self._client.get(self._url(TAGS_ENDPOINT), timeout=HEALTH_TIMEOUT)
        except httpx.HTTPError as e:
            raise self._network_failure(e) from e
        if not response.is_success:
            raise InvalidResponse(response.status_code, self._error_detail(response.text))
        data = self._decode_chunk(response.text)
        return [m["name"] for m in data.get("models", []) if isinstance(m, dict) and "name" in m]

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Retry and fallback
    # ------------------------------------------------------------------

    async def _run_with_fallback(
        self,
        endpoint: str,
        body: dict[str, Any],
        model: str,
        on_token: TokenCallback | None,
        token: CancellationToken | None,
    ) -> GenerationResult:
        token = token or CancellationToken()
        remaining = self.settings.MAX_TOTAL_ATTEMPTS
        visited: set[str] = set()
        current: str | None = model
        last_error: Exception | None = None

        while current and current not in visited and remaining > 0:
            visited.add(current)
            policy = self.retry_policy.with_max_attempts(min(self.retry_policy.max_attempts, remaining))
            attempts = 0

            async def attempt(candidate: str = current) -> GenerationResult:
                nonlocal attempts
                attempts += 1
                return await self._request(endpoint, {**body, "model": candidate}, candidate, on_token, token)

            try:
                return await policy.execute(attempt, token)
            except ModelNotAvailable as e:
                last_error = e
            except NetworkFailure as e:
                if not e.transient:
                    raise
                last_error = e

            remaining -= attempts
            next_model = self.settings.FALLBACK_MODELS.get(current)
            if next_model and next_model not in visited and remaining > 0:
                logger.warning(f"Model {current} failed ({last_error}); falling back to {next_model}")
            current = next_model

        if last_error is None:
            raise InternalInconsistentState(f"no inference attempt was made for model '{model}'")
        raise last_error

    async def _request(
        self,
        endpoint: str,
        body: dict[str, Any],
        model: str,
        on_token: TokenCallback | None,
        token: CancellationToken,
    ) -> GenerationResult:
        if not self.settings.STREAM:
            return await self._request_once(endpoint, body, model, on_token, token)
        try:
            return await self._stream(endpoint, body, model, on_token, token)
        except _StreamingUnsupported:
            logger.info("Backend does not support streaming; retrying without it")
            return await self._request_once(endpoint, body, model, on_token, token)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _stream(
        self,
        endpoint: str,
        body: dict[str, Any],
        model: str,
        on_token: TokenCallback | None,
        token: CancellationToken,
    ) -> GenerationResult:
        max_chars = self.settings.MAX_RESPONSE_CHARS
        parts: list[str] = []
        total = 0
        finish = "eof"

        logger.debug(f"Streaming {endpoint} with {model}")
        try:
            async with self._client.stream("POST", self._url(endpoint), json={**body, "stream": True}) as response:
                if response.status_code == 501:
                    raise _StreamingUnsupported()
                if not response.is_success:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise self._classify_status(response.status_code, detail, model)

                async for line in response.aiter_lines():
                    token.raise_if_cancelled()
                    if not line.strip():
                        continue
                    chunk = self._decode_chunk(line)
                    if "error" in chunk:
                        raise self._classify_status(response.status_code, str(chunk["error"]), model)

                    piece = self._chunk_text(chunk)
                    if piece:
                        piece, hit_stop = truncate_at_stop_marker(piece, self.settings.STOP_MARKERS)
                        hit_cap = len(piece) >= max_chars - total
                        piece = piece[: max_chars - total]
                        if piece:
                            total += len(piece)
                            parts.append(piece)
                            await emit_token(on_token, piece)
                        if hit_stop:
                            finish = "stop_marker"
                            break
                        if hit_cap:
                            finish = "max_chars"
                            break

                    if chunk.get("done"):
                        finish = "done"
                        break
        except httpx.HTTPError as e:
            # Emitted text cannot be taken back, so a retry would duplicate it
            raise self._network_failure(e, transient=not parts) from e

        logger.debug(f"Stream finished ({finish}) after {total} chars")
        return GenerationResult(text="".join(parts), model=model, finish_reason=finish)

    async def _request_once(
        self,
        endpoint: str,
        body: dict[str, Any],
        model: str,
        on_token: TokenCallback | None,
        token: CancellationToken,
    ) -> GenerationResult:
        try:
            response = await token.wait_for(
                self._client.post(self._url(endpoint), json={**body, "stream": False})
            )
        except httpx.HTTPError as e:
            raise self._network_failure(e) from e

        if not response.is_success:
            raise self._classify_status(response.status_code, response.text, model)
        chunk = self._decode_chunk(response.text)
        if "error" in chunk:
            raise self._classify_status(response.status_code, str(chunk["error"]), model)

        text, hit_stop = truncate_at_stop_marker(self._chunk_text(chunk), self.settings.STOP_MARKERS)
        finish = "stop_marker" if hit_stop else "done"
        max_chars = self.settings.MAX_RESPONSE_CHARS
        if len(text) > max_chars or (len(text) == max_chars and not hit_stop):
            # The cap cut before any marker did
            text = text[:max_chars]
            finish = "max_chars"
        if text:
            await emit_token(on_token, text)
        return GenerationResult(text=text, model=model, finish_reason=finish)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    def _options(self, temperature: float | None) -> dict[str, Any]:
        return {
            "stop": list(self.settings.STOP_MARKERS),
            "temperature": self.settings.TEMPERATURE if temperature is None else temperature,
        }

    @staticmethod
    def _chunk_text(chunk: dict[str, Any]) -> str:
        if isinstance(chunk.get("response"), str):
            return chunk["response"]
        message = chunk.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        return ""

    @staticmethod
    def _decode_chunk(line: str) -> dict[str, Any]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise DecodingFailure(e) from e
        if not isinstance(data, dict):
            raise DecodingFailure(ValueError(f"expected a JSON object, got {type(data).__name__}"))
        return data

    @staticmethod
    def _error_detail(body: str) -> str:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return body.strip()[:200]
        if isinstance(data, dict) and "error" in data:
            return str(data["error"])
        return body.strip()[:200]

    def _classify_status(self, status_code: int, body: str, model: str) -> Exception:
        detail = self._error_detail(body)
        if status_code == 404 or _MODEL_MISSING_RE.search(detail):
            logger.warning(f"Model {model} is not available: {detail}")
            return ModelNotAvailable(model)
        logger.error(f"Ollama returned HTTP {status_code}: {detail}")
        return InvalidResponse(status_code, detail)

    @staticmethod
    def _network_failure(error: httpx.HTTPError, transient: bool = True) -> NetworkFailure:
        return NetworkFailure(error, transient=transient and isinstance(error, _TRANSIENT_ERRORS))
