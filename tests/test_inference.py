"""Tests for the Ollama inference client."""

import json

import httpx
import pytest

from agentloop.cancellation import CancellationToken
from agentloop.errors import (
    Cancelled,
    DecodingFailure,
    InvalidResponse,
    ModelNotAvailable,
    NetworkFailure,
)
from agentloop.inference import InferenceClient, truncate_at_stop_marker
from agentloop.schemas import Message, Role


class Recorder:
    """MockTransport handler that records request bodies and replays responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.bodies = []
        self.paths = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        if request.content:
            self.bodies.append(json.loads(request.content))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if callable(response):
            return response(request)
        return response

    @property
    def models(self):
        return [body["model"] for body in self.bodies]


def _raise(error_type):
    def handler(request):
        raise error_type("connection refused", request=request)

    return handler


class TestTruncateAtStopMarker:
    """Test stop-marker truncation."""

    def test_earliest_marker_wins(self):
        text, found = truncate_at_stop_marker("abc<|user|>def<|end|>", ["<|end|>", "<|user|>"])
        assert (text, found) == ("abc", True)

    def test_no_marker(self):
        assert truncate_at_stop_marker("plain", ["<|end|>"]) == ("plain", False)

    def test_empty_marker_ignored(self):
        assert truncate_at_stop_marker("plain", [""]) == ("plain", False)


class TestStreaming:
    """Test streaming generation."""

    @pytest.mark.asyncio
    async def test_accumulates_chunks(self, settings, mock_http, ndjson):
        """Chunks are emitted in order and accumulated."""
        handler = Recorder(httpx.Response(200, content=ndjson(
            {"response": "Hel", "done": False},
            {"response": "lo", "done": False},
            {"response": "", "done": True},
        )))
        client = InferenceClient(settings, http_client=mock_http(handler))
        tokens = []

        result = await client.generate("Say hello", model="llama3.2", system="Be brief", on_token=tokens.append)

        assert result.text == "Hello"
        assert result.model == "llama3.2"
        assert result.finish_reason == "done"
        assert tokens == ["Hel", "lo"]
        body = handler.bodies[0]
        assert handler.paths == ["/api/generate"]
        assert body["stream"] is True
        assert body["prompt"] == "Say hello"
        assert body["system"] == "Be brief"
        assert body["options"]["stop"] == settings.STOP_MARKERS

    @pytest.mark.asyncio
    async def test_async_token_callback(self, settings, mock_http, ndjson):
        handler = Recorder(httpx.Response(200, content=ndjson({"response": "hi", "done": True})))
        client = InferenceClient(settings, http_client=mock_http(handler))
        tokens = []

        async def on_token(piece):
            tokens.append(piece)

        await client.generate("x", model="llama3.2", on_token=on_token)
        assert tokens == ["hi"]

    @pytest.mark.asyncio
    async def test_stop_marker_ends_stream(self, settings, mock_http, ndjson):
        """Text from the marker onward is never emitted."""
        handler = Recorder(httpx.Response(200, content=ndjson(
            {"response": "Hi<|end|>ignored", "done": False},
            {"response": "more", "done": False},
            {"response": "", "done": True},
        )))
        client = InferenceClient(settings, http_client=mock_http(handler))
        tokens = []

        result = await client.generate("x", model="llama3.2", on_token=tokens.append)

        assert result.text == "Hi"
        assert result.finish_reason == "stop_marker"
        assert tokens == ["Hi"]

    @pytest.mark.asyncio
    async def test_max_chars_clips_exactly(self, settings, mock_http, ndjson):
        settings.MAX_RESPONSE_CHARS = 5
        handler = Recorder(httpx.Response(200, content=ndjson(
            {"response": "abc", "done": False},
            {"response": "def", "done": False},
            {"response": "ghi", "done": True},
        )))
        client = InferenceClient(settings, http_client=mock_http(handler))

        result = await client.generate("x", model="llama3.2")

        assert result.text == "abcde"
        assert result.finish_reason == "max_chars"

    @pytest.mark.asyncio
    async def test_eof_without_done(self, settings, mock_http, ndjson):
        handler = Recorder(httpx.Response(200, content=ndjson({"response": "partial"})))
        client = InferenceClient(settings, http_client=mock_http(handler))

        result = await client.generate("x", model="llama3.2")

        assert result.text == "partial"
        assert result.finish_reason == "eof"

    @pytest.mark.asyncio
    async def test_chat_endpoint(self, settings, mock_http, ndjson):
        """Messages mode sends the system message first and reads message content."""
        handler = Recorder(httpx.Response(200, content=ndjson(
            {"message": {"role": "assistant", "content": "Hi there"}, "done": True},
        )))
        client = InferenceClient(settings, http_client=mock_http(handler))

        result = await client.chat(
            [Message(role=Role.USER, text="hello")], model="llama3.2", system="Be kind"
        )

        assert result.text == "Hi there"
        assert handler.paths == ["/api/chat"]
        assert handler.bodies[0]["messages"] == [
            {"role": "system", "content": "Be kind"},
            {"role": "user", "content": "hello"},
        ]

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self, settings, mock_http, ndjson):
        """A cancelled token stops the stream at the next line."""
        handler = Recorder(httpx.Response(200, content=ndjson(
            {"response": "a", "done": False},
            {"response": "b", "done": False},
            {"response": "c", "done": True},
        )))
        client = InferenceClient(settings, http_client=mock_http(handler))
        token = CancellationToken()
        tokens = []

        def on_token(piece):
            tokens.append(piece)
            token.cancel()

        with pytest.raises(Cancelled):
            await client.generate("x", model="llama3.2", on_token=on_token, token=token)
        assert tokens == ["a"]


class TestNonStreaming:
    """Test the single-response path."""

    @pytest.mark.asyncio
    async def test_501_falls_back_to_single_response(self, settings, mock_http):
        handler = Recorder(
            httpx.Response(501, text="streaming not implemented"),
            httpx.Response(200, json={"response": "full text", "done": True}),
        )
        client = InferenceClient(settings, http_client=mock_http(handler))
        tokens = []

        result = await client.generate("x", model="llama3.2", on_token=tokens.append)

        assert result.text == "full text"
        assert tokens == ["full text"]
        assert [body["stream"] for body in handler.bodies] == [True, False]

    @pytest.mark.asyncio
    async def test_streaming_disabled(self, settings, mock_http):
        settings.STREAM = False
        handler = Recorder(httpx.Response(200, json={"response": "Hi<|end|>junk", "done": True}))
        client = InferenceClient(settings, http_client=mock_http(handler))

        result = await client.generate("x", model="llama3.2")

        assert result.text == "Hi"
        assert result.finish_reason == "stop_marker"
        assert handler.bodies[0]["stream"] is False

    @pytest.mark.asyncio
    async def test_char_cap_applies_before_late_stop_marker(self, settings, mock_http):
        """Text before a stop marker is still clipped to the cap."""
        settings.STREAM = False
        settings.MAX_RESPONSE_CHARS = 10
        handler = Recorder(httpx.Response(200, json={"response": "x" * 50 + "<|end|>", "done": True}))
        client = InferenceClient(settings, http_client=mock_http(handler))

        result = await client.generate("x", model="llama3.2")

        assert result.text == "x" * 10
        assert result.finish_reason == "max_chars"

    @pytest.mark.asyncio
    async def test_char_cap_without_stop_marker(self, settings, mock_http):
        settings.STREAM = False
        settings.MAX_RESPONSE_CHARS = 4
        handler = Recorder(httpx.Response(200, json={"response": "abcdefgh", "done": True}))
        client = InferenceClient(settings, http_client=mock_http(handler))

        result = await client.generate("x", model="llama3.2")

        assert result.text == "abcd"
        assert result.finish_reason == "max_chars"


class TestErrors:
    """Test error classification, retry and fallback."""

    @pytest.mark.asyncio
    async def test_missing_model_falls_back(self, settings, mock_http, ndjson):
        """A 404 for the requested model moves on to its fallback."""

        def respond(request):
            if json.loads(request.content)["model"] == "dolphin-llama3":
                return httpx.Response(404, json={"error": "model 'dolphin-llama3' not found"})
            return httpx.Response(200, content=ndjson({"response": "from fallback", "done": True}))

        handler = Recorder(respond)
        client = InferenceClient(settings, http_client=mock_http(handler))

        result = await client.generate("x", model="dolphin-llama3")

        assert result.text == "from fallback"
        assert result.model == "llama3.2"
        assert handler.models == ["dolphin-llama3", "llama3.2"]

    @pytest.mark.asyncio
    async def test_missing_model_without_fallback(self, settings, mock_http):
        handler = Recorder(httpx.Response(404, json={"error": "model 'llama3.2' not found"}))
        client = InferenceClient(settings, http_client=mock_http(handler))

        with pytest.raises(ModelNotAvailable):
            await client.generate("x", model="llama3.2")
        assert handler.models == ["llama3.2"]

    @pytest.mark.asyncio
    async def test_not_found_detail_in_error_chunk(self, settings, mock_http, ndjson):
        """An in-band 'model not found' error is treated like a 404."""
        handler = Recorder(httpx.Response(200, content=ndjson({"error": "model \"x\" not found, try pulling it first"})))
        client = InferenceClient(settings, http_client=mock_http(handler))

        with pytest.raises(ModelNotAvailable):
            await client.generate("x", model="llama3.2")

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, settings, mock_http, ndjson):
        handler = Recorder(
            _raise(httpx.ConnectError),
            httpx.Response(200, content=ndjson({"response": "ok", "done": True})),
        )
        client = InferenceClient(settings, http_client=mock_http(handler))

        result = await client.generate("x", model="llama3.2")

        assert result.text == "ok"
        assert handler.models == ["llama3.2", "llama3.2"]

    @pytest.mark.asyncio
    async def test_total_attempt_budget(self, settings, mock_http):
        """Retries and fallbacks together never exceed MAX_TOTAL_ATTEMPTS."""
        handler = Recorder(_raise(httpx.ConnectError))
        client = InferenceClient(settings, http_client=mock_http(handler))

        with pytest.raises(NetworkFailure):
            await client.generate("x", model="deepseek-coder-v2:16b")

        assert len(handler.models) == settings.MAX_TOTAL_ATTEMPTS
        assert handler.models[:3] == ["deepseek-coder-v2:16b"] * 3
        assert handler.models[3:] == ["dolphin-llama3"] * 3

    @pytest.mark.asyncio
    async def test_server_error_not_retried(self, settings, mock_http):
        handler = Recorder(httpx.Response(500, json={"error": "out of memory"}))
        client = InferenceClient(settings, http_client=mock_http(handler))

        with pytest.raises(InvalidResponse) as exc_info:
            await client.generate("x", model="dolphin-llama3")

        assert exc_info.value.status_code == 500
        assert exc_info.value.detail == "out of memory"
        assert handler.models == ["dolphin-llama3"]

    @pytest.mark.asyncio
    async def test_error_chunk(self, settings, mock_http, ndjson):
        handler = Recorder(httpx.Response(200, content=ndjson({"error": "context overflow"})))
        client = InferenceClient(settings, http_client=mock_http(handler))

        with pytest.raises(InvalidResponse, match="context overflow"):
            await client.generate("x", model="llama3.2")

    @pytest.mark.asyncio
    async def test_undecodable_chunk(self, settings, mock_http):
        handler = Recorder(httpx.Response(200, content=b"not json\n"))
        client = InferenceClient(settings, http_client=mock_http(handler))

        with pytest.raises(DecodingFailure):
            await client.generate("x", model="llama3.2")
        assert len(handler.models) == 1

    @pytest.mark.asyncio
    async def test_no_retry_after_tokens_emitted(self, settings, mock_http):
        """A stream that drops after emitting text is not replayed."""

        async def body():
            yield b'{"response": "partial", "done": false}\n'
            raise httpx.ReadError("connection reset")

        handler = Recorder(lambda request: httpx.Response(200, content=body()))
        client = InferenceClient(settings, http_client=mock_http(handler))
        tokens = []

        with pytest.raises(NetworkFailure) as exc_info:
            await client.generate("x", model="llama3.2", on_token=tokens.append)

        assert exc_info.value.transient is False
        assert tokens == ["partial"]
        assert len(handler.models) == 1


class TestBackendInfo:
    """Test health and model listing."""

    @pytest.mark.asyncio
    async def test_health_ok(self, settings, mock_http):
        handler = Recorder(httpx.Response(200, json={"models": []}))
        client = InferenceClient(settings, http_client=mock_http(handler))
        assert await client.check_health() is True
        assert handler.paths == ["/api/tags"]

    @pytest.mark.asyncio
    async def test_health_unreachable(self, settings, mock_http):
        client = InferenceClient(settings, http_client=mock_http(Recorder(_raise(httpx.ConnectError))))
        assert await client.check_health() is False

    @pytest.mark.asyncio
    async def test_list_models(self, settings, mock_http):
        handler = Recorder(httpx.Response(200, json={"models": [{"name": "llama3.2"}, {"name": "dolphin-llama3"}]}))
        client = InferenceClient(settings, http_client=mock_http(handler))
        assert await client.list_models() == ["llama3.2", "dolphin-llama3"]

    @pytest.mark.asyncio
    async def test_list_models_unreachable(self, settings, mock_http):
        client = InferenceClient(settings, http_client=mock_http(Recorder(_raise(httpx.ConnectError))))
        with pytest.raises(NetworkFailure):
            await client.list_models()
