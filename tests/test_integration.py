"""Tests against a live Ollama backend.

Run with ``pytest -m integration``; they skip when Ollama is not reachable.
"""

import pytest
import pytest_asyncio

from agentloop.config import Settings
from agentloop.inference import InferenceClient


@pytest_asyncio.fixture
async def live_client():
    client = InferenceClient(Settings())
    if not await client.check_health():
        await client.aclose()
        pytest.skip("Ollama is not running")
    yield client
    await client.aclose()


@pytest.mark.integration
class TestLiveOllama:
    """Smoke tests for the real backend."""

    @pytest.mark.asyncio
    async def test_list_models(self, live_client):
        models = await live_client.list_models()
        assert isinstance(models, list)

    @pytest.mark.asyncio
    async def test_generate_streams_tokens(self, live_client):
        models = await live_client.list_models()
        if not models:
            pytest.skip("No models pulled")

        pieces = []
        result = await live_client.generate(
            "Reply with the single word: ready",
            model=models[0],
            on_token=pieces.append,
        )

        assert result.text
        assert pieces
