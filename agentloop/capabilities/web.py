"""URL fetching capability."""

from __future__ import annotations

import logging
from typing import Mapping

import httpx

from agentloop.capabilities.base import Capability
from agentloop.schemas import ToolResult

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 30.0  # seconds
MAX_BODY_CHARS = 50_000


class FetchUrl(Capability):
    """GET an absolute http(s) URL and return the body as text."""

    name = "fetch_url"
    description = (
        "Fetches the content at the given absolute URL and returns the response body as text. "
        "Useful for retrieving API responses or web pages."
    )
    usage_template = '<tool_code>fetch_url(url="<absolute_url>")</tool_code>'
    requires_permission = False
    cacheable = True
    required_arguments = ("url",)

    def __init__(self, http_client: httpx.AsyncClient | None = None, timeout: float = FETCH_TIMEOUT):
        self._client = http_client
        self.timeout = timeout

    async def run(self, arguments: Mapping[str, str]) -> ToolResult:
        url = arguments["url"].strip()
        if not url.startswith(("http://", "https://")):
            return ToolResult.error("Error: Missing or invalid 'url' argument.")

        logger.info(f"Fetching {url}")
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning(f"fetch_url failed for {url}: {e}")
            return ToolResult.error(f"Error fetching URL: {e}")

        if not response.is_success:
            return ToolResult.error(f"Error fetching URL: HTTP {response.status_code}")

        body = response.text
        if len(body) > MAX_BODY_CHARS:
            body = body[:MAX_BODY_CHARS] + "\n... [content truncated]"
        return ToolResult(output=body)
