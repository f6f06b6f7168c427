"""OpenAI-compatible streaming adapter.

Works against any endpoint exposing `POST {base_url}/chat/completions` with
SSE streaming (OpenAI, DeepSeek, Moonshot, local gateways).
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

import httpx

from stageflow.config import get_settings
from stageflow.llm.base import LLMAdapter, LLMRequestError
from stageflow.llm.sse import aiter_fragments
from stageflow.schemas import LLMCredentials, LLMMessage


logger = logging.getLogger(__name__)


class OpenAICompatAdapter(LLMAdapter):
    """Streaming chat adapter for OpenAI-compatible endpoints."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.llm_api_key
        self.base_url = (base_url or settings.llm_base_url).rstrip("/")
        self.default_model = model or settings.llm_model
        self.timeout = timeout if timeout is not None else settings.llm_timeout_seconds

        if not self.api_key:
            raise ValueError("API key not configured")
        if not self.base_url:
            raise ValueError("Base URL not configured")

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return "openai-compatible"

    async def stream_chat(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion from `/chat/completions`."""
        payload = self._build_request(messages, model or self.default_model)

        async with self._client.stream("POST", "/chat/completions", json=payload) as response:
            if response.status_code >= 400:
                body = await response.aread()
                raise LLMRequestError(
                    response.status_code,
                    body.decode("utf-8", errors="replace")[:500],
                )
            async for fragment in aiter_fragments(response.aiter_bytes()):
                yield fragment

    async def health_check(self) -> bool:
        """Check that `/models` answers 200 for these credentials."""
        try:
            response = await self._client.get("/models")
        except httpx.HTTPError as e:
            logger.warning(f"Endpoint {self.base_url} unreachable: {e}")
            return False
        if response.status_code != 200:
            logger.warning(f"Endpoint {self.base_url} answered {response.status_code} to probe")
        return response.status_code == 200

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()


def build_adapter(credentials: LLMCredentials | None = None) -> LLMAdapter:
    """Create an adapter from per-request credentials, falling back to settings."""
    credentials = credentials or LLMCredentials()
    return OpenAICompatAdapter(
        api_key=credentials.api_key,
        base_url=credentials.base_url,
        model=credentials.model,
    )
