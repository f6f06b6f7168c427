"""Abstract base class for LLM adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from stageflow.schemas import LLMMessage


class LLMRequestError(Exception):
    """The generation endpoint answered with a non-success status."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        message = f"HTTP {status_code}"
        if detail:
            message = f"{message} - {detail}"
        super().__init__(message)


class LLMAdapter(ABC):
    """Abstract base class for streaming LLM provider adapters.

    The orchestrator only talks to this interface, so tests and alternate
    providers can swap the transport without touching the engine.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'openai')."""
        ...

    @abstractmethod
    def stream_chat(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion as text fragments.

        Args:
            messages: Conversation messages (system + user)
            model: Model name (uses default if None)

        Yields:
            Incremental pieces of generated text, in arrival order

        Raises:
            LLMRequestError: if the endpoint rejects the request
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the provider API is accessible with these credentials."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        ...

    async def complete(self, messages: list[LLMMessage], model: str | None = None) -> str:
        """Collect a whole streamed completion into one string."""
        parts = []
        async for fragment in self.stream_chat(messages, model=model):
            parts.append(fragment)
        return "".join(parts)

    def _build_request(self, messages: list[LLMMessage], model: str) -> dict[str, Any]:
        """Build the streaming request payload."""
        return {
            "model": model,
            "messages": [m.model_dump(exclude_none=True) for m in messages],
            "stream": True,
        }
