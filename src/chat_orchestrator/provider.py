from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from chat_orchestrator.cancellation import CancellationToken


@dataclass(frozen=True)
class CompletionPayload:
    model: str
    messages: list[dict]
    max_tokens: int
    temperature: float
    top_p: float | None = None
    top_k: int | None = None


@dataclass(frozen=True)
class BackendChunk:
    """One increment of a streamed reply.

    ``blocked`` marks a safety/content block reported by the backend; details
    go in ``block_details`` and are shown to the user verbatim.
    """

    text: str = ""
    finish_reason: str | None = None
    blocked: bool = False
    block_details: dict = field(default_factory=dict)


@runtime_checkable
class CompletionProvider(Protocol):
    def stream_completion(
        self,
        payload: CompletionPayload,
        token: CancellationToken,
    ) -> AsyncIterator[BackendChunk]:
        """Stream a completion. Raises TransportError when the backend fails."""
        ...

    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str:
        """Non-streaming message creation (used for conversation titles)."""
        ...


def create_provider(provider_name: str, api_key: str, *, base_url: str | None = None) -> CompletionProvider:
    """Factory: create a CompletionProvider by name."""
    name = provider_name.strip().lower()
    if name == "openai":
        from chat_orchestrator.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, base_url=base_url)
    if name == "anthropic":
        from chat_orchestrator.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, base_url=base_url)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'openai', 'anthropic'")
