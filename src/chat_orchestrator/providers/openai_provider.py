from collections.abc import AsyncIterator

import httpx
import openai
from loguru import logger
from tenacity import retry

from chat_orchestrator.cancellation import CancellationToken
from chat_orchestrator.errors import TransportError
from chat_orchestrator.provider import BackendChunk, CompletionPayload
from chat_orchestrator.providers.common import default_retry_kwargs, describe_error

# Finish reasons OpenAI-compatible servers use to report a filtered reply.
_BLOCKED_FINISH_REASONS = {"content_filter"}


def _to_request_kwargs(payload: CompletionPayload) -> dict:
    kwargs: dict = dict(
        model=payload.model,
        messages=payload.messages,
        max_tokens=payload.max_tokens,
        temperature=payload.temperature,
        stream=True,
    )
    if payload.top_p is not None:
        kwargs["top_p"] = payload.top_p
    if payload.top_k is not None:
        # Not part of the OpenAI schema; llama.cpp-style servers read it from the body.
        kwargs["extra_body"] = {"top_k": payload.top_k}
    return kwargs


def _chunk_from_choice(choice) -> BackendChunk | None:
    delta = choice.delta
    text = (delta.content or "") if delta is not None else ""
    refusal = getattr(delta, "refusal", None) if delta is not None else None
    finish_reason = choice.finish_reason

    block_details: dict = {}
    if finish_reason in _BLOCKED_FINISH_REASONS:
        block_details["finish_reason"] = finish_reason
    if refusal:
        block_details["refusal"] = refusal

    if not text and not finish_reason and not block_details:
        return None
    return BackendChunk(
        text=text,
        finish_reason=finish_reason,
        blocked=bool(block_details),
        block_details=block_details,
    )


class OpenAIProvider:
    """Chat completions over any OpenAI-compatible endpoint (OpenAI, gpt-llama.cpp, vLLM...)."""

    def __init__(self, api_key: str, *, base_url: str | None = None):
        self._client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def stream_completion(
        self,
        payload: CompletionPayload,
        token: CancellationToken,
    ) -> AsyncIterator[BackendChunk]:
        kwargs = _to_request_kwargs(payload)
        logger.debug(
            f"API request: model={payload.model}, max_tokens={payload.max_tokens}, "
            f"messages={len(payload.messages)}"
        )
        received = 0
        try:
            stream = await self._client.chat.completions.create(**kwargs)
            async with stream:
                async for chunk in stream:
                    token.raise_if_cancelled()
                    choice = chunk.choices[0] if chunk.choices else None
                    if choice is None:
                        continue
                    backend_chunk = _chunk_from_choice(choice)
                    if backend_chunk is None:
                        continue
                    received += len(backend_chunk.text)
                    yield backend_chunk
        except (openai.APIError, httpx.HTTPError) as ex:
            raise TransportError(describe_error(ex)) from ex

        logger.debug(f"API response: text_len={received}")

    @retry(**default_retry_kwargs((
        openai.RateLimitError,
        openai.APIConnectionError,
        openai.APITimeoutError,
    )))
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str:
        logger.debug(f"Title API request: model={model}, messages={len(messages)}")
        response = await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=messages,
        )
        text = response.choices[0].message.content or ""
        logger.debug(f"Title API response: len={len(text)}")
        return text
