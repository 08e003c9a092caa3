from collections.abc import AsyncIterator

import anthropic
import httpx
from loguru import logger
from tenacity import retry

from chat_orchestrator.cancellation import CancellationToken
from chat_orchestrator.errors import TransportError
from chat_orchestrator.provider import BackendChunk, CompletionPayload
from chat_orchestrator.providers.common import default_retry_kwargs, describe_error


def _split_system(messages: list[dict]) -> tuple[str, list[dict]]:
    """Anthropic takes system text as a parameter rather than as a message."""
    system_parts: list[str] = []
    chat: list[dict] = []
    for msg in messages:
        if msg.get("role") == "system":
            system_parts.append(str(msg.get("content", "")))
        else:
            chat.append({"role": msg["role"], "content": msg.get("content", "")})
    return "\n\n".join(p for p in system_parts if p), chat


class AnthropicProvider:
    def __init__(self, api_key: str, *, base_url: str | None = None):
        self._client = anthropic.AsyncAnthropic(api_key=api_key, base_url=base_url)

    async def stream_completion(
        self,
        payload: CompletionPayload,
        token: CancellationToken,
    ) -> AsyncIterator[BackendChunk]:
        system_prompt, messages = _split_system(payload.messages)
        kwargs: dict = dict(
            model=payload.model,
            max_tokens=payload.max_tokens,
            temperature=payload.temperature,
            messages=messages,
        )
        if system_prompt:
            kwargs["system"] = system_prompt
        if payload.top_k is not None:
            kwargs["top_k"] = payload.top_k
        # top_p is not sent: recent Claude models reject it alongside temperature.

        logger.debug(
            f"API request: model={payload.model}, max_tokens={payload.max_tokens}, "
            f"messages={len(messages)}"
        )
        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    token.raise_if_cancelled()
                    if event.type == "content_block_delta" and event.delta.type == "text_delta":
                        yield BackendChunk(text=event.delta.text)

                response = await stream.get_final_message()
        except (anthropic.APIError, httpx.HTTPError) as ex:
            raise TransportError(describe_error(ex)) from ex

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        if response.stop_reason == "refusal":
            yield BackendChunk(
                finish_reason=response.stop_reason,
                blocked=True,
                block_details={"stop_reason": response.stop_reason},
            )
        else:
            yield BackendChunk(finish_reason=response.stop_reason)

    @retry(**default_retry_kwargs((
        anthropic.RateLimitError,
        anthropic.APIConnectionError,
        anthropic.APITimeoutError,
    )))
    async def create_message(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        messages: list[dict],
    ) -> str:
        system_prompt, chat = _split_system(messages)
        kwargs: dict = dict(model=model, max_tokens=max_tokens, temperature=temperature, messages=chat)
        if system_prompt:
            kwargs["system"] = system_prompt
        logger.debug(f"Title API request: model={model}, messages={len(chat)}")
        response = await self._client.messages.create(**kwargs)
        usage = response.usage
        logger.debug(
            f"Title API response: input_tokens={usage.input_tokens}, "
            f"output_tokens={usage.output_tokens}"
        )
        return response.content[0].text
