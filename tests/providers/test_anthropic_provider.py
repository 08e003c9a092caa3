import asyncio
import unittest
from types import SimpleNamespace

from chat_orchestrator.cancellation import CancellationToken
from chat_orchestrator.provider import CompletionPayload
from chat_orchestrator.providers.anthropic_provider import AnthropicProvider, _split_system


class _FakeStreamContext:
    def __init__(self, events: list[object], final_message: object):
        self._events = events
        self._final_message = final_message

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def __aiter__(self):
        self._iter = iter(self._events)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration

    async def get_final_message(self):
        return self._final_message


class _FakeMessages:
    def __init__(self, stream_ctx: _FakeStreamContext | None = None, response: object = None):
        self._stream_ctx = stream_ctx
        self._response = response
        self.calls: list[dict] = []

    def stream(self, **kwargs):
        self.calls.append(kwargs)
        return self._stream_ctx

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        return self._response


def _make_provider(messages: _FakeMessages) -> AnthropicProvider:
    provider = AnthropicProvider.__new__(AnthropicProvider)
    provider._client = SimpleNamespace(messages=messages)
    return provider


def _text_event(text: str):
    return SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text=text))


def _final(stop_reason: str):
    return SimpleNamespace(stop_reason=stop_reason, usage=SimpleNamespace(input_tokens=12, output_tokens=3))


def _payload() -> CompletionPayload:
    return CompletionPayload(
        model="claude-test",
        messages=[
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
        ],
        max_tokens=64,
        temperature=0.2,
        top_p=0.95,
        top_k=40,
    )


async def _collect(provider: AnthropicProvider) -> list:
    return [chunk async for chunk in provider.stream_completion(_payload(), CancellationToken())]


class SplitSystemTests(unittest.TestCase):
    def test_system_messages_become_parameter(self) -> None:
        system, chat = _split_system([
            {"role": "system", "content": "A"},
            {"role": "user", "content": "hi"},
            {"role": "system", "content": "B"},
        ])
        self.assertEqual("A\n\nB", system)
        self.assertEqual([{"role": "user", "content": "hi"}], chat)


class AnthropicProviderStreamTests(unittest.TestCase):
    def test_stream_yields_text_then_stop_reason(self) -> None:
        messages = _FakeMessages(_FakeStreamContext(
            [_text_event("Hi"), SimpleNamespace(type="message_delta"), _text_event(" there")],
            _final("end_turn"),
        ))
        chunks = asyncio.run(_collect(_make_provider(messages)))

        self.assertEqual("Hi there", "".join(c.text for c in chunks))
        self.assertEqual("end_turn", chunks[-1].finish_reason)
        self.assertFalse(chunks[-1].blocked)
        call = messages.calls[0]
        self.assertEqual("Be brief.", call["system"])
        self.assertEqual(40, call["top_k"])
        self.assertNotIn("top_p", call)
        self.assertEqual([{"role": "user", "content": "Hello"}], call["messages"])

    def test_refusal_is_reported_as_blocked(self) -> None:
        messages = _FakeMessages(_FakeStreamContext([_text_event("I")], _final("refusal")))
        chunks = asyncio.run(_collect(_make_provider(messages)))

        self.assertTrue(chunks[-1].blocked)
        self.assertEqual({"stop_reason": "refusal"}, chunks[-1].block_details)


class AnthropicProviderCreateMessageTests(unittest.TestCase):
    def test_create_message_returns_first_text_block(self) -> None:
        response = SimpleNamespace(
            content=[SimpleNamespace(text="Greeting")],
            usage=SimpleNamespace(input_tokens=5, output_tokens=1),
        )
        messages = _FakeMessages(response=response)

        text = asyncio.run(_make_provider(messages).create_message(
            "claude-test", 32, 0, [{"role": "user", "content": "title?"}]
        ))

        self.assertEqual("Greeting", text)
        self.assertNotIn("system", messages.calls[0])


if __name__ == "__main__":
    unittest.main()
