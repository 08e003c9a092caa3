import asyncio
from dataclasses import dataclass, field, replace
from typing import Any

from chat_orchestrator.models import Conversation, Message
from chat_orchestrator.provider import BackendChunk, CompletionPayload
from chat_orchestrator.tokens import TokenCounter


class WhitespaceEncoding:
    """One token per whitespace-separated word."""

    def encode(self, text: str, allowed_special: Any = ()) -> list[str]:
        return text.split()


def whitespace_counter(name: str = "test-whitespace") -> TokenCounter:
    return TokenCounter(name, encoding_factory=lambda _: WhitespaceEncoding())


@dataclass
class Turn:
    chunks: list = field(default_factory=list)
    hang: bool = False
    error: Exception | None = None


class ScriptedProvider:
    """Streams one scripted Turn per call; the last turn repeats once the script runs out."""

    def __init__(self, *turns: Turn, title: str = "Greeting", title_error: Exception | None = None):
        self._turns = list(turns) or [Turn()]
        self.title = title
        self.title_error = title_error
        self.payloads: list[CompletionPayload] = []
        self.title_calls: list[dict] = []

    async def stream_completion(self, payload, token):
        self.payloads.append(payload)
        turn = self._turns.pop(0) if len(self._turns) > 1 else self._turns[0]
        for chunk in turn.chunks:
            token.raise_if_cancelled()
            yield chunk if isinstance(chunk, BackendChunk) else BackendChunk(text=chunk)
            await asyncio.sleep(0)
        if turn.error is not None:
            raise turn.error
        if turn.hang:
            await asyncio.Event().wait()

    async def create_message(self, model, max_tokens, temperature, messages) -> str:
        self.title_calls.append(
            {"model": model, "max_tokens": max_tokens, "temperature": temperature, "messages": messages}
        )
        if self.title_error is not None:
            raise self.title_error
        return self.title


class InMemoryStore:
    def __init__(self) -> None:
        self.messages: dict[str, Message] = {}
        self.saves: list[Message] = []
        self.conversations: dict[str, Conversation] = {}

    async def load_messages(self, conversation_id: str) -> list[Message]:
        return [m for m in self.messages.values() if m.conversation_id == conversation_id]

    async def save_message(self, message: Message) -> None:
        self.saves.append(replace(message))
        self.messages[message.message_id] = replace(message)

    async def save_conversation(self, user_id, partial) -> None:
        conversation_id = partial["conversation_id"]
        conversation = self.conversations.get(conversation_id) or Conversation(
            conversation_id=conversation_id, user_id=user_id
        )
        for key in ("title", "endpoint"):
            if key in partial:
                setattr(conversation, key, partial[key])
        conversation.model_options = {**conversation.model_options, **(partial.get("model_options") or {})}
        self.conversations[conversation_id] = conversation

    async def load_conversation_title(self, user_id, conversation_id) -> str:
        conversation = self.conversations.get(conversation_id)
        return conversation.title if conversation is not None else ""

    async def load_conversation(self, user_id, conversation_id):
        return self.conversations.get(conversation_id)

    def snapshots(self, message_id: str) -> list[Message]:
        return [m for m in self.saves if m.message_id == message_id and m.unfinished]
