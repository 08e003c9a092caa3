from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Union

ROOT_PARENT_ID = "00000000-0000-0000-0000-000000000000"


class Role(str, Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"


@dataclass
class Message:
    message_id: str
    parent_message_id: str
    conversation_id: str
    sender: str
    text: str
    is_created_by_user: bool
    unfinished: bool = False
    cancelled: bool = False
    error: bool = False
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Conversation:
    conversation_id: str
    title: str = ""
    endpoint: str = ""
    model_options: dict = field(default_factory=dict)
    user_id: str | None = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class ChatMessage:
    """One entry of the prompt sent to the model backend."""

    role: Role
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class HistoryEntry:
    is_created_by_user: bool
    content: str

    def to_chat_message(self) -> ChatMessage:
        role = Role.USER if self.is_created_by_user else Role.ASSISTANT
        return ChatMessage(role=role, content=self.content)


@dataclass(frozen=True)
class CreatedEvent:
    """The request message was persisted and the exchange is under way."""

    message: Message


@dataclass(frozen=True)
class ProgressEvent:
    """One streamed increment of the reply.

    ``text`` is the reply so far, joined on access from the exchange's
    append-only increment list; consumers that only read ``delta`` never pay for it.
    """

    message_id: str
    delta: str
    increments: list[str] = field(default_factory=list, repr=False, compare=False)
    count: int = 0

    @property
    def text(self) -> str:
        return "".join(self.increments[: self.count])


@dataclass(frozen=True)
class FinalEvent:
    """Terminal event of an exchange. Exactly one is emitted per request."""

    title: str
    conversation: Conversation | None
    request_message: Message
    response_message: Message
    final: bool = True


ChatEvent = Union[CreatedEvent, ProgressEvent, FinalEvent]
