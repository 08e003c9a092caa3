from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any

import tiktoken
from loguru import logger

from chat_orchestrator.errors import ConfigurationError

DEFAULT_ENCODING = "cl100k_base"

# Chat-completion accounting: every message is wrapped in 4 metadata tokens and
# the reply is primed with 2 more.
TOKENS_PER_MESSAGE = 4
REPLY_PRIMER_TOKENS = 2

_encodings: dict[str, Any] = {}
_encodings_lock = threading.Lock()


def get_encoding(name: str, factory: Callable[[str], Any] | None = None) -> Any:
    """Return the encoding registered under ``name``, building it on first use.

    Encodings are immutable and expensive to build, so one instance per name is
    shared by the whole process.
    """
    with _encodings_lock:
        encoding = _encodings.get(name)
        if encoding is not None:
            return encoding
        build = factory or tiktoken.get_encoding
        try:
            encoding = build(name)
        except (KeyError, ValueError) as ex:
            raise ConfigurationError(f"Unknown token encoding: {name!r}") from ex
        _encodings[name] = encoding
        logger.debug(f"Loaded token encoding {name!r}")
        return encoding


def _as_text(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, str):
        return value
    return str(value)


class TokenCounter:
    def __init__(
        self,
        encoding_name: str = DEFAULT_ENCODING,
        *,
        encoding_factory: Callable[[str], Any] | None = None,
    ):
        self._encoding_name = encoding_name
        self._encoding = get_encoding(encoding_name, encoding_factory)

    @property
    def encoding_name(self) -> str:
        return self._encoding_name

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, allowed_special="all"))

    def count_message(self, message: Mapping[str, Any]) -> int:
        """Sum the tokens of every field; a ``name`` field costs one token less.

        The per-message overhead is left to the caller (see ``count_messages``).
        """
        total = 0
        for key, value in message.items():
            total += self.count(_as_text(value))
            if key == "name":
                total -= 1
        return total

    def count_messages(self, messages: Iterable[Mapping[str, Any]]) -> int:
        return sum(self.count_message(m) + TOKENS_PER_MESSAGE for m in messages) + REPLY_PRIMER_TOKENS
