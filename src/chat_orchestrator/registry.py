from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from chat_orchestrator.errors import ConfigurationError, SessionConflictError


class ConflictPolicy(str, Enum):
    """What to do when a request arrives for an abort key that is still live."""

    REJECT = "reject"
    SUPERSEDE = "supersede"

    @classmethod
    def parse(cls, value: str | ConflictPolicy) -> ConflictPolicy:
        if isinstance(value, ConflictPolicy):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as ex:
            raise ConfigurationError(
                f"Unknown conflict policy: {value!r}. Supported: 'reject', 'supersede'"
            ) from ex


@dataclass
class SessionHandle:
    conversation_id: str
    abort_key: str
    cancel: Callable[..., bool]
    partial_text: Callable[[], str]
    # Resolves to the exchange's FinalEvent once its final message is persisted.
    finished: asyncio.Future


class AbortRegistry:
    """Abort key -> live session handle. Every operation is serialized by one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: dict[str, SessionHandle] = {}

    def register(self, handle: SessionHandle, *, replace: bool = False) -> SessionHandle | None:
        """Insert ``handle``; return the handle it displaced, if any.

        Raises SessionConflictError when the key is live and ``replace`` is false.
        """
        with self._lock:
            existing = self._handles.get(handle.abort_key)
            if existing is not None and not replace:
                raise SessionConflictError(
                    f"A request is already in flight for abort key {handle.abort_key!r}"
                )
            self._handles[handle.abort_key] = handle
        logger.debug(f"Registered abort key {handle.abort_key}")
        return existing

    def get(self, abort_key: str) -> SessionHandle | None:
        with self._lock:
            return self._handles.get(abort_key)

    def pop(self, abort_key: str) -> SessionHandle | None:
        with self._lock:
            return self._handles.pop(abort_key, None)

    def remove(self, abort_key: str, handle: SessionHandle) -> bool:
        """Remove ``abort_key`` only while it still maps to ``handle``."""
        with self._lock:
            if self._handles.get(abort_key) is not handle:
                return False
            del self._handles[abort_key]
            return True

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def __contains__(self, abort_key: object) -> bool:
        with self._lock:
            return abort_key in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
