from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from chat_orchestrator.cancellation import CancellationToken
from chat_orchestrator.errors import SessionStateError, TransportError
from chat_orchestrator.models import ChatMessage
from chat_orchestrator.provider import CompletionPayload, CompletionProvider

TIMEOUT_REASON = "timeout"

_END = object()


class SessionState(str, Enum):
    IDLE = "idle"
    BUILDING = "building"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


@dataclass(frozen=True)
class CompletionOptions:
    model: str
    max_tokens: int = 1024
    temperature: float = 0.2
    top_p: float | None = 0.95
    top_k: int | None = 40
    prompt_prefix: str | None = None


@dataclass(frozen=True)
class SessionResult:
    state: SessionState
    text: str
    partial_text: str
    blocked: bool = False
    error: str | None = None
    finish_reason: str | None = None


def format_block_notice(block_details: dict, partial_text: str) -> str:
    notice = (
        "The model backend blocked a proper response to your message:\n"
        f"{json.dumps(block_details, ensure_ascii=False, sort_keys=True)}"
    )
    if partial_text:
        notice += f"\nAI Response:\n{partial_text}"
    return notice


class CompletionSession:
    """One cancellable, streamed completion request.

    A session moves IDLE -> BUILDING -> IN_FLIGHT and ends COMPLETED, CANCELLED
    or FAILED. Text increments are pushed to ``on_increment`` as they arrive and
    queued for ``increments()``. A finished session cannot be restarted.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        options: CompletionOptions,
        *,
        on_increment: Callable[[str], None] | None = None,
        timeout_seconds: float | None = None,
    ):
        self._provider = provider
        self._options = options
        self._on_increment = on_increment
        self._timeout_seconds = timeout_seconds
        # Created up front so a cancel that races dispatch is never lost.
        self._token = CancellationToken()
        self._state = SessionState.IDLE
        self._chunks: list[str] = []
        self._increments: asyncio.Queue = asyncio.Queue()
        self._done = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._finish_reason: str | None = None
        self._block_details: dict | None = None
        self._result: SessionResult | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def result(self) -> SessionResult | None:
        return self._result

    def partial_text(self) -> str:
        return "".join(self._chunks)

    def build_payload(self, user_text: str, history: Sequence[ChatMessage]) -> CompletionPayload:
        messages: list[dict] = []
        if self._options.prompt_prefix:
            messages.append({"role": "system", "content": self._options.prompt_prefix})
        messages.extend(m.to_dict() for m in history)
        messages.append({"role": "user", "content": user_text})
        return CompletionPayload(
            model=self._options.model,
            messages=messages,
            max_tokens=self._options.max_tokens,
            temperature=self._options.temperature,
            top_p=self._options.top_p,
            top_k=self._options.top_k,
        )

    def start(self, user_text: str, history: Sequence[ChatMessage]) -> None:
        if self._state is not SessionState.IDLE:
            raise SessionStateError(
                f"Session is {self._state.value}; create a new session to send another request"
            )
        self._state = SessionState.BUILDING
        payload = self.build_payload(user_text, history)

        loop = asyncio.get_running_loop()
        self._state = SessionState.IN_FLIGHT
        self._task = loop.create_task(self._run(payload))
        self._task.add_done_callback(self._on_task_done)
        if self._timeout_seconds:
            self._timer = loop.call_later(self._timeout_seconds, self.cancel, TIMEOUT_REASON)

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._state.terminal:
            return False
        first = self._token.cancel(reason)
        if self._state is SessionState.IDLE:
            self._finish(SessionState.CANCELLED, "")
            return first
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return first

    async def increments(self) -> AsyncIterator[str]:
        while True:
            item = await self._increments.get()
            if item is _END:
                return
            yield item

    async def wait(self) -> SessionResult:
        await self._done.wait()
        assert self._result is not None
        return self._result

    async def _run(self, payload: CompletionPayload) -> None:
        self._token.raise_if_cancelled()
        async for chunk in self._provider.stream_completion(payload, self._token):
            if chunk.text:
                self._emit(chunk.text)
            if chunk.finish_reason:
                self._finish_reason = chunk.finish_reason
            if chunk.blocked:
                self._block_details = dict(chunk.block_details) or {"blocked": True}
        self._token.raise_if_cancelled()

    def _emit(self, delta: str) -> None:
        self._chunks.append(delta)
        if self._on_increment is not None:
            self._on_increment(delta)
        self._increments.put_nowait(delta)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        partial = self.partial_text()
        if self._token.reason == TIMEOUT_REASON:
            description = f"Request timed out after {self._timeout_seconds:g} seconds"
            text = f"{description}\n{partial}" if partial else description
            self._finish(SessionState.FAILED, text, error=description)
            return
        if task.cancelled() or self._token.cancelled:
            self._finish(SessionState.CANCELLED, partial)
            return

        exc = task.exception()
        if exc is not None:
            if isinstance(exc, TransportError):
                logger.warning(f"Completion failed: {exc}")
            else:
                logger.opt(exception=exc).error(f"Completion failed with unexpected error: {exc!r}")
            description = str(exc) or type(exc).__name__
            self._finish(SessionState.FAILED, description, error=description)
            return

        if self._block_details is not None:
            logger.info(f"Completion blocked by backend: {self._block_details}")
            self._finish(
                SessionState.COMPLETED,
                format_block_notice(self._block_details, partial),
                blocked=True,
            )
            return
        self._finish(SessionState.COMPLETED, partial)

    def _finish(
        self,
        state: SessionState,
        text: str,
        *,
        blocked: bool = False,
        error: str | None = None,
    ) -> None:
        self._state = state
        self._result = SessionResult(
            state=state,
            text=text,
            partial_text=self.partial_text(),
            blocked=blocked,
            error=error,
            finish_reason=self._finish_reason,
        )
        self._increments.put_nowait(_END)
        self._done.set()
        logger.debug(f"Completion session {state.value}: text_len={len(text)}")
