from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from typing import Any
from uuid import uuid4

from loguru import logger

from chat_orchestrator.budget import ContextBudgeter, TokenLimits
from chat_orchestrator.errors import (
    AbortKeyNotFoundError,
    BudgetOverflowError,
    ConfigurationError,
    EmptyPromptError,
    OrchestratorError,
)
from chat_orchestrator.history import HistoryResolver
from chat_orchestrator.models import (
    ROOT_PARENT_ID,
    ChatEvent,
    ChatMessage,
    CreatedEvent,
    FinalEvent,
    HistoryEntry,
    Message,
    ProgressEvent,
    Role,
)
from chat_orchestrator.orchestrator_config import OrchestratorConfig
from chat_orchestrator.provider import CompletionProvider
from chat_orchestrator.registry import AbortRegistry, ConflictPolicy, SessionHandle
from chat_orchestrator.session import CompletionOptions, CompletionSession, SessionResult, SessionState
from chat_orchestrator.storage import ConversationStorage
from chat_orchestrator.titles import TitleGenerator
from chat_orchestrator.tokens import TokenCounter


def merge_options(base: Mapping[str, Any], overrides: Mapping[str, Any] | None) -> dict:
    """Overlay ``overrides`` on ``base``. Nested mappings merge; ``None`` keeps the base value."""
    merged = dict(base)
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_options(current, value)
        else:
            merged[key] = value
    return merged


def _optional(cast, value):
    if value is None or value == "":
        return None
    return cast(value)


class _Exchange:
    """State of one request: ids, merged options, its event channel and session."""

    def __init__(
        self,
        *,
        request_message: Message,
        user_id: str | None,
        abort_key: str,
        options: dict,
        completion: CompletionOptions,
        loop: asyncio.AbstractEventLoop,
    ):
        self.request_message = request_message
        self.response_message_id = str(uuid4())
        self.user_id = user_id
        self.abort_key = abort_key
        self.options = options
        self.completion = completion
        self.events: asyncio.Queue[ChatEvent | None] = asyncio.Queue()
        self.finished: asyncio.Future = loop.create_future()
        self.session: CompletionSession | None = None
        self.cancel_reason: str | None = None
        self.superseded: SessionHandle | None = None
        self.task: asyncio.Task | None = None
        self.request_saved = False
        self.response: Message | None = None
        self.handle = SessionHandle(
            conversation_id=request_message.conversation_id,
            abort_key=abort_key,
            cancel=self.cancel,
            partial_text=self.partial_text,
            finished=self.finished,
        )

    @property
    def conversation_id(self) -> str:
        return self.request_message.conversation_id

    @property
    def is_new_conversation(self) -> bool:
        return self.request_message.parent_message_id == ROOT_PARENT_ID

    def cancel(self, reason: str = "cancelled") -> bool:
        if self.finished.done():
            return False
        first = self.cancel_reason is None
        if first:
            self.cancel_reason = reason
        if self.session is not None:
            self.session.cancel(reason)
        return first

    def partial_text(self) -> str:
        return self.session.partial_text() if self.session is not None else ""

    def emit(self, event: ChatEvent | None) -> None:
        self.events.put_nowait(event)

    def response_message(
        self,
        text: str,
        *,
        unfinished: bool = False,
        cancelled: bool = False,
        error: bool = False,
    ) -> Message:
        return Message(
            message_id=self.response_message_id,
            parent_message_id=self.request_message.message_id,
            conversation_id=self.conversation_id,
            sender=str(self.options.get("model_label") or "Assistant"),
            text=text,
            is_created_by_user=False,
            unfinished=unfinished,
            cancelled=cancelled,
            error=error,
        )


class ConversationOrchestrator:
    """Runs user messages through history resolution, budgeting and a streamed completion.

    Each request is an exchange running on its own task. It persists the user
    message before the backend is called, throttles ``unfinished`` snapshots of
    the reply while it streams, and always finishes with one final persist and
    one ``FinalEvent``. In-flight exchanges are registered under an abort key
    (the conversation id unless the caller supplies one) so ``abort`` can stop
    them and keep the partial reply.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        provider: CompletionProvider,
        store: ConversationStorage,
        counter: TokenCounter,
        title_generator: TitleGenerator | None = None,
        registry: AbortRegistry | None = None,
    ):
        self._config = config
        self._limits = TokenLimits(
            max_context_tokens=config.max_context_tokens,
            max_response_tokens=config.max_response_tokens,
            max_prompt_tokens=config.max_prompt_tokens,
        )
        if config.snapshot_interval_seconds < 0:
            raise ConfigurationError(
                f"snapshot interval must not be negative: {config.snapshot_interval_seconds}"
            )
        self._conflict_policy = ConflictPolicy.parse(config.conflict_policy)
        self._provider = provider
        self._store = store
        self._resolver = HistoryResolver()
        self._budgeter = ContextBudgeter(counter)
        self._title_generator = title_generator if config.title_conversations else None
        self._registry = registry or AbortRegistry()
        self._tasks: set[asyncio.Task] = set()

    @property
    def limits(self) -> TokenLimits:
        return self._limits

    @property
    def registry(self) -> AbortRegistry:
        return self._registry

    async def stream(
        self,
        text: str,
        *,
        conversation_id: str | None = None,
        parent_message_id: str | None = None,
        user_id: str | None = None,
        abort_key: str | None = None,
        model_options: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """Yield CreatedEvent, ProgressEvents, then exactly one FinalEvent."""
        exchange = self._open_exchange(
            text,
            conversation_id=conversation_id,
            parent_message_id=parent_message_id,
            user_id=user_id,
            abort_key=abort_key,
            model_options=model_options,
        )
        delivered_final = False
        while True:
            event = await exchange.events.get()
            if event is None:
                break
            delivered_final = delivered_final or isinstance(event, FinalEvent)
            yield event
        assert exchange.task is not None
        if delivered_final and exchange.task.cancelled():
            return
        await exchange.task

    async def handle(
        self,
        text: str,
        *,
        conversation_id: str | None = None,
        parent_message_id: str | None = None,
        user_id: str | None = None,
        abort_key: str | None = None,
        model_options: Mapping[str, Any] | None = None,
    ) -> Message:
        final: FinalEvent | None = None
        async for event in self.stream(
            text,
            conversation_id=conversation_id,
            parent_message_id=parent_message_id,
            user_id=user_id,
            abort_key=abort_key,
            model_options=model_options,
        ):
            if isinstance(event, FinalEvent):
                final = event
        if final is None:
            raise OrchestratorError("Exchange ended without a final event")
        return final.response_message

    async def abort(self, abort_key: str) -> FinalEvent:
        """Cancel the request under ``abort_key`` and return its finalized result."""
        handle = self._registry.pop(abort_key)
        if handle is None:
            raise AbortKeyNotFoundError(f"Request not found for abort key {abort_key!r}")
        handle.cancel()
        final = await asyncio.shield(handle.finished)
        logger.info(
            f"Aborted request {abort_key} "
            f"(kept {len(final.response_message.text):,} chars of partial text)"
        )
        return final

    async def aclose(self) -> None:
        for key in self._registry.keys():
            handle = self._registry.pop(key)
            if handle is not None:
                handle.cancel("shutdown")
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _open_exchange(
        self,
        text: str,
        *,
        conversation_id: str | None,
        parent_message_id: str | None,
        user_id: str | None,
        abort_key: str | None,
        model_options: Mapping[str, Any] | None,
    ) -> _Exchange:
        if not text or not text.strip():
            raise EmptyPromptError("Prompt empty or too short")

        options = merge_options(self._config.model_options(), model_options)
        completion = self._completion_options(options)
        conversation_id = conversation_id or str(uuid4())
        request_message = Message(
            message_id=str(uuid4()),
            parent_message_id=parent_message_id or ROOT_PARENT_ID,
            conversation_id=conversation_id,
            sender=self._config.user_label,
            text=text,
            is_created_by_user=True,
        )
        exchange = _Exchange(
            request_message=request_message,
            user_id=user_id,
            abort_key=abort_key or conversation_id,
            options=options,
            completion=completion,
            loop=asyncio.get_running_loop(),
        )

        previous = self._registry.register(
            exchange.handle,
            replace=self._conflict_policy is ConflictPolicy.SUPERSEDE,
        )
        if previous is not None:
            logger.info(f"Superseding in-flight request for abort key {exchange.abort_key}")
            previous.cancel("superseded")
            exchange.superseded = previous

        task = asyncio.create_task(self._run_exchange(exchange))
        exchange.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return exchange

    def _completion_options(self, options: Mapping[str, Any]) -> CompletionOptions:
        try:
            return CompletionOptions(
                model=str(options["model"]),
                max_tokens=self._limits.max_response_tokens,
                temperature=float(options["temperature"]),
                top_p=_optional(float, options.get("top_p")),
                top_k=_optional(int, options.get("top_k")),
                prompt_prefix=options.get("prompt_prefix") or None,
            )
        except (KeyError, TypeError, ValueError) as ex:
            raise ConfigurationError(f"Invalid model options: {ex}") from ex

    async def _run_exchange(self, exchange: _Exchange) -> None:
        try:
            await self._complete_exchange(exchange)
        except asyncio.CancelledError:
            exchange.cancel("shutdown")
            if not exchange.finished.done():
                if exchange.request_saved:
                    await self._finish_interrupted(exchange)
                else:
                    exchange.finished.cancel()
            raise
        except Exception as ex:
            logger.opt(exception=ex).error(f"Exchange for conversation {exchange.conversation_id} failed: {ex}")
            if not exchange.finished.done():
                exchange.finished.set_exception(ex)
                # Re-raised to the stream consumer through the task.
                exchange.finished.exception()
            raise
        finally:
            self._registry.remove(exchange.abort_key, exchange.handle)
            exchange.emit(None)

    async def _complete_exchange(self, exchange: _Exchange) -> None:
        if exchange.superseded is not None:
            await asyncio.wait([exchange.superseded.finished])

        request = exchange.request_message
        stored = await self._store.load_messages(exchange.conversation_id)
        history = self._resolver.resolve(stored, request.parent_message_id)

        await self._store.save_message(request)
        exchange.request_saved = True
        await self._store.save_conversation(
            exchange.user_id,
            {
                "conversation_id": exchange.conversation_id,
                "endpoint": self._config.endpoint,
                "model_options": exchange.options,
            },
        )
        exchange.emit(CreatedEvent(message=request))
        logger.info(
            f"Conversation {exchange.conversation_id}: user message {request.message_id} saved "
            f"with {len(history)} message(s) of history"
        )

        try:
            response = await self._stream_response(exchange, history)
        except Exception as ex:
            if exchange.session is not None:
                exchange.session.cancel("error")
            logger.opt(exception=ex).error(f"Streaming failed for conversation {exchange.conversation_id}: {ex}")
            response = exchange.response_message(str(ex) or type(ex).__name__, error=True)

        await self._store.save_message(response)
        exchange.response = response
        self._registry.remove(exchange.abort_key, exchange.handle)

        if exchange.is_new_conversation and not response.error and not response.cancelled:
            await self._title_conversation(exchange, response)

        final = FinalEvent(
            title=await self._store.load_conversation_title(exchange.user_id, exchange.conversation_id),
            conversation=await self._store.load_conversation(exchange.user_id, exchange.conversation_id),
            request_message=request,
            response_message=response,
        )
        exchange.finished.set_result(final)
        exchange.emit(final)

    async def _finish_interrupted(self, exchange: _Exchange) -> None:
        """Close out an exchange whose task was cancelled after the user message was saved.

        The partial reply is persisted as cancelled unless the final message was
        already written; titling and the conversation reload are skipped.
        """
        response = exchange.response
        if response is None:
            response = exchange.response_message(exchange.partial_text(), cancelled=True)
            try:
                await self._store.save_message(response)
            except Exception as ex:
                logger.warning(f"Could not save interrupted reply {response.message_id}: {ex}")
        logger.info(
            f"Conversation {exchange.conversation_id}: exchange interrupted "
            f"(kept {len(response.text):,} chars)"
        )
        final = FinalEvent(
            title="",
            conversation=None,
            request_message=exchange.request_message,
            response_message=response,
        )
        exchange.finished.set_result(final)
        exchange.emit(final)

    def _budget_prompt(self, exchange: _Exchange, history: list[HistoryEntry]) -> list[ChatMessage]:
        candidates = [entry.to_chat_message() for entry in history]
        candidates.append(ChatMessage(role=Role.USER, content=exchange.request_message.text))

        available = self._limits.max_prompt_tokens - self._prefix_cost(exchange.completion)
        budgeted = self._budgeter.budget(candidates, available)
        if budgeted.overflow:
            raise BudgetOverflowError(
                f"Message too long: it needs {budgeted.prompt_tokens:,} tokens "
                f"but the prompt budget is {available:,} tokens"
            )
        return budgeted.messages

    def _prefix_cost(self, completion: CompletionOptions) -> int:
        if not completion.prompt_prefix:
            return 0
        return self._budgeter.message_cost(ChatMessage(role=Role.SYSTEM, content=completion.prompt_prefix))

    async def _stream_response(self, exchange: _Exchange, history: list[HistoryEntry]) -> Message:
        try:
            prompt = self._budget_prompt(exchange, history)
        except BudgetOverflowError as ex:
            logger.warning(f"Conversation {exchange.conversation_id}: {ex}")
            return exchange.response_message(str(ex), error=True)

        if exchange.cancel_reason is not None:
            logger.info(f"Conversation {exchange.conversation_id}: cancelled before dispatch")
            return exchange.response_message("", cancelled=True)

        session = CompletionSession(
            self._provider,
            exchange.completion,
            timeout_seconds=self._config.request_timeout_seconds,
        )
        exchange.session = session
        session.start(exchange.request_message.text, prompt[:-1])

        loop = asyncio.get_running_loop()
        interval = self._config.snapshot_interval_seconds
        last_saved: float | None = None
        increments: list[str] = []
        async for delta in session.increments():
            increments.append(delta)
            exchange.emit(
                ProgressEvent(
                    message_id=exchange.response_message_id,
                    delta=delta,
                    increments=increments,
                    count=len(increments),
                )
            )
            now = loop.time()
            if last_saved is None or now - last_saved >= interval:
                last_saved = now
                await self._store.save_message(exchange.response_message("".join(increments), unfinished=True))

        return self._message_from_result(exchange, await session.wait())

    def _message_from_result(self, exchange: _Exchange, result: SessionResult) -> Message:
        if result.state is SessionState.CANCELLED:
            return exchange.response_message(result.text, cancelled=True)
        if result.state is SessionState.FAILED:
            return exchange.response_message(result.text, error=True)
        return exchange.response_message(result.text)

    async def _title_conversation(self, exchange: _Exchange, response: Message) -> None:
        if self._title_generator is None:
            return
        try:
            title = await self._title_generator.generate(exchange.request_message.text, response.text)
            if not title:
                return
            await self._store.save_conversation(
                exchange.user_id,
                {"conversation_id": exchange.conversation_id, "title": title},
            )
            logger.info(f"Conversation {exchange.conversation_id} titled {title!r}")
        except Exception as ex:
            logger.warning(f"Title generation failed for conversation {exchange.conversation_id}: {ex}")
