import asyncio
import signal
import sys
from dataclasses import dataclass
from uuid import uuid4

from dotenv import load_dotenv
from loguru import logger

from chat_orchestrator.app_config import load_json_config, parse_app_config, resolve_runtime_env
from chat_orchestrator.bootstrap import AppRuntime, bootstrap_runtime
from chat_orchestrator.commands.router import CommandRouter
from chat_orchestrator.errors import AbortKeyNotFoundError, ConfigurationError, OrchestratorError
from chat_orchestrator.models import CreatedEvent, FinalEvent, ProgressEvent

_HELP = """\
Commands:
  /help                 show this help
  /new                  start a new conversation
  /conversation         show the current conversation
  /conversation <id>    continue a stored conversation
  exit | quit           leave
Press Ctrl+C while a reply streams to stop it and keep the partial text,
or at the prompt to leave."""


@dataclass
class ReplState:
    conversation_id: str | None = None
    parent_message_id: str | None = None


class _InterruptHandler:
    """SIGINT handler: exits at the prompt, stops the reply while one streams."""

    def __init__(self, task: asyncio.Task, loop: asyncio.AbstractEventLoop):
        self._task = task
        self._loop = loop
        self.streaming = False

    def __call__(self, signum, frame) -> None:
        if not self.streaming:
            raise KeyboardInterrupt()
        self._task.cancel()
        # Wakes a loop blocked in select().
        self._loop.call_soon_threadsafe(lambda: None)


async def _absorb_pending_cancel() -> bool:
    """Swallow a cancel requested before this turn began; True when one was pending."""
    task = asyncio.current_task()
    if task is None or not task.cancelling():
        return False
    try:
        await asyncio.sleep(0)
    except asyncio.CancelledError:
        pass
    while task.cancelling():
        task.uncancel()
    return True


async def _consume(
    runtime: AppRuntime,
    state: ReplState,
    text: str,
    conversation_id: str,
    user_id: str | None,
    created: asyncio.Event,
) -> FinalEvent | None:
    final: FinalEvent | None = None
    async for event in runtime.orchestrator.stream(
        text,
        conversation_id=conversation_id,
        parent_message_id=state.parent_message_id,
        user_id=user_id,
    ):
        if isinstance(event, CreatedEvent):
            created.set()
        elif isinstance(event, ProgressEvent):
            print(event.delta, end="", flush=True)
        elif isinstance(event, FinalEvent):
            final = event
    return final


async def run_turn(runtime: AppRuntime, state: ReplState, text: str, user_id: str | None) -> None:
    if await _absorb_pending_cancel():
        logger.debug("Ignored an interrupt that arrived before the turn started")

    conversation_id = state.conversation_id or str(uuid4())
    created = asyncio.Event()
    turn = asyncio.create_task(_consume(runtime, state, text, conversation_id, user_id, created))
    try:
        final = await asyncio.shield(turn)
    except asyncio.CancelledError:
        current = asyncio.current_task()
        while current is not None and current.cancelling():
            current.uncancel()
        print("\n[stopping]")
        if not created.is_set():
            # Wait for the exchange to register its abort key.
            waiter = asyncio.ensure_future(created.wait())
            await asyncio.wait({turn, waiter}, return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
        if not turn.done():
            try:
                await runtime.orchestrator.abort(conversation_id)
            except AbortKeyNotFoundError:
                pass
        final = await turn

    if final is None:
        return
    response = final.response_message
    if response.error:
        print(f"\n[error] {response.text}")
    elif response.cancelled:
        print("\n[stopped]")
    elif final.title and state.conversation_id is None:
        print(f"\n[title] {final.title}")
    state.conversation_id = response.conversation_id
    state.parent_message_id = response.message_id


async def main() -> None:
    load_dotenv()

    try:
        app = parse_app_config(load_json_config())
        env = resolve_runtime_env(app.provider_name)
        runtime = bootstrap_runtime(app, env)
    except ConfigurationError as ex:
        logger.error(str(ex))
        sys.exit(1)

    state = ReplState()

    async def on_help() -> None:
        print(_HELP)

    async def on_new() -> None:
        state.conversation_id = None
        state.parent_message_id = None
        print("Started a new conversation.")

    async def on_conversation(command: str) -> None:
        _, _, target = command.partition(" ")
        target = target.strip()
        if not target:
            if state.conversation_id is None:
                print("No conversation yet.")
                return
            title = await runtime.store.load_conversation_title(app.user_id, state.conversation_id)
            print(f"Conversation {state.conversation_id} {title!r}")
            return
        conversation = await runtime.store.load_conversation(app.user_id, target)
        if conversation is None:
            print(f"Conversation not found: {target}")
            return
        messages = await runtime.store.load_messages(target)
        state.conversation_id = target
        state.parent_message_id = messages[-1].message_id if messages else None
        print(f"Continuing {target} {conversation.title!r} ({len(messages)} messages)")

    def on_unknown(command: str) -> None:
        print(f"Unknown command: {command}. Type /help for commands.")

    router = CommandRouter(
        on_help=on_help,
        on_new=on_new,
        on_conversation=on_conversation,
        on_unknown=on_unknown,
    )

    print("chat-orchestrator (type 'exit' to quit, '/help' for commands)")
    print(f"Model: {app.model} via {app.provider_name} "
          f"(context {app.max_context_tokens:,} tokens, response {app.max_response_tokens:,} tokens)")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    interrupts = _InterruptHandler(asyncio.current_task(), asyncio.get_running_loop())
    previous_handler = signal.signal(signal.SIGINT, interrupts)
    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue
            if await router.try_handle(trimmed):
                continue

            interrupts.streaming = True
            try:
                print()
                await run_turn(runtime, state, trimmed, app.user_id)
                print("\n")
            except OrchestratorError as ex:
                logger.error(f"Request failed: {ex}")
            finally:
                interrupts.streaming = False
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        await runtime.orchestrator.aclose()
        runtime.database.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
