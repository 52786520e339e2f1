from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable

from loguru import logger

from gpt_cli.commands.router import CommandRouter
from gpt_cli.errors import ChatError
from gpt_cli.models import Message, Role, SamplingParams
from gpt_cli.persistence import ConversationStore
from gpt_cli.session import ConversationSession
from gpt_cli.streaming import ConsoleSink, OutputSink, waiting_indicator

_ROLE_LABELS = {
    Role.SYSTEM: "System",
    Role.USER: "User",
    Role.ASSISTANT: "Assistant",
}
_RULE = "---------------------------------"


class ChatApp:
    _LINE_PREFIX = "assistant> "

    def __init__(
        self,
        session: ConversationSession,
        *,
        store: ConversationStore | None = None,
        sampling: SamplingParams | None = None,
        stream: bool = True,
        save: bool = True,
    ):
        self._session = session
        self._store = store
        self._sampling = sampling or SamplingParams()
        self._stream = stream
        self._save_enabled = save and store is not None
        self._run_lock = asyncio.Lock()

        self._command_router = CommandRouter(
            on_help=self._on_help,
            on_title=self._on_title,
            on_regenerate=self._on_regenerate,
            on_history=self._on_history,
            on_usage=self._on_usage,
            on_sessions=self._on_sessions,
            on_unknown=self._on_unknown_command,
        )

    @property
    def session(self) -> ConversationSession:
        return self._session

    async def run(self, user_message: str) -> None:
        async with self._run_lock:
            try:
                if await self._command_router.try_handle(user_message):
                    return
                await self._reply(
                    lambda sink: self._session.submit_turn_streaming(user_message, self._sampling, sink),
                    lambda: self._session.submit_turn(user_message, self._sampling),
                )
            except ChatError as ex:
                logger.error(f"{type(ex).__name__}: {ex}")
                print(f"\n{self._LINE_PREFIX}[{type(ex).__name__}] {ex}")

    async def _reply(
        self,
        streaming: Callable[[OutputSink], Awaitable[str]],
        blocking: Callable[[], Awaitable[str]],
    ) -> None:
        print(self._LINE_PREFIX, end="", flush=True)
        last_before = self._last_message()
        if self._stream:
            with ConsoleSink(prefix=self._LINE_PREFIX) as sink:
                response = await self._interruptible(streaming(sink))
        else:
            with waiting_indicator(prefix=self._LINE_PREFIX):
                response = await self._interruptible(blocking())

        if response is None:
            response = self._reply_recorded_since(last_before)
            if response is None:
                print(f"\n{self._LINE_PREFIX}[Interrupted: reply discarded]")
                return
            # cancelled while titling; the reply is already part of the conversation
            logger.info("Turn interrupted after the reply was recorded; keeping it")

        if not self._stream:
            print(response, end="")

        print("\n")
        self._print_usage()
        self._set_terminal_title()
        self._save()

    def _last_message(self) -> Message | None:
        messages = self._session.messages
        return messages[-1] if messages else None

    def _reply_recorded_since(self, last_before: Message | None) -> str | None:
        last = self._last_message()
        if last is None or last is last_before or last.role != Role.ASSISTANT:
            return None
        return last.content

    async def _interruptible(self, coro: Awaitable[str]) -> str | None:
        """Await a turn; Ctrl-C cancels just this turn instead of the whole app."""
        task = asyncio.ensure_future(coro)
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, task.cancel)
            handler_installed = True
        except (NotImplementedError, RuntimeError):
            handler_installed = False

        try:
            return await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            logger.info("Turn cancelled by user")
            return None
        finally:
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)

    def _print_usage(self) -> None:
        for line in self._session.usage_report():
            print(line)
        print()

    def _set_terminal_title(self) -> None:
        title = self._session.title
        if title and sys.stdout.isatty():
            sys.stdout.write(f"\x1b]0;{title.replace('_', ' ')}\x07")
            sys.stdout.flush()

    def _save(self) -> None:
        if not self._save_enabled:
            return
        self._store.save(self._session)

    async def _on_help(self) -> None:
        print(f"{self._LINE_PREFIX}Available commands:")
        print(f"{self._LINE_PREFIX}- /help (or /?)")
        print(f"{self._LINE_PREFIX}- /title        recreate the conversation title")
        print(f"{self._LINE_PREFIX}- /regenerate   discard the last reply and ask again")
        print(f"{self._LINE_PREFIX}- /history      print the conversation so far")
        print(f"{self._LINE_PREFIX}- /usage        print token usage")
        print(f"{self._LINE_PREFIX}- /sessions     list saved conversations")
        print(f"{self._LINE_PREFIX}- exit | quit")

    async def _on_title(self) -> None:
        title = await self._session.populate_title(force=True)
        print(f"{self._LINE_PREFIX}Title: {title}")
        self._set_terminal_title()
        self._save()

    async def _on_regenerate(self) -> None:
        await self._reply(
            lambda sink: self._session.regenerate_streaming(self._sampling, sink),
            lambda: self._session.regenerate(self._sampling),
        )

    async def _on_history(self) -> None:
        print(_RULE)
        print("Conversation so far:")
        for message in self._session.messages:
            label = _ROLE_LABELS[message.role]
            if message.name:
                label = f"{label} ({message.name})"
            print(f"{label}:\n")
            print(message.content)
        print()
        for line in self._session.usage_report():
            print(line)
        print(_RULE)

    async def _on_usage(self) -> None:
        for line in self._session.usage_report():
            print(f"{self._LINE_PREFIX}{line}")

    async def _on_sessions(self) -> None:
        if self._store is None:
            print(f"{self._LINE_PREFIX}No conversation directory configured")
            return
        files = self._store.list_saved()
        if not files:
            print(f"{self._LINE_PREFIX}No saved conversations in {self._store.cache_dir}")
            return
        print(f"{self._LINE_PREFIX}Saved conversations in {self._store.cache_dir}:")
        for path in files:
            marker = "*" if path == self._session.persisted_path else " "
            print(f"{self._LINE_PREFIX}{marker} {path.name}")

    def _on_unknown_command(self, trimmed: str) -> None:
        print(f"{self._LINE_PREFIX}Unknown local command: {trimmed} (try /help)")
