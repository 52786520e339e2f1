from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_title: Callable[[], Awaitable[None]],
        on_regenerate: Callable[[], Awaitable[None]],
        on_history: Callable[[], Awaitable[None]],
        on_usage: Callable[[], Awaitable[None]],
        on_sessions: Callable[[], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._handlers: dict[str, Callable[[], Awaitable[None]]] = {
            "/help": on_help,
            "/?": on_help,
            "/title": on_title,
            "/regenerate": on_regenerate,
            "/history": on_history,
            "/usage": on_usage,
            "/sessions": on_sessions,
        }
        self._on_unknown = on_unknown

    @property
    def commands(self) -> list[str]:
        return list(self._handlers)

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        handler = self._handlers.get(trimmed.split()[0].lower())
        if handler is None:
            self._on_unknown(trimmed)
            return True

        await handler()
        return True
