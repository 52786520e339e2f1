import asyncio
import unittest

from gpt_cli.commands.router import CommandRouter


class CommandRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.called: list[str] = []
        self.unknown: list[str] = []

        def record(name: str):
            async def handler() -> None:
                self.called.append(name)
            return handler

        self._router = CommandRouter(
            on_help=record("help"),
            on_title=record("title"),
            on_regenerate=record("regenerate"),
            on_history=record("history"),
            on_usage=record("usage"),
            on_sessions=record("sessions"),
            on_unknown=self.unknown.append,
        )

    def test_plain_text_is_not_a_command(self) -> None:
        self.assertFalse(asyncio.run(self._router.try_handle("hello there")))
        self.assertEqual([], self.called)

    def test_routes_known_commands(self) -> None:
        for text in ["/help", "/?", " /title ", "/REGENERATE", "/history", "/usage", "/sessions"]:
            self.assertTrue(asyncio.run(self._router.try_handle(text)))
        self.assertEqual(
            ["help", "help", "title", "regenerate", "history", "usage", "sessions"],
            self.called,
        )

    def test_unknown_command_is_reported(self) -> None:
        self.assertTrue(asyncio.run(self._router.try_handle("/dance now")))
        self.assertEqual(["/dance now"], self.unknown)


if __name__ == "__main__":
    unittest.main()
