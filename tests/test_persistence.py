import asyncio
import json
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from gpt_cli.errors import FormatError, PersistenceError
from gpt_cli.models import AssistantPersona, Message, ModelIdentity, Role, UsageSnapshot
from gpt_cli.persistence import ConversationStore, file_name_for, session_from_document, session_to_document
from gpt_cli.session import ConversationSession
from tests.fakes import FakeProvider, WordTokenizer, reply

MODEL = ModelIdentity("gpt-4", 8192)
PERSONA = AssistantPersona("You are Joi.")
STARTED = datetime(2023, 3, 14, 9, 30, 5, 123456, tzinfo=timezone(timedelta(hours=1)))


def _session(title: str | None = "pancake_recipes", usage: UsageSnapshot | None = UsageSnapshot(321)) -> ConversationSession:
    return ConversationSession(
        MODEL,
        PERSONA,
        messages=[
            Message(Role.SYSTEM, "You are Joi."),
            Message(Role.USER, "How do I make pancakes?", name="dave"),
            Message(Role.ASSISTANT, "Flour, eggs, milk. Ünïcode too ✓"),
        ],
        usage=usage,
        started_at=STARTED,
        title=title,
        tokenizer=WordTokenizer(),
    )


class ConversationStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self._dir = Path(self._tmp.name) / "conversations"
        self._store = ConversationStore(self._dir)

    def tearDown(self) -> None:
        self._tmp.cleanup()


class SaveLoadTests(ConversationStoreTestCase):
    def test_round_trip_preserves_every_field(self) -> None:
        original = _session()
        path = self._store.save(original)
        loaded = self._store.load(path, tokenizer=WordTokenizer())

        self.assertEqual(original.messages, loaded.messages)
        self.assertEqual(original.usage, loaded.usage)
        self.assertEqual(original.title, loaded.title)
        self.assertEqual(original.model, loaded.model)
        self.assertEqual(original.persona, loaded.persona)
        self.assertEqual(original.started_at, loaded.started_at)
        self.assertEqual(session_to_document(original), session_to_document(loaded))

    def test_round_trip_with_absent_title_and_usage(self) -> None:
        original = _session(title=None, usage=None)
        loaded = self._store.load(self._store.save(original))
        self.assertIsNone(loaded.title)
        self.assertIsNone(loaded.usage)
        self.assertEqual(session_to_document(original), session_to_document(loaded))

    def test_save_creates_directory_and_names_file(self) -> None:
        path = self._store.save(_session())
        self.assertTrue(self._dir.is_dir())
        self.assertEqual(self._dir, path.parent)
        self.assertEqual("pancake_recipes_2023-03-14T09-30-05.123456+01-00.json", path.name)

    def test_document_schema(self) -> None:
        path = self._store.save(_session())
        document = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(
            {"messages", "usage", "started_at", "title", "model", "persona"},
            set(document),
        )
        self.assertEqual({"role": "user", "content": "How do I make pancakes?", "name": "dave"}, document["messages"][1])
        self.assertNotIn("name", document["messages"][0])
        self.assertEqual({"total_tokens": 321}, document["usage"])
        self.assertEqual({"name": "gpt-4", "token_limit": 8192}, document["model"])
        self.assertEqual({"system_prompt": "You are Joi."}, document["persona"])

    def test_saving_twice_overwrites_same_file(self) -> None:
        session = _session()
        first = self._store.save(session)
        second = self._store.save(session)
        self.assertEqual(first, second)
        self.assertEqual([first], self._store.list_saved())

    def test_retitled_session_replaces_previous_file(self) -> None:
        session = _session(title=None)
        session.attach_provider(FakeProvider(completions=[reply("now_titled")]))
        untitled = self._store.save(session)
        asyncio.run(session.ensure_title())
        titled = self._store.save(session)

        self.assertNotEqual(untitled, titled)
        self.assertFalse(untitled.exists())
        self.assertEqual([titled], self._store.list_saved())

    def test_loaded_session_resaves_over_its_file(self) -> None:
        path = self._store.save(_session())
        loaded = self._store.load(path)
        self.assertEqual(path, loaded.persisted_path)
        self.assertEqual(path, self._store.save(loaded))
        self.assertEqual(1, len(self._store.list_saved()))

    def test_session_loaded_by_relative_path_resaves_over_its_file(self) -> None:
        path = self._store.save(_session())
        cwd = os.getcwd()
        os.chdir(self._tmp.name)
        try:
            loaded = self._store.load(Path("conversations") / path.name)
            self.assertEqual(path, self._store.save(loaded))
        finally:
            os.chdir(cwd)
        self.assertEqual([path], self._store.list_saved())

    def test_session_loaded_by_relative_path_replaces_its_file_on_retitle(self) -> None:
        path = self._store.save(_session(title=None))
        cwd = os.getcwd()
        os.chdir(self._tmp.name)
        try:
            loaded = self._store.load(Path("conversations") / path.name)
            self.assertFalse(loaded.persisted_path.is_absolute())
            loaded.attach_provider(FakeProvider(completions=[reply("now_titled")]))
            asyncio.run(loaded.ensure_title())
            titled = self._store.save(loaded)
        finally:
            os.chdir(cwd)

        self.assertFalse(path.exists())
        self.assertEqual([titled], self._store.list_saved())

    def test_save_into_unwritable_location_fails(self) -> None:
        blocker = Path(self._tmp.name) / "blocker"
        blocker.write_text("not a directory")
        store = ConversationStore(blocker / "nested")
        with self.assertRaises(PersistenceError):
            store.save(_session())


class LoadErrorTests(ConversationStoreTestCase):
    def _write(self, name: str, content: str) -> Path:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._dir / name
        path.write_text(content, encoding="utf-8")
        return path

    def test_missing_file_is_persistence_error(self) -> None:
        with self.assertRaises(PersistenceError):
            self._store.load(self._dir / "missing.json")

    def test_invalid_json_is_format_error(self) -> None:
        with self.assertRaises(FormatError):
            self._store.load(self._write("broken.json", "{not json"))

    def test_invalid_utf8_is_format_error(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._dir / "latin1.json"
        path.write_bytes(b'{"messages":[{"role":"user","content":"\xff\xfe"}]}')
        with self.assertRaises(FormatError):
            self._store.load(path)

    def test_unknown_role_is_format_error(self) -> None:
        document = session_to_document(_session())
        document["messages"][1]["role"] = "tool"
        with self.assertRaises(FormatError):
            self._store.load(self._write("role.json", json.dumps(document)))

    def test_wrong_types_are_format_errors(self) -> None:
        for key, value in [
            ("messages", "nope"),
            ("usage", {"total_tokens": "many"}),
            ("usage", {"total_tokens": True}),
            ("started_at", "yesterday"),
            ("title", 7),
            ("model", {"name": "gpt-4"}),
            ("model", {"name": "gpt-4", "token_limit": False}),
            ("persona", {}),
        ]:
            document = session_to_document(_session())
            document[key] = value
            with self.subTest(key=key):
                with self.assertRaises(FormatError):
                    session_from_document(document)

    def test_messages_only_document_uses_defaults(self) -> None:
        path = self._write(
            "legacy.json",
            json.dumps({"messages": [{"role": "system", "content": "old prompt"}, {"role": "user", "content": "hi"}]}),
        )
        loaded = self._store.load(path, default_model=MODEL, default_persona=PERSONA)
        self.assertEqual(2, len(loaded.messages))
        self.assertEqual(MODEL, loaded.model)
        self.assertEqual(PERSONA, loaded.persona)
        self.assertIsNone(loaded.title)
        self.assertIsNone(loaded.usage)

    def test_messages_only_document_without_defaults_fails(self) -> None:
        path = self._write("legacy.json", json.dumps({"messages": []}))
        with self.assertRaises(FormatError):
            self._store.load(path)


class ListSavedTests(ConversationStoreTestCase):
    def test_missing_directory_lists_nothing(self) -> None:
        self.assertEqual([], self._store.list_saved())

    def test_empty_directory_lists_nothing(self) -> None:
        self._dir.mkdir(parents=True)
        self.assertEqual([], self._store.list_saved())

    def test_lists_only_regular_files(self) -> None:
        first = self._store.save(_session(title="first"))
        second = self._store.save(_session(title="second"))
        (self._dir / "subdir").mkdir()
        self.assertEqual(sorted([first, second]), sorted(self._store.list_saved()))


class FileNameTests(unittest.TestCase):
    def test_untitled_name_is_timestamp_only(self) -> None:
        self.assertEqual("2023-03-14T09-30-05.123456+01-00.json", file_name_for(_session(title=None)))

    def test_unsafe_title_characters_are_replaced(self) -> None:
        name = file_name_for(_session(title="../etc/passwd please"))
        self.assertTrue(name.startswith("etc_passwd_please_"))
        self.assertNotIn("/", name)


if __name__ == "__main__":
    unittest.main()
