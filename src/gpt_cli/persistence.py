from __future__ import annotations

import json
import re
from datetime import datetime
from pathlib import Path

from loguru import logger

from gpt_cli.errors import FormatError, PersistenceError
from gpt_cli.models import AssistantPersona, Message, ModelIdentity, Role, UsageSnapshot
from gpt_cli.provider import ChatProvider
from gpt_cli.session import ConversationSession
from gpt_cli.token_accountant import Tokenizer

_FILE_SUFFIX = ".json"
_UNSAFE_TITLE_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def session_to_document(session: ConversationSession) -> dict:
    return {
        "messages": [m.to_dict() for m in session.messages],
        "usage": {"total_tokens": session.usage.total_tokens} if session.usage is not None else None,
        "started_at": session.started_at.isoformat(),
        "title": session.title,
        "model": {"name": session.model.name, "token_limit": session.model.token_limit},
        "persona": {"system_prompt": session.persona.system_prompt},
    }


def session_from_document(
    document: dict,
    provider: ChatProvider | None = None,
    *,
    tokenizer: Tokenizer | None = None,
    default_model: ModelIdentity | None = None,
    default_persona: AssistantPersona | None = None,
) -> ConversationSession:
    """Rebuild a session from a parsed document.

    Documents that only carry ``messages`` (written before the other fields
    existed) load with the supplied defaults. Anything else that does not
    match the schema raises FormatError.
    """
    if not isinstance(document, dict):
        raise FormatError("Conversation document must be a mapping")

    raw_messages = document.get("messages")
    if not isinstance(raw_messages, list):
        raise FormatError("Conversation document needs a 'messages' list")
    messages = [_parse_message(raw, index) for index, raw in enumerate(raw_messages)]

    model = _parse_model(document.get("model"), default_model)
    persona = _parse_persona(document.get("persona"), default_persona)

    return ConversationSession(
        model,
        persona,
        provider,
        messages=messages,
        usage=_parse_usage(document.get("usage")),
        started_at=_parse_started_at(document.get("started_at")),
        title=_optional_str(document, "title"),
        tokenizer=tokenizer,
    )


def _parse_message(raw: object, index: int) -> Message:
    if not isinstance(raw, dict):
        raise FormatError(f"Message {index} must be a mapping")
    role = raw.get("role")
    content = raw.get("content")
    name = raw.get("name")
    if not isinstance(role, str):
        raise FormatError(f"Message {index} has no role")
    try:
        parsed_role = Role.parse(role)
    except ValueError as ex:
        raise FormatError(f"Message {index}: {ex}") from ex
    if not isinstance(content, str):
        raise FormatError(f"Message {index} content must be text")
    if name is not None and not isinstance(name, str):
        raise FormatError(f"Message {index} name must be text")
    return Message(role=parsed_role, content=content, name=name)


def _is_int(value: object) -> bool:
    # bool is an int subclass; JSON true/false are not counts
    return isinstance(value, int) and not isinstance(value, bool)


def _parse_usage(raw: object) -> UsageSnapshot | None:
    if raw is None:
        return None
    if not isinstance(raw, dict) or not _is_int(raw.get("total_tokens")):
        raise FormatError("'usage' must be a mapping with an integer 'total_tokens'")
    return UsageSnapshot(total_tokens=raw["total_tokens"])


def _parse_started_at(raw: object) -> datetime:
    if raw is None:
        return datetime.now().astimezone()
    if not isinstance(raw, str):
        raise FormatError("'started_at' must be an ISO-8601 string")
    try:
        return datetime.fromisoformat(raw)
    except ValueError as ex:
        raise FormatError(f"'started_at' is not ISO-8601: {raw!r}") from ex


def _parse_model(raw: object, default: ModelIdentity | None) -> ModelIdentity:
    if raw is None:
        if default is None:
            raise FormatError("Conversation document has no 'model'")
        return default
    if not isinstance(raw, dict):
        raise FormatError("'model' must be a mapping")
    name = raw.get("name")
    token_limit = raw.get("token_limit")
    if not isinstance(name, str) or not _is_int(token_limit):
        raise FormatError("'model' needs a text 'name' and an integer 'token_limit'")
    return ModelIdentity(name=name, token_limit=token_limit)


def _parse_persona(raw: object, default: AssistantPersona | None) -> AssistantPersona:
    if raw is None:
        if default is None:
            raise FormatError("Conversation document has no 'persona'")
        return default
    if not isinstance(raw, dict) or not isinstance(raw.get("system_prompt"), str):
        raise FormatError("'persona' needs a text 'system_prompt'")
    return AssistantPersona(system_prompt=raw["system_prompt"])


def _optional_str(document: dict, key: str) -> str | None:
    value = document.get(key)
    if value is not None and not isinstance(value, str):
        raise FormatError(f"'{key}' must be text")
    return value


def file_name_for(session: ConversationSession) -> str:
    # ':' is not allowed in Windows file names
    started = session.started_at.isoformat().replace(":", "-")
    title = _UNSAFE_TITLE_CHARS.sub("_", session.title or "").strip("_")
    if title:
        return f"{title}_{started}{_FILE_SUFFIX}"
    return f"{started}{_FILE_SUFFIX}"


def _is_stale(previous: Path, current: Path, cache_dir: Path) -> bool:
    previous = previous.resolve()
    return previous != current.resolve() and previous.parent == cache_dir.resolve()


class ConversationStore:
    """Saves and loads conversation documents inside one directory."""

    def __init__(self, cache_dir: str | Path):
        self._cache_dir = Path(cache_dir)

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def save(self, session: ConversationSession) -> Path:
        path = self._cache_dir / file_name_for(session)
        document = session_to_document(session)
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
        except OSError as ex:
            raise PersistenceError(f"Failed to save conversation to {path}: {ex}") from ex

        previous = session.persisted_path
        if previous is not None and _is_stale(previous, path, self._cache_dir):
            try:
                previous.unlink(missing_ok=True)
                logger.info(f"Replaced {previous.name} with {path.name}")
            except OSError as ex:
                raise PersistenceError(f"Failed to remove stale conversation file {previous}: {ex}") from ex

        session.persisted_path = path
        logger.info(f"Conversation saved: {path} ({len(document['messages'])} messages)")
        return path

    def load(
        self,
        path: str | Path,
        provider: ChatProvider | None = None,
        *,
        tokenizer: Tokenizer | None = None,
        default_model: ModelIdentity | None = None,
        default_persona: AssistantPersona | None = None,
    ) -> ConversationSession:
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                text = f.read()
        except OSError as ex:
            raise PersistenceError(f"Failed to read conversation {path}: {ex}") from ex
        except UnicodeDecodeError as ex:
            raise FormatError(f"{path} is not UTF-8 text: {ex}") from ex

        try:
            document = json.loads(text)
        except json.JSONDecodeError as ex:
            raise FormatError(f"{path} is not a valid conversation document: {ex}") from ex

        session = session_from_document(
            document,
            provider,
            tokenizer=tokenizer,
            default_model=default_model,
            default_persona=default_persona,
        )
        session.persisted_path = path
        logger.info(f"Conversation loaded: {path} ({len(session.messages)} messages)")
        return session

    def list_saved(self) -> list[Path]:
        if not self._cache_dir.exists():
            return []
        try:
            return [entry for entry in self._cache_dir.iterdir() if entry.is_file()]
        except OSError as ex:
            raise PersistenceError(f"Failed to list conversations in {self._cache_dir}: {ex}") from ex
