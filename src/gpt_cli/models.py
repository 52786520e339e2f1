from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

_DEFAULT_TOKEN_LIMIT = 4096

# Context window sizes for models we know about. Anything else falls back to 4096.
_KNOWN_TOKEN_LIMITS = {
    "gpt-3.5-turbo": 4096,
    "gpt-3.5-turbo-16k": 16385,
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "claude-3-haiku-20240307": 200000,
    "claude-3-5-sonnet-20241022": 200000,
    "claude-sonnet-4-5-20250929": 200000,
}


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> Role:
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown message role: {value!r}") from None


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    name: str | None = None

    def to_dict(self) -> dict:
        data = {"role": self.role.value, "content": self.content}
        if self.name is not None:
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class ModelIdentity:
    name: str
    token_limit: int

    @classmethod
    def for_name(cls, name: str, token_limit: int | None = None) -> ModelIdentity:
        if token_limit is None:
            token_limit = _KNOWN_TOKEN_LIMITS.get(name, _DEFAULT_TOKEN_LIMIT)
        return cls(name=name, token_limit=token_limit)


@dataclass(frozen=True)
class AssistantPersona:
    system_prompt: str


@dataclass(frozen=True)
class UsageSnapshot:
    total_tokens: int


@dataclass(frozen=True)
class SamplingParams:
    """Optional sampling knobs; providers usually recommend setting only one of them."""

    temperature: float | None = None
    top_p: float | None = None


@dataclass(frozen=True)
class Completion:
    choices: list[Message] = field(default_factory=list)
    usage: UsageSnapshot | None = None


@dataclass(frozen=True)
class StreamDelta:
    role: Role | None = None
    content: str | None = None
    usage: UsageSnapshot | None = None


class MessageLog:
    """Ordered conversation log. Only push and pop are allowed."""

    def __init__(self, messages: list[Message] | None = None):
        self._messages: list[Message] = list(messages or [])

    def push(self, message: Message) -> None:
        self._messages.append(message)

    def pop(self) -> Message | None:
        if not self._messages:
            return None
        return self._messages.pop()

    def snapshot(self) -> list[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(list(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]
