from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

import tiktoken
from loguru import logger

from gpt_cli.models import Message, Role, UsageSnapshot

# Every message is framed as <im_start>{role/name}\n{content}<im_end>\n.
_TOKENS_PER_MESSAGE = 4
# Counts against the real service came out one token high without this.
_INITIAL_TOKEN_COUNT = -1


@runtime_checkable
class Tokenizer(Protocol):
    def encode(self, text: str) -> Sequence[int]: ...


class TiktokenTokenizer:
    """cl100k_base encoder, loaded on first use."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self._encoding_name = encoding_name
        self._encoding: tiktoken.Encoding | None = None

    def encode(self, text: str) -> list[int]:
        if self._encoding is None:
            logger.debug(f"Loading tiktoken encoding {self._encoding_name}")
            self._encoding = tiktoken.get_encoding(self._encoding_name)
        return self._encoding.encode(text, allowed_special="all")


class TokenAccountant:
    """Local token estimate plus the last usage figure the service reported.

    The estimate is advisory only. It follows the cookbook recipe for
    gpt-3.5-turbo with the corrections that made it line up in practice, so it
    can drift from what the service really bills.
    """

    def __init__(self, tokenizer: Tokenizer | None = None, usage: UsageSnapshot | None = None):
        self._tokenizer = tokenizer or TiktokenTokenizer()
        self._usage = usage

    @property
    def usage(self) -> UsageSnapshot | None:
        return self._usage

    def record_usage(self, usage: UsageSnapshot | None) -> None:
        if usage is None:
            return
        logger.debug(f"Recorded usage: total_tokens={usage.total_tokens}")
        self._usage = usage

    def count_tokens(self, messages: Iterable[Message]) -> int:
        token_count = _INITIAL_TOKEN_COUNT
        for message in messages:
            token_count += _TOKENS_PER_MESSAGE
            if message.role == Role.USER and message.name is not None:
                # the name replaces one framing token
                token_count -= 1
                token_count += self._count(message.name)
            token_count += self._count(message.role.value)
            token_count += self._count(message.content)
        return token_count

    def usage_report(self, messages: Iterable[Message], token_limit: int) -> list[str]:
        lines: list[str] = []
        if self._usage is not None:
            lines.append(f"Recorded usage {self._usage.total_tokens}/{token_limit} tokens")
        lines.append(f"Estimated usage {self.count_tokens(messages)}/{token_limit} tokens")
        return lines

    def _count(self, text: str) -> int:
        return len(self._tokenizer.encode(text))
