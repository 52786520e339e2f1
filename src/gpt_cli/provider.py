from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from gpt_cli.models import Completion, Message, StreamDelta


@runtime_checkable
class ChatProvider(Protocol):
    async def complete(
        self,
        model: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> Completion:
        """Single request/response completion.

        Raises TransportError when the call fails and MalformedResponseError
        when a choice cannot be decoded.
        """
        ...

    def complete_stream(
        self,
        model: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Streamed completion as a lazy, finite, non-restartable sequence of deltas.

        Raises TransportError when the call fails and StreamProtocolError when
        a chunk cannot be decoded.
        """
        ...


def create_provider(provider_name: str, api_key: str, *, max_tokens: int = 1024) -> ChatProvider:
    """Factory: create a ChatProvider by name."""
    name = provider_name.strip().lower()
    if name == "openai":
        from gpt_cli.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    if name == "anthropic":
        from gpt_cli.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, max_tokens=max_tokens)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'openai', 'anthropic'")
