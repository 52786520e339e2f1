from collections.abc import AsyncIterator

import anthropic
from loguru import logger
from tenacity import retry

from gpt_cli.errors import MalformedResponseError, StreamProtocolError
from gpt_cli.models import Completion, Message, Role, StreamDelta, UsageSnapshot
from gpt_cli.providers.common import default_retry_kwargs, transport_errors

_RETRYABLE_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)

# Events that carry nothing for the conversation log.
_IGNORED_EVENTS = {"content_block_start", "content_block_stop", "message_stop", "ping"}


def _to_anthropic_request(messages: list[Message]) -> tuple[str, list[dict]]:
    """Split the log into Anthropic's separate system prompt and turn list."""
    system_parts: list[str] = []
    out: list[dict] = []
    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_parts.append(msg.content)
        else:
            out.append({"role": msg.role.value, "content": msg.content})
    return "\n\n".join(system_parts), out


def _request_kwargs(
    model: str,
    max_tokens: int,
    messages: list[Message],
    temperature: float | None,
    top_p: float | None,
) -> dict:
    system_prompt, turns = _to_anthropic_request(messages)
    kwargs: dict = dict(model=model, max_tokens=max_tokens, messages=turns)
    if system_prompt:
        kwargs["system"] = system_prompt
    if temperature is not None:
        kwargs["temperature"] = temperature
    if top_p is not None:
        kwargs["top_p"] = top_p
    return kwargs


def _decode_role(value: str, error_type: type[Exception]) -> Role:
    try:
        return Role.parse(value)
    except ValueError as ex:
        raise error_type(str(ex)) from ex


class AnthropicProvider:
    def __init__(self, api_key: str, *, max_tokens: int = 1024):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._max_tokens = max_tokens

    @retry(**default_retry_kwargs(_RETRYABLE_ERRORS))
    async def _create(self, **kwargs):
        return await self._client.messages.create(**kwargs)

    async def complete(
        self,
        model: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> Completion:
        logger.debug(f"API request: model={model}, max_tokens={self._max_tokens}, messages={len(messages)}")
        with transport_errors("Anthropic", (anthropic.APIError,)):
            response = await self._create(
                **_request_kwargs(model, self._max_tokens, messages, temperature, top_p)
            )

        texts = [block.text for block in (response.content or []) if block.type == "text"]
        choices: list[Message] = []
        if texts:
            role = _decode_role(response.role or Role.ASSISTANT.value, MalformedResponseError)
            choices.append(Message(role=role, content="".join(texts)))

        usage = None
        if response.usage is not None:
            usage = UsageSnapshot(total_tokens=response.usage.input_tokens + response.usage.output_tokens)
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"total_tokens={usage.total_tokens if usage else '-'}"
        )
        return Completion(choices=choices, usage=usage)

    async def complete_stream(
        self,
        model: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> AsyncIterator[StreamDelta]:
        logger.debug(f"API stream request: model={model}, max_tokens={self._max_tokens}, messages={len(messages)}")
        input_tokens = 0
        with transport_errors("Anthropic", (anthropic.APIError,)):
            stream = await self._create(
                stream=True,
                **_request_kwargs(model, self._max_tokens, messages, temperature, top_p),
            )
            async with stream:
                async for event in stream:
                    if event.type == "message_start":
                        usage = event.message.usage
                        input_tokens = usage.input_tokens if usage is not None else 0
                        yield StreamDelta(role=_decode_role(event.message.role, StreamProtocolError))
                    elif event.type == "content_block_delta":
                        if event.delta.type == "text_delta":
                            yield StreamDelta(content=event.delta.text)
                    elif event.type == "message_delta":
                        if event.usage is not None:
                            total = input_tokens + event.usage.output_tokens
                            yield StreamDelta(usage=UsageSnapshot(total_tokens=total))
                    elif event.type not in _IGNORED_EVENTS:
                        raise StreamProtocolError(f"Unexpected stream event: {event.type!r}")
        logger.debug("API stream finished")
