from collections.abc import AsyncIterator

import openai
from loguru import logger
from tenacity import retry

from gpt_cli.errors import MalformedResponseError, StreamProtocolError
from gpt_cli.models import Completion, Message, Role, StreamDelta, UsageSnapshot
from gpt_cli.providers.common import default_retry_kwargs, transport_errors

_RETRYABLE_ERRORS = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
)


def _to_openai_messages(messages: list[Message]) -> list[dict]:
    return [m.to_dict() for m in messages]


def _sampling_kwargs(temperature: float | None, top_p: float | None) -> dict:
    kwargs: dict = {}
    if temperature is not None:
        kwargs["temperature"] = temperature
    if top_p is not None:
        kwargs["top_p"] = top_p
    return kwargs


def _to_usage(usage) -> UsageSnapshot | None:
    if usage is None or usage.total_tokens is None:
        return None
    return UsageSnapshot(total_tokens=int(usage.total_tokens))


def _decode_choice(choice) -> Message:
    message = getattr(choice, "message", None)
    if message is None:
        raise MalformedResponseError("Completion choice has no message")
    try:
        role = Role.parse(message.role or Role.ASSISTANT.value)
    except ValueError as ex:
        raise MalformedResponseError(str(ex)) from ex
    return Message(role=role, content=message.content or "")


def _decode_chunk(chunk) -> StreamDelta:
    usage = _to_usage(getattr(chunk, "usage", None))

    # The closing chunk of an include_usage stream carries usage and no choices.
    if not chunk.choices:
        if usage is None:
            raise StreamProtocolError("No first choice on stream chunk")
        return StreamDelta(usage=usage)

    delta = chunk.choices[0].delta
    if delta is None:
        raise StreamProtocolError("Stream chunk choice has no delta")

    role = None
    if delta.role:
        try:
            role = Role.parse(delta.role)
        except ValueError as ex:
            raise StreamProtocolError(str(ex)) from ex

    return StreamDelta(role=role, content=delta.content, usage=usage)


class OpenAIProvider:
    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key)

    @retry(**default_retry_kwargs(_RETRYABLE_ERRORS))
    async def _create(self, **kwargs):
        return await self._client.chat.completions.create(**kwargs)

    async def complete(
        self,
        model: str,
        messages: list[Message],
        *,
        temperature: float | None = None,
        top_p: float | None = None,
    ) -> Completion:
        logger.debug(f"API request: model={model}, messages={len(messages)}")
        with transport_errors("OpenAI", (openai.APIError,)):
            response = await self._create(
                model=model,
                messages=_to_openai_messages(messages),
                **_sampling_kwargs(temperature, top_p),
            )

        choices = [_decode_choice(c) for c in (response.choices or [])]
        usage = _to_usage(response.usage)
        logger.debug(
            f"API response: choices={len(choices)}, "
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
        logger.debug(f"API stream request: model={model}, messages={len(messages)}")
        chunk_count = 0
        with transport_errors("OpenAI", (openai.APIError,)):
            stream = await self._create(
                model=model,
                messages=_to_openai_messages(messages),
                stream=True,
                stream_options={"include_usage": True},
                **_sampling_kwargs(temperature, top_p),
            )
            async with stream:
                async for chunk in stream:
                    chunk_count += 1
                    yield _decode_chunk(chunk)
        logger.debug(f"API stream finished: chunks={chunk_count}")
