from __future__ import annotations

from datetime import datetime
from pathlib import Path

from loguru import logger

from gpt_cli.errors import MalformedResponseError, RegenerateError
from gpt_cli.models import (
    AssistantPersona,
    Completion,
    Message,
    MessageLog,
    ModelIdentity,
    Role,
    SamplingParams,
    UsageSnapshot,
)
from gpt_cli.provider import ChatProvider
from gpt_cli.streaming import OutputSink, StreamAccumulator
from gpt_cli.token_accountant import TokenAccountant, Tokenizer

TITLE_INSTRUCTION = (
    "How would you title this conversation up until before this message? "
    'Answer in all lowercase with underscores "_" between words so that it can be '
    "used as a file name. Be concise."
)


class ConversationSession:
    """One conversation: the message log, token accounting and session metadata.

    Not safe for concurrent use; callers serialize every operation on a session.
    """

    def __init__(
        self,
        model: ModelIdentity,
        persona: AssistantPersona,
        provider: ChatProvider | None = None,
        *,
        messages: list[Message] | None = None,
        usage: UsageSnapshot | None = None,
        started_at: datetime | None = None,
        title: str | None = None,
        tokenizer: Tokenizer | None = None,
    ):
        self._model = model
        self._persona = persona
        self._provider = provider
        self._log = MessageLog(messages)
        self._accountant = TokenAccountant(tokenizer, usage=usage)
        self._started_at = started_at or datetime.now().astimezone()
        self._title = title
        # file this session was last written to or read from
        self.persisted_path: Path | None = None

    @classmethod
    def create(
        cls,
        model: ModelIdentity,
        persona: AssistantPersona,
        provider: ChatProvider | None = None,
        *,
        tokenizer: Tokenizer | None = None,
    ) -> ConversationSession:
        if not isinstance(model, ModelIdentity) or not model.name:
            raise ValueError("A session needs a named model")
        if not isinstance(persona, AssistantPersona):
            raise ValueError("A session needs an assistant persona")
        seed = Message(role=Role.SYSTEM, content=persona.system_prompt)
        return cls(model, persona, provider, messages=[seed], tokenizer=tokenizer)

    @property
    def model(self) -> ModelIdentity:
        return self._model

    @property
    def persona(self) -> AssistantPersona:
        return self._persona

    @property
    def messages(self) -> list[Message]:
        return self._log.snapshot()

    @property
    def usage(self) -> UsageSnapshot | None:
        return self._accountant.usage

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def title(self) -> str | None:
        return self._title

    def attach_provider(self, provider: ChatProvider) -> None:
        self._provider = provider

    def count_tokens(self) -> int:
        return self._accountant.count_tokens(self._log)

    def usage_report(self) -> list[str]:
        return self._accountant.usage_report(self._log, self._model.token_limit)

    def pop_last_message(self) -> Message | None:
        return self._log.pop()

    async def submit_turn(self, user_text: str, sampling: SamplingParams | None = None) -> str:
        self._log.push(Message(role=Role.USER, content=user_text))
        completion = await self._complete(self._log.snapshot(), sampling)

        reply = completion.choices[0]
        self._log.push(Message(role=reply.role, content=reply.content))
        self._accountant.record_usage(completion.usage)
        logger.debug(f"Turn complete: messages={len(self._log)}, reply_len={len(reply.content)}")

        await self.ensure_title()
        return reply.content

    async def submit_turn_streaming(
        self,
        user_text: str,
        sampling: SamplingParams | None,
        sink: OutputSink,
    ) -> str:
        self._log.push(Message(role=Role.USER, content=user_text))
        sampling = self._checked_sampling(sampling)

        accumulator = StreamAccumulator(sink)
        stream = self._require_provider().complete_stream(
            self._model.name,
            self._log.snapshot(),
            temperature=sampling.temperature,
            top_p=sampling.top_p,
        )
        try:
            async for delta in stream:
                accumulator.feed(delta)
                self._accountant.record_usage(delta.usage)
        except BaseException:
            logger.debug(f"Stream abandoned after {accumulator.delta_count} deltas; reply discarded")
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        reply = accumulator.finish()
        self._log.push(reply)
        logger.debug(
            f"Streamed turn complete: deltas={accumulator.delta_count}, "
            f"messages={len(self._log)}, reply_len={len(reply.content)}"
        )

        await self.ensure_title()
        return reply.content

    async def ensure_title(self) -> str | None:
        return await self.populate_title(force=False)

    async def populate_title(self, force: bool = False) -> str | None:
        if self._title is not None and not force:
            return self._title

        history = self._log.snapshot()
        history.append(Message(role=Role.USER, content=TITLE_INSTRUCTION))
        completion = await self._complete(history, None)

        self._title = completion.choices[0].content.strip()
        logger.info(f"Conversation titled: {self._title}")
        return self._title

    async def regenerate(self, sampling: SamplingParams | None = None) -> str:
        prompt = self._pop_last_exchange()
        logger.debug("Regenerating last reply")
        return await self.submit_turn(prompt.content, sampling)

    async def regenerate_streaming(self, sampling: SamplingParams | None, sink: OutputSink) -> str:
        prompt = self._pop_last_exchange()
        logger.debug("Regenerating last reply (streaming)")
        return await self.submit_turn_streaming(prompt.content, sampling, sink)

    def _pop_last_exchange(self) -> Message:
        """Drop the last reply and return the prompt that produced it."""
        messages = self._log.snapshot()
        if len(messages) < 2 or messages[-1].role != Role.ASSISTANT or messages[-2].role != Role.USER:
            raise RegenerateError("Nothing to regenerate: the conversation does not end with a reply")
        self._log.pop()
        return self._log.pop()

    async def _complete(self, messages: list[Message], sampling: SamplingParams | None) -> Completion:
        sampling = self._checked_sampling(sampling)
        completion = await self._require_provider().complete(
            self._model.name,
            messages,
            temperature=sampling.temperature,
            top_p=sampling.top_p,
        )
        if not completion.choices:
            raise MalformedResponseError("Completion response has no choices")
        return completion

    def _checked_sampling(self, sampling: SamplingParams | None) -> SamplingParams:
        sampling = sampling or SamplingParams()
        if sampling.temperature is not None and sampling.top_p is not None:
            logger.debug("Both temperature and top_p are set; providers usually advise changing only one")
        return sampling

    def _require_provider(self) -> ChatProvider:
        if self._provider is None:
            raise RuntimeError("No chat provider attached to this session")
        return self._provider
