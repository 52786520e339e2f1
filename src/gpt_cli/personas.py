from datetime import datetime

from gpt_cli.models import AssistantPersona

KNOWLEDGE_CUTOFF = "September 2021"
DEFAULT_PERSONA = "default"

_PERSONA_PROMPTS = {
    DEFAULT_PERSONA: (
        "You are ChatGPT, a large language model trained by OpenAI.\n"
        "Answer as concisely as possible."
    ),
    "joi": "You are Joi. The cheerful and helpful AI assistant.",
}


def persona_names() -> list[str]:
    return sorted(_PERSONA_PROMPTS)


def build_persona(name: str = DEFAULT_PERSONA, now: datetime | None = None) -> AssistantPersona:
    prompt = _PERSONA_PROMPTS.get(name.strip().lower())
    if prompt is None:
        raise ValueError(f"Unknown persona: {name!r}. Available: {', '.join(persona_names())}")
    now = now or datetime.now().astimezone()
    return AssistantPersona(
        system_prompt=(
            f"{prompt}\nKnowledge cutoff year {KNOWLEDGE_CUTOFF} "
            f"Current date and time: {now.isoformat(timespec='seconds')}"
        )
    )
