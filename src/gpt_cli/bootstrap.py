from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from gpt_cli.app_config import AppConfig, RuntimeEnv
from gpt_cli.app_paths import AppPaths
from gpt_cli.chat_app import ChatApp
from gpt_cli.logging_config import setup_logging
from gpt_cli.persistence import ConversationStore
from gpt_cli.personas import build_persona
from gpt_cli.provider import create_provider
from gpt_cli.session import ConversationSession


@dataclass
class AppRuntime:
    app: ChatApp
    store: ConversationStore
    log_descriptions: list[str]
    resumed_from: Path | None


def bootstrap_runtime(
    config: AppConfig,
    env: RuntimeEnv,
    paths: AppPaths,
    *,
    resume_file: Path | None = None,
) -> AppRuntime:
    log_descriptions = setup_logging(
        level=config.log_level,
        consumers=config.log_consumers,
        log_dir=paths.log_dir,
    )

    provider = create_provider(config.provider_name, env.provider_api_key, max_tokens=config.max_tokens)
    store = ConversationStore(Path(config.cache_dir) if config.cache_dir else paths.cache_dir)
    model = config.model_identity()
    persona = build_persona(config.persona)

    if resume_file is not None:
        session = store.load(resume_file, provider, default_model=model, default_persona=persona)
    else:
        session = ConversationSession.create(model, persona, provider)
    logger.info(
        f"Session ready: provider={config.provider_name}, model={session.model.name}, "
        f"messages={len(session.messages)}"
    )

    app = ChatApp(
        session,
        store=store,
        sampling=config.sampling(),
        stream=config.stream,
        save=config.save,
    )
    return AppRuntime(
        app=app,
        store=store,
        log_descriptions=log_descriptions,
        resumed_from=resume_file,
    )
