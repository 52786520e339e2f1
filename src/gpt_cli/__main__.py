import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from gpt_cli.app_config import load_json_config, parse_app_config, resolve_runtime_env, save_default_config
from gpt_cli.app_paths import resolve_app_paths
from gpt_cli.bootstrap import bootstrap_runtime
from gpt_cli.errors import ChatError
from gpt_cli.persistence import ConversationStore

_USER_PROMPT = "you> "
_INPUT_HISTORY_SIZE = 20


def enable_input_history():
    """Load readline so input() gets line editing and up-arrow recall. Returns None where it is missing."""
    try:
        import readline
    except ImportError:
        logger.debug("readline not available; input history disabled")
        return None
    return readline


def trim_input_history(history, size: int = _INPUT_HISTORY_SIZE) -> None:
    while history.get_current_history_length() > size:
        history.remove_history_item(0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gpt-cli", description="Chat with a language model from the terminal.")
    parser.add_argument("--file", type=Path, help="resume a saved conversation")
    parser.add_argument("--select-file", action="store_true", help="pick a saved conversation to resume")
    parser.add_argument("--no-save", dest="save", action="store_false", default=None, help="don't save the conversation")
    parser.add_argument("--no-stream", dest="stream", action="store_false", default=None, help="wait for whole replies")
    parser.add_argument("--create-config", action="store_true", help="write a default config file and exit")
    parser.add_argument("--persona", help="persona for a new conversation")
    parser.add_argument("--model", help="model name")
    parser.add_argument("--temperature", type=float, help="sampling temperature")
    parser.add_argument("--top-p", type=float, help="nucleus sampling threshold")
    return parser


def apply_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Command-line flags win over config.json values."""
    merged = dict(config)
    overrides = {
        "Persona": args.persona,
        "Model": args.model,
        "Temperature": args.temperature,
        "TopP": args.top_p,
        "Save": args.save,
        "Stream": args.stream,
    }
    for key, value in overrides.items():
        if value is not None:
            merged[key] = value
    return merged


def select_saved_conversation(store: ConversationStore) -> Path | None:
    files = store.list_saved()
    if not files:
        print(f"No saved conversations in {store.cache_dir}")
        return None
    for index, path in enumerate(files, start=1):
        print(f"  {index:>3}. {path.name}")
    while True:
        try:
            choice = input("Select file> ").strip()
        except (EOFError, KeyboardInterrupt):
            return None
        if not choice:
            return None
        if choice.isdigit() and 1 <= int(choice) <= len(files):
            return files[int(choice) - 1]
        print(f"Enter a number between 1 and {len(files)}")


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    paths = resolve_app_paths()

    if args.create_config:
        path = save_default_config(paths.config_file)
        print(f"Default config written to {path}")
        return 0

    config = parse_app_config(apply_overrides(load_json_config(paths.config_file), args))
    env = resolve_runtime_env(config.provider_name, config.api_key)
    if not env.provider_api_key:
        print(f"{env.provider_env_var} environment variable (or ApiKey in config.json) is required.", file=sys.stderr)
        return 1

    resume_file = args.file
    if args.select_file:
        store = ConversationStore(Path(config.cache_dir) if config.cache_dir else paths.cache_dir)
        resume_file = select_saved_conversation(store)
        if resume_file is None:
            return 0

    try:
        runtime = bootstrap_runtime(config, env, paths, resume_file=resume_file)
    except (ChatError, ValueError) as ex:
        logger.error(f"Startup failed: {ex}")
        print(f"Startup failed: {ex}", file=sys.stderr)
        return 1

    app = runtime.app
    session = app.session
    print("gpt-cli (type 'exit' to quit, '/help' for commands)")
    print(f"Model: {session.model.name} ({session.model.token_limit:,} token context)")
    if runtime.resumed_from is not None:
        print(f"Resumed: {runtime.resumed_from.name} ({len(session.messages)} messages)")
    if config.save:
        print(f"Saving to: {runtime.store.cache_dir}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    history = enable_input_history()
    while True:
        try:
            user_input = input(_USER_PROMPT)
        except (EOFError, KeyboardInterrupt):
            break
        if history is not None:
            trim_input_history(history)

        trimmed = user_input.strip()

        if trimmed in ("exit", "quit"):
            break

        if not trimmed:
            continue

        try:
            print()
            await app.run(trimmed)
        except Exception as ex:
            logger.error(f"Unhandled error: {ex}")

    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
