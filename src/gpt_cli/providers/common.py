from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

from gpt_cli.errors import TransportError

_MAX_ATTEMPTS = 5


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt}/{_MAX_ATTEMPTS})...")


def default_retry_kwargs(exception_types: tuple[type[Exception], ...]) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=10, min=10, max=320),
        "stop": stop_after_attempt(_MAX_ATTEMPTS),
        "before_sleep": _on_retry,
        "reraise": True,
    }


@contextmanager
def transport_errors(provider_name: str, exception_types: tuple[type[Exception], ...]) -> Iterator[None]:
    """Re-raise SDK failures as TransportError once retries are exhausted."""
    try:
        yield
    except exception_types as ex:
        logger.error(f"{provider_name} request failed: {type(ex).__name__}: {ex}")
        raise TransportError(f"{provider_name} request failed: {ex}") from ex
