from __future__ import annotations

import itertools
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol, TextIO, runtime_checkable

from gpt_cli.errors import StreamProtocolError
from gpt_cli.models import Message, Role, StreamDelta

_INDICATOR_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"


@runtime_checkable
class OutputSink(Protocol):
    def accept(self, fragment: str) -> None: ...


class StreamAccumulator:
    """Folds streamed deltas into one message, forwarding content as it arrives.

    Each call to ``feed`` forwards the fragment to the sink before returning,
    so the caller must not read the next delta until ``feed`` is done.
    Nothing is produced until ``finish`` is called; an accumulator that is
    dropped halfway leaves no trace.
    """

    def __init__(self, sink: OutputSink):
        self._sink = sink
        self._role: Role | None = None
        self._parts: list[str] = []
        self._delta_count = 0

    @property
    def delta_count(self) -> int:
        return self._delta_count

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def feed(self, delta: StreamDelta) -> None:
        if not isinstance(delta, StreamDelta):
            raise StreamProtocolError(f"Unexpected stream item: {type(delta).__name__}")
        if delta.content is not None and not isinstance(delta.content, str):
            raise StreamProtocolError(f"Delta content is not text: {type(delta.content).__name__}")

        self._delta_count += 1
        if delta.role is not None:
            self._role = delta.role
        if delta.content:
            self._parts.append(delta.content)
            self._sink.accept(delta.content)

    def finish(self) -> Message:
        return Message(role=self._role or Role.ASSISTANT, content=self.content)


class WaitIndicator:
    """Animates the reply line until the model has something to show.

    Frames are drawn onto ``stream`` from a daemon thread. ``stop`` wipes the
    frame and leaves the cursor right after ``prefix``, where the reply text
    continues.
    """

    def __init__(
        self,
        stream: TextIO,
        *,
        prefix: str = "",
        label: str = " Thinking...",
        interval: float = 0.08,
    ):
        self._stream = stream
        self._prefix = prefix
        self._label = label
        self._interval = interval
        self._done = threading.Event()
        self._worker: threading.Thread | None = None

    @property
    def active(self) -> bool:
        return self._worker is not None and not self._done.is_set()

    def start(self) -> None:
        if self._worker is not None:
            return
        self._worker = threading.Thread(target=self._animate, name="wait-indicator", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        if not self.active:
            return
        self._done.set()
        self._worker.join()
        blank = " " * (1 + len(self._label))
        self._write(f"\r{self._prefix}{blank}\r{self._prefix}")

    def _animate(self) -> None:
        for frame in itertools.cycle(_INDICATOR_FRAMES):
            if self._done.is_set() or not self._write(f"\r{self._prefix}{frame}{self._label}"):
                return
            self._done.wait(self._interval)

    def _write(self, text: str) -> bool:
        try:
            self._stream.write(text)
            self._stream.flush()
        except (UnicodeEncodeError, OSError):
            # terminal can't draw the frames
            return False
        return True


@contextmanager
def waiting_indicator(stream: TextIO | None = None, *, prefix: str = "") -> Iterator[WaitIndicator]:
    indicator = WaitIndicator(stream or sys.stdout, prefix=prefix)
    indicator.start()
    try:
        yield indicator
    finally:
        indicator.stop()


class ConsoleSink:
    """Writes fragments to a terminal stream, animating the line until the first one shows up."""

    def __init__(self, stream: TextIO | None = None, *, prefix: str = "", indicator: bool = True):
        self._stream = stream or sys.stdout
        self._indicator = WaitIndicator(self._stream, prefix=prefix) if indicator else None
        self._received = False

    def start(self) -> None:
        if self._indicator is not None:
            self._indicator.start()

    def accept(self, fragment: str) -> None:
        if not self._received:
            self._received = True
            self.stop()
        self._stream.write(fragment)
        self._stream.flush()

    def stop(self) -> None:
        if self._indicator is not None:
            self._indicator.stop()

    def __enter__(self) -> ConsoleSink:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
