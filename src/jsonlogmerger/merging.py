from __future__ import annotations

from collections import deque
from collections.abc import Hashable
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Callable, NamedTuple, Optional, Protocol

from .records import LogRecord

logger = logging.getLogger(__name__)


class Source(Protocol):
    """Flow-control capability of an input source."""
    def pause(self) -> None: ...

    def resume(self) -> None: ...


class BufferedRecord(NamedTuple):
    raw_line: str
    record: LogRecord
    timestamp: datetime


SourceKey = Optional[Hashable]
EmitFunction = Callable[[SourceKey, LogRecord], None]


@dataclass
class SourceBuffer:
    key: Hashable
    source: Optional[Source] = None
    queue: deque[BufferedRecord] = field(default_factory=deque)
    done: bool = False
    paused: bool = False

    @property
    def ready(self) -> bool:
        return self.done or bool(self.queue)

    def pause(self) -> None:
        if not self.paused:
            self.paused = True
            if self.source is not None:
                self.source.pause()

    def resume(self) -> None:
        if self.paused:
            self.paused = False
            if self.source is not None:
                self.source.resume()


class Merger:
    """
    Class that takes records from multiple sources, each delivering its records in
    timestamp order, and emits them in global timestamp order.

    A record is only emitted once every registered source either has a record buffered
    or has reached its end, so that the emitted record is known to be the earliest
    one still to come. While waiting, sources that already have buffered records are
    paused and sources with nothing buffered are resumed, so that a fast source
    cannot race far ahead of a slow one.

    Records added with a source key of None are emitted immediately, with no
    buffering (single input stream, nothing to merge against).
    """
    def __init__(self, emit: EmitFunction):
        self.emit = emit
        self.buffers: dict[Hashable, SourceBuffer] = {}

    def register(self, key: Hashable, source: Optional[Source] = None) -> SourceBuffer:
        if key is None:
            raise ValueError("cannot register a source with key None")
        if key in self.buffers:
            raise ValueError(f"source {key!r} is already registered")
        buffer = self.buffers[key] = SourceBuffer(key, source)
        return buffer

    def add(self, key: SourceKey, raw_line: str, record: LogRecord) -> None:
        if key is None:
            self._emit(None, record)
            return
        self.buffers[key].queue.append(BufferedRecord(raw_line, record, record.sort_key))
        self.flush()

    def end(self, key: SourceKey) -> None:
        if key is None:
            return
        self.buffers[key].done = True
        self.flush()

    def shutdown(self) -> None:
        """
        Stop waiting on any source for more input, and emit everything already buffered.
        """
        for buffer in self.buffers.values():
            buffer.done = True
        self.flush()

    @property
    def finished(self) -> bool:
        return all(buffer.done and not buffer.queue for buffer in self.buffers.values())

    @property
    def buffered_count(self) -> int:
        return sum(len(buffer.queue) for buffer in self.buffers.values())

    def flush(self) -> None:
        buffers = list(self.buffers.values())
        while True:
            if not all(buffer.ready for buffer in buffers):
                for buffer in buffers:
                    if buffer.queue:
                        buffer.pause()
                    elif not buffer.done:
                        buffer.resume()
                return

            pending = [buffer for buffer in buffers if buffer.queue]
            if not pending:
                return

            # min() returns the first of equal keys, so ties go to the earliest-registered source
            next_buffer = min(pending, key=lambda buffer: buffer.queue[0].timestamp)
            buffered = next_buffer.queue.popleft()
            self._emit(next_buffer.key, buffered.record)

    def _emit(self, key: SourceKey, record: LogRecord) -> None:
        try:
            self.emit(key, record)
        except Exception:
            logger.exception("failed to emit record from source %r", key)
