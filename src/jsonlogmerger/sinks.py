from __future__ import annotations

from collections.abc import Generator
import contextlib
import logging
import os
import shlex
import subprocess
import sys
from typing import Callable, Optional, TextIO

import littletable as lt

from .exceptions import OutputError
from .records import Level, LogRecord

logger = logging.getLogger(__name__)

DEFAULT_PAGER = "less -R"

# ValueError covers UnicodeEncodeError and writes to a closed file
WRITE_ERRORS = (OSError, ValueError)


class StreamSink:
    """
    Best-effort writer to an output stream that this sink does not own. A failed
    write (typically a closed downstream pipe, or text that the output encoding
    cannot represent) marks the sink as broken, is reported through `on_error`,
    and is never raised to the caller; later writes are dropped.
    """
    def __init__(self, stream: TextIO, on_error: Optional[Callable[[Exception], None]] = None):
        self.stream = stream
        self.on_error = on_error
        self.broken = False

    def _report(self, exc: Exception) -> None:
        self.broken = True
        logger.debug("output stream failed: %s", exc)
        if self.on_error is not None:
            self.on_error(exc)

    def write(self, text: str) -> None:
        if self.broken:
            return
        try:
            self.stream.write(text)
        except WRITE_ERRORS as exc:
            self._report(exc)

    def flush(self) -> None:
        if self.broken:
            return
        try:
            self.stream.flush()
        except WRITE_ERRORS as exc:
            self._report(exc)


class CsvTableSink:
    """
    Collects merged records as rows (timestamp, source, level, message), and saves
    them to a CSV file using a littletable Table.
    """
    fieldnames = ["timestamp", "source", "level", "message"]

    def __init__(self):
        self.rows: list[dict[str, str]] = []

    def add(self, source_name: str, record: LogRecord) -> None:
        level = record.level.name if isinstance(record.level, Level) else str(record.level)
        self.rows.append({
            "timestamp": record.timestamp_text,
            "source": source_name,
            "level": level,
            "message": record.message,
        })

    def export(self, csv_dest: str) -> int:
        table = lt.Table()
        table.insert_many(self.rows)
        table.csv_export(csv_dest, fieldnames=self.fieldnames)
        return len(table)


def pager_command() -> list[str]:
    cmd = os.environ.get("JSONLOGMERGER_PAGER") or os.environ.get("PAGER") or DEFAULT_PAGER
    return shlex.split(cmd)


@contextlib.contextmanager
def open_pager(encoding: str = "utf-8") -> Generator[TextIO, None, None]:
    """
    Start a pager subprocess and yield the text stream feeding its stdin. On exit,
    closes the stream and waits for the user to quit the pager.
    """
    cmd = pager_command()
    env = dict(os.environ)
    env.setdefault("LESS", "FRX")
    try:
        proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, env=env, text=True, encoding=encoding)
    except OSError as exc:
        logger.warning("cannot start pager %r (%s), writing to stdout", " ".join(cmd), exc)
        yield sys.stdout
        return

    try:
        yield proc.stdin
    finally:
        try:
            proc.stdin.close()
        except OSError:
            # pager exited before reading everything
            pass
        proc.wait()


@contextlib.contextmanager
def open_destination(
        output: Optional[str] = None,
        use_pager: bool = False,
        encoding: str = "utf-8",
) -> Generator[TextIO, None, None]:
    """
    Yield the text stream that rendered output is written to: a pager, a file, or stdout.
    """
    if output and output != "-":
        try:
            outfile = open(output, "w", encoding=encoding)
        except OSError as exc:
            raise OutputError(f"cannot write to {output!r}: {exc.strerror}") from exc
        with outfile:
            yield outfile
    elif use_pager:
        with open_pager(encoding) as pager_stream:
            yield pager_stream
    else:
        yield sys.stdout
