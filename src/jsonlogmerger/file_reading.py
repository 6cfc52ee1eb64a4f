from __future__ import annotations

import abc
import asyncio
import codecs
import contextlib
from collections.abc import Hashable
import logging
import os
import stat
import sys
from typing import BinaryIO, Callable, Optional

from .exceptions import InputSourceError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

LineCallback = Callable[[Optional[Hashable], str], None]
EndCallback = Callable[[Optional[Hashable]], None]


class FileReader:
    """
    Reads raw byte chunks from a log input. Use FileReader.get_reader to select
    the reader class for a given file name.
    """
    @classmethod
    def get_reader(cls, name: str, encoding: str) -> FileReader:
        for subcls in cls.__subclasses__():
            if subcls is PlainFileReader:
                continue
            if subcls._can_read(name):
                return subcls(name, encoding)
        return PlainFileReader(name, encoding)

    @classmethod
    @abc.abstractmethod
    def _can_read(cls, fname: str) -> bool:
        """Override in subclasses"""

    @abc.abstractmethod
    def _close_reader(self):
        """Override in subclasses"""

    def __init__(self, file_name: str, encoding: str):
        self.file_name = file_name
        self.encoding = encoding
        self._close_obj: Optional[BinaryIO] = None

    @property
    def display_name(self) -> str:
        return self.file_name

    def read_chunk(self, size: int = DEFAULT_CHUNK_SIZE) -> bytes:
        """
        Blocking read of up to `size` bytes, returning whatever is available; an
        empty result means end of input.
        """
        return self._close_obj.read1(size)

    def pipe_fileno(self) -> Optional[int]:
        """
        File descriptor of the input if it is a pipe, socket or terminal, where a read
        can wait indefinitely for more data. None for regular files.
        """
        try:
            fd = self._close_obj.fileno()
            mode = os.fstat(fd).st_mode
        except (AttributeError, OSError, ValueError):
            return None
        if stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode) or os.isatty(fd):
            return fd
        return None

    def close(self):
        self._close_reader()


class PlainFileReader(FileReader):
    @classmethod
    def _can_read(cls, fname: str) -> bool:
        return True

    def __init__(self, fname: str, encoding: str):
        super().__init__(fname, encoding)
        try:
            self._close_obj = open(self.file_name, "rb")
        except OSError as exc:
            raise InputSourceError(f"cannot open {fname!r}: {exc.strerror}") from exc

    def _close_reader(self):
        self._close_obj.close()


class GzipFileReader(FileReader):
    @classmethod
    def _can_read(cls, fname: str) -> bool:
        return fname.endswith(".gz")

    def pipe_fileno(self) -> Optional[int]:
        # compressed data has to go through GzipFile
        return None

    def __init__(self, fname: str, encoding: str):
        import gzip

        super().__init__(fname, encoding)
        try:
            self._close_obj = gzip.GzipFile(filename=self.file_name)
        except OSError as exc:
            raise InputSourceError(f"cannot open {fname!r}: {exc.strerror}") from exc

    def _close_reader(self):
        self._close_obj.close()


class StdinReader(FileReader):
    @classmethod
    def _can_read(cls, fname: str) -> bool:
        return fname == "-"

    def __init__(self, fname: str, encoding: str):
        super().__init__(fname, encoding)
        self._close_obj = sys.stdin.buffer

    @property
    def display_name(self) -> str:
        return "<stdin>"

    def _close_reader(self):
        # stdin is owned by the process, not by this reader
        pass


class LineSplitter:
    """
    Incrementally decodes byte chunks and splits them into complete lines. A line
    split across two chunks is held back until the rest of it arrives; a final
    line with no terminating newline is returned by `close()`.
    """
    def __init__(self, encoding: str):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._partial = ""

    @staticmethod
    def _strip_cr(line: str) -> str:
        return line[:-1] if line.endswith("\r") else line

    def feed(self, chunk: bytes) -> list[str]:
        text = self._partial + self._decoder.decode(chunk)
        *lines, self._partial = text.split("\n")
        return [self._strip_cr(line) for line in lines]

    def close(self) -> list[str]:
        tail = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return [self._strip_cr(tail)] if tail else []


class PipeChunkReader:
    """
    Non-blocking chunk reads from a pipe, socket or terminal through an asyncio read
    transport. A pending read is cancelled along with the task awaiting it, so an
    idle input (such as `tail -f ... |`) never holds up shutdown the way a read
    blocked in an executor thread does.
    """
    def __init__(self, fd: int, limit: int = DEFAULT_CHUNK_SIZE):
        self.fd = fd
        self.limit = limit
        self._stream: Optional[asyncio.StreamReader] = None
        self._transport: Optional[asyncio.ReadTransport] = None

    async def open(self) -> None:
        loop = asyncio.get_running_loop()
        self._stream = asyncio.StreamReader(limit=self.limit)
        # the transport closes its pipe object, so give it a duplicate of the fd
        pipe = os.fdopen(os.dup(self.fd), "rb", buffering=0)
        try:
            self._transport, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(self._stream), pipe
            )
        except BaseException:
            pipe.close()
            raise

    async def read(self, size: int) -> bytes:
        return await self._stream.read(size)

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
            # the transport made the shared file description non-blocking
            with contextlib.suppress(OSError):
                os.set_blocking(self.fd, True)


class LineSource:
    """
    Asyncio driver for one input: reads chunks from a FileReader, splits them into
    lines, and delivers each line to `on_line`, then calls `on_end` once input is
    exhausted. `on_idle`, if given, is called after each chunk has been delivered.

    `pause()` and `resume()` suspend and restart delivery (and reading) without
    blocking the event loop.

    Pipes and terminals are read through a PipeChunkReader; regular files are read
    in the loop's default executor. `failed` is set if reading stopped on an error.
    """
    def __init__(
            self,
            key: Optional[Hashable],
            reader: FileReader,
            on_line: LineCallback,
            on_end: EndCallback,
            chunk_size: int = DEFAULT_CHUNK_SIZE,
            on_idle: Optional[Callable[[], None]] = None,
    ):
        self.key = key
        self.reader = reader
        self.on_line = on_line
        self.on_end = on_end
        self.chunk_size = chunk_size
        self.on_idle = on_idle
        self._resumed = asyncio.Event()
        self._resumed.set()
        self.failed = False

    @property
    def paused(self) -> bool:
        return not self._resumed.is_set()

    def pause(self) -> None:
        logger.debug("pausing %s", self.reader.display_name)
        self._resumed.clear()

    def resume(self) -> None:
        logger.debug("resuming %s", self.reader.display_name)
        self._resumed.set()

    async def _deliver(self, lines: list[str]) -> None:
        for line in lines:
            await self._resumed.wait()
            self.on_line(self.key, line)

    async def _read_in_executor(self, size: int) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.reader.read_chunk, size)

    async def _open_pipe(self) -> Optional[PipeChunkReader]:
        fd = self.reader.pipe_fileno()
        # the Windows proactor loop only reads pipes it created itself
        if fd is None or sys.platform == "win32":
            return None
        pipe = PipeChunkReader(fd, self.chunk_size)
        try:
            await pipe.open()
        except (NotImplementedError, ValueError, OSError) as exc:
            logger.debug("reading %s in a worker thread: %s", self.reader.display_name, exc)
            return None
        return pipe

    async def run(self) -> None:
        splitter = LineSplitter(self.reader.encoding)
        pipe = None
        try:
            pipe = await self._open_pipe()
            read_chunk = pipe.read if pipe is not None else self._read_in_executor
            while True:
                await self._resumed.wait()
                chunk = await read_chunk(self.chunk_size)
                if not chunk:
                    break
                await self._deliver(splitter.feed(chunk))
                if self.on_idle is not None:
                    self.on_idle()
            await self._deliver(splitter.close())
        except OSError as exc:
            logger.error("error reading %s: %s", self.reader.display_name, exc)
            self.failed = True
        finally:
            if pipe is not None:
                pipe.close()
            self.reader.close()

        self.on_end(self.key)
