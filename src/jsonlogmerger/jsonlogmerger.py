#
# jsonlogmerger.py
#
# Utility for pretty-printing one or more JSON log files, merged in timestamp order.
#

import argparse
import asyncio
from collections.abc import Hashable
import logging
import os
import signal
import sys
from typing import Optional, TextIO

from . import __version__
from .config import PrettyConfig, OutputConfig, build_configs
from .exceptions import JsonLogMergerError, OutputError
from .file_reading import FileReader, LineSource
from .log_setup import configure_logging
from .merging import Merger
from .records import LogRecord, Parsed, PassThrough, parse_line
from .rendering import AnsiStyle, PlainStyle, render
from .sinks import CsvTableSink, StreamSink, open_destination

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1


def make_argument_parser():
    epilog_notes = """
    Each input line is expected to be a JSON object with at least "timestamp" (ISO-8601),
    "level" and "message" keys; "req_id", "params" and "err" get special formatting, and
    any other keys are shown as key=value extras. Lines that are not JSON log records are
    passed through unchanged, unless --strict is given.

    When more than one file is given, records are interleaved in timestamp order. Each
    file is assumed to be in timestamp order already. Files ending in ".gz" are
    decompressed; use "-" (or give no files) to read from stdin.
    """

    parser = argparse.ArgumentParser(prog="jsonlogmerger", epilog=epilog_notes)
    parser.add_argument("files", nargs="*", default=["-"], help="JSON log files to be merged (default: stdin)")
    parser.add_argument(
        "--strict", "-S",
        action="store_true",
        help="suppress lines that are not valid JSON log records, instead of passing them through"
    )
    parser.add_argument(
        "--color",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="colorize output (defaults to coloring when writing to a terminal)"
    )
    parser.add_argument(
        "--json-indent", "-j",
        type=int,
        default=2,
        help="indent used when pretty-printing JSON values (default: 2)"
    )
    parser.add_argument("--output", "-o", help="save output to file ('-' for stdout)")
    parser.add_argument(
        "--pager",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="show output in a pager ($JSONLOGMERGER_PAGER, $PAGER, or 'less -R'); "
             "defaults to using a pager when reading files to a terminal"
    )
    parser.add_argument("--csv", "-csv", help="save merged log records to CSV file")
    parser.add_argument(
        "--encoding", "-enc",
        type=str,
        default=sys.getfilesystemencoding(),
        help="encoding to use when reading log files (defaults to the system default encoding)")
    parser.add_argument("--verbose", "-v", action="store_true", help="log diagnostic messages to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    return parser


class JsonLogMergerApplication:
    def __init__(self, config: argparse.Namespace):
        self.config = config

        # merge each file only once, keeping the order given on the command line
        self.fnames: list[str] = list({}.fromkeys(config.files or ["-"]))

        pretty, output = build_configs(config)
        self.pretty: PrettyConfig = pretty
        self.output: OutputConfig = output
        self.style = AnsiStyle() if pretty.color else PlainStyle()

        self.exit_code = EXIT_OK
        self._source_names: dict[str, str] = {}
        self._sources: list[LineSource] = []
        self._tasks: list[asyncio.Task] = []
        self._shutdown_requested = False
        self.sink: Optional[StreamSink] = None
        self.csv_table: Optional[CsvTableSink] = None
        self.merger: Optional[Merger] = None

    def run(self) -> int:
        return asyncio.run(self._run())

    def _open_readers(self) -> list[FileReader]:
        readers = []
        try:
            for fname in self.fnames:
                readers.append(FileReader.get_reader(fname, self.output.encoding))
        except JsonLogMergerError:
            for reader in readers:
                reader.close()
            raise
        return readers

    async def _run(self) -> int:
        readers = self._open_readers()
        self._source_names = {fname: rdr.display_name for fname, rdr in zip(self.fnames, readers)}

        if self.output.csv:
            self.csv_table = CsvTableSink()

        try:
            with open_destination(self.output.output, self.output.use_pager, self.output.encoding) as stream:
                await self._merge(readers, stream)
        except OutputError:
            for reader in readers:
                reader.close()
            raise

        if self.csv_table is not None and self.exit_code == EXIT_OK:
            count = self.csv_table.export(self.output.csv)
            logger.info("saved %d records to %s", count, self.output.csv)

        return self.exit_code

    async def _merge(self, readers: list[FileReader], stream: TextIO) -> None:
        self.sink = StreamSink(stream, on_error=self._on_output_error)
        self.merger = Merger(self._emit_record)

        # a single input has nothing to be merged with, so its records are not buffered
        single_source = len(readers) == 1

        sources = []
        for fname, reader in zip(self.fnames, readers):
            key = None if single_source else fname
            source = LineSource(key, reader, self._handle_line, self.merger.end, on_idle=self.sink.flush)
            if key is not None:
                self.merger.register(key, source)
            sources.append(source)

        self._sources = sources
        self._install_signal_handlers()
        self._tasks = [asyncio.create_task(source.run()) for source in sources]
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for source, result in zip(sources, results):
            if isinstance(result, Exception):
                logger.error("reading %s failed: %r", source.reader.display_name, result)
                source.failed = True
            if source.failed and self.exit_code == EXIT_OK:
                self.exit_code = EXIT_ERROR

        if not self.merger.finished:
            logger.debug("draining %d buffered records", self.merger.buffered_count)
        self.merger.shutdown()
        self.sink.flush()

    def _handle_line(self, key: Optional[Hashable], line: str) -> None:
        outcome = parse_line(line, self.pretty.strict)
        if isinstance(outcome, Parsed):
            self.merger.add(key, line, outcome.record)
        elif isinstance(outcome, PassThrough) and self.csv_table is None:
            self.sink.write(f"{outcome.line}\n")

    def _emit_record(self, key: Optional[Hashable], record: LogRecord) -> None:
        if self.csv_table is not None:
            source_name = self._source_names[key] if key is not None else self._source_names[self.fnames[0]]
            self.csv_table.add(source_name, record)
        else:
            self.sink.write(render(record, self.style, self.pretty.json_indent))

    def _stop_reading(self) -> None:
        for source in self._sources:
            source.pause()
        for task in self._tasks:
            task.cancel()

    def _on_output_error(self, exc: Exception) -> None:
        if isinstance(exc, BrokenPipeError):
            # the consumer of our output went away (such as `| head`), nothing more to do
            logger.debug("stopping, output closed: %s", exc)
            if self.sink.stream is sys.__stdout__:
                # keep the interpreter from complaining when it flushes stdout at exit
                devnull = os.open(os.devnull, os.O_WRONLY)
                os.dup2(devnull, sys.stdout.fileno())
        else:
            logger.error("cannot write output: %s", exc)
            self.exit_code = EXIT_ERROR
        self._stop_reading()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # no loop signal handling on this platform, KeyboardInterrupt will apply instead
                pass

    def request_shutdown(self, signum: int = signal.SIGINT) -> None:
        """
        First request: stop reading input, but emit what is already buffered.
        Second request: exit immediately.
        """
        if self._shutdown_requested:
            logger.warning("forced exit, buffered records discarded")
            os._exit(128 + signum)

        logger.debug("shutdown requested by signal %d", signum)
        self._shutdown_requested = True
        self.exit_code = 128 + signum
        self._stop_reading()


def main(argv: Optional[list[str]] = None) -> int:
    parser = make_argument_parser()
    args_ns = parser.parse_args(argv)

    configure_logging(args_ns.verbose)

    try:
        app = JsonLogMergerApplication(args_ns)
        return app.run()
    except JsonLogMergerError as exc:
        print(f"jsonlogmerger: {exc}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == '__main__':
    sys.exit(main())
