from __future__ import annotations

import argparse
import codecs
from dataclasses import dataclass
import sys
from typing import Optional

from rich.console import Console

from .exceptions import ConfigurationError

DEFAULT_JSON_INDENT = 2


def terminal_supports_color(stream=None) -> bool:
    """
    Use rich's terminal detection (which honors NO_COLOR, FORCE_COLOR and TERM=dumb)
    to decide whether ANSI colors should be written to `stream`.
    """
    console = Console(file=stream or sys.stdout)
    return console.color_system is not None and not console.no_color


def stream_is_terminal(stream=None) -> bool:
    return Console(file=stream or sys.stdout).is_terminal


@dataclass(frozen=True)
class PrettyConfig:
    """Settings consumed by the parsing and rendering core."""
    color: bool = False
    json_indent: int = DEFAULT_JSON_INDENT
    strict: bool = False


@dataclass(frozen=True)
class OutputConfig:
    output: Optional[str] = None
    use_pager: bool = False
    csv: Optional[str] = None
    encoding: str = "utf-8"


def build_configs(args: argparse.Namespace) -> tuple[PrettyConfig, OutputConfig]:
    """
    Resolve command line options into PrettyConfig and OutputConfig, applying
    terminal detection for options that were not given explicitly.
    """
    if args.json_indent < 0:
        raise ConfigurationError(f"invalid --json-indent {args.json_indent}, must be 0 or more")

    try:
        codecs.lookup(args.encoding)
    except LookupError:
        raise ConfigurationError(f"unknown encoding {args.encoding!r}") from None

    output = args.output if args.output != "-" else None
    if args.csv and (output or args.pager):
        raise ConfigurationError("--csv cannot be combined with --output or --pager")

    stdout_is_terminal = stream_is_terminal()

    use_pager = args.pager
    if use_pager is None:
        reads_files = any(fname != "-" for fname in args.files)
        use_pager = stdout_is_terminal and reads_files and not output and not args.csv

    color = args.color
    if color is None:
        color = not output and not args.csv and terminal_supports_color()

    return (
        PrettyConfig(color=color, json_indent=args.json_indent, strict=args.strict),
        OutputConfig(output=output, use_pager=use_pager, csv=args.csv, encoding=args.encoding),
    )
