from __future__ import annotations

import json
from typing import Any, Callable, Optional

from rich.color import ColorSystem
from rich.style import Style

from .records import Level, LogRecord

INDENT = "    "
DETAIL_DIVIDER = f"\n{INDENT}--\n"
MAX_INLINE_LENGTH = 50

StyleFunction = Callable[[str, Optional[str]], str]


class PlainStyle:
    """No-op styling strategy, used when output is not going to a color terminal."""
    def __call__(self, text: str, color: Optional[str] = None) -> str:
        return text


class AnsiStyle:
    """
    Styling strategy that wraps text in ANSI SGR escape sequences, using rich
    Styles keyed by color name. Each styled span ends with a reset, so styles
    never bleed past a block boundary.
    """
    color_table: dict[str, Style] = {
        "bold": Style(bold=True),
        "italic": Style(italic=True),
        "underline": Style(underline=True),
        "inverse": Style(reverse=True),
        "white": Style(color="white"),
        "grey": Style(color="bright_black"),
        "black": Style(color="black"),
        "blue": Style(color="blue"),
        "cyan": Style(color="cyan"),
        "green": Style(color="green"),
        "magenta": Style(color="magenta"),
        "red": Style(color="red"),
        "yellow": Style(color="yellow"),
    }

    def __call__(self, text: str, color: Optional[str] = None) -> str:
        style = self.color_table.get(color) if color else None
        if style is None or not text:
            return text
        return style.render(text, color_system=ColorSystem.STANDARD)


LEVEL_COLORS = {
    Level.TRACE: "white",
    Level.DEBUG: "yellow",
    Level.INFO: "cyan",
    Level.WARN: "magenta",
    Level.ERROR: "red",
    Level.FATAL: "inverse",
}


def _indent(block: str) -> str:
    return "\n".join(INDENT + line for line in block.split("\n"))


def _to_json(value: Any, indent: int) -> str:
    return json.dumps(value, indent=indent, ensure_ascii=False, default=str)


def _stringify(value: Any, indent: int) -> str:
    if isinstance(value, str):
        return value
    return _to_json(value, indent)


def render_level(level, style: StyleFunction) -> str:
    if isinstance(level, Level):
        return style(level.name, LEVEL_COLORS[level])
    if isinstance(level, int):
        return f"LVL{level}"
    return str(level).upper()


def leftover_fields(record: LogRecord) -> dict[str, Any]:
    """
    Build the ordered mapping of fields that have no dedicated rendering step.

    When `err` carries a stack, its message, name and stack are rendered elsewhere,
    and each remaining key k of `err` is re-keyed to the top level as "err.<k>".
    A literal top-level key with the same name is overwritten (last write wins).
    An `err` without a stack is left as an ordinary "err" field.
    """
    leftovers = dict(record.extras)
    err = record.err
    if err is None:
        return leftovers

    if "stack" not in err:
        leftovers["err"] = err
        return leftovers

    for key, value in err.items():
        if key in ("message", "name", "stack"):
            continue
        leftovers[f"err.{key}"] = value
    return leftovers


def render(record: LogRecord, style: StyleFunction = PlainStyle(), json_indent: int = 2) -> str:
    """
    Format a LogRecord as a display block:

        [<timestamp>] <LEVEL>: <message> (<key>=<value>, ...)
            <detail block>
            --
            <detail block>

    The record itself is not modified.
    """
    extras: list[str] = []
    details: list[str] = []

    time_str = style(f"[{record.timestamp_text}]", None)
    level_str = render_level(record.level, style)

    if record.req_id is not None:
        extras.append(f"req_id={record.req_id}")

    if "\n" in record.message:
        inline_message = ""
        details.append(_indent(record.message))
    else:
        inline_message = f" {style(record.message, 'cyan')}"

    # strings are shown as-is, anything else as (pretty-printed) JSON
    for param in record.params or ():
        details.append(_indent(_stringify(param, json_indent)))

    if record.err is not None and "stack" in record.err:
        details.append(_indent(_stringify(record.err["stack"], json_indent)))

    for key, value in leftover_fields(record).items():
        value_str = _stringify(value, 2)
        if "\n" in value_str or len(value_str) > MAX_INLINE_LENGTH:
            details.append(_indent(f"{key}: {value_str}"))
        else:
            if " " in value_str or not value_str:
                value_str = json.dumps(value_str, ensure_ascii=False)
            extras.append(f"{key}={value_str}")

    extras_str = f" ({', '.join(extras)})" if extras else ""
    details_str = DETAIL_DIVIDER.join(details) + "\n" if details else ""

    return f"{time_str} {level_str}:{inline_message}{extras_str}\n{details_str}"
