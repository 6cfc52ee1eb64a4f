from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import enum
import json
import logging
from typing import Any, NamedTuple, Optional, Union

logger = logging.getLogger(__name__)

# merge key for records whose timestamp cannot be parsed - they sort ahead of
# everything else, so they are emitted as soon as they reach the head of their queue
EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


class Level(enum.Enum):
    TRACE = 10
    DEBUG = 20
    INFO = 30
    WARN = 40
    ERROR = 50
    FATAL = 60

    @classmethod
    def from_value(cls, value: Any) -> Union[Level, str, int]:
        """
        Map a raw "level" value to a Level member. Numeric values that are not one
        of the standard levels are returned as-is, as are unknown level names.
        Any other JSON value is kept as its JSON text.
        """
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                return value
        if not isinstance(value, str):
            return as_text(value)
        name = value.upper()
        if name == "WARNING":
            name = "WARN"
        return cls.__members__.get(name, value)


LevelValue = Union[Level, str, int]


@dataclass(frozen=True)
class LogRecord:
    level: LevelValue
    message: str
    timestamp: Optional[datetime]
    timestamp_text: str
    req_id: Optional[str] = None
    params: Optional[tuple] = None
    err: Optional[dict[str, Any]] = None
    extras: dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self) -> datetime:
        return self.timestamp if self.timestamp is not None else EARLIEST


class PassThrough(NamedTuple):
    line: str


class Parsed(NamedTuple):
    record: LogRecord


class _Dropped:
    def __repr__(self):
        return "Dropped"


Dropped = _Dropped()

ParseOutcome = Union[PassThrough, Parsed, _Dropped]


def parse_timestamp(ts_str: str) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime. A trailing "Z" is
    accepted, and naive values are taken to be UTC. Returns None if the string
    cannot be parsed.
    """
    s = ts_str.strip()
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def as_text(value: Any) -> str:
    """Strings as-is, any other JSON value as its compact JSON text."""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _is_valid(obj: Any) -> bool:
    return isinstance(obj, dict) and all(
        obj.get(key) is not None for key in ("message", "level", "timestamp")
    )


def make_record(obj: dict[str, Any]) -> LogRecord:
    """
    Build a LogRecord from a validated JSON object. Keys that are not lifted into
    named fields are kept in `extras`, in their original order.
    """
    extras = dict(obj)
    level = extras.pop("level")
    message = as_text(extras.pop("message"))
    raw_timestamp = extras.pop("timestamp")
    timestamp_text = as_text(raw_timestamp)
    # only ISO-8601 strings are merge keys; epoch numbers and the like are shown as given
    timestamp = parse_timestamp(raw_timestamp) if isinstance(raw_timestamp, str) else None

    req_id = extras.pop("req_id", None)
    if req_id is not None:
        req_id = as_text(req_id)

    params = None
    if isinstance(extras.get("params"), list):
        params = tuple(extras.pop("params"))

    err = None
    if isinstance(extras.get("err"), dict):
        err = extras.pop("err")

    return LogRecord(
        level=Level.from_value(level),
        message=message,
        timestamp=timestamp,
        timestamp_text=timestamp_text,
        req_id=req_id,
        params=params,
        err=err,
        extras=extras,
    )


def parse_line(raw_line: str, strict: bool = False) -> ParseOutcome:
    """
    Classify a raw input line:
    - Parsed(record) if the line is a JSON object with message, level and timestamp
    - PassThrough(line) for anything else, if not strict
    - Dropped for anything else, if strict
    """
    not_a_record = Dropped if strict else PassThrough(raw_line)

    if not raw_line.startswith("{"):
        return not_a_record

    try:
        obj = json.loads(raw_line)
    except (ValueError, RecursionError):
        return not_a_record

    if not _is_valid(obj):
        return not_a_record

    return Parsed(make_record(obj))
