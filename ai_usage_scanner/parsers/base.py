"""
Shared parser machinery.

Every parser turns one file, starting at a given offset, into a lazy
sequence of RawEvent. Line-delimited formats resume mid-file; whole-file
formats always read everything.
"""

import json
import logging
import math
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from ai_usage_scanner.storage.models import RawEvent, Tool

logger = logging.getLogger(__name__)

# Failures converting one decoded record; they cost that record only
RECORD_ERRORS = (ArithmeticError, LookupError, TypeError, ValueError, RecursionError)

# Epoch values at or above this are milliseconds
_EPOCH_MILLIS_THRESHOLD = 1_000_000_000_000
_FRACTION_RE = re.compile(r"\.(\d+)")


class FileParseError(ValueError):
    """Raised when a whole file cannot be parsed."""


@dataclass
class ParseContext:
    """Mutable progress of one parse pass over one file.

    ``offset`` holds the start position on entry and advances past every
    consumed record while the parser's generator runs.
    """
    offset: int = 0
    parser_state: Dict[str, Any] = field(default_factory=dict)
    malformed: int = 0
    fallback_timestamp: Optional[datetime] = None


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """Parse a log timestamp into an aware UTC datetime.

    Accepts ISO 8601 strings (``Z`` or offset suffixes; naive values are
    taken as local time), epoch seconds or milliseconds as numbers or
    digit strings. Returns None for anything else.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    if text.isascii() and text.isdigit():
        try:
            return _from_epoch(int(text))
        except ValueError:
            # Longer than int() accepts
            return None

    # fromisoformat before 3.11 only takes exactly 3 or 6 fraction digits
    text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed.astimezone(timezone.utc)


def _from_epoch(value) -> Optional[datetime]:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        seconds = value / 1000 if abs(value) >= _EPOCH_MILLIS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def token_count(value: Any) -> int:
    """Coerce a reported token count to a non-negative int (0 when absent or invalid)."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return max(int(value), 0) if math.isfinite(value) else 0
    if isinstance(value, str):
        try:
            return max(int(value.strip()), 0)
        except ValueError:
            return 0
    return 0


def dig(obj: Any, *keys: str) -> Any:
    """Follow nested dictionary keys, returning None on any miss."""
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def non_empty_string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def file_mtime(path: str) -> datetime:
    return datetime.fromtimestamp(os.stat(path).st_mtime, tz=timezone.utc)


class LogParser(ABC):
    """Parses one tool's log format into raw usage events."""

    tool: Tool
    # True when the format can resume from a byte offset
    incremental: bool = True

    @abstractmethod
    def parse(self, path: str, context: ParseContext) -> Iterator[RawEvent]:
        """Yield events found in ``path`` at or after ``context.offset``.

        The sequence is lazy and finite, and parsing the same bytes with
        the same context always yields the same events.
        """


class JsonLinesParser(LogParser):
    """Base for line-delimited JSON formats.

    Each line is an independent record. Malformed lines are counted and
    skipped. A trailing line without a newline is only consumed when it
    is already valid JSON, so a line still being written is read again
    on the next pass.
    """

    def parse(self, path: str, context: ParseContext) -> Iterator[RawEvent]:
        if context.fallback_timestamp is None:
            context.fallback_timestamp = file_mtime(path)

        with open(path, "rb") as f:
            if context.offset > 0:
                f.seek(context.offset - 1)
                if f.read(1) != b"\n":
                    # Started mid-line: drop the fragment up to the next boundary
                    fragment = f.readline()
                    if fragment.endswith(b"\n"):
                        context.offset += len(fragment)
                    else:
                        return

            for raw in iter(f.readline, b""):
                complete = raw.endswith(b"\n")
                text = raw.strip()
                if not text:
                    if not complete:
                        return
                    context.offset += len(raw)
                    continue

                try:
                    record = json.loads(text)
                except (ValueError, RecursionError):
                    if not complete:
                        return
                    context.offset += len(raw)
                    context.malformed += 1
                    continue

                context.offset += len(raw)
                if not isinstance(record, dict):
                    context.malformed += 1
                    continue

                try:
                    event = self.parse_record(record, context)
                except RECORD_ERRORS as e:
                    logger.debug("Skipping unusable record at byte %d of %s: %s", context.offset - len(raw), path, e)
                    context.malformed += 1
                    continue
                if event is not None:
                    yield event

    @abstractmethod
    def parse_record(self, record: Dict[str, Any], context: ParseContext) -> Optional[RawEvent]:
        """Convert one decoded line to an event, or None when it carries no usage."""
