"""
OpenCode message parser.

OpenCode stores one JSON document per message, so a file either parses
as a whole or not at all.
"""

import json
from typing import Iterator

from ai_usage_scanner.storage.models import RawEvent, Tool

from .base import (
    FileParseError,
    LogParser,
    ParseContext,
    dig,
    file_mtime,
    non_empty_string,
    normalize_timestamp,
    token_count,
)

UNKNOWN_MODEL = "unknown"


class OpenCodeParser(LogParser):
    """Parser for ``~/.local/share/opencode/storage/message/**/*.json``.

    Offsets do not apply: every pass reads the whole file and sets
    ``context.offset`` to its size.
    """

    tool = Tool.OPENCODE
    incremental = False

    def parse(self, path: str, context: ParseContext) -> Iterator[RawEvent]:
        if context.fallback_timestamp is None:
            context.fallback_timestamp = file_mtime(path)

        with open(path, "rb") as f:
            raw = f.read()

        try:
            document = json.loads(raw)
        except (ValueError, RecursionError) as e:
            raise FileParseError(f"Invalid JSON in {path}: {e}") from e
        if not isinstance(document, dict):
            raise FileParseError(f"Expected a JSON object in {path}")

        context.offset = len(raw)

        input_tokens = token_count(dig(document, "tokens", "input"))
        output_tokens = token_count(dig(document, "tokens", "output"))
        cache_read_tokens = token_count(dig(document, "tokens", "cache", "read"))
        cache_write_tokens = token_count(dig(document, "tokens", "cache", "write"))
        if not (input_tokens or output_tokens or cache_read_tokens or cache_write_tokens):
            return

        yield RawEvent(
            timestamp=normalize_timestamp(dig(document, "time", "created")) or context.fallback_timestamp,
            model=non_empty_string(document.get("modelID")) or UNKNOWN_MODEL,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_read_tokens=cache_read_tokens,
            cache_write_tokens=cache_write_tokens,
            identity_key=non_empty_string(document.get("id")),
        )
