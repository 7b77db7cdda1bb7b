"""
Claude Code session log parser.

Each line of a project session file is one JSON record; assistant
replies carry token usage under ``message.usage``.
"""

from typing import Any, Dict, Optional

from ai_usage_scanner.storage.models import RawEvent, Tool

from .base import JsonLinesParser, ParseContext, non_empty_string, normalize_timestamp, token_count

UNKNOWN_MODEL = "unknown"


class ClaudeCodeParser(JsonLinesParser):
    """Parser for ``~/.claude/projects/**/*.jsonl`` session logs."""

    tool = Tool.CLAUDE_CODE

    def parse_record(self, record: Dict[str, Any], context: ParseContext) -> Optional[RawEvent]:
        message = record.get("message")
        if not isinstance(message, dict):
            message = {}
        usage = message.get("usage")
        if not isinstance(usage, dict):
            return None

        input_tokens = token_count(usage.get("input_tokens"))
        output_tokens = token_count(usage.get("output_tokens"))
        cache_write_tokens = token_count(usage.get("cache_creation_input_tokens"))
        cache_read_tokens = token_count(usage.get("cache_read_input_tokens"))
        if not (input_tokens or output_tokens or cache_write_tokens or cache_read_tokens):
            return None

        model = non_empty_string(message.get("model"))
        if model is None or model == UNKNOWN_MODEL:
            model = non_empty_string(record.get("model")) or UNKNOWN_MODEL

        timestamp = normalize_timestamp(record.get("timestamp")) or context.fallback_timestamp

        return RawEvent(
            timestamp=timestamp,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_read_tokens=cache_read_tokens,
            cache_write_tokens=cache_write_tokens,
            identity_key=_identity_key(record, message),
        )


def _identity_key(record: Dict[str, Any], message: Dict[str, Any]) -> Optional[str]:
    # One assistant message is written as several lines sharing id and request id
    message_id = non_empty_string(message.get("id"))
    request_id = non_empty_string(record.get("requestId"))
    if message_id and request_id:
        return f"{message_id}:{request_id}"
    return message_id
