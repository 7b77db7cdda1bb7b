"""
Codex CLI session log parser.

Session files interleave ``turn_context`` records, which announce the
model in use, with ``event_msg`` records whose ``token_count`` payload
reports usage either per turn (``last_token_usage``) or as a running
total (``total_token_usage``).
"""

from typing import Any, Dict, Optional, Tuple

from ai_usage_scanner.storage.models import RawEvent, Tool

from .base import JsonLinesParser, ParseContext, dig, non_empty_string, normalize_timestamp, token_count

DEFAULT_MODEL = "gpt-5"

# Where a record may name its model, most specific first
_MODEL_PATHS = (
    ("payload", "info", "model"),
    ("payload", "info", "model_name"),
    ("payload", "info", "metadata", "model"),
    ("payload", "model"),
    ("payload", "metadata", "model"),
)

_TIMESTAMP_PATHS = (
    ("timestamp",),
    ("time",),
    ("created_at",),
    ("payload", "info", "time"),
    ("payload", "time"),
)

# parser_state keys, persisted with the file cursor
STATE_MODEL = "model"
STATE_PREVIOUS_TOTAL = "previous_total"


def extract_model(record: Dict[str, Any]) -> Optional[str]:
    for path in _MODEL_PATHS:
        model = non_empty_string(dig(record, *path))
        if model:
            return model
    return None


def _usage_counts(usage: Dict[str, Any]) -> Tuple[int, int, int]:
    cached = usage.get("cached_input_tokens")
    if cached is None:
        cached = usage.get("cache_read_input_tokens")
    return (
        token_count(usage.get("input_tokens")),
        token_count(usage.get("output_tokens")),
        token_count(cached),
    )


class CodexCliParser(JsonLinesParser):
    """Parser for ``~/.codex/sessions/**/*.jsonl`` rollout logs.

    The current model and the last cumulative totals are kept in
    ``context.parser_state`` so a later incremental pass over the same
    file picks up where this one stopped.
    """

    tool = Tool.CODEX_CLI

    def parse_record(self, record: Dict[str, Any], context: ParseContext) -> Optional[RawEvent]:
        state = context.parser_state
        record_type = record.get("type")

        if record_type == "turn_context":
            model = extract_model(record)
            if model:
                state[STATE_MODEL] = model
            return None

        if record_type != "event_msg" or dig(record, "payload", "type") != "token_count":
            return None

        info = dig(record, "payload", "info")
        if not isinstance(info, dict):
            return None

        last_usage = info.get("last_token_usage")
        total_usage = info.get("total_token_usage")
        if isinstance(last_usage, dict):
            counts = _usage_counts(last_usage)
            if isinstance(total_usage, dict):
                state[STATE_PREVIOUS_TOTAL] = list(_usage_counts(total_usage))
        elif isinstance(total_usage, dict):
            current = _usage_counts(total_usage)
            previous = state.get(STATE_PREVIOUS_TOTAL)
            if isinstance(previous, list) and len(previous) == 3:
                counts = tuple(max(now - before, 0) for now, before in zip(current, previous))
            else:
                counts = current
            state[STATE_PREVIOUS_TOTAL] = list(current)
        else:
            return None

        input_tokens, output_tokens, cache_read_tokens = counts
        if not (input_tokens or output_tokens or cache_read_tokens):
            return None

        model = extract_model(record)
        if model:
            state[STATE_MODEL] = model
        else:
            model = state.get(STATE_MODEL) or DEFAULT_MODEL

        return RawEvent(
            timestamp=self._timestamp(record) or context.fallback_timestamp,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_read_tokens=cache_read_tokens,
            cache_write_tokens=0,
        )

    @staticmethod
    def _timestamp(record: Dict[str, Any]):
        for path in _TIMESTAMP_PATHS:
            value = dig(record, *path)
            if value is not None:
                return normalize_timestamp(value)
        return None
