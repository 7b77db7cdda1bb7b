"""
Shared fixtures: a fake home directory populated with agent logs.
"""

import json
from pathlib import Path

import pytest

from ai_usage_scanner.core.scanner import UsageScanner
from ai_usage_scanner.storage.offset_store import OffsetStore

CLAUDE_DIR = ".claude/projects/demo-project"
CODEX_DIR = ".codex/sessions/2025/09/10"
OPENCODE_DIR = ".local/share/opencode/storage/message/ses_demo"


def claude_record(message_id, input_tokens, output_tokens, timestamp,
                  model="claude-sonnet-4-20250514", cache_read=0, cache_write=0,
                  request_id="req_1"):
    return {
        "type": "assistant",
        "timestamp": timestamp,
        "requestId": request_id,
        "message": {
            "id": message_id,
            "model": model,
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_read_input_tokens": cache_read,
                "cache_creation_input_tokens": cache_write,
            },
        },
    }


def codex_turn_context(model, timestamp="2025-09-10T12:00:00.000Z"):
    return {"timestamp": timestamp, "type": "turn_context", "payload": {"model": model}}


def codex_token_count(input_tokens, output_tokens, timestamp, cached=0, total=None):
    info = {
        "last_token_usage": {
            "input_tokens": input_tokens,
            "cached_input_tokens": cached,
            "output_tokens": output_tokens,
        },
    }
    if total is not None:
        info["total_token_usage"] = total
    return {
        "timestamp": timestamp,
        "type": "event_msg",
        "payload": {"type": "token_count", "info": info},
    }


def opencode_message(message_id, input_tokens, output_tokens, created_ms,
                     model="claude-sonnet-4-20250514", cache_read=0, cache_write=0):
    return {
        "id": message_id,
        "role": "assistant",
        "modelID": model,
        "providerID": "anthropic",
        "time": {"created": created_ms},
        "tokens": {
            "input": input_tokens,
            "output": output_tokens,
            "reasoning": 0,
            "cache": {"read": cache_read, "write": cache_write},
        },
    }


class LogWriter:
    """Writes agent log files under a fake home directory."""

    def __init__(self, home: Path):
        self.home = home

    def path(self, relative: str) -> Path:
        return self.home / relative

    def write_lines(self, relative: str, records, mode: str = "w") -> Path:
        path = self.path(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, mode, encoding="utf-8") as f:
            for record in records:
                f.write((record if isinstance(record, str) else json.dumps(record)) + "\n")
        return path

    def append_lines(self, relative: str, records) -> Path:
        return self.write_lines(relative, records, mode="a")

    def write_json(self, relative: str, document) -> Path:
        path = self.path(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(document if isinstance(document, str) else json.dumps(document), encoding="utf-8")
        return path


@pytest.fixture
def home(tmp_path):
    home_dir = tmp_path / "home"
    home_dir.mkdir()
    return home_dir


@pytest.fixture
def logs(home):
    return LogWriter(home)


@pytest.fixture
def store(tmp_path):
    return OffsetStore(str(tmp_path / "state" / "state.db"))


@pytest.fixture
def scanner(store, home):
    return UsageScanner(store, home=str(home), max_workers=2)
