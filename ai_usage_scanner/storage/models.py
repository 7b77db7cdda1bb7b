"""
Data models for storage layer.

Defines usage records, read cursors and the tool enumeration.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from ai_usage_scanner.core.token_counter import TokenUsage


class Tool(Enum):
    """Coding-agent tools whose local logs are supported."""
    CLAUDE_CODE = "ClaudeCode"
    CODEX_CLI = "CodexCLI"
    OPENCODE = "OpenCode"


@dataclass(frozen=True)
class RawEvent:
    """Unpriced token-usage record as parsed from a source log.

    ``identity_key`` is unique within the source file when the log
    provides one (message or request id).
    """
    timestamp: datetime
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    identity_key: Optional[str] = None

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens,
        )


@dataclass(frozen=True)
class UsageEntry:
    """Priced, normalised usage record handed to the presentation layer.

    ``cost`` is always derived from the token counts and the pricing
    table. It is never read from a log file and never persisted.
    """
    timestamp: datetime
    tool: Tool
    model: str
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    cost: Decimal
    priced: bool = True
    identity_key: Optional[str] = None
    source_path: Optional[str] = None

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens,
        )

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens

    def dedup_key(self) -> Tuple:
        """Key used to merge re-emitted records.

        The identity key wins when present; otherwise the exact
        (tool, model, timestamp, token counts) tuple is used.
        """
        if self.identity_key:
            return (self.tool, self.identity_key)
        return (
            self.tool,
            self.model,
            self.timestamp,
            self.input_tokens,
            self.output_tokens,
            self.cache_read_tokens,
            self.cache_write_tokens,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation for callers outside Python."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "tool": self.tool.value,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_write_tokens": self.cache_write_tokens,
            "cost": str(self.cost),
            "priced": self.priced,
        }


@dataclass(frozen=True)
class FileCursor:
    """Persisted read progress for one log file.

    ``last_offset`` is a byte offset for line-delimited logs and the
    file size for whole-file logs. ``parser_state`` carries whatever a
    parser needs to resume mid-file.
    """
    path: str
    last_offset: int
    file_size_at_last_scan: int
    modified_time_at_last_scan: int  # nanoseconds
    inode: int = 0
    parser_state: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class FileScanError:
    """File-level failure recorded against a single file."""
    path: str
    tool: Tool
    message: str
