"""
Log format parsers, one per supported tool.
"""

from ai_usage_scanner.storage.models import Tool

from .base import FileParseError, LogParser, ParseContext
from .claude_code import ClaudeCodeParser
from .codex_cli import CodexCliParser
from .opencode import OpenCodeParser

PARSERS = {
    Tool.CLAUDE_CODE: ClaudeCodeParser(),
    Tool.CODEX_CLI: CodexCliParser(),
    Tool.OPENCODE: OpenCodeParser(),
}


def get_parser(tool: Tool) -> LogParser:
    return PARSERS[tool]


__all__ = [
    "FileParseError",
    "LogParser",
    "ParseContext",
    "ClaudeCodeParser",
    "CodexCliParser",
    "OpenCodeParser",
    "PARSERS",
    "get_parser",
]
