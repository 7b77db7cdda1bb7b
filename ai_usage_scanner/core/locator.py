"""
Log file discovery.

Resolves the fixed per-tool glob patterns against the user's home
directory. Missing log directories are normal and yield no files.
"""

import glob
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ai_usage_scanner.storage.models import Tool

logger = logging.getLogger(__name__)

# Patterns are relative to the home directory
SOURCE_PATTERNS: Dict[Tool, Tuple[str, ...]] = {
    Tool.CLAUDE_CODE: (
        ".config/claude/projects/**/*.jsonl",
        ".claude/projects/**/*.jsonl",
    ),
    Tool.CODEX_CLI: (
        ".codex/sessions/**/*.jsonl",
    ),
    Tool.OPENCODE: (
        ".local/share/opencode/storage/message/**/*.json",
    ),
}


@dataclass(frozen=True)
class SourceFile:
    """An existing, readable log file belonging to one tool."""
    tool: Tool
    path: str


def resolve_home(home: Optional[str] = None) -> Path:
    """Return the home directory logs are searched under.

    ``Path.home()`` consults HOME on POSIX and USERPROFILE on Windows.
    """
    return Path(home).expanduser() if home else Path.home()


def locate_sources(
    home: Optional[str] = None,
    patterns: Optional[Dict[Tool, Tuple[str, ...]]] = None,
    tools: Optional[Iterable[Tool]] = None,
) -> List[SourceFile]:
    """Find every log file for the requested tools.

    A file reachable through two patterns of the same tool (for example
    a symlinked config directory) is returned once. Files are not opened.

    Args:
        home: Home directory override
        patterns: Per-tool patterns relative to home (defaults to SOURCE_PATTERNS)
        tools: Restrict discovery to these tools (defaults to all)

    Returns:
        SourceFile list sorted by tool order, then path
    """
    base = resolve_home(home)
    patterns = patterns if patterns is not None else SOURCE_PATTERNS
    selected = list(tools) if tools is not None else list(patterns)

    found: List[SourceFile] = []
    for tool in selected:
        seen = set()
        tool_files = []
        for pattern in patterns.get(tool, ()):
            # glob needs forward slashes on every platform
            full_pattern = base.as_posix().rstrip("/") + "/" + pattern
            for match in glob.glob(full_pattern, recursive=True):
                if not os.path.isfile(match) or not os.access(match, os.R_OK):
                    continue
                real = os.path.realpath(match)
                if real in seen:
                    logger.debug("Skipping alias %s of %s", match, real)
                    continue
                seen.add(real)
                tool_files.append(SourceFile(tool=tool, path=real))
        tool_files.sort(key=lambda source: source.path)
        logger.debug("Found %d %s log files", len(tool_files), tool.value)
        found.extend(tool_files)
    return found
