"""
SDK for AI Usage Scanner.

Provides programmatic access to usage scanning.
"""

from .usage import (
    create_scanner,
    get_scanner,
    last_report,
    reset_scanner,
    scan_all_usage,
    scan_all_usage_incremental,
    scan_tool_usage,
)

__all__ = [
    "create_scanner",
    "get_scanner",
    "last_report",
    "reset_scanner",
    "scan_all_usage",
    "scan_all_usage_incremental",
    "scan_tool_usage",
]
