"""
Usage scanning entry points for the presentation layer.

Each call is a blocking request/response: it runs a whole scan and
returns every usage entry known so far, never just the delta.
"""

import threading
from typing import List, Optional

from ..config.loader import ScannerConfig, default_config
from ..config.pricing_loader import build_pricing_table
from ..core.scanner import ScanReport, UsageScanner
from ..storage.models import Tool, UsageEntry
from ..storage.offset_store import OffsetStore

# Global scanner instance
_default_scanner: Optional[UsageScanner] = None
_scanner_lock = threading.Lock()
_last_report: Optional[ScanReport] = None


def create_scanner(config: ScannerConfig) -> UsageScanner:
    """Build a scanner, its offset store and pricing table from configuration."""
    return UsageScanner(
        store=OffsetStore(config.resolved_state_path),
        pricing=build_pricing_table(config),
        home=config.home,
        max_workers=config.max_workers,
    )


def get_scanner(config: Optional[ScannerConfig] = None) -> UsageScanner:
    """Get the process-wide scanner instance.

    The first call builds it from ``config`` (or the default
    configuration); later calls return the same instance.

    Args:
        config: Configuration used when the scanner is first created

    Returns:
        The shared UsageScanner
    """
    global _default_scanner
    with _scanner_lock:
        if _default_scanner is None:
            _default_scanner = create_scanner(config or default_config())
        return _default_scanner


def reset_scanner() -> None:
    """Forget the shared scanner so the next call rebuilds it."""
    global _default_scanner, _last_report
    with _scanner_lock:
        _default_scanner = None
        _last_report = None


def last_report() -> Optional[ScanReport]:
    """Report of the most recent scan run through this module."""
    return _last_report


def _run(report: ScanReport) -> List[UsageEntry]:
    global _last_report
    _last_report = report
    return report.entries


def scan_all_usage() -> List[UsageEntry]:
    """Full scan of every tool's logs; resets all cursors."""
    return _run(get_scanner().scan(full=True))


def scan_all_usage_incremental() -> List[UsageEntry]:
    """Incremental scan continuing from the stored cursors.

    Cursors and the events already read are persisted, so the first
    call in a new process continues where the last process stopped.
    """
    return _run(get_scanner().scan(full=False))


def scan_tool_usage(tool: Tool) -> List[UsageEntry]:
    """Read one tool's logs from scratch without touching stored cursors."""
    return _run(get_scanner().scan_tool(tool))
