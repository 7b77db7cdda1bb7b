"""
Scan orchestration.

Drives a scan end to end: locate log files, decide how much of each
file to read, parse the files in parallel, commit progress to the offset
store from a single thread, then price and merge everything known so far.

Scan modes:
1. Full - ignore cursors, read every file from the start
2. Incremental - read only what was appended since the stored cursor,
   falling back to a full read of any file that was truncated or replaced
"""

import logging
import os
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ai_usage_scanner.parsers import ParseContext, get_parser
from ai_usage_scanner.storage.models import FileCursor, FileScanError, RawEvent, Tool, UsageEntry
from ai_usage_scanner.storage.offset_store import OffsetStore, cursor_is_valid

from .locator import SourceFile, locate_sources
from .pricing import PricingTable, calculate_cost

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


@dataclass
class ScanReport:
    """Result of one scan: the full merged entry set plus what went wrong."""
    entries: List[UsageEntry] = field(default_factory=list)
    errors: List[FileScanError] = field(default_factory=list)
    files_scanned: int = 0
    files_skipped: int = 0
    malformed_records: int = 0
    full: bool = False

    @property
    def unpriced_entries(self) -> List[UsageEntry]:
        return [entry for entry in self.entries if not entry.priced]


@dataclass(frozen=True)
class _ReadPlan:
    source: SourceFile
    start_offset: int
    parser_state: Dict[str, Any]
    replace: bool
    size: int
    mtime_ns: int
    inode: int


@dataclass
class _ReadResult:
    plan: _ReadPlan
    events: List[RawEvent] = field(default_factory=list)
    cursor: Optional[FileCursor] = None
    malformed: int = 0
    error: Optional[FileScanError] = None


def merge_entries(entries: Iterable[UsageEntry]) -> List[UsageEntry]:
    """Drop re-emitted records and order the rest by timestamp.

    Records sharing ``UsageEntry.dedup_key()`` are merged, keeping the
    first one seen. The sort is stable, so ties keep their input order.
    """
    seen = set()
    merged = []
    for entry in entries:
        key = entry.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        merged.append(entry)
    merged.sort(key=lambda entry: entry.timestamp)
    return merged


class UsageScanner:
    """Scans agent logs into priced usage entries.

    The offset store is injected so callers (and tests) control where
    progress is persisted. Only one scan runs against a store at a time;
    a second caller waits for the first to finish.
    """

    def __init__(
        self,
        store: OffsetStore,
        pricing: Optional[PricingTable] = None,
        home: Optional[str] = None,
        patterns: Optional[Dict[Tool, Tuple[str, ...]]] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        """Initialize the scanner.

        Args:
            store: Offset store holding cursors and raw events
            pricing: Pricing table (defaults to the built-in table)
            home: Home directory override for log discovery
            patterns: Per-tool glob patterns override
            max_workers: Number of files parsed in parallel
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.store = store
        self.home = home
        self.patterns = patterns
        self.max_workers = max_workers
        self._pricing = pricing

    @property
    def pricing(self) -> Optional[PricingTable]:
        return self._pricing

    def reload_pricing(self, table: PricingTable) -> None:
        """Swap the pricing table; takes effect on the next scan."""
        self._pricing = table

    def scan(self, full: bool = False) -> ScanReport:
        """Run a full or incremental scan.

        Returns the complete accumulated entry set, not just what changed.
        File-level failures are reported in ``ScanReport.errors`` and
        never abort the scan.
        """
        with self.store.scan_lock:
            return self._scan(full)

    def scan_tool(self, tool: Tool) -> ScanReport:
        """Read every file of one tool from the start without touching the store."""
        report = ScanReport(full=True)
        plans = []
        for source in locate_sources(self.home, self.patterns, tools=[tool]):
            try:
                plans.append(self._fresh_plan(source))
            except OSError as e:
                report.errors.append(FileScanError(source.path, tool, str(e)))

        stored = []
        for result in self._read_all(plans):
            report.malformed_records += result.malformed
            if result.error is not None:
                report.errors.append(result.error)
                continue
            report.files_scanned += 1
            stored.extend((result.plan.source.path, tool, event) for event in result.events)

        report.entries = merge_entries(self._price(stored))
        self._log_report(report)
        return report

    def _scan(self, full: bool) -> ScanReport:
        report = ScanReport(full=full)
        if full:
            try:
                self.store.clear()
            except sqlite3.Error as e:
                # Every file is re-read with replace=True anyway
                logger.warning("Could not clear offset store: %s", e)

        plans = []
        for source in locate_sources(self.home, self.patterns):
            try:
                plan = self._plan(source, full)
            except OSError as e:
                report.errors.append(FileScanError(source.path, source.tool, str(e)))
                continue
            if plan is None:
                report.files_skipped += 1
            else:
                plans.append(plan)

        # Parsing runs in worker threads; commits happen here, one file at a time
        for result in self._read_all(plans):
            report.malformed_records += result.malformed
            if result.error is not None:
                report.errors.append(result.error)
                continue
            try:
                self.store.commit_file(
                    result.plan.source.tool, result.cursor, result.events, replace=result.plan.replace
                )
            except sqlite3.Error as e:
                report.errors.append(FileScanError(
                    result.plan.source.path, result.plan.source.tool, f"Could not save progress: {e}"
                ))
                continue
            report.files_scanned += 1

        report.entries = merge_entries(self._price(self.store.load_events()))
        self._log_report(report)
        return report

    def _plan(self, source: SourceFile, full: bool) -> Optional[_ReadPlan]:
        """Decide where to start reading ``source``; None means nothing changed."""
        if full:
            return self._fresh_plan(source)

        st = os.stat(source.path)
        cursor = self.store.get(source.path)
        if cursor is None:
            return self._fresh_plan(source, st)

        if not cursor_is_valid(cursor, st.st_size, st.st_mtime_ns, st.st_ino):
            logger.info("%s was truncated or replaced, reading it from the start", source.path)
            return self._fresh_plan(source, st)

        if st.st_size == cursor.file_size_at_last_scan and st.st_mtime_ns == cursor.modified_time_at_last_scan:
            return None

        if not get_parser(source.tool).incremental:
            return self._fresh_plan(source, st)

        logger.debug("Resuming %s at offset %d", source.path, cursor.last_offset)
        return _ReadPlan(
            source=source,
            start_offset=cursor.last_offset,
            parser_state=dict(cursor.parser_state),
            replace=False,
            size=st.st_size,
            mtime_ns=st.st_mtime_ns,
            inode=st.st_ino,
        )

    @staticmethod
    def _fresh_plan(source: SourceFile, st: Optional[os.stat_result] = None) -> _ReadPlan:
        st = st or os.stat(source.path)
        return _ReadPlan(
            source=source,
            start_offset=0,
            parser_state={},
            replace=True,
            size=st.st_size,
            mtime_ns=st.st_mtime_ns,
            inode=st.st_ino,
        )

    def _read_all(self, plans: List[_ReadPlan]) -> List[_ReadResult]:
        """Parse every planned file, in plan order."""
        if self.max_workers == 1 or len(plans) <= 1:
            return [self._read(plan) for plan in plans]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return list(pool.map(self._read, plans))

    @staticmethod
    def _read(plan: _ReadPlan) -> _ReadResult:
        source = plan.source
        context = ParseContext(offset=plan.start_offset, parser_state=dict(plan.parser_state))
        try:
            events = list(get_parser(source.tool).parse(source.path, context))
        except (OSError, ValueError) as e:
            logger.debug("Failed to read %s: %s", source.path, e)
            return _ReadResult(
                plan=plan,
                malformed=context.malformed,
                error=FileScanError(source.path, source.tool, str(e)),
            )
        except Exception as e:
            # Anything else still costs only this file
            logger.exception("Unexpected error reading %s", source.path)
            return _ReadResult(
                plan=plan,
                malformed=context.malformed,
                error=FileScanError(source.path, source.tool, f"{type(e).__name__}: {e}"),
            )

        cursor = FileCursor(
            path=source.path,
            last_offset=context.offset,
            # The file may have grown between stat and read
            file_size_at_last_scan=max(plan.size, context.offset),
            modified_time_at_last_scan=plan.mtime_ns,
            inode=plan.inode,
            parser_state=context.parser_state,
        )
        return _ReadResult(plan=plan, events=events, cursor=cursor, malformed=context.malformed)

    def _price(self, stored: Iterable[Tuple[str, Tool, RawEvent]]) -> List[UsageEntry]:
        table = self._pricing
        entries = []
        for path, tool, event in stored:
            result = calculate_cost(event.model, event.usage, table)
            entries.append(UsageEntry(
                timestamp=event.timestamp,
                tool=tool,
                model=event.model,
                input_tokens=event.input_tokens,
                output_tokens=event.output_tokens,
                cache_read_tokens=event.cache_read_tokens,
                cache_write_tokens=event.cache_write_tokens,
                cost=result.cost,
                priced=result.priced,
                identity_key=event.identity_key,
                source_path=path,
            ))
        return entries

    @staticmethod
    def _log_report(report: ScanReport) -> None:
        if report.errors:
            logger.warning(
                "%d log file(s) could not be read: %s",
                len(report.errors),
                "; ".join(f"{error.path}: {error.message}" for error in report.errors),
            )
        if report.malformed_records:
            logger.info("Skipped %d malformed log record(s)", report.malformed_records)
        unpriced = report.unpriced_entries
        if unpriced:
            models = sorted({entry.model for entry in unpriced})
            logger.info("%d entries have no pricing (models: %s)", len(unpriced), ", ".join(models))
