"""
Retention sweeping for stored files and operation records.

The sweeper deletes files older than the temp file lifetime from the storage
directories, and operation records older than the retention window whatever
their status, together with any stored files still named after them. A
failure to delete one file or record is logged and the sweep moves on.

``start``/``stop`` run the sweep periodically on a daemon thread owned by the
application lifespan.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from threading import Event, Thread
from typing import Dict, List, Optional, Sequence

from .registry import OperationRegistry
from .utils import format_bytes

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    files_removed: int = 0
    bytes_freed: int = 0
    records_removed: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "SweepReport") -> "SweepReport":
        return SweepReport(
            files_removed=self.files_removed + other.files_removed,
            bytes_freed=self.bytes_freed + other.bytes_freed,
            records_removed=self.records_removed + other.records_removed,
            errors=self.errors + other.errors,
        )


@dataclass
class DirectoryStats:
    file_count: int
    total_size: int

    @property
    def formatted_size(self) -> str:
        return format_bytes(self.total_size)


def directory_stats(directory: Path) -> DirectoryStats:
    file_count = 0
    total_size = 0
    if not directory.is_dir():
        return DirectoryStats(0, 0)
    for path in directory.iterdir():
        try:
            if path.is_file():
                total_size += path.stat().st_size
                file_count += 1
        except OSError as exc:
            logger.debug("Error getting stats for %s: %s", path.name, exc)
    return DirectoryStats(file_count, total_size)


class RetentionSweeper:
    """
    Deletes aged files and expired operation records.

    Attributes:
        registry: Registry whose expired records are purged
        directories: Storage directories scanned for aged files
        max_file_age: Files older than this are deleted
        record_retention: Records older than this are deleted
        interval: Delay between scheduled sweeps
    """

    def __init__(
        self,
        registry: OperationRegistry,
        directories: Sequence[Path],
        max_file_age: timedelta,
        record_retention: timedelta,
        interval: timedelta,
    ) -> None:
        self.registry = registry
        self.directories = list(directories)
        self.max_file_age = max_file_age
        self.record_retention = record_retention
        self.interval = interval
        self._stop = Event()
        self._thread: Optional[Thread] = None

    def sweep_files(self, now: Optional[float] = None) -> SweepReport:
        report = SweepReport()
        now = time.time() if now is None else now
        max_age = self.max_file_age.total_seconds()

        for directory in self.directories:
            try:
                entries = list(directory.iterdir())
            except OSError as exc:
                logger.warning("Error accessing directory %s: %s", directory, exc)
                report.errors.append(f"{directory}: {exc}")
                continue

            for path in entries:
                try:
                    stats = path.stat()
                    if not path.is_file() or now - stats.st_mtime <= max_age:
                        continue
                    path.unlink()
                    report.files_removed += 1
                    report.bytes_freed += stats.st_size
                    logger.debug("Removed old file: %s (%s)", path.name, format_bytes(stats.st_size))
                except OSError as exc:
                    logger.warning("Error removing file %s: %s", path, exc)
                    report.errors.append(f"{path}: {exc}")
        return report

    def sweep_records(self) -> SweepReport:
        report = SweepReport()
        try:
            deleted, failed = self.registry.purge_expired(self.record_retention)
        except Exception as exc:
            logger.warning("Expired record sweep failed: %s", exc)
            report.errors.append(f"records: {exc}")
            return report
        report.records_removed = len(deleted)
        for operation_id in deleted:
            report.files_removed += self.cleanup_operation_files(operation_id)
        report.errors.extend(f"record {operation_id}" for operation_id in failed)
        return report

    def run_once(self) -> SweepReport:
        logger.info("Starting retention sweep")
        report = self.sweep_files().merge(self.sweep_records())
        logger.info(
            "Retention sweep completed: %d files removed, %s freed, %d records removed, %d errors",
            report.files_removed,
            format_bytes(report.bytes_freed),
            report.records_removed,
            len(report.errors),
        )
        return report

    def cleanup_operation_files(self, operation_id: str) -> int:
        """Remove every stored file whose name contains ``operation_id``."""
        removed = 0
        for directory in self.directories:
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if operation_id not in path.name:
                    continue
                try:
                    path.unlink()
                    removed += 1
                    logger.debug("Cleaned up operation file: %s", path.name)
                except OSError as exc:
                    logger.warning("Failed to clean up file %s: %s", path.name, exc)
        return removed

    def storage_stats(self) -> Dict[str, DirectoryStats]:
        return {directory.name: directory_stats(directory) for directory in self.directories}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="retention-sweeper", daemon=True)
        self._thread.start()
        logger.info("Retention sweeper started (every %s)", self.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Retention sweeper stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval.total_seconds()):
            try:
                self.run_once()
            except Exception:
                logger.exception("Retention sweep crashed")
