"""
Operation registry: the only writer of operation records.

The registry owns uniqueness of operation ids and the status lifecycle. Each
transition reads the record, computes the next status with the pure
``state_machine.transition`` and persists it with a compare-and-set on the
status column, so two concurrent transitions on one record cannot both land
and status never moves backward.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .database import OperationDatabase
from .errors import InvalidTransition, OperationNotFound
from .models import OperationRecord, OperationStatus, OutputFile, utcnow
from .state_machine import OperationEvent, required_status, transition

logger = logging.getLogger(__name__)


def _elapsed_millis(start: Optional[datetime], end: datetime) -> Optional[int]:
    if start is None:
        return None
    return int((end - start).total_seconds() * 1000)


class OperationRegistry:
    """
    Create, read and transition operation records.

    Attributes:
        database: Backing store for records
    """

    def __init__(self, database: OperationDatabase) -> None:
        self.database = database

    @classmethod
    def open(cls, db_path: Path) -> "OperationRegistry":
        return cls(OperationDatabase(db_path))

    def create(self, record: OperationRecord) -> OperationRecord:
        """
        Register a new record.

        Raises:
            DuplicateOperation: If a record with the same id exists
            InvalidTransition: If the record is not pending
        """
        if record.status != OperationStatus.PENDING:
            raise InvalidTransition(f"New operations must start as pending, got '{record.status.value}'")
        self.database.insert_operation(record)
        logger.info("Registered %s operation %s", record.operation_type.value, record.operation_id)
        return record

    def find_by_id(self, operation_id: str) -> Optional[OperationRecord]:
        return self.database.get_operation(operation_id)

    def get(self, operation_id: str) -> OperationRecord:
        record = self.find_by_id(operation_id)
        if record is None:
            raise OperationNotFound(operation_id)
        return record

    def mark_processing(self, operation_id: str) -> OperationRecord:
        now = utcnow()
        return self._apply(
            operation_id,
            OperationEvent.START,
            lambda record: record.processing.model_copy(update={"start_time": now}),
            now,
        )

    def mark_completed(self, operation_id: str, output_files: Sequence[OutputFile]) -> OperationRecord:
        if not output_files:
            raise InvalidTransition(f"Operation {operation_id} cannot complete without output files")
        now = utcnow()
        return self._apply(
            operation_id,
            OperationEvent.COMPLETE,
            lambda record: record.processing.model_copy(
                update={"end_time": now, "duration_millis": _elapsed_millis(record.processing.start_time, now)}
            ),
            now,
            output_files=list(output_files),
        )

    def mark_failed(self, operation_id: str, message: str) -> OperationRecord:
        now = utcnow()
        return self._apply(
            operation_id,
            OperationEvent.FAIL,
            lambda record: record.processing.model_copy(
                update={
                    "end_time": now,
                    "duration_millis": _elapsed_millis(record.processing.start_time, now),
                    "error_message": message,
                }
            ),
            now,
        )

    def _apply(self, operation_id, event, processing_update, now, output_files=None) -> OperationRecord:
        record = self.get(operation_id)
        expected = required_status(event)
        new_status = transition(record.status, event)

        updated = record.model_copy(
            update={
                "status": new_status,
                "processing": processing_update(record),
                "output_files": output_files if output_files is not None else record.output_files,
                "updated_at": now,
            }
        )
        if not self.database.compare_and_set_status(operation_id, expected, updated):
            current = self.find_by_id(operation_id)
            if current is None:
                raise OperationNotFound(operation_id)
            raise InvalidTransition(
                f"Operation {operation_id} moved to '{current.status.value}' before '{event.value}' could be applied"
            )

        logger.info("Operation %s: %s -> %s", operation_id, record.status.value, new_status.value)
        return updated

    def list(
        self,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Tuple[List[OperationRecord], int]:
        """
        Page through records, newest first.

        Returns:
            The records on ``page`` and the total number of matching records
        """
        page = max(page, 1)
        page_size = max(page_size, 1)
        records = self.database.list_operations(
            status=status,
            operation_type=operation_type,
            limit=page_size,
            offset=(page - 1) * page_size,
        )
        return records, self.database.count_operations(status=status, operation_type=operation_type)

    @staticmethod
    def page_count(total: int, page_size: int) -> int:
        return math.ceil(total / page_size) if page_size > 0 else 0

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OperationStatus}
        counts.update(self.database.count_by_status())
        return counts

    def purge_expired(self, retention: timedelta, now: Optional[datetime] = None) -> Tuple[List[str], List[str]]:
        """
        Delete records created more than ``retention`` ago, whatever their status.

        Returns:
            Deleted ids and ids whose deletion failed
        """
        cutoff = (now or utcnow()) - retention
        deleted: List[str] = []
        failed: List[str] = []
        for operation_id in self.database.expired_operation_ids(cutoff):
            try:
                if self.database.delete_operation(operation_id):
                    deleted.append(operation_id)
            except Exception as exc:
                logger.warning("Failed to delete expired operation %s: %s", operation_id, exc)
                failed.append(operation_id)
        return deleted, failed
