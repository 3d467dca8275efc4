"""
SQLite database for persistent operation storage.

This module provides a simple SQLite-based persistence layer for operation
records. Status changes go through ``compare_and_set_status`` so a transition
only lands if the record is still in the status it was read in.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import DuplicateOperation
from .models import OperationRecord, OperationStatus


# Default database path
DEFAULT_DB_PATH = Path("data/operations.db")

_JSON_COLUMNS = {
    "input_files": "inputFiles",
    "output_files": "outputFiles",
    "metadata": "metadata",
    "processing": "processing",
    "client_info": "clientInfo",
}


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to a sortable ISO format string."""
    return dt.isoformat(timespec="microseconds") if dt else None


def _build_filter(status: Optional[str], operation_type: Optional[str]) -> Tuple[str, List[Any]]:
    clauses = []
    values: List[Any] = []
    if status:
        clauses.append("status = ?")
        values.append(status)
    if operation_type:
        clauses.append("operation_type = ?")
        values.append(operation_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, values


class OperationDatabase:
    """
    SQLite database for operation persistence.

    Thread-safe: every call opens its own connection and SQLite serializes
    writers; WAL mode keeps readers from blocking on them.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = db_path
        _ensure_db_dir(db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS operations (
                    operation_id TEXT PRIMARY KEY,
                    operation_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    input_files TEXT NOT NULL,
                    output_files TEXT NOT NULL,
                    metadata TEXT,
                    processing TEXT NOT NULL,
                    client_info TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_created_at
                ON operations(created_at DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_status
                ON operations(status)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_operations_type
                ON operations(operation_type)
            """)

    def ping(self) -> None:
        """Run a trivial query; raises sqlite3.Error if the database is unusable."""
        with self._get_connection() as conn:
            conn.execute("SELECT 1").fetchone()

    def insert_operation(self, record: OperationRecord) -> None:
        """
        Insert a new operation record.

        Raises:
            DuplicateOperation: If the operation id already exists
        """
        data = record.model_dump(mode="json", by_alias=True)
        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO operations (
                        operation_id, operation_type, status, created_at, updated_at,
                        input_files, output_files, metadata, processing, client_info
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.operation_id,
                    record.operation_type.value,
                    record.status.value,
                    _serialize_datetime(record.created_at),
                    _serialize_datetime(record.updated_at),
                    *(json.dumps(data[key]) for key in _JSON_COLUMNS.values()),
                ))
        except sqlite3.IntegrityError as exc:
            raise DuplicateOperation(record.operation_id) from exc

    def get_operation(self, operation_id: str) -> Optional[OperationRecord]:
        """
        Retrieve an operation by ID.

        Returns:
            The record or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM operations WHERE operation_id = ?", (operation_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_record(row)

    def list_operations(
        self,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[OperationRecord]:
        """List operations ordered by creation time (newest first)."""
        where, values = _build_filter(status, operation_type)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM operations {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (*values, limit, offset),
            ).fetchall()

            return [self._row_to_record(row) for row in rows]

    def count_operations(self, status: Optional[str] = None, operation_type: Optional[str] = None) -> int:
        where, values = _build_filter(status, operation_type)
        with self._get_connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM operations {where}", values).fetchone()
            return int(row["total"])

    def count_by_status(self) -> Dict[str, int]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS total FROM operations GROUP BY status"
            ).fetchall()
            return {row["status"]: int(row["total"]) for row in rows}

    def compare_and_set_status(
        self,
        operation_id: str,
        expected: OperationStatus,
        record: OperationRecord,
    ) -> bool:
        """
        Persist ``record``'s status and mutable fields if the stored status is ``expected``.

        Input files, type and creation time are never rewritten.

        Returns:
            True if the row was updated, False if the status had already moved
            or the operation does not exist
        """
        data = record.model_dump(mode="json", by_alias=True)
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE operations
                SET status = ?, updated_at = ?, output_files = ?, processing = ?
                WHERE operation_id = ? AND status = ?
            """, (
                record.status.value,
                _serialize_datetime(record.updated_at),
                json.dumps(data["outputFiles"]),
                json.dumps(data["processing"]),
                operation_id,
                expected.value,
            ))
            return cursor.rowcount == 1

    def expired_operation_ids(self, cutoff: datetime) -> List[str]:
        """IDs of operations created before ``cutoff``, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT operation_id FROM operations WHERE created_at < ? ORDER BY created_at",
                (_serialize_datetime(cutoff),),
            ).fetchall()
            return [row["operation_id"] for row in rows]

    def delete_operation(self, operation_id: str) -> bool:
        """
        Delete an operation record.

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM operations WHERE operation_id = ?", (operation_id,))
            return cursor.rowcount > 0

    def _row_to_record(self, row: sqlite3.Row) -> OperationRecord:
        """Convert a database row to an OperationRecord."""
        payload: Dict[str, Any] = {
            "operationId": row["operation_id"],
            "operationType": row["operation_type"],
            "status": row["status"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }
        for column, key in _JSON_COLUMNS.items():
            raw = row[column]
            payload[key] = json.loads(raw) if raw else None
        return OperationRecord.model_validate(payload)
