"""
Operation orchestration for PDF merge and split requests.

This module ties the pieces together for the HTTP layer:
- Validating plans synchronously, before any record exists
- Creating pending operation records and queueing their work
- Resolving stored files for download and preview
- Building history, stats and archive views

The OperationManager class is the single entry point used by the API; the
registry, transformer, executor and sweeper it owns can also be used on
their own.
"""

from __future__ import annotations

import logging
import zipfile
from datetime import timedelta
from pathlib import Path
from typing import List, Optional, Sequence
from uuid import uuid4

from omegaconf import DictConfig

from .errors import (
    InvalidSplitOptions,
    InvalidUpload,
    OperationNotReady,
    OutputFileNotFound,
    PdfLoadError,
)
from .executor import BackgroundExecutor
from .models import (
    ClientInfo,
    InputFile,
    MergePlan,
    OperationHistory,
    OperationRecord,
    OperationStats,
    OperationStatus,
    OperationType,
    OutputFile,
    Pagination,
    SplitPlan,
    SplitStrategy,
)
from .page_selector import normalize_range_tokens, plan_split, resolve_merge_order
from .pdf_transformer import PdfTransformer, count_pages
from .registry import OperationRegistry
from .retention import RetentionSweeper
from .utils import ensure_directory, resolve_within

logger = logging.getLogger(__name__)


class OperationManager:
    """
    Central coordinator for operation lifecycle management.

    Attributes:
        upload_root: Directory holding uploaded inputs
        processed_root: Directory holding generated outputs
        temp_root: Directory for scratch files such as archives
        registry: Operation record store
        transformer: PDF merge/split engine
        executor: Bounded background executor
        sweeper: Retention sweeper for the three directories
    """

    def __init__(
        self,
        upload_root: Path,
        processed_root: Path,
        temp_root: Path,
        db_path: Path,
        max_workers: int = 2,
        max_pending: int = 32,
        max_pages_per_file: int = 100,
        record_retention: timedelta = timedelta(days=7),
        max_file_age: timedelta = timedelta(hours=2),
        sweep_interval: timedelta = timedelta(hours=24),
    ) -> None:
        self.upload_root = ensure_directory(upload_root)
        self.processed_root = ensure_directory(processed_root)
        self.temp_root = ensure_directory(temp_root)
        self.max_pages_per_file = max_pages_per_file
        self.registry = OperationRegistry.open(db_path)
        self.transformer = PdfTransformer(self.processed_root)
        self.executor = BackgroundExecutor(self.registry, max_workers=max_workers, max_pending=max_pending)
        self.sweeper = RetentionSweeper(
            self.registry,
            [self.upload_root, self.processed_root, self.temp_root],
            max_file_age=max_file_age,
            record_retention=record_retention,
            interval=sweep_interval,
        )

    @classmethod
    def from_settings(cls, settings: DictConfig) -> "OperationManager":
        return cls(
            upload_root=Path(settings.storage.upload_dir),
            processed_root=Path(settings.storage.processed_dir),
            temp_root=Path(settings.storage.temp_dir),
            db_path=Path(settings.storage.database_path),
            max_workers=int(settings.executor.max_workers),
            max_pending=int(settings.executor.max_pending),
            max_pages_per_file=int(settings.limits.max_pages_per_file),
            record_retention=timedelta(days=float(settings.retention.record_retention_days)),
            max_file_age=timedelta(hours=float(settings.retention.temp_file_lifetime_hours)),
            sweep_interval=timedelta(hours=float(settings.retention.sweep_interval_hours)),
        )

    def start(self) -> None:
        self.registry.database.ping()
        self.sweeper.start()

    def shutdown(self, wait: bool = True) -> None:
        self.sweeper.stop()
        self.executor.shutdown(wait=wait)

    def new_upload_path(self, stored_name: str) -> Path:
        return self.upload_root / stored_name

    def _schedule(self, record: OperationRecord) -> OperationRecord:
        self.executor.submit(
            record.operation_id,
            self.transformer.execute,
            prepare=lambda: self.registry.create(record),
        )
        return record

    def create_merge(
        self,
        input_files: Sequence[InputFile],
        merge_order: Optional[Sequence[int]] = None,
        client_info: Optional[ClientInfo] = None,
    ) -> OperationRecord:
        """
        Validate and queue a merge.

        Raises:
            InvalidUpload: If fewer than two files were supplied
            InvalidMergeOrder: If the explicit order is not a valid selection
            ExecutorSaturated: If no execution slot is available
        """
        if len(input_files) < 2:
            raise InvalidUpload("At least 2 PDF files are required for merging")

        order = resolve_merge_order(len(input_files), merge_order)
        position = {index: rank for rank, index in enumerate(order)}
        files = [
            item.model_copy(update={"merge_order_index": position.get(index)})
            for index, item in enumerate(input_files)
        ]

        record = OperationRecord(
            operation_id=uuid4().hex,
            operation_type=OperationType.MERGE,
            input_files=files,
            plan=MergePlan(order=order),
            client_info=client_info or ClientInfo(),
        )
        return self._schedule(record)

    def build_split_plan(
        self,
        split_type: str,
        page_ranges: Optional[Sequence[str]] = None,
        pages_per_file: Optional[int] = None,
    ) -> SplitPlan:
        try:
            strategy = SplitStrategy(split_type)
        except ValueError:
            raise InvalidSplitOptions(f"Unsupported split type: {split_type}. Use pages, range or size") from None

        if strategy == SplitStrategy.SIZE:
            if pages_per_file is None or pages_per_file < 1 or pages_per_file > self.max_pages_per_file:
                raise InvalidSplitOptions(f"pagesPerFile must be between 1 and {self.max_pages_per_file}")
            return SplitPlan(strategy=strategy, pages_per_file=pages_per_file)

        if strategy == SplitStrategy.RANGE:
            tokens = normalize_range_tokens(page_ranges)
            if not tokens:
                raise InvalidSplitOptions('Page ranges are required when split type is "range"')
            return SplitPlan(strategy=strategy, page_ranges=tokens)

        return SplitPlan(strategy=strategy, pages_per_file=1)

    def create_split(
        self,
        input_file: InputFile,
        plan: SplitPlan,
        client_info: Optional[ClientInfo] = None,
    ) -> OperationRecord:
        """
        Validate ``plan`` against the real page count and queue a split.

        Raises:
            InvalidUpload: If the input is not a readable PDF
            InvalidPageRange: If a range falls outside the document
            ExecutorSaturated: If no execution slot is available
        """
        try:
            total_pages = count_pages(Path(input_file.storage_path))
        except PdfLoadError as exc:
            raise InvalidUpload(exc.message) from exc
        plan_split(plan, total_pages)

        record = OperationRecord(
            operation_id=uuid4().hex,
            operation_type=OperationType.SPLIT,
            input_files=[input_file],
            plan=plan,
            client_info=client_info or ClientInfo(),
        )
        return self._schedule(record)

    def record_upload(
        self,
        input_files: Sequence[InputFile],
        client_info: Optional[ClientInfo] = None,
    ) -> OperationRecord:
        """
        Record a plain upload.

        The record passes through the normal lifecycle synchronously and its
        outputs are the stored files themselves.
        """
        if not input_files:
            raise InvalidUpload("No files uploaded")

        record = self.registry.create(
            OperationRecord(
                operation_id=uuid4().hex,
                operation_type=OperationType.UPLOAD,
                input_files=list(input_files),
                client_info=client_info or ClientInfo(),
            )
        )
        self.registry.mark_processing(record.operation_id)
        outputs = [
            OutputFile(filename=item.stored_name, storage_path=item.storage_path, size_bytes=item.size_bytes)
            for item in input_files
        ]
        return self.registry.mark_completed(record.operation_id, outputs)

    def get_operation(self, operation_id: str) -> OperationRecord:
        return self.registry.get(operation_id)

    def list_history(
        self,
        page: int = 1,
        limit: int = 50,
        status: Optional[str] = None,
        operation_type: Optional[str] = None,
    ) -> OperationHistory:
        records, total = self.registry.list(status=status, operation_type=operation_type, page=page, page_size=limit)
        return OperationHistory(
            operations=[record.to_summary() for record in records],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                pages=OperationRegistry.page_count(total, limit),
            ),
        )

    def get_stats(self) -> OperationStats:
        counts = self.registry.stats()
        return OperationStats(counts=counts, total=sum(counts.values()))

    def resolve_file(self, filename: str) -> Path:
        """
        Find a stored file by name, generated outputs first.

        Raises:
            OutputFileNotFound: If the name is unsafe or no such file exists
        """
        for root in (self.processed_root, self.upload_root):
            path = resolve_within(root, filename)
            if path is not None and path.is_file():
                return path
        raise OutputFileNotFound(f"File not found: {filename}")

    def completed_outputs(self, operation_id: str) -> List[OutputFile]:
        record = self.registry.get(operation_id)
        if record.status != OperationStatus.COMPLETED:
            raise OperationNotReady("Operation not completed yet")
        if not record.output_files:
            raise OutputFileNotFound("No output files available")
        return record.output_files

    def output_path(self, output: OutputFile) -> Path:
        path = Path(output.storage_path)
        if not path.is_file():
            raise OutputFileNotFound(f"Output file not found: {output.filename}")
        return path

    def build_archive(self, operation_id: str) -> Path:
        """
        Zip every output of a completed operation into the temp directory.

        Each call writes its own archive, so concurrent downloads of one
        operation never share a file. Archives are removed by the retention
        sweep like any other temp file.
        """
        outputs = self.completed_outputs(operation_id)
        archive_path = self.temp_root / f"{operation_id}-files-{uuid4().hex[:12]}.zip"
        written = 0
        try:
            with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for output in outputs:
                    path = Path(output.storage_path)
                    if not path.is_file():
                        logger.warning("File not found for zip: %s", output.filename)
                        continue
                    archive.write(path, arcname=output.filename)
                    written += 1
        except Exception:
            archive_path.unlink(missing_ok=True)
            raise
        if written == 0:
            archive_path.unlink(missing_ok=True)
            raise OutputFileNotFound("No output files available")
        logger.info("Built archive %s with %d of %d files", archive_path.name, written, len(outputs))
        return archive_path
