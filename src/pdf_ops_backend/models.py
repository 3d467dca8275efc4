from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .utils import (
    file_download_url,
    file_preview_url,
    operation_download_url,
    operation_preview_url,
    operation_status_url,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys; accepts snake_case on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OperationType(str, Enum):
    MERGE = "merge"
    SPLIT = "split"
    UPLOAD = "upload"


class OperationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED)


class SplitStrategy(str, Enum):
    PAGES = "pages"
    RANGE = "range"
    SIZE = "size"


class InputFile(CamelModel):
    original_name: str
    stored_name: str
    storage_path: str
    size_bytes: int
    mime_type: str = "application/pdf"
    merge_order_index: Optional[int] = None


class OutputFile(CamelModel):
    filename: str
    storage_path: str
    size_bytes: int


class ProcessingInfo(CamelModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_millis: Optional[int] = None
    error_message: Optional[str] = None


class ClientInfo(CamelModel):
    source_address: Optional[str] = None
    user_agent: Optional[str] = None


class MergePlan(CamelModel):
    kind: Literal["merge"] = "merge"
    order: List[int]


class SplitPlan(CamelModel):
    kind: Literal["split"] = "split"
    strategy: SplitStrategy
    page_ranges: List[str] = Field(default_factory=list)
    pages_per_file: Optional[int] = None


OperationPlan = Annotated[Union[MergePlan, SplitPlan], Field(discriminator="kind")]


class InputFileView(CamelModel):
    original_name: str
    filename: str
    size: int
    preview_url: str
    download_url: str


class OutputFileView(CamelModel):
    filename: str
    size: int
    preview_url: str
    download_url: str


class OperationRecord(CamelModel):
    """
    Persisted lifecycle of one merge, split or upload request.

    Records are only mutated through OperationRegistry transitions; callers
    receive copies and never write back.
    """

    operation_id: str
    operation_type: OperationType
    status: OperationStatus = OperationStatus.PENDING
    input_files: List[InputFile]
    output_files: List[OutputFile] = Field(default_factory=list)
    plan: Optional[OperationPlan] = Field(default=None, alias="metadata")
    processing: ProcessingInfo = Field(default_factory=ProcessingInfo)
    client_info: ClientInfo = Field(default_factory=ClientInfo)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def input_views(self) -> List[InputFileView]:
        return [
            InputFileView(
                original_name=item.original_name,
                filename=item.stored_name,
                size=item.size_bytes,
                preview_url=file_preview_url(item.stored_name),
                download_url=file_download_url(item.stored_name),
            )
            for item in self.input_files
        ]

    def output_views(self) -> List[OutputFileView]:
        return [
            OutputFileView(
                filename=item.filename,
                size=item.size_bytes,
                preview_url=file_preview_url(item.filename),
                download_url=file_download_url(item.filename),
            )
            for item in self.output_files
        ]

    def to_accepted(self) -> "OperationAccepted":
        return OperationAccepted(
            message=f"{self.operation_type.value.capitalize()} operation started",
            operation_id=self.operation_id,
            status=self.status,
            status_url=operation_status_url(self.operation_id),
            preview_url=operation_preview_url(self.operation_id),
            download_url=operation_download_url(self.operation_id),
        )

    def to_status(self) -> "OperationStatusView":
        """
        Build the status-poll view.

        Output files are only listed once the operation completed, the error
        only once it failed.
        """
        return OperationStatusView(
            operation_id=self.operation_id,
            operation_type=self.operation_type,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
            metadata=self.plan,
            input_files=self.input_views(),
            output_files=self.output_views() if self.status == OperationStatus.COMPLETED else None,
            duration_millis=self.processing.duration_millis,
            error=self.processing.error_message if self.status == OperationStatus.FAILED else None,
        )

    def to_summary(self) -> "OperationSummary":
        return OperationSummary(
            operation_id=self.operation_id,
            operation_type=self.operation_type,
            status=self.status,
            created_at=self.created_at,
            duration_millis=self.processing.duration_millis,
            input_count=len(self.input_files),
            output_files=self.output_views(),
            status_url=operation_status_url(self.operation_id),
            preview_url=operation_preview_url(self.operation_id),
            download_url=operation_download_url(self.operation_id),
        )


class OperationAccepted(CamelModel):
    message: str
    operation_id: str
    status: OperationStatus
    status_url: str
    preview_url: str
    download_url: str


class OperationStatusView(CamelModel):
    operation_id: str
    operation_type: OperationType
    status: OperationStatus
    created_at: datetime
    updated_at: datetime
    plan: Optional[OperationPlan] = Field(default=None, alias="metadata")
    input_files: List[InputFileView]
    output_files: Optional[List[OutputFileView]] = None
    duration_millis: Optional[int] = None
    error: Optional[str] = None


class OperationSummary(CamelModel):
    operation_id: str
    operation_type: OperationType
    status: OperationStatus
    created_at: datetime
    duration_millis: Optional[int] = None
    input_count: int
    output_files: List[OutputFileView]
    status_url: str
    preview_url: str
    download_url: str


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class OperationHistory(CamelModel):
    operations: List[OperationSummary]
    pagination: Pagination


class OperationStats(CamelModel):
    counts: Dict[str, int]
    total: int


class UploadResult(CamelModel):
    message: str
    operation_id: str
    files: List[InputFileView]


class OutputListing(CamelModel):
    message: str
    operation_id: str
    output_files: List[OutputFileView]
