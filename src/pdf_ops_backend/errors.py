"""
Error taxonomy for PDF operations.

Errors fall into four families that map onto how they are surfaced:

- ValidationError: bad request shape or options. Rejected synchronously,
  before any operation record exists.
- NotFoundError: unknown operation or missing output file.
- ProcessingError: failures while loading, selecting pages from, or writing
  a PDF in the background. Recorded on the operation, never raised to the
  request that scheduled the work.
- FatalError: the process cannot start or continue (storage unusable).

Every error carries a stable machine-readable ``code`` used by the HTTP layer.
"""

from __future__ import annotations

from typing import Optional


class PdfOpsError(Exception):
    """Base class for all domain errors."""

    code = "PDF_OPS_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PdfOpsError):
    code = "VALIDATION_ERROR"


class InvalidMergeOrder(ValidationError):
    code = "INVALID_MERGE_ORDER"


class InvalidPageRange(ValidationError):
    """
    A page range token could not be parsed or falls outside the document.

    Attributes:
        token: The offending token as supplied by the client
        total_pages: Upper bound the token was checked against
    """

    code = "INVALID_PAGE_RANGE"

    def __init__(self, token: str, total_pages: int, reason: Optional[str] = None) -> None:
        message = f"Invalid page range: {token}. Pages must be between 1 and {total_pages}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.token = token
        self.total_pages = total_pages


class InvalidSplitOptions(ValidationError):
    code = "INVALID_SPLIT_OPTIONS"


class InvalidUpload(ValidationError):
    code = "INVALID_UPLOAD"


class NotFoundError(PdfOpsError):
    code = "NOT_FOUND"


class OperationNotFound(NotFoundError):
    code = "OPERATION_NOT_FOUND"

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Operation not found: {operation_id}")
        self.operation_id = operation_id


class OutputFileNotFound(NotFoundError):
    code = "FILE_NOT_FOUND"


class ConflictError(PdfOpsError):
    code = "CONFLICT"


class DuplicateOperation(ConflictError):
    code = "DUPLICATE_OPERATION"

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Operation already exists: {operation_id}")
        self.operation_id = operation_id


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"


class OperationNotReady(ConflictError):
    code = "OPERATION_NOT_READY"


class ProcessingError(PdfOpsError):
    code = "PROCESSING_ERROR"


class PdfLoadError(ProcessingError):
    code = "PDF_LOAD_ERROR"


class ExecutorSaturated(PdfOpsError):
    code = "EXECUTOR_SATURATED"


class FatalError(PdfOpsError):
    code = "FATAL_ERROR"
