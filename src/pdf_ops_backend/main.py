from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from .configuration import configure_logging, get_settings
from .errors import (
    ConflictError,
    ExecutorSaturated,
    FatalError,
    InvalidMergeOrder,
    InvalidUpload,
    NotFoundError,
    PdfOpsError,
    ProcessingError,
    ValidationError,
)
from .middleware import RateLimiter, RateLimitMiddleware, RequestLoggingMiddleware
from .models import (
    ClientInfo,
    InputFile,
    OperationAccepted,
    OperationHistory,
    OperationStats,
    OperationStatus,
    OperationStatusView,
    OperationType,
    OutputListing,
    UploadResult,
)
from .operation_manager import OperationManager
from .utils import API_PREFIX, file_download_url, is_pdf_upload, make_stored_name

logger = logging.getLogger(__name__)

settings = get_settings()

try:
    operation_manager = OperationManager.from_settings(settings)
except OSError as exc:  # pragma: no cover - fail fast in misconfigured environments
    raise FatalError(f"Storage is not usable: {exc}") from exc

UPLOAD_CHUNK_SIZE = 1024 * 1024
_INDEX_PATTERN = re.compile(r"\d+")
PDF_MEDIA_TYPE = "application/pdf"
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@asynccontextmanager
async def lifespan(_app: FastAPI):
    configure_logging(settings.logging.level)
    try:
        operation_manager.start()
    except Exception as exc:
        raise FatalError(f"Startup failed: {exc}") from exc
    logger.info("PDF operations service started; storage under %s", operation_manager.upload_root.parent.resolve())
    yield
    operation_manager.shutdown(wait=True)


app = FastAPI(title=settings.server.title, version=settings.server.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.server.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)
if settings.rate_limit.enabled:
    app.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(
            max_requests=int(settings.rate_limit.max_requests),
            window_seconds=float(settings.rate_limit.window_minutes) * 60,
        ),
        path_prefix=f"{API_PREFIX}/",
    )
app.add_middleware(RequestLoggingMiddleware)


_ERROR_STATUS = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (ExecutorSaturated, 503),
    (ProcessingError, 500),
]


@app.exception_handler(PdfOpsError)
async def handle_domain_error(request: Request, exc: PdfOpsError) -> JSONResponse:
    status_code = next((code for kind, code in _ERROR_STATUS if isinstance(exc, kind)), 500)
    log = logger.error if status_code >= 500 else logger.info
    log("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "error": exc.code})


def get_operation_manager() -> OperationManager:
    return operation_manager


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        source_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _check_uploads(files: List[UploadFile]) -> None:
    if not files:
        raise InvalidUpload("No files uploaded")
    if len(files) > int(settings.limits.max_files):
        raise InvalidUpload(f"Too many files. Maximum allowed is {settings.limits.max_files} files.")
    for upload in files:
        if not upload.filename:
            raise InvalidUpload("PDF file must have a filename")
        if not is_pdf_upload(upload.filename, upload.content_type):
            raise InvalidUpload(f"Invalid file type for {upload.filename}. Only PDF files are allowed.")


async def _store_upload(upload: UploadFile, manager: OperationManager) -> InputFile:
    max_bytes = int(settings.limits.max_file_size_mb) * 1024 * 1024
    stored_name = make_stored_name(upload.filename or "document.pdf")
    destination = manager.new_upload_path(stored_name)

    size = 0
    try:
        with destination.open("wb") as buffer:
            while chunk := await upload.read(UPLOAD_CHUNK_SIZE):
                size += len(chunk)
                if size > max_bytes:
                    raise InvalidUpload(
                        f"File size too large. Maximum allowed size is {settings.limits.max_file_size_mb}MB."
                    )
                buffer.write(chunk)
    except Exception:
        destination.unlink(missing_ok=True)
        raise
    finally:
        await upload.close()

    if size == 0:
        destination.unlink(missing_ok=True)
        raise InvalidUpload(f"Empty file detected: {upload.filename}")

    return InputFile(
        original_name=upload.filename or stored_name,
        stored_name=stored_name,
        storage_path=str(destination),
        size_bytes=size,
        mime_type=upload.content_type or PDF_MEDIA_TYPE,
    )


async def _store_uploads(files: List[UploadFile], manager: OperationManager) -> List[InputFile]:
    stored: List[InputFile] = []
    try:
        for upload in files:
            stored.append(await _store_upload(upload, manager))
    except Exception:
        _discard_inputs(stored)
        raise
    logger.debug("Uploaded %d files: %s", len(stored), [item.original_name for item in stored])
    return stored


def _discard_inputs(inputs: List[InputFile]) -> None:
    for item in inputs:
        Path(item.storage_path).unlink(missing_ok=True)


def _parse_merge_order(values: Optional[List[str]]) -> Optional[List[int]]:
    """Accept a JSON array (``"[1,0]"``), comma-separated or repeated integer fields."""
    if not values:
        return None
    invalid = InvalidMergeOrder("mergeOrder must be a valid JSON array of indices like [1,0]")
    if len(values) == 1 and values[0].strip().startswith("["):
        try:
            parsed = json.loads(values[0])
        except json.JSONDecodeError as exc:
            raise invalid from exc
        if not isinstance(parsed, list):
            raise invalid
    else:
        parsed = [part.strip() for value in values for part in value.split(",") if part.strip()]

    order: List[int] = []
    for item in parsed:
        if isinstance(item, int) and not isinstance(item, bool):
            order.append(item)
        elif isinstance(item, str) and _INDEX_PATTERN.fullmatch(item):
            order.append(int(item))
        else:
            raise invalid
    return order


@app.get("/")
def root() -> Dict[str, Any]:
    return {
        "message": settings.server.title,
        "version": settings.server.version,
        "endpoints": {
            "health": "/health",
            "upload": f"{API_PREFIX}/upload",
            "merge": f"{API_PREFIX}/merge",
            "split": f"{API_PREFIX}/split",
            "history": f"{API_PREFIX}/history",
        },
    }


@app.get("/health")
def healthcheck() -> Dict[str, str]:
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.server.version,
    }


@app.get(f"{API_PREFIX}/health")
def operations_health(manager: OperationManager = Depends(get_operation_manager)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "message": "PDF operations service is running",
        "inFlight": manager.executor.in_flight,
        "sweeperRunning": manager.sweeper.running,
        "storage": {
            name: {"fileCount": stats.file_count, "totalSize": stats.total_size, "formattedSize": stats.formatted_size}
            for name, stats in manager.sweeper.storage_stats().items()
        },
    }


@app.post(f"{API_PREFIX}/upload", response_model=UploadResult)
async def upload_files(
    request: Request,
    files: List[UploadFile] = File(...),
    manager: OperationManager = Depends(get_operation_manager),
) -> UploadResult:
    _check_uploads(files)
    stored = await _store_uploads(files, manager)
    record = manager.record_upload(stored, client_info=_client_info(request))
    return UploadResult(
        message="Files uploaded successfully",
        operation_id=record.operation_id,
        files=record.input_views(),
    )


@app.post(f"{API_PREFIX}/merge", response_model=OperationAccepted, status_code=202)
async def merge_pdfs(
    request: Request,
    files: List[UploadFile] = File(...),
    merge_order: Optional[List[str]] = Form(None, alias="mergeOrder"),
    manager: OperationManager = Depends(get_operation_manager),
) -> OperationAccepted:
    _check_uploads(files)
    if len(files) < 2:
        raise InvalidUpload("At least 2 PDF files are required for merging")
    order = _parse_merge_order(merge_order)

    stored = await _store_uploads(files, manager)
    try:
        record = manager.create_merge(stored, merge_order=order, client_info=_client_info(request))
    except PdfOpsError:
        _discard_inputs(stored)
        raise
    return record.to_accepted()


@app.post(f"{API_PREFIX}/split", response_model=OperationAccepted, status_code=202)
async def split_pdf(
    request: Request,
    files: List[UploadFile] = File(...),
    split_type: str = Form("pages", alias="splitType"),
    page_ranges: Optional[List[str]] = Form(None, alias="pageRanges"),
    pages_per_file: int = Form(1, alias="pagesPerFile"),
    manager: OperationManager = Depends(get_operation_manager),
) -> OperationAccepted:
    _check_uploads(files)
    if len(files) != 1:
        raise InvalidUpload("Exactly one PDF file is required for splitting")
    plan = manager.build_split_plan(split_type, page_ranges=page_ranges, pages_per_file=pages_per_file)

    stored = await _store_uploads(files, manager)
    try:
        record = await run_in_threadpool(
            manager.create_split, stored[0], plan, client_info=_client_info(request)
        )
    except PdfOpsError:
        _discard_inputs(stored)
        raise
    return record.to_accepted()


@app.get(
    f"{API_PREFIX}/status/{{operation_id}}",
    response_model=OperationStatusView,
    response_model_exclude_none=True,
)
def operation_status(operation_id: str, manager: OperationManager = Depends(get_operation_manager)) -> OperationStatusView:
    return manager.get_operation(operation_id).to_status()


@app.get(f"{API_PREFIX}/download/{{filename}}")
def download_file(filename: str, manager: OperationManager = Depends(get_operation_manager)) -> FileResponse:
    path = manager.resolve_file(filename)
    return FileResponse(path, media_type=PDF_MEDIA_TYPE, filename=path.name)


@app.get(f"{API_PREFIX}/preview/{{filename}}")
def preview_file(filename: str, manager: OperationManager = Depends(get_operation_manager)) -> FileResponse:
    path = manager.resolve_file(filename)
    return FileResponse(
        path,
        media_type=PDF_MEDIA_TYPE,
        filename=path.name,
        content_disposition_type="inline",
        headers=NO_CACHE_HEADERS,
    )


@app.get(f"{API_PREFIX}/download-operation/{{operation_id}}", response_model=None)
def download_operation_result(operation_id: str, manager: OperationManager = Depends(get_operation_manager)):
    outputs = manager.completed_outputs(operation_id)
    if len(outputs) == 1:
        path = manager.output_path(outputs[0])
        return FileResponse(path, media_type=PDF_MEDIA_TYPE, filename=outputs[0].filename)

    record = manager.get_operation(operation_id)
    return OutputListing(
        message="Multiple files available for download",
        operation_id=operation_id,
        output_files=record.output_views(),
    )


@app.get(f"{API_PREFIX}/preview-operation/{{operation_id}}")
def preview_operation_result(
    operation_id: str,
    file_index: int = Query(0, alias="fileIndex", ge=0),
    manager: OperationManager = Depends(get_operation_manager),
) -> FileResponse:
    outputs = manager.completed_outputs(operation_id)
    if file_index >= len(outputs):
        raise HTTPException(status_code=400, detail="File index out of range")
    output = outputs[file_index]
    return FileResponse(
        manager.output_path(output),
        media_type=PDF_MEDIA_TYPE,
        filename=output.filename,
        content_disposition_type="inline",
        headers=NO_CACHE_HEADERS,
    )


@app.get(f"{API_PREFIX}/bulk-download/{{operation_id}}", response_model=None)
def bulk_download(operation_id: str, manager: OperationManager = Depends(get_operation_manager)):
    outputs = manager.completed_outputs(operation_id)
    if len(outputs) == 1:
        return RedirectResponse(file_download_url(outputs[0].filename))
    archive = manager.build_archive(operation_id)
    return FileResponse(archive, media_type="application/zip", filename=f"{operation_id}-files.zip")


@app.get(f"{API_PREFIX}/history", response_model=OperationHistory)
def operation_history(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    status: Optional[OperationStatus] = Query(None),
    operation_type: Optional[OperationType] = Query(None, alias="operationType"),
    manager: OperationManager = Depends(get_operation_manager),
) -> OperationHistory:
    return manager.list_history(
        page=page,
        limit=limit,
        status=status.value if status else None,
        operation_type=operation_type.value if operation_type else None,
    )


@app.get(f"{API_PREFIX}/stats", response_model=OperationStats)
def operation_stats(manager: OperationManager = Depends(get_operation_manager)) -> OperationStats:
    return manager.get_stats()
