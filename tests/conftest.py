"""
Pytest configuration and fixtures for PDF Operations Backend tests.
"""

import io
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, List

import pytest
from fastapi.testclient import TestClient
from pypdf import PdfReader, PdfWriter

# Set test environment variables before importing the app
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="pdf_ops_test_"))
os.environ["UPLOAD_DIR"] = str(_TEST_ROOT / "uploads")
os.environ["PROCESSED_DIR"] = str(_TEST_ROOT / "processed")
os.environ["TEMP_DIR"] = str(_TEST_ROOT / "temp")
os.environ["DATABASE_PATH"] = str(_TEST_ROOT / "data" / "operations.db")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["MAX_WORKERS"] = "2"

from pdf_ops_backend.main import app, operation_manager  # noqa: E402
from pdf_ops_backend.models import InputFile  # noqa: E402
from pdf_ops_backend.registry import OperationRegistry  # noqa: E402

BASE_HEIGHT = 200


def build_pdf_bytes(page_count: int, base_width: int = 100) -> bytes:
    """
    Build a PDF whose page i is ``base_width + i`` points wide.

    Page widths make page identity and order observable after a merge/split.
    """
    writer = PdfWriter()
    for index in range(page_count):
        writer.add_blank_page(width=base_width + index, height=BASE_HEIGHT)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def page_widths(path) -> List[int]:
    reader = PdfReader(str(path))
    return [round(float(page.mediabox.width)) for page in reader.pages]


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Expose and clean up the directories used by the app under test."""
    yield {
        "root": _TEST_ROOT,
        "upload": Path(os.environ["UPLOAD_DIR"]),
        "processed": Path(os.environ["PROCESSED_DIR"]),
        "temp": Path(os.environ["TEMP_DIR"]),
    }

    operation_manager.shutdown(wait=True)
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def manager():
    return operation_manager


@pytest.fixture
def pdf_factory(tmp_path) -> Callable[..., Path]:
    """Write sample PDFs into a per-test directory."""

    def make(name: str, page_count: int, base_width: int = 100) -> Path:
        path = tmp_path / name
        path.write_bytes(build_pdf_bytes(page_count, base_width))
        return path

    return make


@pytest.fixture
def input_factory(pdf_factory) -> Callable[..., InputFile]:
    """Write a sample PDF and describe it as a stored input."""

    def make(name: str, page_count: int, base_width: int = 100) -> InputFile:
        path = pdf_factory(name, page_count, base_width)
        return InputFile(
            original_name=name,
            stored_name=path.name,
            storage_path=str(path),
            size_bytes=path.stat().st_size,
        )

    return make


@pytest.fixture
def registry(tmp_path) -> OperationRegistry:
    return OperationRegistry.open(tmp_path / "registry.db")


@pytest.fixture
def sample_pdf():
    """A small three-page PDF as upload bytes."""
    return build_pdf_bytes(3)
