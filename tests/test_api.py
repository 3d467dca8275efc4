"""
Tests for PDF Operations Backend API endpoints.

Tests cover:
- Health check and service info
- Uploads
- Merge and split acceptance, validation and completion
- Status polling
- File and operation downloads, previews and archives
- History and statistics
"""

import asyncio
import io
import threading
import zipfile

import pytest
from conftest import build_pdf_bytes
from pypdf import PdfReader

from pdf_ops_backend import operation_manager as operation_manager_module
from pdf_ops_backend.errors import OutputFileNotFound
from pdf_ops_backend.models import InputFile, MergePlan, OperationRecord, OperationType


def pdf_part(name, page_count=1, base_width=100):
    return ("files", (name, build_pdf_bytes(page_count, base_width), "application/pdf"))


def widths_of(content: bytes):
    return [round(float(page.mediabox.width)) for page in PdfReader(io.BytesIO(content)).pages]


def finished_status(client, manager, operation_id):
    manager.executor.wait(operation_id, timeout=10)
    response = client.get(f"/api/pdf/status/{operation_id}")
    assert response.status_code == 200
    return response.json()


def submit_split(client, manager, page_count=3, **form):
    data = {"splitType": "pages", **form}
    response = client.post("/api/pdf/split", files=[pdf_part("doc.pdf", page_count)], data=data)
    assert response.status_code == 202, response.text
    operation_id = response.json()["operationId"]
    return operation_id, finished_status(client, manager, operation_id)


def total_operations(client):
    return client.get("/api/pdf/stats").json()["total"]


class TestHealthCheck:
    """Tests for the health endpoints."""

    def test_health_check_returns_ok(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert "timestamp" in data

    def test_operations_health(self, client):
        response = client.get("/api/pdf/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert set(data["storage"]) == {"uploads", "processed", "temp"}
        assert set(data["storage"]["processed"]) == {"fileCount", "totalSize", "formattedSize"}

    def test_root_lists_endpoints(self, client):
        data = client.get("/").json()
        assert data["endpoints"]["merge"] == "/api/pdf/merge"


class TestUpload:
    """Tests for /api/pdf/upload."""

    def test_upload_records_completed_operation(self, client):
        response = client.post(
            "/api/pdf/upload",
            files=[pdf_part("First Report.pdf", 2), pdf_part("second.pdf", 1)],
        )

        assert response.status_code == 200
        data = response.json()
        assert [item["originalName"] for item in data["files"]] == ["First Report.pdf", "second.pdf"]
        assert data["files"][0]["filename"].startswith("First_Report-")

        status = client.get(f"/api/pdf/status/{data['operationId']}").json()
        assert status["status"] == "completed"
        assert status["operationType"] == "upload"

        download = client.get(data["files"][0]["downloadUrl"])
        assert download.status_code == 200
        assert len(widths_of(download.content)) == 2

    def test_rejects_non_pdf(self, client):
        response = client.post(
            "/api/pdf/upload",
            files=[("files", ("notes.txt", b"hello", "text/plain"))],
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_UPLOAD"

    def test_rejects_empty_file(self, client):
        response = client.post(
            "/api/pdf/upload",
            files=[("files", ("empty.pdf", b"", "application/pdf"))],
        )
        assert response.status_code == 400
        assert "Empty file" in response.json()["detail"]


class TestMerge:
    """Tests for /api/pdf/merge."""

    def test_merge_is_accepted_then_completes(self, client, manager):
        response = client.post(
            "/api/pdf/merge",
            files=[pdf_part("a.pdf", 2, base_width=100), pdf_part("b.pdf", 1, base_width=200)],
        )

        assert response.status_code == 202
        accepted = response.json()
        operation_id = accepted["operationId"]
        assert accepted["status"] == "pending"
        assert accepted["statusUrl"] == f"/api/pdf/status/{operation_id}"
        assert accepted["downloadUrl"] == f"/api/pdf/download-operation/{operation_id}"

        status = finished_status(client, manager, operation_id)
        assert status["status"] == "completed"
        assert status["durationMillis"] >= 0
        assert "error" not in status
        [output] = status["outputFiles"]
        assert output["filename"] == f"merged_{operation_id}.pdf"

        download = client.get(output["downloadUrl"])
        assert download.status_code == 200
        assert widths_of(download.content) == [100, 101, 200]

    def test_merge_order_is_applied(self, client, manager):
        response = client.post(
            "/api/pdf/merge",
            files=[pdf_part("a.pdf", 2, base_width=100), pdf_part("b.pdf", 1, base_width=200)],
            data={"mergeOrder": "[1,0]"},
        )
        operation_id = response.json()["operationId"]

        status = finished_status(client, manager, operation_id)

        assert status["metadata"] == {"kind": "merge", "order": [1, 0]}
        download = client.get(f"/api/pdf/download-operation/{operation_id}")
        assert download.headers["content-type"] == "application/pdf"
        assert widths_of(download.content) == [200, 100, 101]

    def test_comma_separated_merge_order(self, client, manager):
        response = client.post(
            "/api/pdf/merge",
            files=[pdf_part("a.pdf", 1, base_width=100), pdf_part("b.pdf", 1, base_width=200)],
            data={"mergeOrder": "1, 0"},
        )
        assert response.status_code == 202

        status = finished_status(client, manager, response.json()["operationId"])

        assert status["metadata"]["order"] == [1, 0]

    def test_requires_two_files(self, client):
        before = total_operations(client)
        response = client.post("/api/pdf/merge", files=[pdf_part("a.pdf")])
        assert response.status_code == 400
        assert total_operations(client) == before

    @pytest.mark.parametrize(
        "order", ["[0,5]", "[1,1]", "abc", "{\"a\": 1}", "[1.5,0]", "[0.9, 1]", "[true,0]", "1,x", "1,-0"]
    )
    def test_invalid_merge_order(self, client, order):
        before = total_operations(client)
        response = client.post(
            "/api/pdf/merge",
            files=[pdf_part("a.pdf"), pdf_part("b.pdf")],
            data={"mergeOrder": order},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_MERGE_ORDER"
        assert total_operations(client) == before

    def test_unreadable_input_fails_in_background(self, client, manager):
        response = client.post(
            "/api/pdf/merge",
            files=[pdf_part("a.pdf"), ("files", ("broken.pdf", b"not really a pdf", "application/pdf"))],
        )
        assert response.status_code == 202

        status = finished_status(client, manager, response.json()["operationId"])

        assert status["status"] == "failed"
        assert "broken" in status["error"]
        assert "outputFiles" not in status

    def test_saturated_executor_returns_503(self, client, manager, monkeypatch):
        monkeypatch.setattr(manager.executor, "_slots", threading.Semaphore(0))
        before = total_operations(client)

        response = client.post("/api/pdf/merge", files=[pdf_part("a.pdf"), pdf_part("b.pdf")])

        assert response.status_code == 503
        assert response.json()["error"] == "EXECUTOR_SATURATED"
        assert total_operations(client) == before


class TestSplit:
    """Tests for /api/pdf/split."""

    def test_split_every_page(self, client, manager):
        operation_id, status = submit_split(client, manager, page_count=3)

        assert status["status"] == "completed"
        assert [item["filename"] for item in status["outputFiles"]] == [
            f"split_{operation_id}_page_{n}.pdf" for n in (1, 2, 3)
        ]

    def test_split_by_ranges(self, client, manager):
        operation_id, status = submit_split(
            client, manager, page_count=6, splitType="range", pageRanges="1-2, 5"
        )

        assert status["metadata"]["strategy"] == "range"
        assert status["metadata"]["pageRanges"] == ["1-2", "5"]
        counts = [len(widths_of(client.get(item["downloadUrl"]).content)) for item in status["outputFiles"]]
        assert counts == [2, 1]

    def test_split_by_size(self, client, manager):
        _, status = submit_split(client, manager, page_count=10, splitType="size", pagesPerFile="3")

        counts = [len(widths_of(client.get(item["downloadUrl"]).content)) for item in status["outputFiles"]]
        assert counts == [3, 3, 3, 1]

    def test_out_of_bounds_range_rejected_without_record(self, client):
        before = total_operations(client)

        response = client.post(
            "/api/pdf/split",
            files=[pdf_part("doc.pdf", 3)],
            data={"splitType": "range", "pageRanges": "2-5"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "INVALID_PAGE_RANGE"
        assert "between 1 and 3" in body["detail"]
        assert total_operations(client) == before

    @pytest.mark.parametrize(
        "form",
        [
            {"splitType": "size", "pagesPerFile": "0"},
            {"splitType": "size", "pagesPerFile": "101"},
            {"splitType": "range"},
            {"splitType": "chapters"},
        ],
    )
    def test_invalid_split_options(self, client, form):
        response = client.post("/api/pdf/split", files=[pdf_part("doc.pdf", 3)], data=form)
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_SPLIT_OPTIONS"

    def test_unreadable_pdf_rejected_up_front(self, client):
        response = client.post(
            "/api/pdf/split",
            files=[("files", ("broken.pdf", b"garbage", "application/pdf"))],
        )
        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_UPLOAD"

    def test_page_count_is_read_off_the_event_loop(self, client, manager, monkeypatch):
        threads = []
        count_pages = operation_manager_module.count_pages

        def recording_count_pages(path):
            try:
                asyncio.get_running_loop()
                threads.append("event loop")
            except RuntimeError:
                threads.append("worker")
            return count_pages(path)

        monkeypatch.setattr(operation_manager_module, "count_pages", recording_count_pages)

        response = client.post("/api/pdf/split", files=[pdf_part("doc.pdf", 2)], data={"splitType": "pages"})

        assert response.status_code == 202
        assert threads == ["worker"]
        manager.executor.wait(response.json()["operationId"], timeout=10)

    def test_requires_exactly_one_file(self, client):
        response = client.post("/api/pdf/split", files=[pdf_part("a.pdf"), pdf_part("b.pdf")])
        assert response.status_code == 400


class TestStatus:
    """Tests for /api/pdf/status/{id}."""

    def test_unknown_operation(self, client):
        response = client.get("/api/pdf/status/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"] == "OPERATION_NOT_FOUND"

    def test_pending_operation_hides_outputs(self, client, manager):
        manager.registry.create(
            OperationRecord(
                operation_id="pending-status-check",
                operation_type=OperationType.MERGE,
                input_files=[
                    InputFile(original_name="a.pdf", stored_name="a.pdf", storage_path="/nowhere/a.pdf", size_bytes=1),
                    InputFile(original_name="b.pdf", stored_name="b.pdf", storage_path="/nowhere/b.pdf", size_bytes=1),
                ],
                plan=MergePlan(order=[0, 1]),
            )
        )

        status = client.get("/api/pdf/status/pending-status-check").json()
        assert status["status"] == "pending"
        assert "outputFiles" not in status

        response = client.get("/api/pdf/download-operation/pending-status-check")
        assert response.status_code == 409
        assert response.json()["error"] == "OPERATION_NOT_READY"


class TestDownloads:
    """Tests for file and operation downloads."""

    def test_unknown_file(self, client):
        response = client.get("/api/pdf/download/missing.pdf")
        assert response.status_code == 404
        assert response.json()["error"] == "FILE_NOT_FOUND"

    def test_names_outside_storage_are_refused(self, manager):
        with pytest.raises(OutputFileNotFound):
            manager.resolve_file("../data/operations.db")

    def test_preview_is_inline(self, client, manager):
        _, status = submit_split(client, manager, page_count=1)

        response = client.get(status["outputFiles"][0]["previewUrl"])

        assert response.status_code == 200
        assert response.headers["content-disposition"].startswith("inline")
        assert "no-cache" in response.headers["cache-control"]

    def test_multi_output_download_returns_listing(self, client, manager):
        operation_id, _ = submit_split(client, manager, page_count=3)

        response = client.get(f"/api/pdf/download-operation/{operation_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["operationId"] == operation_id
        assert len(data["outputFiles"]) == 3

    def test_preview_operation_by_index(self, client, manager):
        operation_id, _ = submit_split(client, manager, page_count=3)

        second = client.get(f"/api/pdf/preview-operation/{operation_id}", params={"fileIndex": 1})
        out_of_range = client.get(f"/api/pdf/preview-operation/{operation_id}", params={"fileIndex": 3})

        assert second.status_code == 200
        assert widths_of(second.content) == [101]
        assert out_of_range.status_code == 400

    def test_bulk_download_zips_outputs(self, client, manager):
        operation_id, status = submit_split(client, manager, page_count=3)

        response = client.get(f"/api/pdf/bulk-download/{operation_id}")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
            assert sorted(archive.namelist()) == sorted(item["filename"] for item in status["outputFiles"])

    def test_each_archive_request_gets_its_own_file(self, client, manager):
        operation_id, status = submit_split(client, manager, page_count=2)

        first = manager.build_archive(operation_id)
        second = manager.build_archive(operation_id)

        assert first != second
        assert first.parent == second.parent == manager.temp_root
        for archive_path in (first, second):
            with zipfile.ZipFile(archive_path) as archive:
                assert len(archive.namelist()) == 2

    def test_bulk_download_keeps_a_stable_download_name(self, client, manager):
        operation_id, _ = submit_split(client, manager, page_count=2)

        response = client.get(f"/api/pdf/bulk-download/{operation_id}")

        assert f'filename="{operation_id}-files.zip"' in response.headers["content-disposition"]

    def test_bulk_download_of_single_output_redirects(self, client, manager):
        operation_id, status = submit_split(client, manager, page_count=1)

        response = client.get(f"/api/pdf/bulk-download/{operation_id}", follow_redirects=False)

        assert response.status_code in (302, 307)
        assert response.headers["location"] == status["outputFiles"][0]["downloadUrl"]


class TestHistory:
    """Tests for /api/pdf/history and /api/pdf/stats."""

    def test_history_pagination_and_filter(self, client):
        for n in range(3):
            client.post("/api/pdf/upload", files=[pdf_part(f"history-{n}.pdf")])

        response = client.get("/api/pdf/history", params={"limit": 2, "operationType": "upload"})

        assert response.status_code == 200
        data = response.json()
        assert len(data["operations"]) == 2
        assert all(item["operationType"] == "upload" for item in data["operations"])
        pagination = data["pagination"]
        assert pagination["total"] >= 3
        assert pagination["pages"] == -(-pagination["total"] // 2)

    def test_history_rejects_bad_limit(self, client):
        assert client.get("/api/pdf/history", params={"limit": 500}).status_code == 422

    def test_stats(self, client):
        data = client.get("/api/pdf/stats").json()
        assert set(data["counts"]) == {"pending", "processing", "completed", "failed"}
        assert data["total"] == sum(data["counts"].values())
