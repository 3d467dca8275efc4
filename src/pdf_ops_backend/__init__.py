"""
PDF Operations Backend - REST API for merging and splitting PDF documents

This package provides a FastAPI-based web service that merges several PDF
documents into one or splits one document into several. Requests are
acknowledged immediately and tracked as long-lived operations:

- PDF uploads and validation
- Asynchronous merge and split execution on a bounded worker pool
- Operation status tracking, history and statistics
- Download, preview and zip archive of generated files
- Retention sweeping of aged files and expired operation records

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - operation_manager: Coordinator used by the HTTP layer
    - page_selector: Merge order, page range and chunk planning
    - pdf_transformer: pypdf-backed merge/split execution
    - registry / state_machine / database: Operation lifecycle and persistence
    - executor: Bounded background execution
    - retention: Scheduled cleanup of files and records
    - configuration: Settings loading with defaults and environment overrides

Usage:
    Run the API server with:
        uvicorn pdf_ops_backend.main:app --reload --host 0.0.0.0 --port 8000
"""

__version__ = "1.0.0"
