"""
PDF merge and split execution on top of pypdf.

The transformer consumes plans produced by ``page_selector`` and writes the
resulting documents into the processed directory. Output names are derived
only from the operation id and a per-output label, so concurrent operations
never write the same file, and each output is written to a ``.part`` sibling
and renamed into place.

A call either produces all of its outputs or none: if any step fails, files
already written by that call are removed before the error propagates.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Sequence

from pypdf import PdfReader, PdfWriter

from .errors import PdfLoadError, ProcessingError
from .models import MergePlan, OperationRecord, SplitPlan
from .page_selector import apply_merge_order, plan_split
from .utils import ensure_directory

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"


def merged_filename(operation_id: str) -> str:
    return f"merged_{operation_id}.pdf"


def split_filename(operation_id: str, label: str) -> str:
    return f"split_{operation_id}_{label}.pdf"


def load_pdf(path: Path) -> PdfReader:
    """
    Open a PDF for reading.

    Raises:
        PdfLoadError: If the file is missing, unparsable, encrypted or has no pages
    """
    try:
        reader = PdfReader(str(path))
        if reader.is_encrypted:
            raise PdfLoadError(f"PDF is encrypted: {path.name}")
        page_count = len(reader.pages)
    except PdfLoadError:
        raise
    except Exception as exc:
        raise PdfLoadError(f"Failed to load PDF {path.name}: {exc}") from exc

    if page_count == 0:
        raise PdfLoadError(f"PDF file has no pages: {path.name}")
    return reader


def count_pages(path: Path) -> int:
    return len(load_pdf(path).pages)


class PdfTransformer:
    """
    Produces merge and split outputs for operations.

    Attributes:
        output_root: Directory receiving generated documents
    """

    def __init__(self, output_root: Path) -> None:
        self.output_root = ensure_directory(output_root)

    def execute(self, record: OperationRecord) -> List[Path]:
        """Run the record's plan and return the written output paths."""
        plan = record.plan
        inputs = [Path(item.storage_path) for item in record.input_files]

        if isinstance(plan, MergePlan):
            return self.merge(record.operation_id, apply_merge_order(inputs, plan.order))
        if isinstance(plan, SplitPlan):
            if len(inputs) != 1:
                raise ProcessingError(f"Split expects exactly one input, got {len(inputs)}")
            return self.split(record.operation_id, inputs[0], plan)
        raise ProcessingError(f"Operation {record.operation_id} has no executable plan")

    def merge(self, operation_id: str, ordered_inputs: Sequence[Path]) -> List[Path]:
        """
        Concatenate the full page sequences of ``ordered_inputs``.

        Every input is loaded before anything is written, so a bad input
        leaves no output behind.
        """
        writer = PdfWriter()
        for path in ordered_inputs:
            reader = load_pdf(path)
            for page in reader.pages:
                writer.add_page(page)
            logger.debug("Added %d pages from %s", len(reader.pages), path.name)

        target = self.output_root / merged_filename(operation_id)
        self._write(writer, target)
        logger.info("Merge %s completed: %d inputs -> %s", operation_id, len(ordered_inputs), target.name)
        return [target]

    def split(self, operation_id: str, input_path: Path, plan: SplitPlan) -> List[Path]:
        """Write one document per planned page selection, in plan order."""
        reader = load_pdf(input_path)
        selections = plan_split(plan, len(reader.pages))
        logger.debug(
            "Splitting %s (%d pages) using %s into %d files",
            input_path.name, len(reader.pages), plan.strategy.value, len(selections),
        )

        written: List[Path] = []
        try:
            for selection in selections:
                writer = PdfWriter()
                for index in selection.page_indices:
                    writer.add_page(reader.pages[index])
                target = self.output_root / split_filename(operation_id, selection.label)
                self._write(writer, target)
                written.append(target)
        except Exception:
            self.retract(written)
            raise

        logger.info("Split %s completed: %d files created", operation_id, len(written))
        return written

    def retract(self, paths: Sequence[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove partial output %s: %s", path, exc)
        if paths:
            logger.info("Removed %d partial outputs", len(paths))

    def _write(self, writer: PdfWriter, target: Path) -> None:
        partial = target.with_name(target.name + PART_SUFFIX)
        try:
            with partial.open("wb") as handle:
                writer.write(handle)
            os.replace(partial, target)
        except Exception as exc:
            partial.unlink(missing_ok=True)
            raise ProcessingError(f"Failed to write {target.name}: {exc}") from exc
