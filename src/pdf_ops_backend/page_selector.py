"""
Page selection planning for merge and split operations.

Everything here is pure: functions take descriptors and options and return a
plan, or raise a ValidationError subclass. Nothing touches storage, so the
same functions run synchronously while validating a request and again inside
the background task.

Page numbers supplied by clients are 1-based and inclusive; page indices in
returned plans are 0-based, matching pypdf's ``reader.pages``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, TypeVar

from .errors import InvalidMergeOrder, InvalidPageRange, InvalidSplitOptions
from .models import SplitPlan, SplitStrategy

T = TypeVar("T")

_SINGLE_PAGE = re.compile(r"^\d+$")
_PAGE_SPAN = re.compile(r"^(\d+)\s*-\s*(\d+)$")


@dataclass(frozen=True)
class PageRange:
    """Inclusive 1-based page interval."""

    start: int
    end: int

    @property
    def page_count(self) -> int:
        return self.end - self.start + 1

    def indices(self) -> List[int]:
        return list(range(self.start - 1, self.end))


@dataclass(frozen=True)
class PageSelection:
    """
    One planned output document.

    Attributes:
        label: Filename suffix distinguishing this output within its operation
        page_indices: 0-based source page indices, in output order
    """

    label: str
    page_indices: List[int]


def resolve_merge_order(count: int, order: Optional[Sequence[int]] = None) -> List[int]:
    """
    Resolve the merge order for ``count`` inputs.

    An explicit order may list all inputs or a subset of them, each at most
    once. Without one, inputs are merged in upload order.

    Raises:
        InvalidMergeOrder: If an index is out of range, repeated, or not an integer
    """
    if not order:
        return list(range(count))

    if len(order) > count:
        raise InvalidMergeOrder(f"Merge order lists {len(order)} indices but only {count} files were supplied")

    seen = set()
    for index in order:
        if isinstance(index, bool) or not isinstance(index, int):
            raise InvalidMergeOrder(f'Invalid index "{index}" in mergeOrder. Indices must be integers')
        if index < 0 or index >= count:
            raise InvalidMergeOrder(f'Invalid index "{index}" in mergeOrder. Must be between 0 and {count - 1}')
        if index in seen:
            raise InvalidMergeOrder("Duplicate indices found in merge order")
        seen.add(index)
    return list(order)


def apply_merge_order(items: Sequence[T], order: Optional[Sequence[int]] = None) -> List[T]:
    """Return ``items`` rearranged by the resolved merge order."""
    return [items[index] for index in resolve_merge_order(len(items), order)]


def parse_page_range(token: str, total_pages: int) -> PageRange:
    """
    Parse ``"n"`` or ``"start-end"`` against a document of ``total_pages``.

    Raises:
        InvalidPageRange: On syntax errors, zero pages, pages past the end,
            or a span whose start exceeds its end
    """
    text = str(token).strip()

    if _SINGLE_PAGE.match(text):
        page = int(text)
        if page < 1 or page > total_pages:
            raise InvalidPageRange(text, total_pages)
        return PageRange(page, page)

    match = _PAGE_SPAN.match(text)
    if not match:
        raise InvalidPageRange(text, total_pages, "expected a page number or start-end")

    start, end = int(match.group(1)), int(match.group(2))
    if start < 1 or end > total_pages:
        raise InvalidPageRange(text, total_pages)
    if start > end:
        raise InvalidPageRange(text, total_pages, "start page must not exceed end page")
    return PageRange(start, end)


def parse_page_ranges(tokens: Sequence[str], total_pages: int) -> List[PageRange]:
    """
    Parse each token independently, keeping client order.

    Overlapping or repeated ranges are kept as-is: every token yields one
    output document.
    """
    if not tokens:
        raise InvalidSplitOptions('Page ranges are required when split type is "range"')
    return [parse_page_range(token, total_pages) for token in tokens]


def normalize_range_tokens(values: Optional[Iterable[str]]) -> List[str]:
    """Flatten form values that may each carry comma-separated ranges."""
    tokens: List[str] = []
    for value in values or []:
        for part in str(value).split(","):
            part = part.strip()
            if part:
                tokens.append(part)
    return tokens


def chunk_pages(total_pages: int, pages_per_file: int) -> List[range]:
    """
    Partition ``total_pages`` into consecutive chunks of ``pages_per_file``.

    Returns ``ceil(total / k)`` half-open 0-based ranges; the last may be short.
    """
    if isinstance(pages_per_file, bool) or not isinstance(pages_per_file, int) or pages_per_file < 1:
        raise InvalidSplitOptions(f"pagesPerFile must be a positive integer, got {pages_per_file!r}")
    chunk_count = math.ceil(total_pages / pages_per_file)
    return [
        range(i * pages_per_file, min((i + 1) * pages_per_file, total_pages))
        for i in range(chunk_count)
    ]


def plan_split(plan: SplitPlan, total_pages: int) -> List[PageSelection]:
    """Turn a split plan into one PageSelection per output document."""
    if total_pages < 1:
        raise InvalidSplitOptions("Document has no pages to split")

    if plan.strategy == SplitStrategy.PAGES:
        return [
            PageSelection(label=f"page_{index + 1}", page_indices=list(chunk))
            for index, chunk in enumerate(chunk_pages(total_pages, 1))
        ]

    if plan.strategy == SplitStrategy.SIZE:
        if plan.pages_per_file is None:
            raise InvalidSplitOptions('pagesPerFile is required when split type is "size"')
        return [
            PageSelection(label=f"part_{index + 1}", page_indices=list(chunk))
            for index, chunk in enumerate(chunk_pages(total_pages, plan.pages_per_file))
        ]

    if plan.strategy == SplitStrategy.RANGE:
        return [
            PageSelection(label=f"range_{ordinal}_{page_range.start}-{page_range.end}", page_indices=page_range.indices())
            for ordinal, page_range in enumerate(parse_page_ranges(plan.page_ranges, total_pages), start=1)
        ]

    raise InvalidSplitOptions(f"Unsupported split type: {plan.strategy}")
