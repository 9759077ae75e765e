"""
Fixed-overlap line windowing.

    chunk n covers [start_n, start_n + chunk_size - 1]   (1-based, inclusive)
    start_{n+1} = start_n + chunk_size - overlap_size

The last window is clipped to `total_lines`; planning stops as soon as a
window reaches the end, so no window is ever fully contained in its
predecessor's overlap.

An overlap above half the chunk size is accepted here; it puts some lines in
three windows, which the Coverage Verifier reports as overlap excess.
"""
from __future__ import annotations

from typing import Iterator, NamedTuple, Optional

from insight_pipeline.errors import InvalidWindowError
from insight_pipeline.schemas import LineRange


class Window(NamedTuple):
    index: int
    start_line: int
    end_line: int
    overlap_with_prev: Optional[LineRange]


def validate_window(chunk_size: int, overlap_size: int) -> None:
    if chunk_size <= 0:
        raise InvalidWindowError(
            f"chunk_size must be positive (got {chunk_size})",
            chunk_size=chunk_size,
            overlap_size=overlap_size,
        )
    if overlap_size < 0 or overlap_size >= chunk_size:
        raise InvalidWindowError(
            f"overlap_size must be in [0, chunk_size) (got {overlap_size} for chunk_size {chunk_size})",
            chunk_size=chunk_size,
            overlap_size=overlap_size,
        )


def iter_windows(total_lines: int, chunk_size: int, overlap_size: int) -> Iterator[Window]:
    """Yield the deterministic windows for a document of `total_lines` lines."""
    validate_window(chunk_size, overlap_size)
    stride = chunk_size - overlap_size

    start = 1
    index = 0
    prev_end: Optional[int] = None
    while start <= total_lines:
        end = min(start + chunk_size - 1, total_lines)
        overlap = None
        if prev_end is not None and prev_end >= start:
            overlap = LineRange(start=start, end=prev_end)
        yield Window(index, start, end, overlap)

        if end >= total_lines:
            break
        prev_end = end
        start += stride
        index += 1
