# =============================================================================
# Page Ranges — string encoding of the pages a chunk covers
# =============================================================================
#
# Chunks record their pages as a list of strings: single pages ("5"),
# hyphenated runs ("3-7"), or comma lists ("2,4"). Page queries match a
# requested page against any of those forms.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterable

logger = logging.getLogger(__name__)


def create_page_ranges(pages: Iterable[int]) -> list[str]:
    """
    Collapse page numbers into range strings.

    >>> create_page_ranges([5, 1, 2, 3])
    ['1-3', '5']
    """
    ordered = sorted({p for p in pages if p > 0})
    if not ordered:
        return []

    ranges: list[str] = []
    start = prev = ordered[0]
    for page in ordered[1:]:
        if page == prev + 1:
            prev = page
            continue
        ranges.append(_format_run(start, prev))
        start = prev = page
    ranges.append(_format_run(start, prev))
    return ranges


def expand_page_ranges(ranges: Iterable[str]) -> list[int]:
    """
    Expand range strings back into a sorted list of page numbers.

    Malformed parts are skipped with a debug log; a reversed range
    ("7-3") is read as 3..7.
    """
    pages: set[int] = set()
    for entry in ranges:
        for part in str(entry).split(","):
            part = part.strip()
            if not part:
                continue
            try:
                if "-" in part:
                    lo_str, hi_str = part.split("-", 1)
                    lo, hi = int(lo_str), int(hi_str)
                    if lo > hi:
                        lo, hi = hi, lo
                    pages.update(range(lo, hi + 1))
                else:
                    pages.add(int(part))
            except ValueError:
                logger.debug("Skipping malformed page range part %r", part)
    return sorted(p for p in pages if p > 0)


def page_ranges_match(ranges: Iterable[str], requested_pages: Iterable[int]) -> bool:
    """True if any requested page falls inside any of the chunk's ranges."""
    wanted = set(requested_pages)
    if not wanted:
        return False
    return any(page in wanted for page in expand_page_ranges(ranges))


def _format_run(start: int, end: int) -> str:
    return str(start) if start == end else f"{start}-{end}"
