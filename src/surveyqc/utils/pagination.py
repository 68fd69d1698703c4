"""Page windowing helpers for presentation layers.

The processing core always returns complete result sets.  Front ends
that display fixes or interval points a page at a time slice them with
these pure functions instead of keeping page state in the core.
"""

import math
from typing import List, Sequence, TypeVar

T = TypeVar("T")


def page_count(total: int, page_size: int) -> int:
    """Number of pages needed to show ``total`` items."""
    if page_size <= 0:
        raise ValueError("page_size must be positive")
    return max(1, math.ceil(total / page_size))


def paginate(items: Sequence[T], page: int, page_size: int) -> List[T]:
    """Return the items on a 1-based ``page``.

    Pages past the end are clamped to the last page and pages below one
    to the first, so a stale page index never yields an empty view of a
    non-empty collection.
    """
    pages = page_count(len(items), page_size)
    page = min(max(page, 1), pages)
    start = (page - 1) * page_size
    return list(items[start:start + page_size])
