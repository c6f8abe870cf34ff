"""Which rows to render for a scroll position."""

import bisect
import itertools
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass

_DEFAULT_OVERSCAN: int = 5


@dataclass(frozen=True)
class ViewportRange:
    """Rendered block of rows.

    ``end_index`` is inclusive and is ``-1`` when there are no rows.
    ``offset_y`` is the pixel offset of ``start_index`` and
    ``total_height`` the height of all rows together.
    """

    start_index: int
    end_index: int
    offset_y: float
    total_height: float

    @property
    def count(self) -> int:
        return max(0, self.end_index - self.start_index + 1)

    def indices(self) -> range:
        return range(self.start_index, self.end_index + 1)


class RowHeightIndex:
    """Prefix sums of variable row heights for O(log N) offset lookups."""

    def __init__(self, heights: Iterable[float]) -> None:
        self._tops: list[float] = [0.0]
        self._tops.extend(itertools.accumulate(float(h) for h in heights))
        if any(b < a for a, b in zip(self._tops, self._tops[1:])):
            raise ValueError("Row heights must not be negative")

    @classmethod
    def from_callable(cls, row_count: int, height_of: Callable[[int], float]) -> "RowHeightIndex":
        return cls(height_of(i) for i in range(row_count))

    def __len__(self) -> int:
        return len(self._tops) - 1

    @property
    def total_height(self) -> float:
        return self._tops[-1]

    def top(self, index: int) -> float:
        """Pixel offset of the top edge of row *index*."""
        return self._tops[index]

    def index_at(self, offset: float) -> int:
        """Index of the row covering pixel *offset*."""
        return min(len(self) - 1, max(0, bisect.bisect_right(self._tops, offset) - 1))

    def last_index_before(self, offset: float) -> int:
        """Index of the last row whose top edge is above *offset*."""
        return bisect.bisect_left(self._tops, offset) - 1


def compute_window(
    row_count: int,
    row_height: float | RowHeightIndex | Callable[[int], float],
    scroll_offset: float,
    viewport_height: float,
    overscan: int = _DEFAULT_OVERSCAN,
) -> ViewportRange:
    """Compute the rows to render for a viewport.

    The scroll offset is clamped to ``[0, max(0, total - viewport)]``.
    The result covers every row intersecting ``[offset, offset +
    viewport)`` plus *overscan* rows on each side, clamped to the
    available rows.

    Args:
        row_count: Number of display rows.
        row_height: A fixed height, a :class:`RowHeightIndex`, or a
            callable returning the height of row ``i``.
        scroll_offset: Current scroll position in pixels.
        viewport_height: Visible height in pixels.
        overscan: Extra rows rendered above and below.

    Raises:
        ValueError: If *row_count*, *viewport_height* or *overscan* is
            negative, or a fixed *row_height* is not positive.
    """
    if row_count < 0:
        raise ValueError(f"row_count must not be negative, got {row_count}")
    if viewport_height < 0:
        raise ValueError(f"viewport_height must not be negative, got {viewport_height}")
    if overscan < 0:
        raise ValueError(f"overscan must not be negative, got {overscan}")

    if callable(row_height) and not isinstance(row_height, RowHeightIndex):
        row_height = RowHeightIndex.from_callable(row_count, row_height)

    if isinstance(row_height, RowHeightIndex):
        if len(row_height) != row_count:
            raise ValueError(
                f"Row height index covers {len(row_height)} rows but row_count is {row_count}"
            )
        total = row_height.total_height
    else:
        if row_height <= 0:
            raise ValueError(f"row_height must be positive, got {row_height}")
        total = row_count * row_height

    if row_count == 0:
        return ViewportRange(start_index=0, end_index=-1, offset_y=0.0, total_height=0.0)

    offset = min(max(0.0, float(scroll_offset)), max(0.0, total - viewport_height))
    bottom = offset + viewport_height

    if isinstance(row_height, RowHeightIndex):
        first = row_height.index_at(offset)
        last = max(first, row_height.last_index_before(bottom))
    else:
        first = min(row_count - 1, int(offset // row_height))
        last = max(first, math.ceil(bottom / row_height) - 1)

    start = max(0, first - overscan)
    end = min(row_count - 1, last + overscan)
    offset_y = row_height.top(start) if isinstance(row_height, RowHeightIndex) else start * row_height
    return ViewportRange(start_index=start, end_index=end, offset_y=float(offset_y), total_height=float(total))
