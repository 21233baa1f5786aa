"""Amount range parsing and matching.

Ranges are inclusive on both ends and always evaluated in declaration order,
so an amount covered by several overlapping ranges resolves to the first one
configured.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

RANGE_SEPARATOR = ","
BOUND_SEPARATOR = "-"


class RangeParseError(ValueError):
    """Base exception for range string parsing errors."""


class InvalidRangeFormat(RangeParseError):
    """Raised when a range bound is missing or non-numeric."""


class InvalidRangeBounds(RangeParseError):
    """Raised when a range has min > max."""


@dataclass(frozen=True)
class Range:
    """Inclusive amount interval in whole native-token units."""

    min: float
    max: float

    def __post_init__(self) -> None:
        if self.min > self.max:
            raise InvalidRangeBounds(f"Invalid range: min ({self.min}) > max ({self.max})")

    def contains(self, amount: float) -> bool:
        return self.min <= amount <= self.max

    def __str__(self) -> str:
        return f"{self.min:g}-{self.max:g}"


def _parse_bound(raw: str, *, source: str) -> float:
    try:
        value = float(raw)
    except ValueError as e:
        raise InvalidRangeFormat(f"Invalid range format: {source}") from e
    if math.isnan(value) or math.isinf(value):
        raise InvalidRangeFormat(f"Invalid range format: {source}")
    return value


def parse_range(range_str: str) -> Range:
    """Parse a single ``min-max`` string into a Range.

    Raises:
        InvalidRangeFormat: If either bound is missing or non-numeric.
        InvalidRangeBounds: If min > max.
    """
    text = range_str.strip()
    parts = text.split(BOUND_SEPARATOR)
    if len(parts) != 2:
        raise InvalidRangeFormat(f"Invalid range format: {text}")
    low = _parse_bound(parts[0].strip(), source=text)
    high = _parse_bound(parts[1].strip(), source=text)
    return Range(min=low, max=high)


def parse_range_string(range_str: str) -> tuple[Range, ...]:
    """Parse ``"13-15,14-26,29-31"`` into ranges, preserving declaration order."""
    if not range_str or not range_str.strip():
        raise InvalidRangeFormat("Invalid range format: empty range string")
    return tuple(parse_range(part) for part in range_str.split(RANGE_SEPARATOR))


def matches(amount: float, ranges: Sequence[Range]) -> bool:
    """Return True if amount falls inside any of the ranges."""
    return any(r.contains(amount) for r in ranges)


def first_match(amount: float, ranges: Sequence[Range]) -> Range | None:
    """Return the first range (declaration order) containing amount."""
    for r in ranges:
        if r.contains(amount):
            return r
    return None
