"""Detection layer - range matching and recipient scrutiny."""

from solana_outflow_monitor.detector.models import (
    DetectionEvent,
    ScrutinyCondition,
    ScrutinyResult,
    WalletWatch,
)
from solana_outflow_monitor.detector.ranges import (
    InvalidRangeBounds,
    InvalidRangeFormat,
    Range,
    first_match,
    matches,
    parse_range_string,
)
from solana_outflow_monitor.detector.scrutiny import ScrutinyValidator

__all__ = [
    "DetectionEvent",
    "InvalidRangeBounds",
    "InvalidRangeFormat",
    "Range",
    "ScrutinyCondition",
    "ScrutinyResult",
    "ScrutinyValidator",
    "WalletWatch",
    "first_match",
    "matches",
    "parse_range_string",
]
