"""Data models for the detector module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from solana_outflow_monitor.detector.ranges import Range


@dataclass(frozen=True)
class WalletWatch:
    """A monitored exchange wallet and the outflow ranges worth alerting on.

    Attributes:
        label: Display label (e.g. exchange name).
        address: Base58 wallet address.
        ranges: Inclusive amount ranges in declaration order.
    """

    label: str
    address: str
    ranges: tuple[Range, ...]


class ScrutinyCondition(str, Enum):
    """Outcome of the one-hop recipient history check."""

    LOOP_DETECTED = "LOOP_DETECTED"
    FIRST_TIME_ACTIVITY = "FIRST_TIME_ACTIVITY"
    NONE = "NONE"


@dataclass(frozen=True)
class ScrutinyResult:
    """Verdict produced by the ScrutinyValidator.

    Attributes:
        condition: Which scrutiny condition applied.
        alert_triggered: Whether the condition warrants an alert.
        explanation: Human-readable reasoning or diagnostic.
        previous_inflow_source: Source of the recipient's prior inflow, if found.
        previous_inflow_signature: Signature of the recipient's prior transaction.
    """

    condition: ScrutinyCondition
    alert_triggered: bool
    explanation: str
    previous_inflow_source: str | None = None
    previous_inflow_signature: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "condition": self.condition.value,
            "alert_triggered": self.alert_triggered,
            "explanation": self.explanation,
            "previous_inflow_source": self.previous_inflow_source,
            "previous_inflow_signature": self.previous_inflow_signature,
        }


@dataclass(frozen=True)
class DetectionEvent:
    """A range-matched outflow from a watched wallet, with its scrutiny verdict.

    One event is tied to exactly one signature and one WalletWatch.
    """

    signature: str
    wallet_label: str
    wallet_address: str
    recipient_address: str
    outgoing_amount: float
    matched_range: Range
    scrutiny_result: ScrutinyResult
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def alert_triggered(self) -> bool:
        return self.scrutiny_result.alert_triggered

    @property
    def condition(self) -> ScrutinyCondition:
        return self.scrutiny_result.condition

    def to_dict(self) -> dict[str, object]:
        """Serialize to a JSON-friendly dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "signature": self.signature,
            "wallet_label": self.wallet_label,
            "wallet_address": self.wallet_address,
            "recipient_address": self.recipient_address,
            "outgoing_amount": self.outgoing_amount,
            "matched_range": {"min": self.matched_range.min, "max": self.matched_range.max},
            "scrutiny_result": self.scrutiny_result.to_dict(),
        }
