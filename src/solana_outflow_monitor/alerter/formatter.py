"""Alert message formatter.

Transforms DetectionEvents and stream failures into human-readable text for
console-style channels.
"""

from __future__ import annotations

from typing import Literal

from solana_outflow_monitor.detector.models import DetectionEvent
from solana_outflow_monitor.ingestor.models import StreamFailureEvent
from solana_outflow_monitor.profiler.transaction import short_address

SOLSCAN_TX_URL = "https://solscan.io/tx/{signature}"
SOLSCAN_ACCOUNT_URL = "https://solscan.io/account/{address}"

BANNER = "═" * 59


def format_sol(amount: float) -> str:
    return f"{amount:,.2f} SOL"


class AlertFormatter:
    """Formats DetectionEvents into alert text.

    Supports two verbosity levels:
    - compact: one line per detection
    - detailed: the full alert banner
    """

    def __init__(self, verbosity: Literal["compact", "detailed"] = "detailed") -> None:
        self.verbosity = verbosity

    def build_links(self, event: DetectionEvent) -> dict[str, str]:
        links = {
            "transaction": SOLSCAN_TX_URL.format(signature=event.signature),
            "recipient": SOLSCAN_ACCOUNT_URL.format(address=event.recipient_address),
        }
        if event.scrutiny_result.previous_inflow_signature:
            links["previous_transaction"] = SOLSCAN_TX_URL.format(
                signature=event.scrutiny_result.previous_inflow_signature
            )
        return links

    def format_compact(self, event: DetectionEvent) -> str:
        return (
            f"[{event.wallet_label}] Outgoing {format_sol(event.outgoing_amount)} → "
            f"{short_address(event.recipient_address)} "
            f"({event.condition.value}, alert={'yes' if event.alert_triggered else 'no'})"
        )

    def format_plain_text(self, event: DetectionEvent) -> str:
        if self.verbosity == "compact":
            return self.format_compact(event)

        result = event.scrutiny_result
        lines = [
            BANNER,
            "🚨 DETECTION ALERT 🚨",
            BANNER,
            f"[{event.wallet_label}] Outgoing {format_sol(event.outgoing_amount)} → "
            f"{short_address(event.recipient_address)}",
            f"Signature: {short_address(event.signature, 8)}",
            f"Matched Range: {event.matched_range} SOL",
            f"Previous Deposit: {result.explanation}",
            f"Alert Triggered: {'✅ YES' if result.alert_triggered else '❌ NO'}",
            f"Condition: {result.condition.value}",
        ]
        if result.previous_inflow_signature:
            lines.append(f"Previous Tx: {short_address(result.previous_inflow_signature)}")
        links = self.build_links(event)
        lines.append(f"Explorer: {links['transaction']}")
        lines.append(BANNER)
        return "\n".join(lines)

    def format_failure(self, failure: StreamFailureEvent) -> str:
        return (
            f"⚠️ Logs stream stopped after {failure.attempts} reconnect attempt(s) "
            f"to {failure.endpoint}: {failure.last_error or 'unknown error'}"
        )
