"""One-hop recipient history check.

The ScrutinyValidator looks at the single most recent transaction of a
recipient that was just paid by a watched wallet and decides whether the
payment is notable:

- Condition A (LOOP_DETECTED): the recipient's previous inflow came from the
  same watched wallet.
- Condition B (FIRST_TIME_ACTIVITY): the recipient has no history, or its
  previous transaction carries no inflow to it.
- Otherwise NONE, no alert.

It never looks further back than one transaction.
"""

from __future__ import annotations

import logging
from typing import Any

from solana_outflow_monitor.detector.models import ScrutinyCondition, ScrutinyResult
from solana_outflow_monitor.profiler.chain import SolanaClient
from solana_outflow_monitor.profiler.transaction import (
    UNKNOWN_SOURCE,
    analyze,
    short_address,
)

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 1


class ScrutinyValidator:
    """Classifies a recipient as loop-back, first-time or ordinary.

    Any transport or parse failure degrades to a NONE verdict carrying a
    diagnostic explanation; ``evaluate`` never raises.

    Example:
        ```python
        validator = ScrutinyValidator(client)
        result = await validator.evaluate(recipient, wallet.address, wallet.label)
        if result.alert_triggered:
            print(result.condition, result.explanation)
        ```
    """

    def __init__(self, client: SolanaClient) -> None:
        self._client = client

    async def evaluate(
        self,
        recipient_address: str,
        source_wallet_address: str,
        source_wallet_label: str,
        *,
        exclude_signature: str | None = None,
    ) -> ScrutinyResult:
        """Run the scrutiny check for a recipient.

        Args:
            recipient_address: Address that just received funds.
            source_wallet_address: Watched wallet that paid it.
            source_wallet_label: Display label of the watched wallet.
            exclude_signature: The triggering transaction, never used as history.

        Returns:
            The ScrutinyResult verdict.
        """
        try:
            return await self._evaluate(
                recipient_address,
                source_wallet_address,
                source_wallet_label,
                exclude_signature=exclude_signature,
            )
        except Exception as e:
            logger.warning(
                "Scrutiny check failed for recipient %s: %s",
                short_address(recipient_address),
                e,
            )
            return ScrutinyResult(
                condition=ScrutinyCondition.NONE,
                alert_triggered=False,
                explanation=f"Error during scrutiny check: {e}",
            )

    async def _latest_prior_signature(
        self,
        recipient_address: str,
        exclude_signature: str | None,
    ) -> str | None:
        signatures = await self._client.get_signatures_for_address(
            recipient_address,
            limit=HISTORY_LIMIT,
        )
        if signatures and exclude_signature and _signature_of(signatures[0]) == exclude_signature:
            # The triggering transaction is already visible; step past it.
            signatures = await self._client.get_signatures_for_address(
                recipient_address,
                limit=HISTORY_LIMIT,
                before=exclude_signature,
            )
        if not signatures:
            return None
        return _signature_of(signatures[0])

    async def _evaluate(
        self,
        recipient_address: str,
        source_wallet_address: str,
        source_wallet_label: str,
        *,
        exclude_signature: str | None,
    ) -> ScrutinyResult:
        previous_signature = await self._latest_prior_signature(recipient_address, exclude_signature)
        if previous_signature is None:
            return ScrutinyResult(
                condition=ScrutinyCondition.FIRST_TIME_ACTIVITY,
                alert_triggered=True,
                explanation="No previous transaction history found for recipient",
            )

        raw = await self._client.get_parsed_transaction(previous_signature)
        analysis = analyze(raw, previous_signature)
        if analysis is None:
            return ScrutinyResult(
                condition=ScrutinyCondition.NONE,
                alert_triggered=False,
                previous_inflow_signature=previous_signature,
                explanation="Could not parse previous transaction",
            )

        inflow_source: str | None = None
        index = analysis.account_index(recipient_address)
        if index is not None:
            inflow_source = analysis.find_inflow_source(index)

        if inflow_source is None:
            return ScrutinyResult(
                condition=ScrutinyCondition.FIRST_TIME_ACTIVITY,
                alert_triggered=True,
                previous_inflow_signature=previous_signature,
                explanation="No inflow detected in previous transaction",
            )

        if inflow_source == source_wallet_address:
            return ScrutinyResult(
                condition=ScrutinyCondition.LOOP_DETECTED,
                alert_triggered=True,
                previous_inflow_source=inflow_source,
                previous_inflow_signature=previous_signature,
                explanation=(
                    f"{source_wallet_label} → Recipient → {source_wallet_label} (Loop detected)"
                ),
            )

        source_display = inflow_source if inflow_source == UNKNOWN_SOURCE else short_address(inflow_source)
        return ScrutinyResult(
            condition=ScrutinyCondition.NONE,
            alert_triggered=False,
            previous_inflow_source=inflow_source,
            previous_inflow_signature=previous_signature,
            explanation=f"Previous inflow from {source_display}, no loop detected",
        )


def _signature_of(entry: Any) -> str:
    if isinstance(entry, dict):
        return str(entry["signature"])
    return str(entry)
