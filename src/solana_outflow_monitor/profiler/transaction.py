"""Balance-diff analysis of parsed Solana transactions.

Turns a raw ``getTransaction`` (jsonParsed) record into per-account transfer
facts, and pairs senders with recipients by amount matching.

Sign convention: ``delta_lamports = preBalance - postBalance``. A positive
delta is an outflow from the account, a negative delta is an inflow.

Known limitation: sender/recipient pairing is an amount-equality heuristic.
When several accounts receive the same amount within the tolerance (e.g. a
transaction splitting funds into identical parts), only the first one in
account-list order is selected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from solana_outflow_monitor.profiler.chain import SolanaClient, SolanaClientError

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
ZERO_LAMPORTS = 0

# Absolute tolerance (in SOL) for pairing an outflow with an inflow.
AMOUNT_MATCH_TOLERANCE = 0.0001

UNRESOLVED_COUNTERPARTY = "multiple"
UNKNOWN_SOURCE = "UNKNOWN"


class TransactionParseError(Exception):
    """Raised when a transaction record is structurally malformed."""


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def short_address(address: str, chars: int = 4) -> str:
    """Shorten an address or signature to ``abcd...wxyz`` form."""
    if len(address) <= chars * 2 + 3:
        return address
    return f"{address[:chars]}...{address[-chars:]}"


@dataclass(frozen=True)
class TransferFact:
    """Native balance change of one account within one transaction.

    Attributes:
        account: Account address.
        index: Position of the account in the transaction's account list.
        delta_lamports: preBalance - postBalance (positive = outflow).
    """

    account: str
    index: int
    delta_lamports: int

    @property
    def is_outflow(self) -> bool:
        return self.delta_lamports > 0

    @property
    def is_inflow(self) -> bool:
        return self.delta_lamports < 0

    @property
    def amount(self) -> float:
        """Absolute transferred amount in SOL."""
        return lamports_to_sol(abs(self.delta_lamports))

    @property
    def sender(self) -> str:
        return self.account if self.is_outflow else UNRESOLVED_COUNTERPARTY

    @property
    def recipient(self) -> str:
        return self.account if self.is_inflow else UNRESOLVED_COUNTERPARTY


@dataclass(frozen=True)
class TransactionAnalysis:
    """Structured balance facts for a single transaction.

    Built fresh for every processed notification and never mutated.
    """

    signature: str
    block_time: int | None
    account_addresses: tuple[str, ...]
    balance_deltas: tuple[int, ...]
    transfer_facts: tuple[TransferFact, ...]

    @property
    def outgoing_transfers(self) -> tuple[TransferFact, ...]:
        return tuple(f for f in self.transfer_facts if f.is_outflow)

    @property
    def incoming_transfers(self) -> tuple[TransferFact, ...]:
        return tuple(f for f in self.transfer_facts if f.is_inflow)

    def account_index(self, address: str) -> int | None:
        try:
            return self.account_addresses.index(address)
        except ValueError:
            return None

    def involves(self, address: str) -> bool:
        return address in self.account_addresses

    def outgoing_amount(self, index: int) -> float:
        """Outflow in SOL for the account at index (negative for an inflow)."""
        return lamports_to_sol(self.balance_deltas[index])

    def inflow_amount(self, index: int) -> float:
        """Inflow in SOL for the account at index (negative for an outflow)."""
        return lamports_to_sol(-self.balance_deltas[index])

    def find_recipient(self, sender_index: int, amount: float) -> str | None:
        """Resolve the recipient of an outflow by amount matching.

        Scans every other account in address-list order and returns the first
        whose inflow equals ``amount`` within AMOUNT_MATCH_TOLERANCE.
        """
        for i, address in enumerate(self.account_addresses):
            if i == sender_index:
                continue
            if abs(self.inflow_amount(i) - amount) < AMOUNT_MATCH_TOLERANCE:
                return address
        return None

    def find_inflow_source(self, recipient_index: int) -> str | None:
        """Resolve the sender of an inflow by amount matching.

        Returns None when the account at recipient_index had no inflow, and
        UNKNOWN_SOURCE when an inflow exists but no account lost an equal
        amount.
        """
        inflow = self.inflow_amount(recipient_index)
        if inflow <= 0:
            return None
        for i, address in enumerate(self.account_addresses):
            if i == recipient_index:
                continue
            outflow = self.outgoing_amount(i)
            if outflow > 0 and abs(outflow - inflow) < AMOUNT_MATCH_TOLERANCE:
                return address
        return UNKNOWN_SOURCE


def _account_key_to_address(entry: Any) -> str:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        pubkey = entry.get("pubkey")
        if isinstance(pubkey, str):
            return pubkey
    raise TransactionParseError(f"Unrecognized account key entry: {entry!r}")


def extract_account_addresses(raw_transaction: dict[str, Any]) -> tuple[str, ...]:
    """Return the ordered account address list of a raw transaction.

    Entries may be plain base58 strings or jsonParsed ``{"pubkey": ...}`` objects.
    """
    try:
        keys = raw_transaction["transaction"]["message"]["accountKeys"]
    except (KeyError, TypeError) as e:
        raise TransactionParseError("Transaction has no account keys") from e
    return tuple(_account_key_to_address(k) for k in keys or [])


def _balance_at(balances: list[Any], index: int) -> int:
    # Missing entries are the zero balance by contract.
    if index >= len(balances) or balances[index] is None:
        return ZERO_LAMPORTS
    return int(balances[index])


def compute_balance_deltas(
    addresses: tuple[str, ...],
    meta: dict[str, Any],
) -> tuple[int, ...]:
    """Compute preBalance - postBalance for each address index."""
    pre = list(meta.get("preBalances") or [])
    post = list(meta.get("postBalances") or [])
    return tuple(_balance_at(pre, i) - _balance_at(post, i) for i in range(len(addresses)))


def analyze(
    raw_transaction: dict[str, Any] | None,
    signature: str | None = None,
) -> TransactionAnalysis | None:
    """Analyze a raw transaction record.

    Returns None when the record is missing or carries no metadata, which is
    normal for unconfirmed or pruned signatures.

    Raises:
        TransactionParseError: If the record is present but malformed.
    """
    if not raw_transaction:
        return None
    meta = raw_transaction.get("meta")
    if not meta:
        return None

    addresses = extract_account_addresses(raw_transaction)
    try:
        deltas = compute_balance_deltas(addresses, meta)
    except (TypeError, ValueError) as e:
        raise TransactionParseError(f"Invalid balance arrays: {e}") from e

    facts = tuple(
        TransferFact(account=address, index=i, delta_lamports=delta)
        for i, (address, delta) in enumerate(zip(addresses, deltas, strict=True))
        if delta != 0
    )

    if signature is None:
        sigs = (raw_transaction.get("transaction") or {}).get("signatures") or []
        signature = str(sigs[0]) if sigs else ""

    block_time = raw_transaction.get("blockTime")
    return TransactionAnalysis(
        signature=signature,
        block_time=int(block_time) if block_time is not None else None,
        account_addresses=addresses,
        balance_deltas=deltas,
        transfer_facts=facts,
    )


class TransactionAnalyzer:
    """Fetches transactions by signature and analyzes their balance changes.

    Example:
        ```python
        async with SolanaClient("https://api.mainnet-beta.solana.com") as client:
            analyzer = TransactionAnalyzer(client)
            analysis = await analyzer.analyze(signature)
            if analysis is not None:
                print(analysis.outgoing_transfers)
        ```
    """

    def __init__(self, client: SolanaClient) -> None:
        self._client = client

    async def analyze(self, signature: str) -> TransactionAnalysis | None:
        """Fetch and analyze a transaction.

        Returns None when the transaction cannot be located, has no metadata,
        or cannot be fetched or parsed. Failures are logged, never raised.
        """
        try:
            raw = await self._client.get_parsed_transaction(signature)
        except SolanaClientError as e:
            logger.warning("Failed to fetch transaction %s: %s", short_address(signature, 8), e)
            return None

        try:
            analysis = analyze(raw, signature)
        except TransactionParseError as e:
            logger.warning("Failed to parse transaction %s: %s", short_address(signature, 8), e)
            return None

        if analysis is None:
            logger.info("Transaction %s not found or has no metadata", short_address(signature, 8))
        return analysis
