"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

import pytest

from solana_outflow_monitor.detector.models import WalletWatch
from solana_outflow_monitor.detector.ranges import Range
from solana_outflow_monitor.profiler.transaction import LAMPORTS_PER_SOL

CEX_ADDRESS = "CexWa11et1111111111111111111111111111111111"
RECIPIENT_ADDRESS = "Rec1pient111111111111111111111111111111111"
THIRD_PARTY_ADDRESS = "Th1rdParty11111111111111111111111111111111"
SYSTEM_PROGRAM = "11111111111111111111111111111111"

TRIGGER_SIGNATURE = "5" + "a" * 86
PREVIOUS_SIGNATURE = "4" + "b" * 86


def sol(amount: float) -> int:
    """Convert SOL to lamports for test fixtures."""
    return round(amount * LAMPORTS_PER_SOL)


def build_raw_transaction(
    accounts: Sequence[str],
    pre_balances: Sequence[int],
    post_balances: Sequence[int],
    *,
    signature: str = TRIGGER_SIGNATURE,
    block_time: int | None = 1_760_000_000,
    parsed_keys: bool = True,
    meta: bool = True,
) -> dict[str, Any]:
    """Build a jsonParsed getTransaction result."""
    keys: list[Any] = (
        [{"pubkey": a, "signer": i == 0, "writable": True} for i, a in enumerate(accounts)]
        if parsed_keys
        else list(accounts)
    )
    return {
        "blockTime": block_time,
        "slot": 123,
        "meta": (
            {
                "err": None,
                "fee": 5000,
                "preBalances": list(pre_balances),
                "postBalances": list(post_balances),
            }
            if meta
            else None
        ),
        "transaction": {
            "signatures": [signature],
            "message": {"accountKeys": keys},
        },
    }


@pytest.fixture
def make_transaction() -> Callable[..., dict[str, Any]]:
    """Factory for raw jsonParsed transactions."""
    return build_raw_transaction


@pytest.fixture
def cex_wallet() -> WalletWatch:
    """Sample watched wallet with a 10-20 SOL range."""
    return WalletWatch(label="Binance", address=CEX_ADDRESS, ranges=(Range(10, 20),))


@pytest.fixture
def outflow_transaction() -> dict[str, Any]:
    """CEX sends 14.2 SOL to the recipient and pays the fee."""
    return build_raw_transaction(
        [CEX_ADDRESS, RECIPIENT_ADDRESS, SYSTEM_PROGRAM],
        [sol(500), 0, 1],
        [sol(500) - sol(14.2) - 5000, sol(14.2), 1],
    )
