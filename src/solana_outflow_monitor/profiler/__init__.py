"""Profiling layer - RPC access and transaction balance analysis."""

from solana_outflow_monitor.profiler.chain import RPCError, SolanaClient, SolanaClientError
from solana_outflow_monitor.profiler.transaction import (
    TransactionAnalysis,
    TransactionAnalyzer,
    TransferFact,
)

__all__ = [
    "RPCError",
    "SolanaClient",
    "SolanaClientError",
    "TransactionAnalysis",
    "TransactionAnalyzer",
    "TransferFact",
]
