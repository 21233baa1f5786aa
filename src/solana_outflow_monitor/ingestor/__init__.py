"""Ingestion layer - Solana logs subscription."""

from solana_outflow_monitor.ingestor.models import LogsNotification, StreamFailureEvent
from solana_outflow_monitor.ingestor.websocket import LogsStreamHandler, StreamState

__all__ = [
    "LogsNotification",
    "LogsStreamHandler",
    "StreamFailureEvent",
    "StreamState",
]
