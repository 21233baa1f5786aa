"""Alerting layer - formatting and channel dispatch."""

from solana_outflow_monitor.alerter.dispatcher import AlertDispatcher, DispatchResult, LogChannel
from solana_outflow_monitor.alerter.formatter import AlertFormatter

__all__ = ["AlertDispatcher", "AlertFormatter", "DispatchResult", "LogChannel"]
