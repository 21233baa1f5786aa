"""Tests for alert dispatch."""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import CEX_ADDRESS, RECIPIENT_ADDRESS, TRIGGER_SIGNATURE

from solana_outflow_monitor.alerter.dispatcher import AlertDispatcher, LogChannel
from solana_outflow_monitor.detector.models import DetectionEvent, ScrutinyCondition, ScrutinyResult
from solana_outflow_monitor.detector.ranges import Range
from solana_outflow_monitor.ingestor.models import StreamFailureEvent


def _event(alert_triggered: bool) -> DetectionEvent:
    return DetectionEvent(
        signature=TRIGGER_SIGNATURE,
        wallet_label="Binance",
        wallet_address=CEX_ADDRESS,
        recipient_address=RECIPIENT_ADDRESS,
        outgoing_amount=14.2,
        matched_range=Range(10, 20),
        scrutiny_result=ScrutinyResult(
            condition=ScrutinyCondition.FIRST_TIME_ACTIVITY if alert_triggered else ScrutinyCondition.NONE,
            alert_triggered=alert_triggered,
            explanation="No previous transaction history found for recipient",
        ),
    )


def _channel(name: str, result=True) -> MagicMock:
    channel = MagicMock()
    channel.name = name
    if isinstance(result, Exception):
        channel.send = AsyncMock(side_effect=result)
        channel.send_failure = AsyncMock(side_effect=result)
    else:
        channel.send = AsyncMock(return_value=result)
        channel.send_failure = AsyncMock(return_value=result)
    return channel


class TestLogChannel:
    """Tests for the logging channel."""

    @pytest.mark.asyncio
    async def test_triggered_alert_logs_warning(self, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="solana_outflow_monitor.alerts"):
            assert await LogChannel().send(_event(alert_triggered=True))

        (record,) = caplog.records
        assert record.levelno == logging.WARNING
        assert "DETECTION ALERT" in record.getMessage()

    @pytest.mark.asyncio
    async def test_non_alert_logs_info(self, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="solana_outflow_monitor.alerts"):
            await LogChannel().send(_event(alert_triggered=False))

        (record,) = caplog.records
        assert record.levelno == logging.INFO

    @pytest.mark.asyncio
    async def test_failure_logs_error(self, caplog) -> None:
        failure = StreamFailureEvent(attempts=3, last_error="refused", endpoint="wss://rpc.example")
        with caplog.at_level(logging.INFO, logger="solana_outflow_monitor.alerts"):
            await LogChannel().send_failure(failure)

        (record,) = caplog.records
        assert record.levelno == logging.ERROR


class TestAlertDispatcher:
    """Tests for AlertDispatcher fan-out."""

    @pytest.mark.asyncio
    async def test_dispatch_to_all_channels(self) -> None:
        first, second = _channel("first"), _channel("second")
        event = _event(alert_triggered=True)

        result = await AlertDispatcher([first, second]).dispatch(event)

        assert result.success_count == 2
        assert result.all_succeeded
        first.send.assert_awaited_once_with(event)
        second.send.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_failing_channel_is_counted(self) -> None:
        channels = [_channel("ok"), _channel("broken", RuntimeError("down")), _channel("refused", False)]

        result = await AlertDispatcher(channels).dispatch(_event(alert_triggered=True))

        assert result.success_count == 1
        assert result.failure_count == 2
        assert not result.all_succeeded

    @pytest.mark.asyncio
    async def test_dispatch_failure(self) -> None:
        channel = _channel("ok")
        failure = StreamFailureEvent(attempts=10, last_error=None, endpoint="wss://rpc.example")

        result = await AlertDispatcher([channel]).dispatch_failure(failure)

        assert result.all_succeeded
        channel.send_failure.assert_awaited_once_with(failure)
