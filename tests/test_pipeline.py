"""Tests for the detection coordinator."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import (
    CEX_ADDRESS,
    PREVIOUS_SIGNATURE,
    RECIPIENT_ADDRESS,
    THIRD_PARTY_ADDRESS,
    TRIGGER_SIGNATURE,
    build_raw_transaction,
    sol,
)

from solana_outflow_monitor.alerter.dispatcher import DispatchResult
from solana_outflow_monitor.config import ConfigurationError, Settings
from solana_outflow_monitor.detector.models import ScrutinyCondition, WalletWatch
from solana_outflow_monitor.detector.ranges import Range
from solana_outflow_monitor.ingestor.models import LogsNotification, StreamFailureEvent
from solana_outflow_monitor.pipeline import CoordinatorState, DetectionCoordinator

SECOND_CEX_ADDRESS = "SecondCex11111111111111111111111111111111111"


@pytest.fixture
def mock_settings():
    """Create mock settings for testing."""
    rpc = MagicMock()
    rpc.endpoint = "https://rpc.example"
    rpc.fallback_endpoint = None
    rpc.websocket_url = "wss://rpc.example"
    rpc.commitment = "confirmed"
    rpc.max_requests_per_second = 10.0
    rpc.max_retries = 3
    rpc.request_timeout_seconds = 30.0

    stream = MagicMock()
    stream.reconnect_base_delay_ms = 3000
    stream.max_reconnect_attempts = 10
    stream.ping_interval_seconds = 30

    detection = MagicMock()
    detection.deduplicate_signatures = False
    detection.dedup_ttl_seconds = 600
    detection.dedup_max_signatures = 100
    detection.max_concurrent_notifications = 4
    detection.shutdown_timeout_seconds = 1.0

    settings = MagicMock(spec=Settings)
    settings.rpc = rpc
    settings.stream = stream
    settings.detection = detection
    settings.dry_run = False
    return settings


@pytest.fixture
def mock_client(outflow_transaction):
    """RPC client whose recipient has no history."""
    client = MagicMock()
    client.get_parsed_transaction = AsyncMock(return_value=outflow_transaction)
    client.get_signatures_for_address = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client


@pytest.fixture
def mock_dispatcher():
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value=DispatchResult(success_count=1, failure_count=0))
    dispatcher.dispatch_failure = AsyncMock(return_value=DispatchResult(success_count=1, failure_count=0))
    return dispatcher


@pytest.fixture
def coordinator(mock_settings, mock_client, mock_dispatcher, cex_wallet):
    return DetectionCoordinator(
        mock_settings,
        wallets=[cex_wallet],
        client=mock_client,
        dispatcher=mock_dispatcher,
    )


@pytest.fixture
def stream_cls():
    """Patch the logs stream so start() never opens a socket."""
    with patch("solana_outflow_monitor.pipeline.LogsStreamHandler") as cls:
        cls.return_value.start = AsyncMock()
        cls.return_value.stop = AsyncMock()
        yield cls


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


class TestCoordinatorInit:
    """Tests for coordinator construction."""

    def test_requires_wallets(self, mock_settings, mock_client) -> None:
        with pytest.raises(ConfigurationError):
            DetectionCoordinator(mock_settings, wallets=[], client=mock_client)

    def test_initial_state(self, coordinator, cex_wallet) -> None:
        assert coordinator.state == CoordinatorState.STOPPED
        assert coordinator.wallets == (cex_wallet,)
        assert coordinator.stats.notifications_received == 0
        assert not coordinator.is_running

    @pytest.mark.asyncio
    async def test_notification_without_client(self, mock_settings, cex_wallet) -> None:
        coordinator = DetectionCoordinator(mock_settings, wallets=[cex_wallet])

        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []
        assert coordinator.stats.errors == 1
        assert "no RPC client" in coordinator.stats.last_error

class TestOnNotification:
    """Tests for per-notification detection."""

    @pytest.mark.asyncio
    async def test_first_time_recipient_emits_one_event(self, coordinator, mock_client, mock_dispatcher) -> None:
        events = await coordinator.on_notification(TRIGGER_SIGNATURE, ["Program log: transfer"])

        assert len(events) == 1
        event = events[0]
        assert event.signature == TRIGGER_SIGNATURE
        assert event.wallet_label == "Binance"
        assert event.wallet_address == CEX_ADDRESS
        assert event.recipient_address == RECIPIENT_ADDRESS
        assert event.outgoing_amount == pytest.approx(14.2, abs=1e-4)
        assert event.matched_range == Range(10, 20)
        assert event.condition == ScrutinyCondition.FIRST_TIME_ACTIVITY
        assert event.alert_triggered is True

        mock_client.get_parsed_transaction.assert_awaited_once_with(TRIGGER_SIGNATURE)
        mock_client.get_signatures_for_address.assert_awaited_once_with(RECIPIENT_ADDRESS, limit=1)
        mock_dispatcher.dispatch.assert_awaited_once_with(event)
        assert coordinator.stats.detections_emitted == 1
        assert coordinator.stats.alerts_sent == 1
        assert coordinator.stats.notifications_processed == 1

    @pytest.mark.asyncio
    async def test_loop_back_recipient(self, coordinator, mock_client, outflow_transaction) -> None:
        previous = build_raw_transaction(
            [CEX_ADDRESS, RECIPIENT_ADDRESS],
            [sol(600), 0],
            [sol(597), sol(3)],
            signature=PREVIOUS_SIGNATURE,
        )
        transactions = {TRIGGER_SIGNATURE: outflow_transaction, PREVIOUS_SIGNATURE: previous}
        mock_client.get_parsed_transaction = AsyncMock(side_effect=lambda sig: transactions[sig])
        mock_client.get_signatures_for_address = AsyncMock(return_value=[{"signature": PREVIOUS_SIGNATURE}])

        (event,) = await coordinator.on_notification(TRIGGER_SIGNATURE)

        assert event.condition == ScrutinyCondition.LOOP_DETECTED
        assert event.scrutiny_result.previous_inflow_source == CEX_ADDRESS
        assert event.scrutiny_result.explanation == "Binance → Recipient → Binance (Loop detected)"

    @pytest.mark.asyncio
    async def test_non_alerting_verdict_is_still_emitted(self, coordinator, mock_client, mock_dispatcher) -> None:
        mock_client.get_signatures_for_address = AsyncMock(return_value=[{"signature": PREVIOUS_SIGNATURE}])
        mock_client.get_parsed_transaction = AsyncMock(
            side_effect=[
                build_raw_transaction(
                    [CEX_ADDRESS, RECIPIENT_ADDRESS],
                    [sol(500), 0],
                    [sol(485.8), sol(14.2)],
                ),
                None,
            ]
        )

        (event,) = await coordinator.on_notification(TRIGGER_SIGNATURE)

        assert event.condition == ScrutinyCondition.NONE
        assert event.alert_triggered is False
        mock_dispatcher.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_amount_outside_ranges(self, mock_settings, mock_client, mock_dispatcher) -> None:
        wallet = WalletWatch(label="Binance", address=CEX_ADDRESS, ranges=(Range(100, 200),))
        coordinator = DetectionCoordinator(
            mock_settings, wallets=[wallet], client=mock_client, dispatcher=mock_dispatcher
        )

        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []
        mock_client.get_signatures_for_address.assert_not_awaited()
        mock_dispatcher.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_wallet_not_in_transaction(self, mock_settings, mock_client, mock_dispatcher) -> None:
        wallet = WalletWatch(label="Other", address=THIRD_PARTY_ADDRESS, ranges=(Range(0, 1000),))
        coordinator = DetectionCoordinator(
            mock_settings, wallets=[wallet], client=mock_client, dispatcher=mock_dispatcher
        )

        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []
        assert coordinator.stats.notifications_processed == 1

    @pytest.mark.asyncio
    async def test_inflow_to_watched_wallet_is_ignored(self, mock_settings, mock_client, mock_dispatcher) -> None:
        wallet = WalletWatch(label="Deposit", address=RECIPIENT_ADDRESS, ranges=(Range(10, 20),))
        coordinator = DetectionCoordinator(
            mock_settings, wallets=[wallet], client=mock_client, dispatcher=mock_dispatcher
        )

        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []

    @pytest.mark.asyncio
    async def test_unresolved_recipient(self, coordinator, mock_client) -> None:
        mock_client.get_parsed_transaction = AsyncMock(
            return_value=build_raw_transaction(
                [CEX_ADDRESS, RECIPIENT_ADDRESS, THIRD_PARTY_ADDRESS],
                [sol(500), 0, 0],
                [sol(486), sol(7), sol(7)],
            )
        )

        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []
        mock_client.get_signatures_for_address.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unavailable_transaction_is_skipped(self, coordinator, mock_client) -> None:
        mock_client.get_parsed_transaction = AsyncMock(return_value=None)

        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []
        assert coordinator.stats.notifications_skipped == 1

    @pytest.mark.asyncio
    async def test_every_involved_wallet_is_evaluated(
        self, mock_settings, mock_client, mock_dispatcher, cex_wallet
    ) -> None:
        second = WalletWatch(label="Coinbase", address=SECOND_CEX_ADDRESS, ranges=(Range(40, 60),))
        mock_client.get_parsed_transaction = AsyncMock(
            return_value=build_raw_transaction(
                [CEX_ADDRESS, RECIPIENT_ADDRESS, SECOND_CEX_ADDRESS, THIRD_PARTY_ADDRESS],
                [sol(500), 0, sol(100), 0],
                [sol(485.8), sol(14.2), sol(50), sol(50)],
            )
        )
        coordinator = DetectionCoordinator(
            mock_settings, wallets=[cex_wallet, second], client=mock_client, dispatcher=mock_dispatcher
        )

        events = await coordinator.on_notification(TRIGGER_SIGNATURE)

        assert {(e.wallet_label, e.recipient_address) for e in events} == {
            ("Binance", RECIPIENT_ADDRESS),
            ("Coinbase", THIRD_PARTY_ADDRESS),
        }
        mock_client.get_parsed_transaction.assert_awaited_once()
        assert mock_dispatcher.dispatch.await_count == 2

    @pytest.mark.asyncio
    async def test_redelivery_is_processed_again(self, coordinator, mock_dispatcher) -> None:
        await coordinator.on_notification(TRIGGER_SIGNATURE)
        await coordinator.on_notification(TRIGGER_SIGNATURE)

        assert mock_dispatcher.dispatch.await_count == 2

    @pytest.mark.asyncio
    async def test_redelivery_skipped_with_deduplication(
        self, mock_settings, mock_client, mock_dispatcher, cex_wallet
    ) -> None:
        mock_settings.detection.deduplicate_signatures = True
        coordinator = DetectionCoordinator(
            mock_settings, wallets=[cex_wallet], client=mock_client, dispatcher=mock_dispatcher
        )

        await coordinator.on_notification(TRIGGER_SIGNATURE)
        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []

        assert coordinator.stats.duplicates_skipped == 1
        mock_client.get_parsed_transaction.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redelivery_after_unavailable_transaction_is_processed(
        self, mock_settings, mock_client, mock_dispatcher, cex_wallet, outflow_transaction
    ) -> None:
        mock_settings.detection.deduplicate_signatures = True
        mock_client.get_parsed_transaction = AsyncMock(side_effect=[None, outflow_transaction])
        coordinator = DetectionCoordinator(
            mock_settings, wallets=[cex_wallet], client=mock_client, dispatcher=mock_dispatcher
        )

        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []
        events = await coordinator.on_notification(TRIGGER_SIGNATURE)

        assert len(events) == 1
        assert coordinator.stats.duplicates_skipped == 0
        mock_dispatcher.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_redelivery_after_failed_evaluation_is_processed(
        self, mock_settings, mock_client, mock_dispatcher, cex_wallet
    ) -> None:
        mock_settings.detection.deduplicate_signatures = True
        mock_dispatcher.dispatch = AsyncMock(
            side_effect=[RuntimeError("channel down"), DispatchResult(success_count=1, failure_count=0)]
        )
        coordinator = DetectionCoordinator(
            mock_settings, wallets=[cex_wallet], client=mock_client, dispatcher=mock_dispatcher
        )

        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []
        assert len(await coordinator.on_notification(TRIGGER_SIGNATURE)) == 1

        # A cleanly processed signature is remembered from then on.
        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []
        assert coordinator.stats.duplicates_skipped == 1

    @pytest.mark.asyncio
    async def test_dry_run_does_not_dispatch(self, mock_settings, mock_client, mock_dispatcher, cex_wallet) -> None:
        coordinator = DetectionCoordinator(
            mock_settings,
            wallets=[cex_wallet],
            client=mock_client,
            dispatcher=mock_dispatcher,
            dry_run=True,
        )

        events = await coordinator.on_notification(TRIGGER_SIGNATURE)

        assert len(events) == 1
        mock_dispatcher.dispatch.assert_not_awaited()
        assert coordinator.stats.detections_emitted == 1

    @pytest.mark.asyncio
    async def test_dispatch_error_is_contained(self, coordinator, mock_dispatcher) -> None:
        mock_dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("channel down"))

        assert await coordinator.on_notification(TRIGGER_SIGNATURE) == []
        assert coordinator.stats.errors == 1
        assert coordinator.stats.last_error == "channel down"


class TestCoordinatorLifecycle:
    """Tests for start/stop and stream integration."""

    @pytest.mark.asyncio
    async def test_start_wires_stream(self, coordinator, stream_cls, mock_client) -> None:
        await coordinator.start()
        assert coordinator.state == CoordinatorState.RUNNING

        kwargs = stream_cls.call_args.kwargs
        assert kwargs["host"] == "wss://rpc.example"
        assert kwargs["mentions"] == [CEX_ADDRESS]
        assert kwargs["reconnect_base_delay_ms"] == 3000
        assert kwargs["max_reconnect_attempts"] == 10

        await coordinator.stop()
        assert coordinator.state == CoordinatorState.STOPPED
        stream_cls.return_value.stop.assert_awaited_once()
        mock_client.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, coordinator, stream_cls) -> None:
        await coordinator.start()
        with pytest.raises(RuntimeError):
            await coordinator.start()
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_queued_notification_is_processed(self, coordinator, stream_cls, mock_dispatcher) -> None:
        async with coordinator:
            queue = stream_cls.call_args.kwargs["queue"]
            await queue.put(LogsNotification(signature=TRIGGER_SIGNATURE, logs=("Program log",)))
            await asyncio.wait_for(queue.join(), timeout=2.0)

        mock_dispatcher.dispatch.assert_awaited_once()
        assert coordinator.stats.detections_emitted == 1

    @pytest.mark.asyncio
    async def test_stream_failure_stops_with_error(self, coordinator, stream_cls, mock_dispatcher) -> None:
        task = asyncio.create_task(coordinator.run())
        await _wait_until(lambda: coordinator.state == CoordinatorState.RUNNING)

        failure = StreamFailureEvent(attempts=10, last_error="refused", endpoint="wss://rpc.example")
        await stream_cls.call_args.kwargs["on_failure"](failure)
        await asyncio.wait_for(task, timeout=2.0)

        assert coordinator.state == CoordinatorState.ERROR
        assert coordinator.stream_failure is failure
        assert "refused" in coordinator.stats.last_error
        mock_dispatcher.dispatch_failure.assert_awaited_once_with(failure)

    @pytest.mark.asyncio
    async def test_stop_abandons_slow_notifications(
        self, mock_settings, mock_client, mock_dispatcher, cex_wallet, stream_cls
    ) -> None:
        mock_settings.detection.shutdown_timeout_seconds = 0.05
        started = asyncio.Event()

        async def slow_fetch(signature):
            started.set()
            await asyncio.sleep(30)

        mock_client.get_parsed_transaction = AsyncMock(side_effect=slow_fetch)
        coordinator = DetectionCoordinator(
            mock_settings, wallets=[cex_wallet], client=mock_client, dispatcher=mock_dispatcher
        )

        await coordinator.start()
        queue = stream_cls.call_args.kwargs["queue"]
        await queue.put(LogsNotification(signature=TRIGGER_SIGNATURE, logs=()))
        await asyncio.wait_for(started.wait(), timeout=2.0)

        await asyncio.wait_for(coordinator.stop(), timeout=2.0)

        assert coordinator.state == CoordinatorState.STOPPED
        mock_dispatcher.dispatch.assert_not_awaited()
