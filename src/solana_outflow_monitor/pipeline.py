"""Detection coordinator for the Solana outflow monitor.

This module provides the DetectionCoordinator class that wires together the
logs stream, transaction analysis, range matching and scrutiny validation,
and hands DetectionEvents to the alerting layer.

Pipeline flow:
    Logs Stream → Transaction Analyzer → Range Matcher → Recipient Resolution
    → Scrutiny Validator → Alert Dispatcher
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from cachetools import TTLCache

from solana_outflow_monitor.alerter.dispatcher import AlertChannel, AlertDispatcher, LogChannel
from solana_outflow_monitor.alerter.formatter import AlertFormatter
from solana_outflow_monitor.config import ConfigurationError, Settings, get_settings, load_wallet_watches
from solana_outflow_monitor.detector.models import DetectionEvent, WalletWatch
from solana_outflow_monitor.detector.ranges import first_match
from solana_outflow_monitor.detector.scrutiny import ScrutinyValidator
from solana_outflow_monitor.ingestor.models import LogsNotification, StreamFailureEvent
from solana_outflow_monitor.ingestor.websocket import LogsStreamHandler
from solana_outflow_monitor.profiler.chain import SolanaClient
from solana_outflow_monitor.profiler.transaction import (
    TransactionAnalysis,
    TransactionAnalyzer,
    short_address,
)

logger = logging.getLogger(__name__)


class CoordinatorState(str, Enum):
    """Coordinator lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class CoordinatorStats:
    """Statistics for the coordinator."""

    started_at: datetime | None = None
    notifications_received: int = 0
    notifications_processed: int = 0
    notifications_skipped: int = 0
    duplicates_skipped: int = 0
    detections_emitted: int = 0
    alerts_sent: int = 0
    errors: int = 0
    last_error: str | None = None


class DetectionCoordinator:
    """Orchestrates detection for every stream notification.

    Each notification is processed in its own task; several notifications may
    be in flight at once and their DetectionEvents can be emitted out of
    order. Redelivered notifications are processed again unless signature
    deduplication is enabled in the settings.

    Example:
        ```python
        from solana_outflow_monitor.config import get_settings
        from solana_outflow_monitor.pipeline import DetectionCoordinator

        coordinator = DetectionCoordinator(get_settings())
        await coordinator.run()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        wallets: Sequence[WalletWatch] | None = None,
        client: SolanaClient | None = None,
        dispatcher: AlertDispatcher | None = None,
        dry_run: bool | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            wallets: Watched wallets. If not provided, loaded from the environment.
            client: RPC client. If not provided, created in start().
            dispatcher: Alert dispatcher. If not provided, a log channel is used.
            dry_run: If True, skip alert channels. Overrides settings.dry_run.

        Raises:
            ConfigurationError: If no wallets are configured.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._wallets = tuple(wallets) if wallets is not None else load_wallet_watches()
        if not self._wallets:
            raise ConfigurationError("At least one wallet must be watched")

        self._state = CoordinatorState.STOPPED
        self._stats = CoordinatorStats()

        self._client = client
        self._owns_client = client is None
        self._analyzer: TransactionAnalyzer | None = None
        self._validator: ScrutinyValidator | None = None
        if client is not None:
            self._bind_client(client)
        self._dispatcher = dispatcher
        self._stream: LogsStreamHandler | None = None
        self._stream_failure: StreamFailureEvent | None = None

        detection = self._settings.detection
        self._seen_signatures: TTLCache[str, bool] | None = None
        if detection.deduplicate_signatures:
            self._seen_signatures = TTLCache(
                maxsize=detection.dedup_max_signatures,
                ttl=detection.dedup_ttl_seconds,
            )

        # Synchronization
        self._queue: asyncio.Queue[LogsNotification] = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(detection.max_concurrent_notifications)
        self._in_flight: set[asyncio.Task[Any]] = set()
        self._stop_event: asyncio.Event | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> CoordinatorState:
        """Current coordinator state."""
        return self._state

    @property
    def stats(self) -> CoordinatorStats:
        """Current coordinator statistics."""
        return self._stats

    @property
    def wallets(self) -> tuple[WalletWatch, ...]:
        return self._wallets

    @property
    def stream_failure(self) -> StreamFailureEvent | None:
        return self._stream_failure

    @property
    def is_running(self) -> bool:
        return self._state == CoordinatorState.RUNNING

    def _bind_client(self, client: SolanaClient) -> None:
        self._client = client
        self._analyzer = TransactionAnalyzer(client)
        self._validator = ScrutinyValidator(client)

    async def start(self) -> None:
        """Start the coordinator.

        Raises:
            RuntimeError: If the coordinator is already running.
        """
        if self._state != CoordinatorState.STOPPED:
            raise RuntimeError(f"Cannot start coordinator in state {self._state}")

        self._state = CoordinatorState.STARTING
        self._stop_event = asyncio.Event()
        self._stream_failure = None
        logger.info("Starting detection coordinator...")

        try:
            self._initialize_components()
            self._stream_task = asyncio.create_task(self._run_stream())
            self._consumer_task = asyncio.create_task(self._consume_notifications())
            self._stats.started_at = datetime.now(UTC)
            self._state = CoordinatorState.RUNNING
            logger.info("Detection coordinator started")
        except Exception as e:
            self._state = CoordinatorState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start coordinator: %s", e)
            await self._cleanup()
            raise

    def _initialize_components(self) -> None:
        settings = self._settings

        if self._client is None:
            logger.debug("Initializing Solana RPC client...")
            self._bind_client(
                SolanaClient(
                    settings.rpc.endpoint,
                    fallback_rpc_url=settings.rpc.fallback_endpoint,
                    commitment=settings.rpc.commitment,
                    max_requests_per_second=settings.rpc.max_requests_per_second,
                    max_retries=settings.rpc.max_retries,
                    timeout_seconds=settings.rpc.request_timeout_seconds,
                )
            )

        if self._dispatcher is None:
            channels: list[AlertChannel] = [LogChannel(AlertFormatter(verbosity="detailed"))]
            self._dispatcher = AlertDispatcher(channels)

        logger.info("Monitoring %d wallet(s):", len(self._wallets))
        for wallet in self._wallets:
            logger.info(
                "  - %s: %s (ranges: %s)",
                wallet.label,
                wallet.address,
                ", ".join(str(r) for r in wallet.ranges),
            )

        self._stream = LogsStreamHandler(
            host=settings.rpc.websocket_url,
            mentions=[w.address for w in self._wallets],
            queue=self._queue,
            on_failure=self._on_stream_failure,
            commitment=settings.rpc.commitment,
            reconnect_base_delay_ms=settings.stream.reconnect_base_delay_ms,
            max_reconnect_attempts=settings.stream.max_reconnect_attempts,
            ping_interval=settings.stream.ping_interval_seconds,
        )

    async def _run_stream(self) -> None:
        if not self._stream:
            return
        try:
            await self._stream.start()
        except asyncio.CancelledError:
            logger.debug("Logs stream task cancelled")
        except Exception as e:
            logger.error("Logs stream error: %s", e)
            self._stats.last_error = str(e)
            self._stats.errors += 1
            if self._stop_event:
                self._state = CoordinatorState.ERROR
                self._stop_event.set()

    async def _on_stream_failure(self, failure: StreamFailureEvent) -> None:
        self._stream_failure = failure
        self._stats.errors += 1
        self._stats.last_error = f"stream gave up after {failure.attempts} attempts: {failure.last_error}"
        logger.error("Logs stream failed permanently: %s", self._stats.last_error)
        if self._dispatcher:
            await self._dispatcher.dispatch_failure(failure)
        self._state = CoordinatorState.ERROR
        if self._stop_event:
            self._stop_event.set()

    async def _consume_notifications(self) -> None:
        while True:
            notification = await self._queue.get()
            await self._semaphore.acquire()
            task = asyncio.create_task(self._process_queued(notification))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _process_queued(self, notification: LogsNotification) -> None:
        try:
            await self.on_notification(notification.signature, notification.logs)
        finally:
            self._semaphore.release()
            self._queue.task_done()

    def _is_duplicate(self, signature: str) -> bool:
        if self._seen_signatures is None:
            return False
        if signature in self._seen_signatures:
            return True
        # Claimed while in flight so concurrent redeliveries are skipped too.
        self._seen_signatures[signature] = True
        return False

    def _forget(self, signature: str) -> None:
        """Release a claimed signature so a redelivery is processed again."""
        if self._seen_signatures is not None:
            self._seen_signatures.pop(signature, None)

    async def on_notification(self, signature: str, logs: Sequence[str] = ()) -> list[DetectionEvent]:
        """Process a single stream notification.

        Fetches the transaction once, then evaluates every watched wallet that
        appears in it. Failures are logged and counted, never raised. With
        deduplication enabled, a signature is only remembered once its
        transaction was found and every involved wallet evaluated cleanly.

        Returns:
            The DetectionEvents emitted for this signature.
        """
        self._stats.notifications_received += 1

        if self._is_duplicate(signature):
            self._stats.duplicates_skipped += 1
            logger.debug("Skipping already processed signature %s", short_address(signature, 8))
            return []

        try:
            if self._analyzer is None:
                raise RuntimeError("Coordinator has no RPC client; call start() first")

            logger.info("Analyzing transaction %s (%d log lines)", short_address(signature, 8), len(logs))
            analysis = await self._analyzer.analyze(signature)
            if analysis is None:
                self._stats.notifications_skipped += 1
                self._forget(signature)
                return []

            involved = [w for w in self._wallets if analysis.involves(w.address)]
            results = await asyncio.gather(
                *(self.process_wallet(wallet, analysis) for wallet in involved),
                return_exceptions=True,
            )
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.error("Error processing notification %s: %s", short_address(signature, 8), e)
            self._forget(signature)
            return []

        events: list[DetectionEvent] = []
        for wallet, result in zip(involved, results, strict=True):
            if isinstance(result, BaseException):
                self._stats.errors += 1
                self._stats.last_error = str(result)
                logger.error(
                    "Error evaluating %s for %s: %s",
                    wallet.label,
                    short_address(signature, 8),
                    result,
                )
                self._forget(signature)
                continue
            if result is not None:
                events.append(result)

        self._stats.notifications_processed += 1
        return events

    async def process_wallet(
        self,
        wallet: WalletWatch,
        analysis: TransactionAnalysis,
    ) -> DetectionEvent | None:
        """Evaluate one watched wallet against an analyzed transaction."""
        index = analysis.account_index(wallet.address)
        if index is None:
            return None

        outgoing_amount = analysis.outgoing_amount(index)
        if outgoing_amount <= 0:
            logger.debug("%s has no outflow in %s", wallet.label, short_address(analysis.signature, 8))
            return None

        matched_range = first_match(outgoing_amount, wallet.ranges)
        if matched_range is None:
            logger.info(
                "Amount %.2f SOL not in any range for %s",
                outgoing_amount,
                wallet.label,
            )
            return None
        logger.info(
            "Range match: %s outgoing %.2f SOL matches %s",
            wallet.label,
            outgoing_amount,
            matched_range,
        )

        recipient = analysis.find_recipient(index, outgoing_amount)
        if recipient is None:
            logger.info("Could not identify recipient for %s", short_address(analysis.signature, 8))
            return None
        logger.info("Recipient identified: %s", short_address(recipient))

        if self._validator is None:
            raise RuntimeError("Coordinator has no RPC client; call start() first")
        scrutiny = await self._validator.evaluate(
            recipient,
            wallet.address,
            wallet.label,
            exclude_signature=analysis.signature,
        )

        event = DetectionEvent(
            signature=analysis.signature,
            wallet_label=wallet.label,
            wallet_address=wallet.address,
            recipient_address=recipient,
            outgoing_amount=outgoing_amount,
            matched_range=matched_range,
            scrutiny_result=scrutiny,
        )
        await self._emit(event)
        return event

    async def _emit(self, event: DetectionEvent) -> None:
        self._stats.detections_emitted += 1
        logger.info(
            "Detection: wallet=%s, recipient=%s, amount=%.2f, condition=%s, alert=%s",
            event.wallet_label,
            short_address(event.recipient_address),
            event.outgoing_amount,
            event.condition.value,
            event.alert_triggered,
        )
        if self._dry_run or self._dispatcher is None:
            logger.debug("Dry run - detection not dispatched")
            return

        result = await self._dispatcher.dispatch(event)
        if result.all_succeeded:
            self._stats.alerts_sent += 1
        else:
            logger.warning(
                "Alert partially failed: %d/%d channels succeeded",
                result.success_count,
                result.success_count + result.failure_count,
            )

    async def stop(self) -> None:
        """Stop the coordinator gracefully.

        The stream is closed first so no new notifications arrive; in-flight
        notifications get the configured grace period and are then cancelled.
        """
        if self._state == CoordinatorState.STOPPED:
            return

        failed = self._state == CoordinatorState.ERROR
        self._state = CoordinatorState.STOPPING
        logger.info("Stopping detection coordinator...")

        if self._stop_event:
            self._stop_event.set()

        if self._stream:
            await self._stream.stop()

        for task in (self._stream_task, self._consumer_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._stream_task = None
        self._consumer_task = None

        await self._drain_in_flight()
        await self._cleanup()

        self._state = CoordinatorState.ERROR if failed else CoordinatorState.STOPPED
        logger.info("Detection coordinator stopped")

    async def _drain_in_flight(self) -> None:
        if not self._in_flight:
            return
        timeout = self._settings.detection.shutdown_timeout_seconds
        pending_tasks = set(self._in_flight)
        logger.info("Waiting up to %.1fs for %d in-flight notification(s)", timeout, len(pending_tasks))
        _, pending = await asyncio.wait(pending_tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Abandoned %d in-flight notification(s) at shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    async def _cleanup(self) -> None:
        if self._client and self._owns_client:
            await self._client.close()
            self._client = None
            self._analyzer = None
            self._validator = None
        self._stream = None
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the coordinator and run until stopped or the stream fails."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> DetectionCoordinator:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
