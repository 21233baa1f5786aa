"""Alert dispatch to delivery channels.

Channels are sent concurrently; a failing channel is logged and counted but
never raises to the pipeline.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from solana_outflow_monitor.alerter.formatter import AlertFormatter
from solana_outflow_monitor.detector.models import DetectionEvent
from solana_outflow_monitor.ingestor.models import StreamFailureEvent

logger = logging.getLogger(__name__)


class AlertChannel(Protocol):
    """Delivery channel for detections and stream failures."""

    name: str

    async def send(self, event: DetectionEvent) -> bool: ...

    async def send_failure(self, failure: StreamFailureEvent) -> bool: ...


@dataclass(frozen=True)
class DispatchResult:
    success_count: int
    failure_count: int

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0


class LogChannel:
    """Writes formatted alerts through the logging system."""

    name = "log"

    def __init__(
        self,
        formatter: AlertFormatter | None = None,
        *,
        logger_name: str = "solana_outflow_monitor.alerts",
    ) -> None:
        self._formatter = formatter or AlertFormatter()
        self._logger = logging.getLogger(logger_name)

    async def send(self, event: DetectionEvent) -> bool:
        level = logging.WARNING if event.alert_triggered else logging.INFO
        self._logger.log(level, "\n%s", self._formatter.format_plain_text(event))
        return True

    async def send_failure(self, failure: StreamFailureEvent) -> bool:
        self._logger.error(self._formatter.format_failure(failure))
        return True


class AlertDispatcher:
    """Fans alerts out to every configured channel."""

    def __init__(self, channels: list[AlertChannel]) -> None:
        self._channels = list(channels)

    @property
    def channels(self) -> list[AlertChannel]:
        return list(self._channels)

    async def _gather(self, sends: list, names: list[str]) -> DispatchResult:
        results = await asyncio.gather(*sends, return_exceptions=True)
        success = 0
        failure = 0
        for name, result in zip(names, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Alert channel %s failed: %s", name, result)
                failure += 1
            elif result:
                success += 1
            else:
                logger.warning("Alert channel %s reported failure", name)
                failure += 1
        return DispatchResult(success_count=success, failure_count=failure)

    async def dispatch(self, event: DetectionEvent) -> DispatchResult:
        names = [c.name for c in self._channels]
        return await self._gather([c.send(event) for c in self._channels], names)

    async def dispatch_failure(self, failure: StreamFailureEvent) -> DispatchResult:
        names = [c.name for c in self._channels]
        return await self._gather([c.send_failure(failure) for c in self._channels], names)
