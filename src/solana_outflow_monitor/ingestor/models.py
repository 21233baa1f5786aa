"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

NOTIFICATION_METHOD = "logsNotification"


class NotificationDecodeError(ValueError):
    """Raised when a logsNotification payload is malformed."""


@dataclass(frozen=True)
class LogsNotification:
    """A single ``logsNotification`` pushed by the RPC node.

    Attributes:
        signature: Transaction signature the logs belong to.
        logs: Program log lines.
        err: Transaction error object, None when it succeeded.
        slot: Context slot, if present.
        subscription: Subscription id the notification was delivered on.
        received_at: Local receive time.
    """

    signature: str
    logs: tuple[str, ...]
    err: Any = None
    slot: int | None = None
    subscription: int | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_websocket_message(cls, data: dict[str, Any]) -> LogsNotification:
        """Decode a parsed JSON-RPC notification message.

        Raises:
            NotificationDecodeError: If required fields are missing or mistyped.
        """
        if data.get("method") != NOTIFICATION_METHOD:
            raise NotificationDecodeError(f"Unexpected method {data.get('method')!r}")
        try:
            params = data["params"]
            result = params["result"]
            value = result["value"]
            signature = value["signature"]
        except (KeyError, TypeError) as e:
            raise NotificationDecodeError(f"Missing notification field: {e}") from e

        if not isinstance(signature, str) or not signature:
            raise NotificationDecodeError("Notification signature must be a non-empty string")
        logs = value.get("logs") or []
        if not isinstance(logs, list):
            raise NotificationDecodeError("Notification logs must be a list")

        context = result.get("context") or {}
        slot = context.get("slot") if isinstance(context, dict) else None
        subscription = params.get("subscription")
        return cls(
            signature=signature,
            logs=tuple(str(line) for line in logs),
            err=value.get("err"),
            slot=int(slot) if isinstance(slot, int) else None,
            subscription=int(subscription) if isinstance(subscription, int) else None,
        )


@dataclass(frozen=True)
class StreamFailureEvent:
    """Emitted once when the stream client gives up reconnecting."""

    attempts: int
    last_error: str | None
    endpoint: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, object]:
        return {
            "attempts": self.attempts,
            "last_error": self.last_error,
            "endpoint": self.endpoint,
            "timestamp": self.timestamp.isoformat(),
        }
