"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the Solana
outflow monitor, loading and validating environment variables at startup.

Watched wallets are declared as numbered groups, read until the first
incomplete group::

    CEX_1_LABEL=Binance
    CEX_1_ADDRESS=5tzFkiKscXHK5ZXCGbXZxdw7gTjjD1mBwuoFbhUvuAi9
    CEX_1_RANGE=13-15,14-26,99-100
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from functools import lru_cache
from typing import Literal

from dotenv import dotenv_values
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from solana_outflow_monitor.detector.models import WalletWatch
from solana_outflow_monitor.detector.ranges import RangeParseError, parse_range_string
from solana_outflow_monitor.ingestor.websocket import http_to_ws_url

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

WALLET_ENV_PREFIX = "CEX_"


class ConfigurationError(Exception):
    """Raised when the process must not start with the given configuration."""


class RpcSettings(BaseSettings):
    """Solana RPC endpoint settings."""

    model_config = SettingsConfigDict(env_prefix="RPC_", extra="ignore")

    endpoint: str = Field(
        alias="RPC_ENDPOINT",
        description="Primary Solana HTTP(S) RPC endpoint",
    )
    fallback_endpoint: str | None = Field(
        default=None,
        alias="RPC_FALLBACK_ENDPOINT",
        description="Fallback Solana HTTP(S) RPC endpoint",
    )
    ws_endpoint: str | None = Field(
        default=None,
        alias="RPC_WS_ENDPOINT",
        description="WebSocket endpoint override (derived from RPC_ENDPOINT when unset)",
    )
    commitment: Literal["processed", "confirmed", "finalized"] = Field(
        default="confirmed",
        alias="RPC_COMMITMENT",
        description="Commitment level for subscriptions and queries",
    )
    max_requests_per_second: float = Field(
        default=10.0,
        alias="RPC_MAX_REQUESTS_PER_SECOND",
        gt=0,
        le=1000,
        description="Client-side RPC rate limit",
    )
    max_retries: int = Field(
        default=3,
        alias="RPC_MAX_RETRIES",
        ge=1,
        le=10,
        description="Attempts per endpoint before failing over",
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        alias="RPC_REQUEST_TIMEOUT_SECONDS",
        gt=0,
        le=300,
        description="HTTP request timeout",
    )

    @field_validator("endpoint", "fallback_endpoint")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC endpoint must be an HTTP(S) URL")
        return v

    @field_validator("ws_endpoint")
    @classmethod
    def validate_ws_url(cls, v: str | None) -> str | None:
        """Validate WebSocket URL format."""
        if v is None:
            return v
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("RPC_WS_ENDPOINT must start with ws:// or wss://")
        return v

    @property
    def websocket_url(self) -> str:
        return self.ws_endpoint or http_to_ws_url(self.endpoint)


class StreamSettings(BaseSettings):
    """Logs stream reconnect settings."""

    model_config = SettingsConfigDict(env_prefix="STREAM_", extra="ignore")

    reconnect_base_delay_ms: int = Field(
        default=3000,
        alias="STREAM_RECONNECT_BASE_DELAY_MS",
        ge=1,
        le=600_000,
        description="Delay before the first reconnect attempt; doubles per attempt",
    )
    max_reconnect_attempts: int = Field(
        default=10,
        alias="STREAM_MAX_RECONNECT_ATTEMPTS",
        ge=0,
        le=100,
        description="Consecutive reconnect attempts before the stream gives up",
    )
    ping_interval_seconds: int = Field(
        default=30,
        alias="STREAM_PING_INTERVAL_SECONDS",
        ge=1,
        le=600,
        description="WebSocket keepalive ping interval",
    )


class DetectionSettings(BaseSettings):
    """Notification processing settings."""

    model_config = SettingsConfigDict(env_prefix="DETECTION_", extra="ignore")

    deduplicate_signatures: bool = Field(
        default=False,
        alias="DETECTION_DEDUPLICATE_SIGNATURES",
        description="Skip notifications whose signature was processed recently",
    )
    dedup_ttl_seconds: int = Field(
        default=600,
        alias="DETECTION_DEDUP_TTL_SECONDS",
        ge=1,
        le=86_400,
        description="How long a processed signature is remembered",
    )
    dedup_max_signatures: int = Field(
        default=10_000,
        alias="DETECTION_DEDUP_MAX_SIGNATURES",
        ge=1,
        le=1_000_000,
        description="Upper bound on remembered signatures",
    )
    max_concurrent_notifications: int = Field(
        default=16,
        alias="DETECTION_MAX_CONCURRENT_NOTIFICATIONS",
        ge=1,
        le=1000,
        description="Notifications processed concurrently",
    )
    shutdown_timeout_seconds: float = Field(
        default=10.0,
        alias="DETECTION_SHUTDOWN_TIMEOUT_SECONDS",
        ge=0,
        le=600,
        description="Grace period for in-flight notifications on shutdown",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from solana_outflow_monitor.config import get_settings, load_wallet_watches

        settings = get_settings()
        wallets = load_wallet_watches()
        print(settings.rpc.websocket_url)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    rpc: RpcSettings = Field(
        default_factory=lambda: RpcSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    stream: StreamSettings = Field(
        default_factory=lambda: StreamSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    detection: DetectionSettings = Field(
        default_factory=lambda: DetectionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )
    dry_run: bool = Field(
        default=False,
        alias="DRY_RUN",
        description="Build and log detections without handing them to alert channels",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted."""
        return {
            "rpc": {
                "endpoint": self._redact_url(self.rpc.endpoint),
                "fallback_endpoint": (
                    self._redact_url(self.rpc.fallback_endpoint)
                    if self.rpc.fallback_endpoint
                    else "(not set)"
                ),
                "websocket_url": self._redact_url(self.rpc.websocket_url),
                "commitment": self.rpc.commitment,
            },
            "stream": {
                "reconnect_base_delay_ms": str(self.stream.reconnect_base_delay_ms),
                "max_reconnect_attempts": str(self.stream.max_reconnect_attempts),
            },
            "detection": {
                "deduplicate_signatures": str(self.detection.deduplicate_signatures),
                "max_concurrent_notifications": str(self.detection.max_concurrent_notifications),
            },
            "log_level": self.log_level,
            "dry_run": str(self.dry_run),
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact an ``api-key`` query parameter if present."""
        marker = "api-key="
        if marker not in url:
            return url
        start = url.index(marker) + len(marker)
        end = url.find("&", start)
        if end == -1:
            return f"{url[:start]}***"
        return f"{url[:start]}***{url[end:]}"


def read_environment() -> dict[str, str]:
    """Merge ``.env`` values with the process environment (environment wins)."""
    merged = {k: v for k, v in dotenv_values(_ENV_FILE, encoding=_ENV_FILE_ENCODING).items() if v is not None}
    merged.update(os.environ)
    return merged


def load_wallet_watches(environ: Mapping[str, str] | None = None) -> tuple[WalletWatch, ...]:
    """Load numbered wallet groups until the first incomplete one.

    Raises:
        ConfigurationError: If no wallet is configured or a range string is invalid.
    """
    env = read_environment() if environ is None else environ

    wallets: list[WalletWatch] = []
    index = 1
    while True:
        prefix = f"{WALLET_ENV_PREFIX}{index}_"
        label = env.get(f"{prefix}LABEL")
        address = env.get(f"{prefix}ADDRESS")
        range_str = env.get(f"{prefix}RANGE")
        if not label or not address or not range_str:
            break

        try:
            ranges = parse_range_string(range_str)
        except RangeParseError as e:
            raise ConfigurationError(f"{prefix}RANGE: {e}") from e

        wallets.append(WalletWatch(label=label.strip(), address=address.strip(), ranges=ranges))
        index += 1

    if not wallets:
        raise ConfigurationError(
            f"No wallets configured ({WALLET_ENV_PREFIX}1_LABEL, "
            f"{WALLET_ENV_PREFIX}1_ADDRESS, {WALLET_ENV_PREFIX}1_RANGE)"
        )
    return tuple(wallets)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
