"""Solana JSON-RPC client with rate limiting, retries and failover.

This module provides the RPC collaborator used by the detection pipeline:
- ``getTransaction`` in jsonParsed, version-aware mode
- ``getSignaturesForAddress`` for one-hop recipient history
- Retry logic with exponential backoff
- Rate limiting to respect provider limits
- Failover to secondary RPC URL
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_COMMITMENT = "confirmed"
DEFAULT_MAX_REQUESTS_PER_SECOND = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30.0
MAX_SUPPORTED_TRANSACTION_VERSION = 0

RETRIABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class SolanaClientError(Exception):
    """Base exception for Solana client errors."""


class RPCError(SolanaClientError):
    """Raised when an RPC call fails after all retries."""

    def __init__(self, message: str, error_data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.error_data = error_data or {}


class _RetriableError(SolanaClientError):
    """Internal marker for failures worth another attempt."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class SolanaClient:
    """Async Solana JSON-RPC client.

    Example:
        ```python
        async with SolanaClient(
            "https://api.mainnet-beta.solana.com",
            fallback_rpc_url="https://solana-rpc.publicnode.com",
        ) as client:
            tx = await client.get_parsed_transaction(signature)
            sigs = await client.get_signatures_for_address(address, limit=1)
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        commitment: str = DEFAULT_COMMITMENT,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the Solana client.

        Args:
            rpc_url: Primary HTTP(S) RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            commitment: Commitment level sent with every request.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            timeout_seconds: Per-request timeout.
            http_client: Optional preconfigured httpx client (tests).
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._commitment = commitment
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay_seconds
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={"Content-Type": "application/json"},
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._request_ids = itertools.count(1)

        # Track primary RPC health
        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    async def __aenter__(self) -> SolanaClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _post(self, url: str, method: str, params: list[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._http.post(url, json=payload)
        except httpx.RequestError as e:
            raise _RetriableError(f"{method} transport error: {e}") from e

        if response.status_code in RETRIABLE_STATUS_CODES:
            raise _RetriableError(f"{method} HTTP {response.status_code}")
        try:
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise RPCError(f"{method} failed: {e}") from e

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            # Node-side errors (rate limits, lagging slots) are usually transient.
            raise _RetriableError(f"{method} RPC error: {message}")
        if not isinstance(body, dict) or "result" not in body:
            raise RPCError(f"{method} returned an invalid JSON-RPC response")
        return body["result"]

    async def _attempt(self, url: str, method: str, params: list[Any], *, label: str) -> Any:
        delay = self._retry_delay
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return await self._post(url, method, params)
            except _RetriableError as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    method,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        raise _RetriableError(str(last_error))

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Execute an RPC call with retry and failover logic.

        Raises:
            RPCError: If all retries and failover fail.
        """
        params = params or []
        await self._rate_limiter.acquire()

        last_error: Exception | None = None

        # Without a fallback the primary is the only route; never skip it.
        if not self._fallback_rpc_url or self._should_try_primary():
            try:
                result = await self._attempt(self._rpc_url, method, params, label="Primary")
                self._primary_healthy = True
                return result
            except _RetriableError as e:
                last_error = e
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        if self._fallback_rpc_url:
            try:
                result = await self._attempt(self._fallback_rpc_url, method, params, label="Fallback")
                logger.info("Fallback RPC succeeded for %s", method)
                return result
            except _RetriableError as e:
                last_error = e

        raise RPCError(f"RPC call {method} failed after all retries: {last_error}")

    async def get_parsed_transaction(self, signature: str) -> dict[str, Any] | None:
        """Fetch a transaction in jsonParsed, version-aware form.

        Returns:
            The raw transaction record, or None if the node does not know it.
        """
        result = await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "maxSupportedTransactionVersion": MAX_SUPPORTED_TRANSACTION_VERSION,
                    "commitment": self._commitment,
                },
            ],
        )
        if result is not None and not isinstance(result, dict):
            raise RPCError(f"getTransaction returned unexpected payload type {type(result).__name__}")
        return result

    async def get_signatures_for_address(
        self,
        address: str,
        *,
        limit: int = 1,
        before: str | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch the most recent signatures involving address (newest first)."""
        options: dict[str, Any] = {"limit": limit, "commitment": self._commitment}
        if before:
            options["before"] = before
        result = await self.call("getSignaturesForAddress", [address, options])
        if result is None:
            return []
        if not isinstance(result, list):
            raise RPCError("getSignaturesForAddress returned a non-list payload")
        return result
