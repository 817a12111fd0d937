"""OrderbookClient — async REST client for the 1inch limit-order API (v4).

Covers:
- Order submission (hash, signature, order struct)
- Orders by maker, order by hash, order counts
- Bearer-token auth
- Rate limiting with token bucket
- Retry with exponential backoff on 429 / 5xx / transport errors

Failures are raised, never masked: transport problems become
``NetworkUnavailable`` and error statuses become ``RemoteRejected``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Sequence

import httpx
import structlog

from core.errors import NetworkUnavailable, RemoteRejected

logger = structlog.get_logger("data.orderbook_client")

_DEFAULT_BASE_URL = "https://api.1inch.dev/orderbook/v4.0"

_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


class _RateLimiter:
    """Simple token-bucket rate limiter.

    Parameters
    ----------
    rate:
        Max requests per second.
    burst:
        Maximum burst size (tokens in bucket).
    """

    def __init__(self, rate: float = 1.0, burst: int = 1) -> None:
        self._rate = rate
        self._burst = max(burst, 1)
        self._tokens = float(self._burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a token is available."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_refill
            self._tokens = min(self._burst, self._tokens + elapsed * self._rate)
            self._last_refill = now

            if self._tokens < 1.0:
                wait = (1.0 - self._tokens) / self._rate
                await asyncio.sleep(wait)
                self._tokens = 0.0
                self._last_refill = time.monotonic()
            else:
                self._tokens -= 1.0


class OrderbookClient:
    """Async client for the 1inch orderbook API of one chain.

    Parameters
    ----------
    chain_id:
        Network id (1 for Ethereum mainnet).
    api_key:
        1inch developer portal key, sent as a bearer token.
    base_url:
        API base URL without the chain segment.
    timeout_s:
        Per-request timeout in seconds.
    max_retries:
        Attempts per call, including the first one.
    rate_limit_rps:
        Max requests per second.
    backoff_base_s:
        First retry delay; doubles on every further attempt.
    transport:
        Optional ``httpx`` transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        chain_id: int,
        api_key: str = "",
        base_url: str = _DEFAULT_BASE_URL,
        timeout_s: float = 10.0,
        max_retries: int = 3,
        rate_limit_rps: float = 1.0,
        backoff_base_s: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._chain_id = chain_id
        self._api_key = api_key
        self._base_url = f"{base_url.rstrip('/')}/{chain_id}"
        self._timeout_s = timeout_s
        self._max_retries = max(max_retries, 1)
        self._backoff_base_s = backoff_base_s
        self._rate_limiter = _RateLimiter(rate=rate_limit_rps, burst=max(int(rate_limit_rps), 1))
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    # ── Lifecycle ────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP client.  Idempotent."""
        if self._client is not None:
            return
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(self._timeout_s),
            transport=self._transport,
        )
        logger.info("orderbook_client.connected", base_url=self._base_url)

    async def disconnect(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("orderbook_client.disconnected")

    async def __aenter__(self) -> OrderbookClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.disconnect()

    # ── Public API ───────────────────────────────────────────────

    async def submit_order(
        self,
        order_hash: str,
        signature: str,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        """Publish a signed order to the orderbook."""
        body = {"orderHash": order_hash, "signature": signature, "data": data}
        result = await self._request("POST", "", json=body)
        logger.info("orderbook_client.order_submitted", order_hash=order_hash)
        return result if isinstance(result, dict) else {"result": result}

    async def get_orders_by_maker(
        self,
        maker: str,
        page: int = 1,
        limit: int = 100,
        statuses: Sequence[int] = (1,),
    ) -> list[dict[str, Any]]:
        """Orders created by ``maker``; ``statuses`` filters by remote status code."""
        params: dict[str, Any] = {"page": page, "limit": limit}
        if statuses:
            params["statuses"] = [str(s) for s in statuses]
        result = await self._request("GET", f"/address/{maker}", params=params)
        orders = result if isinstance(result, list) else result.get("items", [])
        logger.debug("orderbook_client.orders_by_maker", maker=maker, count=len(orders))
        return orders

    async def get_order_by_hash(self, order_hash: str) -> dict[str, Any]:
        """Remote record for one order (status, remaining amount, order data)."""
        return await self._request("GET", f"/order/{order_hash}")

    async def get_orders_count(self, statuses: Sequence[int] = (1,)) -> int:
        """Number of orders on this chain with the given statuses."""
        params = {"statuses": [str(s) for s in statuses]} if statuses else None
        result = await self._request("GET", "/count", params=params)
        if isinstance(result, dict):
            return int(result.get("count", 0))
        return int(result)

    # ── Internal ─────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send one API call, retrying transient failures with backoff.

        Raises
        ------
        NetworkUnavailable
            Transport error or timeout on the last attempt.
        RemoteRejected
            Error status from the API (after retries for retryable ones).
        """
        if self._client is None:
            raise NetworkUnavailable("OrderbookClient not connected, call connect() first")

        url = f"{self._base_url}{path}"
        for attempt in range(1, self._max_retries + 1):
            await self._rate_limiter.acquire()
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                if attempt < self._max_retries:
                    await self._backoff(method, path, attempt, str(exc))
                    continue
                logger.error("orderbook_client.unreachable", method=method, path=path, error=str(exc))
                raise NetworkUnavailable(
                    f"{method} {path or '/'} failed: {type(exc).__name__}: {exc}"
                ) from exc

            if response.status_code >= 400:
                if response.status_code in _RETRYABLE_STATUSES and attempt < self._max_retries:
                    await self._backoff(method, path, attempt, f"HTTP {response.status_code}")
                    continue
                reason = _error_reason(response)
                logger.warning(
                    "orderbook_client.rejected",
                    method=method,
                    path=path,
                    status=response.status_code,
                    reason=reason,
                )
                raise RemoteRejected(response.status_code, reason)

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise RemoteRejected(
                    response.status_code, "response body is not valid JSON"
                ) from exc

        # Unreachable: the loop either returns or raises on its last attempt
        raise NetworkUnavailable(f"{method} {path or '/'} failed")

    async def _backoff(self, method: str, path: str, attempt: int, error: str) -> None:
        delay = self._backoff_base_s * 2 ** (attempt - 1)
        logger.warning(
            "orderbook_client.retrying",
            method=method,
            path=path,
            attempt=attempt,
            delay=delay,
            error=error[:200],
        )
        await asyncio.sleep(delay)


def _error_reason(response: httpx.Response) -> str:
    """Best-effort human-readable reason from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("description", "message", "error"):
            value = body.get(key)
            if value:
                return str(value)
    return str(body)[:500]
