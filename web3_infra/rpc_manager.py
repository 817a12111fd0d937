"""RPCManager — JSON-RPC access for wallet reads and transactions.

Every configured node URL becomes an ``Endpoint`` with its own ``AsyncWeb3``
client. Calls go to the endpoint with the best recent record and fall
through to the others on failure. An optional probe task keeps the
records fresh while the service is idle.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlparse

import aiohttp
import structlog
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

from core.errors import LimitOrderError, RpcError

logger = structlog.get_logger("web3_infra.rpc_manager")

T = TypeVar("T")

Web3Factory = Callable[[str, float], AsyncWeb3]


class EndpointState(str, Enum):
    UP = "UP"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


@dataclass
class Endpoint:
    """One node URL, its client and its call record."""

    url: str
    w3: Any = None
    calls: int = 0
    errors: int = 0
    errors_in_row: int = 0
    latency_ms: float = 0.0
    last_error: str | None = None
    down_after: int = field(default=5, repr=False)

    @property
    def state(self) -> EndpointState:
        if self.errors_in_row >= self.down_after:
            return EndpointState.DOWN
        if self.errors_in_row >= 2:
            return EndpointState.DEGRADED
        return EndpointState.UP

    def ok(self, elapsed_ms: float) -> None:
        self.calls += 1
        self.errors_in_row = 0
        self.last_error = None
        # smoothed, first sample taken as-is
        self.latency_ms = elapsed_ms if not self.latency_ms else 0.7 * self.latency_ms + 0.3 * elapsed_ms

    def failed(self, error: BaseException) -> None:
        self.calls += 1
        self.errors += 1
        self.errors_in_row += 1
        self.last_error = f"{type(error).__name__}: {error}"[:300]

    def snapshot(self) -> dict[str, Any]:
        return {
            "url": redact_url(self.url),
            "state": self.state.value,
            "calls": self.calls,
            "errors": self.errors,
            "errors_in_row": self.errors_in_row,
            "latency_ms": round(self.latency_ms, 1),
            "last_error": self.last_error,
        }


@dataclass
class RPCManagerConfig:
    """Configuration for the RPC manager."""

    # Per-request timeout handed to the HTTP provider, seconds
    request_timeout_s: float = 10.0

    # Seconds between background probes; 0 disables probing
    probe_interval_s: float = 0.0

    # Consecutive errors after which an endpoint is tried last
    down_after: int = 5


class RPCManager:
    """Runs Web3 calls against the healthiest endpoint, failing over in order.

    Usage::

        async with RPCManager(["https://eth.llamarpc.com"]) as rpc:
            balance = await rpc.execute(lambda w3: w3.eth.get_balance(wallet))
    """

    def __init__(
        self,
        endpoints: list[str],
        config: RPCManagerConfig | None = None,
        web3_factory: Web3Factory | None = None,
    ) -> None:
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")
        self._config = config or RPCManagerConfig()
        self._endpoints = [Endpoint(url=url, down_after=self._config.down_after) for url in endpoints]
        self._web3_factory = web3_factory or _default_web3
        self._probe_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def config(self) -> RPCManagerConfig:
        return self._config

    @property
    def endpoints(self) -> list[Endpoint]:
        return list(self._endpoints)

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        for endpoint in self._endpoints:
            endpoint.w3 = self._web3_factory(endpoint.url, self._config.request_timeout_s)
        self._running = True
        if self._config.probe_interval_s > 0:
            self._probe_task = asyncio.create_task(self._probe_forever(), name="rpc_probe")
        logger.info(
            "rpc_manager.started",
            endpoints=[redact_url(e.url) for e in self._endpoints],
            timeout_s=self._config.request_timeout_s,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._probe_task is not None:
            self._probe_task.cancel()
            await asyncio.gather(self._probe_task, return_exceptions=True)
            self._probe_task = None
        for endpoint in self._endpoints:
            endpoint.w3 = None
        logger.info("rpc_manager.stopped")

    async def __aenter__(self) -> RPCManager:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ── Calls ────────────────────────────────────────────────────

    async def execute(self, fn: Callable[[AsyncWeb3], Awaitable[T]]) -> T:
        """Await ``fn(w3)`` on each endpoint in turn until one succeeds.

        Errors from ``core.errors`` raised by ``fn`` are the caller's own
        verdict and propagate on the first endpoint.

        Raises
        ------
        RpcError
            If the manager is not running or every endpoint failed.
        """
        if not self._running:
            raise RpcError("RPCManager not started, call start() first")

        last_error: Exception | None = None
        for endpoint in self._ranked():
            began = time.monotonic()
            try:
                result = await fn(endpoint.w3)
            except LimitOrderError:
                raise
            except Exception as exc:
                endpoint.failed(exc)
                last_error = exc
                logger.warning(
                    "rpc_manager.call_failed",
                    url=redact_url(endpoint.url),
                    error=endpoint.last_error,
                    errors_in_row=endpoint.errors_in_row,
                )
                continue
            endpoint.ok((time.monotonic() - began) * 1000)
            return result

        raise RpcError(
            f"All {len(self._endpoints)} RPC endpoints failed: {last_error}",
            last_error=last_error,
        ) from last_error

    def get_endpoint_status(self) -> list[dict[str, Any]]:
        """Per-endpoint record with credentials stripped from the URL."""
        return [endpoint.snapshot() for endpoint in self._endpoints]

    def _ranked(self) -> list[Endpoint]:
        # stable sort keeps configured order among equals
        order = {EndpointState.UP: 0, EndpointState.DEGRADED: 1, EndpointState.DOWN: 2}
        return sorted(self._endpoints, key=lambda e: order[e.state])

    # ── Probing ──────────────────────────────────────────────────

    async def _probe_forever(self) -> None:
        while self._running:
            await asyncio.sleep(self._config.probe_interval_s)
            await asyncio.gather(*(self._probe(e) for e in self._endpoints))

    async def _probe(self, endpoint: Endpoint) -> None:
        if endpoint.w3 is None:
            return
        began = time.monotonic()
        try:
            await endpoint.w3.eth.block_number
        except Exception as exc:
            endpoint.failed(exc)
            logger.warning("rpc_manager.probe_failed", url=redact_url(endpoint.url), error=endpoint.last_error)
            return
        endpoint.ok((time.monotonic() - began) * 1000)


def _default_web3(url: str, timeout_s: float) -> AsyncWeb3:
    timeout = aiohttp.ClientTimeout(total=timeout_s)
    return AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": timeout}))


def redact_url(url: str) -> str:
    """Scheme and host only; node URLs often embed an API key in the path."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        return url[:12] + "..."
    return f"{parsed.scheme}://{parsed.hostname}/***"
