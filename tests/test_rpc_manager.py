"""Tests for web3_infra/rpc_manager.py — failover, errors, endpoint status."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from core.errors import InvalidParameters, RpcError
from web3_infra.rpc_manager import Endpoint, EndpointState, RPCManager, RPCManagerConfig, redact_url

PRIMARY = "https://primary.example/v2/secret-key"
BACKUP = "https://backup.example/rpc"


def _factory(url: str, timeout_s: float) -> MagicMock:
    w3 = MagicMock()
    w3.url = url
    return w3


class TestEndpoint:

    def test_state_progression(self) -> None:
        e = Endpoint(url=PRIMARY, down_after=3)
        e.failed(ConnectionError("e1"))
        assert e.state == EndpointState.UP
        e.failed(ConnectionError("e2"))
        assert e.state == EndpointState.DEGRADED
        e.failed(ConnectionError("e3"))
        assert e.state == EndpointState.DOWN
        assert e.errors == 3
        assert e.last_error == "ConnectionError: e3"

    def test_success_resets(self) -> None:
        e = Endpoint(url=PRIMARY)
        e.failed(ConnectionError("e1"))
        e.failed(ConnectionError("e2"))
        e.ok(12.0)
        assert e.state == EndpointState.UP
        assert e.errors_in_row == 0
        assert e.latency_ms == 12.0
        e.ok(22.0)
        assert e.latency_ms == pytest.approx(15.0)


class TestRPCManager:

    @pytest.mark.asyncio
    async def test_requires_endpoint(self) -> None:
        with pytest.raises(ValueError):
            RPCManager(endpoints=[])

    @pytest.mark.asyncio
    async def test_not_started_raises(self) -> None:
        manager = RPCManager([PRIMARY], web3_factory=_factory)

        async def call(w3):
            return 1

        with pytest.raises(RpcError, match="not started"):
            await manager.execute(call)

    @pytest.mark.asyncio
    async def test_primary_used_first(self) -> None:
        async with RPCManager([PRIMARY, BACKUP], web3_factory=_factory) as manager:
            async def call(w3):
                return w3.url

            assert await manager.execute(call) == PRIMARY

    @pytest.mark.asyncio
    async def test_failover_to_backup(self) -> None:
        async with RPCManager([PRIMARY, BACKUP], web3_factory=_factory) as manager:
            async def call(w3):
                if w3.url == PRIMARY:
                    raise ConnectionError("primary down")
                return "ok"

            assert await manager.execute(call) == "ok"
            primary, backup = manager.endpoints
            assert primary.errors == 1
            assert backup.calls == 1

    @pytest.mark.asyncio
    async def test_all_endpoints_fail(self) -> None:
        async with RPCManager([PRIMARY, BACKUP], web3_factory=_factory) as manager:
            async def call(w3):
                raise TimeoutError(f"{w3.url} timed out")

            with pytest.raises(RpcError, match="All 2 RPC endpoints failed") as exc_info:
                await manager.execute(call)
            assert isinstance(exc_info.value.last_error, TimeoutError)

    @pytest.mark.asyncio
    async def test_package_errors_not_retried(self) -> None:
        calls: list[str] = []
        async with RPCManager([PRIMARY, BACKUP], web3_factory=_factory) as manager:
            async def call(w3):
                calls.append(w3.url)
                raise InvalidParameters("bad token")

            with pytest.raises(InvalidParameters):
                await manager.execute(call)
        assert calls == [PRIMARY]

    @pytest.mark.asyncio
    async def test_down_endpoint_tried_last(self) -> None:
        config = RPCManagerConfig(down_after=1)
        async with RPCManager([PRIMARY, BACKUP], config=config, web3_factory=_factory) as manager:
            async def flaky(w3):
                if w3.url == PRIMARY:
                    raise ConnectionError("down")
                return w3.url

            await manager.execute(flaky)
            assert manager.endpoints[0].state == EndpointState.DOWN

            seen: list[str] = []

            async def record(w3):
                seen.append(w3.url)
                return w3.url

            assert await manager.execute(record) == BACKUP
            assert seen == [BACKUP]

    @pytest.mark.asyncio
    async def test_endpoint_status_redacts_urls(self) -> None:
        async with RPCManager([PRIMARY], web3_factory=_factory) as manager:
            status = manager.get_endpoint_status()
        assert status[0]["url"] == "https://primary.example/***"
        assert "secret-key" not in str(status)

    @pytest.mark.asyncio
    async def test_lifecycle_is_idempotent(self) -> None:
        manager = RPCManager([PRIMARY], web3_factory=_factory)
        await manager.start()
        await manager.start()
        await manager.stop()
        await manager.stop()


def test_redact_url_without_host() -> None:
    assert redact_url("not-a-url-at-all") == "not-a-url-at..."
