"""Tests for api/server.py — routing, error mapping and the raw HTTP handler."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from api.server import ApiServer, status_for_error
from core.errors import (
    InsufficientAllowance,
    InvalidParameters,
    LimitOrderError,
    NetworkUnavailable,
    RemoteRejected,
    RpcError,
    SigningFailure,
)

ORDER_HASH = "0x" + "ab" * 32
USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"


def _service() -> MagicMock:
    service = MagicMock()
    service.create_order = AsyncMock(
        return_value={"order": {"hash": ORDER_HASH}, "orderHash": ORDER_HASH, "signature": "0xsig"}
    )
    service.submit_order = AsyncMock(return_value={"orderId": ORDER_HASH, "orderHash": ORDER_HASH})
    service.get_active_orders = AsyncMock(return_value={"count": 2, "orders": [{}, {}]})
    service.get_order_status = AsyncMock(return_value={"orderHash": ORDER_HASH, "state": "ACTIVE"})
    service.cancel_order = AsyncMock(return_value={"orderHash": ORDER_HASH, "txHash": "0xcd"})
    service.get_token_balance = AsyncMock(return_value={"token": USDT, "balance": "5"})
    service.get_allowance = AsyncMock(return_value={"token": USDT, "allowance": "0"})
    service.ensure_allowance = AsyncMock(return_value={"skipped": True, "txHash": None})
    service.health.return_value = {"wallet": "0xwallet", "chainId": 1}
    service.tokens.return_value = {"tokens": {}, "chainId": 999}
    return service


def _body(payload) -> bytes:
    return json.dumps(payload).encode()


class TestStatusForError:

    @pytest.mark.parametrize(
        "exc,status",
        [
            (InvalidParameters("bad"), 400),
            (InsufficientAllowance("0xt", "0xs", 1, 2), 409),
            (RemoteRejected(400, "nope"), 502),
            (RpcError("down"), 502),
            (NetworkUnavailable("timeout"), 503),
            (SigningFailure("no key"), 500),
            (LimitOrderError("other"), 500),
        ],
    )
    def test_mapping(self, exc: LimitOrderError, status: int) -> None:
        assert status_for_error(exc) == status


class TestDispatch:

    @pytest.fixture
    def server(self) -> ApiServer:
        return ApiServer(_service(), port=0, host="127.0.0.1")

    @pytest.mark.asyncio
    async def test_health(self, server: ApiServer) -> None:
        status, envelope = await server.dispatch("GET", "/api/health")
        assert status == 200
        assert envelope["success"] is True
        assert envelope["message"] == "1inch Limit Order API is running"
        assert envelope["wallet"] == "0xwallet"

    @pytest.mark.asyncio
    async def test_tokens_unknown_chain(self, server: ApiServer) -> None:
        status, envelope = await server.dispatch("GET", "/api/tokens")
        assert status == 200
        assert envelope["tokens"] == {}
        assert envelope["chainId"] == 999

    @pytest.mark.asyncio
    async def test_create_order(self, server: ApiServer) -> None:
        body = _body(
            {
                "makerAsset": USDT,
                "takerAsset": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
                "makingAmount": "100000000",
                "takingAmount": "30000000000000000",
                "expirationMinutes": 120,
            }
        )
        status, envelope = await server.dispatch("POST", "/api/orders/create", body)
        assert status == 200
        assert envelope["message"] == "Order created and signed successfully"
        assert envelope["orderHash"] == ORDER_HASH
        kwargs = server._service.create_order.await_args.kwargs
        assert kwargs["making_amount"] == "100000000"
        assert kwargs["expiration_minutes"] == 120

    @pytest.mark.asyncio
    async def test_create_missing_fields(self, server: ApiServer) -> None:
        status, envelope = await server.dispatch(
            "POST", "/api/orders/create", _body({"makerAsset": USDT})
        )
        assert status == 400
        assert envelope["success"] is False
        assert envelope["message"] == "Missing required fields: takerAsset, makingAmount, takingAmount"
        server._service.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json(self, server: ApiServer) -> None:
        status, envelope = await server.dispatch("POST", "/api/orders/submit", b"{not json")
        assert status == 400
        assert "not valid JSON" in envelope["message"]

    @pytest.mark.asyncio
    async def test_submit_passes_order_hash(self, server: ApiServer) -> None:
        body = _body({"order": {"salt": "1"}, "signature": "0xsig", "orderHash": ORDER_HASH})
        status, envelope = await server.dispatch("POST", "/api/orders/submit", body)
        assert status == 200
        assert envelope["message"] == "Order submitted to 1inch network"
        server._service.submit_order.assert_awaited_once_with(
            {"salt": "1"}, "0xsig", order_hash=ORDER_HASH
        )

    @pytest.mark.asyncio
    async def test_submit_insufficient_allowance_is_409(self, server: ApiServer) -> None:
        server._service.submit_order.side_effect = InsufficientAllowance(USDT, "0xrouter", 0, 5)
        body = _body({"order": {"salt": "1"}, "signature": "0xsig"})
        status, envelope = await server.dispatch("POST", "/api/orders/submit", body)
        assert status == 409
        assert envelope["error"]["type"] == "InsufficientAllowance"
        assert envelope["error"]["required"] == "5"

    @pytest.mark.asyncio
    async def test_submit_remote_rejected_is_502(self, server: ApiServer) -> None:
        server._service.submit_order.side_effect = RemoteRejected(400, "Invalid signature")
        body = _body({"order": {"salt": "1"}, "signature": "0xsig"})
        status, envelope = await server.dispatch("POST", "/api/orders/submit", body)
        assert status == 502
        assert envelope["error"]["code"] == 400
        assert envelope["error"]["reason"] == "Invalid signature"

    @pytest.mark.asyncio
    async def test_network_unavailable_is_503_without_data(self, server: ApiServer) -> None:
        server._service.get_active_orders.side_effect = NetworkUnavailable("GET failed")
        status, envelope = await server.dispatch("GET", "/api/orders/active")
        assert status == 503
        assert envelope["success"] is False
        assert "orders" not in envelope

    @pytest.mark.asyncio
    async def test_active_orders_query(self, server: ApiServer) -> None:
        status, envelope = await server.dispatch("GET", "/api/orders/active?page=2&limit=10")
        assert status == 200
        assert envelope["message"] == "Found 2 active orders"
        server._service.get_active_orders.assert_awaited_once_with(page=2, limit=10)

    @pytest.mark.asyncio
    async def test_active_orders_bad_query(self, server: ApiServer) -> None:
        status, _ = await server.dispatch("GET", "/api/orders/active?limit=many")
        assert status == 400

    @pytest.mark.asyncio
    async def test_order_status(self, server: ApiServer) -> None:
        status, envelope = await server.dispatch("GET", f"/api/orders/{ORDER_HASH}/status")
        assert status == 200
        assert envelope["state"] == "ACTIVE"
        server._service.get_order_status.assert_awaited_once_with(ORDER_HASH)

    @pytest.mark.asyncio
    async def test_cancel(self, server: ApiServer) -> None:
        status, envelope = await server.dispatch("DELETE", f"/api/orders/{ORDER_HASH}")
        assert status == 200
        assert envelope["message"] == "Order canceled successfully"
        assert envelope["txHash"] == "0xcd"

    @pytest.mark.asyncio
    async def test_cancel_rpc_error_is_502(self, server: ApiServer) -> None:
        server._service.cancel_order.side_effect = RpcError("reverted", tx_hash="0xcd")
        status, envelope = await server.dispatch("DELETE", f"/api/orders/{ORDER_HASH}")
        assert status == 502
        assert envelope["error"]["tx_hash"] == "0xcd"

    @pytest.mark.asyncio
    async def test_balance(self, server: ApiServer) -> None:
        status, envelope = await server.dispatch("GET", f"/api/balance/{USDT}")
        assert status == 200
        assert envelope["balance"] == "5"
        server._service.get_token_balance.assert_awaited_once_with(USDT)

    @pytest.mark.asyncio
    async def test_allowance_with_spender(self, server: ApiServer) -> None:
        status, _ = await server.dispatch("GET", f"/api/allowance/{USDT}?spender=0xabc")
        assert status == 200
        server._service.get_allowance.assert_awaited_once_with(USDT, "0xabc")

    @pytest.mark.asyncio
    async def test_approve_skipped_message(self, server: ApiServer) -> None:
        body = _body({"token": USDT, "amount": "100"})
        status, envelope = await server.dispatch("POST", "/api/allowance/approve", body)
        assert status == 200
        assert envelope["message"] == "Allowance already sufficient, no transaction sent"

    @pytest.mark.asyncio
    async def test_unknown_route(self, server: ApiServer) -> None:
        status, envelope = await server.dispatch("GET", "/api/nothing")
        assert status == 404
        assert envelope["success"] is False

    @pytest.mark.asyncio
    async def test_wrong_method(self, server: ApiServer) -> None:
        status, _ = await server.dispatch("GET", "/api/orders/create")
        assert status == 405

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(self, server: ApiServer) -> None:
        server._service.health.side_effect = KeyError("boom")
        status, envelope = await server.dispatch("GET", "/api/health")
        assert status == 500
        assert envelope["message"] == "Internal server error"


class TestHttpHandler:

    async def _roundtrip(self, server: ApiServer, raw: bytes) -> str:
        tcp = await asyncio.start_server(server._handle_connection, "127.0.0.1", 0)
        port = tcp.sockets[0].getsockname()[1]
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            writer.write(raw)
            await writer.drain()
            response = await reader.read()
            writer.close()
            await writer.wait_closed()
        finally:
            tcp.close()
            await tcp.wait_closed()
        return response.decode()

    @pytest.mark.asyncio
    async def test_http_health_endpoint(self) -> None:
        server = ApiServer(_service(), port=0)
        response = await self._roundtrip(server, b"GET /api/health HTTP/1.0\r\nHost: localhost\r\n\r\n")
        assert "200 OK" in response
        assert "Access-Control-Allow-Origin: *" in response
        body = json.loads(response.split("\r\n\r\n", 1)[1])
        assert body["success"] is True

    @pytest.mark.asyncio
    async def test_http_post_with_body(self) -> None:
        server = ApiServer(_service(), port=0)
        payload = _body({"token": USDT, "amount": "100"})
        raw = (
            b"POST /api/allowance/approve HTTP/1.0\r\n"
            b"Content-Type: application/json\r\n"
            + f"Content-Length: {len(payload)}\r\n\r\n".encode()
            + payload
        )
        response = await self._roundtrip(server, raw)
        assert "200 OK" in response
        server._service.ensure_allowance.assert_awaited_once_with(USDT, "100", spender=None)

    @pytest.mark.asyncio
    async def test_http_options_preflight(self) -> None:
        server = ApiServer(_service(), port=0)
        response = await self._roundtrip(server, b"OPTIONS /api/orders/create HTTP/1.0\r\n\r\n")
        assert "204 No Content" in response
        assert "Access-Control-Allow-Methods" in response

    @pytest.mark.asyncio
    async def test_http_body_too_large(self) -> None:
        server = ApiServer(_service(), port=0)
        response = await self._roundtrip(
            server, b"POST /api/orders/create HTTP/1.0\r\nContent-Length: 999999\r\n\r\n"
        )
        assert "413" in response

    @pytest.mark.asyncio
    async def test_server_lifecycle(self) -> None:
        server = ApiServer(_service(), port=0, host="127.0.0.1")
        await server.start_server()
        try:
            assert server.port != 0
        finally:
            await server.stop_server()
