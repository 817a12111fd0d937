"""HTTP facade — JSON REST endpoints over ``LimitOrderService``.

A lightweight HTTP/1.0 server built on ``asyncio.start_server``,
exposing:

- ``POST   /api/orders/create``        — build and sign an order
- ``POST   /api/orders/submit``        — publish a signed order
- ``GET    /api/orders/active``        — this wallet's active orders
- ``GET    /api/orders/:hash/status``  — remote status of one order
- ``DELETE /api/orders/:hash``         — cancel an order on-chain
- ``GET    /api/balance/:token``       — wallet balance of a token
- ``GET    /api/allowance/:token``     — router allowance of a token
- ``POST   /api/allowance/approve``    — approve the router if needed
- ``GET    /api/health``               — liveness and wallet info
- ``GET    /api/tokens``               — known tokens of the chain

Every response is a JSON envelope ``{"success", "message", ...payload}``.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, unquote, urlsplit

import structlog

from core.errors import (
    InsufficientAllowance,
    InvalidParameters,
    LimitOrderError,
    NetworkUnavailable,
    RemoteRejected,
    RpcError,
)

logger = structlog.get_logger("api.server")

__all__ = ["ApiServer", "status_for_error"]

_MAX_BODY_BYTES = 64 * 1024
_READ_TIMEOUT_S = 5.0

_REASONS = {
    200: "OK",
    204: "No Content",
    400: "Bad Request",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    413: "Payload Too Large",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
}

Handler = Callable[[dict[str, str], dict[str, str], Any], Awaitable[tuple[str, dict[str, Any]]]]


class _HttpError(Exception):
    """Protocol-level error answered before reaching a handler."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message


@dataclass(frozen=True)
class _Route:
    method: str
    pattern: re.Pattern[str]
    handler: Handler


def status_for_error(exc: LimitOrderError) -> int:
    """HTTP status code for an error from the taxonomy."""
    if isinstance(exc, InvalidParameters):
        return 400
    if isinstance(exc, InsufficientAllowance):
        return 409
    if isinstance(exc, (RemoteRejected, RpcError)):
        return 502
    if isinstance(exc, NetworkUnavailable):
        return 503
    return 500


def _require(body: Any, *names: str) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise InvalidParameters("request body must be a JSON object")
    missing = [n for n in names if body.get(n) in (None, "")]
    if missing:
        raise InvalidParameters(f"Missing required fields: {', '.join(missing)}")
    return body


class ApiServer:
    """JSON HTTP server for the limit order service.

    Parameters
    ----------
    service:
        ``LimitOrderService`` (or any object with the same methods).
    port:
        TCP port for the server.
    host:
        Bind address.
    """

    def __init__(self, service: Any, port: int = 3001, host: str = "0.0.0.0") -> None:
        self._service = service
        self._port = port
        self._host = host
        self._server: asyncio.Server | None = None
        self._routes = [
            _Route("POST", re.compile(r"^/api/orders/create$"), self._create_order),
            _Route("POST", re.compile(r"^/api/orders/submit$"), self._submit_order),
            _Route("GET", re.compile(r"^/api/orders/active$"), self._active_orders),
            _Route("GET", re.compile(r"^/api/orders/(?P<hash>[^/]+)/status$"), self._order_status),
            _Route("DELETE", re.compile(r"^/api/orders/(?P<hash>[^/]+)$"), self._cancel_order),
            _Route("GET", re.compile(r"^/api/balance/(?P<token>[^/]+)$"), self._balance),
            _Route("GET", re.compile(r"^/api/allowance/(?P<token>[^/]+)$"), self._allowance),
            _Route("POST", re.compile(r"^/api/allowance/approve$"), self._approve),
            _Route("GET", re.compile(r"^/api/health$"), self._health),
            _Route("GET", re.compile(r"^/api/tokens$"), self._tokens),
        ]

    @property
    def port(self) -> int:
        """Bound port (useful when started with port 0)."""
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    # ── HTTP server lifecycle ───────────────────────────────────

    async def start_server(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection,
            self._host,
            self._port,
        )
        logger.info("api.server_started", host=self._host, port=self.port)

    async def stop_server(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.info("api.server_stopped")

    # ── Dispatch ────────────────────────────────────────────────

    async def dispatch(
        self,
        method: str,
        target: str,
        body: bytes = b"",
    ) -> tuple[int, dict[str, Any]]:
        """Route one request and return ``(status, envelope)``."""
        split = urlsplit(target)
        path = split.path.rstrip("/") or "/"
        query = {k: v[-1] for k, v in parse_qs(split.query).items()}

        path_matched = False
        for route in self._routes:
            match = route.pattern.match(path)
            if match is None:
                continue
            path_matched = True
            if route.method != method:
                continue
            params = {k: unquote(v) for k, v in match.groupdict().items()}
            return await self._invoke(route, method, path, params, query, body)

        if path_matched:
            return 405, {"success": False, "message": f"Method {method} not allowed on {path}"}
        return 404, {"success": False, "message": f"No route for {method} {path}"}

    async def _invoke(
        self,
        route: _Route,
        method: str,
        path: str,
        params: dict[str, str],
        query: dict[str, str],
        raw_body: bytes,
    ) -> tuple[int, dict[str, Any]]:
        try:
            body = json.loads(raw_body) if raw_body.strip() else None
        except ValueError:
            return 400, {"success": False, "message": "Request body is not valid JSON"}

        try:
            message, payload = await route.handler(params, query, body)
        except LimitOrderError as exc:
            status = status_for_error(exc)
            logger.warning(
                "api.request_failed",
                method=method,
                path=path,
                status=status,
                error=exc.to_dict(),
            )
            return status, {"success": False, "message": str(exc), "error": exc.to_dict()}
        except Exception as exc:
            logger.exception("api.unhandled_error", method=method, path=path)
            return 500, {
                "success": False,
                "message": "Internal server error",
                "error": {"type": type(exc).__name__, "detail": str(exc)},
            }

        logger.info("api.request", method=method, path=path, status=200)
        return 200, {"success": True, "message": message, **payload}

    # ── Route handlers ──────────────────────────────────────────

    async def _create_order(self, params, query, body) -> tuple[str, dict[str, Any]]:
        body = _require(body, "makerAsset", "takerAsset", "makingAmount", "takingAmount")
        payload = await self._service.create_order(
            maker_asset=body["makerAsset"],
            taker_asset=body["takerAsset"],
            making_amount=body["makingAmount"],
            taking_amount=body["takingAmount"],
            expiration_minutes=body.get("expirationMinutes"),
        )
        return "Order created and signed successfully", payload

    async def _submit_order(self, params, query, body) -> tuple[str, dict[str, Any]]:
        body = _require(body, "order", "signature")
        payload = await self._service.submit_order(
            body["order"],
            body["signature"],
            order_hash=body.get("orderHash"),
        )
        return "Order submitted to 1inch network", payload

    async def _active_orders(self, params, query, body) -> tuple[str, dict[str, Any]]:
        try:
            page = int(query.get("page", "1"))
            limit = int(query.get("limit", "100"))
        except ValueError:
            raise InvalidParameters("page and limit must be integers") from None
        payload = await self._service.get_active_orders(page=page, limit=limit)
        return f"Found {payload['count']} active orders", payload

    async def _order_status(self, params, query, body) -> tuple[str, dict[str, Any]]:
        payload = await self._service.get_order_status(params["hash"])
        return "Order status retrieved", payload

    async def _cancel_order(self, params, query, body) -> tuple[str, dict[str, Any]]:
        payload = await self._service.cancel_order(params["hash"])
        return "Order canceled successfully", payload

    async def _balance(self, params, query, body) -> tuple[str, dict[str, Any]]:
        payload = await self._service.get_token_balance(params["token"])
        return "Balance retrieved", payload

    async def _allowance(self, params, query, body) -> tuple[str, dict[str, Any]]:
        payload = await self._service.get_allowance(params["token"], query.get("spender"))
        return "Allowance retrieved", payload

    async def _approve(self, params, query, body) -> tuple[str, dict[str, Any]]:
        body = _require(body, "token", "amount")
        payload = await self._service.ensure_allowance(
            body["token"], body["amount"], spender=body.get("spender")
        )
        if payload["skipped"]:
            return "Allowance already sufficient, no transaction sent", payload
        return "Approval transaction confirmed", payload

    async def _health(self, params, query, body) -> tuple[str, dict[str, Any]]:
        return "1inch Limit Order API is running", self._service.health()

    async def _tokens(self, params, query, body) -> tuple[str, dict[str, Any]]:
        return "Token addresses retrieved", self._service.tokens()

    # ── HTTP handler ────────────────────────────────────────────

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single HTTP connection."""
        try:
            try:
                method, target, body = await self._read_request(reader)
            except _HttpError as exc:
                await self._send_json(writer, exc.status, {"success": False, "message": exc.message})
                return
            if method is None:
                return

            if method == "OPTIONS":
                await self._send_response(writer, 204, b"")
                return

            status, envelope = await self.dispatch(method, target, body)
            await self._send_json(writer, status, envelope)

        except (asyncio.TimeoutError, ConnectionError, asyncio.IncompleteReadError):
            logger.debug("api.connection_dropped")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    @staticmethod
    async def _read_request(
        reader: asyncio.StreamReader,
    ) -> tuple[str | None, str, bytes]:
        request_line = await asyncio.wait_for(reader.readline(), timeout=_READ_TIMEOUT_S)
        if not request_line:
            return None, "", b""

        parts = request_line.decode("latin-1").strip().split()
        if len(parts) < 2:
            raise _HttpError(400, "Malformed request line")
        method, target = parts[0].upper(), parts[1]

        content_length = 0
        while True:
            header_line = await asyncio.wait_for(reader.readline(), timeout=_READ_TIMEOUT_S)
            if header_line in (b"\r\n", b"\n", b""):
                break
            name, _, value = header_line.decode("latin-1").partition(":")
            if name.strip().lower() == "content-length":
                try:
                    content_length = int(value.strip())
                except ValueError:
                    raise _HttpError(400, "Invalid Content-Length") from None

        if content_length < 0:
            raise _HttpError(400, "Invalid Content-Length")
        if content_length > _MAX_BODY_BYTES:
            raise _HttpError(413, "Request body too large")

        body = b""
        if content_length:
            body = await asyncio.wait_for(
                reader.readexactly(content_length), timeout=_READ_TIMEOUT_S
            )
        return method, target, body

    async def _send_json(
        self,
        writer: asyncio.StreamWriter,
        status_code: int,
        payload: dict[str, Any],
    ) -> None:
        body = json.dumps(payload, default=str).encode()
        await self._send_response(writer, status_code, body, content_type="application/json")

    @staticmethod
    async def _send_response(
        writer: asyncio.StreamWriter,
        status_code: int,
        body: bytes,
        content_type: str = "text/plain",
    ) -> None:
        """Write a minimal HTTP/1.0 response with permissive CORS headers."""
        reason = _REASONS.get(status_code, "Unknown")
        header = (
            f"HTTP/1.0 {status_code} {reason}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(body)}\r\n"
            "Access-Control-Allow-Origin: *\r\n"
            "Access-Control-Allow-Methods: GET, POST, DELETE, OPTIONS\r\n"
            "Access-Control-Allow-Headers: Content-Type, Authorization\r\n"
            "Connection: close\r\n"
            "\r\n"
        )
        writer.write(header.encode() + body)
        await writer.drain()
