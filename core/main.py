"""Entrypoint — HTTP facade on a uvloop event loop, stopped by SIGINT/SIGTERM."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import NoReturn

import uvloop

from api.server import ApiServer
from config.settings import settings
from core.errors import LimitOrderError
from core.logger import get_logger
from execution.order_service import LimitOrderService

log = get_logger(__name__)

ENDPOINTS = (
    "POST   /api/orders/create",
    "POST   /api/orders/submit",
    "GET    /api/orders/active",
    "GET    /api/orders/:hash/status",
    "DELETE /api/orders/:hash",
    "GET    /api/balance/:token",
    "GET    /api/allowance/:token",
    "POST   /api/allowance/approve",
    "GET    /api/health",
    "GET    /api/tokens",
)


async def serve(
    host: str | None = None,
    port: int | None = None,
    stop: asyncio.Event | None = None,
) -> None:
    """Run the HTTP facade until ``stop`` is set (by default on SIGINT/SIGTERM).

    Raises
    ------
    SigningFailure
        If no usable wallet key is configured.
    """
    service = LimitOrderService.from_settings(settings)
    server = ApiServer(
        service,
        port=settings.PORT if port is None else port,
        host=host or settings.HOST,
    )

    if stop is None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal, sig, stop)

    async with service:
        await server.start_server()
        log.info(
            "starting",
            app=settings.APP_NAME,
            env=settings.APP_ENV,
            wallet=service.wallet,
            chain_id=service.chain_id,
            port=server.port,
            endpoints=list(ENDPOINTS),
        )
        try:
            await stop.wait()
        finally:
            await server.stop_server()

    log.info("shutdown_complete")


def _on_signal(sig: signal.Signals, stop: asyncio.Event) -> None:
    log.info("signal_received", signal=sig.name)
    stop.set()


def run() -> NoReturn:
    """Console-script entry: serve with the configured host and port."""
    try:
        uvloop.run(serve())
    except LimitOrderError as exc:
        log.error("startup_failed", error=exc.to_dict())
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    run()
