"""LimitOrderService — create, sign, submit, query and cancel limit orders.

Wires the order builder, the EIP-712 signer, the orderbook client and the
token helper together. Each method returns the JSON-ready payload shared
by the HTTP facade and the CLI. Every failure propagates as a
``core.errors`` exception.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import structlog
from eth_utils import is_address, to_checksum_address

from config.settings import Settings
from core.errors import InvalidParameters, RemoteRejected
from data.orderbook_client import OrderbookClient
from models.order import LimitOrder, build_order, derive_state, parse_uint
from models.tokens import tokens_for_chain
from web3_infra.eip712_signer import OrderSigner, recover_signer
from web3_infra.rpc_manager import RPCManager, RPCManagerConfig
from web3_infra.token_helper import TokenHelper, TokenHelperConfig

logger = structlog.get_logger("execution.order_service")

_ORDER_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def check_order_hash(order_hash: Any) -> str:
    """Validate a 0x-prefixed 32-byte hash and return it lower-cased."""
    if not isinstance(order_hash, str) or not _ORDER_HASH_RE.match(order_hash):
        raise InvalidParameters(f"malformed order hash: {order_hash!r}", field="orderHash")
    return order_hash.lower()


def _record_dict(value: Any, what: str) -> dict[str, Any]:
    """Guard against order records that are not JSON objects."""
    if not isinstance(value, dict):
        raise RemoteRejected(200, f"unexpected order record shape: {what} is {type(value).__name__}")
    return value


@dataclass
class OrderServiceConfig:
    """Static parameters of the service."""

    chain_id: int = 1
    router_address: str = "0x111111125421ca6dc452d289314280a0f8842a65"
    default_expiration_minutes: int = 60

    # Check the maker-asset allowance before submitting
    check_allowance: bool = True

    # Send an approval instead of failing when the allowance is short
    auto_approve: bool = False


class LimitOrderService:
    """Wallet-bound limit order operations.

    Parameters
    ----------
    signer:
        Started ``OrderSigner`` holding the wallet key.
    orderbook:
        Connected ``OrderbookClient``.
    tokens:
        ``TokenHelper`` bound to the same wallet.
    config:
        Chain, router and approval policy.
    rpc_manager:
        Optional ``RPCManager``; reported by :meth:`health`.
    """

    def __init__(
        self,
        signer: OrderSigner,
        orderbook: OrderbookClient,
        tokens: TokenHelper,
        config: OrderServiceConfig | None = None,
        rpc_manager: RPCManager | None = None,
    ) -> None:
        self._signer = signer
        self._orderbook = orderbook
        self._tokens = tokens
        self._config = config or OrderServiceConfig()
        self._rpc = rpc_manager

    @classmethod
    def from_settings(cls, settings: Settings) -> LimitOrderService:
        """Build the service and its collaborators from configuration.

        Raises
        ------
        SigningFailure
            If ``PRIVATE_KEY`` is missing or invalid.
        """
        signer = OrderSigner(settings.PRIVATE_KEY)
        rpc = RPCManager(
            endpoints=settings.rpc_endpoints(),
            config=RPCManagerConfig(request_timeout_s=settings.RPC_TIMEOUT_SECONDS),
        )
        orderbook = OrderbookClient(
            chain_id=settings.CHAIN_ID,
            api_key=settings.ONEINCH_API_KEY,
            base_url=settings.ORDERBOOK_BASE_URL,
            timeout_s=settings.HTTP_TIMEOUT_SECONDS,
            max_retries=settings.HTTP_MAX_RETRIES,
            rate_limit_rps=settings.RATE_LIMIT_RPS,
        )
        tokens = TokenHelper(
            rpc_manager=rpc,
            account=signer.account,
            config=TokenHelperConfig(
                chain_id=settings.CHAIN_ID,
                approve_unlimited=settings.APPROVE_UNLIMITED,
                tx_confirmation_timeout_s=settings.TX_CONFIRMATION_TIMEOUT_SECONDS,
            ),
        )
        config = OrderServiceConfig(
            chain_id=settings.CHAIN_ID,
            router_address=settings.ROUTER_ADDRESS,
            default_expiration_minutes=settings.DEFAULT_EXPIRATION_MINUTES,
            auto_approve=settings.AUTO_APPROVE,
        )
        return cls(signer, orderbook, tokens, config=config, rpc_manager=rpc)

    @property
    def wallet(self) -> str:
        return self._signer.address

    @property
    def chain_id(self) -> int:
        return self._config.chain_id

    @property
    def config(self) -> OrderServiceConfig:
        return self._config

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        self._signer.start()
        await self._orderbook.connect()
        if self._rpc is not None:
            await self._rpc.start()
        logger.info(
            "order_service.started",
            wallet=self.wallet,
            chain_id=self.chain_id,
            router=self._config.router_address,
        )

    async def stop(self) -> None:
        if self._rpc is not None:
            await self._rpc.stop()
        await self._orderbook.disconnect()
        self._signer.shutdown()
        logger.info("order_service.stopped")

    async def __aenter__(self) -> LimitOrderService:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ── Orders ───────────────────────────────────────────────────

    async def create_order(
        self,
        maker_asset: str,
        taker_asset: str,
        making_amount: int | str,
        taking_amount: int | str,
        expiration_minutes: int | None = None,
        salt: int | None = None,
        now: int | None = None,
    ) -> dict[str, Any]:
        """Build and sign an order; nothing is sent to the network."""
        if expiration_minutes is None:
            expiration_minutes = self._config.default_expiration_minutes
        order = build_order(
            maker_asset=maker_asset,
            taker_asset=taker_asset,
            making_amount=making_amount,
            taking_amount=taking_amount,
            maker=self.wallet,
            expiration_minutes=expiration_minutes,
            salt=salt,
            now=now,
        )
        signed = await self._signer.sign_order(
            order, self._config.chain_id, self._config.router_address
        )
        logger.info(
            "order_service.order_created",
            order_hash=signed.order_hash,
            maker_asset=order.maker_asset,
            taker_asset=order.taker_asset,
            making_amount=str(order.making_amount),
            taking_amount=str(order.taking_amount),
            expiration=order.traits.expiration,
        )
        return {
            "order": {"hash": signed.order_hash, **order.build_order_data()},
            "orderHash": signed.order_hash,
            "signature": signed.signature,
            "expiration": order.traits.expiration,
        }

    async def submit_order(
        self,
        order_data: dict[str, Any],
        signature: str,
        order_hash: str | None = None,
    ) -> dict[str, Any]:
        """Verify a signed order and publish it to the orderbook.

        The hash is recomputed from ``order_data``; a supplied
        ``order_hash`` must match it and the signature must recover to the
        order's maker.

        Raises
        ------
        InvalidParameters
            Hash mismatch, bad signature, or an already expired order.
        InsufficientAllowance
            Allowance check enabled, allowance short, auto-approve off.
        NetworkUnavailable, RemoteRejected
            From the orderbook API.
        """
        if not isinstance(signature, str) or not signature:
            raise InvalidParameters("signature is required", field="signature")
        order = LimitOrder.from_order_data(order_data)
        chain_id, router = self._config.chain_id, self._config.router_address
        computed = order.get_order_hash(chain_id, router)

        if order_hash is not None and check_order_hash(order_hash) != computed.lower():
            raise InvalidParameters(
                f"orderHash {order_hash} does not match order data ({computed})",
                field="orderHash",
            )
        if recover_signer(order, signature, chain_id, router) != order.maker:
            raise InvalidParameters("signature was not produced by the order maker", field="signature")
        if order.traits.is_expired():
            raise InvalidParameters("order has already expired", field="makerTraits")

        approval = None
        if self._config.check_allowance and order.maker == self.wallet:
            result = await self._tokens.ensure_allowance(
                order.maker_asset,
                router,
                order.making_amount,
                approve=self._config.auto_approve,
            )
            approval = _approval_payload(result)

        response = await self._orderbook.submit_order(computed, signature, order.build_order_data())
        order_id = response.get("orderId") or response.get("id") or computed
        logger.info("order_service.order_submitted", order_hash=computed, order_id=order_id)
        payload: dict[str, Any] = {"orderId": order_id, "orderHash": computed, "data": response}
        if approval is not None:
            payload["approval"] = approval
        return payload

    async def get_active_orders(self, page: int = 1, limit: int = 100) -> dict[str, Any]:
        """Active orders of this wallet as reported by the orderbook."""
        if page < 1 or not 1 <= limit <= 500:
            raise InvalidParameters("page must be >= 1 and limit within 1..500", field="limit")
        orders = await self._orderbook.get_orders_by_maker(self.wallet, page=page, limit=limit)
        return {"count": len(orders), "orders": orders}

    async def get_order_status(self, order_hash: str) -> dict[str, Any]:
        """Remote status of one order plus its interpreted state."""
        order_hash = check_order_hash(order_hash)
        record = _record_dict(await self._orderbook.get_order_by_hash(order_hash), "record")
        return {
            "orderHash": order_hash,
            "state": derive_state(record).value,
            "status": record,
        }

    async def cancel_order(self, order_hash: str) -> dict[str, Any]:
        """Cancel one of this wallet's orders on-chain.

        The maker traits are read from the orderbook record, then the
        router's ``cancelOrder`` is called from the wallet.
        """
        order_hash = check_order_hash(order_hash)
        record = _record_dict(await self._orderbook.get_order_by_hash(order_hash), "record")
        data = _record_dict(record.get("data") or {}, "data")

        maker = data.get("maker")
        owned = isinstance(maker, str) and is_address(maker)
        if not owned or to_checksum_address(maker) != self.wallet:
            raise InvalidParameters(
                f"order {order_hash} is not owned by wallet {self.wallet}", field="orderHash"
            )
        try:
            maker_traits = parse_uint(data.get("makerTraits", 0))
        except ValueError as exc:
            raise InvalidParameters(f"remote makerTraits unreadable: {exc}", field="makerTraits") from exc

        tx = await self._tokens.cancel_order(self._config.router_address, maker_traits, order_hash)
        return {
            "orderHash": order_hash,
            "txHash": tx.tx_hash,
            "blockNumber": tx.block_number,
        }

    # ── Balances & allowances ────────────────────────────────────

    async def get_token_balance(self, token: str) -> dict[str, Any]:
        balance = await self._tokens.get_balance(token)
        return {
            "token": balance.token,
            "balance": str(balance.raw),
            "decimals": balance.decimals,
            "formatted": balance.formatted,
        }

    async def get_allowance(self, token: str, spender: str | None = None) -> dict[str, Any]:
        spender = spender or self._config.router_address
        allowance = await self._tokens.get_allowance(token, spender)
        return {
            "token": to_checksum_address(token),
            "spender": to_checksum_address(spender),
            "allowance": str(allowance),
        }

    async def ensure_allowance(
        self,
        token: str,
        amount: int | str,
        spender: str | None = None,
    ) -> dict[str, Any]:
        """Approve ``spender`` (router by default) for ``amount`` if needed."""
        try:
            required = parse_uint(amount)
        except ValueError as exc:
            raise InvalidParameters(f"amount: {exc}", field="amount") from exc
        spender = spender or self._config.router_address
        result = await self._tokens.ensure_allowance(token, spender, required, approve=True)
        return {
            "token": to_checksum_address(token),
            "spender": to_checksum_address(spender),
            **_approval_payload(result),
        }

    # ── Static info ──────────────────────────────────────────────

    def tokens(self) -> dict[str, Any]:
        return {
            "tokens": dict(tokens_for_chain(self._config.chain_id)),
            "chainId": self._config.chain_id,
        }

    def health(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "wallet": self.wallet,
            "chainId": self._config.chain_id,
            "router": to_checksum_address(self._config.router_address),
        }
        if self._rpc is not None:
            payload["rpc"] = self._rpc.get_endpoint_status()
        return payload


def _approval_payload(result: Any) -> dict[str, Any]:
    return {
        "skipped": result.skipped,
        "allowance": str(result.allowance),
        "required": str(result.required),
        "txHash": result.tx_hash,
    }
