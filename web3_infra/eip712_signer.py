"""OrderSigner — EIP-712 signing of limit orders off the event loop.

Signing is elliptic-curve math, so it runs in an executor instead of on
the asyncio event loop. The wallet key never leaves this module and is
never logged.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import structlog
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import encode_hex, keccak

from core.errors import InvalidParameters, SigningFailure
from models.order import LimitOrder

logger = structlog.get_logger("web3_infra.eip712_signer")


@dataclass(frozen=True)
class SignedOrder:
    """An order together with its hash and the maker's signature."""

    order: LimitOrder
    order_hash: str
    signature: str


# ── Module-level signing function ──────────────────────────────────


def _sign_typed_data_sync(account: Any, typed_data: dict[str, Any]) -> tuple[str, str]:
    """Return ``(digest, signature)`` for ``typed_data``, both 0x-prefixed hex."""
    signable = encode_typed_data(full_message=typed_data)
    signed = account.sign_message(signable)
    digest = encode_hex(keccak(b"\x19" + signable.version + signable.header + signable.body))
    return digest, encode_hex(signed.signature)


def recover_signer(
    order: LimitOrder,
    signature: str,
    chain_id: int,
    verifying_contract: str,
) -> str:
    """Recover the address that produced ``signature`` over ``order``.

    Raises
    ------
    InvalidParameters
        If the signature is malformed.
    """
    signable = encode_typed_data(
        full_message=order.get_typed_data(chain_id, verifying_contract)
    )
    try:
        return Account.recover_message(signable, signature=signature)
    except Exception as exc:
        raise InvalidParameters(f"malformed signature: {exc}", field="signature") from exc


# ── Async signer class ──────────────────────────────────────────────


class OrderSigner:
    """Async-safe EIP-712 order signer bound to one wallet key.

    Parameters
    ----------
    private_key:
        Hex-encoded private key (``0x`` prefix optional).
    max_workers:
        Number of threads in the signing pool.  Defaults to 1.

    Raises
    ------
    SigningFailure
        If the key is missing or not a valid secp256k1 key.
    """

    def __init__(self, private_key: str, max_workers: int = 1) -> None:
        if not private_key:
            raise SigningFailure("no wallet key configured (set PRIVATE_KEY)")
        try:
            self._account = Account.from_key(private_key)
        except Exception as exc:
            raise SigningFailure(f"invalid wallet key: {type(exc).__name__}") from None
        self._max_workers = max_workers
        self._pool: ThreadPoolExecutor | None = None

    @property
    def address(self) -> str:
        """Checksummed wallet address."""
        return self._account.address

    @property
    def account(self) -> Any:
        """Underlying ``LocalAccount`` (used to sign transactions)."""
        return self._account

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start the executor.  Idempotent."""
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="order-signer",
            )
            logger.info("eip712_signer.started", address=self.address)

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown the executor."""
        if self._pool is not None:
            self._pool.shutdown(wait=wait)
            self._pool = None
            logger.info("eip712_signer.shutdown")

    # ── Signing ──────────────────────────────────────────────────

    async def sign_order(
        self,
        order: LimitOrder,
        chain_id: int,
        verifying_contract: str,
    ) -> SignedOrder:
        """Sign ``order`` for the given chain and router contract.

        Returns
        -------
        SignedOrder
            The order, its EIP-712 hash and the signature.

        Raises
        ------
        SigningFailure
            If the signer has not been started, the order's maker is not
            this wallet, or the signing primitive fails.
        """
        if self._pool is None:
            raise SigningFailure("OrderSigner not started, call start() first")
        if order.maker != self.address:
            raise SigningFailure(
                f"order maker {order.maker} does not match wallet {self.address}"
            )

        typed_data = order.get_typed_data(chain_id, verifying_contract)
        loop = asyncio.get_running_loop()
        try:
            order_hash, signature = await loop.run_in_executor(
                self._pool,
                _sign_typed_data_sync,
                self._account,
                typed_data,
            )
        except Exception as exc:
            logger.error("eip712_signer.failed", error=str(exc))
            raise SigningFailure(f"signing failed: {exc}") from exc

        logger.debug("eip712_signer.signed", order_hash=order_hash)
        return SignedOrder(order=order, order_hash=order_hash, signature=signature)

    # ── Context manager ──────────────────────────────────────────

    async def __aenter__(self) -> OrderSigner:
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.shutdown(wait=True)
