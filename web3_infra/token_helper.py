"""TokenHelper — balances, allowances, approvals and on-chain order cancellation.

All reads and transactions go through ``RPCManager`` so every call has a
request timeout and endpoint failover. Transactions are signed locally
with the wallet account and confirmed before returning.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal, localcontext
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog
from eth_utils import is_address, to_checksum_address
from web3 import AsyncWeb3

from core.errors import InsufficientAllowance, InvalidParameters, RpcError
from models.order import UINT256_MAX
from models.tokens import NATIVE_DECIMALS, is_native

logger = structlog.get_logger("web3_infra.token_helper")

# ── ABI fragments ────────────────────────────────────────────────────

ERC20_ABI = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

ROUTER_CANCEL_ABI = [
    {
        "name": "cancelOrder",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "makerTraits", "type": "uint256"},
            {"name": "orderHash", "type": "bytes32"},
        ],
        "outputs": [],
    },
]


class TxStatus(str, Enum):
    """Transaction outcome."""

    CONFIRMED = "CONFIRMED"
    REVERTED = "REVERTED"


@dataclass(frozen=True)
class TxResult:
    """Result of a confirmed transaction."""

    tx_hash: str
    status: TxStatus
    gas_used: int
    block_number: int


@dataclass(frozen=True)
class TokenBalance:
    """Balance of one token for the wallet."""

    token: str
    raw: int
    decimals: int

    @property
    def formatted(self) -> str:
        """Human-readable amount, e.g. ``"1000"`` or ``"0.03"``."""
        with localcontext() as ctx:
            ctx.prec = 100
            value = Decimal(self.raw).scaleb(-self.decimals).normalize()
        return format(value, "f")


@dataclass(frozen=True)
class ApprovalResult:
    """Outcome of :meth:`TokenHelper.ensure_allowance`."""

    skipped: bool
    allowance: int
    required: int
    tx_hash: str | None = None


@dataclass
class TokenHelperConfig:
    """Configuration for the token helper."""

    chain_id: int = 1

    # Approve max uint256 instead of the exact amount
    approve_unlimited: bool = False

    # Transaction confirmation timeout in seconds
    tx_confirmation_timeout_s: float = 120.0


def needs_approval(allowance: int, amount: int) -> bool:
    """An approval is needed only when the allowance is strictly below the amount."""
    return allowance < amount


def _checksum(address: str, field: str) -> str:
    if not isinstance(address, str) or not is_address(address):
        raise InvalidParameters(f"invalid address: {address!r}", field=field)
    return to_checksum_address(address)


class TokenHelper:
    """Reads balances/allowances and sends approval and cancel transactions.

    Parameters
    ----------
    rpc_manager:
        Started ``RPCManager``.
    account:
        ``eth_account`` local account of the wallet.
    config:
        Chain id, approval policy and confirmation timeout.
    """

    def __init__(
        self,
        rpc_manager: Any,  # RPCManager
        account: Any,
        config: TokenHelperConfig | None = None,
    ) -> None:
        self._rpc = rpc_manager
        self._account = account
        self._config = config or TokenHelperConfig()

    @property
    def owner(self) -> str:
        return self._account.address

    @property
    def config(self) -> TokenHelperConfig:
        return self._config

    # ── Reads ────────────────────────────────────────────────────

    async def get_balance(self, token: str) -> TokenBalance:
        """Native balance for the zero address, ERC-20 ``balanceOf`` otherwise."""
        token = _checksum(token, "token")

        if is_native(token):
            raw = await self._rpc.execute(lambda w3: w3.eth.get_balance(self.owner))
            decimals = NATIVE_DECIMALS
        else:
            async def _read(w3: AsyncWeb3) -> tuple[int, int]:
                contract = w3.eth.contract(address=token, abi=ERC20_ABI)
                bal = await contract.functions.balanceOf(self.owner).call()
                dec = await contract.functions.decimals().call()
                return bal, dec

            raw, decimals = await self._rpc.execute(_read)

        balance = TokenBalance(token=token, raw=int(raw), decimals=int(decimals))
        logger.info(
            "token_helper.balance",
            token=token,
            raw=str(balance.raw),
            formatted=balance.formatted,
        )
        return balance

    async def get_allowance(self, token: str, spender: str) -> int:
        """ERC-20 allowance granted by the wallet to ``spender``."""
        token = _checksum(token, "token")
        spender = _checksum(spender, "spender")
        if is_native(token):
            raise InvalidParameters("native token has no allowance", field="token")

        async def _read(w3: AsyncWeb3) -> int:
            contract = w3.eth.contract(address=token, abi=ERC20_ABI)
            return await contract.functions.allowance(self.owner, spender).call()

        allowance = int(await self._rpc.execute(_read))
        logger.debug("token_helper.allowance", token=token, spender=spender, allowance=str(allowance))
        return allowance

    # ── Approval ─────────────────────────────────────────────────

    async def ensure_allowance(
        self,
        token: str,
        spender: str,
        amount: int,
        approve: bool = True,
    ) -> ApprovalResult:
        """Approve ``spender`` for ``amount`` unless the allowance already covers it.

        No transaction is sent when ``allowance >= amount``.

        Raises
        ------
        InsufficientAllowance
            If the allowance is short and ``approve`` is False.
        RpcError
            If the approval transaction fails or reverts.
        """
        if amount < 0 or amount > UINT256_MAX:
            raise InvalidParameters("amount must fit in uint256", field="amount")

        allowance = await self.get_allowance(token, spender)
        if not needs_approval(allowance, amount):
            logger.info(
                "token_helper.approval_sufficient",
                token=token,
                allowance=str(allowance),
                required=str(amount),
            )
            return ApprovalResult(skipped=True, allowance=allowance, required=amount)

        if not approve:
            raise InsufficientAllowance(
                token=to_checksum_address(token),
                spender=to_checksum_address(spender),
                allowance=allowance,
                required=amount,
            )

        approve_amount = UINT256_MAX if self._config.approve_unlimited else amount
        result = await self.approve(token, spender, approve_amount)
        return ApprovalResult(
            skipped=False,
            allowance=allowance,
            required=amount,
            tx_hash=result.tx_hash,
        )

    async def approve(self, token: str, spender: str, amount: int) -> TxResult:
        """Send an ERC-20 ``approve`` transaction and wait for confirmation."""
        token = _checksum(token, "token")
        spender = _checksum(spender, "spender")

        async def _build(w3: AsyncWeb3) -> dict[str, Any]:
            contract = w3.eth.contract(address=token, abi=ERC20_ABI)
            return await contract.functions.approve(spender, amount).build_transaction(
                await self._base_tx_params(w3)
            )

        result = await self._transact(_build)
        logger.info(
            "token_helper.approved",
            token=token,
            spender=spender,
            amount=str(amount),
            tx_hash=result.tx_hash,
        )
        return result

    # ── Order cancellation ───────────────────────────────────────

    async def cancel_order(self, router: str, maker_traits: int, order_hash: str) -> TxResult:
        """Invalidate an order on-chain via the router's ``cancelOrder``."""
        router = _checksum(router, "router")
        try:
            hash_bytes = bytes.fromhex(order_hash.removeprefix("0x"))
        except ValueError:
            raise InvalidParameters(f"malformed order hash: {order_hash!r}", field="orderHash") from None
        if len(hash_bytes) != 32:
            raise InvalidParameters("order hash must be 32 bytes", field="orderHash")

        async def _build(w3: AsyncWeb3) -> dict[str, Any]:
            contract = w3.eth.contract(address=router, abi=ROUTER_CANCEL_ABI)
            return await contract.functions.cancelOrder(maker_traits, hash_bytes).build_transaction(
                await self._base_tx_params(w3)
            )

        result = await self._transact(_build)
        logger.info("token_helper.order_cancelled", order_hash=order_hash, tx_hash=result.tx_hash)
        return result

    # ── Internals ────────────────────────────────────────────────

    async def _base_tx_params(self, w3: AsyncWeb3) -> dict[str, Any]:
        nonce = await w3.eth.get_transaction_count(self.owner, "pending")
        return {
            "from": self.owner,
            "nonce": nonce,
            "chainId": self._config.chain_id,
        }

    async def _transact(self, build: Callable[[AsyncWeb3], Awaitable[dict[str, Any]]]) -> TxResult:
        """Build and sign once, then broadcast and confirm.

        Only the nonce lookup and ``build`` may fail over freely. Once
        signed, every endpoint receives the same raw bytes, so a retried
        broadcast cannot become a second transaction.

        Raises
        ------
        RpcError
            If the receipt does not arrive in time or the transaction reverts.
        """
        tx = await self._rpc.execute(build)
        signed = self._account.sign_transaction(tx)
        tx_hash_hex = AsyncWeb3.to_hex(signed.hash)

        async def _broadcast(w3: AsyncWeb3) -> None:
            try:
                await w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as exc:
                # an earlier attempt already reached this node's mempool
                if "already known" not in str(exc).lower():
                    raise

        await self._rpc.execute(_broadcast)
        logger.info("token_helper.tx_sent", tx_hash=tx_hash_hex)

        timeout = self._config.tx_confirmation_timeout_s

        async def _confirm(w3: AsyncWeb3) -> Any:
            try:
                return await asyncio.wait_for(
                    w3.eth.wait_for_transaction_receipt(signed.hash, timeout=timeout),
                    timeout=timeout + 10,
                )
            except Exception as exc:
                logger.error("token_helper.tx_timeout", tx_hash=tx_hash_hex, error=str(exc))
                raise RpcError(
                    f"transaction {tx_hash_hex} not confirmed: {exc}",
                    last_error=exc,
                    tx_hash=tx_hash_hex,
                ) from exc

        receipt = await self._rpc.execute(_confirm)

        result = TxResult(
            tx_hash=tx_hash_hex,
            status=TxStatus.CONFIRMED if receipt.get("status", 0) == 1 else TxStatus.REVERTED,
            gas_used=receipt.get("gasUsed", 0),
            block_number=receipt.get("blockNumber", 0),
        )
        if result.status == TxStatus.REVERTED:
            logger.error("token_helper.tx_reverted", tx_hash=tx_hash_hex, gas_used=result.gas_used)
            raise RpcError("transaction reverted on-chain", tx_hash=tx_hash_hex)

        logger.info(
            "token_helper.tx_confirmed",
            tx_hash=tx_hash_hex,
            gas_used=result.gas_used,
            block=result.block_number,
        )
        return result
