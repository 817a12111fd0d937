"""LimitOrder — 1inch limit order protocol v4 order struct, traits and hashing."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from eth_account.messages import encode_typed_data
from eth_utils import encode_hex, is_address, keccak, to_checksum_address
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from core.errors import InvalidParameters

UINT256_MAX = 2**256 - 1
UINT40_MAX = 2**40 - 1
UINT80_MAX = 2**80 - 1

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

DOMAIN_NAME = "1inch Aggregation Router"
DOMAIN_VERSION = "6"

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

ORDER_TYPE = [
    {"name": "salt", "type": "uint256"},
    {"name": "maker", "type": "address"},
    {"name": "receiver", "type": "address"},
    {"name": "makerAsset", "type": "address"},
    {"name": "takerAsset", "type": "address"},
    {"name": "makingAmount", "type": "uint256"},
    {"name": "takingAmount", "type": "uint256"},
    {"name": "makerTraits", "type": "uint256"},
]


# ── Maker traits ────────────────────────────────────────────────────


@dataclass(frozen=True)
class MakerTraits:
    """Packed 256-bit maker traits.

    Layout (low to high)::

        [0, 80)    allowed sender (low 80 bits of the address)
        [80, 120)  expiration timestamp
        [120, 160) nonce or epoch
        [160, 200) series
        247..255   flags
    """

    value: int = 0

    NO_PARTIAL_FILLS_FLAG = 255
    ALLOW_MULTIPLE_FILLS_FLAG = 254
    PRE_INTERACTION_CALL_FLAG = 252
    POST_INTERACTION_CALL_FLAG = 251
    NEED_CHECK_EPOCH_MANAGER_FLAG = 250
    HAS_EXTENSION_FLAG = 249
    USE_PERMIT2_FLAG = 248
    UNWRAP_WETH_FLAG = 247

    _ALLOWED_SENDER = (0, 80)
    _EXPIRATION = (80, 120)
    _NONCE_OR_EPOCH = (120, 160)
    _SERIES = (160, 200)

    def __post_init__(self) -> None:
        if not 0 <= self.value <= UINT256_MAX:
            raise ValueError("maker traits must fit in uint256")

    @classmethod
    def default(cls) -> MakerTraits:
        return cls(0)

    # ── Bit helpers ──────────────────────────────────────────────

    def _get_mask(self, span: tuple[int, int]) -> int:
        lo, hi = span
        return (self.value >> lo) & ((1 << (hi - lo)) - 1)

    def _set_mask(self, span: tuple[int, int], field_value: int) -> MakerTraits:
        lo, hi = span
        width_max = (1 << (hi - lo)) - 1
        if not 0 <= field_value <= width_max:
            raise ValueError(f"value {field_value} does not fit in {hi - lo} bits")
        cleared = self.value & ~(width_max << lo)
        return MakerTraits(cleared | (field_value << lo))

    def _get_bit(self, bit: int) -> bool:
        return bool((self.value >> bit) & 1)

    def _set_bit(self, bit: int, on: bool) -> MakerTraits:
        if on:
            return MakerTraits(self.value | (1 << bit))
        return MakerTraits(self.value & ~(1 << bit))

    # ── Fields ───────────────────────────────────────────────────

    @property
    def allowed_sender(self) -> int:
        """Low 80 bits of the only address allowed to fill, 0 for anyone."""
        return self._get_mask(self._ALLOWED_SENDER)

    def with_allowed_sender(self, sender: str) -> MakerTraits:
        if not is_address(sender):
            raise ValueError(f"invalid sender address: {sender!r}")
        return self._set_mask(self._ALLOWED_SENDER, int(sender, 16) & UINT80_MAX)

    @property
    def expiration(self) -> Optional[int]:
        """Expiration timestamp in seconds, ``None`` when the order never expires."""
        value = self._get_mask(self._EXPIRATION)
        return value or None

    def with_expiration(self, expiration: int) -> MakerTraits:
        return self._set_mask(self._EXPIRATION, expiration)

    @property
    def nonce_or_epoch(self) -> int:
        return self._get_mask(self._NONCE_OR_EPOCH)

    def with_nonce(self, nonce: int) -> MakerTraits:
        return self._set_mask(self._NONCE_OR_EPOCH, nonce)

    @property
    def series(self) -> int:
        return self._get_mask(self._SERIES)

    def with_epoch(self, series: int, epoch: int) -> MakerTraits:
        traits = self._set_mask(self._SERIES, series)._set_mask(self._NONCE_OR_EPOCH, epoch)
        return traits._set_bit(self.NEED_CHECK_EPOCH_MANAGER_FLAG, True)

    # ── Flags ────────────────────────────────────────────────────

    @property
    def is_partial_fill_allowed(self) -> bool:
        return not self._get_bit(self.NO_PARTIAL_FILLS_FLAG)

    def disable_partial_fills(self) -> MakerTraits:
        return self._set_bit(self.NO_PARTIAL_FILLS_FLAG, True)

    def allow_partial_fills(self) -> MakerTraits:
        return self._set_bit(self.NO_PARTIAL_FILLS_FLAG, False)

    @property
    def is_multiple_fills_allowed(self) -> bool:
        return self._get_bit(self.ALLOW_MULTIPLE_FILLS_FLAG)

    def allow_multiple_fills(self) -> MakerTraits:
        return self._set_bit(self.ALLOW_MULTIPLE_FILLS_FLAG, True)

    def disable_multiple_fills(self) -> MakerTraits:
        return self._set_bit(self.ALLOW_MULTIPLE_FILLS_FLAG, False)

    @property
    def has_extension(self) -> bool:
        return self._get_bit(self.HAS_EXTENSION_FLAG)

    @property
    def is_native_unwrap_enabled(self) -> bool:
        return self._get_bit(self.UNWRAP_WETH_FLAG)

    def enable_native_unwrap(self) -> MakerTraits:
        return self._set_bit(self.UNWRAP_WETH_FLAG, True)

    @property
    def is_bit_invalidator_mode(self) -> bool:
        """Single-fill orders are invalidated through the nonce bitmap."""
        return not self.is_partial_fill_allowed or not self.is_multiple_fills_allowed

    def is_expired(self, now: int | None = None) -> bool:
        expiration = self.expiration
        if expiration is None:
            return False
        now = int(time.time()) if now is None else now
        return expiration <= now


# ── Order ───────────────────────────────────────────────────────────


def parse_uint(value: Any) -> int:
    """Parse an int or decimal/hex string into the uint256 range."""
    if isinstance(value, bool):
        raise ValueError("must be an integer, not a boolean")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            result = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError:
            raise ValueError(f"not an integer: {value!r}") from None
    else:
        raise ValueError(f"must be an integer or integer string, got {type(value).__name__}")
    if not 0 <= result <= UINT256_MAX:
        raise ValueError("must fit in uint256")
    return result


class LimitOrder(BaseModel):
    """Immutable limit order; identified by its EIP-712 hash."""

    model_config = ConfigDict(frozen=True)

    salt: int
    maker: str
    receiver: str = ZERO_ADDRESS
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    maker_traits: int = 0

    @field_validator("maker", "receiver", "maker_asset", "taker_asset", mode="before")
    @classmethod
    def checksum_address(cls, v: Any) -> str:
        if not isinstance(v, str) or not is_address(v):
            raise ValueError(f"invalid address: {v!r}")
        return to_checksum_address(v)

    @field_validator("salt", "maker_traits", mode="before")
    @classmethod
    def uint256(cls, v: Any) -> int:
        return parse_uint(v)

    @field_validator("making_amount", "taking_amount", mode="before")
    @classmethod
    def positive_uint256(cls, v: Any) -> int:
        result = parse_uint(v)
        if result == 0:
            raise ValueError("amount must be greater than zero")
        return result

    @property
    def traits(self) -> MakerTraits:
        return MakerTraits(self.maker_traits)

    # ── EIP-712 ──────────────────────────────────────────────────

    def get_typed_data(self, chain_id: int, verifying_contract: str) -> dict[str, Any]:
        """Full EIP-712 typed-data document for this order."""
        return {
            "types": {
                "EIP712Domain": EIP712_DOMAIN_TYPE,
                "Order": ORDER_TYPE,
            },
            "primaryType": "Order",
            "domain": {
                "name": DOMAIN_NAME,
                "version": DOMAIN_VERSION,
                "chainId": chain_id,
                "verifyingContract": to_checksum_address(verifying_contract),
            },
            "message": {
                "salt": self.salt,
                "maker": self.maker,
                "receiver": self.receiver,
                "makerAsset": self.maker_asset,
                "takerAsset": self.taker_asset,
                "makingAmount": self.making_amount,
                "takingAmount": self.taking_amount,
                "makerTraits": self.maker_traits,
            },
        }

    def get_order_hash(self, chain_id: int, verifying_contract: str) -> str:
        """EIP-712 digest of the order, as a 0x-prefixed hex string."""
        signable = encode_typed_data(
            full_message=self.get_typed_data(chain_id, verifying_contract)
        )
        return encode_hex(keccak(b"\x19" + signable.version + signable.header + signable.body))

    # ── Wire format ──────────────────────────────────────────────

    def build_order_data(self) -> dict[str, str]:
        """Order as the orderbook API expects it (amounts as decimal strings)."""
        return {
            "salt": str(self.salt),
            "maker": self.maker,
            "receiver": self.receiver,
            "makerAsset": self.maker_asset,
            "takerAsset": self.taker_asset,
            "makingAmount": str(self.making_amount),
            "takingAmount": str(self.taking_amount),
            "makerTraits": str(self.maker_traits),
            "extension": "0x",
        }

    @classmethod
    def from_order_data(cls, data: dict[str, Any]) -> LimitOrder:
        """Parse the wire format produced by :meth:`build_order_data`.

        Raises
        ------
        InvalidParameters
            On missing or malformed fields.
        """
        if not isinstance(data, dict):
            raise InvalidParameters("order must be an object", field="order")
        extension = data.get("extension", "0x")
        if extension not in ("0x", "", None):
            raise InvalidParameters("orders with extensions are not supported", field="extension")
        return _validated(
            cls,
            salt=data.get("salt"),
            maker=data.get("maker"),
            receiver=data.get("receiver", ZERO_ADDRESS),
            maker_asset=data.get("makerAsset"),
            taker_asset=data.get("takerAsset"),
            making_amount=data.get("makingAmount"),
            taking_amount=data.get("takingAmount"),
            maker_traits=data.get("makerTraits", 0),
        )


def _validated(model: type[LimitOrder], **fields: Any) -> LimitOrder:
    """Construct ``model`` translating pydantic errors into InvalidParameters."""
    try:
        return model(**fields)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or None
        message = first.get("msg", "invalid order parameters")
        raise InvalidParameters(f"{field}: {message}" if field else message, field=field) from exc


def random_salt() -> int:
    """96-bit random salt, as used for orders without extensions."""
    return secrets.randbits(96)


def build_order(
    maker_asset: str,
    taker_asset: str,
    making_amount: int | str,
    taking_amount: int | str,
    maker: str,
    expiration_minutes: int = 60,
    salt: int | None = None,
    now: int | None = None,
    receiver: str | None = None,
    traits: MakerTraits | None = None,
) -> LimitOrder:
    """Assemble an unsigned order from caller input.

    ``expiration = now + expiration_minutes * 60``. With the same ``salt``
    and ``now`` the resulting order (and therefore its hash) is identical.

    Raises
    ------
    InvalidParameters
        Malformed address, non-integer or out-of-range amount, non-positive
        expiration window, or maker asset equal to taker asset.
    """
    if isinstance(expiration_minutes, bool) or not isinstance(expiration_minutes, int):
        try:
            expiration_minutes = int(str(expiration_minutes), 10)
        except ValueError:
            raise InvalidParameters(
                f"expirationMinutes must be an integer, got {expiration_minutes!r}",
                field="expirationMinutes",
            ) from None
    if expiration_minutes <= 0:
        raise InvalidParameters(
            "expirationMinutes must be positive", field="expirationMinutes"
        )

    now = int(time.time()) if now is None else now
    expiration = now + expiration_minutes * 60
    if expiration > UINT40_MAX:
        raise InvalidParameters("expiration does not fit in 40 bits", field="expirationMinutes")

    base = traits or MakerTraits.default()
    order = _validated(
        LimitOrder,
        salt=random_salt() if salt is None else salt,
        maker=maker,
        receiver=receiver or ZERO_ADDRESS,
        maker_asset=maker_asset,
        taker_asset=taker_asset,
        making_amount=making_amount,
        taking_amount=taking_amount,
        maker_traits=base.with_expiration(expiration).value,
    )
    if ZERO_ADDRESS in (order.maker_asset, order.taker_asset):
        raise InvalidParameters(
            "native token cannot be traded directly, use its wrapped token",
            field="makerAsset" if order.maker_asset == ZERO_ADDRESS else "takerAsset",
        )
    if order.maker_asset == order.taker_asset:
        raise InvalidParameters("makerAsset and takerAsset must differ", field="takerAsset")
    return order


# ── Remote status projection ────────────────────────────────────────


class OrderState(str, Enum):
    """Order state as reported by the remote orderbook."""

    ACTIVE = "ACTIVE"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    TEMPORARILY_INVALID = "TEMPORARILY_INVALID"


class OrderStatusCode(int, Enum):
    """Numeric status codes of the orderbook API."""

    VALID = 1
    TEMPORARILY_INVALID = 2
    INVALID = 3


def derive_state(payload: dict[str, Any], now: int | None = None) -> OrderState:
    """Map a remote order record onto :class:`OrderState`.

    The remote service owns the state; this only interprets it.
    """
    remaining = payload.get("remainingMakerAmount")
    if remaining is not None and str(remaining) == "0":
        return OrderState.FILLED

    try:
        code = int(payload.get("status", OrderStatusCode.INVALID))
    except (TypeError, ValueError):
        code = OrderStatusCode.INVALID

    if code == OrderStatusCode.VALID:
        return OrderState.ACTIVE
    if code == OrderStatusCode.TEMPORARILY_INVALID:
        return OrderState.TEMPORARILY_INVALID

    data = payload.get("data") or {}
    try:
        traits = MakerTraits(parse_uint(data.get("makerTraits", 0)))
    except ValueError:
        traits = MakerTraits.default()
    if traits.is_expired(now):
        return OrderState.EXPIRED
    return OrderState.CANCELED
