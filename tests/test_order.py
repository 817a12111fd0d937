"""Tests for models/order.py — maker traits, order building, hashing, state."""

from __future__ import annotations

import pytest
from eth_utils import to_checksum_address

from core.errors import InvalidParameters
from models.order import (
    UINT256_MAX,
    LimitOrder,
    MakerTraits,
    OrderState,
    build_order,
    derive_state,
    parse_uint,
)

USDT = to_checksum_address("0xdac17f958d2ee523a2206206994597c13d831ec7")
WETH = to_checksum_address("0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2")
MAKER = to_checksum_address("0x2c7536e3605d9c16a7a3d7b1898e529396a65c23")
ROUTER = "0x111111125421ca6dc452d289314280a0f8842a65"
NOW = 1_700_000_000


def _order(**overrides) -> LimitOrder:
    params = dict(
        maker_asset=USDT,
        taker_asset=WETH,
        making_amount=100_000_000,
        taking_amount=30_000_000_000_000_000,
        maker=MAKER,
        expiration_minutes=120,
        salt=42,
        now=NOW,
    )
    params.update(overrides)
    return build_order(**params)


class TestMakerTraits:

    def test_default_is_zero(self) -> None:
        traits = MakerTraits.default()
        assert traits.value == 0
        assert traits.expiration is None
        assert traits.is_partial_fill_allowed
        assert not traits.is_multiple_fills_allowed
        assert traits.is_bit_invalidator_mode

    def test_expiration_occupies_bits_80_to_120(self) -> None:
        traits = MakerTraits.default().with_expiration(NOW)
        assert traits.expiration == NOW
        assert traits.value == NOW << 80

    def test_expiration_overflow_rejected(self) -> None:
        with pytest.raises(ValueError):
            MakerTraits.default().with_expiration(2**40)

    def test_setters_return_new_value(self) -> None:
        base = MakerTraits.default()
        updated = base.with_nonce(7).allow_multiple_fills()
        assert base.value == 0
        assert updated.nonce_or_epoch == 7
        assert updated.is_multiple_fills_allowed
        assert not updated.is_bit_invalidator_mode

    def test_fields_do_not_clobber_each_other(self) -> None:
        traits = (
            MakerTraits.default()
            .with_expiration(NOW)
            .with_nonce(99)
            .with_allowed_sender(MAKER)
            .disable_partial_fills()
        )
        assert traits.expiration == NOW
        assert traits.nonce_or_epoch == 99
        assert traits.allowed_sender == int(MAKER, 16) & (2**80 - 1)
        assert not traits.is_partial_fill_allowed

    def test_with_epoch_sets_epoch_manager_flag(self) -> None:
        traits = MakerTraits.default().with_epoch(series=3, epoch=5)
        assert traits.series == 3
        assert traits.nonce_or_epoch == 5
        assert traits.value >> MakerTraits.NEED_CHECK_EPOCH_MANAGER_FLAG & 1

    def test_is_expired(self) -> None:
        traits = MakerTraits.default().with_expiration(NOW)
        assert traits.is_expired(now=NOW)
        assert not traits.is_expired(now=NOW - 1)
        assert not MakerTraits.default().is_expired(now=NOW)


class TestParseUint:

    @pytest.mark.parametrize("value,expected", [(5, 5), ("100", 100), ("0x10", 16)])
    def test_accepts(self, value, expected) -> None:
        assert parse_uint(value) == expected

    @pytest.mark.parametrize("value", [True, 1.5, "0.03", "abc", -1, UINT256_MAX + 1, None])
    def test_rejects(self, value) -> None:
        with pytest.raises(ValueError):
            parse_uint(value)


class TestBuildOrder:

    def test_fields(self) -> None:
        order = _order()
        assert order.maker == MAKER
        assert order.maker_asset == USDT
        assert order.taker_asset == WETH
        assert order.making_amount == 100_000_000
        assert order.taking_amount == 30_000_000_000_000_000
        assert order.receiver == "0x0000000000000000000000000000000000000000"
        assert order.traits.expiration == NOW + 120 * 60

    def test_string_amounts(self) -> None:
        order = _order(making_amount="100000000", taking_amount="30000000000000000")
        assert order.making_amount == 100_000_000

    def test_lowercase_addresses_are_checksummed(self) -> None:
        order = _order(maker_asset=USDT.lower())
        assert order.maker_asset == USDT

    def test_default_salt_is_random(self) -> None:
        a = _order(salt=None)
        b = _order(salt=None)
        assert a.salt != b.salt
        assert a.salt < 2**96

    def test_same_inputs_same_hash(self) -> None:
        assert _order().get_order_hash(1, ROUTER) == _order().get_order_hash(1, ROUTER)

    def test_hash_depends_on_inputs(self) -> None:
        base = _order().get_order_hash(1, ROUTER)
        assert _order(salt=43).get_order_hash(1, ROUTER) != base
        assert _order(expiration_minutes=121).get_order_hash(1, ROUTER) != base
        assert _order(taking_amount=1).get_order_hash(1, ROUTER) != base
        assert _order().get_order_hash(137, ROUTER) != base

    def test_hash_format(self) -> None:
        order_hash = _order().get_order_hash(1, ROUTER)
        assert order_hash.startswith("0x")
        assert len(order_hash) == 66

    def test_malformed_address(self) -> None:
        with pytest.raises(InvalidParameters) as exc_info:
            _order(maker_asset="0x1234")
        assert exc_info.value.field == "maker_asset"

    @pytest.mark.parametrize("amount", ["0.03", "abc", -5, 0, 2**256])
    def test_bad_amount(self, amount) -> None:
        with pytest.raises(InvalidParameters):
            _order(making_amount=amount)

    @pytest.mark.parametrize("minutes", [0, -10, "soon"])
    def test_bad_expiration_window(self, minutes) -> None:
        with pytest.raises(InvalidParameters) as exc_info:
            _order(expiration_minutes=minutes)
        assert exc_info.value.field == "expirationMinutes"

    def test_same_assets_rejected(self) -> None:
        with pytest.raises(InvalidParameters, match="must differ"):
            _order(taker_asset=USDT)

    def test_native_asset_rejected(self) -> None:
        with pytest.raises(InvalidParameters, match="wrapped"):
            _order(taker_asset="0x0000000000000000000000000000000000000000")


class TestWireFormat:

    def test_build_order_data(self) -> None:
        data = _order().build_order_data()
        assert data["makingAmount"] == "100000000"
        assert data["takingAmount"] == "30000000000000000"
        assert data["salt"] == "42"
        assert data["makerTraits"] == str((NOW + 7200) << 80)
        assert data["extension"] == "0x"

    def test_from_order_data_restores_hash(self) -> None:
        order = _order()
        restored = LimitOrder.from_order_data(order.build_order_data())
        assert restored == order
        assert restored.get_order_hash(1, ROUTER) == order.get_order_hash(1, ROUTER)

    def test_from_order_data_missing_field(self) -> None:
        data = _order().build_order_data()
        del data["takerAsset"]
        with pytest.raises(InvalidParameters):
            LimitOrder.from_order_data(data)

    def test_from_order_data_rejects_extension(self) -> None:
        data = _order().build_order_data()
        data["extension"] = "0xdeadbeef"
        with pytest.raises(InvalidParameters, match="extension"):
            LimitOrder.from_order_data(data)

    def test_order_is_immutable(self) -> None:
        order = _order()
        with pytest.raises(Exception):
            order.making_amount = 1  # type: ignore[misc]


class TestDeriveState:

    def test_active(self) -> None:
        assert derive_state({"status": 1, "remainingMakerAmount": "5"}) == OrderState.ACTIVE

    def test_filled_when_nothing_remains(self) -> None:
        assert derive_state({"status": 3, "remainingMakerAmount": "0"}) == OrderState.FILLED

    def test_temporarily_invalid(self) -> None:
        assert derive_state({"status": 2}) == OrderState.TEMPORARILY_INVALID

    def test_invalid_and_expired(self) -> None:
        traits = MakerTraits.default().with_expiration(NOW)
        payload = {"status": 3, "data": {"makerTraits": str(traits.value)}}
        assert derive_state(payload, now=NOW + 1) == OrderState.EXPIRED

    def test_invalid_not_expired_is_canceled(self) -> None:
        traits = MakerTraits.default().with_expiration(NOW)
        payload = {"status": 3, "data": {"makerTraits": str(traits.value)}}
        assert derive_state(payload, now=NOW - 1) == OrderState.CANCELED
