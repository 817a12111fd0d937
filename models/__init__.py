"""1inch limit orders — models package."""

from .order import (
    LimitOrder,
    MakerTraits,
    OrderState,
    OrderStatusCode,
    build_order,
    derive_state,
)
from .tokens import NATIVE_TOKEN, tokens_for_chain

__all__ = [
    "LimitOrder",
    "MakerTraits",
    "NATIVE_TOKEN",
    "OrderState",
    "OrderStatusCode",
    "build_order",
    "derive_state",
    "tokens_for_chain",
]
