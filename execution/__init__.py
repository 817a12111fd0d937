"""1inch limit orders — execution package."""

from .order_service import LimitOrderService, OrderServiceConfig, check_order_hash

__all__ = [
    "LimitOrderService",
    "OrderServiceConfig",
    "check_order_hash",
]
