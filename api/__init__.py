"""1inch limit orders — HTTP facade package."""

from .server import ApiServer, status_for_error

__all__ = ["ApiServer", "status_for_error"]
