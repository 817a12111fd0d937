"""Error taxonomy for order construction, signing, submission and RPC access.

Every failure is raised to the caller with its original cause chained
(``raise ... from exc``). Nothing in this project substitutes placeholder
data for a failed operation.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "LimitOrderError",
    "InvalidParameters",
    "SigningFailure",
    "NetworkUnavailable",
    "RemoteRejected",
    "InsufficientAllowance",
    "RpcError",
]


class LimitOrderError(Exception):
    """Base class for all errors raised by this package."""

    def to_dict(self) -> dict[str, Any]:
        """Serialisable description used by the HTTP facade and CLI."""
        data: dict[str, Any] = {"type": type(self).__name__, "detail": str(self)}
        if self.__cause__ is not None:
            data["cause"] = f"{type(self.__cause__).__name__}: {self.__cause__}"
        return data


class InvalidParameters(LimitOrderError):
    """Caller-supplied input is malformed or out of range."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.field is not None:
            data["field"] = self.field
        return data


class SigningFailure(LimitOrderError):
    """The wallet key is unavailable or the signer failed."""


class NetworkUnavailable(LimitOrderError):
    """The remote order API could not be reached (transport error or timeout)."""


class RemoteRejected(LimitOrderError):
    """The remote order API answered with an error status."""

    def __init__(self, code: int, reason: str) -> None:
        super().__init__(f"remote rejected request ({code}): {reason}")
        self.code = code
        self.reason = reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["code"] = self.code
        data["reason"] = self.reason
        return data


class InsufficientAllowance(LimitOrderError):
    """Current allowance is below the amount the order needs to spend."""

    def __init__(self, token: str, spender: str, allowance: int, required: int) -> None:
        super().__init__(
            f"allowance {allowance} of {token} for {spender} is below required {required}"
        )
        self.token = token
        self.spender = spender
        self.allowance = allowance
        self.required = required

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            token=self.token,
            spender=self.spender,
            allowance=str(self.allowance),
            required=str(self.required),
        )
        return data


class RpcError(LimitOrderError):
    """A JSON-RPC read or transaction failed (including reverts)."""

    def __init__(
        self,
        message: str,
        last_error: Exception | None = None,
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.tx_hash = tx_hash

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.tx_hash is not None:
            data["tx_hash"] = self.tx_hash
        if self.last_error is not None and "cause" not in data:
            data["cause"] = f"{type(self.last_error).__name__}: {self.last_error}"
        return data
