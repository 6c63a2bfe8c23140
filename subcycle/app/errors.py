"""Error taxonomy shared by the billing engine and its operator surface."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class SubcycleError(Exception):
    """Represents a failure with a stable, machine-readable error code."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


def _error_type(default_code: str, default_status: int):
    """Build a ``SubcycleError`` subclass constructor with fixed defaults."""

    def __init__(
        self,
        message: str,
        *,
        code: str = default_code,
        detail: Optional[Mapping[str, Any]] = None,
    ) -> None:
        SubcycleError.__init__(
            self,
            code=code,
            message=message,
            status_code=default_status,
            detail=detail,
        )

    return __init__


class ConfigurationError(SubcycleError):
    __init__ = _error_type("configuration_error", status.HTTP_500_INTERNAL_SERVER_ERROR)


class ValidationError(SubcycleError):
    __init__ = _error_type("invalid_request", status.HTTP_400_BAD_REQUEST)


class NotFoundError(SubcycleError):
    __init__ = _error_type("not_found", status.HTTP_404_NOT_FOUND)


class ConflictError(SubcycleError):
    __init__ = _error_type("conflict", status.HTTP_409_CONFLICT)


class PermissionDeniedError(SubcycleError):
    __init__ = _error_type("forbidden", status.HTTP_403_FORBIDDEN)


class SettlementError(SubcycleError):
    """The settlement gateway declined the charge or could not be reached."""

    __init__ = _error_type("settlement_failed", status.HTTP_502_BAD_GATEWAY)


class SettlementTimeout(SettlementError):
    __init__ = _error_type("settlement_timeout", status.HTTP_504_GATEWAY_TIMEOUT)


class PersistenceError(SubcycleError):
    __init__ = _error_type("persistence_error", status.HTTP_500_INTERNAL_SERVER_ERROR)


class UnresolvedSettlementError(PersistenceError):
    """Funds moved but the subscription row could not be updated."""

    __init__ = _error_type("unresolved_settlement", status.HTTP_500_INTERNAL_SERVER_ERROR)


class WebhookVerificationError(SubcycleError):
    __init__ = _error_type("invalid_signature", status.HTTP_401_UNAUTHORIZED)


__all__ = [
    "ConfigurationError",
    "ConflictError",
    "NotFoundError",
    "PermissionDeniedError",
    "PersistenceError",
    "SettlementError",
    "SettlementTimeout",
    "SubcycleError",
    "UnresolvedSettlementError",
    "ValidationError",
    "WebhookVerificationError",
]
