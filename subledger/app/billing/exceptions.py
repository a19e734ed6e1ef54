"""Error taxonomy for the reconciliation core."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass
class BillingError(Exception):
    """Base class for failures raised while reconciling billing state."""

    message: str
    detail: Optional[Mapping[str, Any]] = None
    code: str = field(default="billing_error", init=False)

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for structured log records."""

        return self._payload


@dataclass
class DataIntegrityError(BillingError):
    """Event references missing or inconsistent data; requires an operator."""

    code: str = field(default="data_integrity", init=False)


@dataclass
class TransientStoreError(BillingError):
    """Store failure that is expected to succeed on a later attempt."""

    code: str = field(default="transient_store_failure", init=False)


@dataclass
class StoreConflictError(TransientStoreError):
    """A unique constraint rejected a concurrent write; retry from a clean state."""

    code: str = field(default="store_conflict", init=False)


@dataclass
class PaymentStateError(BillingError):
    """Payment is not in the state required by the requested transition."""

    code: str = field(default="payment_state", init=False)


class InvalidIntervalError(ValueError):
    """Raised for non-positive interval counts or unknown interval units."""


__all__ = [
    "BillingError",
    "DataIntegrityError",
    "InvalidIntervalError",
    "PaymentStateError",
    "StoreConflictError",
    "TransientStoreError",
]
