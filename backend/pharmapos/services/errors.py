# Overview: Typed failures raised by the settlement engine and the stock write paths.

from __future__ import annotations


class SettlementError(Exception):
    """Base for settlement failures. Nothing is written when one is raised."""

    code = "SETTLEMENT_ERROR"
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "code": self.code,
            "retryable": self.retryable,
            "details": self.details,
        }


class InvalidCart(SettlementError):
    """Empty cart, non-positive quantity, unknown or inactive product."""

    code = "INVALID_CART"


class InsufficientStock(SettlementError):
    code = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        product_id: int,
        requested: int,
        available: int,
        product_name: str | None = None,
    ):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.product_name = product_name
        label = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Requested: {requested}",
            details={
                "product_id": product_id,
                "product_name": product_name,
                "requested_quantity": requested,
                "available_quantity": available,
                "shortfall": requested - available,
            },
        )

    @property
    def shortfall(self) -> int:
        return self.requested - self.available

    def with_product_name(self, product_name: str) -> "InsufficientStock":
        return InsufficientStock(self.product_id, self.requested, self.available, product_name)


class LockTimeout(SettlementError):
    """Per-product locks were not acquired in time. Retry with the same client transaction id."""

    code = "LOCK_TIMEOUT"
    retryable = True


class PersistenceFailure(SettlementError):
    """Storage write failed after locks were held; the transaction was rolled back."""

    code = "PERSISTENCE_FAILURE"
    retryable = True
