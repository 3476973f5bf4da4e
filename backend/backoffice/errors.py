# Overview: Domain error hierarchy shared by services and routes.

from __future__ import annotations


class BackofficeError(Exception):
    """Base class for domain errors. Carries a message and structured details."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(BackofficeError):
    """400-level input problem (missing field, negative quantity, ...)."""

    status_code = 400


class NotFoundError(BackofficeError):
    """Referenced purchase order, order, product, supplier or user does not exist."""

    status_code = 404


class ConflictError(BackofficeError):
    """409-level business rule conflict (over-receiving, terminal order, stale write)."""

    status_code = 409


class DependencyError(BackofficeError):
    """Backing store or collaborator unavailable."""

    status_code = 503


class SaleConversionError(DependencyError):
    """
    Raised when an order reached 'delivered' but its Sale could not be written.

    The order keeps its delivered status; retry with convert_order_to_sale().
    """

    def __init__(self, order_number: str, cause: Exception | None = None):
        super().__init__(
            f"Order {order_number} is delivered but its sale record could not be created",
            details={"order_number": order_number, "retryable": True},
        )
        self.order_number = order_number
        self.__cause__ = cause
