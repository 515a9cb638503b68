# Overview: Error taxonomy shared by every order-core service.

from __future__ import annotations


class OrderCoreError(Exception):
    """Base for errors returned synchronously to the caller of a core operation."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(OrderCoreError):
    """Referenced order/item/product/payment is missing or outside the caller's organization."""

    status_code = 404


class ValidationError(OrderCoreError):
    """Invalid state transition, amount mismatch, or other rejected business rule."""

    status_code = 400


class InsufficientStockError(ValidationError):
    """A reservation or decrement would take tracked stock below zero."""

    def __init__(self, product_id: int, requested: int, available: int | None = None, product_name: str | None = None):
        label = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}",
            details={
                "product_id": product_id,
                "requested_quantity": requested,
                "available_quantity": available,
            },
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ForbiddenError(OrderCoreError):
    """Capability gate rejected the actor."""

    status_code = 403


class ConflictError(OrderCoreError):
    """A racing mutation won; the caller should retry."""

    status_code = 409
