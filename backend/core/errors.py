"""
Ordering Error Taxonomy

Every failure raised by the ordering services is an ``OrderingError``.
Each subclass carries a machine-readable ``code``, the HTTP status the API
layer maps it to, and a ``details`` dict that tells the caller which
resource was at fault.

Only ``ConcurrencyConflict`` is retryable: the caller re-reads order state
and resubmits. Everything else is terminal for the request.

Author: Khalil Bannouri
Version: 4.0.0
"""

from typing import Any, Optional


class OrderingError(Exception):
    """Base class for all ordering failures."""

    code: str = "ordering_error"
    http_status: int = 400
    retryable: bool = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(OrderingError):
    """Malformed input: negative quantity, unknown size, missing field."""
    code = "validation_error"
    http_status = 400


class NotFound(OrderingError):
    """Order, line item, menu item, coupon or user is absent."""
    code = "not_found"
    http_status = 404

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            f"{resource} #{resource_id} not found",
            {"resource": resource, "id": resource_id},
        )


class Forbidden(OrderingError):
    """The principal may not act on this order."""
    code = "forbidden"
    http_status = 403


class InvalidStateTransition(OrderingError):
    """The operation is not legal for the order's current status."""
    code = "invalid_state_transition"
    http_status = 409

    def __init__(self, order_id: int, status: str, event: str):
        super().__init__(
            f"Order #{order_id} cannot {event} while {status}",
            {"order_id": order_id, "status": status, "event": event},
        )


class InsufficientStock(OrderingError):
    code = "insufficient_stock"
    http_status = 409

    def __init__(self, item_id: int, requested: int, available: int):
        super().__init__(
            f"Menu item #{item_id} has {available} in stock, {requested} requested",
            {"item_id": item_id, "requested": requested, "available": available},
        )


class InsufficientBalance(OrderingError):
    code = "insufficient_balance"
    http_status = 409

    def __init__(self, user_id: int, balance: Any, required: Any):
        super().__init__(
            f"User #{user_id} balance {balance} is below the required {required}",
            {"user_id": user_id, "balance": str(balance), "required": str(required)},
        )


class CouponInvalid(OrderingError):
    """Coupon is expired, inactive, already used or below its minimum purchase."""
    code = "coupon_invalid"
    http_status = 400

    def __init__(self, message: str, reason: str, **details: Any):
        super().__init__(message, {"reason": reason, **details})


class ConcurrencyConflict(OrderingError):
    """Lost a race on a shared row, or a lock wait timed out."""
    code = "concurrency_conflict"
    http_status = 409
    retryable = True


class CouponCodeExhausted(OrderingError):
    """No unused coupon code was found within the configured attempts."""
    code = "coupon_code_exhausted"
    http_status = 503
