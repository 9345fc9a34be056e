"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from backend.core.config import get_settings, Settings, EnvironmentMode
from backend.core.errors import (
    OrderingError,
    ValidationError,
    NotFound,
    Forbidden,
    InvalidStateTransition,
    InsufficientStock,
    InsufficientBalance,
    CouponInvalid,
    ConcurrencyConflict,
    CouponCodeExhausted,
)

__all__ = [
    "get_settings",
    "Settings",
    "EnvironmentMode",
    "OrderingError",
    "ValidationError",
    "NotFound",
    "Forbidden",
    "InvalidStateTransition",
    "InsufficientStock",
    "InsufficientBalance",
    "CouponInvalid",
    "ConcurrencyConflict",
    "CouponCodeExhausted",
]
