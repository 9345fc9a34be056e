"""
                        Services Module

Business logic for the ordering core.

Services:
    - pricing: PriceCalculator (pure money arithmetic)
    - inventory: InventoryLedger (menu-item stock)
    - wallet: WalletLedger (user balance)
    - coupons: CouponRedemptionTracker and CouponService
    - lifecycle: OrderLifecycleStateMachine (the orchestrator)
    - excel_manager: Thread-safe Excel audit export
"""

import logging
from functools import lru_cache

from backend.database import get_session_maker
from backend.services.coupons import CouponRedemptionTracker, CouponService
from backend.services.identity import Principal
from backend.services.inventory import InventoryLedger
from backend.services.lifecycle import OrderLifecycleStateMachine
from backend.services.pricing import PriceCalculator
from backend.services.wallet import WalletLedger

logger = logging.getLogger(__name__)


@lru_cache()
def get_lifecycle() -> OrderLifecycleStateMachine:
    """
    Get the process-wide state machine bound to the configured database.

    Cached so every request shares one session factory.
    """
    logger.info("Lifecycle: binding state machine to configured database")
    return OrderLifecycleStateMachine(get_session_maker())


@lru_cache()
def get_coupon_service() -> CouponService:
    return CouponService()


def reset_services() -> None:
    """Clear cached service instances (tests, config reloads)."""
    get_lifecycle.cache_clear()
    get_coupon_service.cache_clear()


__all__ = [
    "get_lifecycle",
    "get_coupon_service",
    "reset_services",
    "CouponRedemptionTracker",
    "CouponService",
    "InventoryLedger",
    "OrderLifecycleStateMachine",
    "PriceCalculator",
    "Principal",
    "WalletLedger",
]
