"""
Order Lifecycle State Machine

The only component with transition logic. Every operation runs as one
database transaction covering the order row, the menu-item stock rows,
the user's wallet row and, when a coupon is applied, the redemption row.
Any failure rolls all of them back together.

Status flow:

    CREATED ──confirm──▶ IN_PROGRESS ──complete──▶ COMPLETED ──refund──▶ REFUNDED
       │                     │
       └──────cancel─────────┴──────────────▶ CANCELLED

Rows are locked in a fixed order (order, coupon, menu items by id, wallet)
so concurrent transitions cannot deadlock one another.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.errors import (
    CouponInvalid,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from backend.database import transaction
from backend.models import DineOption, ItemSize, Order, OrderDetail, OrderStatus, User
from backend.services.coupons import CouponRedemptionTracker
from backend.services.identity import Principal
from backend.services.inventory import InventoryLedger, quantities_by_item
from backend.services.pricing import ZERO, PriceCalculator, to_money
from backend.services.wallet import WalletLedger

logger = logging.getLogger(__name__)


class OrderEvent(str, Enum):
    EDIT = "edit"
    CONFIRM = "confirm"
    COMPLETE = "complete"
    CANCEL = "cancel"
    REFUND = "refund"


class Effect(str, Enum):
    """Ledger work a transition performs."""
    NONE = "none"
    RESERVE = "reserve"  # take stock, debit wallet, redeem coupon
    RELEASE = "release"  # return stock, credit wallet


@dataclass(frozen=True)
class Transition:
    next_status: OrderStatus
    effect: Effect


# (current status, event) -> transition. Pairs not listed are rejected.
TRANSITIONS: dict[tuple[OrderStatus, OrderEvent], Transition] = {
    (OrderStatus.CREATED, OrderEvent.EDIT): Transition(OrderStatus.CREATED, Effect.NONE),
    (OrderStatus.CREATED, OrderEvent.CONFIRM): Transition(OrderStatus.IN_PROGRESS, Effect.RESERVE),
    (OrderStatus.CREATED, OrderEvent.CANCEL): Transition(OrderStatus.CANCELLED, Effect.NONE),
    (OrderStatus.IN_PROGRESS, OrderEvent.COMPLETE): Transition(OrderStatus.COMPLETED, Effect.NONE),
    (OrderStatus.IN_PROGRESS, OrderEvent.CANCEL): Transition(OrderStatus.CANCELLED, Effect.RELEASE),
    (OrderStatus.COMPLETED, OrderEvent.REFUND): Transition(OrderStatus.REFUNDED, Effect.RELEASE),
}

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


def resolve_transition(order: Order, event: OrderEvent) -> Transition:
    """Look up the transition for the order's status, or raise."""
    transition = TRANSITIONS.get((order.status, event))
    if transition is None:
        logger.warning(
            f"Order #{order.order_id}: rejected {event.value} while {order.status.value}"
        )
        raise InvalidStateTransition(order.order_id, order.status.value, event.value)
    return transition


def _parse_size(size) -> ItemSize:
    try:
        return ItemSize(size.lower() if isinstance(size, str) else size)
    except ValueError:
        valid = [s.value for s in ItemSize]
        raise ValidationError(f"Invalid size. Must be one of: {valid}", {"size": size})


def _parse_dine_option(dine_option) -> DineOption:
    try:
        return DineOption(dine_option.lower() if isinstance(dine_option, str) else dine_option)
    except ValueError:
        valid = [d.value for d in DineOption]
        raise ValidationError(
            f"Invalid dine option. Must be one of: {valid}",
            {"dine_option": dine_option},
        )


def _check_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer", {"quantity": quantity})
    return quantity


class OrderLifecycleStateMachine:
    """
    Orchestrates order transitions over the ledgers.

    Args:
        session_maker: Factory for the sessions each operation runs in
        inventory: Stock ledger (default: InventoryLedger())
        wallet: Balance ledger (default: WalletLedger())
        coupons: Redemption tracker (default: CouponRedemptionTracker())
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        inventory: Optional[InventoryLedger] = None,
        wallet: Optional[WalletLedger] = None,
        coupons: Optional[CouponRedemptionTracker] = None,
        calculator: type[PriceCalculator] = PriceCalculator,
    ):
        self.session_maker = session_maker
        self.inventory = inventory or InventoryLedger()
        self.wallet = wallet or WalletLedger()
        self.coupons = coupons or CouponRedemptionTracker()
        self.calculator = calculator

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _lock_order(
        self,
        session: AsyncSession,
        principal: Principal,
        order_id: int,
    ) -> Order:
        result = await session.execute(
            select(Order)
            .where(Order.order_id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFound("Order", order_id)
        principal.ensure_owns(order.user_id, "order")
        return order

    def _recompute_total(self, order: Order) -> None:
        subtotal = self.calculator.compute_total(order.details)
        order.total_price = max(subtotal - to_money(order.discount or ZERO), ZERO)

    @staticmethod
    def _find_detail(order: Order, detail_id: int) -> OrderDetail:
        for detail in order.details:
            if detail.detail_id == detail_id:
                return detail
        raise NotFound("OrderDetail", detail_id)

    async def _check_line(
        self,
        session: AsyncSession,
        order: Order,
        item_id: int,
        quantity: int,
        exclude: Optional[OrderDetail] = None,
    ):
        """
        Validate the menu item and stock for the item's cumulative quantity
        across the order once this line is in place.
        """
        item = await self.inventory.get_item(session, item_id)
        if item.store_id != order.store_id:
            raise ValidationError(
                f"Menu item #{item_id} is not sold by store #{order.store_id}",
                {"item_id": item_id, "store_id": order.store_id},
            )

        already = sum(
            d.quantity for d in order.details
            if d.item_id == item_id and d is not exclude
        )
        await self.inventory.ensure_available(session, item_id, already + quantity)
        return item

    async def _release(self, session: AsyncSession, order: Order) -> None:
        """Undo a confirmation: return stock and refund what was paid."""
        await self.inventory.increment_many(session, quantities_by_item(order.details))
        await self.wallet.credit(session, order.user_id, order.total_price)

    # =========================================================================
    # ORDER CREATION & EDITING
    # =========================================================================

    async def create_order(
        self,
        principal: Principal,
        store_id: int,
        notes: Optional[str] = None,
        dine_option=DineOption.DINE_IN,
    ) -> Order:
        """Open an empty order for the principal."""
        if store_id is None:
            raise ValidationError("store_id is required")
        option = _parse_dine_option(dine_option)

        async with transaction(self.session_maker) as session:
            if await session.get(User, principal.user_id) is None:
                raise NotFound("User", principal.user_id)

            order = Order(
                user_id=principal.user_id,
                store_id=store_id,
                status=OrderStatus.CREATED,
                total_price=ZERO,
                discount=ZERO,
                order_time=datetime.now(timezone.utc),
                notes=notes,
                dine_option=option,
                details=[],
            )
            session.add(order)
            await session.flush()

        logger.info(f"Order #{order.order_id} created for user #{principal.user_id}")
        return order

    async def add_line_item(
        self,
        principal: Principal,
        order_id: int,
        item_id: int,
        quantity: int,
        size,
        special_requests: Optional[str] = None,
    ) -> Order:
        quantity = _check_quantity(quantity)
        size = _parse_size(size)

        async with transaction(self.session_maker) as session:
            order = await self._lock_order(session, principal, order_id)
            resolve_transition(order, OrderEvent.EDIT)

            item = await self._check_line(session, order, item_id, quantity)
            order.details.append(OrderDetail(
                item_id=item_id,
                quantity=quantity,
                unit_price=item.price_for(size),
                size=size,
                special_requests=special_requests,
            ))
            self._recompute_total(order)
            await session.flush()

        logger.info(f"Order #{order_id}: added item #{item_id} x{quantity}, total {order.total_price}")
        return order

    async def update_line_item(
        self,
        principal: Principal,
        order_id: int,
        detail_id: int,
        quantity: int,
        size,
        item_id: Optional[int] = None,
        special_requests: Optional[str] = None,
    ) -> Order:
        quantity = _check_quantity(quantity)
        size = _parse_size(size)

        async with transaction(self.session_maker) as session:
            order = await self._lock_order(session, principal, order_id)
            resolve_transition(order, OrderEvent.EDIT)

            detail = self._find_detail(order, detail_id)
            target_item = item_id if item_id is not None else detail.item_id
            item = await self._check_line(session, order, target_item, quantity, exclude=detail)

            detail.item_id = target_item
            detail.quantity = quantity
            detail.size = size
            detail.unit_price = item.price_for(size)
            if special_requests is not None:
                detail.special_requests = special_requests

            self._recompute_total(order)
            await session.flush()

        logger.info(f"Order #{order_id}: updated line #{detail_id}, total {order.total_price}")
        return order

    async def remove_line_item(
        self,
        principal: Principal,
        order_id: int,
        detail_id: int,
    ) -> Order:
        async with transaction(self.session_maker) as session:
            order = await self._lock_order(session, principal, order_id)
            resolve_transition(order, OrderEvent.EDIT)

            order.details.remove(self._find_detail(order, detail_id))
            self._recompute_total(order)
            await session.flush()

        logger.info(f"Order #{order_id}: removed line #{detail_id}, total {order.total_price}")
        return order

    async def delete_order(self, principal: Principal, order_id: int) -> None:
        """Physically delete an order. Only allowed before confirmation."""
        async with transaction(self.session_maker) as session:
            order = await self._lock_order(session, principal, order_id)
            resolve_transition(order, OrderEvent.EDIT)
            await session.delete(order)

        logger.info(f"Order #{order_id} deleted")

    # =========================================================================
    # LIFECYCLE TRANSITIONS
    # =========================================================================

    async def confirm_order(
        self,
        principal: Principal,
        order_id: int,
        user_coupon_id: Optional[int] = None,
    ) -> Order:
        """
        CREATED -> IN_PROGRESS: price, reserve stock, pay, redeem coupon.

        Raises:
            NotFound, InvalidStateTransition, ValidationError (empty order),
            CouponInvalid, InsufficientStock, InsufficientBalance,
            ConcurrencyConflict
        """
        async with transaction(self.session_maker) as session:
            order = await self._lock_order(session, principal, order_id)
            transition = resolve_transition(order, OrderEvent.CONFIRM)

            if not order.details:
                raise ValidationError(f"Order #{order_id} has no items", {"order_id": order_id})

            subtotal = self.calculator.compute_total(order.details)
            final_total = subtotal

            if user_coupon_id is not None:
                _, coupon = await self.coupons.validate(
                    session, user_coupon_id, user_id=order.user_id
                )
                if not self.calculator.meets_minimum(subtotal, coupon):
                    raise CouponInvalid(
                        f"Order total {subtotal} is below the coupon minimum {coupon.min_purchase}",
                        "below_minimum",
                        user_coupon_id=user_coupon_id,
                        order_total=str(subtotal),
                        min_purchase=str(coupon.min_purchase),
                    )
                final_total = self.calculator.apply_coupon(subtotal, coupon)

            await self.inventory.decrement_many(session, quantities_by_item(order.details))
            await self.wallet.debit(session, order.user_id, final_total)

            if user_coupon_id is not None:
                await self.coupons.mark_used(session, user_coupon_id)
                order.user_coupon_id = user_coupon_id

            order.discount = subtotal - final_total
            order.total_price = final_total
            order.status = transition.next_status
            await session.flush()

        logger.info(
            f"Order #{order_id}: created -> {order.status.value}, "
            f"paid {order.total_price} (discount {order.discount})"
        )
        return order

    async def _simple_transition(
        self,
        principal: Principal,
        order_id: int,
        event: OrderEvent,
    ) -> Order:
        async with transaction(self.session_maker) as session:
            order = await self._lock_order(session, principal, order_id)
            previous = order.status
            transition = resolve_transition(order, event)

            if transition.effect == Effect.RELEASE:
                await self._release(session, order)

            order.status = transition.next_status
            await session.flush()

        logger.info(f"Order #{order_id}: {previous.value} -> {order.status.value}")
        return order

    async def complete_order(self, principal: Principal, order_id: int) -> Order:
        """IN_PROGRESS -> COMPLETED. Payment was settled at confirmation."""
        return await self._simple_transition(principal, order_id, OrderEvent.COMPLETE)

    async def cancel_order(self, principal: Principal, order_id: int) -> Order:
        """
        CREATED/IN_PROGRESS -> CANCELLED.

        A confirmed order gets its stock and payment back; an unconfirmed one
        reserved nothing. A redeemed coupon stays used.
        """
        return await self._simple_transition(principal, order_id, OrderEvent.CANCEL)

    async def refund_order(self, principal: Principal, order_id: int) -> Order:
        """COMPLETED -> REFUNDED, returning stock and payment."""
        return await self._simple_transition(principal, order_id, OrderEvent.REFUND)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, principal: Principal, order_id: int) -> Order:
        async with transaction(self.session_maker) as session:
            order = await session.get(Order, order_id)
            if order is None:
                raise NotFound("Order", order_id)
            principal.ensure_owns(order.user_id, "order")
        return order

    async def list_orders(
        self,
        principal: Principal,
        user_id: Optional[int] = None,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[int, list[Order]]:
        """
        Page through orders, newest first.

        Non-admins only ever see their own orders.
        """
        if not principal.is_admin:
            user_id = principal.user_id

        query = select(Order).order_by(Order.order_time.desc(), Order.order_id.desc())
        count_query = select(func.count(Order.order_id))
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
            count_query = count_query.where(Order.user_id == user_id)
        if status is not None:
            query = query.where(Order.status == status)
            count_query = count_query.where(Order.status == status)

        async with transaction(self.session_maker) as session:
            total = (await session.execute(count_query)).scalar() or 0
            result = await session.execute(query.offset(skip).limit(limit))
            orders = list(result.scalars().all())

        return total, orders

    async def order_stats(self, principal: Principal, user_id: Optional[int] = None) -> dict:
        """
        Count orders per status, plus the overall total.

        Every status is present, zero when no order holds it. Non-admins
        are counted over their own orders only.
        """
        if not principal.is_admin:
            user_id = principal.user_id

        query = select(Order.status, func.count(Order.order_id)).group_by(Order.status)
        if user_id is not None:
            query = query.where(Order.user_id == user_id)

        async with transaction(self.session_maker) as session:
            rows = (await session.execute(query)).all()

        by_status = {status.value: 0 for status in OrderStatus}
        for status, count in rows:
            by_status[status.value] = count

        return {"total": sum(by_status.values()), "by_status": by_status}

    @staticmethod
    def expected_total(order: Order) -> Decimal:
        """Total the order should carry given its lines and discount."""
        subtotal = PriceCalculator.compute_total(order.details)
        return max(subtotal - to_money(order.discount or ZERO), ZERO)
