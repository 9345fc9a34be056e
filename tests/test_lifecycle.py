from decimal import Decimal

import pytest

from backend.core.errors import (
    CouponInvalid,
    Forbidden,
    InsufficientBalance,
    InsufficientStock,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from backend.models import OrderStatus
from backend.services.identity import Principal
from backend.services.lifecycle import (
    TRANSITIONS,
    Effect,
    OrderEvent,
    OrderLifecycleStateMachine,
)


async def open_order(lifecycle, principal, item_id, quantity=2, size="small"):
    order = await lifecycle.create_order(principal, store_id=1)
    return await lifecycle.add_line_item(principal, order.order_id, item_id, quantity, size)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

def test_transition_table_is_closed():
    assert set(TRANSITIONS) == {
        (OrderStatus.CREATED, OrderEvent.EDIT),
        (OrderStatus.CREATED, OrderEvent.CONFIRM),
        (OrderStatus.CREATED, OrderEvent.CANCEL),
        (OrderStatus.IN_PROGRESS, OrderEvent.COMPLETE),
        (OrderStatus.IN_PROGRESS, OrderEvent.CANCEL),
        (OrderStatus.COMPLETED, OrderEvent.REFUND),
    }
    assert TRANSITIONS[(OrderStatus.CREATED, OrderEvent.CONFIRM)].effect == Effect.RESERVE
    assert TRANSITIONS[(OrderStatus.CREATED, OrderEvent.CANCEL)].effect == Effect.NONE
    assert TRANSITIONS[(OrderStatus.COMPLETED, OrderEvent.REFUND)].effect == Effect.RELEASE


# =============================================================================
# CONCRETE SCENARIOS
# =============================================================================

async def test_confirm_reserves_stock_and_debits_wallet(lifecycle, seed):
    user = await seed.user(balance="100.00")
    item_id = await seed.item(stock=10, small_price="5.00")

    order = await open_order(lifecycle, user, item_id, quantity=2)
    assert order.total_price == Decimal("10.00")
    assert order.status == OrderStatus.CREATED

    order = await lifecycle.confirm_order(user, order.order_id)

    assert order.status == OrderStatus.IN_PROGRESS
    assert order.total_price == Decimal("10.00")
    assert await seed.stock(item_id) == 8
    assert await seed.balance(user.user_id) == Decimal("90.00")


async def test_cancel_in_progress_restores_stock_and_balance(lifecycle, seed):
    user = await seed.user(balance="100.00")
    item_id = await seed.item(stock=10, small_price="5.00")
    order = await open_order(lifecycle, user, item_id, quantity=2)
    await lifecycle.confirm_order(user, order.order_id)

    order = await lifecycle.cancel_order(user, order.order_id)

    assert order.status == OrderStatus.CANCELLED
    assert await seed.stock(item_id) == 10
    assert await seed.balance(user.user_id) == Decimal("100.00")


async def test_coupon_below_minimum_leaves_everything_untouched(lifecycle, seed):
    user = await seed.user(balance="100.00")
    item_id = await seed.item(stock=10, small_price="5.00")
    uc_id = await seed.coupon(user.user_id, discount="3.00", min_purchase="20.00")
    order = await open_order(lifecycle, user, item_id, quantity=2)

    with pytest.raises(CouponInvalid) as exc_info:
        await lifecycle.confirm_order(user, order.order_id, uc_id)

    assert exc_info.value.details["reason"] == "below_minimum"
    order = await lifecycle.get_order(user, order.order_id)
    assert order.status == OrderStatus.CREATED
    assert order.total_price == Decimal("10.00")
    assert await seed.stock(item_id) == 10
    assert await seed.balance(user.user_id) == Decimal("100.00")
    assert not await seed.coupon_used(uc_id)


async def test_second_refund_is_rejected(lifecycle, seed):
    user = await seed.user(balance="100.00")
    item_id = await seed.item(stock=10, small_price="5.00")
    order = await open_order(lifecycle, user, item_id, quantity=2)
    await lifecycle.confirm_order(user, order.order_id)
    await lifecycle.complete_order(user, order.order_id)

    order = await lifecycle.refund_order(user, order.order_id)
    assert order.status == OrderStatus.REFUNDED
    assert await seed.stock(item_id) == 10
    assert await seed.balance(user.user_id) == Decimal("100.00")

    with pytest.raises(InvalidStateTransition):
        await lifecycle.refund_order(user, order.order_id)

    assert await seed.stock(item_id) == 10
    assert await seed.balance(user.user_id) == Decimal("100.00")


async def test_add_line_item_beyond_stock_is_rejected(lifecycle, seed):
    user = await seed.user()
    item_id = await seed.item(stock=3, small_price="5.00")
    order = await open_order(lifecycle, user, item_id, quantity=2)

    with pytest.raises(InsufficientStock):
        await lifecycle.add_line_item(user, order.order_id, item_id, 2, "small")

    order = await lifecycle.get_order(user, order.order_id)
    assert len(order.details) == 1
    assert order.total_price == Decimal("10.00")


# =============================================================================
# COUPONS ON CONFIRM
# =============================================================================

async def test_confirm_with_coupon_applies_discount_and_redeems(lifecycle, seed):
    user = await seed.user(balance="100.00")
    item_id = await seed.item(stock=10, small_price="5.00")
    uc_id = await seed.coupon(user.user_id, discount="3.00", min_purchase="10.00")
    order = await open_order(lifecycle, user, item_id, quantity=2)

    order = await lifecycle.confirm_order(user, order.order_id, uc_id)

    assert order.discount == Decimal("3.00")
    assert order.total_price == Decimal("7.00")
    assert order.user_coupon_id == uc_id
    assert order.total_price == OrderLifecycleStateMachine.expected_total(order)
    assert await seed.balance(user.user_id) == Decimal("93.00")
    assert await seed.coupon_used(uc_id)


async def test_used_coupon_cannot_be_applied_again(lifecycle, seed):
    user = await seed.user(balance="100.00")
    item_id = await seed.item(stock=10, small_price="5.00")
    uc_id = await seed.coupon(user.user_id, discount="1.00")

    first = await open_order(lifecycle, user, item_id, quantity=1)
    await lifecycle.confirm_order(user, first.order_id, uc_id)

    second = await open_order(lifecycle, user, item_id, quantity=1)
    with pytest.raises(CouponInvalid):
        await lifecycle.confirm_order(user, second.order_id, uc_id)

    assert await seed.stock(item_id) == 9
    assert await seed.balance(user.user_id) == Decimal("96.00")


async def test_coupon_stays_used_after_cancel(lifecycle, seed):
    user = await seed.user(balance="100.00")
    item_id = await seed.item(stock=10, small_price="5.00")
    uc_id = await seed.coupon(user.user_id, discount="2.00")
    order = await open_order(lifecycle, user, item_id, quantity=2)
    await lifecycle.confirm_order(user, order.order_id, uc_id)

    await lifecycle.cancel_order(user, order.order_id)

    assert await seed.balance(user.user_id) == Decimal("100.00")
    assert await seed.coupon_used(uc_id)


async def test_discount_larger_than_total_charges_nothing(lifecycle, seed):
    user = await seed.user(balance="0.00")
    item_id = await seed.item(stock=10, small_price="5.00")
    uc_id = await seed.coupon(user.user_id, discount="50.00")
    order = await open_order(lifecycle, user, item_id, quantity=1)

    order = await lifecycle.confirm_order(user, order.order_id, uc_id)

    assert order.total_price == Decimal("0.00")
    assert order.discount == Decimal("5.00")
    assert await seed.stock(item_id) == 9


async def test_someone_elses_coupon_is_refused(lifecycle, seed):
    owner = await seed.user(name="Owner")
    thief = await seed.user(name="Thief")
    item_id = await seed.item(stock=10)
    uc_id = await seed.coupon(owner.user_id)
    order = await open_order(lifecycle, thief, item_id, quantity=1)

    with pytest.raises(CouponInvalid):
        await lifecycle.confirm_order(thief, order.order_id, uc_id)
    assert not await seed.coupon_used(uc_id)


# =============================================================================
# FAILURE ATOMICITY
# =============================================================================

async def test_insufficient_balance_rolls_back_stock(lifecycle, seed):
    user = await seed.user(balance="9.99")
    item_id = await seed.item(stock=10, small_price="5.00")
    order = await open_order(lifecycle, user, item_id, quantity=2)

    with pytest.raises(InsufficientBalance):
        await lifecycle.confirm_order(user, order.order_id)

    assert await seed.stock(item_id) == 10
    assert await seed.balance(user.user_id) == Decimal("9.99")
    order = await lifecycle.get_order(user, order.order_id)
    assert order.status == OrderStatus.CREATED


async def test_stock_sold_elsewhere_fails_confirm(lifecycle, seed):
    first = await seed.user(name="First")
    second = await seed.user(name="Second")
    item_id = await seed.item(stock=3, small_price="5.00")

    a = await open_order(lifecycle, first, item_id, quantity=2)
    b = await open_order(lifecycle, second, item_id, quantity=2)
    await lifecycle.confirm_order(first, a.order_id)

    with pytest.raises(InsufficientStock):
        await lifecycle.confirm_order(second, b.order_id)

    assert await seed.stock(item_id) == 1
    assert await seed.balance(second.user_id) == Decimal("100.00")


async def test_confirm_empty_order_is_rejected(lifecycle, seed):
    user = await seed.user()
    order = await lifecycle.create_order(user, store_id=1)

    with pytest.raises(ValidationError):
        await lifecycle.confirm_order(user, order.order_id)


# =============================================================================
# EDITING
# =============================================================================

async def test_update_and_remove_line_items_recompute_total(lifecycle, seed):
    user = await seed.user()
    noodles = await seed.item(stock=10, small_price="5.00", large_price="7.00")
    dumplings = await seed.item(stock=10, small_price="3.50", large_price="6.00")

    order = await open_order(lifecycle, user, noodles, quantity=2)
    order = await lifecycle.add_line_item(user, order.order_id, dumplings, 1, "large")
    assert order.total_price == Decimal("16.00")

    first_line = order.details[0]
    order = await lifecycle.update_line_item(
        user, order.order_id, first_line.detail_id, quantity=3, size="LARGE"
    )
    assert order.total_price == Decimal("27.00")

    order = await lifecycle.remove_line_item(user, order.order_id, first_line.detail_id)
    assert [d.item_id for d in order.details] == [dumplings]
    assert order.total_price == Decimal("6.00")
    assert order.total_price == OrderLifecycleStateMachine.expected_total(order)


async def test_update_checks_stock_without_counting_the_edited_line(lifecycle, seed):
    user = await seed.user()
    item_id = await seed.item(stock=4)
    order = await open_order(lifecycle, user, item_id, quantity=3)
    detail_id = order.details[0].detail_id

    order = await lifecycle.update_line_item(user, order.order_id, detail_id, 4, "small")
    assert order.details[0].quantity == 4

    with pytest.raises(InsufficientStock):
        await lifecycle.update_line_item(user, order.order_id, detail_id, 5, "small")


async def test_item_from_another_store_is_rejected(lifecycle, seed):
    user = await seed.user()
    item_id = await seed.item(store_id=2)
    order = await lifecycle.create_order(user, store_id=1)

    with pytest.raises(ValidationError):
        await lifecycle.add_line_item(user, order.order_id, item_id, 1, "small")


@pytest.mark.parametrize("quantity, size", [(0, "small"), (-2, "small"), (1, "medium")])
async def test_bad_line_input_is_rejected(lifecycle, seed, quantity, size):
    user = await seed.user()
    item_id = await seed.item()
    order = await lifecycle.create_order(user, store_id=1)

    with pytest.raises(ValidationError):
        await lifecycle.add_line_item(user, order.order_id, item_id, quantity, size)


async def test_missing_line_and_item_are_not_found(lifecycle, seed):
    user = await seed.user()
    order = await lifecycle.create_order(user, store_id=1)

    with pytest.raises(NotFound):
        await lifecycle.add_line_item(user, order.order_id, 999, 1, "small")
    with pytest.raises(NotFound):
        await lifecycle.remove_line_item(user, order.order_id, 999)


async def test_confirmed_order_is_frozen(lifecycle, seed):
    user = await seed.user()
    item_id = await seed.item()
    order = await open_order(lifecycle, user, item_id, quantity=1)
    await lifecycle.confirm_order(user, order.order_id)

    with pytest.raises(InvalidStateTransition):
        await lifecycle.add_line_item(user, order.order_id, item_id, 1, "small")
    with pytest.raises(InvalidStateTransition):
        await lifecycle.remove_line_item(user, order.order_id, order.details[0].detail_id)
    with pytest.raises(InvalidStateTransition):
        await lifecycle.delete_order(user, order.order_id)


async def test_delete_unconfirmed_order(lifecycle, seed):
    user = await seed.user()
    item_id = await seed.item()
    order = await open_order(lifecycle, user, item_id, quantity=1)

    await lifecycle.delete_order(user, order.order_id)

    with pytest.raises(NotFound):
        await lifecycle.get_order(user, order.order_id)
    assert await seed.stock(item_id) == 10


# =============================================================================
# STATUS RULES
# =============================================================================

async def test_cancel_unconfirmed_order_touches_no_ledger(lifecycle, seed):
    user = await seed.user(balance="100.00")
    item_id = await seed.item(stock=10)
    order = await open_order(lifecycle, user, item_id, quantity=2)

    order = await lifecycle.cancel_order(user, order.order_id)

    assert order.status == OrderStatus.CANCELLED
    assert await seed.stock(item_id) == 10
    assert await seed.balance(user.user_id) == Decimal("100.00")


@pytest.mark.parametrize("operation", ["complete_order", "refund_order"])
async def test_created_order_cannot_skip_confirmation(lifecycle, seed, operation):
    user = await seed.user()
    item_id = await seed.item()
    order = await open_order(lifecycle, user, item_id, quantity=1)

    with pytest.raises(InvalidStateTransition):
        await getattr(lifecycle, operation)(user, order.order_id)


async def test_completed_order_cannot_be_cancelled(lifecycle, seed):
    user = await seed.user()
    item_id = await seed.item()
    order = await open_order(lifecycle, user, item_id, quantity=1)
    await lifecycle.confirm_order(user, order.order_id)
    await lifecycle.complete_order(user, order.order_id)

    with pytest.raises(InvalidStateTransition):
        await lifecycle.cancel_order(user, order.order_id)


async def test_cancelled_order_is_terminal(lifecycle, seed):
    user = await seed.user()
    item_id = await seed.item()
    order = await open_order(lifecycle, user, item_id, quantity=1)
    await lifecycle.cancel_order(user, order.order_id)

    for operation in ("confirm_order", "complete_order", "cancel_order", "refund_order"):
        with pytest.raises(InvalidStateTransition):
            await getattr(lifecycle, operation)(user, order.order_id)


async def test_unknown_order_is_not_found(lifecycle, seed):
    user = await seed.user()
    with pytest.raises(NotFound):
        await lifecycle.confirm_order(user, 4242)


# =============================================================================
# PRINCIPAL
# =============================================================================

async def test_create_order_requires_existing_user(lifecycle):
    with pytest.raises(NotFound):
        await lifecycle.create_order(Principal(user_id=77), store_id=1)


async def test_other_users_cannot_touch_an_order(lifecycle, seed):
    owner = await seed.user(name="Owner")
    stranger = await seed.user(name="Stranger")
    item_id = await seed.item()
    order = await open_order(lifecycle, owner, item_id, quantity=1)

    with pytest.raises(Forbidden):
        await lifecycle.confirm_order(stranger, order.order_id)
    with pytest.raises(Forbidden):
        await lifecycle.get_order(stranger, order.order_id)


async def test_admin_may_act_on_any_order(lifecycle, seed):
    owner = await seed.user(balance="50.00")
    admin = await seed.user(role="ADMIN", name="Manager")
    item_id = await seed.item(small_price="5.00")
    order = await open_order(lifecycle, owner, item_id, quantity=1)
    await lifecycle.confirm_order(owner, order.order_id)

    order = await lifecycle.complete_order(admin, order.order_id)
    assert order.status == OrderStatus.COMPLETED

    # The refund goes back to the owner's wallet, not the admin's
    await lifecycle.refund_order(admin, order.order_id)
    assert await seed.balance(owner.user_id) == Decimal("50.00")
    assert await seed.balance(admin.user_id) == Decimal("100.00")


async def test_list_orders_is_scoped_to_the_caller(lifecycle, seed):
    alice = await seed.user(name="Alice")
    bob = await seed.user(name="Bob")
    admin = await seed.user(role="ADMIN", name="Manager")
    item_id = await seed.item()

    for _ in range(3):
        await open_order(lifecycle, alice, item_id, quantity=1)
    confirmed = await open_order(lifecycle, bob, item_id, quantity=1)
    await lifecycle.confirm_order(bob, confirmed.order_id)

    total, orders = await lifecycle.list_orders(alice, user_id=bob.user_id)
    assert total == 3
    assert {o.user_id for o in orders} == {alice.user_id}

    total, orders = await lifecycle.list_orders(admin, skip=1, limit=2)
    assert total == 4
    assert len(orders) == 2

    total, orders = await lifecycle.list_orders(admin, status=OrderStatus.IN_PROGRESS)
    assert total == 1
    assert orders[0].order_id == confirmed.order_id
