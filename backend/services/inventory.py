"""
Inventory Ledger

Reserves and releases menu-item stock inside the caller's transaction.

Rows are locked with SELECT ... FOR UPDATE in ascending item_id order so
two orders touching the same items cannot deadlock each other. A batch
decrement checks every item before writing any of them, so a shortfall on
the last item leaves the earlier rows untouched.
"""

import logging
from collections import defaultdict
from typing import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.errors import InsufficientStock, NotFound, ValidationError
from backend.models import MenuItem

logger = logging.getLogger(__name__)


def quantities_by_item(lines: Iterable) -> dict[int, int]:
    """Collapse line items into item_id -> cumulative quantity."""
    totals: dict[int, int] = defaultdict(int)
    for line in lines:
        totals[line.item_id] += line.quantity
    return dict(totals)


class InventoryLedger:
    """Stateless service over the menu_items.stock column."""

    @staticmethod
    def _check_quantities(quantities: Mapping[int, int]) -> None:
        for item_id, qty in quantities.items():
            if qty is None or qty < 0:
                raise ValidationError(
                    "Stock quantity cannot be negative",
                    {"item_id": item_id, "quantity": qty},
                )

    async def get_item(self, session: AsyncSession, item_id: int) -> MenuItem:
        item = await session.get(MenuItem, item_id)
        if item is None:
            raise NotFound("MenuItem", item_id)
        return item

    async def lock_items(
        self,
        session: AsyncSession,
        item_ids: Iterable[int],
    ) -> dict[int, MenuItem]:
        """Lock and return the given menu items, ascending by id."""
        ids = sorted(set(item_ids))
        if not ids:
            return {}

        result = await session.execute(
            select(MenuItem)
            .where(MenuItem.item_id.in_(ids))
            .order_by(MenuItem.item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        items = {item.item_id: item for item in result.scalars().all()}

        for item_id in ids:
            if item_id not in items:
                raise NotFound("MenuItem", item_id)
        return items

    async def ensure_available(
        self,
        session: AsyncSession,
        item_id: int,
        quantity: int,
    ) -> MenuItem:
        """
        Check that ``quantity`` units could be taken right now.

        Used while an order is still being edited: nothing is reserved,
        the check just stops orders that could never be confirmed.
        """
        self._check_quantities({item_id: quantity})
        item = await self.get_item(session, item_id)
        if item.stock < quantity:
            raise InsufficientStock(item_id, quantity, item.stock)
        return item

    async def decrement_many(
        self,
        session: AsyncSession,
        quantities: Mapping[int, int],
    ) -> None:
        """Take stock for every item, or for none of them."""
        self._check_quantities(quantities)
        items = await self.lock_items(session, quantities.keys())

        for item_id, qty in sorted(quantities.items()):
            item = items[item_id]
            if item.stock - qty < 0:
                logger.warning(
                    f"Insufficient stock for item #{item_id}: "
                    f"requested {qty}, available {item.stock}"
                )
                raise InsufficientStock(item_id, qty, item.stock)

        for item_id, qty in sorted(quantities.items()):
            items[item_id].stock -= qty
            logger.debug(f"Item #{item_id} stock -{qty} -> {items[item_id].stock}")

        await session.flush()

    async def increment_many(
        self,
        session: AsyncSession,
        quantities: Mapping[int, int],
    ) -> None:
        """Return stock for every item unconditionally."""
        self._check_quantities(quantities)
        items = await self.lock_items(session, quantities.keys())

        for item_id, qty in sorted(quantities.items()):
            items[item_id].stock += qty
            logger.debug(f"Item #{item_id} stock +{qty} -> {items[item_id].stock}")

        await session.flush()

    async def decrement(self, session: AsyncSession, item_id: int, qty: int) -> None:
        await self.decrement_many(session, {item_id: qty})

    async def increment(self, session: AsyncSession, item_id: int, qty: int) -> None:
        await self.increment_many(session, {item_id: qty})
