"""
Wallet Ledger

Debits and credits a user's balance inside the caller's transaction.
The user row is locked before it is read so two debits for the same user
serialize and the balance can never go below zero.
"""

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.errors import InsufficientBalance, NotFound, ValidationError
from backend.models import User
from backend.services.pricing import to_money

logger = logging.getLogger(__name__)


class WalletLedger:
    """Stateless service over the users.balance column."""

    @staticmethod
    def _check_amount(amount) -> Decimal:
        if amount is None:
            raise ValidationError("Amount is required")
        amount = to_money(amount)
        if amount < 0:
            raise ValidationError("Amount cannot be negative", {"amount": str(amount)})
        return amount

    async def lock_user(self, session: AsyncSession, user_id: int) -> User:
        result = await session.execute(
            select(User)
            .where(User.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFound("User", user_id)
        return user

    async def debit(self, session: AsyncSession, user_id: int, amount) -> User:
        """Subtract ``amount``; fails when the balance does not cover it."""
        amount = self._check_amount(amount)
        user = await self.lock_user(session, user_id)

        if user.balance < amount:
            logger.warning(
                f"Insufficient balance for user #{user_id}: "
                f"balance {user.balance}, required {amount}"
            )
            raise InsufficientBalance(user_id, user.balance, amount)

        user.balance = to_money(user.balance - amount)
        await session.flush()
        logger.debug(f"User #{user_id} debited {amount} -> {user.balance}")
        return user

    async def credit(self, session: AsyncSession, user_id: int, amount) -> User:
        amount = self._check_amount(amount)
        user = await self.lock_user(session, user_id)
        user.balance = to_money(user.balance + amount)
        await session.flush()
        logger.debug(f"User #{user_id} credited {amount} -> {user.balance}")
        return user

    async def recharge(self, session: AsyncSession, user_id: int, amount) -> User:
        """Wallet top-up. Unlike credit, a zero amount is rejected."""
        amount = self._check_amount(amount)
        if amount == 0:
            raise ValidationError("Recharge amount must be greater than 0")
        user = await self.credit(session, user_id, amount)
        logger.info(f"User #{user_id} recharged {amount}, balance {user.balance}")
        return user
