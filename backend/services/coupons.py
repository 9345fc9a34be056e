"""
Coupon Services

CouponRedemptionTracker enforces single-use coupons for order confirmation.
CouponService issues and administers coupons and hands them to users.

Redemption is a compare-and-set on ``user_coupons.is_used``: the update only
matches a row that is still unused, so two confirmations racing on the same
coupon cannot both succeed.
"""

import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.config import get_settings
from backend.core.errors import (
    ConcurrencyConflict,
    CouponCodeExhausted,
    CouponInvalid,
    NotFound,
    ValidationError,
)
from backend.models import Coupon, User, UserCoupon
from backend.services.pricing import to_money

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def coupon_problem(coupon: Optional[Coupon], now: datetime) -> Optional[str]:
    """Return why a coupon cannot be used right now, or None."""
    if coupon is None:
        return "missing"
    if not coupon.is_active:
        return "inactive"
    if as_utc(coupon.expiration_date) < now:
        return "expired"
    return None


class CouponRedemptionTracker:
    """Validates and redeems user coupons."""

    async def validate(
        self,
        session: AsyncSession,
        user_coupon_id: int,
        user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> tuple[UserCoupon, Coupon]:
        """
        Load a redemption and its coupon, failing if it cannot be applied.

        Args:
            user_coupon_id: The user's coupon instance
            user_id: When given, the redemption must belong to this user
            now: Reference time for the expiry check

        Raises:
            NotFound: No such redemption
            CouponInvalid: Used, foreign, or the coupon is missing/inactive/expired
        """
        now = now or datetime.now(timezone.utc)

        result = await session.execute(
            select(UserCoupon)
            .where(UserCoupon.user_coupon_id == user_coupon_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        redemption = result.scalar_one_or_none()
        if redemption is None:
            raise NotFound("UserCoupon", user_coupon_id)

        if user_id is not None and redemption.user_id != user_id:
            raise CouponInvalid(
                f"Coupon #{user_coupon_id} does not belong to user #{user_id}",
                "not_owner",
                user_coupon_id=user_coupon_id,
            )

        if redemption.is_used:
            raise CouponInvalid(
                f"Coupon #{user_coupon_id} has already been used",
                "used",
                user_coupon_id=user_coupon_id,
            )

        coupon = await session.get(Coupon, redemption.coupon_id)
        problem = coupon_problem(coupon, now)
        if problem is not None:
            raise CouponInvalid(
                f"Coupon #{redemption.coupon_id} is {problem}",
                problem,
                user_coupon_id=user_coupon_id,
                coupon_id=redemption.coupon_id,
            )

        return redemption, coupon

    async def mark_used(self, session: AsyncSession, user_coupon_id: int) -> None:
        """
        Flip is_used from False to True.

        Raises:
            ConcurrencyConflict: Someone else redeemed it after validate()
        """
        result = await session.execute(
            update(UserCoupon)
            .where(UserCoupon.user_coupon_id == user_coupon_id)
            .where(UserCoupon.is_used.is_(False))
            .values(is_used=True, version=UserCoupon.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Coupon #{user_coupon_id} was redeemed concurrently")
            raise ConcurrencyConflict(
                f"Coupon #{user_coupon_id} was redeemed by another operation",
                {"user_coupon_id": user_coupon_id},
            )

        # Bring any loaded copy in line with the row
        await session.execute(
            select(UserCoupon)
            .where(UserCoupon.user_coupon_id == user_coupon_id)
            .execution_options(populate_existing=True)
        )
        logger.info(f"Coupon #{user_coupon_id} marked used")


class CouponService:
    """Issues, administers and assigns coupons."""

    DIGITS = "0123456789"

    def __init__(self, code_length: Optional[int] = None, max_attempts: Optional[int] = None):
        settings = get_settings()
        self.code_length = code_length or settings.coupon_code_length
        self.max_attempts = max_attempts or settings.coupon_code_max_attempts

    def _random_code(self) -> str:
        return "".join(secrets.choice(self.DIGITS) for _ in range(self.code_length))

    async def _code_taken(self, session: AsyncSession, code: str) -> bool:
        result = await session.execute(select(Coupon.coupon_id).where(Coupon.code == code))
        return result.first() is not None

    async def _already_assigned(self, session: AsyncSession, coupon_id: int) -> bool:
        result = await session.execute(
            select(UserCoupon.user_coupon_id).where(UserCoupon.coupon_id == coupon_id)
        )
        return result.first() is not None

    def _exhausted(self) -> CouponCodeExhausted:
        logger.error(f"No free coupon code after {self.max_attempts} attempts")
        return CouponCodeExhausted(
            f"Could not generate a unique coupon code in {self.max_attempts} attempts",
            {"attempts": self.max_attempts, "code_length": self.code_length},
        )

    @staticmethod
    def _terms(discount, min_purchase, expiration_date: datetime) -> tuple[Decimal, Decimal, datetime]:
        if discount is None or min_purchase is None or expiration_date is None:
            raise ValidationError("discount, min_purchase and expiration_date are required")

        discount = to_money(discount)
        min_purchase = to_money(min_purchase)
        if discount <= 0:
            raise ValidationError("Discount must be greater than 0", {"discount": str(discount)})
        if min_purchase < 0:
            raise ValidationError(
                "Minimum purchase cannot be negative",
                {"min_purchase": str(min_purchase)},
            )
        return discount, min_purchase, as_utc(expiration_date).astimezone(timezone.utc)

    async def generate_unique_code(self, session: AsyncSession) -> str:
        """
        Draw random codes until one is free, at most ``max_attempts`` times.

        With 10**code_length possible codes and N already issued, every
        attempt colliding has probability (N / 10**code_length) ** max_attempts,
        negligible until the code space is nearly full.

        Raises:
            CouponCodeExhausted: No free code within the attempt budget
        """
        for attempt in range(1, self.max_attempts + 1):
            code = self._random_code()
            if not await self._code_taken(session, code):
                return code
            logger.debug(f"Coupon code collision on attempt {attempt}")

        raise self._exhausted()

    async def create_coupon(
        self,
        session: AsyncSession,
        discount,
        min_purchase,
        expiration_date: datetime,
        is_active: bool = True,
    ) -> Coupon:
        """
        Issue a coupon with a fresh random code.

        A code that passed the lookup can still be claimed by a concurrent
        insert; the unique index rejects it and a new code is drawn, within
        the same attempt budget.
        """
        discount, min_purchase, expiration_date = self._terms(
            discount, min_purchase, expiration_date
        )

        for _ in range(self.max_attempts):
            coupon = Coupon(
                code=await self.generate_unique_code(session),
                discount=discount,
                min_purchase=min_purchase,
                expiration_date=expiration_date,
                is_active=is_active,
            )
            try:
                async with session.begin_nested():
                    session.add(coupon)
            except IntegrityError:
                logger.warning(f"Coupon code {coupon.code} was taken concurrently, redrawing")
                continue

            logger.info(f"Coupon #{coupon.coupon_id} created with code {coupon.code}")
            return coupon

        raise self._exhausted()

    async def create_batch(self, session: AsyncSession, specs: list[dict]) -> list[Coupon]:
        """
        Issue several coupons in one transaction.

        Each spec carries discount, min_purchase, expiration_date and an
        optional is_active. One invalid spec rejects the whole batch.
        """
        if not specs:
            raise ValidationError("A batch needs at least one coupon")

        coupons = []
        for index, spec in enumerate(specs):
            try:
                coupon = await self.create_coupon(
                    session,
                    spec.get("discount"),
                    spec.get("min_purchase"),
                    spec.get("expiration_date"),
                    spec.get("is_active", True),
                )
            except ValidationError as e:
                e.details["index"] = index
                raise
            coupons.append(coupon)

        logger.info(f"Issued a batch of {len(coupons)} coupons")
        return coupons

    async def get_coupon(self, session: AsyncSession, coupon_id: int) -> Coupon:
        coupon = await session.get(Coupon, coupon_id)
        if coupon is None:
            raise NotFound("Coupon", coupon_id)
        return coupon

    async def get_coupon_by_code(self, session: AsyncSession, code: str) -> Coupon:
        result = await session.execute(select(Coupon).where(Coupon.code == code))
        coupon = result.scalar_one_or_none()
        if coupon is None:
            raise NotFound("Coupon", code)
        return coupon

    async def list_active_coupons(
        self,
        session: AsyncSession,
        now: Optional[datetime] = None,
    ) -> list[Coupon]:
        """Coupons that are active and not yet expired."""
        now = now or datetime.now(timezone.utc)
        result = await session.execute(
            select(Coupon).where(Coupon.is_active.is_(True)).order_by(Coupon.coupon_id)
        )
        return [c for c in result.scalars().all() if coupon_problem(c, now) is None]

    async def update_coupon(
        self,
        session: AsyncSession,
        coupon_id: int,
        discount,
        min_purchase,
        expiration_date: datetime,
        is_active: bool = True,
    ) -> Coupon:
        """
        Replace a coupon's terms. The code never changes.

        Redemptions already made keep the discount they were confirmed with;
        unused assignments see the new terms at their next confirm.
        """
        discount, min_purchase, expiration_date = self._terms(
            discount, min_purchase, expiration_date
        )

        result = await session.execute(
            select(Coupon)
            .where(Coupon.coupon_id == coupon_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        coupon = result.scalar_one_or_none()
        if coupon is None:
            raise NotFound("Coupon", coupon_id)

        coupon.discount = discount
        coupon.min_purchase = min_purchase
        coupon.expiration_date = expiration_date
        coupon.is_active = is_active
        await session.flush()

        logger.info(f"Coupon #{coupon_id} updated")
        return coupon

    async def deactivate_coupon(self, session: AsyncSession, coupon_id: int) -> Coupon:
        """Withdraw a coupon; assigned but unused copies can no longer be redeemed."""
        result = await session.execute(
            update(Coupon)
            .where(Coupon.coupon_id == coupon_id)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFound("Coupon", coupon_id)

        coupon = await session.get(Coupon, coupon_id, populate_existing=True)
        logger.info(f"Coupon #{coupon_id} deactivated")
        return coupon

    async def delete_coupon(self, session: AsyncSession, coupon_id: int) -> None:
        """
        Remove a coupon that was never handed out.

        Raises:
            CouponInvalid: The coupon has been assigned; deactivate it instead
        """
        coupon = await self.get_coupon(session, coupon_id)
        if await self._already_assigned(session, coupon_id):
            raise CouponInvalid(
                f"Coupon #{coupon_id} has been assigned and cannot be deleted",
                "already_assigned",
                coupon_id=coupon_id,
            )

        await session.delete(coupon)
        await session.flush()
        logger.info(f"Coupon #{coupon_id} deleted")

    async def assign_coupon(
        self,
        session: AsyncSession,
        user_id: int,
        coupon_id: int,
    ) -> UserCoupon:
        """
        Hand a coupon to a user. A coupon can be handed out only once.

        The lookup gives the common case a clear error; two assignments
        racing past it are settled by the unique index on coupon_id.
        """
        if await session.get(User, user_id) is None:
            raise NotFound("User", user_id)

        coupon = await session.get(Coupon, coupon_id)
        if coupon is None:
            raise NotFound("Coupon", coupon_id)

        problem = coupon_problem(coupon, datetime.now(timezone.utc))
        if problem is not None:
            raise CouponInvalid(f"Coupon #{coupon_id} is {problem}", problem, coupon_id=coupon_id)

        already_assigned = CouponInvalid(
            f"Coupon #{coupon_id} has already been assigned",
            "already_assigned",
            coupon_id=coupon_id,
        )
        if await self._already_assigned(session, coupon_id):
            raise already_assigned

        redemption = UserCoupon(user_id=user_id, coupon_id=coupon_id, is_used=False)
        try:
            async with session.begin_nested():
                session.add(redemption)
        except IntegrityError as e:
            logger.warning(f"Coupon #{coupon_id} was assigned concurrently")
            raise already_assigned from e

        logger.info(f"Coupon #{coupon_id} assigned to user #{user_id}")
        return redemption

    async def list_user_coupons(
        self,
        session: AsyncSession,
        user_id: int,
        used: Optional[bool] = None,
    ) -> list[UserCoupon]:
        if await session.get(User, user_id) is None:
            raise NotFound("User", user_id)

        query = select(UserCoupon).where(UserCoupon.user_id == user_id)
        if used is not None:
            query = query.where(UserCoupon.is_used.is_(used))
        result = await session.execute(query.order_by(UserCoupon.user_coupon_id))
        return list(result.scalars().all())
