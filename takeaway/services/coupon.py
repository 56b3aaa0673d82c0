"""
Coupon Validator

Checks, in order:
    1. code exists and is active
    2. not expired
    3. global usage cap not exhausted
    4. subtotal meets the coupon's minimum order
    5. the user's redemption count (counted from coupon_usage) is below the
       per-user cap

Redemptions are immutable history: cancelling an order never gives a use
back.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from takeaway.core.exceptions import ConflictError, CouponError, NotFoundError
from takeaway.database import unit_of_work
from takeaway.enums import CouponType
from takeaway.models import Coupon, CouponUsage
from takeaway.schemas import CouponCreate
from takeaway.services.pricing import ZERO, money

logger = logging.getLogger(__name__)


@dataclass
class CouponDiscount:
    coupon_id: int
    code: str
    discount: Decimal

    def to_dict(self) -> dict:
        return {"coupon_id": self.coupon_id, "code": self.code, "discount": str(self.discount)}


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _as_utc(value: datetime) -> datetime:
    # sqlite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def compute_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    """Flat or percentage (with optional cap), never more than the subtotal."""
    subtotal = money(subtotal)
    if coupon.type == CouponType.FLAT:
        discount = money(coupon.value)
    else:
        discount = money(subtotal * money(coupon.value) / Decimal(100))
        if coupon.max_discount is not None:
            discount = min(discount, money(coupon.max_discount))
    return money(max(ZERO, min(discount, subtotal)))


async def count_user_redemptions(session: AsyncSession, coupon_id: int, user_id: str) -> int:
    count = await session.scalar(
        select(func.count(CouponUsage.id)).where(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.user_id == user_id,
        )
    )
    return count or 0


async def validate_coupon(
    session: AsyncSession,
    code: str,
    user_id: str,
    subtotal: Decimal,
    now: Optional[datetime] = None,
) -> CouponDiscount:
    """
    Validate a coupon for a user and subtotal and compute its discount.

    Read-only; nothing is recorded until the owning order has committed.

    Raises:
        CouponError: any eligibility rule fails (message says which)
    """
    code = normalize_code(code)
    subtotal = money(subtotal)
    now = now or datetime.now(timezone.utc)

    result = await session.execute(select(Coupon).where(Coupon.code == code))
    coupon = result.scalar_one_or_none()

    if coupon is None or not coupon.is_active:
        raise CouponError("Invalid or expired coupon code", details={"code": code})

    if coupon.expires_at is not None and _as_utc(coupon.expires_at) < now:
        raise CouponError("This coupon has expired", details={"code": code})

    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise CouponError("This coupon has reached its usage limit", details={"code": code})

    min_order = money(coupon.min_order or 0)
    if subtotal < min_order:
        raise CouponError(
            f"Minimum order of ₹{min_order:.2f} required for this coupon",
            details={"code": code, "min_order": str(min_order)},
        )

    used = await count_user_redemptions(session, coupon.id, user_id)
    if used >= coupon.per_user_limit:
        raise CouponError(
            "You have already used this coupon the maximum number of times",
            details={"code": code, "per_user_limit": coupon.per_user_limit},
        )

    return CouponDiscount(coupon_id=coupon.id, code=coupon.code, discount=compute_discount(coupon, subtotal))


async def record_coupon_usage(
    session: AsyncSession,
    coupon_id: int,
    user_id: str,
    order_id: Optional[int],
) -> bool:
    """
    Insert a redemption row and bump used_count inside the caller's transaction.

    Replaying a redemption already recorded for (coupon, order) does nothing.

    Returns:
        True when a new redemption was recorded
    """
    if order_id is not None:
        existing = await session.scalar(
            select(CouponUsage.id).where(
                CouponUsage.coupon_id == coupon_id,
                CouponUsage.order_id == order_id,
            )
        )
        if existing is not None:
            logger.info(f"Coupon: redemption of coupon {coupon_id} for order #{order_id} already recorded")
            return False

    session.add(CouponUsage(coupon_id=coupon_id, user_id=user_id, order_id=order_id))
    result = await session.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id)
        .values(used_count=Coupon.used_count + 1)
    )
    if result.rowcount == 0:
        raise NotFoundError("Coupon not found", details={"coupon_id": coupon_id})

    await session.flush()
    logger.info(f"Coupon: recorded use of coupon {coupon_id} by {user_id} on order #{order_id}")
    return True


async def create_coupon(session: AsyncSession, data: CouponCreate) -> Coupon:
    """Admin: create a coupon; the code is stored upper-case."""
    coupon = Coupon(
        code=normalize_code(data.code),
        type=data.type,
        value=money(data.value),
        min_order=money(data.min_order),
        max_discount=money(data.max_discount) if data.max_discount is not None else None,
        expires_at=data.expires_at,
        usage_limit=data.usage_limit,
        per_user_limit=data.per_user_limit,
        used_count=0,
        is_active=True,
    )
    try:
        async with unit_of_work(session):
            session.add(coupon)
    except IntegrityError:
        raise ConflictError("Coupon code already exists", details={"code": coupon.code})

    logger.info(f"Coupon: created {coupon.code} ({coupon.type.value} {coupon.value})")
    return coupon
