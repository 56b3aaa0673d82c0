"""
Integration Tests: Coupons

Covers services/coupon.py:
- Rule order: existence, expiry, global cap, minimum order, per-user cap
- Flat and capped percentage discounts
- Redemption ledger and used_count
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from takeaway.core.exceptions import ConflictError, CouponError
from takeaway.database import unit_of_work
from takeaway.enums import CouponType
from takeaway.models import Coupon, CouponUsage
from takeaway.schemas import CouponCreate
from takeaway.services.coupon import (
    compute_discount,
    create_coupon,
    record_coupon_usage,
    validate_coupon,
)

from conftest import USER_ID, OTHER_USER_ID


async def coupon_id(session, code):
    return await session.scalar(select(Coupon.id).where(Coupon.code == code))


async def used_count(session, code):
    return await session.scalar(select(Coupon.used_count).where(Coupon.code == code))


class TestComputeDiscount:

    def test_flat(self):
        coupon = Coupon(type=CouponType.FLAT, value=Decimal("50.00"))
        assert compute_discount(coupon, Decimal("300.00")) == Decimal("50.00")

    def test_flat_never_exceeds_subtotal(self):
        coupon = Coupon(type=CouponType.FLAT, value=Decimal("500.00"))
        assert compute_discount(coupon, Decimal("120.00")) == Decimal("120.00")

    def test_percentage_with_cap(self):
        coupon = Coupon(type=CouponType.PERCENTAGE, value=Decimal("10.00"), max_discount=Decimal("100.00"))
        assert compute_discount(coupon, Decimal("500.00")) == Decimal("50.00")
        assert compute_discount(coupon, Decimal("2500.00")) == Decimal("100.00")

    def test_percentage_rounds_half_up(self):
        coupon = Coupon(type=CouponType.PERCENTAGE, value=Decimal("15.00"), max_discount=None)
        assert compute_discount(coupon, Decimal("99.99")) == Decimal("15.00")


class TestValidateCoupon:
    """Each rule and the order in which they are applied."""

    @pytest.mark.asyncio
    async def test_valid_coupon(self, session, catalog):
        result = await validate_coupon(session, "SAVE10", USER_ID, Decimal("500.00"))

        assert result.code == "SAVE10"
        assert result.discount == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_code_is_case_insensitive(self, session, catalog):
        result = await validate_coupon(session, "  welcome50 ", USER_ID, Decimal("300.00"))

        assert result.code == "WELCOME50"
        assert result.discount == Decimal("50.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", ["NOPE", "RETIRED"])
    async def test_unknown_or_inactive(self, session, catalog, code):
        with pytest.raises(CouponError, match="Invalid or expired coupon code"):
            await validate_coupon(session, code, USER_ID, Decimal("500.00"))

    @pytest.mark.asyncio
    async def test_expiry_checked_before_minimum_order(self, session, catalog):
        # OLDNEWS is expired and also needs ₹1000
        with pytest.raises(CouponError, match="This coupon has expired"):
            await validate_coupon(session, "OLDNEWS", USER_ID, Decimal("50.00"))

    @pytest.mark.asyncio
    async def test_global_usage_limit(self, session, catalog):
        with pytest.raises(CouponError, match="reached its usage limit"):
            await validate_coupon(session, "SOLDOUT", USER_ID, Decimal("500.00"))

    @pytest.mark.asyncio
    async def test_minimum_order(self, session, catalog):
        with pytest.raises(CouponError) as exc_info:
            await validate_coupon(session, "SAVE10", USER_ID, Decimal("299.99"))

        assert exc_info.value.message == "Minimum order of ₹300.00 required for this coupon"

    @pytest.mark.asyncio
    async def test_per_user_limit_counts_redemptions(self, session, catalog):
        welcome = await coupon_id(session, "WELCOME50")
        async with unit_of_work(session):
            await record_coupon_usage(session, welcome, USER_ID, None)

        with pytest.raises(CouponError, match="maximum number of times"):
            await validate_coupon(session, "WELCOME50", USER_ID, Decimal("300.00"))

        # someone else is unaffected
        result = await validate_coupon(session, "WELCOME50", OTHER_USER_ID, Decimal("300.00"))
        assert result.discount == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_expiry_uses_supplied_clock(self, session, catalog):
        later = datetime.now(timezone.utc) + timedelta(days=31)

        with pytest.raises(CouponError, match="expired"):
            await validate_coupon(session, "FIRST20", USER_ID, Decimal("200.00"), now=later)


class TestRecordUsage:

    @pytest.mark.asyncio
    async def test_records_row_and_bumps_count(self, session, catalog):
        save10 = await coupon_id(session, "SAVE10")

        async with unit_of_work(session):
            recorded = await record_coupon_usage(session, save10, USER_ID, None)

        assert recorded is True
        assert await used_count(session, "SAVE10") == 1

    @pytest.mark.asyncio
    async def test_replay_for_same_order_is_noop(self, session, catalog):
        # order rows are not needed: SQLite does not enforce the foreign key here
        save10 = await coupon_id(session, "SAVE10")

        async with unit_of_work(session):
            assert await record_coupon_usage(session, save10, USER_ID, 42) is True
        async with unit_of_work(session):
            assert await record_coupon_usage(session, save10, USER_ID, 42) is False

        rows = await session.scalar(select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == save10))
        assert rows == 1
        assert await used_count(session, "SAVE10") == 1


class TestCreateCoupon:

    @pytest.mark.asyncio
    async def test_code_stored_upper_case(self, session, catalog):
        coupon = await create_coupon(
            session,
            CouponCreate(code="diwali25", type=CouponType.PERCENTAGE, value=Decimal("25"), max_discount=Decimal("200")),
        )

        assert coupon.code == "DIWALI25"
        result = await validate_coupon(session, "Diwali25", USER_ID, Decimal("400.00"))
        assert result.discount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_duplicate_code(self, session, catalog):
        with pytest.raises(ConflictError):
            await create_coupon(session, CouponCreate(code="save10", type=CouponType.FLAT, value=Decimal("10")))

    def test_percentage_over_100_rejected(self):
        with pytest.raises(ValueError):
            CouponCreate(code="FREE", type=CouponType.PERCENTAGE, value=Decimal("150"))
