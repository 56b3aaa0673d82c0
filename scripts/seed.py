"""
Demo Data Seeder

Creates one restaurant with a small menu (variants and add-ons) and the
demo coupons, so the checkout flow can be exercised locally.
Run from project root: python scripts/seed.py [--owner OWNER_ID]

Author: Khalil_Bannouri
Version: 4.0.0
"""

import argparse
import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from sqlalchemy import select

from takeaway.database import async_session_maker, init_db, unit_of_work, engine
from takeaway.enums import CouponType
from takeaway.models import AddOn, Coupon, MenuItem, MenuItemVariant, Restaurant

# name, base price, [(variant, price)], [(add-on, price)]
MENU = [
    ("Margherita Pizza", "299.00", [("Regular", "299.00"), ("Large", "449.00")], [("Extra Cheese", "60.00"), ("Olives", "40.00")]),
    ("Paneer Tikka Wrap", "189.00", [], [("Mint Mayo", "20.00")]),
    ("Veg Biryani", "249.00", [("Half", "249.00"), ("Full", "399.00")], [("Raita", "35.00")]),
    ("Masala Fries", "129.00", [], []),
    ("Cold Coffee", "149.00", [], [("Ice Cream Scoop", "50.00")]),
]

COUPONS = [
    {"code": "WELCOME50", "type": CouponType.FLAT, "value": Decimal("50.00"), "min_order": Decimal("199.00"), "per_user_limit": 1},
    {"code": "SAVE10", "type": CouponType.PERCENTAGE, "value": Decimal("10.00"), "min_order": Decimal("300.00"),
     "max_discount": Decimal("100.00"), "per_user_limit": 3},
    {"code": "FIRST20", "type": CouponType.PERCENTAGE, "value": Decimal("20.00"), "min_order": Decimal("0.00"),
     "max_discount": Decimal("150.00"), "usage_limit": 500, "per_user_limit": 1, "days": 30},
]


async def seed(owner_id: str) -> None:
    await init_db()

    async with async_session_maker() as session:
        async with unit_of_work(session):
            restaurant = await session.scalar(select(Restaurant).where(Restaurant.name == "Spice Route Kitchen"))
            if restaurant is None:
                restaurant = Restaurant(
                    name="Spice Route Kitchen",
                    owner_id=owner_id,
                    min_order=Decimal("100.00"),
                    preparation_time=25,
                )
                session.add(restaurant)
                await session.flush()

                for name, base_price, variants, add_ons in MENU:
                    item = MenuItem(restaurant_id=restaurant.id, name=name, base_price=Decimal(base_price))
                    item.variants = [MenuItemVariant(name=v, price=Decimal(p)) for v, p in variants]
                    session.add(item)
                    await session.flush()
                    for add_on, price in add_ons:
                        session.add(AddOn(
                            restaurant_id=restaurant.id,
                            menu_item_id=item.id,
                            name=add_on,
                            price=Decimal(price),
                        ))
                print(f"   ✅ Restaurant #{restaurant.id} with {len(MENU)} menu items")
            else:
                print(f"   ⏭️  Restaurant #{restaurant.id} already exists")

            for data in COUPONS:
                data = dict(data)
                days = data.pop("days", None)
                exists = await session.scalar(select(Coupon.id).where(Coupon.code == data["code"]))
                if exists:
                    print(f"   ⏭️  Coupon {data['code']} already exists")
                    continue
                if days:
                    data["expires_at"] = datetime.now(timezone.utc) + timedelta(days=days)
                session.add(Coupon(**data))
                print(f"   ✅ Coupon {data['code']}")

    await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo catalog and coupons")
    parser.add_argument("--owner", default="owner_1", help="User id of the restaurant owner")
    args = parser.parse_args()

    print("=" * 60)
    print("🌱 SEEDING DEMO DATA")
    print("=" * 60)
    asyncio.run(seed(args.owner))
    print("=" * 60)
    print("✅ Done")


if __name__ == "__main__":
    main()
