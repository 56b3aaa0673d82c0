"""
Unit Tests: Pricing Engine

Covers services/pricing.py:
- Unit price from variant or base price plus add-on snapshots
- Half-up rounding at every step
- Unavailable lines left out of the subtotal
"""

from decimal import Decimal

import pytest

from takeaway.models import MenuItem, MenuItemVariant
from takeaway.schemas import AddOnSnapshot
from takeaway.services.pricing import (
    ZERO,
    PricingLine,
    money,
    price_cart,
    price_line,
    unavailable_reason,
)


@pytest.fixture
def pizza():
    return MenuItem(id=1, restaurant_id=1, name="Margherita Pizza", base_price=Decimal("200.00"), is_available=True)


@pytest.fixture
def large(pizza):
    return MenuItemVariant(id=11, menu_item_id=pizza.id, name="Large", price=Decimal("300.00"))


CHEESE = AddOnSnapshot(id=21, name="Extra Cheese", price=Decimal("50.00"))
OLIVES = AddOnSnapshot(id=22, name="Olives", price=Decimal("30.00"))


class TestMoney:

    def test_rounds_half_up(self):
        assert money(Decimal("0.005")) == Decimal("0.01")
        assert money(Decimal("2.675")) == Decimal("2.68")
        assert money(Decimal("1.004")) == Decimal("1.00")

    def test_accepts_ints_and_strings(self):
        assert money(5) == Decimal("5.00")
        assert money("12.5") == Decimal("12.50")


class TestPriceLine:

    def test_base_price_without_variant(self, pizza):
        priced = price_line(PricingLine(menu_item=pizza, variant=None, quantity=2))

        assert priced.unit_price == Decimal("200.00")
        assert priced.total_price == Decimal("400.00")
        assert priced.variant_name is None

    def test_variant_replaces_base_price(self, pizza, large):
        priced = price_line(PricingLine(menu_item=pizza, variant=large, variant_id=large.id, quantity=1))

        assert priced.unit_price == Decimal("300.00")
        assert priced.variant_name == "Large"

    def test_add_ons_are_added_to_unit_price(self, pizza, large):
        line = PricingLine(menu_item=pizza, variant=large, variant_id=large.id, quantity=3, add_ons=[CHEESE, OLIVES])
        priced = price_line(line)

        assert priced.unit_price == Decimal("380.00")
        assert priced.total_price == Decimal("1140.00")

    def test_fractional_prices_round_per_step(self):
        item = MenuItem(id=2, restaurant_id=1, name="Chai", base_price=Decimal("10.335"), is_available=True)
        priced = price_line(PricingLine(menu_item=item, variant=None, quantity=3))

        assert priced.unit_price == Decimal("10.34")
        assert priced.total_price == Decimal("31.02")


class TestPriceCart:

    def test_subtotal_is_sum_of_line_totals(self, pizza, large):
        fries = MenuItem(id=3, restaurant_id=1, name="Masala Fries", base_price=Decimal("100.00"), is_available=True)
        pricing = price_cart([
            PricingLine(menu_item=pizza, variant=large, variant_id=large.id, quantity=1, add_ons=[CHEESE]),
            PricingLine(menu_item=fries, variant=None, quantity=2),
        ])

        assert pricing.subtotal == Decimal("550.00")
        assert pricing.discount == ZERO
        assert pricing.total == Decimal("550.00")
        assert pricing.item_count == 3
        assert pricing.unavailable == []

    def test_empty_cart(self):
        pricing = price_cart([])

        assert pricing.subtotal == ZERO
        assert pricing.lines == []

    def test_unavailable_item_excluded_and_reported(self, pizza):
        gone = MenuItem(id=4, restaurant_id=1, name="Seasonal Shake", base_price=Decimal("150.00"), is_available=False)
        pricing = price_cart([
            PricingLine(menu_item=pizza, variant=None, quantity=1),
            PricingLine(menu_item=gone, variant=None, quantity=1),
        ])

        assert pricing.subtotal == Decimal("200.00")
        assert len(pricing.unavailable) == 1
        assert pricing.unavailable[0].name == "Seasonal Shake"
        assert pricing.unavailable[0].reason == "Item is unavailable"

    def test_deleted_item_and_missing_variant(self, pizza):
        missing_item = PricingLine(menu_item=None, variant=None, quantity=1, name="Old Special")
        missing_variant = PricingLine(menu_item=pizza, variant=None, variant_id=99, quantity=1)

        assert unavailable_reason(missing_item) == "Item no longer exists"
        assert unavailable_reason(missing_variant) == "Variant no longer exists"

        pricing = price_cart([missing_item, missing_variant])
        assert pricing.subtotal == ZERO
        assert [u.name for u in pricing.unavailable] == ["Old Special", "Margherita Pizza"]

    def test_variant_of_another_item_is_unavailable(self, pizza):
        foreign = MenuItemVariant(id=50, menu_item_id=999, name="Family", price=Decimal("500.00"))
        line = PricingLine(menu_item=pizza, variant=foreign, variant_id=foreign.id, quantity=1)

        assert unavailable_reason(line) == "Variant no longer exists"
