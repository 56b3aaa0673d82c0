"""
Pricing Engine

Authoritative line and cart totals computed from catalog rows and the
add-on snapshots captured when a line was written. Client-supplied prices
are never an input.

Rules:
    - unit price = variant price if a variant is referenced, else base price,
      plus the sum of the line's add-on snapshot prices
    - line total = unit price x quantity
    - subtotal = sum of line totals
    - every step is rounded half-up to 2 decimal places
    - no discount is applied here

Lines whose menu item is gone or unavailable, or whose referenced variant no
longer exists, are left out of the totals and reported as unavailable; the
caller decides whether that blocks checkout.

Author: Khalil Bannouri
Version: 4.0.0
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Sequence

from takeaway.models import MenuItem, MenuItemVariant
from takeaway.schemas import AddOnSnapshot

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    """Round any numeric value to 2 dp, half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class PricingLine:
    """One line to price, with its catalog lookups already resolved."""
    menu_item: Optional[MenuItem]
    variant: Optional[MenuItemVariant]
    quantity: int
    add_ons: Sequence[AddOnSnapshot] = ()
    variant_id: Optional[int] = None
    name: Optional[str] = None
    ref: Optional[int] = None  # cart item id, echoed back to the caller


@dataclass
class PricedLine:
    line: PricingLine
    unit_price: Decimal
    total_price: Decimal

    @property
    def name(self) -> str:
        return self.line.menu_item.name

    @property
    def variant_name(self) -> Optional[str]:
        return self.line.variant.name if self.line.variant is not None else None


@dataclass
class UnavailableLine:
    line: PricingLine
    reason: str

    @property
    def name(self) -> str:
        if self.line.menu_item is not None:
            return self.line.menu_item.name
        return self.line.name or "Unknown item"


@dataclass
class CartPricing:
    lines: List[PricedLine] = field(default_factory=list)
    unavailable: List[UnavailableLine] = field(default_factory=list)
    subtotal: Decimal = ZERO
    discount: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return money(max(ZERO, self.subtotal - self.discount))

    @property
    def item_count(self) -> int:
        return sum(p.line.quantity for p in self.lines)


def unavailable_reason(line: PricingLine) -> Optional[str]:
    """Why a line cannot be priced, or None when it can."""
    if line.menu_item is None:
        return "Item no longer exists"
    if not line.menu_item.is_available:
        return "Item is unavailable"
    if line.variant_id is not None:
        if line.variant is None or line.variant.menu_item_id != line.menu_item.id:
            return "Variant no longer exists"
    return None


def unit_price(line: PricingLine) -> Decimal:
    base = line.variant.price if line.variant is not None else line.menu_item.base_price
    extras = sum((money(a.price) for a in line.add_ons), ZERO)
    return money(money(base) + extras)


def price_line(line: PricingLine) -> PricedLine:
    unit = unit_price(line)
    return PricedLine(line=line, unit_price=unit, total_price=money(unit * line.quantity))


def price_cart(lines: Sequence[PricingLine]) -> CartPricing:
    """
    Price a whole cart.

    Args:
        lines: Cart lines with catalog rows attached

    Returns:
        CartPricing with priced lines, unavailable lines and the subtotal
    """
    pricing = CartPricing()
    for line in lines:
        reason = unavailable_reason(line)
        if reason is not None:
            pricing.unavailable.append(UnavailableLine(line=line, reason=reason))
            continue
        pricing.lines.append(price_line(line))

    pricing.subtotal = money(sum((p.total_price for p in pricing.lines), ZERO))
    return pricing
