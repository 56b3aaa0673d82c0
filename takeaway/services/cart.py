"""
Cart Service

One active cart per user, pinned to a single restaurant. Lines carry add-on
snapshots built server-side from the catalog when the line is written;
repeated additions of the same (item, variant, add-on set) merge into one
line.

Every mutating function takes the caller's AsyncSession and runs inside
its own unit of work.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from takeaway.core.exceptions import (
    CartItemNotFoundError,
    CrossRestaurantCartError,
    NotFoundError,
    RestaurantUnavailableError,
    ValidationError,
)
from takeaway.database import unit_of_work
from takeaway.models import AddOn, Cart, CartItem, MenuItem, MenuItemVariant, Restaurant
from takeaway.schemas import AddOnSnapshot
from takeaway.services.pricing import CartPricing, PricingLine, price_cart

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 20


@dataclass
class CartView:
    cart: Optional[Cart]
    pricing: CartPricing = field(default_factory=CartPricing)

    @property
    def restaurant_id(self) -> Optional[int]:
        return self.cart.restaurant_id if self.cart is not None else None

    def to_dict(self) -> dict:
        return {
            "restaurant_id": self.restaurant_id,
            "items": [
                {
                    "id": p.line.ref,
                    "menu_item_id": p.line.menu_item.id,
                    "name": p.name,
                    "variant_id": p.line.variant_id,
                    "variant_name": p.variant_name,
                    "add_ons": [a.model_dump(mode="json") for a in p.line.add_ons],
                    "quantity": p.line.quantity,
                    "unit_price": str(p.unit_price),
                    "total_price": str(p.total_price),
                }
                for p in self.pricing.lines
            ],
            "unavailable": [
                {"id": u.line.ref, "name": u.name, "reason": u.reason}
                for u in self.pricing.unavailable
            ],
            "subtotal": str(self.pricing.subtotal),
            "item_count": self.pricing.item_count,
        }


# =============================================================================
# LOOKUPS
# =============================================================================

async def find_cart(session: AsyncSession, user_id: str) -> Optional[Cart]:
    result = await session.execute(select(Cart).where(Cart.user_id == user_id))
    return result.scalar_one_or_none()


async def pricing_lines(session: AsyncSession, items: Sequence[CartItem]) -> List[PricingLine]:
    """Attach current catalog rows to cart lines for the pricing engine."""
    item_ids = {i.menu_item_id for i in items}
    variant_ids = {i.variant_id for i in items if i.variant_id is not None}

    menu_items = {}
    if item_ids:
        rows = await session.execute(select(MenuItem).where(MenuItem.id.in_(item_ids)))
        menu_items = {m.id: m for m in rows.scalars()}

    variants = {}
    if variant_ids:
        rows = await session.execute(select(MenuItemVariant).where(MenuItemVariant.id.in_(variant_ids)))
        variants = {v.id: v for v in rows.scalars()}

    return [
        PricingLine(
            menu_item=menu_items.get(i.menu_item_id),
            variant=variants.get(i.variant_id) if i.variant_id is not None else None,
            variant_id=i.variant_id,
            add_ons=list(i.add_ons),
            quantity=i.quantity,
            ref=i.id,
        )
        for i in items
    ]


async def get_cart(session: AsyncSession, user_id: str) -> CartView:
    """Return the user's cart priced against the live catalog."""
    cart = await find_cart(session, user_id)
    if cart is None or not cart.items:
        return CartView(cart=cart)
    lines = await pricing_lines(session, cart.items)
    return CartView(cart=cart, pricing=price_cart(lines))


async def build_add_on_snapshots(
    session: AsyncSession,
    menu_item: MenuItem,
    add_on_ids: Iterable[int],
) -> List[AddOnSnapshot]:
    """Snapshot the requested add-ons from the catalog; prices come from here only."""
    wanted = sorted(set(add_on_ids))
    if not wanted:
        return []

    result = await session.execute(
        select(AddOn).where(
            AddOn.id.in_(wanted),
            AddOn.menu_item_id == menu_item.id,
            AddOn.is_available.is_(True),
        )
    )
    found = {a.id: a for a in result.scalars()}
    missing = [i for i in wanted if i not in found]
    if missing:
        raise ValidationError(
            "One or more add-ons are invalid or unavailable",
            details={"add_on_ids": missing},
        )
    return [AddOnSnapshot(id=a.id, name=a.name, price=a.price) for a in (found[i] for i in wanted)]


def _check_quantity(quantity: int) -> None:
    if quantity > MAX_LINE_QUANTITY:
        raise ValidationError(f"Maximum {MAX_LINE_QUANTITY} of one item per order")


# =============================================================================
# MUTATIONS
# =============================================================================

async def put_line(
    session: AsyncSession,
    user_id: str,
    menu_item: MenuItem,
    variant: Optional[MenuItemVariant],
    add_ons: List[AddOnSnapshot],
    quantity: int,
) -> CartItem:
    """
    Add a resolved line to the user's cart inside the caller's transaction.

    Creates the cart when needed, enforces the single-restaurant rule and
    merges with an existing line that has the same fingerprint.
    """
    cart = await find_cart(session, user_id)

    if cart is not None and cart.restaurant_id != menu_item.restaurant_id:
        if cart.items:
            raise CrossRestaurantCartError(cart.restaurant_id, menu_item.restaurant_id)
        cart.restaurant_id = menu_item.restaurant_id

    if cart is None:
        cart = Cart(user_id=user_id, restaurant_id=menu_item.restaurant_id, items=[])
        session.add(cart)

    variant_id = variant.id if variant is not None else None
    fingerprint = (menu_item.id, variant_id, tuple(sorted(a.id for a in add_ons)))

    for line in cart.items:
        if line.fingerprint == fingerprint:
            _check_quantity(line.quantity + quantity)
            line.quantity += quantity
            return line

    _check_quantity(quantity)
    line = CartItem(
        menu_item_id=menu_item.id,
        variant_id=variant_id,
        add_ons=add_ons,
        quantity=quantity,
    )
    cart.items.append(line)
    return line


async def add_to_cart(
    session: AsyncSession,
    user_id: str,
    menu_item_id: int,
    variant_id: Optional[int] = None,
    add_on_ids: Sequence[int] = (),
    quantity: int = 1,
) -> CartView:
    """
    Add an item to the user's cart.

    Raises:
        NotFoundError: menu item missing or unavailable
        ValidationError: bad variant or add-on ids, quantity over the limit
        RestaurantUnavailableError: the item's restaurant is inactive
        CrossRestaurantCartError: cart holds another restaurant's items
    """
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")

    async with unit_of_work(session):
        menu_item = await session.get(MenuItem, menu_item_id)
        if menu_item is None or not menu_item.is_available:
            raise NotFoundError("Item not found or unavailable", details={"menu_item_id": menu_item_id})

        restaurant = await session.get(Restaurant, menu_item.restaurant_id)
        if restaurant is None or not restaurant.is_active:
            raise RestaurantUnavailableError("Restaurant is not available")

        variant = None
        if variant_id is not None:
            variant = await session.get(MenuItemVariant, variant_id)
            if variant is None or variant.menu_item_id != menu_item.id:
                raise ValidationError("Invalid variant for this item", details={"variant_id": variant_id})

        snapshots = await build_add_on_snapshots(session, menu_item, add_on_ids)
        await put_line(session, user_id, menu_item, variant, snapshots, quantity)

    logger.info(f"Cart: {user_id} added {quantity} x menu item {menu_item_id}")
    return await get_cart(session, user_id)


async def _owned_line(session: AsyncSession, user_id: str, cart_item_id: int) -> tuple[Cart, CartItem]:
    cart = await find_cart(session, user_id)
    if cart is not None:
        for line in cart.items:
            if line.id == cart_item_id:
                return cart, line
    raise CartItemNotFoundError(cart_item_id)


async def _drop_line(session: AsyncSession, cart: Cart, line: CartItem) -> None:
    cart.items.remove(line)
    if not cart.items:
        await session.delete(cart)


async def update_cart_item(session: AsyncSession, user_id: str, cart_item_id: int, quantity: int) -> CartView:
    """Set a line's quantity; zero removes the line."""
    if quantity < 0:
        raise ValidationError("Quantity cannot be negative")
    _check_quantity(quantity)

    async with unit_of_work(session):
        cart, line = await _owned_line(session, user_id, cart_item_id)
        if quantity == 0:
            await _drop_line(session, cart, line)
        else:
            line.quantity = quantity

    return await get_cart(session, user_id)


async def remove_cart_item(session: AsyncSession, user_id: str, cart_item_id: int) -> CartView:
    async with unit_of_work(session):
        cart, line = await _owned_line(session, user_id, cart_item_id)
        await _drop_line(session, cart, line)
    return await get_cart(session, user_id)


async def clear_cart(session: AsyncSession, user_id: str) -> None:
    async with unit_of_work(session):
        cart = await find_cart(session, user_id)
        if cart is not None:
            await session.delete(cart)
    logger.info(f"Cart: cleared for {user_id}")
