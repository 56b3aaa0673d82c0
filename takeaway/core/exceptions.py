"""
Error Taxonomy

Every error the settlement core raises on purpose derives from TakeawayError.
Each class carries the HTTP status the API layer answers with, so services
never import FastAPI and route handlers never guess.

    ValidationError        400  bad input shape
    BusinessRuleError      400  empty cart, minimum order, coupon, wallet...
    InvalidTransitionError 409  illegal order status move
    AuthorizationError     403  acting on someone else's order/restaurant
    NotFoundError          404  unknown order/coupon/wallet/cart line
    ConflictError          409  duplicate payment, unique key clashes
    TransientError         503  lock timeout / connection loss, safe to retry

Anything else reaching the API is a programming defect: the unit of work
rolls back and the caller gets a generic 500.

Author: Khalil Bannouri
Version: 4.0.0
"""

from decimal import Decimal
from typing import Iterable, Optional


class TakeawayError(Exception):
    """
    Base exception for all takeaway backend errors.

    Attributes:
        message: Human-readable error message (safe to return to clients)
        details: Optional dict with additional context (ids, states, amounts)
    """

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.__class__.__name__}('{self.message}', {details_str})"
        return f"{self.__class__.__name__}('{self.message}')"


# =============================================================================
# 400 - VALIDATION
# =============================================================================

class ValidationError(TakeawayError):
    status_code = 400


# =============================================================================
# 400 - BUSINESS RULES
# =============================================================================

class BusinessRuleError(TakeawayError):
    status_code = 400


class EmptyCartError(BusinessRuleError):
    def __init__(self):
        super().__init__("Your cart is empty")


class MinimumOrderError(BusinessRuleError):
    def __init__(self, min_order: Decimal, subtotal: Decimal):
        super().__init__(
            f"Minimum order is ₹{min_order:.2f}. Your subtotal is ₹{subtotal:.2f}.",
            details={"min_order": str(min_order), "subtotal": str(subtotal)},
        )


class CrossRestaurantCartError(BusinessRuleError):
    def __init__(self, cart_restaurant_id: int, item_restaurant_id: int):
        super().__init__(
            "Your cart already has items from a different restaurant. Clear it first.",
            details={
                "cart_restaurant_id": cart_restaurant_id,
                "item_restaurant_id": item_restaurant_id,
            },
        )


class ItemUnavailableError(BusinessRuleError):
    def __init__(self, names: Iterable[str]):
        names = list(names)
        super().__init__(
            f"Some items are no longer available: {', '.join(names)}",
            details={"items": names},
        )


class RestaurantUnavailableError(BusinessRuleError):
    pass


class CouponError(BusinessRuleError):
    pass


class InsufficientBalanceError(BusinessRuleError):
    def __init__(self, available: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient wallet balance. Available: ₹{available:.2f}",
            details={"available": str(available), "requested": str(requested)},
        )


class InvalidTransitionError(BusinessRuleError):
    status_code = 409

    def __init__(self, current: str, requested: str, allowed: Iterable[str]):
        allowed = sorted(allowed)
        allowed_str = ", ".join(allowed) if allowed else "none (terminal state)"
        super().__init__(
            f"Invalid transition: '{current}' → '{requested}'. Allowed: {allowed_str}",
            details={"current": current, "requested": requested, "allowed": allowed},
        )


# =============================================================================
# 403 / 404 / 409
# =============================================================================

class AuthorizationError(TakeawayError):
    status_code = 403


class NotFoundError(TakeawayError):
    status_code = 404


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: int):
        super().__init__("Order not found", details={"order_id": order_id})


class WalletNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__("Wallet not found", details={"user_id": user_id})


class CartItemNotFoundError(NotFoundError):
    def __init__(self, cart_item_id: int):
        super().__init__("Cart item not found", details={"cart_item_id": cart_item_id})


class ConflictError(TakeawayError):
    status_code = 409


class PaymentAlreadyCompletedError(ConflictError):
    def __init__(self, order_id: int):
        super().__init__("This order has already been paid", details={"order_id": order_id})


# =============================================================================
# 503 - TRANSIENT INFRASTRUCTURE
# =============================================================================

class TransientError(TakeawayError):
    status_code = 503
    retryable = True
