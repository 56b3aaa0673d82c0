"""
Pydantic Schemas for Request/Response Validation

Covers:
- Add-on snapshot value type stored inside cart and order lines
- Cart, checkout, cancellation and reorder payloads
- Owner/admin status updates
- Wallet, coupon and payment verification payloads

Author: Khalil Bannouri
Version: 4.0.0
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from takeaway.enums import CouponType, OrderStatus, PaymentStatus, TransactionType


# =============================================================================
# VALUE TYPES
# =============================================================================

class AddOnSnapshot(BaseModel):
    """An add-on as it was priced when the line was written."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str = Field(..., min_length=1, max_length=100)
    price: Decimal = Field(..., ge=0, decimal_places=2)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class AddToCartRequest(BaseModel):
    menu_item_id: int
    variant_id: Optional[int] = None
    add_on_ids: List[int] = Field(default_factory=list)
    quantity: int = Field(..., ge=1, le=20, examples=[1])


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=0, le=20)


class CreateOrderRequest(BaseModel):
    """Checkout request. Prices are never accepted from the client."""
    notes: Optional[str] = Field(None, max_length=500)
    pickup_name: Optional[str] = Field(None, max_length=100)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=100)
    use_wallet: bool = False
    coupon_code: Optional[str] = Field(None, max_length=50)

    @field_validator("coupon_code")
    @classmethod
    def blank_coupon_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class OrderStatusUpdateRequest(BaseModel):
    status: OrderStatus
    preparation_time: Optional[int] = Field(None, ge=1, le=240)


class WalletTopUpRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: str = Field(default="Added to wallet", max_length=255)


class ValidateCouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    subtotal: Decimal = Field(..., ge=0, decimal_places=2)


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=2, max_length=50)
    type: CouponType
    value: Decimal = Field(..., gt=0, decimal_places=2)
    min_order: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    max_discount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    expires_at: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    per_user_limit: int = Field(default=1, ge=1)

    @field_validator("value")
    @classmethod
    def percentage_at_most_100(cls, v: Decimal, info) -> Decimal:
        if info.data.get("type") == CouponType.PERCENTAGE and v > 100:
            raise ValueError("Percentage coupons cannot exceed 100")
        return v


class CreatePaymentRequest(BaseModel):
    order_id: int


class VerifyPaymentRequest(BaseModel):
    order_id: int
    gateway_order_id: str = Field(..., min_length=1)
    gateway_payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    menu_item_id: int
    name: str
    variant_name: Optional[str]
    add_ons: List[AddOnSnapshot]
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    restaurant_id: int
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    wallet_amount_used: Decimal
    coupon_code: Optional[str]
    pickup_name: Optional[str]
    notes: Optional[str]
    preparation_time: Optional[int]
    idempotency_key: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]
    items: List[OrderItemResponse] = Field(default_factory=list)


class OrderSummaryResponse(BaseModel):
    """Order row without lines, for list endpoints."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    restaurant_id: int
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    wallet_amount_used: Decimal
    preparation_time: Optional[int]
    pickup_name: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]


class WalletTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    amount: Decimal
    description: str
    reference_id: Optional[int]
    balance_after: Decimal
    created_at: datetime


class ReorderLine(BaseModel):
    name: str
    quantity: int
    reason: Optional[str] = None


class ReorderSummary(BaseModel):
    added: List[ReorderLine] = Field(default_factory=list)
    skipped: List[ReorderLine] = Field(default_factory=list)


class ApiResponse(BaseModel):
    """Standard success envelope."""
    success: bool = True
    message: str = "Success"
    data: Any = None


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[Any] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    redis: str
    payment_service: str
    notification_service: str
    timestamp: datetime
