"""
FastAPI Application Entry Point

Takeaway Ordering Backend - order settlement core behind a thin HTTP layer.
Identity arrives pre-authenticated from the upstream gateway in the
X-User-Id / X-User-Role headers.

Endpoints:
    - /api/cart: Cart lines (add, update, remove, clear)
    - /api/orders: Checkout, history, cancellation, reorder
    - /api/payments: Gateway checkout, verification, webhook
    - /api/wallet: Balance, top-up, ledger
    - /api/coupons/validate: Coupon preview
    - /api/notifications: In-app inbox
    - /api/owner/orders: Restaurant owner fulfillment
    - /api/admin: Order oversight and coupon creation
    - /health: System health check

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, func
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
import redis

from takeaway.core.config import get_settings, setup_logging
from takeaway.core.exceptions import TakeawayError
from takeaway.database import get_db, init_db, engine
from takeaway.enums import ActorRole, OrderStatus
from takeaway.schemas import (
    AddToCartRequest,
    ApiResponse,
    CouponCreate,
    CreateOrderRequest,
    CreatePaymentRequest,
    ErrorResponse,
    HealthResponse,
    OrderResponse,
    OrderStatusUpdateRequest,
    OrderSummaryResponse,
    UpdateCartItemRequest,
    ValidateCouponRequest,
    VerifyPaymentRequest,
    WalletTopUpRequest,
    WalletTransactionResponse,
)
from takeaway.services import cart as cart_service
from takeaway.services import coupon as coupon_service
from takeaway.services import order_payment, orders, outbox, wallet
from takeaway.services.notifications import (
    get_notification_service,
    list_notifications,
    mark_all_read,
    mark_read,
)
from takeaway.services.payment import get_payment_service

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("✅ Database initialized")

    payment_service = get_payment_service()
    notification_service = get_notification_service()
    logger.info(f"✅ Payment Service: {payment_service.provider_name}")
    logger.info(f"✅ Notification Service: {notification_service.provider_name}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    logger.info("Shutting down...")
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Takeaway ordering backend: cart, checkout, wallet, coupons and "
        "order fulfillment with a strict status state machine."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# IDENTITY
# =============================================================================

@dataclass
class Actor:
    user_id: str
    role: ActorRole


async def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_role: str = Header(ActorRole.CUSTOMER.value),
) -> Actor:
    """Identity set by the upstream auth gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        role = ActorRole(x_user_role.lower())
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role: {x_user_role}")
    if role == ActorRole.SYSTEM:
        raise HTTPException(status_code=403, detail="Role not allowed")
    return Actor(user_id=x_user_id, role=role)


def require_role(*roles: ActorRole):
    async def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            raise HTTPException(status_code=403, detail="You do not have permission for this action")
        return actor
    return dependency


customer_only = require_role(ActorRole.CUSTOMER)
owner_only = require_role(ActorRole.OWNER)
admin_only = require_role(ActorRole.ADMIN)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def ok(data=None, message: str = "Success") -> dict:
    return jsonable_encoder(ApiResponse(message=message, data=data))


def order_payload(order) -> dict:
    return OrderResponse.model_validate(order).model_dump(mode="json")


def page_payload(rows, total: int, page: int, limit: int) -> dict:
    return {
        "orders": [OrderSummaryResponse.model_validate(o).model_dump(mode="json") for o in rows],
        "pagination": {"page": page, "limit": limit, "total": total},
    }


def after_commit(background_tasks: BackgroundTasks, outcome: orders.OrderOutcome) -> None:
    """Run the outbox tasks the request committed once the response is sent."""
    if outcome.outbox_ids:
        background_tasks.add_task(outbox.dispatch, list(outcome.outbox_ids))


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify all system components are operational."""

    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    payment_status = "healthy" if await get_payment_service().health_check() else "unhealthy"
    notification_status = "healthy" if await get_notification_service().health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, payment_status, notification_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_service=payment_status,
        notification_service=notification_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# CART
# =============================================================================

@app.get("/api/cart", tags=["Cart"])
async def get_cart(actor: Actor = Depends(customer_only), db: AsyncSession = Depends(get_db)):
    view = await cart_service.get_cart(db, actor.user_id)
    return ok(view.to_dict())


@app.post("/api/cart/items", status_code=201, tags=["Cart"])
async def add_cart_item(
    body: AddToCartRequest,
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    view = await cart_service.add_to_cart(
        db, actor.user_id, body.menu_item_id, body.variant_id, body.add_on_ids, body.quantity
    )
    return ok(view.to_dict(), "Item added to cart")


@app.patch("/api/cart/items/{cart_item_id}", tags=["Cart"])
async def update_cart_item(
    cart_item_id: int,
    body: UpdateCartItemRequest,
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    view = await cart_service.update_cart_item(db, actor.user_id, cart_item_id, body.quantity)
    return ok(view.to_dict(), "Cart updated")


@app.delete("/api/cart/items/{cart_item_id}", tags=["Cart"])
async def remove_cart_item(
    cart_item_id: int,
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    view = await cart_service.remove_cart_item(db, actor.user_id, cart_item_id)
    return ok(view.to_dict(), "Item removed")


@app.delete("/api/cart", tags=["Cart"])
async def clear_cart(actor: Actor = Depends(customer_only), db: AsyncSession = Depends(get_db)):
    await cart_service.clear_cart(db, actor.user_id)
    return ok(message="Cart cleared")


# =============================================================================
# ORDERS
# =============================================================================

@app.post(
    "/api/orders",
    status_code=201,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Checkout",
)
async def create_order(
    body: CreateOrderRequest,
    background_tasks: BackgroundTasks,
    response: Response,
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    """
    Convert the cart into an order.

    Retrying with the same idempotency_key returns the original order
    with 200 instead of 201.
    """
    outcome = await orders.create_order(db, actor.user_id, body)
    after_commit(background_tasks, outcome)
    if not outcome.created:
        response.status_code = 200
        return ok(order_payload(outcome.order), "Order already placed")
    return ok(order_payload(outcome.order), "Order placed successfully")


@app.get("/api/orders", tags=["Orders"])
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=orders.CUSTOMER_PAGE_LIMIT),
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await orders.list_orders(db, actor.user_id, page, limit)
    return ok(page_payload(rows, total, page, limit))


@app.get("/api/orders/{order_id}", tags=["Orders"])
async def get_order(order_id: int, actor: Actor = Depends(customer_only), db: AsyncSession = Depends(get_db)):
    order = await orders.get_order(db, order_id, actor.user_id)
    return ok(order_payload(order))


@app.patch("/api/orders/{order_id}/cancel", tags=["Orders"])
async def cancel_order(
    order_id: int,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    outcome = await orders.cancel_order(db, order_id, actor.user_id)
    after_commit(background_tasks, outcome)
    return ok(order_payload(outcome.order), "Order cancelled")


@app.post("/api/orders/{order_id}/reorder", tags=["Orders"])
async def reorder(order_id: int, actor: Actor = Depends(customer_only), db: AsyncSession = Depends(get_db)):
    summary = await orders.reorder_from_past_order(db, order_id, actor.user_id)
    view = await cart_service.get_cart(db, actor.user_id)
    message = f"{len(summary.added)} item(s) added to cart"
    if summary.skipped:
        message += f", {len(summary.skipped)} skipped"
    return ok({"summary": summary.model_dump(), "cart": view.to_dict()}, message)


# =============================================================================
# PAYMENTS
# =============================================================================

@app.post("/api/payments/create", tags=["Payments"])
async def create_payment(
    body: CreatePaymentRequest,
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    data = await order_payment.create_payment(db, actor.user_id, body.order_id)
    return ok(data, "Payment order created")


@app.post("/api/payments/verify", tags=["Payments"])
async def verify_payment(
    body: VerifyPaymentRequest,
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    outcome = await order_payment.verify_payment(
        db,
        actor.user_id,
        body.order_id,
        body.gateway_order_id,
        body.gateway_payment_id,
        body.signature,
    )
    return ok(order_payload(outcome.order), "Payment verified")


@app.post("/api/payments/webhook", tags=["Payments"])
async def payment_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Gateway callback; authenticated by its signature, not by user headers."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature") or request.headers.get("x-webhook-signature", "")
    result = await order_payment.handle_webhook(db, payload, signature)
    return ok(result, "Webhook received")


# =============================================================================
# WALLET
# =============================================================================

@app.get("/api/wallet", tags=["Wallet"])
async def get_wallet(actor: Actor = Depends(customer_only), db: AsyncSession = Depends(get_db)):
    user_wallet, transactions = await wallet.get_wallet(db, actor.user_id)
    return ok({
        "balance": str(user_wallet.balance),
        "transactions": [
            WalletTransactionResponse.model_validate(t).model_dump(mode="json") for t in transactions
        ],
    })


@app.post("/api/wallet/add", tags=["Wallet"])
async def add_money(
    body: WalletTopUpRequest,
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    balance, txn = await wallet.top_up(db, actor.user_id, body.amount, body.description)
    return ok(
        {
            "balance": str(balance),
            "transaction": WalletTransactionResponse.model_validate(txn).model_dump(mode="json"),
        },
        f"₹{txn.amount} added to wallet",
    )


@app.get("/api/wallet/transactions", tags=["Wallet"])
async def wallet_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=wallet.MAX_PAGE_SIZE),
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await wallet.get_transactions(db, actor.user_id, page, limit)
    return ok({
        "transactions": [WalletTransactionResponse.model_validate(t).model_dump(mode="json") for t in rows],
        "pagination": {"page": page, "limit": limit, "total": total},
    })


# =============================================================================
# COUPONS & NOTIFICATIONS
# =============================================================================

@app.post("/api/coupons/validate", tags=["Coupons"])
async def validate_coupon(
    body: ValidateCouponRequest,
    actor: Actor = Depends(customer_only),
    db: AsyncSession = Depends(get_db),
):
    result = await coupon_service.validate_coupon(db, body.code, actor.user_id, body.subtotal)
    return ok(result.to_dict(), "Coupon applied")


@app.get("/api/notifications", tags=["Notifications"])
async def notifications(
    limit: int = Query(30, ge=1, le=50),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    rows = await list_notifications(db, actor.user_id, limit)
    return ok([
        {
            "id": n.id,
            "title": n.title,
            "body": n.body,
            "type": n.type.value,
            "reference_id": n.reference_id,
            "is_read": n.is_read,
            "created_at": n.created_at,
        }
        for n in rows
    ])


@app.patch("/api/notifications/read-all", tags=["Notifications"])
async def read_all_notifications(
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    updated = await mark_all_read(db, actor.user_id)
    return ok({"updated": updated}, "Notifications marked as read")


@app.patch("/api/notifications/{notification_id}/read", tags=["Notifications"])
async def read_notification(
    notification_id: int,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    notification = await mark_read(db, actor.user_id, notification_id)
    return ok({"id": notification.id, "is_read": notification.is_read}, "Notification marked as read")


# =============================================================================
# RESTAURANT OWNER
# =============================================================================

@app.get("/api/owner/orders", tags=["Owner"])
async def owner_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=orders.ADMIN_PAGE_LIMIT),
    status: Optional[OrderStatus] = Query(None),
    actor: Actor = Depends(owner_only),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await orders.list_restaurant_orders(db, actor.user_id, page, limit, status)
    return ok(page_payload(rows, total, page, limit))


@app.get("/api/owner/orders/{order_id}", tags=["Owner"])
async def owner_order(order_id: int, actor: Actor = Depends(owner_only), db: AsyncSession = Depends(get_db)):
    order = await orders.get_restaurant_order(db, actor.user_id, order_id)
    return ok(order_payload(order))


@app.patch("/api/owner/orders/{order_id}/status", tags=["Owner"])
async def owner_update_status(
    order_id: int,
    body: OrderStatusUpdateRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(owner_only),
    db: AsyncSession = Depends(get_db),
):
    outcome = await orders.update_order_status(
        db, order_id, body.status, ActorRole.OWNER, actor.user_id, body.preparation_time
    )
    after_commit(background_tasks, outcome)
    return ok(order_payload(outcome.order), f"Order marked {body.status.value}")


# =============================================================================
# ADMIN
# =============================================================================

@app.get("/api/admin/orders", tags=["Admin"])
async def admin_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=orders.ADMIN_PAGE_LIMIT),
    status: Optional[OrderStatus] = Query(None),
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await orders.list_all_orders(db, page, limit, status)
    return ok(page_payload(rows, total, page, limit))


@app.patch("/api/admin/orders/{order_id}/status", tags=["Admin"])
async def admin_update_status(
    order_id: int,
    body: OrderStatusUpdateRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    outcome = await orders.update_order_status(
        db, order_id, body.status, ActorRole.ADMIN, actor.user_id, body.preparation_time
    )
    after_commit(background_tasks, outcome)
    return ok(order_payload(outcome.order), f"Order marked {body.status.value}")


@app.post("/api/admin/coupons", status_code=201, tags=["Admin"])
async def admin_create_coupon(
    body: CouponCreate,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    created = await coupon_service.create_coupon(db, body)
    return ok(
        {
            "id": created.id,
            "code": created.code,
            "type": created.type.value,
            "value": str(created.value),
            "min_order": str(created.min_order),
            "max_discount": str(created.max_discount) if created.max_discount is not None else None,
            "usage_limit": created.usage_limit,
            "per_user_limit": created.per_user_limit,
            "expires_at": created.expires_at,
        },
        "Coupon created",
    )


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def error_response(status_code: int, error: str, detail=None, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(ErrorResponse(error=error, detail=detail)),
        headers=headers,
    )


@app.exception_handler(TakeawayError)
async def takeaway_error_handler(request: Request, exc: TakeawayError) -> JSONResponse:
    """Business, validation, auth and not-found errors carry their own status."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} → {exc.status_code}: {exc!r}")
    else:
        logger.warning(f"{request.method} {request.url.path} → {exc.status_code}: {exc.message}")
    headers = {"Retry-After": "1"} if exc.retryable else None
    return error_response(exc.status_code, exc.message, exc.details or None, headers)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(400, "Validation failed", jsonable_encoder(exc.errors()))


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} → unique/foreign key conflict: {exc.orig}")
    return error_response(409, "Request conflicts with existing data")


@app.exception_handler(DBAPIError)
async def database_error_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    """Lost connections, timeouts, lock and serialization failures are retryable."""
    if exc.connection_invalidated or isinstance(exc, OperationalError):
        logger.error(f"{request.method} {request.url.path} → transient database error: {exc.orig}")
        return error_response(
            503,
            "Service temporarily unavailable, please retry",
            headers={"Retry-After": "1"},
        )
    logger.critical(f"{request.method} {request.url.path} → database defect: {exc}", exc_info=exc)
    return error_response(500, "Internal Server Error", "An unexpected error occurred")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.critical(f"Unhandled exception: {exc}", exc_info=exc)

    return error_response(
        500,
        "Internal Server Error",
        str(exc) if settings.debug else "An unexpected error occurred",
    )
