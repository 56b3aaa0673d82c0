"""
                        Services Module

Business logic of the settlement core. Functions take the request's
AsyncSession explicitly; gateway and notification adapters keep the hybrid
Mock (development) / Real (staging, production) pattern.

Services:
    - pricing: authoritative line and cart totals
    - cart: one-restaurant cart with add-on snapshots
    - wallet: prepaid balance and append-only ledger
    - coupon: coupon validation and redemption ledger
    - order_state: per-role order status transitions
    - orders: checkout coordinator, cancellation, status updates, reorder
    - order_payment: gateway checkout, verification and webhooks
    - outbox: durable post-commit side effects
    - payment: gateway adapters (mock HMAC, Stripe)
    - notifications: dispatcher adapters (mock, in-app inbox)
"""
