"""
Wallet Ledger

Per-user prepaid balance plus an append-only transaction log.

credit() and debit() never open their own transaction: they run inside the
caller's unit of work so the balance change commits (or rolls back) together
with whatever caused it, e.g. an order insert or a cancellation. Both lock
the wallet row with SELECT ... FOR UPDATE before reading the balance, and
each appends exactly one WalletTransaction carrying the post-mutation
balance.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from takeaway.core.config import get_settings
from takeaway.core.exceptions import (
    InsufficientBalanceError,
    ValidationError,
    WalletNotFoundError,
)
from takeaway.database import insert_ignore, unit_of_work
from takeaway.enums import TransactionType
from takeaway.models import Wallet, WalletTransaction
from takeaway.services.pricing import ZERO, money

logger = logging.getLogger(__name__)
settings = get_settings()

MAX_PAGE_SIZE = 50


@dataclass
class LedgerReplay:
    """Outcome of folding a user's ledger in creation order."""
    user_id: str
    stored_balance: Decimal
    replayed_balance: Decimal
    transactions: int
    broken_at: Optional[int] = None  # first transaction whose balance_after disagrees

    @property
    def consistent(self) -> bool:
        return self.broken_at is None and self.stored_balance == self.replayed_balance


# =============================================================================
# ROW ACCESS
# =============================================================================

async def get_or_create_wallet(session: AsyncSession, user_id: str) -> Wallet:
    """Return the user's wallet, inserting a zero-balance row on first use."""
    await insert_ignore(
        session,
        Wallet.__table__,
        {"user_id": user_id, "balance": ZERO},
        conflict_columns=["user_id"],
    )
    result = await session.execute(
        select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_balance(session: AsyncSession, user_id: str) -> Decimal:
    """Unlocked read; zero when the user has no wallet yet."""
    result = await session.execute(select(Wallet.balance).where(Wallet.user_id == user_id))
    balance = result.scalar_one_or_none()
    return money(balance) if balance is not None else ZERO


async def lock_wallet(session: AsyncSession, user_id: str) -> Optional[Wallet]:
    """SELECT ... FOR UPDATE on the wallet row, refreshing any cached copy."""
    result = await session.execute(
        select(Wallet)
        .where(Wallet.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _positive(amount: Decimal) -> Decimal:
    amount = money(amount)
    if amount <= ZERO:
        raise ValidationError("Amount must be positive", details={"amount": str(amount)})
    return amount


# =============================================================================
# MUTATIONS (caller owns the transaction)
# =============================================================================

async def credit(
    session: AsyncSession,
    user_id: str,
    amount: Decimal,
    description: str,
    reference_id: Optional[int] = None,
) -> WalletTransaction:
    """Add money to a wallet, creating it first when missing."""
    amount = _positive(amount)

    await insert_ignore(
        session,
        Wallet.__table__,
        {"user_id": user_id, "balance": ZERO},
        conflict_columns=["user_id"],
    )
    wallet = await lock_wallet(session, user_id)

    wallet.balance = money(wallet.balance + amount)
    txn = WalletTransaction(
        user_id=user_id,
        type=TransactionType.CREDIT,
        amount=amount,
        description=description,
        reference_id=reference_id,
        balance_after=wallet.balance,
    )
    session.add(txn)
    await session.flush()

    logger.info(f"Wallet: credited ₹{amount} to {user_id} (balance ₹{wallet.balance}, ref={reference_id})")
    return txn


async def debit(
    session: AsyncSession,
    user_id: str,
    amount: Decimal,
    description: str,
    reference_id: Optional[int] = None,
) -> WalletTransaction:
    """
    Take money out of a wallet.

    The balance check happens after the row lock is held.

    Raises:
        WalletNotFoundError: user has never had a wallet
        InsufficientBalanceError: locked balance below amount
    """
    amount = _positive(amount)

    wallet = await lock_wallet(session, user_id)
    if wallet is None:
        raise WalletNotFoundError(user_id)

    balance = money(wallet.balance)
    if balance < amount:
        logger.warning(f"Wallet: debit of ₹{amount} refused for {user_id} (balance ₹{balance})")
        raise InsufficientBalanceError(balance, amount)

    wallet.balance = money(balance - amount)
    txn = WalletTransaction(
        user_id=user_id,
        type=TransactionType.DEBIT,
        amount=amount,
        description=description,
        reference_id=reference_id,
        balance_after=wallet.balance,
    )
    session.add(txn)
    await session.flush()

    logger.info(f"Wallet: debited ₹{amount} from {user_id} (balance ₹{wallet.balance}, ref={reference_id})")
    return txn


# =============================================================================
# USER-FACING OPERATIONS
# =============================================================================

async def top_up(
    session: AsyncSession,
    user_id: str,
    amount: Decimal,
    description: str = "Added to wallet",
) -> Tuple[Decimal, WalletTransaction]:
    """Credit the wallet from an external top-up; returns (new balance, transaction)."""
    amount = money(amount)
    if amount <= ZERO:
        raise ValidationError("Amount must be positive")
    if amount > settings.wallet_max_top_up:
        raise ValidationError(f"Maximum top-up is ₹{settings.wallet_max_top_up:.2f}")

    async with unit_of_work(session):
        txn = await credit(session, user_id, amount, description)

    return txn.balance_after, txn


async def get_wallet(session: AsyncSession, user_id: str) -> Tuple[Wallet, List[WalletTransaction]]:
    """Balance plus the most recent transactions, newest first."""
    async with unit_of_work(session):
        wallet = await get_or_create_wallet(session, user_id)

    result = await session.execute(
        select(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.id.desc())
        .limit(settings.wallet_recent_transactions)
    )
    return wallet, list(result.scalars())


async def get_transactions(
    session: AsyncSession,
    user_id: str,
    page: int = 1,
    limit: int = 20,
) -> Tuple[List[WalletTransaction], int]:
    """One page of the ledger, newest first, plus the total row count."""
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)

    total = await session.scalar(
        select(func.count(WalletTransaction.id)).where(WalletTransaction.user_id == user_id)
    )
    result = await session.execute(
        select(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars()), total or 0


async def replay(session: AsyncSession, user_id: str) -> LedgerReplay:
    """Fold the ledger from zero and compare it with the stored balance."""
    result = await session.execute(
        select(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.id)
    )
    running = ZERO
    broken_at = None
    count = 0
    for txn in result.scalars():
        count += 1
        delta = money(txn.amount)
        running = money(running + delta if txn.type == TransactionType.CREDIT else running - delta)
        if broken_at is None and money(txn.balance_after) != running:
            broken_at = txn.id

    return LedgerReplay(
        user_id=user_id,
        stored_balance=await get_balance(session, user_id),
        replayed_balance=running,
        transactions=count,
        broken_at=broken_at,
    )
