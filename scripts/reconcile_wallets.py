"""
Wallet Reconciliation Script

Replays every wallet's ledger from zero and compares it with the stored
balance. Exits non-zero when any wallet disagrees, so it can run from cron.
Run from project root: python scripts/reconcile_wallets.py

Author: Khalil_Bannouri
Version: 4.0.0
"""

import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from sqlalchemy import select

from takeaway.core.config import setup_logging
from takeaway.database import async_session_maker, engine
from takeaway.models import Wallet
from takeaway.services import wallet

logger = logging.getLogger("takeaway.reconcile")


async def reconcile() -> int:
    """Returns the number of inconsistent wallets."""
    broken = 0
    async with async_session_maker() as session:
        user_ids = list((await session.execute(select(Wallet.user_id).order_by(Wallet.id))).scalars())
        for user_id in user_ids:
            result = await wallet.replay(session, user_id)
            if result.consistent:
                continue
            broken += 1
            logger.critical(
                f"Wallet mismatch for {user_id}: stored ₹{result.stored_balance}, "
                f"replayed ₹{result.replayed_balance} over {result.transactions} transactions "
                f"(first bad transaction: {result.broken_at})"
            )

    await engine.dispose()
    print(f"📊 Checked {len(user_ids)} wallet(s), {broken} inconsistent")
    return broken


if __name__ == "__main__":
    setup_logging()
    sys.exit(1 if asyncio.run(reconcile()) else 0)
