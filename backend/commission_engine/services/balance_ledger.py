"""
Balance Ledger Mutations

The four running totals on an affiliate move only through these helpers
(and, for the initial credit, inside create_affiliate_settlement()).
Each one is a single atomic adjust_affiliate_balances() call; debits are
clamped at zero by the database function.

    (attribution)         pending += c, total_earnings += c   in the insert transaction
    release_to_available  pending -= c, available += c        (manual split)
    settle_paid           pending -= c, paid += c             (transfer ok)
    reverse_refund        pending -= c, total_earnings -= c   (refund)
    pay_withdrawal        available -= w, paid += w           (withdrawal paid)
"""

import logging

from commission_engine.services.storage import BalanceDelta, SettlementStore

logger = logging.getLogger(__name__)


async def release_to_available(store: SettlementStore, affiliate_id: str, amount: int) -> None:
    await store.adjust_affiliate_balances(
        affiliate_id, BalanceDelta(pending=-amount, available=amount)
    )
    logger.debug(f"Released {amount} cents to available for affiliate {affiliate_id}")


async def settle_paid(store: SettlementStore, affiliate_id: str, amount: int) -> None:
    await store.adjust_affiliate_balances(
        affiliate_id, BalanceDelta(pending=-amount, paid=amount)
    )
    logger.debug(f"Moved {amount} cents pending to paid for affiliate {affiliate_id}")


async def reverse_refund(store: SettlementStore, affiliate_id: str, amount: int) -> None:
    await store.adjust_affiliate_balances(
        affiliate_id, BalanceDelta(pending=-amount, total_earnings=-amount)
    )
    logger.debug(f"Reversed {amount} cents for refunded sale of affiliate {affiliate_id}")


async def pay_withdrawal(store: SettlementStore, affiliate_id: str, amount: int) -> None:
    await store.adjust_affiliate_balances(
        affiliate_id, BalanceDelta(available=-amount, paid=amount)
    )
    logger.debug(f"Moved {amount} cents available to paid for affiliate {affiliate_id} (withdrawal)")
