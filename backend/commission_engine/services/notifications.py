"""
Affiliate Notifications

Tells the affiliate about a new attributed sale and about their withdrawal
requests. Delivery (email/WhatsApp) belongs to whoever consumes the events;
this side is fire-and-forget and never fails the operation that triggered it.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from commission_engine.inngest.events import Events, send_event
from commission_engine.models.settlement import (
    Affiliate,
    AffiliateSettlement,
    AffiliateWithdrawal,
)

logger = logging.getLogger(__name__)

EventSender = Callable[[str, Dict[str, Any]], Awaitable[bool]]


class AffiliateNotifier:
    def __init__(self, sender: Optional[EventSender] = None):
        self.sender = sender or send_event

    async def notify_sale(self, affiliate: Affiliate, settlement: AffiliateSettlement) -> bool:
        return await self._send(Events.SALE_ATTRIBUTED, f"settlement {settlement.id}", {
            "affiliate_id": affiliate.id,
            "affiliate_name": affiliate.name,
            "affiliate_email": affiliate.email,
            "settlement_id": settlement.id,
            "sale_amount": settlement.sale_amount,
            "commission_amount": settlement.commission_amount,
            "split_method": settlement.split_method.value,
        })

    async def notify_withdrawal(
        self,
        event: str,
        affiliate: Affiliate,
        withdrawal: AffiliateWithdrawal,
    ) -> bool:
        """event is Events.WITHDRAWAL_REQUESTED or Events.WITHDRAWAL_PAID."""
        return await self._send(event, f"withdrawal {withdrawal.id}", {
            "affiliate_id": affiliate.id,
            "affiliate_name": affiliate.name,
            "affiliate_email": affiliate.email,
            "withdrawal_id": withdrawal.id,
            "amount": withdrawal.amount,
            "pix_key": withdrawal.pix_key,
        })

    async def _send(self, event: str, subject: str, data: Dict[str, Any]) -> bool:
        try:
            sent = await self.sender(event, data)
        except Exception as e:
            logger.warning(f"Notification {event} failed for {subject}: {e}")
            return False

        if not sent:
            logger.warning(f"Notification {event} not delivered for {subject}")
        return bool(sent)
