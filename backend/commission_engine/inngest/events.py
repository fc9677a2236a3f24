"""
Inngest event names and a send helper.

Events:
- checkout/payment.approved    (consumed) an attributed checkout payment was approved
- affiliate/sale.attributed    (produced) a commission was recorded; notify the affiliate
- affiliate/withdrawal.requested (produced) an affiliate asked for a PIX withdrawal
- affiliate/withdrawal.paid   (produced) an admin marked a withdrawal as paid
"""

import logging
from typing import Any, Dict

import inngest

from commission_engine.inngest.client import inngest_client

logger = logging.getLogger(__name__)


class Events:
    PAYMENT_APPROVED = "checkout/payment.approved"
    SALE_ATTRIBUTED = "affiliate/sale.attributed"
    WITHDRAWAL_REQUESTED = "affiliate/withdrawal.requested"
    WITHDRAWAL_PAID = "affiliate/withdrawal.paid"


async def send_event(name: str, data: Dict[str, Any]) -> bool:
    """
    Send an event to Inngest.

    Returns:
        True if the event was accepted, False otherwise
    """
    try:
        await inngest_client.send(inngest.Event(name=name, data=data))
        logger.info(f"Sent Inngest event {name}")
        return True
    except Exception as e:
        logger.error(f"Failed to send Inngest event {name}: {e}")
        return False
