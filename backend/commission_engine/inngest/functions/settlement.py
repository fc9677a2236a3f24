"""
Settlement Event Functions

Checkout emits checkout/payment.approved when an originating payment that
carries an affiliate link code is approved. This function records the
commission; payouts happen later on the settlement scheduler.

Event data:
    originating_payment_id, affiliate_link_code, sale_amount (cents),
    mp_payment_id | stripe_payment_intent_id
"""

import logging

from inngest import NonRetriableError, TriggerEvent
from pydantic import ValidationError

from commission_engine.deps import get_attribution_service
from commission_engine.inngest.client import inngest_client
from commission_engine.inngest.events import Events
from commission_engine.models.settlement import ApprovedPayment

logger = logging.getLogger(__name__)


@inngest_client.create_function(
    fn_id="settlement-attribute-commission",
    trigger=TriggerEvent(event=Events.PAYMENT_APPROVED),
)
async def attribute_commission_fn(ctx, step):
    """Attribute an approved payment to its affiliate (idempotent per payment)."""
    try:
        payment = ApprovedPayment.model_validate(ctx.event.data)
    except ValidationError as e:
        logger.error(f"Invalid {Events.PAYMENT_APPROVED} payload: {e}")
        raise NonRetriableError(f"Invalid payment event: {e}")

    service = get_attribution_service()

    async def attribute():
        result = await service.attribute_sale(payment)
        return result.to_dict()

    result = await step.run("attribute-sale", attribute)

    logger.info(
        f"Attribution for payment {payment.originating_payment_id}: {result['status']}"
        f"{' (' + result['reason'] + ')' if result['reason'] else ''}"
    )
    return result
