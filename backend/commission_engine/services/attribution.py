"""
Commission Attribution Service

Turns an approved checkout payment carrying an affiliate link code into a
settlement row and fires the sale notification. The row, the pending
credit and the link conversion are written by one create_settlement() call
so a failure in the middle cannot leave a settlement that was never
credited.

Attribution is idempotent on originating_payment_id: a replayed webhook
returns the existing settlement and changes nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from commission_engine.models.settlement import (
    Affiliate,
    AffiliateConfig,
    AffiliateSettlement,
    ApprovedPayment,
    NewSettlement,
    SettlementStatus,
    SplitMethod,
)
from commission_engine.services.hold_period import compute_payout_scheduled_at
from commission_engine.services.notifications import AffiliateNotifier
from commission_engine.services.storage import (
    DuplicateSettlementError,
    SettlementStore,
    StorageError,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AttributionStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


@dataclass
class AttributionResult:
    status: AttributionStatus
    reason: str = ""
    settlement: Optional[AffiliateSettlement] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "settlement_id": self.settlement.id if self.settlement else None,
            "commission_amount": self.settlement.commission_amount if self.settlement else None,
        }


def compute_commission(sale_amount: int, percent: int) -> int:
    """floor(sale_amount * percent / 100) in integers, percent clamped to 0..100."""
    percent = max(0, min(100, percent))
    return (sale_amount * percent) // 100


def choose_split_method(affiliate: Affiliate, config: AffiliateConfig) -> SplitMethod:
    if config.auto_pay_enabled:
        if affiliate.mp_user_id:
            return SplitMethod.MP_MARKETPLACE
        if affiliate.has_stripe_connect:
            return SplitMethod.STRIPE_CONNECT
    return SplitMethod.MANUAL


class CommissionAttributionService:
    """Records commissions for attributed sales."""

    def __init__(
        self,
        store: SettlementStore,
        notifier: Optional[AffiliateNotifier] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.notifier = notifier or AffiliateNotifier()
        self.clock = clock

    async def attribute_sale(self, payment: ApprovedPayment) -> AttributionResult:
        """
        Create the settlement for an approved payment.

        Args:
            payment: Approved checkout payment with the affiliate link code

        Returns:
            AttributionResult (created / duplicate / skipped)
        """
        link = await self.store.get_affiliate_link_by_code(payment.affiliate_link_code)
        if not link:
            logger.info(f"No affiliate link for code {payment.affiliate_link_code}, skipping")
            return AttributionResult(AttributionStatus.SKIPPED, "link not found")

        affiliate = await self.store.get_affiliate_by_id(link.affiliate_id)
        if not affiliate:
            logger.warning(f"Affiliate {link.affiliate_id} for link {link.id} not found, skipping")
            return AttributionResult(AttributionStatus.SKIPPED, "affiliate not found")

        if not affiliate.is_active:
            logger.info(
                f"Affiliate {affiliate.id} is {affiliate.status.value}, "
                f"no commission for payment {payment.originating_payment_id}"
            )
            return AttributionResult(AttributionStatus.SKIPPED, f"affiliate {affiliate.status.value}")

        config = await self.store.get_affiliate_config() or AffiliateConfig()

        # 0 is a valid override
        percent = (
            affiliate.commission_percent
            if affiliate.commission_percent is not None
            else config.default_commission_percent
        )
        percent = max(0, min(100, percent))
        commission_amount = compute_commission(payment.sale_amount, percent)

        existing = await self.store.get_settlement_by_originating_payment_id(
            payment.originating_payment_id
        )
        if existing:
            logger.info(
                f"Settlement {existing.id} already exists for payment "
                f"{payment.originating_payment_id}, not attributing again"
            )
            return AttributionResult(AttributionStatus.DUPLICATE, "already attributed", existing)

        now = self.clock()
        split_method = choose_split_method(affiliate, config)
        status = (
            SettlementStatus.PENDING_PAYOUT if split_method.is_automated
            else SettlementStatus.PENDING
        )

        new_settlement = NewSettlement(
            affiliate_id=affiliate.id,
            affiliate_link_id=link.id,
            originating_payment_id=payment.originating_payment_id,
            sale_amount=payment.sale_amount,
            commission_amount=commission_amount,
            commission_percent=percent,
            status=status,
            split_method=split_method,
            mp_payment_id=payment.mp_payment_id,
            stripe_payment_intent_id=payment.stripe_payment_intent_id,
            payout_scheduled_at=compute_payout_scheduled_at(now, config),
            created_at=now,
        )

        try:
            settlement = await self.store.create_settlement(new_settlement)
        except DuplicateSettlementError:
            # A concurrent delivery of the same payment won the insert
            existing = await self.store.get_settlement_by_originating_payment_id(
                payment.originating_payment_id
            )
            if not existing:
                raise StorageError(
                    f"Duplicate settlement for payment {payment.originating_payment_id} "
                    f"but no row found on re-read"
                )
            logger.info(f"Concurrent attribution for payment {payment.originating_payment_id}, reusing {existing.id}")
            return AttributionResult(AttributionStatus.DUPLICATE, "already attributed", existing)

        logger.info(
            f"Created settlement {settlement.id} for affiliate {affiliate.id}: "
            f"{commission_amount} cents ({percent}% of {payment.sale_amount}), "
            f"split={split_method.value}, payout after {settlement.payout_scheduled_at}"
        )

        await self.notifier.notify_sale(affiliate, settlement)

        return AttributionResult(AttributionStatus.CREATED, "", settlement)
