"""
Affiliate Program Service

Admin-facing reads and writes around the settlement engine:
- Global affiliate config (commission percent, hold days, auto-pay)
- Per-affiliate stats (clicks, conversions, sales and commissions by status)

Key rules:
- hold_days is saved as max(hold_days, 7); 0 or missing becomes 7
- Stats ignore refunded settlements
- Clicks and conversions are lifetime link totals; the optional date range
  only filters settlements by created_at
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from commission_engine.models.settlement import (
    AffiliateConfig,
    AffiliateConfigUpdate,
    SettlementStatus,
)
from commission_engine.services.hold_period import effective_hold_days
from commission_engine.services.storage import SettlementStore

logger = logging.getLogger(__name__)


class AffiliateNotFoundError(Exception):
    def __init__(self, affiliate_id: str):
        self.affiliate_id = affiliate_id
        super().__init__(f"Affiliate {affiliate_id} not found")


class AffiliateService:
    """
    Affiliate program settings and reporting.

    Usage:
        service = AffiliateService(store)
        config = await service.update_config(AffiliateConfigUpdate(hold_days=3))
        # config.hold_days == 7
    """

    def __init__(self, store: SettlementStore):
        self.store = store

    # =========================================================================
    # CONFIG
    # =========================================================================

    async def get_config(self) -> AffiliateConfig:
        """Current config, or the defaults when none was saved yet."""
        return await self.store.get_affiliate_config() or AffiliateConfig()

    async def update_config(self, update: AffiliateConfigUpdate) -> AffiliateConfig:
        current = await self.get_config()
        fields = update.model_dump(exclude_unset=True, exclude_none=True)

        merged = {**current.model_dump(), **fields}
        merged["hold_days"] = effective_hold_days(merged.get("hold_days"))

        if fields.get("hold_days") is not None and fields["hold_days"] != merged["hold_days"]:
            logger.info(
                f"Requested hold_days={fields['hold_days']} raised to {merged['hold_days']} "
                f"(refund protection minimum)"
            )

        saved = await self.store.upsert_affiliate_config(merged)
        logger.info(
            f"Affiliate config saved: commission={saved.default_commission_percent}%, "
            f"hold_days={saved.hold_days}, auto_pay={saved.auto_pay_enabled}"
        )
        return saved

    # =========================================================================
    # STATS
    # =========================================================================

    async def get_affiliate_stats(
        self,
        affiliate_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        affiliate = await self.store.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            raise AffiliateNotFoundError(affiliate_id)

        links = await self.store.list_affiliate_links(affiliate_id)
        settlements = await self.store.list_settlements_by_affiliate(
            affiliate_id, start_date=start_date, end_date=end_date
        )
        counted = [s for s in settlements if s.status != SettlementStatus.REFUNDED]

        by_status: Dict[str, Dict[str, int]] = {}
        for settlement in counted:
            bucket = by_status.setdefault(
                settlement.status.value, {"count": 0, "commission_amount": 0}
            )
            bucket["count"] += 1
            bucket["commission_amount"] += settlement.commission_amount

        return {
            "affiliate_id": affiliate.id,
            "status": affiliate.status.value,
            "clicks": sum(link.clicks for link in links),
            "conversions": sum(link.conversions for link in links),
            "total_sales": len(counted),
            "total_sale_amount": sum(s.sale_amount for s in counted),
            "total_commission": sum(s.commission_amount for s in counted),
            "by_status": by_status,
            "balances": {
                "pending_amount": affiliate.pending_amount,
                "available_amount": affiliate.available_amount,
                "paid_amount": affiliate.paid_amount,
                "total_earnings": affiliate.total_earnings,
            },
        }
