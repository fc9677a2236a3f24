"""
Hold Period Rules

The refund/chargeback hold is max(configured hold_days, 7) days and can
never be shortened by configuration or by a stored deadline.
"""

from datetime import datetime, timedelta
from typing import Optional

from commission_engine.config import MIN_HOLD_DAYS
from commission_engine.models.settlement import AffiliateConfig, AffiliateSettlement


def effective_hold_days(configured: Optional[int]) -> int:
    """Clamp a configured hold period to the 7-day floor (None/0 → 7)."""
    return max(configured or MIN_HOLD_DAYS, MIN_HOLD_DAYS)


def compute_payout_scheduled_at(now: datetime, config: Optional[AffiliateConfig]) -> datetime:
    """Deadline stored on a new settlement."""
    hold_days = effective_hold_days(config.hold_days if config else None)
    return now + timedelta(days=hold_days)


def min_payout_date(settlement: AffiliateSettlement) -> datetime:
    return settlement.created_at + timedelta(days=MIN_HOLD_DAYS)


def effective_payout_date(settlement: AffiliateSettlement) -> datetime:
    """The later of the stored deadline and created_at + 7 days."""
    floor = min_payout_date(settlement)
    stored = settlement.payout_scheduled_at
    if stored is None or stored < floor:
        return floor
    return stored


def needs_deadline_repair(settlement: AffiliateSettlement) -> bool:
    """True when the stored deadline is missing or earlier than the 7-day floor."""
    stored = settlement.payout_scheduled_at
    return stored is None or stored < min_payout_date(settlement)
