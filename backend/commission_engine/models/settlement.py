"""
Affiliate Settlement Models

Pydantic models for the rows the settlement engine reads and writes:
- Affiliate (payout identities + running balances)
- AffiliateLink
- AffiliateSettlement (one per attributed payment, "affiliate_sales" table)
- AffiliateWithdrawal (manual-split payout request, "affiliate_withdrawals" table)
- AffiliateConfig (global, admin-editable)
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AffiliateStatus(str, Enum):
    """Lifecycle of an affiliate account."""
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class StripeConnectStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"
    DISABLED = "disabled"


class SettlementStatus(str, Enum):
    """Status of an affiliate settlement."""
    PENDING = "pending"                # manual split, waiting for hold period
    PENDING_PAYOUT = "pending_payout"  # automated split, waiting for hold/transfer
    AVAILABLE = "available"            # manual split, released for withdrawal
    PAID = "paid"
    PAYOUT_FAILED = "payout_failed"
    REFUNDED = "refunded"
    APPROVED = "approved"              # legacy rows only


class WithdrawalStatus(str, Enum):
    """Status of a withdrawal request."""
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"


class SplitMethod(str, Enum):
    """How the commission reaches the affiliate."""
    MP_MARKETPLACE = "mp_marketplace"
    STRIPE_CONNECT = "stripe_connect"
    MANUAL = "manual"

    @property
    def is_automated(self) -> bool:
        return self is not SplitMethod.MANUAL


class RowModel(BaseModel):
    """Base for Supabase rows: tolerate columns the engine does not use."""
    model_config = ConfigDict(extra="ignore")


# ============================================================
# AFFILIATES
# ============================================================

class Affiliate(RowModel):
    id: str
    status: AffiliateStatus = AffiliateStatus.PENDING
    name: Optional[str] = None
    email: Optional[str] = None
    commission_percent: Optional[int] = None

    # Payout identities
    mp_user_id: Optional[str] = None
    stripe_connect_account_id: Optional[str] = None
    stripe_connect_status: Optional[StripeConnectStatus] = None
    pix_key: Optional[str] = None
    pix_key_type: Optional[str] = None

    # Running totals (cents)
    pending_amount: int = 0
    available_amount: int = 0
    paid_amount: int = 0
    total_earnings: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == AffiliateStatus.ACTIVE

    @property
    def has_stripe_connect(self) -> bool:
        return bool(self.stripe_connect_account_id) and (
            self.stripe_connect_status == StripeConnectStatus.CONNECTED
        )


class AffiliateLink(RowModel):
    id: str
    affiliate_id: str
    code: str
    clicks: int = 0
    conversions: int = 0
    is_active: bool = True


# ============================================================
# SETTLEMENTS
# ============================================================

class AffiliateSettlement(RowModel):
    id: str
    affiliate_id: str
    affiliate_link_id: Optional[str] = None
    originating_payment_id: str

    sale_amount: int
    commission_amount: int
    commission_percent: Optional[int] = None

    status: SettlementStatus = SettlementStatus.PENDING
    split_method: SplitMethod = SplitMethod.MANUAL

    # Originating payment references (refund verification)
    mp_payment_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    # Transfer references (once paid)
    mp_transfer_id: Optional[str] = None
    stripe_transfer_id: Optional[str] = None

    payout_scheduled_at: Optional[datetime] = None
    payout_attempts: int = 0
    payout_error: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class NewSettlement(BaseModel):
    """Insert payload for a settlement (id and updated_at come from storage)."""
    affiliate_id: str
    affiliate_link_id: Optional[str] = None
    originating_payment_id: str
    sale_amount: int = Field(..., ge=0)
    commission_amount: int = Field(..., ge=0)
    commission_percent: int = Field(..., ge=0, le=100)
    status: SettlementStatus
    split_method: SplitMethod
    mp_payment_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    payout_scheduled_at: datetime
    payout_attempts: int = 0
    created_at: datetime


# ============================================================
# WITHDRAWALS
# ============================================================

class AffiliateWithdrawal(RowModel):
    id: str
    affiliate_id: str
    amount: int
    pix_key: str
    pix_key_type: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    requested_at: datetime
    processed_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class NewWithdrawal(BaseModel):
    """Insert payload for a withdrawal request."""
    affiliate_id: str
    amount: int = Field(..., gt=0)
    pix_key: str
    pix_key_type: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    requested_at: datetime


class WithdrawalRequest(BaseModel):
    """Affiliate asks for part of the available balance. PIX key defaults to the profile's."""
    amount: int = Field(..., gt=0, description="Amount in cents")
    pix_key: Optional[str] = None
    pix_key_type: Optional[str] = None


class WithdrawalDecision(BaseModel):
    """Admin action on a withdrawal (approve / mark paid / reject)."""
    processed_by: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


# ============================================================
# CONFIG
# ============================================================

class AffiliateConfig(RowModel):
    default_commission_percent: int = 30
    hold_days: int = 7
    auto_pay_enabled: bool = True
    min_withdrawal: int = 5000


class AffiliateConfigUpdate(BaseModel):
    """Admin update for the global affiliate config."""
    default_commission_percent: Optional[int] = Field(None, ge=0, le=100)
    hold_days: Optional[int] = Field(None, ge=0, description="Clamped to at least 7 days")
    auto_pay_enabled: Optional[bool] = None
    min_withdrawal: Optional[int] = Field(None, ge=0)


# ============================================================
# INBOUND PAYMENT (from checkout)
# ============================================================

class ApprovedPayment(BaseModel):
    """An originating payment that reached 'approved' and carries an affiliate link code."""
    originating_payment_id: str
    affiliate_link_code: str
    sale_amount: int = Field(..., ge=0)
    mp_payment_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
