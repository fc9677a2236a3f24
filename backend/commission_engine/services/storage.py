"""
Settlement Storage

The storage contract the engine consumes, and its Supabase implementation.

Tables:
- affiliates, affiliate_links, affiliate_sales (settlements),
  affiliate_withdrawals, affiliate_config, checkout_configs (gateway secrets)

Balance changes go through the adjust_affiliate_balances() database
function, which applies GREATEST(0, column + delta) in one UPDATE so two
settlements of the same affiliate never overwrite each other's totals.

A new settlement is written by create_affiliate_settlement(), which inserts
the row, credits the pending balance and counts the link conversion in one
transaction. Either all three happen or none does.

Status changes can pass expected_status: the UPDATE then also filters on the
current status and returns None when another writer got there first.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from postgrest.exceptions import APIError

from commission_engine.models.settlement import (
    Affiliate,
    AffiliateConfig,
    AffiliateLink,
    AffiliateSettlement,
    AffiliateWithdrawal,
    NewSettlement,
    NewWithdrawal,
    SettlementStatus,
    SplitMethod,
    WithdrawalStatus,
)

logger = logging.getLogger(__name__)

SETTLEMENTS_TABLE = "affiliate_sales"
WITHDRAWALS_TABLE = "affiliate_withdrawals"
UNIQUE_VIOLATION = "23505"

AUTOMATED_SPLIT_METHODS = [SplitMethod.MP_MARKETPLACE.value, SplitMethod.STRIPE_CONNECT.value]
PAYOUT_CANDIDATE_STATUSES = [
    SettlementStatus.PENDING_PAYOUT.value,
    SettlementStatus.PENDING.value,
    SettlementStatus.APPROVED.value,
]


class StorageError(Exception):
    """Raised when the backing store is unavailable or rejects a write."""


class DuplicateSettlementError(StorageError):
    """A settlement already exists for this originating payment."""

    def __init__(self, originating_payment_id: str):
        self.originating_payment_id = originating_payment_id
        super().__init__(f"Settlement already exists for payment {originating_payment_id}")


@dataclass(frozen=True)
class BalanceDelta:
    """Signed changes to an affiliate's running totals (cents)."""

    pending: int = 0
    available: int = 0
    paid: int = 0
    total_earnings: int = 0


class SettlementStore(Protocol):
    """Storage contract consumed by the settlement engine."""

    async def get_affiliate_by_id(self, affiliate_id: str) -> Optional[Affiliate]: ...

    async def update_affiliate(self, affiliate_id: str, fields: Dict[str, Any]) -> Optional[Affiliate]: ...

    async def adjust_affiliate_balances(self, affiliate_id: str, delta: BalanceDelta) -> None: ...

    async def get_affiliate_link_by_code(self, code: str) -> Optional[AffiliateLink]: ...

    async def list_affiliate_links(self, affiliate_id: str) -> List[AffiliateLink]: ...

    async def get_settlement_by_id(self, settlement_id: str) -> Optional[AffiliateSettlement]: ...

    async def get_settlement_by_originating_payment_id(
        self, originating_payment_id: str
    ) -> Optional[AffiliateSettlement]: ...

    async def create_settlement(self, data: NewSettlement) -> AffiliateSettlement:
        """Insert, credit pending + total_earnings and count the conversion, atomically."""
        ...

    async def update_settlement(
        self,
        settlement_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[SettlementStatus] = None,
    ) -> Optional[AffiliateSettlement]: ...

    async def list_settlements_due_for_payout(self, now: datetime) -> List[AffiliateSettlement]: ...

    async def list_settlements_ready_for_availability(self, now: datetime) -> List[AffiliateSettlement]: ...

    async def list_settlements_by_affiliate(
        self,
        affiliate_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[AffiliateSettlement]: ...

    async def create_withdrawal(self, data: NewWithdrawal) -> AffiliateWithdrawal: ...

    async def get_withdrawal_by_id(self, withdrawal_id: str) -> Optional[AffiliateWithdrawal]: ...

    async def list_withdrawals(self) -> List[AffiliateWithdrawal]: ...

    async def list_withdrawals_by_affiliate(self, affiliate_id: str) -> List[AffiliateWithdrawal]: ...

    async def list_pending_withdrawals(self) -> List[AffiliateWithdrawal]: ...

    async def update_withdrawal(
        self,
        withdrawal_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[WithdrawalStatus] = None,
    ) -> Optional[AffiliateWithdrawal]: ...

    async def get_affiliate_config(self) -> Optional[AffiliateConfig]: ...

    async def upsert_affiliate_config(self, fields: Dict[str, Any]) -> AffiliateConfig: ...

    async def get_secret(self, key: str) -> Optional[str]: ...


def serialize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Convert enums and datetimes into JSON-friendly column values."""
    serialized: Dict[str, Any] = {}
    for name, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        serialized[name] = value
    return serialized


def _postgrest_timestamp(value: datetime) -> str:
    """UTC timestamp without '+'/'.' so it is safe inside an or() filter."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _single(response: Any) -> Optional[Dict[str, Any]]:
    if response is None:
        return None
    return response.data or None


def _first_row(response: Any) -> Optional[Dict[str, Any]]:
    """RPCs returning a composite come back as a dict, table writes as a list."""
    data = response.data if response is not None else None
    if isinstance(data, list):
        return data[0] if data else None
    return data or None


class SupabaseSettlementStore:
    """SettlementStore backed by Supabase (PostgREST + RPC)."""

    def __init__(self, supabase: Any):
        if supabase is None:
            raise StorageError("Supabase client not initialized")
        self.supabase = supabase

    # =========================================================================
    # AFFILIATES
    # =========================================================================

    async def get_affiliate_by_id(self, affiliate_id: str) -> Optional[Affiliate]:
        response = self.supabase.table("affiliates").select("*").eq(
            "id", affiliate_id
        ).maybe_single().execute()
        row = _single(response)
        return Affiliate.model_validate(row) if row else None

    async def update_affiliate(self, affiliate_id: str, fields: Dict[str, Any]) -> Optional[Affiliate]:
        response = self.supabase.table("affiliates").update(
            serialize_fields(fields)
        ).eq("id", affiliate_id).execute()
        rows = response.data or []
        return Affiliate.model_validate(rows[0]) if rows else None

    async def adjust_affiliate_balances(self, affiliate_id: str, delta: BalanceDelta) -> None:
        self.supabase.rpc("adjust_affiliate_balances", {
            "p_affiliate_id": affiliate_id,
            "p_pending_delta": delta.pending,
            "p_available_delta": delta.available,
            "p_paid_delta": delta.paid,
            "p_total_earnings_delta": delta.total_earnings,
        }).execute()

    # =========================================================================
    # LINKS
    # =========================================================================

    async def get_affiliate_link_by_code(self, code: str) -> Optional[AffiliateLink]:
        response = self.supabase.table("affiliate_links").select("*").eq(
            "code", code
        ).maybe_single().execute()
        row = _single(response)
        return AffiliateLink.model_validate(row) if row else None

    async def list_affiliate_links(self, affiliate_id: str) -> List[AffiliateLink]:
        response = self.supabase.table("affiliate_links").select("*").eq(
            "affiliate_id", affiliate_id
        ).execute()
        return [AffiliateLink.model_validate(row) for row in (response.data or [])]

    # =========================================================================
    # SETTLEMENTS
    # =========================================================================

    async def get_settlement_by_id(self, settlement_id: str) -> Optional[AffiliateSettlement]:
        response = self.supabase.table(SETTLEMENTS_TABLE).select("*").eq(
            "id", settlement_id
        ).maybe_single().execute()
        row = _single(response)
        return AffiliateSettlement.model_validate(row) if row else None

    async def get_settlement_by_originating_payment_id(
        self, originating_payment_id: str
    ) -> Optional[AffiliateSettlement]:
        response = self.supabase.table(SETTLEMENTS_TABLE).select("*").eq(
            "originating_payment_id", originating_payment_id
        ).maybe_single().execute()
        row = _single(response)
        return AffiliateSettlement.model_validate(row) if row else None

    async def create_settlement(self, data: NewSettlement) -> AffiliateSettlement:
        try:
            response = self.supabase.rpc("create_affiliate_settlement", {
                "p_settlement": serialize_fields(data.model_dump()),
            }).execute()
        except APIError as e:
            if getattr(e, "code", None) == UNIQUE_VIOLATION:
                logger.info(f"Settlement insert for payment {data.originating_payment_id} hit unique constraint")
                raise DuplicateSettlementError(data.originating_payment_id) from e
            logger.error(f"Error creating settlement for payment {data.originating_payment_id}: {e}")
            raise StorageError(f"Failed to create settlement: {e}") from e

        row = _first_row(response)
        if not row:
            raise StorageError("Failed to create settlement - empty insert response")
        return AffiliateSettlement.model_validate(row)

    async def update_settlement(
        self,
        settlement_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[SettlementStatus] = None,
    ) -> Optional[AffiliateSettlement]:
        payload = serialize_fields({**fields, "updated_at": datetime.now(timezone.utc)})
        query = self.supabase.table(SETTLEMENTS_TABLE).update(payload).eq("id", settlement_id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        response = query.execute()
        rows = response.data or []
        return AffiliateSettlement.model_validate(rows[0]) if rows else None

    async def list_settlements_due_for_payout(self, now: datetime) -> List[AffiliateSettlement]:
        """Automated-split settlements whose deadline passed or was never set."""
        cutoff = _postgrest_timestamp(now)
        response = self.supabase.table(SETTLEMENTS_TABLE).select("*").in_(
            "status", PAYOUT_CANDIDATE_STATUSES
        ).in_(
            "split_method", AUTOMATED_SPLIT_METHODS
        ).or_(
            f"payout_scheduled_at.is.null,payout_scheduled_at.lte.{cutoff}"
        ).order("payout_scheduled_at").execute()
        return [AffiliateSettlement.model_validate(row) for row in (response.data or [])]

    async def list_settlements_ready_for_availability(self, now: datetime) -> List[AffiliateSettlement]:
        """Manual-split settlements still pending whose deadline passed or was never set."""
        cutoff = _postgrest_timestamp(now)
        response = self.supabase.table(SETTLEMENTS_TABLE).select("*").eq(
            "status", SettlementStatus.PENDING.value
        ).eq(
            "split_method", SplitMethod.MANUAL.value
        ).or_(
            f"payout_scheduled_at.is.null,payout_scheduled_at.lte.{cutoff}"
        ).order("created_at").execute()
        return [AffiliateSettlement.model_validate(row) for row in (response.data or [])]

    async def list_settlements_by_affiliate(
        self,
        affiliate_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[AffiliateSettlement]:
        query = self.supabase.table(SETTLEMENTS_TABLE).select("*").eq("affiliate_id", affiliate_id)
        if start_date:
            query = query.gte("created_at", start_date.isoformat())
        if end_date:
            query = query.lte("created_at", end_date.isoformat())
        response = query.order("created_at", desc=True).execute()
        return [AffiliateSettlement.model_validate(row) for row in (response.data or [])]

    # =========================================================================
    # WITHDRAWALS
    # =========================================================================

    async def create_withdrawal(self, data: NewWithdrawal) -> AffiliateWithdrawal:
        response = self.supabase.table(WITHDRAWALS_TABLE).insert(
            serialize_fields(data.model_dump())
        ).execute()
        row = _first_row(response)
        if not row:
            raise StorageError("Failed to create withdrawal - empty insert response")
        return AffiliateWithdrawal.model_validate(row)

    async def get_withdrawal_by_id(self, withdrawal_id: str) -> Optional[AffiliateWithdrawal]:
        response = self.supabase.table(WITHDRAWALS_TABLE).select("*").eq(
            "id", withdrawal_id
        ).maybe_single().execute()
        row = _single(response)
        return AffiliateWithdrawal.model_validate(row) if row else None

    async def list_withdrawals(self) -> List[AffiliateWithdrawal]:
        response = self.supabase.table(WITHDRAWALS_TABLE).select("*").order(
            "requested_at", desc=True
        ).execute()
        return [AffiliateWithdrawal.model_validate(row) for row in (response.data or [])]

    async def list_withdrawals_by_affiliate(self, affiliate_id: str) -> List[AffiliateWithdrawal]:
        response = self.supabase.table(WITHDRAWALS_TABLE).select("*").eq(
            "affiliate_id", affiliate_id
        ).order("requested_at", desc=True).execute()
        return [AffiliateWithdrawal.model_validate(row) for row in (response.data or [])]

    async def list_pending_withdrawals(self) -> List[AffiliateWithdrawal]:
        """Oldest request first, so the admin queue is worked in order."""
        response = self.supabase.table(WITHDRAWALS_TABLE).select("*").eq(
            "status", WithdrawalStatus.PENDING.value
        ).order("requested_at").execute()
        return [AffiliateWithdrawal.model_validate(row) for row in (response.data or [])]

    async def update_withdrawal(
        self,
        withdrawal_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[WithdrawalStatus] = None,
    ) -> Optional[AffiliateWithdrawal]:
        payload = serialize_fields({**fields, "updated_at": datetime.now(timezone.utc)})
        query = self.supabase.table(WITHDRAWALS_TABLE).update(payload).eq("id", withdrawal_id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        response = query.execute()
        rows = response.data or []
        return AffiliateWithdrawal.model_validate(rows[0]) if rows else None

    # =========================================================================
    # CONFIG & SECRETS
    # =========================================================================

    async def get_affiliate_config(self) -> Optional[AffiliateConfig]:
        response = self.supabase.table("affiliate_config").select("*").eq(
            "id", "default"
        ).maybe_single().execute()
        row = _single(response)
        return AffiliateConfig.model_validate(row) if row else None

    async def upsert_affiliate_config(self, fields: Dict[str, Any]) -> AffiliateConfig:
        payload = serialize_fields({
            **fields,
            "id": "default",
            "updated_at": datetime.now(timezone.utc),
        })
        response = self.supabase.table("affiliate_config").upsert(payload).execute()
        rows = response.data or []
        if not rows:
            raise StorageError("Failed to save affiliate config")
        return AffiliateConfig.model_validate(rows[0])

    async def get_secret(self, key: str) -> Optional[str]:
        response = self.supabase.table("checkout_configs").select("value").eq(
            "key", key
        ).maybe_single().execute()
        row = _single(response)
        return row.get("value") if row else None
