"""
Service wiring.

The lifespan in main.py builds the store, pipeline, scheduler, affiliate
and withdrawal services once and keeps them on app.state; routes read
them through the FastAPI dependencies below. Inngest functions run
outside a request, so they use the process-wide get_attribution_service() singleton.
"""

from typing import Optional

from fastapi import HTTPException, Request, status

from commission_engine.database import get_supabase_service
from commission_engine.scheduler import SettlementScheduler
from commission_engine.services.affiliate_service import AffiliateService
from commission_engine.services.attribution import CommissionAttributionService
from commission_engine.services.settlement_pipeline import SettlementPipeline
from commission_engine.services.storage import SupabaseSettlementStore
from commission_engine.services.withdrawal_service import WithdrawalService


def build_store() -> SupabaseSettlementStore:
    return SupabaseSettlementStore(get_supabase_service())


def _from_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "SERVICE_UNAVAILABLE", "message": f"{name} is not initialized"},
        )
    return value


def get_pipeline(request: Request) -> SettlementPipeline:
    return _from_state(request, "pipeline")


def get_scheduler(request: Request) -> SettlementScheduler:
    return _from_state(request, "scheduler")


def get_affiliate_service(request: Request) -> AffiliateService:
    return _from_state(request, "affiliate_service")


def get_withdrawal_service(request: Request) -> WithdrawalService:
    return _from_state(request, "withdrawal_service")


# =============================================================================
# SINGLETON FACTORY (Inngest functions)
# =============================================================================

_attribution_service: Optional[CommissionAttributionService] = None


def get_attribution_service() -> CommissionAttributionService:
    """Get singleton CommissionAttributionService instance."""
    global _attribution_service
    if _attribution_service is None:
        _attribution_service = CommissionAttributionService(build_store())
    return _attribution_service
