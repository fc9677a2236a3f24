"""
Admin Settlements Router - Settlement Operations for Admins

Endpoints for forcing scheduler passes, retrying failed payouts, checking
scheduler liveness, editing the affiliate program config and reading
per-affiliate stats.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from commission_engine.deps import get_affiliate_service, get_pipeline, get_scheduler
from commission_engine.models.settlement import AffiliateConfig, AffiliateConfigUpdate
from commission_engine.scheduler import SettlementScheduler
from commission_engine.services.affiliate_service import AffiliateNotFoundError, AffiliateService
from commission_engine.services.settlement_pipeline import (
    RetryNotAllowedError,
    SettlementNotFoundError,
    SettlementPipeline,
)
from commission_engine.utils.errors import (
    ErrorCodes,
    handle_exception,
    raise_not_found,
    raise_validation_error,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/settlements", tags=["admin-settlements"])


# =============================================================================
# Response Models
# =============================================================================

class BatchReportResponse(BaseModel):
    processed: int
    outcomes: Dict[str, int]
    errors: List[str]


class RetryResponse(BaseModel):
    settlement_id: str
    outcome: str


class SchedulerJob(BaseModel):
    id: str
    next_run_time: Optional[str] = None


class SchedulerStatusResponse(BaseModel):
    is_running: bool
    interval_minutes: int
    next_run_in: Optional[int] = None
    jobs: List[SchedulerJob]


# =============================================================================
# Manual runs
# =============================================================================

@router.post("/availability/run", response_model=BatchReportResponse)
async def run_availability(pipeline: SettlementPipeline = Depends(get_pipeline)):
    """Run the availability pass now (manual-split settlements)."""
    try:
        report = await pipeline.run_availability_batch(manual=True)
    except Exception as e:
        raise handle_exception(e, "availability_run")
    return BatchReportResponse(**report.to_dict())


@router.post("/payouts/run", response_model=BatchReportResponse)
async def run_payouts(pipeline: SettlementPipeline = Depends(get_pipeline)):
    """Run the payout pass now (automated-split settlements)."""
    try:
        report = await pipeline.run_payout_batch(manual=True)
    except Exception as e:
        raise handle_exception(e, "payout_run")
    return BatchReportResponse(**report.to_dict())


@router.post("/{settlement_id}/retry", response_model=RetryResponse)
async def retry_settlement(
    settlement_id: str,
    pipeline: SettlementPipeline = Depends(get_pipeline),
):
    """Retry one payout_failed settlement once its hold period has passed."""
    try:
        outcome = await pipeline.retry_failed_payout(settlement_id)
    except SettlementNotFoundError:
        raise_not_found("Settlement", settlement_id)
    except RetryNotAllowedError as e:
        code = ErrorCodes.HOLD_PERIOD_ACTIVE if e.hold_until else ErrorCodes.VALIDATION_ERROR
        raise_validation_error(e.message, code=code)
    except Exception as e:
        raise handle_exception(e, "settlement_retry", resource_id=settlement_id)

    return RetryResponse(settlement_id=settlement_id, outcome=outcome.value)


# =============================================================================
# Scheduler
# =============================================================================

@router.get("/scheduler/status", response_model=SchedulerStatusResponse)
async def scheduler_status(scheduler: SettlementScheduler = Depends(get_scheduler)):
    return SchedulerStatusResponse(**scheduler.status())


# =============================================================================
# Config & stats
# =============================================================================

@router.get("/config", response_model=AffiliateConfig)
async def get_config(service: AffiliateService = Depends(get_affiliate_service)):
    try:
        return await service.get_config()
    except Exception as e:
        raise handle_exception(e, "config_get")


@router.put("/config", response_model=AffiliateConfig)
async def update_config(
    update: AffiliateConfigUpdate,
    service: AffiliateService = Depends(get_affiliate_service),
):
    """Update the program config. hold_days is raised to at least 7."""
    try:
        return await service.update_config(update)
    except Exception as e:
        raise handle_exception(e, "config_update")


@router.get("/affiliates/{affiliate_id}/stats")
async def get_affiliate_stats(
    affiliate_id: str,
    start_date: Optional[datetime] = Query(None, description="Only settlements created at or after"),
    end_date: Optional[datetime] = Query(None, description="Only settlements created at or before"),
    service: AffiliateService = Depends(get_affiliate_service),
) -> Dict[str, Any]:
    """Lifetime clicks/conversions plus settlement totals, optionally for a date range."""
    try:
        return await service.get_affiliate_stats(affiliate_id, start_date=start_date, end_date=end_date)
    except AffiliateNotFoundError:
        raise_not_found("Affiliate", affiliate_id)
    except Exception as e:
        raise handle_exception(e, "affiliate_stats", resource_id=affiliate_id)
