"""
Admin Withdrawals Router - PIX Withdrawal Queue

Affiliates on the manual split cash out their available balance through
withdrawal requests; admins work the queue here.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from commission_engine.deps import get_withdrawal_service
from commission_engine.models.settlement import (
    AffiliateWithdrawal,
    WithdrawalDecision,
    WithdrawalRequest,
)
from commission_engine.services.withdrawal_service import WithdrawalService
from commission_engine.utils.errors import handle_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/withdrawals", tags=["admin-withdrawals"])


@router.get("", response_model=List[AffiliateWithdrawal])
async def list_withdrawals(
    pending_only: bool = Query(False, description="Only pending requests, oldest first"),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    try:
        return await service.list_withdrawals(pending_only=pending_only)
    except Exception as e:
        raise handle_exception(e, "withdrawals_list")


@router.get("/affiliates/{affiliate_id}", response_model=List[AffiliateWithdrawal])
async def list_affiliate_withdrawals(
    affiliate_id: str,
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    try:
        return await service.list_affiliate_withdrawals(affiliate_id)
    except Exception as e:
        raise handle_exception(e, "withdrawals_list", resource_id=affiliate_id)


@router.post("/affiliates/{affiliate_id}", response_model=AffiliateWithdrawal, status_code=201)
async def request_withdrawal(
    affiliate_id: str,
    request: WithdrawalRequest,
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    """Request a withdrawal of part of the affiliate's available balance."""
    try:
        return await service.request_withdrawal(affiliate_id, request)
    except Exception as e:
        raise handle_exception(e, "withdrawal_request", resource_id=affiliate_id)


@router.post("/{withdrawal_id}/approve", response_model=AffiliateWithdrawal)
async def approve_withdrawal(
    withdrawal_id: str,
    decision: WithdrawalDecision,
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    try:
        return await service.approve(withdrawal_id, decision)
    except Exception as e:
        raise handle_exception(e, "withdrawal_approve", resource_id=withdrawal_id)


@router.post("/{withdrawal_id}/paid", response_model=AffiliateWithdrawal)
async def mark_withdrawal_paid(
    withdrawal_id: str,
    decision: WithdrawalDecision,
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    """Record the PIX transfer; moves the amount from available to paid."""
    try:
        return await service.mark_paid(withdrawal_id, decision)
    except Exception as e:
        raise handle_exception(e, "withdrawal_paid", resource_id=withdrawal_id)


@router.post("/{withdrawal_id}/reject", response_model=AffiliateWithdrawal)
async def reject_withdrawal(
    withdrawal_id: str,
    decision: WithdrawalDecision,
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    try:
        return await service.reject(withdrawal_id, decision)
    except Exception as e:
        raise handle_exception(e, "withdrawal_reject", resource_id=withdrawal_id)
