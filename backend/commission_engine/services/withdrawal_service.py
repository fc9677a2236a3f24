"""
Affiliate Withdrawal Service

Manual-split commissions end in the affiliate's available balance. The
affiliate asks for a PIX withdrawal of part of it; an admin approves,
rejects or marks it paid after sending the PIX transfer outside the engine.

    pending  → approved / rejected / paid
    approved → paid / rejected

Key rules:
- A request needs min_withdrawal <= amount <= available balance minus the
  amount already requested in open (pending/approved) withdrawals
- Balances only move when the withdrawal is paid: available → paid
- Status changes are guarded on the current status, so two admins acting on
  the same request cannot both pay it
"""

import logging
from typing import Dict, List, Optional

from fastapi import status

from commission_engine.inngest.events import Events
from commission_engine.models.settlement import (
    Affiliate,
    AffiliateConfig,
    AffiliateWithdrawal,
    NewWithdrawal,
    WithdrawalDecision,
    WithdrawalRequest,
    WithdrawalStatus,
)
from commission_engine.services import balance_ledger
from commission_engine.services.attribution import Clock, utc_now
from commission_engine.services.notifications import AffiliateNotifier
from commission_engine.services.storage import SettlementStore
from commission_engine.utils.errors import AppError, ErrorCodes

logger = logging.getLogger(__name__)

OPEN_STATUSES = {WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED}

WITHDRAWAL_TRANSITIONS: Dict[WithdrawalStatus, List[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: [
        WithdrawalStatus.APPROVED,
        WithdrawalStatus.REJECTED,
        WithdrawalStatus.PAID,
    ],
    WithdrawalStatus.APPROVED: [WithdrawalStatus.PAID, WithdrawalStatus.REJECTED],
    WithdrawalStatus.PAID: [],
    WithdrawalStatus.REJECTED: [],
}


class WithdrawalError(AppError):
    """A withdrawal request or admin action that cannot be carried out."""

    def __init__(self, message: str, code: str = ErrorCodes.VALIDATION_ERROR, **details):
        super().__init__(
            message,
            code=code,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class WithdrawalNotFoundError(AppError):
    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            f"{resource} not found",
            code=ErrorCodes.NOT_FOUND,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"id": resource_id},
        )


class WithdrawalService:
    """
    Withdrawal requests against an affiliate's available balance.

    Usage:
        service = WithdrawalService(store)
        withdrawal = await service.request_withdrawal(affiliate_id, WithdrawalRequest(amount=5000))
        await service.mark_paid(withdrawal.id, WithdrawalDecision(transaction_id="E123"))
    """

    def __init__(
        self,
        store: SettlementStore,
        notifier: Optional[AffiliateNotifier] = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.notifier = notifier or AffiliateNotifier()
        self.clock = clock

    # =========================================================================
    # READS
    # =========================================================================

    async def list_withdrawals(self, pending_only: bool = False) -> List[AffiliateWithdrawal]:
        if pending_only:
            return await self.store.list_pending_withdrawals()
        return await self.store.list_withdrawals()

    async def list_affiliate_withdrawals(self, affiliate_id: str) -> List[AffiliateWithdrawal]:
        await self._get_affiliate(affiliate_id)
        return await self.store.list_withdrawals_by_affiliate(affiliate_id)

    async def _get_affiliate(self, affiliate_id: str) -> Affiliate:
        affiliate = await self.store.get_affiliate_by_id(affiliate_id)
        if not affiliate:
            raise WithdrawalNotFoundError("Affiliate", affiliate_id)
        return affiliate

    async def _get_withdrawal(self, withdrawal_id: str) -> AffiliateWithdrawal:
        withdrawal = await self.store.get_withdrawal_by_id(withdrawal_id)
        if not withdrawal:
            raise WithdrawalNotFoundError("Withdrawal", withdrawal_id)
        return withdrawal

    # =========================================================================
    # REQUEST
    # =========================================================================

    async def request_withdrawal(
        self, affiliate_id: str, request: WithdrawalRequest
    ) -> AffiliateWithdrawal:
        affiliate = await self._get_affiliate(affiliate_id)
        if not affiliate.is_active:
            raise WithdrawalError(f"Affiliate is {affiliate.status.value}")

        pix_key = request.pix_key or affiliate.pix_key
        pix_key_type = request.pix_key_type or affiliate.pix_key_type
        if not pix_key or not pix_key_type:
            raise WithdrawalError("A PIX key is required to withdraw", field="pix_key")

        config = await self.store.get_affiliate_config() or AffiliateConfig()
        if request.amount < config.min_withdrawal:
            raise WithdrawalError(
                f"Minimum withdrawal is {config.min_withdrawal} cents",
                code=ErrorCodes.BELOW_MIN_WITHDRAWAL,
                min_withdrawal=config.min_withdrawal,
            )

        existing = await self.store.list_withdrawals_by_affiliate(affiliate_id)
        reserved = sum(w.amount for w in existing if w.status in OPEN_STATUSES)
        withdrawable = affiliate.available_amount - reserved
        if request.amount > withdrawable:
            raise WithdrawalError(
                f"Requested {request.amount} cents but only {max(withdrawable, 0)} cents are available",
                code=ErrorCodes.INSUFFICIENT_BALANCE,
                available_amount=max(withdrawable, 0),
            )

        withdrawal = await self.store.create_withdrawal(NewWithdrawal(
            affiliate_id=affiliate.id,
            amount=request.amount,
            pix_key=pix_key,
            pix_key_type=pix_key_type,
            requested_at=self.clock(),
        ))
        logger.info(
            f"Withdrawal {withdrawal.id} requested by affiliate {affiliate.id}: "
            f"{withdrawal.amount} cents (available {affiliate.available_amount}, reserved {reserved})"
        )

        await self.notifier.notify_withdrawal(Events.WITHDRAWAL_REQUESTED, affiliate, withdrawal)
        return withdrawal

    # =========================================================================
    # ADMIN ACTIONS
    # =========================================================================

    async def approve(self, withdrawal_id: str, decision: WithdrawalDecision) -> AffiliateWithdrawal:
        withdrawal = await self._get_withdrawal(withdrawal_id)
        return await self._transition(withdrawal, WithdrawalStatus.APPROVED, decision)

    async def reject(self, withdrawal_id: str, decision: WithdrawalDecision) -> AffiliateWithdrawal:
        withdrawal = await self._get_withdrawal(withdrawal_id)
        return await self._transition(withdrawal, WithdrawalStatus.REJECTED, decision)

    async def mark_paid(self, withdrawal_id: str, decision: WithdrawalDecision) -> AffiliateWithdrawal:
        """Record the PIX transfer and move the amount from available to paid."""
        withdrawal = await self._get_withdrawal(withdrawal_id)
        self._validate_transition(withdrawal, WithdrawalStatus.PAID)

        affiliate = await self._get_affiliate(withdrawal.affiliate_id)
        if affiliate.available_amount < withdrawal.amount:
            raise WithdrawalError(
                f"Affiliate has {affiliate.available_amount} cents available, "
                f"withdrawal is {withdrawal.amount}",
                code=ErrorCodes.INSUFFICIENT_BALANCE,
                available_amount=affiliate.available_amount,
            )

        paid = await self._transition(
            withdrawal, WithdrawalStatus.PAID, decision, paid_at=self.clock()
        )
        await balance_ledger.pay_withdrawal(self.store, affiliate.id, withdrawal.amount)
        logger.info(
            f"Withdrawal {withdrawal.id} paid: {withdrawal.amount} cents to affiliate {affiliate.id} "
            f"(transaction {decision.transaction_id or 'n/a'})"
        )

        await self.notifier.notify_withdrawal(Events.WITHDRAWAL_PAID, affiliate, paid)
        return paid

    @staticmethod
    def _validate_transition(withdrawal: AffiliateWithdrawal, to_status: WithdrawalStatus) -> None:
        if to_status not in WITHDRAWAL_TRANSITIONS.get(withdrawal.status, []):
            raise WithdrawalError(
                f"Withdrawal is {withdrawal.status.value}, cannot become {to_status.value}",
                code=ErrorCodes.INVALID_STATUS,
            )

    async def _transition(
        self,
        withdrawal: AffiliateWithdrawal,
        to_status: WithdrawalStatus,
        decision: WithdrawalDecision,
        **fields,
    ) -> AffiliateWithdrawal:
        self._validate_transition(withdrawal, to_status)
        updates = {
            "status": to_status,
            "processed_at": withdrawal.processed_at or self.clock(),
            **decision.model_dump(exclude_none=True),
            **fields,
        }
        updated = await self.store.update_withdrawal(
            withdrawal.id, updates, expected_status=withdrawal.status
        )
        if updated is None:
            raise WithdrawalError(
                f"Withdrawal {withdrawal.id} was changed by another request",
                code=ErrorCodes.INVALID_STATUS,
            )
        logger.info(f"Withdrawal {withdrawal.id}: {withdrawal.status.value} → {to_status.value}")
        return updated
