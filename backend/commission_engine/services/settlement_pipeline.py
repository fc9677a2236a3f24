"""
Settlement Pipeline

One pipeline for both recurring passes, parameterized by split method:

- Payout pass (mp_marketplace / stripe_connect):
    hold gate → re-read → verify not refunded → transfer → paid
- Availability pass (manual):
    hold gate → re-read → verify not refunded → available

Rules enforced here:
- Nothing is paid or released before created_at + 7 days, whatever the
  stored payout_scheduled_at says.
- Only a confirmed refund changes balances or status during verification;
  a failed verification leaves the row for the next run.
- A transfer failure costs one attempt and the settlement stays pending_payout
  until the 5th; a missing payout account fails at once.
- Every status write is guarded on the status it was read with. When
  another run moved the row first, nothing else (balances included) is
  touched and the outcome is SKIPPED.
- No exception escapes a single settlement: each call returns a
  SettlementOutcome and the batch drivers catch anything unexpected.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from commission_engine.config import (
    BATCH_ITEM_DELAY_SECONDS,
    MANUAL_BATCH_ITEM_DELAY_SECONDS,
    MAX_PAYOUT_ATTEMPTS,
)
from commission_engine.gateways import GatewayRegistry
from commission_engine.gateways.base import MANUAL_PAYOUT_REQUIRED
from commission_engine.models.settlement import (
    Affiliate,
    AffiliateSettlement,
    SettlementStatus,
    SplitMethod,
)
from commission_engine.services import balance_ledger
from commission_engine.services.attribution import Clock, utc_now
from commission_engine.services.credentials import CredentialResolver
from commission_engine.services.hold_period import effective_payout_date, needs_deadline_repair
from commission_engine.services.state_machine import SettlementStateMachine
from commission_engine.services.storage import SettlementStore

logger = logging.getLogger(__name__)


class SettlementOutcome(str, Enum):
    """What a single pipeline call did to a settlement."""
    WAITING = "waiting"                          # hold period not over
    SKIPPED = "skipped"                          # not eligible on re-read
    PAID = "paid"
    AVAILABLE = "available"
    REFUNDED = "refunded"
    RETRY_SCHEDULED = "retry_scheduled"          # transfer failed, stays pending_payout
    PAYOUT_FAILED = "payout_failed"
    VERIFICATION_FAILED = "verification_failed"  # gateway unreachable, retried next run
    MISSING_CREDENTIALS = "missing_credentials"


@dataclass
class BatchReport:
    """Summary of one batch run."""
    processed: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    def record(self, outcome: SettlementOutcome) -> None:
        self.processed += 1
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "outcomes": dict(self.outcomes),
            "errors": list(self.errors),
        }


class SettlementNotFoundError(Exception):
    def __init__(self, settlement_id: str):
        self.settlement_id = settlement_id
        super().__init__(f"Settlement {settlement_id} not found")


class RetryNotAllowedError(Exception):
    """Manual retry refused (wrong status or hold period still running)."""

    def __init__(self, message: str, hold_until: Optional[datetime] = None):
        self.message = message
        self.hold_until = hold_until
        super().__init__(message)


class SettlementPipeline:
    """Processes settlements through verification and payout/release."""

    def __init__(
        self,
        store: SettlementStore,
        gateways: Optional[GatewayRegistry] = None,
        clock: Clock = utc_now,
        item_delay: float = BATCH_ITEM_DELAY_SECONDS,
        manual_item_delay: float = MANUAL_BATCH_ITEM_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.gateways = gateways or GatewayRegistry()
        self.credentials = CredentialResolver(store)
        self.clock = clock
        self.item_delay = item_delay
        self.manual_item_delay = manual_item_delay
        self.sleep = sleep

    # =========================================================================
    # STATUS CHANGES
    # =========================================================================

    async def _transition(
        self,
        settlement: AffiliateSettlement,
        to_status: SettlementStatus,
        **fields: Any,
    ) -> Optional[AffiliateSettlement]:
        """Apply a status change; None when the row no longer has settlement.status."""
        SettlementStateMachine.validate_transition(settlement.status, to_status)
        updated = await self.store.update_settlement(
            settlement.id,
            {"status": to_status, **fields},
            expected_status=settlement.status,
        )
        if updated is None:
            logger.warning(
                f"Settlement {settlement.id} changed while processing, "
                f"{settlement.status.value} → {to_status.value} not applied"
            )
            return None
        logger.info(f"Settlement {settlement.id}: {settlement.status.value} → {to_status.value}")
        return updated

    async def _mark_refunded(self, settlement: AffiliateSettlement, reason: str) -> SettlementOutcome:
        refunded = await self._transition(
            settlement,
            SettlementStatus.REFUNDED,
            payout_error=f"Originating payment refunded: {reason}",
        )
        if refunded is None:
            return SettlementOutcome.SKIPPED
        await balance_ledger.reverse_refund(
            self.store, settlement.affiliate_id, settlement.commission_amount
        )
        logger.info(
            f"Settlement {settlement.id} refunded, reversed {settlement.commission_amount} cents "
            f"for affiliate {settlement.affiliate_id}"
        )
        return SettlementOutcome.REFUNDED

    async def _verify(self, settlement: AffiliateSettlement) -> Optional[SettlementOutcome]:
        """
        Check the originating payment with its gateway.

        Returns None when the payment is still good (or has no gateway
        reference), otherwise the outcome that ends this run.
        """
        entry = self.gateways.for_verification(settlement)
        if entry is None:
            return None

        gateway, secret_key, payment_ref = entry
        credentials = await self.credentials.resolve(secret_key)
        if not credentials:
            logger.warning(
                f"Settlement {settlement.id}: no {gateway.gateway_name} credentials to verify "
                f"payment {payment_ref}, will retry next run"
            )
            return SettlementOutcome.MISSING_CREDENTIALS

        result = await gateway.verify_not_refunded(payment_ref, credentials)
        if result.is_refunded:
            return await self._mark_refunded(settlement, result.reason)
        if not result.is_valid:
            logger.warning(f"Settlement {settlement.id}: verification failed ({result.reason}), will retry")
            return SettlementOutcome.VERIFICATION_FAILED
        return None

    # =========================================================================
    # PAYOUT PATH (automated split)
    # =========================================================================

    async def process_payout(self, settlement: AffiliateSettlement) -> SettlementOutcome:
        """Run one automated-split settlement through the payout path."""
        if not settlement.split_method.is_automated or SettlementStateMachine.is_terminal(settlement.status):
            return SettlementOutcome.SKIPPED

        repairs: Dict[str, Any] = {}
        effective = effective_payout_date(settlement)
        if needs_deadline_repair(settlement):
            repairs["payout_scheduled_at"] = effective
        if settlement.status in SettlementStateMachine.HEALABLE:
            SettlementStateMachine.validate_transition(
                settlement.status, SettlementStatus.PENDING_PAYOUT
            )
            repairs["status"] = SettlementStatus.PENDING_PAYOUT
        elif settlement.status != SettlementStatus.PENDING_PAYOUT:
            return SettlementOutcome.SKIPPED

        if repairs:
            repaired = await self.store.update_settlement(
                settlement.id, repairs, expected_status=settlement.status
            )
            if repaired is None:
                logger.info(f"Settlement {settlement.id} changed before repair, skipping")
                return SettlementOutcome.SKIPPED
            logger.info(f"Settlement {settlement.id}: repaired {', '.join(repairs)}")

        if self.clock() < effective:
            logger.debug(f"Settlement {settlement.id} on hold until {effective.isoformat()}")
            return SettlementOutcome.WAITING

        fresh = await self.store.get_settlement_by_id(settlement.id)
        if not fresh or fresh.status != SettlementStatus.PENDING_PAYOUT:
            logger.info(f"Settlement {settlement.id} no longer pending_payout, skipping")
            return SettlementOutcome.SKIPPED

        affiliate = await self.store.get_affiliate_by_id(fresh.affiliate_id)
        if not affiliate or not affiliate.is_active:
            status = affiliate.status.value if affiliate else "missing"
            failed = await self._transition(
                fresh,
                SettlementStatus.PAYOUT_FAILED,
                payout_attempts=fresh.payout_attempts + 1,
                payout_error=f"Affiliate is {status}. {MANUAL_PAYOUT_REQUIRED}",
            )
            return SettlementOutcome.PAYOUT_FAILED if failed else SettlementOutcome.SKIPPED

        gateway, secret_key = self.gateways.for_split_method(fresh.split_method)
        transfer_credentials = await self.credentials.resolve(secret_key)
        if not transfer_credentials:
            await self.store.update_settlement(
                fresh.id,
                {"payout_error": f"{gateway.gateway_name} credentials are not configured"},
                expected_status=SettlementStatus.PENDING_PAYOUT,
            )
            return SettlementOutcome.MISSING_CREDENTIALS

        verification = await self._verify(fresh)
        if verification is not None:
            return verification

        return await self._transfer(fresh, affiliate, gateway, transfer_credentials)

    async def _transfer(
        self,
        settlement: AffiliateSettlement,
        affiliate: Affiliate,
        gateway: Any,
        credentials: str,
    ) -> SettlementOutcome:
        result = await gateway.transfer(settlement, affiliate, credentials)

        if result.success:
            transfer_field = (
                "mp_transfer_id" if settlement.split_method == SplitMethod.MP_MARKETPLACE
                else "stripe_transfer_id"
            )
            paid = await self._transition(
                settlement,
                SettlementStatus.PAID,
                paid_at=self.clock(),
                payout_error=None,
                **{transfer_field: result.transfer_id},
            )
            if paid is None:
                # Money moved but the row changed underneath; keep the reference for reconciliation
                await self.store.update_settlement(settlement.id, {transfer_field: result.transfer_id})
                logger.error(
                    f"Settlement {settlement.id}: transfer {result.transfer_id} succeeded but the "
                    f"settlement was changed concurrently, balances left untouched"
                )
                return SettlementOutcome.SKIPPED
            await balance_ledger.settle_paid(
                self.store, settlement.affiliate_id, settlement.commission_amount
            )
            logger.info(
                f"Paid settlement {settlement.id}: {settlement.commission_amount} cents "
                f"to affiliate {affiliate.id} via {gateway.gateway_name} ({result.transfer_id})"
            )
            return SettlementOutcome.PAID

        attempts = settlement.payout_attempts + 1
        if attempts >= MAX_PAYOUT_ATTEMPTS or not result.retryable:
            failed = await self._transition(
                settlement,
                SettlementStatus.PAYOUT_FAILED,
                payout_attempts=attempts,
                payout_error=result.message,
            )
            if failed is None:
                return SettlementOutcome.SKIPPED
            logger.error(
                f"Settlement {settlement.id} payout failed after {attempts} attempt(s): {result.message}"
            )
            return SettlementOutcome.PAYOUT_FAILED

        scheduled = await self.store.update_settlement(
            settlement.id,
            {"payout_attempts": attempts, "payout_error": result.message},
            expected_status=SettlementStatus.PENDING_PAYOUT,
        )
        if scheduled is None:
            return SettlementOutcome.SKIPPED
        logger.warning(
            f"Settlement {settlement.id} transfer attempt {attempts}/{MAX_PAYOUT_ATTEMPTS} failed: "
            f"{result.message}"
        )
        return SettlementOutcome.RETRY_SCHEDULED

    # =========================================================================
    # AVAILABILITY PATH (manual split)
    # =========================================================================

    async def process_availability(self, settlement: AffiliateSettlement) -> SettlementOutcome:
        """Release one manual-split settlement to the affiliate's available balance."""
        if (
            settlement.split_method != SplitMethod.MANUAL
            or settlement.status != SettlementStatus.PENDING
        ):
            return SettlementOutcome.SKIPPED

        effective = effective_payout_date(settlement)
        if self.clock() < effective:
            logger.debug(f"Settlement {settlement.id} on hold until {effective.isoformat()}")
            return SettlementOutcome.WAITING

        fresh = await self.store.get_settlement_by_id(settlement.id)
        if not fresh or fresh.status != SettlementStatus.PENDING:
            return SettlementOutcome.SKIPPED

        affiliate = await self.store.get_affiliate_by_id(fresh.affiliate_id)
        if not affiliate or not affiliate.is_active:
            logger.info(f"Settlement {fresh.id}: affiliate {fresh.affiliate_id} not active, skipping")
            return SettlementOutcome.SKIPPED

        verification = await self._verify(fresh)
        if verification is not None:
            return verification

        if await self._transition(fresh, SettlementStatus.AVAILABLE) is None:
            return SettlementOutcome.SKIPPED
        await balance_ledger.release_to_available(
            self.store, fresh.affiliate_id, fresh.commission_amount
        )
        logger.info(
            f"Settlement {fresh.id}: {fresh.commission_amount} cents now available "
            f"for affiliate {fresh.affiliate_id}"
        )
        return SettlementOutcome.AVAILABLE

    # =========================================================================
    # MANUAL RETRY
    # =========================================================================

    async def retry_failed_payout(self, settlement_id: str) -> SettlementOutcome:
        """
        Put a payout_failed settlement back in the payout path and run it once.

        Raises:
            SettlementNotFoundError: unknown id
            RetryNotAllowedError: not payout_failed, or still inside the hold period
        """
        settlement = await self.store.get_settlement_by_id(settlement_id)
        if not settlement:
            raise SettlementNotFoundError(settlement_id)

        if not SettlementStateMachine.is_manual_retry(settlement.status, SettlementStatus.PENDING_PAYOUT):
            raise RetryNotAllowedError(
                f"Only payout_failed settlements can be retried (status: {settlement.status.value})"
            )

        hold_until = effective_payout_date(settlement)
        if self.clock() < hold_until:
            raise RetryNotAllowedError(
                f"Hold period has not passed, retry allowed after {hold_until.isoformat()}",
                hold_until=hold_until,
            )

        # payout_attempts stays as is so the next transfer uses a fresh idempotency key
        retried = await self._transition(
            settlement, SettlementStatus.PENDING_PAYOUT, payout_error=None
        )
        if retried is None:
            raise RetryNotAllowedError(f"Settlement {settlement_id} was changed by another run, reload and retry")
        logger.info(f"Manual retry of settlement {settlement_id} (attempts so far: {settlement.payout_attempts})")
        return await self.process_payout(retried)

    # =========================================================================
    # BATCH DRIVERS
    # =========================================================================

    async def run_payout_batch(self, manual: bool = False) -> BatchReport:
        return await self._run_batch(
            "payout",
            self.store.list_settlements_due_for_payout,
            self.process_payout,
            self.manual_item_delay if manual else self.item_delay,
        )

    async def run_availability_batch(self, manual: bool = False) -> BatchReport:
        return await self._run_batch(
            "availability",
            self.store.list_settlements_ready_for_availability,
            self.process_availability,
            self.manual_item_delay if manual else self.item_delay,
        )

    async def _run_batch(
        self,
        name: str,
        list_candidates: Callable[[datetime], Awaitable[List[AffiliateSettlement]]],
        process: Callable[[AffiliateSettlement], Awaitable[SettlementOutcome]],
        delay: float,
    ) -> BatchReport:
        report = BatchReport()

        try:
            candidates = await list_candidates(self.clock())
        except Exception as e:
            logger.error(f"Failed to list settlements for {name} run: {e}", exc_info=True)
            report.errors.append(f"Failed to list settlements: {e}")
            return report

        logger.info(f"Starting {name} run with {len(candidates)} candidate settlement(s)")

        for index, settlement in enumerate(candidates):
            if index > 0 and delay > 0:
                await self.sleep(delay)
            try:
                report.record(await process(settlement))
            except Exception as e:
                logger.error(f"Error processing settlement {settlement.id} ({name}): {e}", exc_info=True)
                report.errors.append(f"Settlement {settlement.id}: {e}")

        logger.info(
            f"Finished {name} run: processed={report.processed}, "
            f"outcomes={report.outcomes}, errors={len(report.errors)}"
        )
        return report
