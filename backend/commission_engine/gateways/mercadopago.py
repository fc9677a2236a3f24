"""
Mercado Pago Gateway

Refund verification and marketplace money transfers for affiliates whose
payout identity is a Mercado Pago user id (collector id).

Endpoints:
- GET  /v1/payments/{id}          payment status (refund check)
- POST /v1/account/send-money     transfer to the affiliate
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from commission_engine.config import GATEWAY_TIMEOUT_SECONDS, MERCADOPAGO_API_BASE
from commission_engine.gateways.base import (
    MANUAL_PAYOUT_REQUIRED,
    RETRY_SCHEDULED,
    TransferFailureKind,
    TransferResult,
    VerificationResult,
    idempotency_key,
)
from commission_engine.models.settlement import Affiliate, AffiliateSettlement

logger = logging.getLogger(__name__)

REFUNDED_STATUSES = {"refunded", "cancelled", "charged_back"}


class MercadoPagoGateway:
    """Mercado Pago adapter (verification + send-money transfer)."""

    gateway_name = "mercadopago"

    def __init__(
        self,
        base_url: str = MERCADOPAGO_API_BASE,
        timeout: float = GATEWAY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    @staticmethod
    def _headers(access_token: str, idempotency: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        if idempotency:
            headers["X-Idempotency-Key"] = idempotency
        return headers

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    async def verify_not_refunded(self, payment_ref: str, credentials: str) -> VerificationResult:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"/v1/payments/{payment_ref}",
                    headers=self._headers(credentials),
                )
        except httpx.TimeoutException:
            logger.error(f"Mercado Pago timeout fetching payment {payment_ref}")
            return VerificationResult.failed("Mercado Pago API timeout")
        except Exception as e:
            logger.error(f"Error verifying MP payment {payment_ref}: {e}")
            return VerificationResult.failed(f"Mercado Pago request failed: {e}")

        if response.status_code != 200:
            logger.error(
                f"Error fetching MP payment {payment_ref}: "
                f"{response.status_code} - {response.text}"
            )
            return VerificationResult.failed(f"Mercado Pago returned HTTP {response.status_code}")

        try:
            payment = response.json()
        except ValueError:
            return VerificationResult.failed("Mercado Pago returned an invalid payment body")

        status = payment.get("status")

        if status in REFUNDED_STATUSES:
            logger.info(f"MP payment {payment_ref} was refunded/cancelled/chargeback - status: {status}")
            return VerificationResult.refunded(f"Mercado Pago payment status: {status}")

        if status != "approved":
            logger.info(f"MP payment {payment_ref} is not approved - status: {status}")
            return VerificationResult.failed(f"Mercado Pago payment not approved (status: {status})")

        return VerificationResult.valid()

    # =========================================================================
    # TRANSFER
    # =========================================================================

    async def transfer(
        self,
        settlement: AffiliateSettlement,
        affiliate: Affiliate,
        credentials: str,
    ) -> TransferResult:
        if not affiliate.mp_user_id:
            logger.error(f"Affiliate {affiliate.id} has no Mercado Pago account connected")
            return TransferResult.failure(
                TransferFailureKind.MISSING_ACCOUNT,
                f"Affiliate has no connected Mercado Pago account. {MANUAL_PAYOUT_REQUIRED}",
                retryable=False,
            )

        payload = {
            "amount": settlement.commission_amount / 100,
            "receiver_id": affiliate.mp_user_id,
            "description": "Affiliate commission payout",
            "external_reference": settlement.id,
        }

        try:
            async with self._client() as client:
                response = await client.post(
                    "/v1/account/send-money",
                    headers=self._headers(credentials, idempotency_key(settlement)),
                    json=payload,
                )
        except httpx.TimeoutException:
            logger.error(f"Mercado Pago transfer timeout for settlement {settlement.id}")
            return TransferResult.failure(
                TransferFailureKind.NETWORK,
                f"Mercado Pago did not answer in time. {RETRY_SCHEDULED}",
            )
        except Exception as e:
            logger.error(f"Mercado Pago transfer error for settlement {settlement.id}: {e}")
            return TransferResult.failure(
                TransferFailureKind.NETWORK,
                f"Network error contacting Mercado Pago: {e}. {RETRY_SCHEDULED}",
            )

        if response.status_code in (200, 201):
            try:
                data = response.json()
            except ValueError:
                data = {}
            transfer_id = data.get("id") if isinstance(data, dict) else None
            if not transfer_id:
                # Accepted means money moved; never retry under a new key
                logger.warning(f"MP accepted transfer for settlement {settlement.id} without an id")
                transfer_id = f"external_reference:{settlement.id}"
            logger.info(
                f"Created MP transfer {transfer_id} for settlement {settlement.id}, "
                f"amount={settlement.commission_amount} cents"
            )
            return TransferResult.ok(str(transfer_id))

        result = self._classify_failure(response)
        logger.error(
            f"Mercado Pago transfer failed for settlement {settlement.id}: "
            f"{response.status_code} - {result.message}"
        )
        return result

    @staticmethod
    def _classify_failure(response: httpx.Response) -> TransferResult:
        """Map a non-2xx send-money response to a TransferResult."""
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        status_code = response.status_code
        gateway_message = body.get("message") or body.get("error") or response.text[:200]

        if status_code in (401, 403):
            return TransferResult.failure(
                TransferFailureKind.PERMISSION,
                f"Mercado Pago refused the transfer (permission error: {gateway_message}). "
                f"{MANUAL_PAYOUT_REQUIRED}",
            )

        if status_code in (404, 405, 501):
            return TransferResult.failure(
                TransferFailureKind.UNAVAILABLE,
                f"Mercado Pago money transfers are not available for this account "
                f"(HTTP {status_code}). {MANUAL_PAYOUT_REQUIRED}",
            )

        if status_code in (400, 422):
            causes = _format_causes(body.get("cause"))
            detail = f"{gateway_message} [{causes}]" if causes else gateway_message
            return TransferResult.failure(
                TransferFailureKind.VALIDATION,
                f"Mercado Pago rejected the transfer: {detail}. {RETRY_SCHEDULED}",
            )

        return TransferResult.failure(
            TransferFailureKind.NETWORK,
            f"Mercado Pago error (HTTP {status_code}): {gateway_message}. {RETRY_SCHEDULED}",
        )


def _format_causes(causes: Any) -> str:
    """Fold Mercado Pago 'cause' entries into "code: description" pairs."""
    if not causes:
        return ""
    if isinstance(causes, dict):
        causes = [causes]
    parts: List[str] = []
    for cause in causes:
        if not isinstance(cause, dict):
            parts.append(str(cause))
            continue
        code = cause.get("code")
        description = cause.get("description") or cause.get("message") or ""
        parts.append(f"{code}: {description}" if code is not None else description)
    return "; ".join(p for p in parts if p)
