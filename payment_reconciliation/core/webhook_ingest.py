"""
Paystack webhook ingest.

Implements:
- HMAC-SHA512 signature verification over the raw request body
- Routing of ``charge.success`` into the reconciler's update-only path
- Total error containment: ``ingest`` never raises, every failure is logged

The HTTP layer acknowledges every delivery with a 200.
"""
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from payment_reconciliation.core.credentials import GatewayCredentialCache
from payment_reconciliation.core.errors import NotFoundError, PaymentReconciliationError
from payment_reconciliation.core.ports import Actor
from payment_reconciliation.core.reconciler import Reconciler
from payment_reconciliation.integrations.paystack_client import parse_transaction
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"
CHARGE_SUCCESS = "charge.success"


@dataclass(frozen=True)
class WebhookOutcome:
    """What happened to one delivery. ``status`` is processed, ignored, rejected or error."""

    status: str
    event: Optional[str] = None
    reference: Optional[str] = None
    detail: Optional[str] = None


def compute_signature(secret_key: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA512 of the raw body, keyed with the institution secret."""
    return hmac.new(secret_key.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(secret_key: str, raw_body: bytes, signature: Optional[str]) -> bool:
    """
    Constant-time check of the ``x-paystack-signature`` header.

    Args:
        secret_key: Institution secret key
        raw_body: Request body exactly as received
        signature: Header value, may be missing

    Returns:
        bool: True if the signature matches
    """
    if not signature:
        return False
    expected = compute_signature(secret_key, raw_body)
    return hmac.compare_digest(expected.encode("utf-8"), signature.strip().encode("utf-8"))


class WebhookIngest:
    """Verifies and dispatches Paystack webhook deliveries."""

    def __init__(self, reconciler: Reconciler, credentials: GatewayCredentialCache):
        self.reconciler = reconciler
        self.credentials = credentials

    async def ingest(
        self, institution_id: int, raw_body: bytes, signature: Optional[str]
    ) -> WebhookOutcome:
        """
        Process one webhook delivery.

        Args:
            institution_id: Institution the webhook URL belongs to
            raw_body: Request body exactly as received
            signature: ``x-paystack-signature`` header value

        Returns:
            WebhookOutcome: Never raises
        """
        try:
            return await self._ingest(institution_id, raw_body, signature)
        except Exception as e:
            logger.exception(
                "webhook_processing_error",
                institution_id=institution_id,
                error=str(e),
            )
            metrics.record_webhook_processed("unknown", "error")
            return WebhookOutcome(status="error", detail="Unexpected error")

    async def _ingest(
        self, institution_id: int, raw_body: bytes, signature: Optional[str]
    ) -> WebhookOutcome:
        try:
            secret_key = await self.credentials.get_secret_key(institution_id)
        except PaymentReconciliationError as e:
            logger.error(
                "webhook_rejected_unconfigured",
                institution_id=institution_id,
                error=e.message,
            )
            metrics.record_webhook_processed("unknown", "rejected")
            return WebhookOutcome(status="rejected", detail=e.message)

        if not verify_signature(secret_key, raw_body, signature):
            logger.error(
                "webhook_signature_invalid",
                institution_id=institution_id,
                signature_present=bool(signature),
            )
            metrics.record_webhook_processed("unknown", "rejected")
            return WebhookOutcome(status="rejected", detail="Invalid signature")

        payload = self._decode(raw_body)
        if payload is None:
            logger.error("webhook_payload_invalid", institution_id=institution_id)
            metrics.record_webhook_processed("unknown", "rejected")
            return WebhookOutcome(status="rejected", detail="Invalid payload")

        event = payload["event"]
        metrics.record_webhook_received(event)
        logger.info("webhook_event_received", institution_id=institution_id, event_type=event)

        if event != CHARGE_SUCCESS:
            metrics.record_webhook_processed(event, "ignored")
            return WebhookOutcome(status="ignored", event=event)

        reference = payload["data"].get("reference")
        try:
            charge = parse_transaction(payload["data"])
            result = await self.reconciler.apply_confirmed_charge(
                institution_id, charge, Actor.webhook(), allow_recovery=False
            )
        except NotFoundError:
            logger.warning(
                "webhook_payment_not_found",
                institution_id=institution_id,
                reference=reference,
            )
            metrics.record_webhook_processed(event, "ignored")
            return WebhookOutcome(
                status="ignored", event=event, reference=reference, detail="Unknown reference"
            )
        except PaymentReconciliationError as e:
            logger.error(
                "webhook_reconciliation_failed",
                institution_id=institution_id,
                reference=reference,
                error_code=e.error_code,
                error=e.message,
            )
            metrics.record_webhook_processed(event, "error")
            return WebhookOutcome(
                status="error", event=event, reference=reference, detail=e.message
            )

        logger.info(
            "webhook_event_processed",
            institution_id=institution_id,
            reference=reference,
            outcome=result.outcome.value,
        )
        metrics.record_webhook_processed(event, "processed")
        return WebhookOutcome(
            status="processed", event=event, reference=reference, detail=result.outcome.value
        )

    @staticmethod
    def _decode(raw_body: bytes) -> Optional[Dict[str, Any]]:
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return None
        if (
            not isinstance(payload, dict)
            or not isinstance(payload.get("event"), str)
            or not isinstance(payload.get("data"), dict)
        ):
            return None
        return payload
