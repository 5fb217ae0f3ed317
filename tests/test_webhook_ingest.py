"""
Unit tests for webhook signature verification and event dispatch.
"""
import json
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from payment_reconciliation.core import webhook_ingest
from payment_reconciliation.core.credentials import GatewayCredentialCache
from payment_reconciliation.core.reconciler import Reconciler
from payment_reconciliation.core.webhook_ingest import (
    WebhookIngest,
    compute_signature,
    verify_signature,
)

from tests.conftest import INSTITUTION_ID, INSTITUTION_SECRET, OTHER_INSTITUTION_ID


def charge_event(
    reference: str,
    amount_minor: int = 500000,
    event: str = "charge.success",
    metadata: Optional[Dict[str, Any]] = None,
    status: str = "success",
) -> bytes:
    payload = {
        "event": event,
        "data": {
            "id": 3900777,
            "status": status,
            "reference": reference,
            "amount": amount_minor,
            "currency": "NGN",
            "channel": "card",
            "gateway_response": "Successful",
            "paid_at": "2024-10-01T10:00:00.000Z",
            "metadata": metadata or {},
            "customer": {"email": "FUT-2024-001@student.digitaltp.ng"},
            "authorization": {"authorization_code": "AUTH_hook", "last4": "4081"},
        },
    }
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def ingest(reconciler: Reconciler, credentials: GatewayCredentialCache) -> WebhookIngest:
    return WebhookIngest(reconciler, credentials)


class TestSignature:
    """Test suite for HMAC-SHA512 signature helpers."""

    @pytest.mark.unit
    def test_valid_signature(self) -> None:
        body = b'{"event":"charge.success"}'
        signature = compute_signature("sk_test_x", body)

        assert len(signature) == 128
        assert verify_signature("sk_test_x", body, signature)

    @pytest.mark.unit
    def test_signature_is_bound_to_raw_bytes(self) -> None:
        body = b'{"event": "charge.success"}'
        reserialized = json.dumps(json.loads(body), separators=(",", ":")).encode()
        signature = compute_signature("sk_test_x", body)

        assert not verify_signature("sk_test_x", reserialized, signature)

    @pytest.mark.unit
    @pytest.mark.parametrize("signature", [None, "", "deadbeef"])
    def test_missing_or_wrong_signature(self, signature: Optional[str]) -> None:
        assert not verify_signature("sk_test_x", b"{}", signature)

    @pytest.mark.unit
    def test_wrong_secret(self) -> None:
        body = b"{}"
        assert not verify_signature("sk_test_y", body, compute_signature("sk_test_x", body))


class TestWebhookIngest:
    """Test suite for WebhookIngest.ingest."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_signature_leaves_ledger_untouched(
        self, ingest: WebhookIngest, insert_payment: Any, fetch_payments: Any
    ) -> None:
        """A forged charge.success is rejected and logged at error level."""
        await insert_payment("TPFUT-42-FORGED")
        body = charge_event("TPFUT-42-FORGED")

        with patch.object(webhook_ingest, "logger", MagicMock()) as mock_logger:
            outcome = await ingest.ingest(INSTITUTION_ID, body, "0" * 128)

        assert outcome.status == "rejected"
        assert [p.status for p in await fetch_payments()] == ["pending"]
        assert mock_logger.error.call_args[0][0] == "webhook_signature_invalid"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_success_marks_payment(
        self, ingest: WebhookIngest, insert_payment: Any, fetch_payments: Any
    ) -> None:
        await insert_payment("TPFUT-42-HOOK")
        body = charge_event("TPFUT-42-HOOK")

        outcome = await ingest.ingest(
            INSTITUTION_ID, body, compute_signature(INSTITUTION_SECRET, body)
        )

        assert outcome.status == "processed"
        assert outcome.reference == "TPFUT-42-HOOK"
        assert outcome.detail == "verified"
        row = (await fetch_payments())[0]
        assert row.status == "success"
        assert row.gateway_reference == "3900777"
        assert row.verified_by == "webhook"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(
        self, ingest: WebhookIngest, insert_payment: Any, fetch_payments: Any
    ) -> None:
        await insert_payment("TPFUT-42-TWICE")
        body = charge_event("TPFUT-42-TWICE")
        signature = compute_signature(INSTITUTION_SECRET, body)

        await ingest.ingest(INSTITUTION_ID, body, signature)
        outcome = await ingest.ingest(INSTITUTION_ID, body, signature)

        assert outcome.detail == "already_verified"
        assert len(await fetch_payments()) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_reference_is_ignored(
        self,
        ingest: WebhookIngest,
        fetch_payments: Any,
        fetch_audit: Any,
        recovery_metadata: Dict[str, Any],
    ) -> None:
        body = charge_event("TPFUT-42-UNSEEN", metadata=recovery_metadata)

        outcome = await ingest.ingest(
            INSTITUTION_ID, body, compute_signature(INSTITUTION_SECRET, body)
        )

        assert outcome.status == "ignored"
        assert await fetch_payments() == []
        assert [e.action for e in await fetch_audit()] == ["confirmed_charge_without_payment"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_charge_success_event_with_unsuccessful_charge_is_error(
        self, ingest: WebhookIngest, insert_payment: Any, fetch_payments: Any
    ) -> None:
        """The event name alone never settles a payment."""
        await insert_payment("TPFUT-42-ABANDON")
        body = charge_event("TPFUT-42-ABANDON", status="abandoned")

        outcome = await ingest.ingest(
            INSTITUTION_ID, body, compute_signature(INSTITUTION_SECRET, body)
        )

        assert outcome.status == "error"
        assert outcome.reference == "TPFUT-42-ABANDON"
        assert "abandoned" in outcome.detail
        assert [p.status for p in await fetch_payments()] == ["pending"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_events_are_ignored(self, ingest: WebhookIngest) -> None:
        body = charge_event("TPFUT-42-T", event="transfer.success")

        outcome = await ingest.ingest(
            INSTITUTION_ID, body, compute_signature(INSTITUTION_SECRET, body)
        )

        assert outcome.status == "ignored"
        assert outcome.event == "transfer.success"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_mismatch_is_reported_as_error(
        self, ingest: WebhookIngest, insert_payment: Any, fetch_payments: Any
    ) -> None:
        await insert_payment("TPFUT-42-SHORT")
        body = charge_event("TPFUT-42-SHORT", amount_minor=100000)

        outcome = await ingest.ingest(
            INSTITUTION_ID, body, compute_signature(INSTITUTION_SECRET, body)
        )

        assert outcome.status == "error"
        assert [p.status for p in await fetch_payments()] == ["pending"]

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "body",
        [b"not json", b"[]", b'{"event": "charge.success"}', b'{"data": {}}'],
    )
    @pytest.mark.asyncio
    async def test_invalid_payload_is_rejected(self, ingest: WebhookIngest, body: bytes) -> None:
        outcome = await ingest.ingest(
            INSTITUTION_ID, body, compute_signature(INSTITUTION_SECRET, body)
        )

        assert outcome.status == "rejected"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_charge_is_reported_as_error(self, ingest: WebhookIngest) -> None:
        body = json.dumps({"event": "charge.success", "data": {"status": "success"}}).encode()

        outcome = await ingest.ingest(
            INSTITUTION_ID, body, compute_signature(INSTITUTION_SECRET, body)
        )

        assert outcome.status == "error"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfigured_institution_is_rejected(self, ingest: WebhookIngest) -> None:
        body = charge_event("TP2-1-X")

        outcome = await ingest.ingest(
            OTHER_INSTITUTION_ID, body, compute_signature(INSTITUTION_SECRET, body)
        )

        assert outcome.status == "rejected"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_failure_never_raises(
        self, credentials: GatewayCredentialCache
    ) -> None:
        reconciler = AsyncMock(spec=Reconciler)
        reconciler.apply_confirmed_charge.side_effect = RuntimeError("database went away")
        ingest = WebhookIngest(reconciler, credentials)
        body = charge_event("TPFUT-42-BOOM")

        with patch.object(webhook_ingest, "logger", MagicMock()) as mock_logger:
            outcome = await ingest.ingest(
                INSTITUTION_ID, body, compute_signature(INSTITUTION_SECRET, body)
            )

        assert outcome.status == "error"
        mock_logger.exception.assert_called_once()
