"""
Integration tests for the HTTP API.

Runs the FastAPI app in-process against the SQLite ledger and an in-memory
Paystack served through httpx.MockTransport.
"""
import json
import uuid

import httpx
import pytest

from payment_reconciliation.core.webhook_ingest import SIGNATURE_HEADER, compute_signature

from tests.conftest import (
    CURRENT_SESSION_ID,
    INSTITUTION_ID,
    INSTITUTION_SECRET,
    STUDENT_ID,
    FakePaystack,
)

STUDENT_BASE = f"/institutions/{INSTITUTION_ID}/students/{STUDENT_ID}"
PAYMENTS_BASE = f"/institutions/{INSTITUTION_ID}/payments"
ADMIN_HEADERS = {"X-Admin-Id": "7", "X-Admin-Email": "bursar@fut.edu.ng"}


async def create_pending(client: httpx.AsyncClient, amount: str = "5000.00") -> dict:
    response = await client.post(
        PAYMENTS_BASE,
        json={"student_id": STUDENT_ID, "session_id": CURRENT_SESSION_ID, "amount": amount},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 201
    return response.json()


def signed_event(fake_paystack: FakePaystack, reference: str, amount_minor: int) -> tuple:
    data = fake_paystack.settle(reference, amount_minor)
    body = json.dumps({"event": "charge.success", "data": data}).encode("utf-8")
    return body, compute_signature(INSTITUTION_SECRET, body)


class TestStudentFlow:
    """Checkout, lost webhook and client-side verification."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initialize_then_verify_recovers_payment(
        self, client: httpx.AsyncClient, fake_paystack: FakePaystack
    ) -> None:
        response = await client.post(f"{STUDENT_BASE}/payments/initialize", json={})
        assert response.status_code == 200
        checkout = response.json()
        assert checkout["amount"] == "5000.00"
        assert checkout["payment_type"] == "full"
        assert checkout["authorization_url"].endswith(checkout["reference"])

        sent = fake_paystack.initialized[0]
        assert sent["amount"] == 500000
        assert sent["split_code"] == "SPL_abc123"
        fake_paystack.settle(checkout["reference"], 500000, metadata=sent["metadata"])

        response = await client.post(
            f"{STUDENT_BASE}/payments/verify", json={"reference": checkout["reference"]}
        )
        assert response.status_code == 200
        verified = response.json()
        assert verified["status"] == "success"
        assert verified["outcome"] == "recovered"
        assert verified["payment"]["recovered"] is True
        assert verified["payment"]["amount"] == "5000.00"

        response = await client.get(f"{STUDENT_BASE}/payment-status")
        assert response.status_code == 200
        status = response.json()
        assert status["status"] == "completed"
        assert status["remaining"] == "0.00"
        assert len(status["payments"]) == 1

        response = await client.post(f"{STUDENT_BASE}/payments/initialize", json={})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_while_gateway_down_is_retryable(
        self, client: httpx.AsyncClient, fake_paystack: FakePaystack
    ) -> None:
        fake_paystack.fail_with = 503

        response = await client.post(
            f"{STUDENT_BASE}/payments/verify", json={"reference": "TPFUT-42-UNKNOWN"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "unverified"
        assert body["retryable"] is True
        assert body["payment"] is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_blank_reference_is_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(f"{STUDENT_BASE}/payments/verify", json={"reference": "  "})

        assert response.status_code == 422


class TestWebhookFlow:
    """Webhook deliveries against eagerly created pending rows."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_webhook_marks_payment_successful(
        self, client: httpx.AsyncClient, fake_paystack: FakePaystack
    ) -> None:
        payment = await create_pending(client)
        body, signature = signed_event(fake_paystack, payment["reference"], 500000)

        response = await client.post(
            f"{PAYMENTS_BASE}/webhook", content=body, headers={SIGNATURE_HEADER: signature}
        )
        assert response.status_code == 200
        assert response.json() == {"status": "received"}

        response = await client.get(f"{PAYMENTS_BASE}/{payment['id']}")
        assert response.status_code == 200
        stored = response.json()
        assert stored["status"] == "success"
        assert stored["verified_by"] == "webhook"
        assert stored["channel"] == "card"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_forged_webhook_is_acknowledged_but_ignored(
        self, client: httpx.AsyncClient, fake_paystack: FakePaystack
    ) -> None:
        payment = await create_pending(client)
        body, _ = signed_event(fake_paystack, payment["reference"], 500000)

        response = await client.post(
            f"{PAYMENTS_BASE}/webhook", content=body, headers={SIGNATURE_HEADER: "f" * 128}
        )
        assert response.status_code == 200
        assert response.json() == {"status": "received"}

        response = await client.get(f"{PAYMENTS_BASE}/{payment['id']}")
        assert response.json()["status"] == "pending"


class TestAdminFlow:
    """Admin verification and ledger administration."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_verify_records_actor(
        self, client: httpx.AsyncClient, fake_paystack: FakePaystack
    ) -> None:
        payment = await create_pending(client)
        fake_paystack.settle(payment["reference"], 500000)

        response = await client.post(
            f"{PAYMENTS_BASE}/verify",
            json={"reference": payment["reference"]},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["outcome"] == "verified"
        assert body["payment"]["verified_by"] == "admin:bursar@fut.edu.ng"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_admin_verify_gateway_failure_is_502(
        self, client: httpx.AsyncClient, fake_paystack: FakePaystack
    ) -> None:
        payment = await create_pending(client)
        fake_paystack.fail_with = 503

        response = await client.post(
            f"{PAYMENTS_BASE}/verify",
            json={"reference": payment["reference"]},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "GATEWAY_ERROR"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_mismatch_is_422(
        self, client: httpx.AsyncClient, fake_paystack: FakePaystack
    ) -> None:
        payment = await create_pending(client)
        fake_paystack.settle(payment["reference"], 100000)

        response = await client.post(
            f"{PAYMENTS_BASE}/verify",
            json={"reference": payment["reference"]},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "AMOUNT_MISMATCH"

        response = await client.get(f"{PAYMENTS_BASE}/{payment['id']}")
        assert response.json()["status"] == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_pending_is_409(self, client: httpx.AsyncClient) -> None:
        await create_pending(client)

        response = await client.post(
            PAYMENTS_BASE,
            json={"student_id": STUDENT_ID, "session_id": CURRENT_SESSION_ID, "amount": "5000"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_list_and_stats(self, client: httpx.AsyncClient) -> None:
        payment = await create_pending(client)

        response = await client.post(
            f"{PAYMENTS_BASE}/{payment['id']}/cancel", headers=ADMIN_HEADERS
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        response = await client.get(PAYMENTS_BASE, params={"status": "cancelled"})
        assert response.status_code == 200
        listing = response.json()
        assert [p["id"] for p in listing["payments"]] == [payment["id"]]
        assert listing["pagination"]["total"] == 1

        response = await client.get(f"{PAYMENTS_BASE}/stats")
        assert response.status_code == 200
        stats = response.json()
        assert stats["by_status"]["cancelled"]["count"] == 1
        assert stats["students_paid"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get(f"{PAYMENTS_BASE}/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_settings_refresh(self, client: httpx.AsyncClient) -> None:
        response = await client.post(f"{PAYMENTS_BASE}/settings/refresh")

        assert response.status_code == 200
        assert response.json() == {"institution_id": INSTITUTION_ID, "status": "invalidated"}


class TestMonitoring:
    """Health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: httpx.AsyncClient) -> None:
        assert (await client.get("/health/live")).status_code == 200
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        await client.get("/health")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "reconciliations_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_header(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/live")

        assert "x-request-id" in response.headers
