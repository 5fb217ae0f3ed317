"""
API routes for payment initialization, verification and ledger administration.

Student identity comes from the path and admin identity from headers set by
the upstream auth gateway; this service does not authenticate callers itself.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_reconciliation.core.errors import GatewayError
from payment_reconciliation.core.ports import Actor
from payment_reconciliation.core.reconciler import ReconcileResult
from payment_reconciliation.core.webhook_ingest import SIGNATURE_HEADER
from payment_reconciliation.database.repository import PaymentFilters

from .dependencies import ServiceContainer, get_container
from .schemas import (
    CacheRefreshResponse,
    CreatePaymentRequest,
    InitializePaymentRequest,
    InitializePaymentResponse,
    PaymentListResponse,
    PaymentResponse,
    PaymentStatsResponse,
    StudentPaymentStatusResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
student_router = APIRouter(
    prefix="/institutions/{institution_id}/students/{student_id}", tags=["students"]
)
payment_router = APIRouter(prefix="/institutions/{institution_id}/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/institutions/{institution_id}/payments", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def admin_actor(
    x_admin_id: Optional[int] = Header(default=None),
    x_admin_email: Optional[str] = Header(default=None),
) -> Actor:
    return Actor.admin(user_id=x_admin_id, email=x_admin_email)


def _verify_response(result: ReconcileResult) -> VerifyPaymentResponse:
    return VerifyPaymentResponse(
        status=result.status,
        outcome=result.outcome.value,
        message=result.message,
        gateway_status=result.gateway_status,
        payment=PaymentResponse.model_validate(result.payment) if result.payment else None,
    )


# Student routes


@student_router.post(
    "/payments/initialize",
    response_model=InitializePaymentResponse,
    summary="Open a checkout",
    description="Initialize a Paystack checkout for the amount the student still owes",
)
async def initialize_payment(
    institution_id: int,
    student_id: int,
    request: InitializePaymentRequest,
    container: ServiceContainer = Depends(get_container),
) -> InitializePaymentResponse:
    result = await container.initializer.initialize(
        institution_id, student_id, session_id=request.session_id
    )
    return InitializePaymentResponse(
        reference=result.reference,
        amount=result.amount,
        currency=result.currency,
        payment_type=result.payment_type,
        authorization_url=result.authorization_url,
        access_code=result.access_code,
        public_key=result.public_key,
        email=result.email,
    )


@student_router.post(
    "/payments/verify",
    response_model=VerifyPaymentResponse,
    summary="Verify a payment after checkout",
)
async def verify_student_payment(
    institution_id: int,
    student_id: int,
    request: VerifyPaymentRequest,
    container: ServiceContainer = Depends(get_container),
) -> VerifyPaymentResponse:
    """
    Client-side verification.

    Gateway failures come back as ``unverified`` with ``retryable`` set
    instead of an error status.
    """
    try:
        result = await container.reconciler.reconcile(
            institution_id, request.reference, Actor.student(student_id)
        )
    except GatewayError as e:
        logger.warning(
            "student_verify_unverified",
            institution_id=institution_id,
            reference=request.reference,
            error_type=e.error_type.value,
        )
        return VerifyPaymentResponse(
            status="unverified",
            message="Could not confirm the payment with Paystack. Please try again shortly.",
            retryable=True,
        )
    return _verify_response(result)


@student_router.get(
    "/payment-status",
    response_model=StudentPaymentStatusResponse,
    summary="Student payment status",
)
async def get_student_payment_status(
    institution_id: int,
    student_id: int,
    session_id: Optional[int] = Query(default=None),
    container: ServiceContainer = Depends(get_container),
) -> StudentPaymentStatusResponse:
    summary = await container.ledger.student_payment_status(
        institution_id, student_id, session_id=session_id
    )
    payments = [PaymentResponse.model_validate(p) for p in summary.pop("payments", [])]
    return StudentPaymentStatusResponse(**summary, payments=payments)


# Admin routes


@payment_router.post(
    "/verify",
    response_model=VerifyPaymentResponse,
    summary="Re-run verification",
    description="Admin verification, recovers charges whose notification was lost",
)
async def verify_payment_admin(
    institution_id: int,
    request: VerifyPaymentRequest,
    actor: Actor = Depends(admin_actor),
    container: ServiceContainer = Depends(get_container),
) -> VerifyPaymentResponse:
    result = await container.reconciler.reconcile(institution_id, request.reference, actor)
    return _verify_response(result)


@payment_router.post(
    "",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a pending payment",
)
async def create_payment(
    institution_id: int,
    request: CreatePaymentRequest,
    actor: Actor = Depends(admin_actor),
    container: ServiceContainer = Depends(get_container),
) -> PaymentResponse:
    payment = await container.ledger.create_pending(
        institution_id,
        request.student_id,
        request.session_id,
        request.amount,
        actor,
        payment_type=request.payment_type,
        metadata=request.metadata,
    )
    return PaymentResponse.model_validate(payment)


@payment_router.get("", response_model=PaymentListResponse, summary="List payments")
async def list_payments(
    institution_id: int,
    session_id: Optional[int] = Query(default=None),
    student_id: Optional[int] = Query(default=None),
    payment_status: Optional[str] = Query(default=None, alias="status"),
    payment_type: Optional[str] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
) -> PaymentListResponse:
    filters = PaymentFilters(
        session_id=session_id,
        student_id=student_id,
        status=payment_status,
        payment_type=payment_type,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    listing = await container.ledger.list_payments(institution_id, filters, page=page, limit=limit)
    return PaymentListResponse(
        payments=[PaymentResponse.model_validate(p) for p in listing["payments"]],
        pagination=listing["pagination"],
    )


@payment_router.get("/stats", response_model=PaymentStatsResponse, summary="Ledger statistics")
async def get_payment_stats(
    institution_id: int,
    session_id: Optional[int] = Query(default=None),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    return await container.ledger.stats(institution_id, session_id=session_id)


@payment_router.post(
    "/settings/refresh",
    response_model=CacheRefreshResponse,
    summary="Drop cached gateway settings",
)
async def refresh_payment_settings(
    institution_id: int,
    container: ServiceContainer = Depends(get_container),
) -> CacheRefreshResponse:
    container.credentials.invalidate(institution_id)
    return CacheRefreshResponse(institution_id=institution_id)


@payment_router.get("/{payment_id}", response_model=PaymentResponse, summary="Get a payment")
async def get_payment(
    institution_id: int,
    payment_id: UUID,
    container: ServiceContainer = Depends(get_container),
) -> PaymentResponse:
    payment = await container.ledger.get_payment(institution_id, payment_id)
    return PaymentResponse.model_validate(payment)


@payment_router.post(
    "/{payment_id}/cancel", response_model=PaymentResponse, summary="Cancel a pending payment"
)
async def cancel_payment(
    institution_id: int,
    payment_id: UUID,
    actor: Actor = Depends(admin_actor),
    container: ServiceContainer = Depends(get_container),
) -> PaymentResponse:
    payment = await container.ledger.cancel(institution_id, payment_id, actor)
    return PaymentResponse.model_validate(payment)


# Webhook routes


@webhook_router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Paystack webhook",
    description="Always acknowledged with 200; failures are logged, never surfaced",
)
async def paystack_webhook(
    institution_id: int,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> WebhookResponse:
    raw_body = await request.body()
    outcome = await container.webhooks.ingest(
        institution_id, raw_body, request.headers.get(SIGNATURE_HEADER)
    )
    logger.info(
        "api_webhook_acknowledged",
        institution_id=institution_id,
        outcome=outcome.status,
        event_type=outcome.event,
    )
    return WebhookResponse()


# Monitoring routes


@monitoring_router.get("/health", summary="Health check")
async def health(
    response: Response, container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    result = await container.health.check_all()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get("/health/live", summary="Liveness probe")
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return await container.health.liveness()


@monitoring_router.get("/health/ready", summary="Readiness probe")
async def readiness(
    response: Response, container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    result = await container.health.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
