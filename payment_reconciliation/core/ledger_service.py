"""Ledger administration: eager pending rows, cancellation, queries and summaries."""
import math
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog

from payment_reconciliation.core.amounts import to_decimal
from payment_reconciliation.core.audit import AuditTrail
from payment_reconciliation.core.credentials import GatewayCredentialCache
from payment_reconciliation.core.errors import ConflictError, NotFoundError, ValidationError
from payment_reconciliation.core.ports import Actor, AuditRecord, Directory, SessionRecord
from payment_reconciliation.core.references import generate_reference
from payment_reconciliation.database.models import Payment
from payment_reconciliation.database.repository import PaymentFilters, PaymentRepository

logger = structlog.get_logger(__name__)

PAYMENT_TYPES = ("full", "partial")
MAX_PAGE_SIZE = 100


class LedgerService:
    """
    Administrative operations on the payment ledger.

    Pending rows created here feed the reconciler's update path; the
    reconciler remains the only writer of successful rows.
    """

    def __init__(
        self,
        repository: PaymentRepository,
        directory: Directory,
        credentials: GatewayCredentialCache,
        audit: AuditTrail,
    ):
        self.repository = repository
        self.directory = directory
        self.credentials = credentials
        self.audit = audit

    async def create_pending(
        self,
        institution_id: int,
        student_id: int,
        session_id: int,
        amount: Any,
        actor: Actor,
        payment_type: str = "full",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Record a pending payment before the student is sent to checkout.

        Args:
            institution_id: Owning institution
            student_id: Paying student
            session_id: Academic session
            amount: Amount in major units
            actor: Who created the row
            payment_type: full or partial
            metadata: Extra context stored on the row

        Returns:
            Payment: The new pending row

        Raises:
            ValidationError: Bad amount or payment type
            NotFoundError: Unknown student or session
            ConflictError: A pending or completed full payment already exists
        """
        try:
            amount = to_decimal(amount)
        except ArithmeticError:
            raise ValidationError("Amount must be a number")
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError(f"Payment type must be one of: {', '.join(PAYMENT_TYPES)}")

        if await self.directory.get_student(institution_id, student_id) is None:
            raise NotFoundError("Student not found", details={"student_id": student_id})
        await self._load_session(institution_id, session_id)

        if await self.repository.find_pending(institution_id, student_id, session_id):
            raise ConflictError("A pending payment already exists for this student and session")
        if await self.repository.find_full_success(institution_id, student_id, session_id):
            raise ConflictError("Student has already completed payment for this session")

        settings = await self.credentials.get(institution_id)
        reference = generate_reference(institution_id, student_id, settings.code)
        payment = await self.repository.insert_pending(
            institution_id=institution_id,
            student_id=student_id,
            session_id=session_id,
            amount=amount,
            currency=settings.currency,
            payment_type=payment_type,
            reference=reference,
            metadata={**(metadata or {}), "created_by": actor.label},
        )
        if payment is None:
            raise ConflictError(
                "Payment reference already exists", details={"reference": reference}
            )

        logger.info(
            "pending_payment_created",
            institution_id=institution_id,
            student_id=student_id,
            session_id=session_id,
            reference=reference,
            amount=str(amount),
        )
        await self._audit(payment, "created", actor)
        return payment

    async def cancel(self, institution_id: int, payment_id: uuid.UUID, actor: Actor) -> Payment:
        """
        Cancel a pending payment.

        Raises:
            NotFoundError: Unknown payment
            ValidationError: Payment is no longer pending
        """
        payment = await self.get_payment(institution_id, payment_id)
        if payment.status != "pending" or not await self.repository.mark_cancelled(payment.id):
            raise ValidationError("Only pending payments can be cancelled")

        cancelled = await self.get_payment(institution_id, payment_id)
        logger.info("payment_cancelled", reference=payment.reference, actor=actor.label)
        await self._audit(cancelled, "cancelled", actor, previous_status=payment.status)
        return cancelled

    async def get_payment(self, institution_id: int, payment_id: uuid.UUID) -> Payment:
        payment = await self.repository.get(institution_id, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", details={"payment_id": str(payment_id)})
        return payment

    async def list_payments(
        self,
        institution_id: int,
        filters: PaymentFilters,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = min(max(1, limit), MAX_PAGE_SIZE)
        rows, total = await self.repository.list_payments(
            institution_id, filters, limit=limit, offset=(page - 1) * limit
        )
        return {
            "payments": rows,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    async def stats(self, institution_id: int, session_id: Optional[int] = None) -> Dict[str, Any]:
        return await self.repository.summarize(institution_id, session_id)

    async def student_payment_status(
        self, institution_id: int, student_id: int, session_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Summarize what a student owes and has paid for a session.

        Status is ``not_required`` when the institution does not collect from
        students, otherwise ``completed``, ``partial`` or ``pending``.
        """
        student = await self.directory.get_student(institution_id, student_id)
        if student is None:
            raise NotFoundError("Student not found", details={"student_id": student_id})

        settings = await self.credentials.get(institution_id)
        if not settings.payment_enabled or settings.payment_mode == "per_session":
            return {
                "required": False,
                "status": "not_required",
                "message": "Payment is not required for students",
            }

        session = await self._load_session(institution_id, session_id)
        amount = settings.amount_for_program(student.program_id)
        payments = await self.repository.list_for_student(institution_id, student.id, session.id)
        paid = sum(
            (to_decimal(p.amount) for p in payments if p.status == "success"), Decimal("0.00")
        )

        if amount <= 0:
            status = "not_required"
        elif paid >= amount:
            status = "completed"
        elif paid > 0:
            status = "partial"
        else:
            status = "pending"

        return {
            "required": amount > 0,
            "status": status,
            "amount": amount,
            "paid": paid,
            "remaining": max(Decimal("0.00"), amount - paid),
            "currency": settings.currency,
            "session_id": session.id,
            "payments": payments,
        }

    async def _load_session(self, institution_id: int, session_id: Optional[int]) -> SessionRecord:
        if session_id is None:
            session = await self.directory.get_current_session(institution_id)
        else:
            session = await self.directory.get_session(institution_id, session_id)
        if session is None:
            raise NotFoundError("Session not found", details={"session_id": session_id})
        return session

    async def _audit(
        self, payment: Payment, action: str, actor: Actor, previous_status: Optional[str] = None
    ) -> None:
        await self.audit.record(
            AuditRecord(
                institution_id=payment.institution_id,
                reference=payment.reference,
                action=action,
                actor=actor.label,
                payment_id=payment.id,
                previous_status=previous_status,
                new_status=payment.status,
                details={"amount": str(payment.amount)},
            )
        )
