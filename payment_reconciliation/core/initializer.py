"""
Transaction initializer.

Works out what a student still owes for a session and opens a Paystack
checkout for exactly that amount. No ledger row is written here: the row is
created when the charge is verified, from the metadata sent with the
checkout.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import structlog

from payment_reconciliation.config import Settings, get_settings
from payment_reconciliation.core.amounts import to_minor
from payment_reconciliation.core.credentials import GatewayCredentialCache
from payment_reconciliation.core.errors import NotFoundError, ValidationError
from payment_reconciliation.core.ports import Directory, SessionRecord, StudentRecord
from payment_reconciliation.core.references import generate_reference
from payment_reconciliation.database.repository import PaymentRepository
from payment_reconciliation.integrations.paystack_client import PaystackClient
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InitializeResult:
    reference: str
    amount: Decimal
    currency: str
    payment_type: str
    authorization_url: str
    access_code: str
    public_key: Optional[str]
    email: str


class TransactionInitializer:
    """Opens gateway checkouts for the amount a student still owes."""

    def __init__(
        self,
        gateway: PaystackClient,
        credentials: GatewayCredentialCache,
        directory: Directory,
        repository: PaymentRepository,
        settings: Optional[Settings] = None,
    ):
        self.gateway = gateway
        self.credentials = credentials
        self.directory = directory
        self.repository = repository
        self.settings = settings or get_settings()

    async def initialize(
        self, institution_id: int, student_id: int, session_id: Optional[int] = None
    ) -> InitializeResult:
        """
        Initialize a checkout for a student.

        Args:
            institution_id: Student's institution
            student_id: Paying student
            session_id: Academic session (defaults to the current session)

        Returns:
            InitializeResult: Reference, amount and checkout tokens

        Raises:
            ValidationError: Payments disabled or paid by the institution, no
                gateway key, no amount configured, or nothing left to pay
            NotFoundError: Unknown student or session
            GatewayError: Paystack rejected or could not be reached
        """
        settings = await self.credentials.get(institution_id)
        if not settings.payment_enabled:
            raise ValidationError("Payment is not enabled")
        if settings.payment_mode == "per_session":
            raise ValidationError("Payment is handled by institution")

        secret_key = self.credentials.secret_key_for(settings)
        if not secret_key:
            raise ValidationError(
                "Payment gateway not configured. Please contact administration."
            )

        student = await self._load_student(institution_id, student_id)
        session = await self._load_session(institution_id, session_id)

        owed = settings.amount_for_program(student.program_id)
        if owed <= 0:
            raise ValidationError("No payment amount configured")

        paid = await self.repository.sum_successful(institution_id, student.id, session.id)
        remaining = max(Decimal("0.00"), owed - paid)
        if remaining <= 0:
            raise ValidationError("Payment already completed")

        payment_type = "full" if paid <= 0 else "partial"
        reference = generate_reference(institution_id, student.id, settings.code)
        email = student.email or (
            f"{student.registration_number}@{self.settings.student_email_domain}"
        )

        metadata = {
            "student_id": student.id,
            "session_id": session.id,
            "institution_id": institution_id,
            "student_name": student.full_name,
            "registration_number": student.registration_number,
            "session_name": session.name,
            "institution_name": settings.name,
            "institution_code": settings.code,
            "program_id": student.program_id,
            "payment_type": payment_type,
            "expected_amount": str(remaining),
        }

        transaction = await self.gateway.initialize_transaction(
            secret_key=secret_key,
            email=email,
            amount_minor=to_minor(remaining),
            reference=reference,
            metadata=metadata,
            split_code=settings.split_code,
        )

        metrics.record_initialization(payment_type)
        logger.info(
            "transaction_initialized",
            institution_id=institution_id,
            student_id=student.id,
            session_id=session.id,
            reference=reference,
            amount=str(remaining),
            payment_type=payment_type,
        )

        return InitializeResult(
            reference=transaction.reference,
            amount=remaining,
            currency=settings.currency,
            payment_type=payment_type,
            authorization_url=transaction.authorization_url,
            access_code=transaction.access_code,
            public_key=settings.public_key,
            email=email,
        )

    async def _load_student(self, institution_id: int, student_id: int) -> StudentRecord:
        student = await self.directory.get_student(institution_id, student_id)
        if student is None:
            raise NotFoundError("Student not found", details={"student_id": student_id})
        return student

    async def _load_session(
        self, institution_id: int, session_id: Optional[int]
    ) -> SessionRecord:
        if session_id is None:
            session = await self.directory.get_current_session(institution_id)
            if session is None:
                raise NotFoundError("No current academic session")
            return session

        session = await self.directory.get_session(institution_id, session_id)
        if session is None:
            raise NotFoundError("Session not found", details={"session_id": session_id})
        return session
