"""
Verification reconciler.

Converges the three verification paths (student polling, gateway webhook,
admin re-verification) on a single ledger outcome per reference.

Exactly-once comes from the ledger, not from locks:
1. A row that is already successful is returned without calling the gateway
2. A confirmed charge is written with a conditional update that only matches
   rows that are not yet successful
3. A charge with no local row is inserted with a conflict-ignoring insert,
   guarded by the unique reference and the one-full-success-per-student index
4. Whoever loses a race re-reads the ledger and returns the winner's row
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from payment_reconciliation.core.amounts import to_decimal, within_tolerance
from payment_reconciliation.core.audit import AuditTrail
from payment_reconciliation.core.credentials import GatewayCredentialCache
from payment_reconciliation.core.errors import (
    AmountMismatchError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from payment_reconciliation.core.ports import Actor, AuditRecord, Directory
from payment_reconciliation.database.models import Payment
from payment_reconciliation.database.repository import PaymentRepository
from payment_reconciliation.integrations.paystack_client import (
    GatewayTransaction,
    PaystackClient,
)
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReconcileOutcome(str, Enum):
    VERIFIED = "verified"  # this call moved the row to success
    ALREADY_VERIFIED = "already_verified"  # success was recorded earlier or by a racing path
    RECOVERED = "recovered"  # row created from gateway metadata
    DUPLICATE = "duplicate"  # charge confirmed but the student already has a full payment
    NOT_SUCCESSFUL = "not_successful"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a reconciliation, identical for every path that reaches it."""

    status: str
    outcome: ReconcileOutcome
    payment: Optional[Payment]
    message: str
    gateway_status: Optional[str] = None


def _coerce_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class Reconciler:
    """
    Reconciles gateway-confirmed charges into the payment ledger.

    Args:
        repository: Ledger repository
        gateway: Paystack client
        credentials: Per-institution credential cache
        directory: Read view of students and sessions
        audit: Best-effort audit trail
        default_currency: Currency recorded when the gateway omits one
    """

    def __init__(
        self,
        repository: PaymentRepository,
        gateway: PaystackClient,
        credentials: GatewayCredentialCache,
        directory: Directory,
        audit: AuditTrail,
        default_currency: str = "NGN",
    ):
        self.repository = repository
        self.gateway = gateway
        self.credentials = credentials
        self.directory = directory
        self.audit = audit
        self.default_currency = default_currency

    async def reconcile(self, institution_id: int, reference: str, actor: Actor) -> ReconcileResult:
        """
        Verify a reference with the gateway and settle the ledger.

        Used by the student and admin verification paths.

        Args:
            institution_id: Institution owning the payment
            reference: Our reference or the gateway transaction id
            actor: Who asked for verification

        Returns:
            ReconcileResult: Settled ledger state

        Raises:
            ValidationError: Missing reference, unconfigured gateway or
                incomplete recovery metadata
            NotFoundError: Reference belongs to another student
            GatewayError: Gateway could not give a usable answer
            AmountMismatchError: Confirmed amount is outside tolerance
            ConflictError: Student already has a full payment for the session
        """
        start_time = time.time()
        path = actor.kind.value
        reference = (reference or "").strip()
        if not reference:
            raise ValidationError("Payment reference is required")

        logger.info(
            "reconcile_started",
            institution_id=institution_id,
            reference=reference,
            actor=actor.label,
        )

        payment = await self.repository.find_by_reference(institution_id, reference)
        if payment is not None:
            await self._check_ownership(institution_id, payment, actor)
            if payment.status == "success":
                result = ReconcileResult(
                    status="success",
                    outcome=ReconcileOutcome.ALREADY_VERIFIED,
                    payment=payment,
                    message="Payment already verified",
                )
                await self._audit(
                    institution_id, payment.reference, "verify_skipped", actor, payment=payment
                )
                self._observe(path, result, start_time)
                return result

        secret_key = await self.credentials.get_secret_key(institution_id)
        lookup = payment.reference if payment is not None else reference

        try:
            charge = await self.gateway.verify_transaction(secret_key, lookup)
        except GatewayError as e:
            logger.warning(
                "reconcile_gateway_unavailable",
                reference=lookup,
                error_type=e.error_type.value,
                error=str(e),
            )
            await self._audit(
                institution_id,
                lookup,
                "gateway_error",
                actor,
                payment=payment,
                details={"error_type": e.error_type.value, "message": e.message},
            )
            metrics.record_reconciliation(path, "gateway_error", time.time() - start_time)
            raise

        if not charge.succeeded:
            result = await self._record_unsuccessful(institution_id, payment, charge, actor)
        else:
            result = await self._apply(institution_id, charge, actor, allow_recovery=True)

        self._observe(path, result, start_time)
        return result

    async def apply_confirmed_charge(
        self,
        institution_id: int,
        charge: GatewayTransaction,
        actor: Actor,
        allow_recovery: bool = False,
    ) -> ReconcileResult:
        """
        Settle a charge the gateway has already confirmed.

        The webhook path calls this directly with ``allow_recovery=False``,
        so a charge with no local row is reported rather than created.

        Raises:
            ValidationError: The charge itself is not successful
            NotFoundError: No local row and recovery not allowed
        """
        start_time = time.time()
        if not charge.succeeded:
            logger.warning(
                "confirmed_charge_not_successful",
                institution_id=institution_id,
                reference=charge.reference,
                gateway_status=charge.status,
                actor=actor.label,
            )
            await self._audit(
                institution_id,
                charge.reference,
                "confirmed_charge_not_successful",
                actor,
                gateway_reference=charge.gateway_reference,
                details={"gateway_status": charge.status},
            )
            raise ValidationError(
                f"Charge is not successful: {charge.status}",
                details={"reference": charge.reference, "gateway_status": charge.status},
            )

        result = await self._apply(institution_id, charge, actor, allow_recovery)
        self._observe(actor.kind.value, result, start_time)
        return result

    async def _apply(
        self,
        institution_id: int,
        charge: GatewayTransaction,
        actor: Actor,
        allow_recovery: bool,
    ) -> ReconcileResult:
        payment = await self.repository.find_by_reference(institution_id, charge.reference)
        if payment is not None:
            await self._check_ownership(institution_id, payment, actor)
            return await self._confirm_existing(institution_id, payment, charge, actor)

        if not allow_recovery:
            logger.warning(
                "confirmed_charge_without_payment",
                institution_id=institution_id,
                reference=charge.reference,
                actor=actor.label,
            )
            await self._audit(
                institution_id,
                charge.reference,
                "confirmed_charge_without_payment",
                actor,
                gateway_reference=charge.gateway_reference,
                details={"amount": str(charge.amount)},
            )
            raise NotFoundError(
                "Payment not found", details={"reference": charge.reference}
            )

        return await self._recover(institution_id, charge, actor)

    async def _confirm_existing(
        self,
        institution_id: int,
        payment: Payment,
        charge: GatewayTransaction,
        actor: Actor,
    ) -> ReconcileResult:
        if payment.status == "success":
            await self._audit(
                institution_id, payment.reference, "verify_skipped", actor, payment=payment
            )
            return self._settled(payment, ReconcileOutcome.ALREADY_VERIFIED, charge)

        await self._check_amount(
            institution_id, payment.reference, payment.amount, charge, actor, payment
        )

        try:
            won = await self.repository.mark_success(
                payment.id,
                gateway_reference=charge.gateway_reference,
                channel=charge.channel,
                authorization_code=charge.authorization_code,
                authorization=charge.authorization or None,
                metadata=self._ledger_metadata(payment.payment_metadata, charge, actor),
                verified_by=actor.label,
                verified_at=datetime.now(timezone.utc),
            )
        except ConflictError:
            await self._audit(
                institution_id,
                payment.reference,
                "verify_conflict",
                actor,
                payment=payment,
                gateway_reference=charge.gateway_reference,
            )
            raise

        settled = await self.repository.get(institution_id, payment.id)
        if settled is None:
            raise NotFoundError("Payment not found", details={"reference": payment.reference})

        if won:
            logger.info(
                "payment_verified",
                reference=payment.reference,
                previous_status=payment.status,
                amount=str(settled.amount),
                actor=actor.label,
            )
            await self._audit(
                institution_id,
                payment.reference,
                "verified",
                actor,
                payment=settled,
                previous_status=payment.status,
                gateway_reference=charge.gateway_reference,
                details={"channel": charge.channel, "amount": str(charge.amount)},
            )
            return self._settled(settled, ReconcileOutcome.VERIFIED, charge)

        logger.info(
            "payment_verified_concurrently",
            reference=payment.reference,
            actor=actor.label,
        )
        await self._audit(
            institution_id, payment.reference, "verify_race_lost", actor, payment=settled
        )
        return self._settled(settled, ReconcileOutcome.ALREADY_VERIFIED, charge)

    async def _recover(
        self, institution_id: int, charge: GatewayTransaction, actor: Actor
    ) -> ReconcileResult:
        """Create the ledger row for a confirmed charge that never reached us."""
        metadata = charge.metadata
        student_id = _coerce_id(metadata.get("student_id"))
        session_id = _coerce_id(metadata.get("session_id"))
        metadata_institution = _coerce_id(metadata.get("institution_id"))

        if student_id is None or session_id is None or metadata_institution is None:
            await self._audit(
                institution_id,
                charge.reference,
                "recovery_rejected",
                actor,
                gateway_reference=charge.gateway_reference,
                details={"reason": "incomplete_metadata"},
            )
            raise ValidationError(
                "Cannot recover payment: transaction metadata is missing student, "
                "session or institution",
                details={"reference": charge.reference},
            )

        if metadata_institution != institution_id:
            await self._audit(
                institution_id,
                charge.reference,
                "recovery_rejected",
                actor,
                gateway_reference=charge.gateway_reference,
                details={"reason": "institution_mismatch"},
            )
            raise ValidationError(
                "Transaction belongs to a different institution",
                details={"reference": charge.reference},
            )

        if actor.is_student and actor.user_id != student_id:
            await self._audit(
                institution_id,
                charge.reference,
                "ownership_rejected",
                actor,
                gateway_reference=charge.gateway_reference,
                details={"student_id": student_id},
            )
            raise NotFoundError("Payment not found", details={"reference": charge.reference})

        student = await self.directory.get_student(institution_id, student_id)
        session = await self.directory.get_session(institution_id, session_id)
        if student is None or session is None:
            await self._audit(
                institution_id,
                charge.reference,
                "recovery_rejected",
                actor,
                gateway_reference=charge.gateway_reference,
                details={"reason": "unknown_student_or_session"},
            )
            raise ValidationError(
                "Cannot recover payment: student or session not found in this institution",
                details={"student_id": student_id, "session_id": session_id},
            )

        if metadata.get("expected_amount") is not None:
            try:
                expected = to_decimal(metadata["expected_amount"])
            except ArithmeticError:
                raise ValidationError(
                    "Transaction metadata has an invalid expected amount",
                    details={"reference": charge.reference},
                )
            await self._check_amount(institution_id, charge.reference, expected, charge, actor)

        existing = await self.repository.find_full_success(institution_id, student_id, session_id)
        if existing is not None:
            return await self._settle_against(institution_id, existing, charge, actor)

        payment_type = metadata.get("payment_type")
        if payment_type not in ("full", "partial"):
            payment_type = "full"

        inserted = await self.repository.insert_recovered(
            institution_id=institution_id,
            student_id=student_id,
            session_id=session_id,
            amount=charge.amount,
            currency=charge.currency or self.default_currency,
            payment_type=payment_type,
            reference=charge.reference,
            gateway_reference=charge.gateway_reference,
            channel=charge.channel,
            authorization_code=charge.authorization_code,
            authorization=charge.authorization or None,
            metadata=self._ledger_metadata(metadata, charge, actor, recovered=True),
            verified_by=actor.label,
            verified_at=datetime.now(timezone.utc),
        )

        if inserted is not None:
            logger.info(
                "payment_recovered",
                reference=charge.reference,
                student_id=student_id,
                session_id=session_id,
                amount=str(inserted.amount),
                actor=actor.label,
            )
            await self._audit(
                institution_id,
                charge.reference,
                "recovered",
                actor,
                payment=inserted,
                gateway_reference=charge.gateway_reference,
                details={"amount": str(charge.amount)},
            )
            return ReconcileResult(
                status=inserted.status,
                outcome=ReconcileOutcome.RECOVERED,
                payment=inserted,
                message="Payment recovered and verified",
                gateway_status=charge.status,
            )

        # Lost the insert race: the reference or the full-success slot is taken
        winner = await self.repository.find_by_reference(institution_id, charge.reference)
        if winner is not None:
            return await self._confirm_existing(institution_id, winner, charge, actor)

        existing = await self.repository.find_full_success(institution_id, student_id, session_id)
        if existing is not None:
            return await self._settle_against(institution_id, existing, charge, actor)

        raise ConflictError(
            "Payment could not be recorded due to a concurrent write",
            details={"reference": charge.reference},
        )

    async def _settle_against(
        self,
        institution_id: int,
        existing: Payment,
        charge: GatewayTransaction,
        actor: Actor,
    ) -> ReconcileResult:
        # The full-success slot may hold this very charge, written by a racing path
        if existing.reference == charge.reference:
            return await self._confirm_existing(institution_id, existing, charge, actor)
        return await self._duplicate(institution_id, existing, charge, actor)

    async def _duplicate(
        self,
        institution_id: int,
        existing: Payment,
        charge: GatewayTransaction,
        actor: Actor,
    ) -> ReconcileResult:
        logger.warning(
            "confirmed_charge_duplicates_full_payment",
            reference=charge.reference,
            existing_reference=existing.reference,
            student_id=existing.student_id,
        )
        await self._audit(
            institution_id,
            charge.reference,
            "recovery_duplicate",
            actor,
            payment=existing,
            gateway_reference=charge.gateway_reference,
            details={"existing_reference": existing.reference, "amount": str(charge.amount)},
        )
        return ReconcileResult(
            status=existing.status,
            outcome=ReconcileOutcome.DUPLICATE,
            payment=existing,
            message="Student already has a completed payment for this session",
            gateway_status=charge.status,
        )

    async def _record_unsuccessful(
        self,
        institution_id: int,
        payment: Optional[Payment],
        charge: GatewayTransaction,
        actor: Actor,
    ) -> ReconcileResult:
        reason = charge.gateway_response or charge.status
        logger.info(
            "payment_not_successful",
            reference=charge.reference,
            gateway_status=charge.status,
            gateway_response=charge.gateway_response,
        )

        if payment is None:
            await self._audit(
                institution_id,
                charge.reference,
                "verify_not_successful",
                actor,
                details={"gateway_status": charge.status},
            )
            return ReconcileResult(
                status="failed",
                outcome=ReconcileOutcome.NOT_SUCCESSFUL,
                payment=None,
                message=f"Payment not successful: {reason}",
                gateway_status=charge.status,
            )

        previous_status = payment.status
        if previous_status == "pending":
            await self.repository.mark_failed(payment.id, charge.gateway_response)
        current = await self.repository.get(institution_id, payment.id) or payment

        # A racing path may have confirmed the charge between our read and the downgrade
        if current.status == "success":
            await self._audit(
                institution_id, payment.reference, "verify_race_lost", actor, payment=current
            )
            return self._settled(current, ReconcileOutcome.ALREADY_VERIFIED, charge)

        await self._audit(
            institution_id,
            payment.reference,
            "verify_not_successful",
            actor,
            payment=current,
            previous_status=previous_status,
            details={"gateway_status": charge.status},
        )
        return ReconcileResult(
            status="failed",
            outcome=ReconcileOutcome.NOT_SUCCESSFUL,
            payment=current,
            message=f"Payment not successful: {reason}",
            gateway_status=charge.status,
        )

    async def _check_amount(
        self,
        institution_id: int,
        reference: str,
        expected: Decimal,
        charge: GatewayTransaction,
        actor: Actor,
        payment: Optional[Payment] = None,
    ) -> None:
        if within_tolerance(expected, charge.amount):
            return

        metrics.record_amount_mismatch()
        logger.error(
            "payment_amount_mismatch",
            reference=reference,
            expected=str(to_decimal(expected)),
            reported=str(charge.amount),
            actor=actor.label,
        )
        await self._audit(
            institution_id,
            reference,
            "amount_mismatch",
            actor,
            payment=payment,
            gateway_reference=charge.gateway_reference,
            details={"expected": str(to_decimal(expected)), "reported": str(charge.amount)},
        )
        raise AmountMismatchError(reference, to_decimal(expected), charge.amount)

    async def _check_ownership(self, institution_id: int, payment: Payment, actor: Actor) -> None:
        if actor.is_student and payment.student_id != actor.user_id:
            await self._audit(
                institution_id,
                payment.reference,
                "ownership_rejected",
                actor,
                payment=payment,
                details={"student_id": payment.student_id},
            )
            raise NotFoundError("Payment not found", details={"reference": payment.reference})

    @staticmethod
    def _ledger_metadata(
        base: Optional[Dict[str, Any]],
        charge: GatewayTransaction,
        actor: Actor,
        recovered: bool = False,
    ) -> Dict[str, Any]:
        merged: Dict[str, Any] = dict(base or {})
        merged.update(
            {
                "gateway_response": charge.gateway_response,
                "paid_at": charge.paid_at,
                "customer_email": charge.customer_email,
                "recovered_by" if recovered else "verified_by": actor.label,
            }
        )
        return {key: value for key, value in merged.items() if value is not None}

    @staticmethod
    def _settled(
        payment: Payment, outcome: ReconcileOutcome, charge: Optional[GatewayTransaction] = None
    ) -> ReconcileResult:
        return ReconcileResult(
            status=payment.status,
            outcome=outcome,
            payment=payment,
            message="Payment verified successfully"
            if outcome is ReconcileOutcome.VERIFIED
            else "Payment already verified",
            gateway_status=charge.status if charge is not None else None,
        )

    @staticmethod
    def _observe(path: str, result: ReconcileResult, start_time: float) -> None:
        metrics.record_reconciliation(path, result.outcome.value, time.time() - start_time)

    async def _audit(
        self,
        institution_id: int,
        reference: str,
        action: str,
        actor: Actor,
        payment: Optional[Payment] = None,
        previous_status: Optional[str] = None,
        gateway_reference: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.audit.record(
            AuditRecord(
                institution_id=institution_id,
                reference=reference,
                action=action,
                actor=actor.label,
                payment_id=payment.id if payment is not None else None,
                previous_status=previous_status,
                new_status=payment.status if payment is not None else None,
                gateway_reference=gateway_reference
                or (payment.gateway_reference if payment is not None else None),
                details=details or {},
            )
        )
