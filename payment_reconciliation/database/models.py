"""SQLAlchemy database models for the payment ledger and its read views."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements a column declared exactly INTEGER PRIMARY KEY
BigIntId = BigInteger().with_variant(Integer(), "sqlite")

FULL_SUCCESS_PREDICATE = "status = 'success' AND payment_type = 'full'"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Payment(Base):
    """
    Payment ledger table.

    One row per attempted charge. The reference is the idempotency key shared
    by the client, webhook and admin verification paths; a successful row is
    terminal and is never rewritten.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    institution_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    session_id: Mapped[int] = mapped_column(Integer, nullable=False)
    student_id: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    payment_type: Mapped[str] = mapped_column(String(20), nullable=False, default="full")
    reference: Mapped[str] = mapped_column(String(100), nullable=False)
    gateway_reference: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    channel: Mapped[str | None] = mapped_column(String(50), nullable=True)
    authorization_code: Mapped[str | None] = mapped_column(String(255), nullable=True)
    authorization: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # "metadata" is reserved on declarative classes
    payment_metadata: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JsonType, nullable=True
    )
    recovered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("institution_id", "reference", name="uq_payments_institution_reference"),
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'success', 'failed', 'cancelled')",
            name="valid_status",
        ),
        CheckConstraint("payment_type IN ('full', 'partial')", name="valid_payment_type"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index(
            "uq_payments_full_success",
            "institution_id",
            "student_id",
            "session_id",
            unique=True,
            postgresql_where=text(FULL_SUCCESS_PREDICATE),
            sqlite_where=text(FULL_SUCCESS_PREDICATE),
        ),
        Index("idx_payments_student_session", "institution_id", "student_id", "session_id"),
        Index("idx_payments_status", "institution_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, reference={self.reference}, "
            f"amount={self.amount}, status={self.status})>"
        )


class PaymentAuditEntry(Base):
    """
    Append-only audit trail of reconciliation decisions.

    Immutable once written.
    """

    __tablename__ = "payment_audit_log"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    institution_id: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    reference: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    gateway_reference: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        Index("idx_payment_audit_institution_created", "institution_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentAuditEntry."""
        return (
            f"<PaymentAuditEntry(id={self.id}, reference={self.reference}, "
            f"action={self.action})>"
        )


class Student(Base):
    """Read view of students owned by the institution management service."""

    __tablename__ = "students"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    institution_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    registration_number: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    program_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")


class AcademicSession(Base):
    """Read view of academic sessions."""

    __tablename__ = "academic_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    institution_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class InstitutionPaymentConfig(Base):
    """Per-institution payment and gateway settings."""

    __tablename__ = "institution_payment_settings"

    institution_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payment_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="per_student")
    base_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    program_pricing: Mapped[Dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    paystack_public_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paystack_secret_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paystack_split_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "payment_mode IN ('per_student', 'per_session')", name="valid_payment_mode"
        ),
    )
