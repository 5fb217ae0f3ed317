"""Database package for the payment ledger."""
from .connection import close_db, get_session_factory, init_db
from .models import (
    AcademicSession,
    Base,
    InstitutionPaymentConfig,
    Payment,
    PaymentAuditEntry,
    Student,
)

__all__ = [
    "Base",
    "Payment",
    "PaymentAuditEntry",
    "Student",
    "AcademicSession",
    "InstitutionPaymentConfig",
    "close_db",
    "get_session_factory",
    "init_db",
]
