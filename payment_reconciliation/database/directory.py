"""SQL implementation of the directory read views."""
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciliation.core.amounts import to_decimal
from payment_reconciliation.core.ports import (
    InstitutionPaymentSettings,
    SessionRecord,
    StudentRecord,
)
from payment_reconciliation.database.models import (
    AcademicSession,
    InstitutionPaymentConfig,
    Student,
)


class SqlDirectory:
    """Reads students, sessions and payment settings from the shared database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_student(self, institution_id: int, student_id: int) -> Optional[StudentRecord]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(Student).where(
                    Student.id == student_id, Student.institution_id == institution_id
                )
            )
        if row is None:
            return None
        return StudentRecord(
            id=row.id,
            institution_id=row.institution_id,
            full_name=row.full_name,
            registration_number=row.registration_number,
            email=row.email,
            program_id=row.program_id,
        )

    async def get_session(self, institution_id: int, session_id: int) -> Optional[SessionRecord]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(AcademicSession).where(
                    AcademicSession.id == session_id,
                    AcademicSession.institution_id == institution_id,
                )
            )
        return _session_record(row)

    async def get_current_session(self, institution_id: int) -> Optional[SessionRecord]:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(AcademicSession)
                .where(
                    AcademicSession.institution_id == institution_id,
                    AcademicSession.is_current.is_(True),
                )
                .order_by(AcademicSession.id.desc())
                .limit(1)
            )
        return _session_record(row)

    async def get_payment_settings(
        self, institution_id: int
    ) -> Optional[InstitutionPaymentSettings]:
        async with self._session_factory() as session:
            row = await session.get(InstitutionPaymentConfig, institution_id)
        if row is None:
            return None

        pricing: dict[str, Decimal] = {}
        for program_id, price in (row.program_pricing or {}).items():
            pricing[str(program_id)] = to_decimal(price)

        return InstitutionPaymentSettings(
            institution_id=row.institution_id,
            name=row.name,
            code=row.code,
            payment_enabled=row.payment_enabled,
            payment_mode=row.payment_mode,
            base_amount=to_decimal(row.base_amount or 0),
            currency=row.currency,
            program_pricing=pricing,
            public_key=row.paystack_public_key,
            secret_key=(row.paystack_secret_key or "").strip() or None,
            split_code=(row.paystack_split_code or "").strip() or None,
        )


def _session_record(row: Optional[AcademicSession]) -> Optional[SessionRecord]:
    if row is None:
        return None
    return SessionRecord(
        id=row.id, institution_id=row.institution_id, name=row.name, is_current=row.is_current
    )
