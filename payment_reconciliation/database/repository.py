"""
Ledger repository.

Each operation is one short transaction. Writes that race with other
verification paths are expressed as a single conditional statement so the
database, not the caller, decides which writer wins:

- status changes use ``UPDATE ... WHERE status <> 'success'`` (or ``= 'pending'``)
  and report whether a row was affected
- inserts use ``INSERT ... ON CONFLICT DO NOTHING RETURNING id`` and report
  ``None`` when another writer got there first
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciliation.core.amounts import to_decimal
from payment_reconciliation.core.errors import ConflictError
from payment_reconciliation.database.models import Payment

logger = structlog.get_logger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class PaymentFilters:
    """Optional filters for listing payments."""

    session_id: Optional[int] = None
    student_id: Optional[int] = None
    status: Optional[str] = None
    payment_type: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = None


class PaymentRepository:
    """Atomic reads and guarded writes against the payments table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, institution_id: int, payment_id: uuid.UUID) -> Optional[Payment]:
        async with self._session_factory() as session:
            return await session.scalar(
                select(Payment).where(
                    Payment.id == payment_id, Payment.institution_id == institution_id
                )
            )

    async def find_by_reference(self, institution_id: int, reference: str) -> Optional[Payment]:
        """
        Find a payment by our reference or by the gateway's transaction id.

        An exact match on our own reference wins over a gateway id match.
        """
        stmt = (
            select(Payment)
            .where(
                Payment.institution_id == institution_id,
                or_(Payment.reference == reference, Payment.gateway_reference == reference),
            )
            .order_by(case((Payment.reference == reference, 0), else_=1))
            .limit(1)
        )
        async with self._session_factory() as session:
            return await session.scalar(stmt)

    async def find_full_success(
        self, institution_id: int, student_id: int, session_id: int
    ) -> Optional[Payment]:
        return await self._find_for_student(
            institution_id, student_id, session_id, status="success", payment_type="full"
        )

    async def find_pending(
        self, institution_id: int, student_id: int, session_id: int
    ) -> Optional[Payment]:
        return await self._find_for_student(
            institution_id, student_id, session_id, status="pending"
        )

    async def _find_for_student(
        self,
        institution_id: int,
        student_id: int,
        session_id: int,
        status: str,
        payment_type: Optional[str] = None,
    ) -> Optional[Payment]:
        stmt = select(Payment).where(
            Payment.institution_id == institution_id,
            Payment.student_id == student_id,
            Payment.session_id == session_id,
            Payment.status == status,
        )
        if payment_type is not None:
            stmt = stmt.where(Payment.payment_type == payment_type)
        stmt = stmt.order_by(Payment.created_at.desc()).limit(1)
        async with self._session_factory() as session:
            return await session.scalar(stmt)

    async def list_for_student(
        self, institution_id: int, student_id: int, session_id: int
    ) -> List[Payment]:
        stmt = (
            select(Payment)
            .where(
                Payment.institution_id == institution_id,
                Payment.student_id == student_id,
                Payment.session_id == session_id,
            )
            .order_by(Payment.created_at.desc())
        )
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def sum_successful(
        self, institution_id: int, student_id: int, session_id: int
    ) -> Decimal:
        stmt = select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.institution_id == institution_id,
            Payment.student_id == student_id,
            Payment.session_id == session_id,
            Payment.status == "success",
        )
        async with self._session_factory() as session:
            total = await session.scalar(stmt)
        return to_decimal(total or 0)

    async def mark_success(
        self,
        payment_id: uuid.UUID,
        *,
        gateway_reference: Optional[str],
        channel: Optional[str],
        authorization_code: Optional[str],
        authorization: Optional[Dict[str, Any]],
        metadata: Dict[str, Any],
        verified_by: str,
        verified_at: datetime,
    ) -> bool:
        """
        Promote a non-successful row to success.

        Returns:
            bool: True if this call performed the transition, False if the row
            was already successful (another path won)

        Raises:
            ConflictError: If the student already has a full successful payment
            for the session
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status != "success")
            .values(
                status="success",
                gateway_reference=gateway_reference,
                channel=channel,
                authorization_code=authorization_code,
                authorization=authorization,
                payment_metadata=metadata,
                verified_by=verified_by,
                verified_at=verified_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            try:
                result = await session.execute(stmt)
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                logger.warning(
                    "payment_success_conflict", payment_id=str(payment_id), error=str(e.orig)
                )
                raise ConflictError(
                    "Student already has a completed full payment for this session",
                    details={"payment_id": str(payment_id)},
                )
        return result.rowcount == 1

    async def mark_failed(self, payment_id: uuid.UUID, gateway_response: Optional[str]) -> bool:
        """Downgrade a pending row to failed. Never touches any other status."""
        return await self._transition_pending(
            payment_id, "failed", gateway_response=gateway_response
        )

    async def mark_cancelled(self, payment_id: uuid.UUID) -> bool:
        return await self._transition_pending(payment_id, "cancelled")

    async def _transition_pending(
        self, payment_id: uuid.UUID, new_status: str, gateway_response: Optional[str] = None
    ) -> bool:
        async with self._session_factory() as session:
            values: Dict[str, Any] = {"status": new_status}
            if gateway_response is not None:
                row = await session.get(Payment, payment_id)
                if row is not None:
                    values["payment_metadata"] = {
                        **(row.payment_metadata or {}),
                        "gateway_response": gateway_response,
                    }
            result = await session.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == "pending")
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def insert_pending(
        self,
        *,
        institution_id: int,
        student_id: int,
        session_id: int,
        amount: Decimal,
        currency: str,
        payment_type: str,
        reference: str,
        metadata: Dict[str, Any],
    ) -> Optional[Payment]:
        return await self._insert_ignoring_conflicts(
            institution_id=institution_id,
            student_id=student_id,
            session_id=session_id,
            amount=amount,
            currency=currency,
            payment_type=payment_type,
            reference=reference,
            status="pending",
            payment_metadata=metadata,
        )

    async def insert_recovered(
        self,
        *,
        institution_id: int,
        student_id: int,
        session_id: int,
        amount: Decimal,
        currency: str,
        payment_type: str,
        reference: str,
        gateway_reference: Optional[str],
        channel: Optional[str],
        authorization_code: Optional[str],
        authorization: Optional[Dict[str, Any]],
        metadata: Dict[str, Any],
        verified_by: str,
        verified_at: datetime,
    ) -> Optional[Payment]:
        """
        Insert a row directly as successful for a charge with no local record.

        Returns:
            Optional[Payment]: The new row, or None if the reference or the
            student's full-success slot was already taken
        """
        return await self._insert_ignoring_conflicts(
            institution_id=institution_id,
            student_id=student_id,
            session_id=session_id,
            amount=amount,
            currency=currency,
            payment_type=payment_type,
            reference=reference,
            status="success",
            gateway_reference=gateway_reference,
            channel=channel,
            authorization_code=authorization_code,
            authorization=authorization,
            payment_metadata=metadata,
            recovered=True,
            verified_by=verified_by,
            verified_at=verified_at,
        )

    async def _insert_ignoring_conflicts(self, **values: Any) -> Optional[Payment]:
        async with self._session_factory() as session:
            dialect = session.get_bind().dialect.name
            dialect_insert = _DIALECT_INSERTS.get(dialect)
            if dialect_insert is None:
                raise NotImplementedError(f"Conflict-ignoring insert not supported on {dialect}")

            row_values = dict(values)
            row_values["metadata"] = row_values.pop("payment_metadata")
            table = Payment.__table__
            stmt = (
                dialect_insert(table)
                .values(id=uuid.uuid4(), **row_values)
                .on_conflict_do_nothing()
                .returning(table.c.id)
            )
            payment_id = (await session.execute(stmt)).scalar_one_or_none()
            row = await session.get(Payment, payment_id) if payment_id is not None else None
            await session.commit()

        if row is None:
            logger.info("payment_insert_conflict", reference=values.get("reference"))
        return row

    async def list_payments(
        self,
        institution_id: int,
        filters: PaymentFilters,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Payment], int]:
        """
        List payments for an institution, newest first.

        Returns:
            Tuple[List[Payment], int]: One page of rows and the total match count
        """
        conditions = [Payment.institution_id == institution_id]
        if filters.session_id is not None:
            conditions.append(Payment.session_id == filters.session_id)
        if filters.student_id is not None:
            conditions.append(Payment.student_id == filters.student_id)
        if filters.status:
            conditions.append(Payment.status == filters.status)
        if filters.payment_type:
            conditions.append(Payment.payment_type == filters.payment_type)
        if filters.start_date is not None:
            conditions.append(Payment.created_at >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(Payment.created_at <= filters.end_date)
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(
                or_(Payment.reference.ilike(pattern), Payment.gateway_reference.ilike(pattern))
            )

        async with self._session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(Payment).where(*conditions)
            )
            rows = await session.scalars(
                select(Payment)
                .where(*conditions)
                .order_by(Payment.created_at.desc(), Payment.reference)
                .limit(limit)
                .offset(offset)
            )
            return list(rows.all()), int(total or 0)

    async def summarize(
        self, institution_id: int, session_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """Count and total payments per status, plus distinct students paid."""
        conditions = [Payment.institution_id == institution_id]
        if session_id is not None:
            conditions.append(Payment.session_id == session_id)

        async with self._session_factory() as session:
            grouped = await session.execute(
                select(
                    Payment.status,
                    func.count(Payment.id),
                    func.coalesce(func.sum(Payment.amount), 0),
                )
                .where(*conditions)
                .group_by(Payment.status)
            )
            students_paid = await session.scalar(
                select(func.count(func.distinct(Payment.student_id))).where(
                    *conditions, Payment.status == "success"
                )
            )

        by_status: Dict[str, Dict[str, Any]] = {
            status: {"count": 0, "amount": Decimal("0.00")}
            for status in ("pending", "success", "failed", "cancelled")
        }
        for status, count, amount in grouped.all():
            by_status[status] = {"count": int(count), "amount": to_decimal(amount)}

        return {
            "total_count": sum(item["count"] for item in by_status.values()),
            "by_status": by_status,
            "total_collected": by_status["success"]["amount"],
            "students_paid": int(students_paid or 0),
        }
