"""
Audit trail for reconciliation decisions.

Audit writes never decide the outcome of a payment: the ledger write has
already committed by the time an entry is recorded, so a failing sink is
logged and counted and the caller carries on.
"""
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciliation.core.ports import AuditRecord, AuditSink
from payment_reconciliation.database.models import PaymentAuditEntry
from payment_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class DatabaseAuditSink:
    """Appends audit records to the payment_audit_log table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(self, entry: AuditRecord) -> None:
        async with self._session_factory() as session:
            session.add(
                PaymentAuditEntry(
                    institution_id=entry.institution_id,
                    payment_id=entry.payment_id,
                    reference=entry.reference,
                    action=entry.action,
                    previous_status=entry.previous_status,
                    new_status=entry.new_status,
                    actor=entry.actor,
                    gateway_reference=entry.gateway_reference,
                    details=entry.details or None,
                )
            )
            await session.commit()


class AuditTrail:
    """Best-effort front for an audit sink."""

    def __init__(self, sink: AuditSink):
        self.sink = sink

    async def record(self, entry: AuditRecord) -> None:
        try:
            await self.sink.record(entry)
        except Exception:
            logger.exception(
                "audit_write_failed",
                action=entry.action,
                reference=entry.reference,
                institution_id=entry.institution_id,
            )
            metrics.record_audit_failure(entry.action)
