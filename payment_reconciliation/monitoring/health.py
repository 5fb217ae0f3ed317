"""
Liveness and readiness checks.

Readiness means the ledger database answers and the payments table exists.
Paystack is not probed: keys are per institution and a gateway outage only
degrades verification, which callers retry.
"""
import time
from typing import Any, Dict

import structlog
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciliation import __version__
from payment_reconciliation.database.models import Payment

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """A dependency check failed."""


class HealthCheck:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Round-trip a trivial query and confirm the ledger table is present.

        Raises:
            HealthCheckError: If either query fails
        """
        started = time.perf_counter()
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
                await session.execute(select(Payment.id).limit(1))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Ledger database unavailable: {e}") from e

        return {
            "status": "healthy",
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    async def check_all(self) -> Dict[str, Any]:
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            database = {"status": "unhealthy", "error": str(e)}

        return {
            "status": database["status"],
            "version": __version__,
            "checks": {"database": database},
        }

    async def liveness(self) -> Dict[str, Any]:
        """The process is up. No dependency is touched."""
        return {"status": "alive", "version": __version__}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
