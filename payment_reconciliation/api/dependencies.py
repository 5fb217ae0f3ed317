"""Service wiring shared by the application factory and the routes."""
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciliation.config import Settings
from payment_reconciliation.core.audit import AuditTrail, DatabaseAuditSink
from payment_reconciliation.core.credentials import GatewayCredentialCache
from payment_reconciliation.core.initializer import TransactionInitializer
from payment_reconciliation.core.ledger_service import LedgerService
from payment_reconciliation.core.reconciler import Reconciler
from payment_reconciliation.core.webhook_ingest import WebhookIngest
from payment_reconciliation.database.directory import SqlDirectory
from payment_reconciliation.database.repository import PaymentRepository
from payment_reconciliation.integrations.paystack_client import PaystackClient
from payment_reconciliation.monitoring.health import HealthCheck


@dataclass
class ServiceContainer:
    """Per-process service graph. Nothing in here is a module global."""

    gateway: PaystackClient
    credentials: GatewayCredentialCache
    repository: PaymentRepository
    reconciler: Reconciler
    webhooks: WebhookIngest
    initializer: TransactionInitializer
    ledger: LedgerService
    health: HealthCheck

    async def close(self) -> None:
        await self.gateway.close()


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: Optional[httpx.AsyncClient] = None,
) -> ServiceContainer:
    """
    Wire the service graph around one session factory.

    Args:
        settings: Application settings
        session_factory: Ledger database session factory
        http_client: Optional HTTP client for Paystack (tests inject a mock transport)

    Returns:
        ServiceContainer: Ready to serve requests
    """
    directory = SqlDirectory(session_factory)
    repository = PaymentRepository(session_factory)
    audit = AuditTrail(DatabaseAuditSink(session_factory))
    gateway = PaystackClient(
        http_client=http_client,
        base_url=settings.paystack_base_url,
        timeout=settings.paystack_timeout_seconds,
    )
    credentials = GatewayCredentialCache(
        directory,
        ttl_seconds=settings.credential_cache_ttl_seconds,
        fallback_secret_key=settings.paystack_secret_key,
    )
    reconciler = Reconciler(
        repository,
        gateway,
        credentials,
        directory,
        audit,
        default_currency=settings.default_currency,
    )
    return ServiceContainer(
        gateway=gateway,
        credentials=credentials,
        repository=repository,
        reconciler=reconciler,
        webhooks=WebhookIngest(reconciler, credentials),
        initializer=TransactionInitializer(
            gateway, credentials, directory, repository, settings=settings
        ),
        ledger=LedgerService(repository, directory, credentials, audit),
        health=HealthCheck(session_factory),
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the application's service container."""
    return request.app.state.container
