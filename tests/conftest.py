"""
Pytest configuration and fixtures.

Every test gets its own file-backed SQLite ledger so concurrent sessions in
race tests see each other's commits.
"""
import json
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional
from unittest.mock import AsyncMock
from urllib.parse import unquote

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_reconciliation.config import Settings
from payment_reconciliation.core.audit import AuditTrail, DatabaseAuditSink
from payment_reconciliation.core.credentials import GatewayCredentialCache
from payment_reconciliation.core.reconciler import Reconciler
from payment_reconciliation.database.connection import (
    build_session_factory,
    create_engine_for_url,
    init_db,
)
from payment_reconciliation.database.directory import SqlDirectory
from payment_reconciliation.database.models import (
    AcademicSession,
    InstitutionPaymentConfig,
    Payment,
    PaymentAuditEntry,
    Student,
)
from payment_reconciliation.database.repository import PaymentRepository
from payment_reconciliation.integrations.paystack_client import (
    GatewayTransaction,
    PaystackClient,
)

INSTITUTION_ID = 1
OTHER_INSTITUTION_ID = 2
STUDENT_ID = 42
PROGRAM_STUDENT_ID = 43
CURRENT_SESSION_ID = 3
PAST_SESSION_ID = 2
INSTITUTION_SECRET = "sk_test_institution"


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        paystack_secret_key="",
        app_name="payment-reconciliation-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh ledger database."""
    engine = create_engine_for_url(test_settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory seeded with one institution, two students and two sessions."""
    factory = build_session_factory(engine)
    async with factory() as session:
        session.add_all(
            [
                InstitutionPaymentConfig(
                    institution_id=INSTITUTION_ID,
                    name="Federal University of Testing",
                    code="FUT",
                    payment_enabled=True,
                    payment_mode="per_student",
                    base_amount=Decimal("5000.00"),
                    currency="NGN",
                    program_pricing={"7": "7500.00"},
                    paystack_public_key="pk_test_public",
                    paystack_secret_key=INSTITUTION_SECRET,
                    paystack_split_code=" SPL_abc123 ",
                ),
                Student(
                    id=STUDENT_ID,
                    institution_id=INSTITUTION_ID,
                    full_name="Ada Obi",
                    registration_number="FUT-2024-001",
                    email=None,
                    program_id=None,
                ),
                Student(
                    id=PROGRAM_STUDENT_ID,
                    institution_id=INSTITUTION_ID,
                    full_name="Ngozi Eze",
                    registration_number="FUT-2024-002",
                    email="ngozi@example.com",
                    program_id=7,
                ),
                AcademicSession(
                    id=PAST_SESSION_ID,
                    institution_id=INSTITUTION_ID,
                    name="2023/2024",
                    is_current=False,
                ),
                AcademicSession(
                    id=CURRENT_SESSION_ID,
                    institution_id=INSTITUTION_ID,
                    name="2024/2025",
                    is_current=True,
                ),
            ]
        )
        await session.commit()
    return factory


@pytest.fixture
def repository(session_factory: async_sessionmaker[AsyncSession]) -> PaymentRepository:
    return PaymentRepository(session_factory)


@pytest.fixture
def directory(session_factory: async_sessionmaker[AsyncSession]) -> SqlDirectory:
    return SqlDirectory(session_factory)


@pytest.fixture
def credentials(directory: SqlDirectory) -> GatewayCredentialCache:
    return GatewayCredentialCache(directory, ttl_seconds=300)


@pytest.fixture
def audit(session_factory: async_sessionmaker[AsyncSession]) -> AuditTrail:
    return AuditTrail(DatabaseAuditSink(session_factory))


@pytest.fixture
def mock_gateway() -> AsyncMock:
    """Paystack client double; tests set verify/initialize return values."""
    return AsyncMock(spec=PaystackClient)


@pytest.fixture
def reconciler(
    repository: PaymentRepository,
    mock_gateway: AsyncMock,
    credentials: GatewayCredentialCache,
    directory: SqlDirectory,
    audit: AuditTrail,
) -> Reconciler:
    return Reconciler(repository, mock_gateway, credentials, directory, audit)


@pytest.fixture
def make_charge() -> Callable[..., GatewayTransaction]:
    """Factory for gateway-confirmed transactions."""

    def _make(
        reference: str,
        amount_minor: int = 500000,
        status: str = "success",
        metadata: Optional[Dict[str, Any]] = None,
        gateway_reference: str = "3900001",
    ) -> GatewayTransaction:
        return GatewayTransaction(
            status=status,
            reference=reference,
            amount_minor=amount_minor,
            currency="NGN",
            gateway_reference=gateway_reference,
            channel="card",
            authorization_code="AUTH_test123",
            authorization={"card_type": "visa", "last4": "4081", "bank": "TEST BANK"},
            metadata=metadata or {},
            gateway_response="Approved" if status == "success" else "Declined",
            paid_at="2024-10-01T10:00:00.000Z" if status == "success" else None,
            customer_email="FUT-2024-001@student.digitaltp.ng",
        )

    return _make


@pytest.fixture
def recovery_metadata() -> Dict[str, Any]:
    """Metadata as sent by the initializer for the default student."""
    return {
        "student_id": STUDENT_ID,
        "session_id": CURRENT_SESSION_ID,
        "institution_id": INSTITUTION_ID,
        "payment_type": "full",
        "expected_amount": "5000.00",
    }


@pytest.fixture
def insert_payment(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Insert a ledger row directly, bypassing the services."""

    async def _insert(
        reference: str,
        status: str = "pending",
        amount: str = "5000.00",
        payment_type: str = "full",
        student_id: int = STUDENT_ID,
        session_id: int = CURRENT_SESSION_ID,
        institution_id: int = INSTITUTION_ID,
    ) -> Payment:
        payment = Payment(
            institution_id=institution_id,
            student_id=student_id,
            session_id=session_id,
            amount=Decimal(amount),
            currency="NGN",
            payment_type=payment_type,
            reference=reference,
            status=status,
            payment_metadata={"source": "test"},
        )
        async with session_factory() as session:
            session.add(payment)
            await session.commit()
        return payment

    return _insert


@pytest.fixture
def fetch_payments(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    async def _fetch() -> List[Payment]:
        async with session_factory() as session:
            return list((await session.scalars(select(Payment))).all())

    return _fetch


@pytest.fixture
def fetch_audit(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    async def _fetch() -> List[PaymentAuditEntry]:
        async with session_factory() as session:
            rows = await session.scalars(select(PaymentAuditEntry).order_by(PaymentAuditEntry.id))
            return list(rows.all())

    return _fetch


class FakePaystack:
    """In-memory Paystack API served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.initialized: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.fail_with: Optional[int] = None
        self._next_id = 4100000

    def settle(
        self,
        reference: str,
        amount_minor: int,
        status: str = "success",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        self._next_id += 1
        self.transactions[reference] = {
            "id": self._next_id,
            "status": status,
            "reference": reference,
            "amount": amount_minor,
            "currency": "NGN",
            "channel": "card",
            "gateway_response": "Successful" if status == "success" else "Declined",
            "paid_at": "2024-10-01T10:00:00.000Z",
            "metadata": json.dumps(metadata or {}),
            "customer": {"email": "FUT-2024-001@student.digitaltp.ng"},
            "authorization": {
                "authorization_code": "AUTH_fake",
                "card_type": "visa",
                "last4": "4081",
                "exp_month": "12",
                "exp_year": "2030",
                "bank": "TEST BANK",
                "reusable": True,
            },
        }
        return self.transactions[reference]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(
                self.fail_with, json={"status": False, "message": "Service unavailable"}
            )

        path = request.url.path
        if request.method == "POST" and path == "/transaction/initialize":
            body = json.loads(request.content)
            self.initialized.append(body)
            return httpx.Response(
                200,
                json={
                    "status": True,
                    "message": "Authorization URL created",
                    "data": {
                        "authorization_url": f"https://checkout.paystack.com/{body['reference']}",
                        "access_code": f"ac_{len(self.initialized)}",
                        "reference": body["reference"],
                    },
                },
            )

        if request.method == "GET" and path.startswith("/transaction/verify/"):
            reference = unquote(path.rsplit("/", 1)[1])
            transaction = self.transactions.get(reference)
            if transaction is None:
                return httpx.Response(
                    400, json={"status": False, "message": "Transaction reference not found"}
                )
            return httpx.Response(
                200,
                json={"status": True, "message": "Verification successful", "data": transaction},
            )

        return httpx.Response(404, json={"status": False, "message": "Not found"})


@pytest.fixture
def fake_paystack() -> FakePaystack:
    return FakePaystack()


@pytest_asyncio.fixture
async def client(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fake_paystack: FakePaystack,
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client for the application wired to the test ledger and fake Paystack."""
    from payment_reconciliation.api.dependencies import build_container
    from payment_reconciliation.api.main import create_app

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_paystack.handler))
    container = build_container(test_settings, session_factory, http_client=http_client)
    app = create_app(container=container)

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    await http_client.aclose()
