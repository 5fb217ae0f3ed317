"""
Collaborator contracts consumed by the reconciliation core.

Institutions, sessions and students are owned by another service; the core
only needs read access to them and a write-only audit sink. Records crossing
these seams are frozen so cached copies can be shared between requests.
"""
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol


@dataclass(frozen=True)
class StudentRecord:
    id: int
    institution_id: int
    full_name: str
    registration_number: str
    email: Optional[str] = None
    program_id: Optional[int] = None


@dataclass(frozen=True)
class SessionRecord:
    id: int
    institution_id: int
    name: str
    is_current: bool = False


@dataclass(frozen=True)
class InstitutionPaymentSettings:
    """Gateway credentials and pricing for one institution."""

    institution_id: int
    name: str
    code: Optional[str]
    payment_enabled: bool
    payment_mode: str
    base_amount: Decimal
    currency: str
    program_pricing: Mapping[str, Decimal] = field(default_factory=dict)
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    split_code: Optional[str] = None

    def amount_for_program(self, program_id: Optional[int]) -> Decimal:
        """Program specific price when one is configured, otherwise the base amount."""
        if program_id is not None:
            price = self.program_pricing.get(str(program_id))
            if price is not None and price > 0:
                return price
        return self.base_amount


class ActorKind(str, Enum):
    STUDENT = "student"
    WEBHOOK = "webhook"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """Who triggered a ledger decision."""

    kind: ActorKind
    user_id: Optional[int] = None
    email: Optional[str] = None

    @classmethod
    def student(cls, student_id: int) -> "Actor":
        return cls(kind=ActorKind.STUDENT, user_id=student_id)

    @classmethod
    def admin(cls, user_id: Optional[int] = None, email: Optional[str] = None) -> "Actor":
        return cls(kind=ActorKind.ADMIN, user_id=user_id, email=email)

    @classmethod
    def webhook(cls) -> "Actor":
        return cls(kind=ActorKind.WEBHOOK)

    @property
    def is_student(self) -> bool:
        return self.kind is ActorKind.STUDENT

    @property
    def label(self) -> str:
        identity = self.email or self.user_id
        if identity is None:
            return self.kind.value
        return f"{self.kind.value}:{identity}"


@dataclass(frozen=True)
class AuditRecord:
    institution_id: int
    reference: str
    action: str
    actor: str
    payment_id: Optional[uuid.UUID] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    gateway_reference: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class Directory(Protocol):
    """Read-only view of institution, session and student data."""

    async def get_student(self, institution_id: int, student_id: int) -> Optional[StudentRecord]:
        ...

    async def get_session(self, institution_id: int, session_id: int) -> Optional[SessionRecord]:
        ...

    async def get_current_session(self, institution_id: int) -> Optional[SessionRecord]:
        ...

    async def get_payment_settings(
        self, institution_id: int
    ) -> Optional[InstitutionPaymentSettings]:
        ...


class AuditSink(Protocol):
    """Write-only destination for audit records."""

    async def record(self, entry: AuditRecord) -> None:
        ...
