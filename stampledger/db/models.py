"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
Column types are portable between PostgreSQL and SQLite.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from stampledger.models.api import (
    AnchorMethod,
    LedgerOperation,
    PaymentStatus,
    RegistrationStatus,
    SubscriptionStatus,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_column(enum_cls: Any, name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Append-only record of every balance movement. The sum of `amount` per user
    is the user's available balance.
    """

    __tablename__ = "ledger_entries"

    # Primary Key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    operation: Mapped[LedgerOperation] = mapped_column(
        _enum_column(LedgerOperation, "ledger_operation"), nullable=False
    )

    # Signed delta and the balance right after it was applied
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    reason: Mapped[str] = mapped_column(String(500), nullable=False)

    # Idempotency reference (payment id, registration id, ...)
    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Who performed an administrative write
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        UniqueConstraint(
            "operation", "reference_type", "reference_id", name="uq_ledger_operation_reference"
        ),
        Index("idx_ledger_entries_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, user_id={self.user_id}, "
            f"operation={self.operation}, amount={self.amount})>"
        )


class BalanceCache(Base):
    """
    ORM model for balance_cache table.

    Denormalized balance per user. Rebuilt from the ledger on every write and
    by the reconciler; never authoritative. The row doubles as the per-user lock.
    """

    __tablename__ = "balance_cache"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    available: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    plan_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_balance_available_non_negative"),
        CheckConstraint("available = total - used", name="ck_balance_consistency"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<BalanceCache(user_id={self.user_id}, available={self.available})>"


class UserRole(Base):
    """
    ORM model for user_roles table.

    Roles are granted by the external identity system; this service only reads them.
    """

    __tablename__ = "user_roles"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)


class Registration(Base):
    """
    ORM model for registrations table.

    One uploaded file on its way to being anchored.
    """

    __tablename__ = "registrations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    # Location of the uploaded content, relative to the content root
    content_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    status: Mapped[RegistrationStatus] = mapped_column(
        _enum_column(RegistrationStatus, "registration_status"),
        nullable=False,
        default=RegistrationStatus.PENDING,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("attempt_count >= 0", name="ck_registration_attempts_non_negative"),
        Index("idx_registrations_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Registration(id={self.id}, status={self.status}, attempts={self.attempt_count})>"


class Anchor(Base):
    """
    ORM model for anchors table.

    The proof that a registration's hash existed at a point in time.
    """

    __tablename__ = "anchors"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    registration_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("registrations.id"), nullable=False
    )

    method: Mapped[AnchorMethod] = mapped_column(
        _enum_column(AnchorMethod, "anchor_method"), nullable=False
    )
    authority: Mapped[str | None] = mapped_column(String(255), nullable=True)
    proof: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    confirmed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (UniqueConstraint("registration_id", name="uq_anchor_registration"),)


class SubmissionAttempt(Base):
    """
    ORM model for submission_attempts table.

    One row per authority contacted during a submission attempt.
    """

    __tablename__ = "submission_attempts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    registration_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("registrations.id"), nullable=False, index=True
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    authority: Mapped[str] = mapped_column(String(255), nullable=False)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )


class WebhookEvent(Base):
    """
    ORM model for webhook_events table.

    Audit trail of every inbound gateway event (and every polling sync), processed or not.
    """

    __tablename__ = "webhook_events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    external_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # webhook or poll
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="webhook")

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    action_taken: Mapped[str] = mapped_column(String(100), nullable=False)
    credits_released: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    raw_payload: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_webhook_events_idempotency", "idempotency_key", "processed"),
        Index("idx_webhook_events_payment", "external_payment_id"),
    )


class Payment(Base):
    """
    ORM model for payments table.

    Local mirror of a one-off gateway charge.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    external_payment_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_type: Mapped[str] = mapped_column(String(50), nullable=False)
    credits_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_amount >= 0", name="ck_payment_credits_non_negative"),
    )


class Subscription(Base):
    """
    ORM model for subscriptions table.

    Local mirror of a recurring gateway plan.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    external_subscription_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_type: Mapped[str] = mapped_column(String(50), nullable=False)
    credits_per_cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    current_cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.PENDING,
    )
    last_credit_reset_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )


class ManualReview(Base):
    """
    ORM model for manual_reviews table.

    Records an operator must look at, e.g. a chargeback whose credits were already spent.
    """

    __tablename__ = "manual_reviews"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_manual_reviews_unresolved", "resolved"),)
