"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Every ledger operation returns its own tagged result type.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from uuid import UUID

from stampledger.models.api import (
    AnchorMethod,
    LedgerErrorKind,
    LedgerOperation,
    RegistrationStatus,
    VerificationStatus,
)


@dataclass(frozen=True)
class BalanceData:
    """Balance as folded from the ledger."""

    user_id: str
    available: int
    used: int
    total: int
    plan_type: str | None = None

    def __post_init__(self) -> None:
        """Validate balance invariants."""
        if self.available < 0:
            raise ValueError(f"Balance cannot be negative: {self.available}")
        if self.available != self.total - self.used:
            raise ValueError(
                f"Inconsistent balance: available={self.available}, "
                f"total={self.total}, used={self.used}"
            )


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry after persistence."""

    entry_id: UUID
    user_id: str
    operation: LedgerOperation
    amount: int
    balance_after: int
    reason: str
    reference_type: str | None
    reference_id: str | None
    actor_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class AddCreditsResult:
    """Outcome of AddCredits."""

    success: bool
    amount_added: int
    new_balance: int
    was_reset: bool = False
    idempotent: bool = False


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of ConsumeCredit - `error` tags a refused consumption."""

    success: bool
    remaining_balance: int
    idempotent: bool = False
    error: LedgerErrorKind | None = None


@dataclass(frozen=True)
class RefundResult:
    """Outcome of RefundCredit."""

    success: bool
    amount_refunded: int
    new_balance: int
    idempotent: bool = False


@dataclass(frozen=True)
class AdjustResult:
    """Outcome of AdjustBalance."""

    previous_balance: int
    new_balance: int
    delta: int


@dataclass(frozen=True)
class ReversalResult:
    """Outcome of reversing the credits granted by a refunded payment."""

    amount_reversed: int
    unrefundable: int
    new_balance: int
    requires_review: bool = False
    idempotent: bool = False


@dataclass(frozen=True)
class ReconcileResult:
    """Ledger fold vs cached balance for one user."""

    user_id: str
    ledger_available: int
    ledger_used: int
    cache_available: int | None
    cache_used: int | None
    was_consistent: bool
    corrected: bool


# ============================================================================
# Timestamp Submission
# ============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry behaviour for timestamp submission, as data.

    `authorities` are tried in order once per attempt; `max_attempts` caps the
    persisted, cumulative attempt counter of a registration. A registration
    left PROCESSING for longer than `stale_after` is considered abandoned.
    """

    authorities: tuple[str, ...]
    timeout_seconds: float = 10.0
    max_attempts: int = 3
    stale_after: timedelta = timedelta(minutes=15)

    def __post_init__(self) -> None:
        """Validate policy values."""
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be positive: {self.timeout_seconds}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1: {self.max_attempts}")
        if self.stale_after <= timedelta(0):
            raise ValueError(f"stale_after must be positive: {self.stale_after}")

    def attempts_exhausted(self, attempt_count: int) -> bool:
        """True when no further attempt may start."""
        return attempt_count >= self.max_attempts


@dataclass(frozen=True)
class AuthorityAttempt:
    """One call to one timestamping authority."""

    authority: str
    succeeded: bool
    duration_ms: int
    error: str | None = None


@dataclass(frozen=True)
class StampResult:
    """Proof obtained for a hash, external or internal."""

    method: AnchorMethod
    authority: str | None
    proof: bytes
    attempts: tuple[AuthorityAttempt, ...] = ()
    note: str | None = None


@dataclass(frozen=True)
class AnchorData:
    """Immutable anchor snapshot."""

    anchor_id: UUID
    registration_id: UUID
    method: AnchorMethod
    authority: str | None
    proof: bytes
    note: str | None
    confirmed_at: datetime

    @property
    def externally_verifiable(self) -> bool:
        """Internal anchors cannot be checked against a third party."""
        return self.method == AnchorMethod.EXTERNAL


@dataclass(frozen=True)
class RegistrationData:
    """Immutable registration snapshot."""

    registration_id: UUID
    owner_id: str
    content_hash: str | None
    status: RegistrationStatus
    attempt_count: int
    error_reason: str | None
    anchor: AnchorData | None = None


@dataclass(frozen=True)
class SubmissionOutcome:
    """Result of one pass through the submission pipeline."""

    registration_id: UUID
    owner_id: str
    status: RegistrationStatus
    attempt_count: int
    content_hash: str | None = None
    anchor: AnchorData | None = None
    error_reason: str | None = None
    attempts: tuple[AuthorityAttempt, ...] = field(default_factory=tuple)


# ============================================================================
# Webhooks / Verification
# ============================================================================


@dataclass(frozen=True)
class WebhookOutcome:
    """What a webhook delivery did."""

    event_type: str
    action: str
    credits_released: int = 0
    idempotent: bool = False
    requires_review: bool = False
    processed: bool = True


@dataclass(frozen=True)
class PaymentSyncOutcome:
    """What a polling reconciliation of one payment did."""

    payment_id: str
    gateway_status: str
    action: str
    credits_released: int = 0
    idempotent: bool = False


@dataclass(frozen=True)
class VerificationResult:
    """Verification answer for a hash or a proof+hash pair."""

    status: VerificationStatus
    hash: str | None
    message: str
    registration_id: UUID | None = None
    anchor: AnchorData | None = None

    @property
    def found(self) -> bool:
        return self.status in (VerificationStatus.VERIFIED, VerificationStatus.PROCESSING)

    @property
    def verified(self) -> bool:
        return self.status == VerificationStatus.VERIFIED
