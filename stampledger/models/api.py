"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class LedgerOperation(str, Enum):
    """Ledger entry operation enumeration."""

    ADD = "ADD"
    CONSUME = "CONSUME"
    REFUND = "REFUND"
    ADJUST = "ADJUST"
    EXPIRE = "EXPIRE"


class LedgerErrorKind(str, Enum):
    """Tag carried by a failed ledger result instead of an exception."""

    INSUFFICIENT_BALANCE = "insufficient_balance"


class RegistrationStatus(str, Enum):
    """Registration lifecycle states."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class AnchorMethod(str, Enum):
    """How a registration's hash was anchored."""

    EXTERNAL = "EXTERNAL"
    INTERNAL = "INTERNAL"


class VerificationStatus(str, Enum):
    """Public verification result."""

    VERIFIED = "VERIFIED"
    PROCESSING = "PROCESSING"
    NOT_FOUND = "NOT_FOUND"
    INVALID_FORMAT = "INVALID_FORMAT"


class PlanType(str, Enum):
    """Plans sold through the payment gateway."""

    BASIC = "BASIC"
    PROFESSIONAL = "PROFESSIONAL"
    MONTHLY = "MONTHLY"


class PaymentStatus(str, Enum):
    """Local mirror of a gateway payment's state."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class SubscriptionStatus(str, Enum):
    """Local mirror of a gateway subscription's state."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


class WebhookAction(str, Enum):
    """Audit label written to every webhook event row."""

    CREDITS_RELEASED = "CREDITS_RELEASED"
    SUBSCRIPTION_CREDITS_RELEASED = "SUBSCRIPTION_CREDITS_RELEASED"
    CREDITS_REVERSED = "CREDITS_REVERSED"
    REQUIRES_MANUAL_REVIEW = "REQUIRES_MANUAL_REVIEW"
    PAYMENT_FAILED_LOGGED = "PAYMENT_FAILED_LOGGED"
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    LOGGED = "LOGGED"
    SKIPPED_ALREADY_PROCESSED = "SKIPPED - Already processed"
    SKIPPED_PAYMENT_NOT_FOUND = "SKIPPED - Payment not found"
    SKIPPED_SUBSCRIPTION_NOT_FOUND = "SKIPPED - Subscription not found"
    SKIPPED_SUBSCRIPTION_EXISTS = "SKIPPED - Subscription already exists"
    SKIPPED_MISSING_REFERENCE = "SKIPPED - Missing reference"
    SKIPPED_NOT_CONFIRMED = "SKIPPED - Payment not confirmed"
    REJECTED_SIGNATURE = "REJECTED - Invalid signature"
    REJECTED_MALFORMED = "REJECTED - Malformed payload"
    REJECTED_METHOD = "REJECTED - Method not allowed"
    ERROR = "ERROR"


# ============================================================================
# Webhook Payload Models
# ============================================================================


class GatewayPayment(BaseModel):
    """`payment` object of a gateway event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1, max_length=255)
    customer: str | None = None
    value: Decimal = Decimal("0")
    status: str | None = None
    external_reference: str | None = Field(None, alias="externalReference")
    subscription: str | None = None


class GatewaySubscription(BaseModel):
    """`subscription` object of a gateway event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1, max_length=255)
    customer: str | None = None
    value: Decimal = Decimal("0")
    status: str | None = None
    external_reference: str | None = Field(None, alias="externalReference")


class WebhookPayload(BaseModel):
    """POST /v1/webhooks/payments request body."""

    model_config = ConfigDict(extra="ignore")

    event: str = Field(..., min_length=1, max_length=100)
    payment: GatewayPayment | None = None
    subscription: GatewaySubscription | None = None


class WebhookResponse(BaseModel):
    """POST /v1/webhooks/payments response."""

    success: bool = True
    action: str
    credits_released: int = 0
    idempotent: bool = False
    requires_review: bool = False


class PaymentSyncResponse(BaseModel):
    """POST /v1/payments/{payment_id}/sync response."""

    payment_id: str
    gateway_status: str
    action: str
    credits_released: int = 0
    idempotent: bool = False


# ============================================================================
# Ledger Models
# ============================================================================


class AddCreditsRequest(BaseModel):
    """POST /v1/ledger/credits request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    reference_type: str = Field(..., min_length=1, max_length=50)
    reference_id: str = Field(..., min_length=1, max_length=255)
    is_subscription: bool = False
    plan_type: PlanType | None = None


class AddCreditsResponse(BaseModel):
    """POST /v1/ledger/credits response."""

    success: bool
    amount_added: int
    new_balance: int
    was_reset: bool = False
    idempotent: bool = False


class ConsumeCreditRequest(BaseModel):
    """POST /v1/ledger/consume request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    registration_id: UUID
    reason: str = Field("Registration timestamp", min_length=1, max_length=500)


class ConsumeCreditResponse(BaseModel):
    """POST /v1/ledger/consume response."""

    success: bool
    remaining_balance: int
    idempotent: bool = False
    error: LedgerErrorKind | None = None


class RefundCreditRequest(BaseModel):
    """POST /v1/ledger/refunds request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    reference_id: str = Field(..., min_length=1, max_length=255)


class RefundCreditResponse(BaseModel):
    """POST /v1/ledger/refunds response."""

    success: bool
    amount_refunded: int
    new_balance: int
    idempotent: bool = False


class AdjustBalanceRequest(BaseModel):
    """POST /v1/ledger/adjustments request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    new_balance: int = Field(..., ge=0)
    reason: str = Field(..., min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """Administrative overrides must say why."""
        if not v.strip():
            raise ValueError("reason cannot be blank")
        return v


class AdjustBalanceResponse(BaseModel):
    """POST /v1/ledger/adjustments response."""

    success: bool = True
    previous_balance: int
    new_balance: int
    delta: int


class BalanceResponse(BaseModel):
    """GET /v1/ledger/{user_id}/balance response."""

    user_id: str
    available: int
    used: int
    total: int
    plan_type: str | None = None


class LedgerEntryItem(BaseModel):
    """Single ledger entry in history listings."""

    entry_id: UUID
    operation: LedgerOperation
    amount: int
    balance_after: int
    reason: str
    reference_type: str | None
    reference_id: str | None
    actor_id: str | None
    created_at: datetime


class LedgerEntryListResponse(BaseModel):
    """GET /v1/ledger/{user_id}/entries response."""

    user_id: str
    entries: list[LedgerEntryItem]
    limit: int
    offset: int


class ReconcileResponse(BaseModel):
    """POST /v1/ledger/{user_id}/reconcile response."""

    user_id: str
    ledger_available: int
    ledger_used: int
    cache_available: int | None
    cache_used: int | None
    was_consistent: bool
    corrected: bool


# ============================================================================
# Registration / Verification Models
# ============================================================================


class CreateRegistrationRequest(BaseModel):
    """POST /v1/registrations request body."""

    owner_id: str = Field(..., min_length=1, max_length=255)
    content_path: str = Field(..., min_length=1, max_length=1024)


class SubmitRegistrationRequest(BaseModel):
    """POST /v1/registrations/{registration_id}/submit request body."""

    owner_id: str = Field(..., min_length=1, max_length=255)


class AnchorInfo(BaseModel):
    """Anchor metadata exposed to collaborators."""

    method: AnchorMethod
    authority: str | None
    confirmed_at: datetime
    externally_verifiable: bool
    note: str | None = None


class RegistrationResponse(BaseModel):
    """Registration state as seen by collaborators."""

    registration_id: UUID
    owner_id: str
    status: RegistrationStatus
    content_hash: str | None
    attempt_count: int
    error_reason: str | None
    anchor: AnchorInfo | None = None


class RetryPendingResponse(BaseModel):
    """POST /v1/registrations/retry response."""

    submitted: int
    registrations: list[RegistrationResponse]


class VerificationResponse(BaseModel):
    """GET /v1/verify and POST /v1/verify/proof response."""

    status: VerificationStatus
    hash: str | None
    found: bool
    verified: bool
    registration_id: UUID | None = None
    anchor: AnchorInfo | None = None
    message: str


class ProofVerificationRequest(BaseModel):
    """POST /v1/verify/proof request body."""

    hash: str = Field(..., min_length=1, max_length=128)
    proof_base64: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    version: str
