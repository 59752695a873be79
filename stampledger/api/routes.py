"""
API Routes - FastAPI endpoints for ledger, webhook, registration and verification.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

import base64
import binascii
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from stampledger import __version__
from stampledger.api.dependencies import (
    get_actor_id,
    get_client_ip,
    get_ledger_service,
    get_payment_sync_service,
    get_reconciler,
    get_registration_pipeline,
    get_verification_service,
    get_webhook_service,
    require_api_key,
)
from stampledger.config import settings
from stampledger.db.session import get_read_db
from stampledger.exceptions import (
    AuthenticationError,
    AuthorizationError,
    InsufficientBalanceError,
    NotFoundError,
    PaymentGatewayError,
    PersistenceError,
    RegistrationStateError,
    ValidationError,
    WebhookVerificationError,
)
from stampledger.models.api import (
    AddCreditsRequest,
    AddCreditsResponse,
    AdjustBalanceRequest,
    AdjustBalanceResponse,
    AnchorInfo,
    BalanceResponse,
    ConsumeCreditRequest,
    ConsumeCreditResponse,
    CreateRegistrationRequest,
    HealthResponse,
    LedgerEntryItem,
    LedgerEntryListResponse,
    PaymentSyncResponse,
    ProofVerificationRequest,
    ReconcileResponse,
    RefundCreditRequest,
    RefundCreditResponse,
    RegistrationResponse,
    RetryPendingResponse,
    SubmitRegistrationRequest,
    VerificationResponse,
    VerificationStatus,
    WebhookResponse,
)
from stampledger.models.domain import (
    AnchorData,
    RegistrationData,
    SubmissionOutcome,
    VerificationResult,
)
from stampledger.services.ledger import MAX_PAGE_SIZE, LedgerService
from stampledger.services.pipeline import RegistrationPipeline
from stampledger.services.reconciler import BalanceReconciler
from stampledger.services.verification import VerificationService
from stampledger.services.webhook import PaymentSyncService, WebhookService

logger = get_logger(__name__)

router = APIRouter()

# ============================================================================
# Webhooks / Payment Sync
# ============================================================================


@router.post("/v1/webhooks/payments", response_model=WebhookResponse)
async def payment_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
) -> WebhookResponse:
    """
    Handle payment gateway events.

    Auth: shared token in the configured webhook header.
    Every delivery is audited, including rejected ones.
    """
    raw_body = await request.body()
    token = request.headers.get(settings.webhook_token_header)

    try:
        outcome = await service.handle(raw_body, token, get_client_ip(request))

    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook token",
        ) from exc

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except Exception as exc:
        logger.error("payment_webhook_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookResponse(
        success=outcome.processed or outcome.idempotent,
        action=outcome.action,
        credits_released=outcome.credits_released,
        idempotent=outcome.idempotent,
        requires_review=outcome.requires_review,
    )


@router.api_route(
    "/v1/webhooks/payments",
    methods=["GET", "HEAD", "PUT", "PATCH", "DELETE", "OPTIONS"],
    include_in_schema=False,
)
async def payment_webhook_wrong_method(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
) -> JSONResponse:
    """Deliveries are POST only; other methods get 405 and an audit row."""
    await service.reject_method(request.method, get_client_ip(request))
    return JSONResponse(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        content={"detail": "Method Not Allowed"},
        headers={"Allow": "POST"},
    )


@router.post(
    "/v1/payments/{payment_id}/sync",
    response_model=PaymentSyncResponse,
    dependencies=[Depends(require_api_key)],
)
async def sync_payment(
    payment_id: str,
    service: PaymentSyncService = Depends(get_payment_sync_service),
) -> PaymentSyncResponse:
    """
    Ask the gateway for a payment's status and release credits if it is confirmed.

    Safe to call repeatedly and alongside the webhook: credits are granted once.
    """
    try:
        outcome = await service.sync_payment(payment_id)

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except PaymentGatewayError as exc:
        logger.warning("payment_sync_gateway_error", payment_id=payment_id, error=str(exc))
        if exc.status_code == 404:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Payment not found",
            ) from exc
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Payment gateway unavailable",
        ) from exc

    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return PaymentSyncResponse(
        payment_id=outcome.payment_id,
        gateway_status=outcome.gateway_status,
        action=outcome.action,
        credits_released=outcome.credits_released,
        idempotent=outcome.idempotent,
    )


# ============================================================================
# Ledger
# ============================================================================


@router.get(
    "/v1/ledger/{user_id}/balance",
    response_model=BalanceResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_balance(
    user_id: str,
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    """Balance folded from the user's ledger."""
    try:
        balance = await ledger.get_balance(user_id)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    return BalanceResponse(
        user_id=balance.user_id,
        available=balance.available,
        used=balance.used,
        total=balance.total,
        plan_type=balance.plan_type,
    )


@router.get(
    "/v1/ledger/{user_id}/entries",
    response_model=LedgerEntryListResponse,
    dependencies=[Depends(require_api_key)],
)
async def list_entries(
    user_id: str,
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntryListResponse:
    """Newest-first credit history."""
    try:
        entries = await ledger.list_entries(user_id, limit=limit, offset=offset)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    return LedgerEntryListResponse(
        user_id=user_id,
        entries=[
            LedgerEntryItem(
                entry_id=entry.entry_id,
                operation=entry.operation,
                amount=entry.amount,
                balance_after=entry.balance_after,
                reason=entry.reason,
                reference_type=entry.reference_type,
                reference_id=entry.reference_id,
                actor_id=entry.actor_id,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
        limit=limit,
        offset=offset,
    )


@router.post(
    "/v1/ledger/credits",
    response_model=AddCreditsResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def add_credits(
    request: AddCreditsRequest,
    ledger: LedgerService = Depends(get_ledger_service),
) -> AddCreditsResponse:
    """
    Grant credits for a reference.

    Repeating a (reference_type, reference_id) pair grants nothing and
    reports idempotent=True.
    """
    try:
        result = await ledger.add_credits(
            user_id=request.user_id,
            amount=request.amount,
            reason=request.reason,
            reference_type=request.reference_type,
            reference_id=request.reference_id,
            is_subscription=request.is_subscription,
            plan_type=request.plan_type.value if request.plan_type else None,
        )

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return AddCreditsResponse(
        success=result.success,
        amount_added=result.amount_added,
        new_balance=result.new_balance,
        was_reset=result.was_reset,
        idempotent=result.idempotent,
    )


@router.post(
    "/v1/ledger/consume",
    response_model=ConsumeCreditResponse,
    dependencies=[Depends(require_api_key)],
)
async def consume_credit(
    request: ConsumeCreditRequest,
    ledger: LedgerService = Depends(get_ledger_service),
) -> ConsumeCreditResponse:
    """Spend one credit for a registration. 402 when the balance is empty."""
    try:
        result = await ledger.consume_credit(
            user_id=request.user_id,
            registration_id=request.registration_id,
            reason=request.reason,
        )

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient credits. Balance: {result.remaining_balance}, Required: 1",
        )

    return ConsumeCreditResponse(
        success=result.success,
        remaining_balance=result.remaining_balance,
        idempotent=result.idempotent,
        error=result.error,
    )


@router.post(
    "/v1/ledger/refunds",
    response_model=RefundCreditResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def refund_credit(
    request: RefundCreditRequest,
    actor_id: str = Depends(get_actor_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> RefundCreditResponse:
    """
    Return credits to a user.

    Auth: API key plus an actor holding a refund role.
    """
    try:
        result = await ledger.refund_credit(
            user_id=request.user_id,
            amount=request.amount,
            reason=request.reason,
            reference_id=request.reference_id,
            actor_id=actor_id,
        )

    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
        ) from exc

    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing required permission: {exc.required_permission}",
        ) from exc

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return RefundCreditResponse(
        success=result.success,
        amount_refunded=result.amount_refunded,
        new_balance=result.new_balance,
        idempotent=result.idempotent,
    )


@router.post(
    "/v1/ledger/adjustments",
    response_model=AdjustBalanceResponse,
    dependencies=[Depends(require_api_key)],
)
async def adjust_balance(
    request: AdjustBalanceRequest,
    actor_id: str = Depends(get_actor_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> AdjustBalanceResponse:
    """
    Set a user's balance to an exact value.

    Auth: API key plus an actor holding an admin role.
    """
    try:
        result = await ledger.adjust_balance(
            user_id=request.user_id,
            new_balance=request.new_balance,
            reason=request.reason,
            actor_id=actor_id,
        )

    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
        ) from exc

    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing required permission: {exc.required_permission}",
        ) from exc

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return AdjustBalanceResponse(
        previous_balance=result.previous_balance,
        new_balance=result.new_balance,
        delta=result.delta,
    )


@router.post(
    "/v1/ledger/{user_id}/reconcile",
    response_model=ReconcileResponse,
    dependencies=[Depends(require_api_key)],
)
async def reconcile_balance(
    user_id: str,
    reconciler: BalanceReconciler = Depends(get_reconciler),
) -> ReconcileResponse:
    """Rebuild the cached balance from the ledger if it drifted."""
    try:
        result = await reconciler.reconcile(user_id)

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return ReconcileResponse(
        user_id=result.user_id,
        ledger_available=result.ledger_available,
        ledger_used=result.ledger_used,
        cache_available=result.cache_available,
        cache_used=result.cache_used,
        was_consistent=result.was_consistent,
        corrected=result.corrected,
    )


# ============================================================================
# Registrations
# ============================================================================


@router.post(
    "/v1/registrations",
    response_model=RegistrationResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def create_registration(
    request: CreateRegistrationRequest,
    pipeline: RegistrationPipeline = Depends(get_registration_pipeline),
) -> RegistrationResponse:
    """Record uploaded content as a PENDING registration."""
    try:
        registration = await pipeline.register(request.owner_id, request.content_path)

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return _registration_response(registration)


@router.post(
    "/v1/registrations/retry",
    response_model=RetryPendingResponse,
    dependencies=[Depends(require_api_key)],
)
async def retry_registrations(
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    pipeline: RegistrationPipeline = Depends(get_registration_pipeline),
) -> RetryPendingResponse:
    """Resubmit pending and failed registrations that have attempts left."""
    try:
        outcomes = await pipeline.retry_pending(limit)

    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return RetryPendingResponse(
        submitted=len(outcomes),
        registrations=[_outcome_response(outcome) for outcome in outcomes],
    )


@router.post(
    "/v1/registrations/{registration_id}/submit",
    response_model=RegistrationResponse,
    dependencies=[Depends(require_api_key)],
)
async def submit_registration(
    registration_id: UUID,
    request: SubmitRegistrationRequest,
    pipeline: RegistrationPipeline = Depends(get_registration_pipeline),
) -> RegistrationResponse:
    """
    Hash, anchor and charge one registration.

    A registration that fails is returned with status FAILED and a reason;
    only an empty balance (402) stops it before any work starts.
    """
    try:
        outcome = await pipeline.submit(registration_id, request.owner_id)

    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Registration not found",
        ) from exc

    except RegistrationStateError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Registration is {exc.status}",
        ) from exc

    except InsufficientBalanceError as exc:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Insufficient credits. Balance: {exc.balance}, Required: {exc.required}",
        ) from exc

    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    except PersistenceError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return _outcome_response(outcome)


@router.get(
    "/v1/registrations/{registration_id}",
    response_model=RegistrationResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_registration(
    registration_id: UUID,
    owner_id: str = Query(..., min_length=1),
    pipeline: RegistrationPipeline = Depends(get_registration_pipeline),
) -> RegistrationResponse:
    """Registration status for its owner."""
    try:
        registration = await pipeline.get_status(registration_id, owner_id)
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Registration not found",
        ) from exc

    return _registration_response(registration)


# ============================================================================
# Public Verification
# ============================================================================


@router.get("/v1/verify", response_model=VerificationResponse)
async def verify_hash(
    content_hash: str | None = Query(None, alias="hash", max_length=128),
    service: VerificationService = Depends(get_verification_service),
) -> JSONResponse:
    """
    Verify a content hash. No authentication.

    INVALID_FORMAT answers 400; every other status answers 200.
    """
    result = await service.verify_hash(content_hash)
    return _verification_json(result)


@router.post("/v1/verify/proof", response_model=VerificationResponse)
async def verify_proof(
    request: ProofVerificationRequest,
    service: VerificationService = Depends(get_verification_service),
) -> JSONResponse:
    """Check that an OpenTimestamps proof commits to a hash. No authentication."""
    try:
        proof = base64.b64decode(request.proof_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="proof_base64 is not valid base64",
        ) from exc

    result = await service.verify_proof(proof, request.hash)
    return _verification_json(result)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(status="healthy", database="connected", version=__version__)

    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc


# ============================================================================
# Response helpers
# ============================================================================


def _anchor_info(anchor: AnchorData | None) -> AnchorInfo | None:
    if anchor is None:
        return None
    return AnchorInfo(
        method=anchor.method,
        authority=anchor.authority,
        confirmed_at=anchor.confirmed_at,
        externally_verifiable=anchor.externally_verifiable,
        note=anchor.note,
    )


def _registration_response(registration: RegistrationData) -> RegistrationResponse:
    return RegistrationResponse(
        registration_id=registration.registration_id,
        owner_id=registration.owner_id,
        status=registration.status,
        content_hash=registration.content_hash,
        attempt_count=registration.attempt_count,
        error_reason=registration.error_reason,
        anchor=_anchor_info(registration.anchor),
    )


def _outcome_response(outcome: SubmissionOutcome) -> RegistrationResponse:
    return RegistrationResponse(
        registration_id=outcome.registration_id,
        owner_id=outcome.owner_id,
        status=outcome.status,
        content_hash=outcome.content_hash,
        attempt_count=outcome.attempt_count,
        error_reason=outcome.error_reason,
        anchor=_anchor_info(outcome.anchor),
    )


def _verification_json(result: VerificationResult) -> JSONResponse:
    body = VerificationResponse(
        status=result.status,
        hash=result.hash,
        found=result.found,
        verified=result.verified,
        registration_id=result.registration_id,
        anchor=_anchor_info(result.anchor),
        message=result.message,
    )
    status_code = (
        status.HTTP_400_BAD_REQUEST
        if result.status == VerificationStatus.INVALID_FORMAT
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
