"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import hmac
from collections.abc import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from stampledger.config import get_settings, settings
from stampledger.db.session import get_read_db, get_write_db
from stampledger.services.content import ContentSource, FilesystemContentSource
from stampledger.services.ledger import LedgerService
from stampledger.services.payment_gateway import GatewayClient, PaymentGateway
from stampledger.services.pipeline import RegistrationPipeline
from stampledger.services.reconciler import BalanceReconciler
from stampledger.services.timestamping import TimestampClient, retry_policy_from_settings
from stampledger.services.verification import VerificationService
from stampledger.services.webhook import PaymentSyncService, WebhookService

logger = get_logger(__name__)

# ============================================================================
# API Key Authentication (for the trusted gateway in front of this service)
# ============================================================================


async def require_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    An unconfigured key rejects every request.

    Raises:
        HTTPException 401 if missing or invalid
    """
    api_key = get_settings().api_key
    if not api_key:
        logger.error("api_key_not_configured")
    if (
        not api_key
        or not x_api_key
        or not hmac.compare_digest(x_api_key.encode("utf-8"), api_key.encode("utf-8"))
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


async def get_actor_id(
    x_actor_id: str | None = Header(None, description="Authenticated user performing the call"),
) -> str:
    """
    Actor identity forwarded by the gateway for administrative writes.

    Missing actors come through as empty; the ledger rejects them as unauthenticated.
    """
    return (x_actor_id or "").strip()


def get_client_ip(request: Request) -> str | None:
    """Caller IP, preferring the proxy's X-Forwarded-For."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# ============================================================================
# Services
# ============================================================================


async def get_ledger_service(db: AsyncSession = Depends(get_write_db)) -> LedgerService:
    return LedgerService(db)


async def get_reconciler(db: AsyncSession = Depends(get_write_db)) -> BalanceReconciler:
    return BalanceReconciler(db)


async def get_webhook_service(db: AsyncSession = Depends(get_write_db)) -> WebhookService:
    return WebhookService(db, settings.webhook_secret)


async def get_payment_gateway() -> AsyncIterator[PaymentGateway]:
    """Gateway client for one request; its HTTP client is closed afterwards."""
    client = GatewayClient(
        base_url=settings.gateway_base_url,
        api_key=settings.gateway_api_key,
        timeout_seconds=settings.gateway_timeout_seconds,
    )
    try:
        yield client
    finally:
        await client.close()


async def get_payment_sync_service(
    db: AsyncSession = Depends(get_write_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentSyncService:
    return PaymentSyncService(db, gateway)


async def get_timestamp_client() -> AsyncIterator[TimestampClient]:
    """Authority client for one request; its HTTP client is closed afterwards."""
    client = TimestampClient(retry_policy_from_settings())
    try:
        yield client
    finally:
        await client.close()


def get_content_source() -> ContentSource:
    return FilesystemContentSource(settings.content_root)


async def get_registration_pipeline(
    db: AsyncSession = Depends(get_write_db),
    timestamp_client: TimestampClient = Depends(get_timestamp_client),
    content_source: ContentSource = Depends(get_content_source),
) -> RegistrationPipeline:
    return RegistrationPipeline(
        session=db,
        ledger=LedgerService(db),
        timestamp_client=timestamp_client,
        content_source=content_source,
        policy=timestamp_client.policy,
    )


async def get_verification_service(
    db: AsyncSession = Depends(get_read_db),
) -> VerificationService:
    return VerificationService(db)
