"""
Webhook Ingestion - Exactly-once processing of payment gateway events.

NO DICTIONARIES - Events are parsed into pydantic models, outcomes are dataclasses.

Both delivery paths share one processor:
- WebhookService: gateway pushes an event (token-verified)
- PaymentSyncService: we poll the gateway for a payment's status

so a payment confirmation releases credits at most once whichever path sees it first.
Every inbound event produces exactly one webhook_events audit row.
"""

import hmac
import json
from dataclasses import dataclass
from typing import Any

import pydantic
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stampledger.db.models import (
    LedgerEntry,
    ManualReview,
    Payment,
    Subscription,
    WebhookEvent,
    utc_now,
)
from stampledger.exceptions import ValidationError, WebhookVerificationError
from stampledger.models.api import (
    GatewayPayment,
    LedgerOperation,
    PaymentStatus,
    SubscriptionStatus,
    WebhookAction,
    WebhookPayload,
)
from stampledger.models.domain import PaymentSyncOutcome, WebhookOutcome
from stampledger.observability import get_logger, metrics
from stampledger.services.ledger import REFERENCE_PAYMENT, LedgerService
from stampledger.services.payment_gateway import PaymentGateway
from stampledger.services.plans import MONTHLY, get_plan, plan_for_value

logger = get_logger(__name__)

# Gateway event categories
CREDIT_RELEASE_EVENTS = frozenset(
    {"PAYMENT_CONFIRMED", "PAYMENT_RECEIVED", "PAYMENT_RECEIVED_IN_CASH"}
)
SUBSCRIPTION_PAYMENT_EVENTS = frozenset({"SUBSCRIPTION_PAYMENT_CONFIRMED"})
REFUND_EVENTS = frozenset({"PAYMENT_REFUNDED", "PAYMENT_CHARGEBACK_REQUESTED"})
FAILURE_EVENTS = frozenset({"PAYMENT_FAILED", "PAYMENT_REFUSED", "PAYMENT_OVERDUE"})
SUBSCRIPTION_CREATED_EVENTS = frozenset({"SUBSCRIPTION_CREATED"})
SUBSCRIPTION_CANCELED_EVENTS = frozenset({"SUBSCRIPTION_CANCELED"})

SOURCE_WEBHOOK = "webhook"
SOURCE_POLL = "poll"

# Event type recorded when the polling path sees a confirmed payment
POLL_CONFIRMED_EVENT = "PAYMENT_CONFIRMED"
POLL_STATUS_EVENT = "PAYMENT_STATUS_POLLED"

REVIEW_CHARGEBACK_CONSUMED = "chargeback_credits_consumed"
REVIEW_CHARGEBACK_PARTIAL = "chargeback_partially_consumed"


@dataclass(frozen=True)
class HandlerResult:
    """What one event handler did. `error` set means the event may be retried."""

    action: WebhookAction
    credits: int = 0
    error: str | None = None
    requires_review: bool = False


def idempotency_key(payload: WebhookPayload) -> str | None:
    """`{event_type}:{payment_id or subscription_id}`, None when neither is present."""
    reference = None
    if payload.payment is not None:
        reference = payload.payment.id
    elif payload.subscription is not None:
        reference = payload.subscription.id
    if reference is None:
        return None
    return f"{payload.event}:{reference}"


def _decode_raw(raw_body: bytes) -> Any:
    """Best-effort JSON decode for the audit row."""
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        return {"unparseable_body": raw_body[:2048].decode("utf-8", errors="replace")}


def _event_name(raw_payload: Any) -> str:
    if isinstance(raw_payload, dict) and isinstance(raw_payload.get("event"), str):
        return raw_payload["event"][:100] or "UNKNOWN"
    return "UNKNOWN"


class PaymentEventProcessor:
    """
    Deduplicates, dispatches and audits one gateway event.

    Shared by the webhook and polling paths.
    """

    def __init__(self, session: AsyncSession, ledger: LedgerService | None = None) -> None:
        self.session = session
        self.ledger = ledger or LedgerService(session)

    async def process(
        self,
        payload: WebhookPayload,
        source: str = SOURCE_WEBHOOK,
        raw_payload: Any = None,
        ip_address: str | None = None,
    ) -> WebhookOutcome:
        """
        Process one verified, parsed event.

        Unexpected failures roll back, write a best-effort ERROR row and re-raise.
        """
        key = idempotency_key(payload)
        payment_id = payload.payment.id if payload.payment else None
        subscription_id = (
            payload.payment.subscription
            if payload.payment and payload.payment.subscription
            else (payload.subscription.id if payload.subscription else None)
        )
        if raw_payload is None:
            raw_payload = payload.model_dump(mode="json", by_alias=True)

        try:
            if key is not None and await self._already_processed(key):
                await self.record_event(
                    event_type=payload.event,
                    payment_id=payment_id,
                    subscription_id=subscription_id,
                    key=key,
                    source=source,
                    processed=False,
                    action=WebhookAction.SKIPPED_ALREADY_PROCESSED,
                    raw_payload=raw_payload,
                    ip_address=ip_address,
                )
                await self.session.commit()
                metrics.record_webhook_event(
                    payload.event, WebhookAction.SKIPPED_ALREADY_PROCESSED.value
                )
                logger.info("webhook_event_duplicate", event_type=payload.event, key=key)
                return WebhookOutcome(
                    event_type=payload.event,
                    action=WebhookAction.SKIPPED_ALREADY_PROCESSED.value,
                    idempotent=True,
                    processed=False,
                )

            result = await self._dispatch(payload)

            await self.record_event(
                event_type=payload.event,
                payment_id=payment_id,
                subscription_id=subscription_id,
                key=key,
                source=source,
                processed=result.error is None,
                action=result.action,
                credits=result.credits,
                error=result.error,
                raw_payload=raw_payload,
                ip_address=ip_address,
            )
            await self.session.commit()
        except Exception as e:
            logger.error(
                "webhook_processing_failed",
                event_type=payload.event,
                payment_id=payment_id,
                error=str(e),
                exc_info=True,
            )
            metrics.record_error(type(e).__name__, "webhook")
            await self.session.rollback()
            await self._record_error(str(e), raw_payload, ip_address, source)
            raise

        metrics.record_webhook_event(payload.event, result.action.value)
        logger.info(
            "webhook_event_processed",
            event_type=payload.event,
            source=source,
            action=result.action.value,
            credits_released=result.credits,
            error=result.error,
        )

        return WebhookOutcome(
            event_type=payload.event,
            action=result.action.value,
            credits_released=result.credits,
            idempotent=result.action == WebhookAction.SKIPPED_ALREADY_PROCESSED,
            requires_review=result.requires_review,
            processed=result.error is None,
        )

    async def record_rejection(
        self,
        action: WebhookAction,
        error: str,
        raw_payload: Any,
        ip_address: str | None,
    ) -> None:
        """Audit an event that never got past verification or parsing."""
        await self.record_event(
            event_type=_event_name(raw_payload),
            payment_id=None,
            subscription_id=None,
            key=None,
            source=SOURCE_WEBHOOK,
            processed=False,
            action=action,
            error=error,
            raw_payload=raw_payload,
            ip_address=ip_address,
        )
        await self.session.commit()
        metrics.record_webhook_event(_event_name(raw_payload), action.value)

    # ========================================================================
    # Dispatch
    # ========================================================================

    async def _dispatch(self, payload: WebhookPayload) -> HandlerResult:
        event = payload.event
        if event in CREDIT_RELEASE_EVENTS:
            return await self._handle_payment_confirmed(payload)
        if event in SUBSCRIPTION_PAYMENT_EVENTS:
            return await self._handle_subscription_payment(payload)
        if event in REFUND_EVENTS:
            return await self._handle_refund(payload)
        if event in FAILURE_EVENTS:
            return await self._handle_payment_failed(payload)
        if event in SUBSCRIPTION_CREATED_EVENTS:
            return await self._handle_subscription_created(payload)
        if event in SUBSCRIPTION_CANCELED_EVENTS:
            return await self._handle_subscription_canceled(payload)
        return HandlerResult(action=WebhookAction.LOGGED)

    async def _handle_payment_confirmed(self, payload: WebhookPayload) -> HandlerResult:
        """Release the plan's credits for a confirmed one-off payment."""
        payment = payload.payment
        if payment is None:
            return HandlerResult(
                action=WebhookAction.SKIPPED_MISSING_REFERENCE, error="Payment id missing"
            )

        local = await self._find_payment(payment.id)
        if local is None:
            if payment.subscription and await self._find_subscription(payment.subscription):
                return await self._handle_subscription_payment(payload)
            if not payment.external_reference:
                return HandlerResult(
                    action=WebhookAction.SKIPPED_PAYMENT_NOT_FOUND,
                    error=f"Payment {payment.id} not found and no user reference",
                )
            plan = plan_for_value(payment.value)
            user_id = payment.external_reference
            credits = plan.credits
        else:
            plan = get_plan(local.plan_type)
            user_id = local.user_id
            credits = local.credits_amount or plan.credits

        result = await self.ledger.add_credits(
            user_id=user_id,
            amount=credits,
            reason=f"Payment {payment.id} confirmed ({plan.plan_type.value})",
            reference_type=REFERENCE_PAYMENT,
            reference_id=payment.id,
            plan_type=plan.plan_type.value,
        )

        await self._mark_payment(
            payment, user_id, plan.plan_type.value, credits, PaymentStatus.CONFIRMED
        )

        if result.idempotent:
            return HandlerResult(action=WebhookAction.SKIPPED_ALREADY_PROCESSED)
        return HandlerResult(action=WebhookAction.CREDITS_RELEASED, credits=credits)

    async def _handle_subscription_payment(self, payload: WebhookPayload) -> HandlerResult:
        """Reset the subscriber's balance to the cycle amount."""
        payment = payload.payment
        if payment is None or not payment.subscription:
            return HandlerResult(
                action=WebhookAction.SKIPPED_MISSING_REFERENCE,
                error="Subscription payment without payment or subscription id",
            )

        subscription = await self._find_subscription(payment.subscription)
        if subscription is None:
            # May arrive before SUBSCRIPTION_CREATED; left unprocessed so a retry can succeed
            return HandlerResult(
                action=WebhookAction.SKIPPED_SUBSCRIPTION_NOT_FOUND,
                error=f"Subscription {payment.subscription} not found",
            )

        credits = subscription.credits_per_cycle or MONTHLY.credits
        result = await self.ledger.add_credits(
            user_id=subscription.user_id,
            amount=credits,
            reason=(
                f"Subscription {subscription.external_subscription_id} "
                f"cycle paid by {payment.id}"
            ),
            reference_type=REFERENCE_PAYMENT,
            reference_id=payment.id,
            is_subscription=True,
            plan_type=subscription.plan_type,
        )
        if result.idempotent:
            return HandlerResult(action=WebhookAction.SKIPPED_ALREADY_PROCESSED)

        subscription.current_cycle = subscription.current_cycle + 1
        subscription.last_credit_reset_at = utc_now()
        subscription.status = SubscriptionStatus.ACTIVE
        await self.session.flush()

        return HandlerResult(action=WebhookAction.SUBSCRIPTION_CREDITS_RELEASED, credits=credits)

    async def _handle_refund(self, payload: WebhookPayload) -> HandlerResult:
        """
        Reverse what a refunded or charged-back payment granted.

        Credits already spent cannot be taken back; that case is flagged for
        manual review instead of failing silently or going negative.
        """
        payment = payload.payment
        if payment is None:
            return HandlerResult(
                action=WebhookAction.SKIPPED_MISSING_REFERENCE, error="Payment id missing"
            )

        local = await self._find_payment(payment.id)
        if local is not None:
            user_id, original_credits = local.user_id, local.credits_amount
        else:
            grant = await self._find_grant(payment.id)
            if grant is None:
                return HandlerResult(
                    action=WebhookAction.SKIPPED_PAYMENT_NOT_FOUND,
                    error=f"No credits were granted for payment {payment.id}",
                )
            user_id, original_credits = grant.user_id, grant.amount

        reversal = await self.ledger.reverse_payment_credits(
            user_id=user_id, payment_id=payment.id, original_credits=original_credits
        )

        if local is not None:
            local.status = PaymentStatus.REFUNDED

        if reversal.idempotent:
            await self.session.flush()
            return HandlerResult(action=WebhookAction.SKIPPED_ALREADY_PROCESSED)

        if reversal.requires_review:
            reason = (
                REVIEW_CHARGEBACK_CONSUMED
                if reversal.amount_reversed == 0
                else REVIEW_CHARGEBACK_PARTIAL
            )
            await self._flag_for_review(
                user_id=user_id,
                reason=reason,
                payment_id=payment.id,
                details=(
                    f"{payload.event}: granted {original_credits}, "
                    f"reversed {reversal.amount_reversed}, "
                    f"already spent {reversal.unrefundable}"
                ),
            )
        await self.session.flush()

        if reversal.amount_reversed == 0:
            return HandlerResult(
                action=WebhookAction.REQUIRES_MANUAL_REVIEW, requires_review=True
            )
        return HandlerResult(
            action=WebhookAction.CREDITS_REVERSED,
            credits=-reversal.amount_reversed,
            requires_review=reversal.requires_review,
        )

    async def _handle_payment_failed(self, payload: WebhookPayload) -> HandlerResult:
        """Record the failure; the ledger is never touched."""
        if payload.payment is not None:
            local = await self._find_payment(payload.payment.id)
            if local is not None and local.status != PaymentStatus.CONFIRMED:
                local.status = PaymentStatus.FAILED
                await self.session.flush()
        return HandlerResult(action=WebhookAction.PAYMENT_FAILED_LOGGED)

    async def _handle_subscription_created(self, payload: WebhookPayload) -> HandlerResult:
        subscription = payload.subscription
        if subscription is None:
            return HandlerResult(
                action=WebhookAction.SKIPPED_MISSING_REFERENCE, error="Subscription id missing"
            )

        if await self._find_subscription(subscription.id) is not None:
            return HandlerResult(action=WebhookAction.SKIPPED_SUBSCRIPTION_EXISTS)

        if not subscription.external_reference:
            return HandlerResult(
                action=WebhookAction.SKIPPED_MISSING_REFERENCE,
                error=f"Subscription {subscription.id} has no user reference",
            )

        self.session.add(
            Subscription(
                external_subscription_id=subscription.id,
                user_id=subscription.external_reference,
                plan_type=MONTHLY.plan_type.value,
                credits_per_cycle=MONTHLY.credits,
                current_cycle=0,
                status=SubscriptionStatus.PENDING,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            return HandlerResult(action=WebhookAction.SKIPPED_SUBSCRIPTION_EXISTS)

        return HandlerResult(action=WebhookAction.SUBSCRIPTION_CREATED)

    async def _handle_subscription_canceled(self, payload: WebhookPayload) -> HandlerResult:
        """Mark the subscription canceled. Credits already granted stay."""
        subscription_id = (
            payload.subscription.id
            if payload.subscription
            else (payload.payment.subscription if payload.payment else None)
        )
        if not subscription_id:
            return HandlerResult(
                action=WebhookAction.SKIPPED_MISSING_REFERENCE, error="Subscription id missing"
            )

        subscription = await self._find_subscription(subscription_id)
        if subscription is None:
            return HandlerResult(
                action=WebhookAction.SKIPPED_SUBSCRIPTION_NOT_FOUND,
                error=f"Subscription {subscription_id} not found",
            )

        subscription.status = SubscriptionStatus.CANCELED
        await self.session.flush()
        return HandlerResult(action=WebhookAction.SUBSCRIPTION_CANCELED)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _already_processed(self, key: str) -> bool:
        stmt = (
            select(WebhookEvent.id)
            .where(WebhookEvent.idempotency_key == key, WebhookEvent.processed.is_(True))
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() is not None

    async def _find_payment(self, external_payment_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.external_payment_id == external_payment_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _find_subscription(self, external_subscription_id: str) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.external_subscription_id == external_subscription_id
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _find_grant(self, payment_id: str) -> LedgerEntry | None:
        """The ADD entry a payment produced, if any."""
        stmt = select(LedgerEntry).where(
            LedgerEntry.operation == LedgerOperation.ADD,
            LedgerEntry.reference_type == REFERENCE_PAYMENT,
            LedgerEntry.reference_id == payment_id,
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _mark_payment(
        self,
        payment: GatewayPayment,
        user_id: str,
        plan_type: str,
        credits: int,
        status: PaymentStatus,
    ) -> None:
        """Create or update the local payment mirror."""
        local = await self._find_payment(payment.id)
        if local is None:
            local = Payment(
                external_payment_id=payment.id,
                user_id=user_id,
                plan_type=plan_type,
                credits_amount=credits,
                value=payment.value,
                status=status,
            )
            self.session.add(local)
            try:
                await self.session.flush()
                return
            except IntegrityError:
                await self.session.rollback()
                local = await self._find_payment(payment.id)
                if local is None:
                    raise
        local.status = status
        await self.session.flush()

    async def _flag_for_review(
        self, user_id: str, reason: str, payment_id: str, details: str
    ) -> None:
        stmt = select(ManualReview.id).where(
            ManualReview.reference_type == REFERENCE_PAYMENT,
            ManualReview.reference_id == payment_id,
            ManualReview.resolved.is_(False),
        )
        if (await self.session.execute(stmt)).first() is not None:
            return

        self.session.add(
            ManualReview(
                user_id=user_id,
                reason=reason,
                reference_type=REFERENCE_PAYMENT,
                reference_id=payment_id,
                details=details,
            )
        )
        metrics.record_manual_review(reason)
        logger.warning(
            "manual_review_required", user_id=user_id, payment_id=payment_id, reason=reason
        )

    async def record_event(
        self,
        event_type: str,
        payment_id: str | None,
        subscription_id: str | None,
        key: str | None,
        source: str,
        processed: bool,
        action: WebhookAction,
        raw_payload: Any,
        ip_address: str | None,
        credits: int = 0,
        error: str | None = None,
    ) -> None:
        self.session.add(
            WebhookEvent(
                event_type=event_type,
                external_payment_id=payment_id,
                subscription_id=subscription_id,
                idempotency_key=key,
                source=source,
                processed=processed,
                action_taken=action.value,
                credits_released=credits,
                error_message=error,
                raw_payload=raw_payload,
                ip_address=ip_address,
            )
        )
        await self.session.flush()

    async def _record_error(
        self, error: str, raw_payload: Any, ip_address: str | None, source: str
    ) -> None:
        """Best-effort ERROR audit row after a failed event."""
        try:
            await self.record_event(
                event_type="ERROR",
                payment_id=None,
                subscription_id=None,
                key=None,
                source=source,
                processed=False,
                action=WebhookAction.ERROR,
                error=error,
                raw_payload=raw_payload,
                ip_address=ip_address,
            )
            await self.session.commit()
        except Exception as log_error:
            logger.error("webhook_error_log_failed", error=str(log_error))
            await self.session.rollback()


class WebhookService:
    """Verifies and parses inbound gateway webhooks, then hands them to the processor."""

    def __init__(self, session: AsyncSession, secret: str) -> None:
        self.session = session
        self.secret = secret
        self.processor = PaymentEventProcessor(session)

    def verify_token(self, token: str | None) -> bool:
        """Constant-time token check. An unconfigured secret accepts nothing."""
        if not self.secret or not token:
            return False
        return hmac.compare_digest(token.encode("utf-8"), self.secret.encode("utf-8"))

    async def reject_method(self, method: str, ip_address: str | None = None) -> None:
        """Audit a delivery made with anything but POST. Nothing is parsed or processed."""
        logger.warning("webhook_method_rejected", method=method, ip_address=ip_address)
        await self.processor.record_rejection(
            WebhookAction.REJECTED_METHOD,
            f"Method {method} not allowed",
            {"method": method},
            ip_address,
        )

    async def handle(
        self, raw_body: bytes, token: str | None, ip_address: str | None = None
    ) -> WebhookOutcome:
        """
        Verify, parse and process one delivery.

        Raises:
            WebhookVerificationError: Missing or wrong token (audited, ledger untouched)
            ValidationError: Body is not a valid event (audited)
        """
        raw_payload = _decode_raw(raw_body)

        if not self.verify_token(token):
            if not self.secret:
                logger.error("webhook_secret_not_configured")
            logger.warning(
                "webhook_signature_rejected",
                event_type=_event_name(raw_payload),
                ip_address=ip_address,
            )
            await self.processor.record_rejection(
                WebhookAction.REJECTED_SIGNATURE,
                "Invalid webhook token",
                raw_payload,
                ip_address,
            )
            raise WebhookVerificationError("Invalid webhook token")

        try:
            payload = WebhookPayload.model_validate_json(raw_body)
        except pydantic.ValidationError as exc:
            logger.warning("webhook_payload_malformed", errors=exc.error_count())
            await self.processor.record_rejection(
                WebhookAction.REJECTED_MALFORMED,
                f"Malformed payload: {exc.error_count()} validation error(s)",
                raw_payload,
                ip_address,
            )
            raise ValidationError("Malformed webhook payload") from exc

        logger.info(
            "webhook_received",
            event_type=payload.event,
            payment_id=payload.payment.id if payload.payment else None,
        )
        return await self.processor.process(
            payload, source=SOURCE_WEBHOOK, raw_payload=raw_payload, ip_address=ip_address
        )


class PaymentSyncService:
    """
    Polling path: asks the gateway about a payment and releases credits if it is confirmed.

    Uses the same idempotency key and the same credit grant as a PAYMENT_CONFIRMED webhook.
    """

    def __init__(self, session: AsyncSession, gateway: PaymentGateway) -> None:
        self.session = session
        self.gateway = gateway
        self.processor = PaymentEventProcessor(session)

    async def sync_payment(self, payment_id: str) -> PaymentSyncOutcome:
        """
        Reconcile one payment with the gateway.

        Raises:
            ValidationError: Empty payment id
            PaymentGatewayError: Gateway unreachable or answered with an error
        """
        if not payment_id or not payment_id.strip():
            raise ValidationError("payment_id is required")

        remote = await self.gateway.get_payment(payment_id)
        payment = GatewayPayment(
            id=remote.payment_id,
            value=remote.value,
            status=remote.status,
            external_reference=remote.external_reference,
            subscription=remote.subscription_id,
        )

        if not remote.is_confirmed:
            await self.processor.record_event(
                event_type=POLL_STATUS_EVENT,
                payment_id=remote.payment_id,
                subscription_id=remote.subscription_id,
                key=None,
                source=SOURCE_POLL,
                processed=False,
                action=WebhookAction.SKIPPED_NOT_CONFIRMED,
                raw_payload=payment.model_dump(mode="json", by_alias=True),
                ip_address=None,
            )
            await self.session.commit()
            logger.info("payment_sync_not_confirmed", payment_id=payment_id, status=remote.status)
            return PaymentSyncOutcome(
                payment_id=remote.payment_id,
                gateway_status=remote.status,
                action=WebhookAction.SKIPPED_NOT_CONFIRMED.value,
            )

        outcome = await self.processor.process(
            WebhookPayload(event=POLL_CONFIRMED_EVENT, payment=payment),
            source=SOURCE_POLL,
        )
        logger.info(
            "payment_synced",
            payment_id=payment_id,
            action=outcome.action,
            credits_released=outcome.credits_released,
        )
        return PaymentSyncOutcome(
            payment_id=remote.payment_id,
            gateway_status=remote.status,
            action=outcome.action,
            credits_released=outcome.credits_released,
            idempotent=outcome.idempotent,
        )
