"""
Registration Pipeline - Hash, anchor, charge, confirm.

NO DICTIONARIES - All operations use strongly typed domain models.

A submission moves one registration through:
1. Ceiling check (no external calls once attempts are exhausted)
2. Balance guard (no state change without a spendable credit)
3. PROCESSING with attempt_count incremented and committed
4. Content hash computed and persisted
5. Anchor obtained and persisted (an existing anchor is reused)
6. One credit consumed
7. CONFIRMED

A failure after step 3 leaves the registration FAILED with a reason, never
PROCESSING. A submission that never got to handle its failure (cancelled
request, dead worker) is failed later by `recover_stale`.
"""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stampledger.db.models import Anchor, Registration, SubmissionAttempt, utc_now
from stampledger.exceptions import (
    InsufficientBalanceError,
    NotFoundError,
    PersistenceError,
    RegistrationNotFoundError,
    RegistrationStateError,
    ValidationError,
    WriteVerificationError,
)
from stampledger.models.api import RegistrationStatus
from stampledger.models.domain import (
    AnchorData,
    AuthorityAttempt,
    RegistrationData,
    RetryPolicy,
    SubmissionOutcome,
)
from stampledger.observability import get_logger, log_context, metrics
from stampledger.observability.tracing import trace_operation
from stampledger.services.content import ContentSource, compute_content_hash
from stampledger.services.ledger import LedgerService
from stampledger.services.timestamping import TimestampClient

logger = get_logger(__name__)

CONSUME_REASON = "Registration timestamp"
STALE_PROCESSING_REASON = "Submission abandoned while processing"

# Statuses a submission may start from
SUBMITTABLE_STATUSES = frozenset({RegistrationStatus.PENDING, RegistrationStatus.FAILED})


class RegistrationPipeline:
    """Drives registrations from PENDING to CONFIRMED or FAILED."""

    def __init__(
        self,
        session: AsyncSession,
        ledger: LedgerService,
        timestamp_client: TimestampClient,
        content_source: ContentSource,
        policy: RetryPolicy,
    ) -> None:
        self.session = session
        self.ledger = ledger
        self.timestamp_client = timestamp_client
        self.content_source = content_source
        self.policy = policy

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_status(self, registration_id: UUID, owner_id: str) -> RegistrationData:
        """Registration state for its owner; other owners see not-found."""
        registration = await self.session.get(Registration, registration_id)
        if registration is None or registration.owner_id != owner_id:
            raise RegistrationNotFoundError(registration_id)

        anchor = await self._find_anchor(registration_id)
        return registration_to_domain(registration, anchor_to_domain(anchor) if anchor else None)

    # ========================================================================
    # Writes
    # ========================================================================

    async def register(self, owner_id: str, content_path: str) -> RegistrationData:
        """Create a PENDING registration for content already in storage."""
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id is required")
        if not content_path or not content_path.strip():
            raise ValidationError("content_path is required")

        registration = Registration(
            owner_id=owner_id,
            content_path=content_path,
            status=RegistrationStatus.PENDING,
            attempt_count=0,
        )
        self.session.add(registration)
        await self.session.flush()

        verified = await self.session.get(Registration, registration.id)
        if verified is None:
            raise WriteVerificationError(f"Registration {registration.id} not found after insert")

        await self.session.commit()
        logger.info(
            "registration_created", registration_id=str(registration.id), owner_id=owner_id
        )
        return registration_to_domain(registration, None)

    async def submit(self, registration_id: UUID, owner_id: str) -> SubmissionOutcome:
        """
        Run one submission attempt.

        Raises:
            RegistrationNotFoundError: Unknown registration or another owner's
            RegistrationStateError: Registration is PROCESSING or CONFIRMED
            InsufficientBalanceError: No spendable credit (nothing changes)
        """
        with log_context(registration_id=str(registration_id), owner_id=owner_id):
            with trace_operation("registration_submit", registration_id=str(registration_id)):
                return await self._submit(registration_id, owner_id)

    async def recover_stale(self, now: datetime | None = None) -> list[UUID]:
        """
        Fail registrations abandoned in PROCESSING.

        A submission that was cancelled or whose worker died after committing
        PROCESSING never reaches FAILED on its own. Anything PROCESSING and
        untouched for longer than the policy's `stale_after` is forced to
        FAILED so it can be resubmitted; the attempt it used still counts.

        Returns:
            Ids of the registrations that were failed
        """
        cutoff = (now or utc_now()) - self.policy.stale_after
        stmt = (
            select(Registration.id)
            .where(Registration.status == RegistrationStatus.PROCESSING)
            .where(Registration.updated_at < cutoff)
            .order_by(Registration.updated_at)
        )
        candidates = list((await self.session.execute(stmt)).scalars().all())
        await self.session.commit()

        recovered = []
        for registration_id in candidates:
            registration = await self._reload(registration_id)
            # A live submission may have finished it since the scan
            if (
                registration.status != RegistrationStatus.PROCESSING
                or _as_utc(registration.updated_at) >= cutoff
            ):
                await self.session.rollback()
                continue

            with log_context(registration_id=str(registration_id)):
                await self._fail(registration_id, STALE_PROCESSING_REASON)
            recovered.append(registration_id)

        if recovered:
            logger.warning("stale_registrations_failed", count=len(recovered))
        return recovered

    async def retry_pending(self, limit: int = 50) -> list[SubmissionOutcome]:
        """
        Resubmit PENDING and FAILED registrations that still have attempts left.

        Abandoned PROCESSING registrations are failed first so they are picked
        up too. Registrations whose owner has no credit are skipped, not failed.
        """
        if limit < 1:
            raise ValidationError("limit must be positive")

        await self.recover_stale()

        stmt = (
            select(Registration.id, Registration.owner_id)
            .where(Registration.status.in_(SUBMITTABLE_STATUSES))
            .where(Registration.attempt_count < self.policy.max_attempts)
            .order_by(Registration.updated_at)
            .limit(limit)
        )
        candidates = (await self.session.execute(stmt)).all()
        await self.session.commit()

        outcomes = []
        for registration_id, owner_id in candidates:
            try:
                outcomes.append(await self.submit(registration_id, owner_id))
            except (InsufficientBalanceError, RegistrationStateError) as e:
                logger.info(
                    "registration_retry_skipped",
                    registration_id=str(registration_id),
                    reason=str(e),
                )

        logger.info(
            "registration_retry_completed", candidates=len(candidates), submitted=len(outcomes)
        )
        return outcomes

    # ========================================================================
    # Internals
    # ========================================================================

    async def _submit(self, registration_id: UUID, owner_id: str) -> SubmissionOutcome:
        registration = await self._lock_registration(registration_id, owner_id)

        status = registration.status
        if status not in SUBMITTABLE_STATUSES:
            await self.session.rollback()
            raise RegistrationStateError(registration_id, status.value)

        if self.policy.attempts_exhausted(registration.attempt_count):
            return await self._fail(
                registration_id,
                f"Maximum submission attempts ({self.policy.max_attempts}) reached",
            )

        if not await self.ledger.has_unlimited_credits(owner_id):
            balance = await self.ledger.get_balance(owner_id)
            if balance.available < 1:
                await self.session.rollback()
                metrics.record_registration("rejected_balance", None)
                logger.info("registration_rejected_balance", available=balance.available)
                raise InsufficientBalanceError(owner_id, balance.available)

        registration.status = RegistrationStatus.PROCESSING
        registration.attempt_count += 1
        registration.error_reason = None
        attempt_number = registration.attempt_count
        await self.session.commit()

        logger.info("registration_processing", attempt=attempt_number)

        try:
            return await self._anchor_and_charge(registration, attempt_number)
        except Exception as e:
            await self.session.rollback()
            logger.error("registration_submission_error", attempt=attempt_number, error=str(e))
            await self._fail(registration_id, "Internal error during submission")
            raise

    async def _anchor_and_charge(
        self, registration: Registration, attempt_number: int
    ) -> SubmissionOutcome:
        registration_id = registration.id
        owner_id = registration.owner_id

        content_hash = registration.content_hash
        if content_hash is None:
            try:
                content = await self.content_source.read(registration.content_path or "")
            except (NotFoundError, ValidationError) as e:
                return await self._fail(registration_id, f"Content unavailable: {e}")
            content_hash = compute_content_hash(content)
            registration.content_hash = content_hash
            await self.session.commit()
            logger.info("registration_hashed", content_hash=content_hash)

        attempts: tuple[AuthorityAttempt, ...] = ()
        anchor = await self._find_anchor(registration_id)
        if anchor is None:
            stamp = await self.timestamp_client.stamp(content_hash)
            attempts = stamp.attempts
            for attempt in attempts:
                self.session.add(
                    SubmissionAttempt(
                        registration_id=registration_id,
                        attempt_number=attempt_number,
                        authority=attempt.authority,
                        succeeded=attempt.succeeded,
                        error=attempt.error,
                        duration_ms=attempt.duration_ms,
                    )
                )
            anchor = Anchor(
                registration_id=registration_id,
                method=stamp.method,
                authority=stamp.authority,
                proof=stamp.proof,
                note=stamp.note,
            )
            self.session.add(anchor)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                # Another submission anchored this registration first
                await self.session.rollback()
                anchor = await self._find_anchor(registration_id)
                if anchor is None:
                    raise PersistenceError(f"Anchor insert rejected: {exc}") from exc
            else:
                verified = await self.session.get(Anchor, anchor.id)
                if verified is None:
                    raise WriteVerificationError(
                        f"Anchor for {registration_id} not found after insert"
                    )
                await self.session.commit()
                logger.info(
                    "registration_anchored",
                    method=anchor.method.value,
                    authority=anchor.authority,
                )
        else:
            logger.info("registration_anchor_reused", method=anchor.method.value)

        anchor_data = anchor_to_domain(anchor)

        result = await self.ledger.consume_credit(owner_id, registration_id, reason=CONSUME_REASON)
        if not result.success:
            return await self._fail(
                registration_id,
                "Insufficient balance when charging; proof kept for the next attempt",
                anchor=anchor_data,
                attempts=attempts,
            )

        registration = await self._reload(registration_id)
        registration.status = RegistrationStatus.CONFIRMED
        registration.error_reason = None
        await self.session.commit()

        metrics.record_registration(RegistrationStatus.CONFIRMED.value, anchor_data.method.value)
        logger.info(
            "registration_confirmed",
            method=anchor_data.method.value,
            externally_verifiable=anchor_data.externally_verifiable,
            idempotent_charge=result.idempotent,
        )

        return SubmissionOutcome(
            registration_id=registration_id,
            owner_id=registration.owner_id,
            status=RegistrationStatus.CONFIRMED,
            attempt_count=registration.attempt_count,
            content_hash=registration.content_hash,
            anchor=anchor_data,
            attempts=attempts,
        )

    async def _fail(
        self,
        registration_id: UUID,
        reason: str,
        anchor: AnchorData | None = None,
        attempts: tuple[AuthorityAttempt, ...] = (),
    ) -> SubmissionOutcome:
        """Force FAILED with a reason and commit."""
        registration = await self._reload(registration_id)
        registration.status = RegistrationStatus.FAILED
        registration.error_reason = reason
        await self.session.commit()

        metrics.record_registration(
            RegistrationStatus.FAILED.value, anchor.method.value if anchor else None
        )
        logger.warning(
            "registration_failed", reason=reason, attempt_count=registration.attempt_count
        )

        return SubmissionOutcome(
            registration_id=registration_id,
            owner_id=registration.owner_id,
            status=RegistrationStatus.FAILED,
            attempt_count=registration.attempt_count,
            content_hash=registration.content_hash,
            anchor=anchor,
            error_reason=reason,
            attempts=attempts,
        )

    async def _lock_registration(self, registration_id: UUID, owner_id: str) -> Registration:
        stmt = (
            select(Registration)
            .where(Registration.id == registration_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        registration = (await self.session.execute(stmt)).scalar_one_or_none()
        if registration is None or registration.owner_id != owner_id:
            await self.session.rollback()
            raise RegistrationNotFoundError(registration_id)
        return registration

    async def _reload(self, registration_id: UUID) -> Registration:
        registration = await self.session.get(
            Registration, registration_id, populate_existing=True, with_for_update=True
        )
        if registration is None:
            raise RegistrationNotFoundError(registration_id)
        return registration

    async def _find_anchor(self, registration_id: UUID) -> Anchor | None:
        stmt = select(Anchor).where(Anchor.registration_id == registration_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()


def anchor_to_domain(anchor: Anchor) -> AnchorData:
    """Convert ORM anchor to domain model."""
    return AnchorData(
        anchor_id=anchor.id,
        registration_id=anchor.registration_id,
        method=anchor.method,
        authority=anchor.authority,
        proof=anchor.proof,
        note=anchor.note,
        confirmed_at=anchor.confirmed_at,
    )


def registration_to_domain(
    registration: Registration, anchor: AnchorData | None
) -> RegistrationData:
    """Convert ORM registration to domain model."""
    return RegistrationData(
        registration_id=registration.id,
        owner_id=registration.owner_id,
        content_hash=registration.content_hash,
        status=registration.status,
        attempt_count=registration.attempt_count,
        error_reason=registration.error_reason,
        anchor=anchor,
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
