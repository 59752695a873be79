"""
Ledger Service - Append-only credit ledger with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

The ledger is the only source of truth for a user's balance. Every write:
1. Locks the user's balance_cache row (SELECT FOR UPDATE, created on first use)
2. Folds the ledger under the lock
3. Appends entries (unique per operation + reference)
4. Refreshes the cache from the fold
5. Reads back and verifies
6. Commits
"""

from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from stampledger.db.models import BalanceCache, LedgerEntry, UserRole
from stampledger.exceptions import (
    AuthenticationError,
    AuthorizationError,
    DataIntegrityError,
    ValidationError,
    WriteVerificationError,
)
from stampledger.models.api import LedgerErrorKind, LedgerOperation
from stampledger.models.domain import (
    AddCreditsResult,
    AdjustResult,
    BalanceData,
    ConsumeResult,
    LedgerEntryData,
    RefundResult,
    ReversalResult,
)
from stampledger.observability import get_logger, metrics

logger = get_logger(__name__)

# Roles granted by the external identity system
REFUND_ROLES = frozenset({"admin", "super_admin", "finance"})
ADJUST_ROLES = frozenset({"admin", "super_admin"})
UNLIMITED_ROLES = frozenset({"unlimited", "super_admin"})

ANONYMOUS_ACTORS = frozenset({"anonymous", "anon"})

# reference_type values written by this service
REFERENCE_REGISTRATION = "registration"
REFERENCE_PAYMENT = "payment"
REFERENCE_REFUND = "refund"

MAX_PAGE_SIZE = 500


class LedgerService:
    """
    Ledger service with per-user serialization and write verification.

    Writers on the same user serialize on that user's balance_cache row;
    writers on different users never block each other.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger service with database session."""
        self.session = session

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_balance(self, user_id: str) -> BalanceData:
        """Fold the user's ledger into a balance. Users without entries have zero."""
        _require_user(user_id)
        available, used = await self._fold(user_id)
        cache = await self.session.get(BalanceCache, user_id)
        return BalanceData(
            user_id=user_id,
            available=available,
            used=used,
            total=available + used,
            plan_type=cache.plan_type if cache is not None else None,
        )

    async def list_entries(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> list[LedgerEntryData]:
        """Newest-first credit history for a user."""
        _require_user(user_id)
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValidationError("offset cannot be negative")

        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return [_entry_to_domain(entry) for entry in result.scalars().all()]

    async def get_roles(self, user_id: str) -> set[str]:
        """Roles granted to a user."""
        stmt = select(UserRole.role).where(UserRole.user_id == user_id)
        result = await self.session.execute(stmt)
        return set(result.scalars().all())

    async def has_unlimited_credits(self, user_id: str) -> bool:
        """True when the user's role bypasses the balance check."""
        return bool(await self.get_roles(user_id) & UNLIMITED_ROLES)

    # ========================================================================
    # Writes
    # ========================================================================

    async def add_credits(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference_type: str,
        reference_id: str,
        is_subscription: bool = False,
        plan_type: str | None = None,
    ) -> AddCreditsResult:
        """
        Grant credits for an external reference (payment id, subscription cycle).

        A reference already applied returns idempotent=True and mutates nothing.
        Subscription grants reset the balance to `amount`: the prior balance is
        written off with an EXPIRE entry, then the cycle amount is added.

        Raises:
            ValidationError: Bad amount, reason or reference
        """
        _require_user(user_id)
        if amount <= 0:
            raise ValidationError(f"amount must be positive, got {amount}")
        _require_text(reason, "reason")
        _require_text(reference_type, "reference_type")
        _require_text(reference_id, "reference_id")

        cache = await self._lock_balance(user_id)

        existing = await self._find_entry(LedgerOperation.ADD, reference_type, reference_id)
        if existing is not None:
            return await self._replay_add(existing)

        available, _ = await self._fold(user_id)

        try:
            if is_subscription:
                await self._append_entry(
                    user_id=user_id,
                    operation=LedgerOperation.EXPIRE,
                    amount=-available,
                    balance_after=0,
                    reason=f"Subscription cycle reset: {reason}",
                    reference_type=reference_type,
                    reference_id=reference_id,
                )
                new_balance = amount
            else:
                new_balance = available + amount

            await self._append_entry(
                user_id=user_id,
                operation=LedgerOperation.ADD,
                amount=amount,
                balance_after=new_balance,
                reason=reason,
                reference_type=reference_type,
                reference_id=reference_id,
            )
        except IntegrityError as exc:
            await self.session.rollback()
            existing = await self._find_entry(LedgerOperation.ADD, reference_type, reference_id)
            if existing is None:
                raise DataIntegrityError(f"Credit grant rejected: {exc}") from exc
            logger.warning(
                "add_credits_race_resolved",
                user_id=user_id,
                reference_type=reference_type,
                reference_id=reference_id,
            )
            return await self._replay_add(existing)

        if plan_type is not None:
            cache.plan_type = plan_type
        await self._refresh_cache(cache, expected_available=new_balance)
        await self.session.commit()

        metrics.record_ledger_operation(LedgerOperation.ADD.value, "success", amount)
        logger.info(
            "credits_added",
            user_id=user_id,
            amount=amount,
            new_balance=new_balance,
            was_reset=is_subscription,
            reference_type=reference_type,
            reference_id=reference_id,
        )

        return AddCreditsResult(
            success=True,
            amount_added=amount,
            new_balance=new_balance,
            was_reset=is_subscription,
        )

    async def consume_credit(
        self,
        user_id: str,
        registration_id: UUID,
        reason: str = "Registration timestamp",
    ) -> ConsumeResult:
        """
        Spend one credit for a registration.

        At most one CONSUME exists per registration; a repeated call returns
        idempotent=True. Insufficient balance is a tagged failure, never clamped.
        Unlimited users write a zero-amount CONSUME for the audit trail.
        """
        _require_user(user_id)
        _require_text(reason, "reason")
        reference_id = str(registration_id)

        cache = await self._lock_balance(user_id)

        existing = await self._find_entry(
            LedgerOperation.CONSUME, REFERENCE_REGISTRATION, reference_id
        )
        if existing is not None:
            return await self._replay_consume(user_id)

        available, _ = await self._fold(user_id)
        unlimited = await self.has_unlimited_credits(user_id)
        cost = 0 if unlimited else 1

        if available < cost:
            metrics.record_ledger_operation(LedgerOperation.CONSUME.value, "insufficient")
            logger.info(
                "credit_consume_rejected",
                user_id=user_id,
                registration_id=reference_id,
                available=available,
            )
            return ConsumeResult(
                success=False,
                remaining_balance=available,
                error=LedgerErrorKind.INSUFFICIENT_BALANCE,
            )

        remaining = available - cost
        try:
            await self._append_entry(
                user_id=user_id,
                operation=LedgerOperation.CONSUME,
                amount=-cost,
                balance_after=remaining,
                reason=reason if not unlimited else f"{reason} (unlimited)",
                reference_type=REFERENCE_REGISTRATION,
                reference_id=reference_id,
            )
        except IntegrityError as exc:
            await self.session.rollback()
            existing = await self._find_entry(
                LedgerOperation.CONSUME, REFERENCE_REGISTRATION, reference_id
            )
            if existing is None:
                raise DataIntegrityError(f"Credit consumption rejected: {exc}") from exc
            logger.warning(
                "consume_credit_race_resolved", user_id=user_id, registration_id=reference_id
            )
            return await self._replay_consume(user_id)

        await self._refresh_cache(cache, expected_available=remaining)
        await self.session.commit()

        metrics.record_ledger_operation(LedgerOperation.CONSUME.value, "success", cost)
        logger.info(
            "credit_consumed",
            user_id=user_id,
            registration_id=reference_id,
            remaining_balance=remaining,
            unlimited=unlimited,
        )

        return ConsumeResult(success=True, remaining_balance=remaining)

    async def refund_credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference_id: str,
        actor_id: str | None,
    ) -> RefundResult:
        """
        Give credits back to a user on an operator's authority.

        Raises:
            AuthenticationError: Missing or anonymous actor
            AuthorizationError: Actor lacks a refund role
            ValidationError: Bad amount, reason or reference
        """
        actor = await self._require_role(actor_id, REFUND_ROLES, "ledger:refund")
        _require_user(user_id)
        if amount <= 0:
            raise ValidationError(f"amount must be positive, got {amount}")
        _require_text(reason, "reason")
        _require_text(reference_id, "reference_id")

        cache = await self._lock_balance(user_id)

        existing = await self._find_entry(LedgerOperation.REFUND, REFERENCE_REFUND, reference_id)
        if existing is not None:
            balance = await self.get_balance(user_id)
            metrics.record_ledger_operation(LedgerOperation.REFUND.value, "idempotent")
            return RefundResult(
                success=True,
                amount_refunded=existing.amount,
                new_balance=balance.available,
                idempotent=True,
            )

        available, _ = await self._fold(user_id)
        new_balance = available + amount

        try:
            await self._append_entry(
                user_id=user_id,
                operation=LedgerOperation.REFUND,
                amount=amount,
                balance_after=new_balance,
                reason=reason,
                reference_type=REFERENCE_REFUND,
                reference_id=reference_id,
                actor_id=actor,
            )
        except IntegrityError as exc:
            await self.session.rollback()
            raise DataIntegrityError(f"Refund rejected: {exc}") from exc

        await self._refresh_cache(cache, expected_available=new_balance)
        await self.session.commit()

        metrics.record_ledger_operation(LedgerOperation.REFUND.value, "success", amount)
        logger.info(
            "credits_refunded",
            user_id=user_id,
            amount=amount,
            new_balance=new_balance,
            actor_id=actor,
            reference_id=reference_id,
        )

        return RefundResult(success=True, amount_refunded=amount, new_balance=new_balance)

    async def adjust_balance(
        self,
        user_id: str,
        new_balance: int,
        reason: str,
        actor_id: str | None,
    ) -> AdjustResult:
        """
        Administrative override of a user's balance.

        Records the delta, not the absolute value, so the fold stays consistent.

        Raises:
            AuthenticationError: Missing or anonymous actor
            AuthorizationError: Actor lacks an adjust role
            ValidationError: Negative target or blank reason
        """
        actor = await self._require_role(actor_id, ADJUST_ROLES, "ledger:adjust")
        _require_user(user_id)
        if new_balance < 0:
            raise ValidationError(f"new_balance cannot be negative, got {new_balance}")
        _require_text(reason, "reason")

        cache = await self._lock_balance(user_id)
        previous, _ = await self._fold(user_id)
        delta = new_balance - previous

        await self._append_entry(
            user_id=user_id,
            operation=LedgerOperation.ADJUST,
            amount=delta,
            balance_after=new_balance,
            reason=reason,
            actor_id=actor,
        )
        await self._refresh_cache(cache, expected_available=new_balance)
        await self.session.commit()

        metrics.record_ledger_operation(LedgerOperation.ADJUST.value, "success", delta)
        logger.info(
            "balance_adjusted",
            user_id=user_id,
            previous_balance=previous,
            new_balance=new_balance,
            delta=delta,
            actor_id=actor,
        )

        return AdjustResult(previous_balance=previous, new_balance=new_balance, delta=delta)

    async def reverse_payment_credits(
        self, user_id: str, payment_id: str, original_credits: int
    ) -> ReversalResult:
        """
        Take back credits granted by a refunded or charged-back payment.

        Reverses min(original_credits, available). Whatever could not be
        reversed because it was already spent is reported as `unrefundable`
        and flags the reversal for manual review; the balance never goes negative.
        """
        _require_user(user_id)
        _require_text(payment_id, "payment_id")
        if original_credits < 0:
            raise ValidationError(f"original_credits cannot be negative, got {original_credits}")

        cache = await self._lock_balance(user_id)

        existing = await self._find_entry(LedgerOperation.REFUND, REFERENCE_PAYMENT, payment_id)
        if existing is not None:
            balance = await self.get_balance(user_id)
            reversed_amount = -existing.amount
            return ReversalResult(
                amount_reversed=reversed_amount,
                unrefundable=max(original_credits - reversed_amount, 0),
                new_balance=balance.available,
                requires_review=original_credits > reversed_amount,
                idempotent=True,
            )

        available, _ = await self._fold(user_id)
        refundable = min(original_credits, available)
        unrefundable = original_credits - refundable

        if refundable == 0:
            logger.warning(
                "payment_reversal_nothing_refundable",
                user_id=user_id,
                payment_id=payment_id,
                original_credits=original_credits,
            )
            return ReversalResult(
                amount_reversed=0,
                unrefundable=unrefundable,
                new_balance=available,
                requires_review=unrefundable > 0,
            )

        new_balance = available - refundable
        try:
            await self._append_entry(
                user_id=user_id,
                operation=LedgerOperation.REFUND,
                amount=-refundable,
                balance_after=new_balance,
                reason=f"Payment reversed: {payment_id}",
                reference_type=REFERENCE_PAYMENT,
                reference_id=payment_id,
            )
        except IntegrityError as exc:
            await self.session.rollback()
            raise DataIntegrityError(f"Payment reversal rejected: {exc}") from exc

        await self._refresh_cache(cache, expected_available=new_balance)
        await self.session.commit()

        metrics.record_ledger_operation("REVERSAL", "success", refundable)
        logger.info(
            "payment_credits_reversed",
            user_id=user_id,
            payment_id=payment_id,
            amount_reversed=refundable,
            unrefundable=unrefundable,
            new_balance=new_balance,
        )

        return ReversalResult(
            amount_reversed=refundable,
            unrefundable=unrefundable,
            new_balance=new_balance,
            requires_review=unrefundable > 0,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _fold(self, user_id: str) -> tuple[int, int]:
        """(available, used) summed from the ledger."""
        stmt = select(
            func.coalesce(func.sum(LedgerEntry.amount), 0),
            func.coalesce(
                func.sum(
                    case(
                        (LedgerEntry.operation == LedgerOperation.CONSUME, -LedgerEntry.amount),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(LedgerEntry.user_id == user_id)
        row = (await self.session.execute(stmt)).one()
        return int(row[0]), int(row[1])

    async def _lock_balance(self, user_id: str) -> BalanceCache:
        """
        Lock the user's balance_cache row (SELECT FOR UPDATE).

        Creates the row on first use; a concurrent creator wins the insert
        and this call locks the winner's row.
        """
        stmt = (
            select(BalanceCache)
            .where(BalanceCache.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        cache = (await self.session.execute(stmt)).scalar_one_or_none()
        if cache is not None:
            return cache

        cache = BalanceCache(user_id=user_id, available=0, used=0, total=0)
        self.session.add(cache)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            cache = (await self.session.execute(stmt)).scalar_one_or_none()
            if cache is None:
                raise WriteVerificationError(f"Balance row for {user_id} could not be created")
        return cache

    async def _find_entry(
        self, operation: LedgerOperation, reference_type: str, reference_id: str
    ) -> LedgerEntry | None:
        """Find the entry an operation already wrote for a reference."""
        stmt = select(LedgerEntry).where(
            LedgerEntry.operation == operation,
            LedgerEntry.reference_type == reference_type,
            LedgerEntry.reference_id == reference_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _append_entry(
        self,
        user_id: str,
        operation: LedgerOperation,
        amount: int,
        balance_after: int,
        reason: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
        actor_id: str | None = None,
    ) -> LedgerEntry:
        """Insert one ledger entry and verify it was written."""
        entry = LedgerEntry(
            user_id=user_id,
            operation=operation,
            amount=amount,
            balance_after=balance_after,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            actor_id=actor_id,
        )
        self.session.add(entry)
        await self.session.flush()

        verified = await self.session.get(LedgerEntry, entry.id)
        if verified is None:
            raise WriteVerificationError(f"Ledger entry {entry.id} not found after insert")
        return verified

    async def _refresh_cache(self, cache: BalanceCache, expected_available: int) -> None:
        """Overwrite the cache with the fold and check it landed where the write meant it to."""
        available, used = await self._fold(cache.user_id)
        if available != expected_available:
            raise DataIntegrityError(
                f"Ledger fold mismatch for {cache.user_id}: "
                f"expected {expected_available}, got {available}"
            )

        cache.available = available
        cache.used = used
        cache.total = available + used
        await self.session.flush()

        verified = await self.session.get(BalanceCache, cache.user_id)
        if verified is None:
            raise WriteVerificationError(f"Balance row for {cache.user_id} disappeared")
        if verified.available != available:
            raise DataIntegrityError(
                f"Balance mismatch: expected {available}, got {verified.available}"
            )

    async def _replay_add(self, existing: LedgerEntry) -> AddCreditsResult:
        expire = await self._find_entry(
            LedgerOperation.EXPIRE, existing.reference_type or "", existing.reference_id or ""
        )
        balance = await self.get_balance(existing.user_id)
        metrics.record_ledger_operation(LedgerOperation.ADD.value, "idempotent")
        logger.info(
            "add_credits_idempotent",
            user_id=existing.user_id,
            reference_type=existing.reference_type,
            reference_id=existing.reference_id,
        )
        return AddCreditsResult(
            success=True,
            amount_added=existing.amount,
            new_balance=balance.available,
            was_reset=expire is not None,
            idempotent=True,
        )

    async def _replay_consume(self, user_id: str) -> ConsumeResult:
        balance = await self.get_balance(user_id)
        metrics.record_ledger_operation(LedgerOperation.CONSUME.value, "idempotent")
        return ConsumeResult(success=True, remaining_balance=balance.available, idempotent=True)

    async def _require_role(
        self, actor_id: str | None, roles: frozenset[str], permission: str
    ) -> str:
        """Return the actor id if it holds one of `roles`."""
        if actor_id is None or not actor_id.strip() or actor_id.strip() in ANONYMOUS_ACTORS:
            raise AuthenticationError("an authenticated actor is required")
        actor = actor_id.strip()
        if not await self.get_roles(actor) & roles:
            logger.warning("ledger_actor_unauthorized", actor_id=actor, permission=permission)
            raise AuthorizationError(actor, permission)
        return actor


def _require_user(user_id: str) -> None:
    if not user_id or not user_id.strip():
        raise ValidationError("user_id is required")


def _require_text(value: str, field_name: str) -> None:
    if not value or not value.strip():
        raise ValidationError(f"{field_name} cannot be empty")


def _entry_to_domain(entry: LedgerEntry) -> LedgerEntryData:
    """Convert ORM entry to domain model."""
    return LedgerEntryData(
        entry_id=entry.id,
        user_id=entry.user_id,
        operation=entry.operation,
        amount=entry.amount,
        balance_after=entry.balance_after,
        reason=entry.reason,
        reference_type=entry.reference_type,
        reference_id=entry.reference_id,
        actor_id=entry.actor_id,
        created_at=entry.created_at,
    )
