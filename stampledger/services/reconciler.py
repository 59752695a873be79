"""
Balance Reconciler - Rebuilds cached balances from the ledger fold.

NO DICTIONARIES - Results are strongly typed dataclasses.
Read-only with respect to the ledger: only balance_cache rows are written.
"""

from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import AsyncSession

from stampledger.db.models import BalanceCache, LedgerEntry
from stampledger.exceptions import ValidationError, WriteVerificationError
from stampledger.models.domain import ReconcileResult
from stampledger.observability import get_logger, metrics
from stampledger.services.ledger import LedgerService

logger = get_logger(__name__)


class BalanceReconciler:
    """Compares each user's cache with the ledger and corrects drift."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._ledger = LedgerService(session)

    async def reconcile(self, user_id: str) -> ReconcileResult:
        """
        Recompute one user's balance and overwrite the cache if it drifted.

        A user with ledger entries but no cache row gets one created.
        """
        if not user_id or not user_id.strip():
            raise ValidationError("user_id is required")

        # Lock before folding; ledger writers append while holding this row
        stmt = (
            select(BalanceCache)
            .where(BalanceCache.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        cache = (await self.session.execute(stmt)).scalar_one_or_none()

        balance = await self._ledger.get_balance(user_id)

        cache_available = cache.available if cache is not None else None
        cache_used = cache.used if cache is not None else None
        if cache is None:
            was_consistent = balance.total == 0
        else:
            was_consistent = (
                cache.available == balance.available
                and cache.used == balance.used
                and cache.total == balance.total
            )

        corrected = False
        if not was_consistent:
            if cache is None:
                cache = BalanceCache(user_id=user_id)
                self.session.add(cache)
            cache.available = balance.available
            cache.used = balance.used
            cache.total = balance.total
            await self.session.flush()

            verified = await self.session.get(BalanceCache, user_id)
            if verified is None or verified.available != balance.available:
                raise WriteVerificationError(f"Balance row for {user_id} not corrected")

            await self.session.commit()
            corrected = True
            logger.warning(
                "balance_drift_corrected",
                user_id=user_id,
                ledger_available=balance.available,
                ledger_used=balance.used,
                cache_available=cache_available,
                cache_used=cache_used,
            )
        else:
            # Release the row lock
            await self.session.commit()

        metrics.record_reconciliation(corrected)

        return ReconcileResult(
            user_id=user_id,
            ledger_available=balance.available,
            ledger_used=balance.used,
            cache_available=cache_available,
            cache_used=cache_used,
            was_consistent=was_consistent,
            corrected=corrected,
        )

    async def reconcile_all(self) -> list[ReconcileResult]:
        """Reconcile every user that has ledger entries or a cache row."""
        stmt = union(
            select(LedgerEntry.user_id).distinct(),
            select(BalanceCache.user_id),
        )
        user_ids = sorted((await self.session.execute(stmt)).scalars().all())

        results = []
        for user_id in user_ids:
            results.append(await self.reconcile(user_id))

        corrected = sum(1 for r in results if r.corrected)
        logger.info("reconciliation_completed", users=len(results), corrected=corrected)
        return results
