"""
Tests for BalanceReconciler.
"""

from uuid import uuid4

import pytest
from sqlalchemy import select

from stampledger.db.models import BalanceCache, LedgerEntry
from stampledger.exceptions import ValidationError
from stampledger.models.api import LedgerOperation
from stampledger.services.ledger import REFERENCE_PAYMENT
from stampledger.services.reconciler import BalanceReconciler


@pytest.fixture
def reconciler(db_session) -> BalanceReconciler:
    return BalanceReconciler(db_session)


async def corrupt_cache(session, user_id: str, available: int) -> None:
    cache = await session.get(BalanceCache, user_id)
    cache.available = available
    cache.used = 0
    cache.total = available
    await session.commit()


class ConsumeBeforeLockSession:
    """Session whose first row-lock query lets another writer commit a consume first."""

    def __init__(self, session, ledger, user_id: str):
        self._session = session
        self._ledger = ledger
        self._user_id = user_id
        self.consumed = False

    async def execute(self, statement, *args, **kwargs):
        if not self.consumed and getattr(statement, "_for_update_arg", None) is not None:
            self.consumed = True
            await self._ledger.consume_credit(self._user_id, uuid4())
        return await self._session.execute(statement, *args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._session, name)


class TestReconcile:
    """Tests for single-user reconciliation."""

    @pytest.mark.asyncio
    async def test_consistent_cache_untouched(self, reconciler, ledger):
        await ledger.add_credits("user-1", 3, "Grant", REFERENCE_PAYMENT, "pay_1")
        await ledger.consume_credit("user-1", uuid4())

        result = await reconciler.reconcile("user-1")

        assert result.was_consistent is True
        assert result.corrected is False
        assert result.ledger_available == 2
        assert result.ledger_used == 1

    @pytest.mark.asyncio
    async def test_drifted_cache_rebuilt(self, reconciler, ledger, db_session):
        await ledger.add_credits("user-1", 5, "Grant", REFERENCE_PAYMENT, "pay_1")
        await corrupt_cache(db_session, "user-1", 9)

        result = await reconciler.reconcile("user-1")

        assert result.was_consistent is False
        assert result.corrected is True
        assert result.cache_available == 9
        assert result.ledger_available == 5

        cache = await db_session.get(BalanceCache, "user-1", populate_existing=True)
        assert (cache.available, cache.used, cache.total) == (5, 0, 5)

    @pytest.mark.asyncio
    async def test_missing_cache_created(self, reconciler, db_session):
        db_session.add(
            LedgerEntry(
                user_id="user-1",
                operation=LedgerOperation.ADD,
                amount=4,
                balance_after=4,
                reason="Imported",
                reference_type=REFERENCE_PAYMENT,
                reference_id="pay_import",
            )
        )
        await db_session.commit()

        result = await reconciler.reconcile("user-1")

        assert result.cache_available is None
        assert result.corrected is True
        cache = await db_session.get(BalanceCache, "user-1")
        assert cache.available == 4

    @pytest.mark.asyncio
    async def test_write_committed_before_lock_is_folded(self, ledger, db_session):
        await ledger.add_credits("user-1", 5, "Grant", REFERENCE_PAYMENT, "pay_1")
        session = ConsumeBeforeLockSession(db_session, ledger, "user-1")

        result = await BalanceReconciler(session).reconcile("user-1")

        assert session.consumed is True
        assert result.was_consistent is True
        assert result.corrected is False
        assert result.ledger_available == 4
        cache = await db_session.get(BalanceCache, "user-1", populate_existing=True)
        assert (cache.available, cache.used, cache.total) == (4, 1, 5)

    @pytest.mark.asyncio
    async def test_unknown_user_is_consistent(self, reconciler):
        result = await reconciler.reconcile("nobody")

        assert result.was_consistent is True
        assert result.corrected is False

    @pytest.mark.asyncio
    async def test_blank_user_rejected(self, reconciler):
        with pytest.raises(ValidationError):
            await reconciler.reconcile("")


class TestReconcileAll:
    """Tests for the full sweep."""

    @pytest.mark.asyncio
    async def test_sweep_covers_ledger_and_cache_only_users(self, reconciler, ledger, db_session):
        await ledger.add_credits("user-1", 2, "Grant", REFERENCE_PAYMENT, "pay_1")
        await ledger.add_credits("user-2", 2, "Grant", REFERENCE_PAYMENT, "pay_2")
        await corrupt_cache(db_session, "user-2", 7)
        db_session.add(BalanceCache(user_id="ghost", available=3, used=0, total=3))
        await db_session.commit()

        results = await reconciler.reconcile_all()

        by_user = {r.user_id: r for r in results}
        assert set(by_user) == {"user-1", "user-2", "ghost"}
        assert by_user["user-1"].corrected is False
        assert by_user["user-2"].corrected is True
        assert by_user["ghost"].corrected is True
        assert by_user["ghost"].ledger_available == 0

        ghost = await db_session.get(BalanceCache, "ghost", populate_existing=True)
        assert ghost.available == 0

        entries = (await db_session.execute(select(LedgerEntry))).scalars().all()
        assert len(entries) == 2
