"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- In-memory SQLite database with the full schema
- Ledger service and seeded users/roles
- Registrations with content on disk
- Fake timestamping authorities and payment gateway (httpx.MockTransport)
- API test client with dependency overrides
"""

import os
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from uuid import UUID

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set required environment variables BEFORE importing stampledger modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("LOG_FORMAT", "console")

from stampledger.db.models import Base, Registration, UserRole
from stampledger.db.session import build_engine
from stampledger.models.api import RegistrationStatus
from stampledger.models.domain import RetryPolicy
from stampledger.services.content import FilesystemContentSource
from stampledger.services.ledger import LedgerService
from stampledger.services.pipeline import RegistrationPipeline
from stampledger.services.timestamping import TimestampClient

AUTHORITY_A = "https://a.calendar.test"
AUTHORITY_B = "https://b.calendar.test"
FAKE_PROOF = b"\x00OpenTimestamps\x00\x00Proof\x00fake-calendar-proof"

# ============================================================================
# Database Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test, foreign keys enforced."""
    engine = build_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger(db_session: AsyncSession) -> LedgerService:
    return LedgerService(db_session)


@pytest.fixture
def grant_role(db_session: AsyncSession) -> Callable:
    """Grant a role the way the identity system would."""

    async def _grant(user_id: str, role: str) -> None:
        db_session.add(UserRole(user_id=user_id, role=role))
        await db_session.commit()

    return _grant


# ============================================================================
# Registration Fixtures
# ============================================================================


@pytest.fixture
def content_root(tmp_path: Path) -> Path:
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture
def make_registration(db_session: AsyncSession, content_root: Path) -> Callable:
    """Create a registration whose content is stored under content_root."""

    async def _make(
        owner_id: str = "user-1",
        content: bytes | None = b"my original work",
        status: RegistrationStatus = RegistrationStatus.PENDING,
        attempt_count: int = 0,
        content_hash: str | None = None,
        name: str = "work.txt",
    ) -> UUID:
        content_path = f"{owner_id}/{name}"
        if content is not None:
            target = content_root / content_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)

        registration = Registration(
            owner_id=owner_id,
            content_path=content_path,
            content_hash=content_hash,
            status=status,
            attempt_count=attempt_count,
        )
        db_session.add(registration)
        await db_session.commit()
        return registration.id

    return _make


# ============================================================================
# Fake Outbound HTTP
# ============================================================================


def _authority_transport(
    answers: dict[str, httpx.Response | Exception], calls: list[httpx.Request] | None = None
) -> httpx.MockTransport:
    """Answer each authority host with a canned response or raise the given error."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        answer = answers[f"{request.url.scheme}://{request.url.host}"]
        if isinstance(answer, Exception):
            raise answer
        return httpx.Response(answer.status_code, content=answer.content)

    return httpx.MockTransport(handler)


@pytest.fixture
def fake_authorities() -> Callable[..., httpx.MockTransport]:
    return _authority_transport


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(authorities=(AUTHORITY_A, AUTHORITY_B), timeout_seconds=1.0, max_attempts=3)


@pytest.fixture
def make_pipeline(db_session: AsyncSession, content_root: Path, policy: RetryPolicy) -> Callable:
    """Pipeline wired to fake authorities."""

    def _make(
        answers: dict[str, httpx.Response | Exception] | None = None,
        calls: list[httpx.Request] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> RegistrationPipeline:
        answers = answers or {
            AUTHORITY_A: httpx.Response(200, content=FAKE_PROOF),
            AUTHORITY_B: httpx.Response(200, content=FAKE_PROOF),
        }
        active_policy = retry_policy or policy
        client = TimestampClient(
            active_policy,
            http_client=httpx.AsyncClient(transport=_authority_transport(answers, calls)),
        )
        return RegistrationPipeline(
            session=db_session,
            ledger=LedgerService(db_session),
            timestamp_client=client,
            content_source=FilesystemContentSource(content_root),
            policy=active_policy,
        )

    return _make
