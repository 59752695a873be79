"""
API route tests.

Drive the FastAPI app through httpx.ASGITransport with the database, the
timestamping authorities, the content store and the payment gateway
overridden.
"""

import base64
import hashlib
import json
from collections.abc import AsyncGenerator
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select
from starlette.requests import Request

from stampledger.api.dependencies import (
    get_content_source,
    get_payment_gateway,
    get_timestamp_client,
)
from stampledger.db.models import WebhookEvent
from stampledger.db.session import get_read_db, get_write_db
from stampledger.exceptions import (
    AuthorityError,
    InsufficientBalanceError,
    RegistrationNotFoundError,
    WriteVerificationError,
)
from stampledger.main import app, ledger_exception_handler
from stampledger.models.api import WebhookAction
from stampledger.services.content import FilesystemContentSource
from stampledger.services.ledger import REFERENCE_PAYMENT, LedgerService
from stampledger.services.payment_gateway import GatewayClient
from stampledger.services.timestamping import TimestampClient
from stampledger.services.verification import OTS_HEADER_MAGIC, OTS_OP_SHA256

API_HEADERS = {"X-API-Key": "test-api-key"}
WEBHOOK_HEADERS = {"asaas-access-token": "test-webhook-secret"}
CONTENT = b"my original work"
CONTENT_HASH = hashlib.sha256(CONTENT).hexdigest()
PROOF = b"\x00OpenTimestamps\x00\x00Proof\x00route-proof"


def gateway_handler(request: httpx.Request) -> httpx.Response:
    payment_id = request.url.path.rsplit("/", 1)[-1]
    if payment_id == "pay_missing":
        return httpx.Response(404)
    if payment_id == "pay_down":
        return httpx.Response(503)
    return httpx.Response(
        200,
        json={"id": payment_id, "status": "RECEIVED", "value": 149, "externalReference": "user-1"},
    )


@pytest_asyncio.fixture
async def client(
    session_factory, content_root, policy, fake_authorities
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """App client with every outbound dependency replaced."""

    async def override_db():
        async with session_factory() as session:
            yield session

    async def override_timestamp_client():
        answers = {
            authority: httpx.Response(200, content=PROOF) for authority in policy.authorities
        }
        timestamp_client = TimestampClient(
            policy, http_client=httpx.AsyncClient(transport=fake_authorities(answers))
        )
        try:
            yield timestamp_client
        finally:
            await timestamp_client.close()

    async def override_gateway():
        gateway = GatewayClient(
            "https://gateway.test/v3",
            "gw-key",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(gateway_handler)),
        )
        try:
            yield gateway
        finally:
            await gateway.close()

    app.dependency_overrides[get_write_db] = override_db
    app.dependency_overrides[get_read_db] = override_db
    app.dependency_overrides[get_timestamp_client] = override_timestamp_client
    app.dependency_overrides[get_content_source] = lambda: FilesystemContentSource(content_root)
    app.dependency_overrides[get_payment_gateway] = override_gateway

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.clear()


@pytest.fixture
def stored_content(content_root) -> str:
    target = content_root / "user-1" / "work.txt"
    target.parent.mkdir(parents=True)
    target.write_bytes(CONTENT)
    return "user-1/work.txt"


async def fund(session_factory, user_id: str, amount: int) -> None:
    async with session_factory() as session:
        await LedgerService(session).add_credits(
            user_id, amount, "Seed credits", REFERENCE_PAYMENT, f"pay_seed_{user_id}"
        )


async def create_registration(client: httpx.AsyncClient, content_path: str) -> str:
    response = await client.post(
        "/v1/registrations",
        json={"owner_id": "user-1", "content_path": content_path},
        headers=API_HEADERS,
    )
    assert response.status_code == 201
    return response.json()["registration_id"]


class TestServiceEndpoints:
    """Tests for health, root and metrics."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "connected"

    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        await client.get("/health")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "stampledger_http_requests_total" in response.text

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    @pytest.mark.asyncio
    async def test_request_id_generated(self, client):
        response = await client.get("/")

        assert len(response.headers["X-Request-ID"]) == 32


class TestApiKey:
    """Tests for the X-API-Key guard."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-API-Key": "wrong"}])
    async def test_rejected(self, client, headers):
        response = await client.get("/v1/ledger/user-1/balance", headers=headers)

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "ApiKey"

    @pytest.mark.asyncio
    async def test_verification_is_public(self, client):
        response = await client.get("/v1/verify", params={"hash": CONTENT_HASH})

        assert response.status_code == 200


class TestLedgerRoutes:
    """Tests for the ledger endpoints."""

    @pytest.mark.asyncio
    async def test_grant_then_balance_and_history(self, client):
        body = {
            "user_id": "user-1",
            "amount": 5,
            "reason": "Manual grant",
            "reference_type": "payment",
            "reference_id": "pay_1",
            "plan_type": "PROFESSIONAL",
        }
        created = await client.post("/v1/ledger/credits", json=body, headers=API_HEADERS)
        replay = await client.post("/v1/ledger/credits", json=body, headers=API_HEADERS)

        assert created.status_code == 201
        assert created.json()["new_balance"] == 5
        assert replay.json()["idempotent"] is True

        balance = (await client.get("/v1/ledger/user-1/balance", headers=API_HEADERS)).json()
        assert balance == {
            "user_id": "user-1",
            "available": 5,
            "used": 0,
            "total": 5,
            "plan_type": "PROFESSIONAL",
        }

        history = await client.get(
            "/v1/ledger/user-1/entries", params={"limit": 10}, headers=API_HEADERS
        )
        assert history.status_code == 200
        assert [e["operation"] for e in history.json()["entries"]] == ["ADD"]

    @pytest.mark.asyncio
    async def test_history_limit_is_bounded(self, client):
        response = await client.get(
            "/v1/ledger/user-1/entries", params={"limit": 100000}, headers=API_HEADERS
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_consume_without_balance_is_402(self, client):
        response = await client.post(
            "/v1/ledger/consume",
            json={"user_id": "user-1", "registration_id": str(uuid4())},
            headers=API_HEADERS,
        )

        assert response.status_code == 402
        assert response.json()["detail"] == "Insufficient credits. Balance: 0, Required: 1"

    @pytest.mark.asyncio
    async def test_consume(self, client, session_factory):
        await fund(session_factory, "user-1", 2)

        response = await client.post(
            "/v1/ledger/consume",
            json={"user_id": "user-1", "registration_id": str(uuid4())},
            headers=API_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["remaining_balance"] == 1

    @pytest.mark.asyncio
    async def test_refund_actor_checks(self, client, grant_role):
        body = {"user_id": "user-1", "amount": 1, "reason": "Goodwill", "reference_id": "t-1"}

        anonymous = await client.post("/v1/ledger/refunds", json=body, headers=API_HEADERS)
        unprivileged = await client.post(
            "/v1/ledger/refunds", json=body, headers={**API_HEADERS, "X-Actor-Id": "agent"}
        )
        await grant_role("finance-1", "finance")
        allowed = await client.post(
            "/v1/ledger/refunds", json=body, headers={**API_HEADERS, "X-Actor-Id": "finance-1"}
        )

        assert anonymous.status_code == 401
        assert unprivileged.status_code == 403
        assert unprivileged.json()["detail"] == "Missing required permission: ledger:refund"
        assert allowed.status_code == 201
        assert allowed.json()["new_balance"] == 1

    @pytest.mark.asyncio
    async def test_adjust(self, client, grant_role, session_factory):
        await fund(session_factory, "user-1", 3)
        await grant_role("root", "admin")

        response = await client.post(
            "/v1/ledger/adjustments",
            json={"user_id": "user-1", "new_balance": 10, "reason": "Correction"},
            headers={**API_HEADERS, "X-Actor-Id": "root"},
        )

        assert response.status_code == 200
        assert response.json()["delta"] == 7

    @pytest.mark.asyncio
    async def test_adjust_blank_reason_is_422(self, client):
        response = await client.post(
            "/v1/ledger/adjustments",
            json={"user_id": "user-1", "new_balance": 10, "reason": "   "},
            headers={**API_HEADERS, "X-Actor-Id": "root"},
        )

        assert response.status_code == 422
        assert response.json()["detail"][0]["loc"] == ["body", "reason"]

    @pytest.mark.asyncio
    async def test_reconcile(self, client, session_factory):
        await fund(session_factory, "user-1", 2)

        response = await client.post("/v1/ledger/user-1/reconcile", headers=API_HEADERS)

        assert response.status_code == 200
        assert response.json()["was_consistent"] is True


class TestPaymentRoutes:
    """Tests for the webhook and polling endpoints."""

    @pytest.mark.asyncio
    async def test_webhook_bad_token(self, client):
        response = await client.post(
            "/v1/webhooks/payments",
            content=json.dumps({"event": "PAYMENT_CONFIRMED", "payment": {"id": "p"}}),
            headers={"asaas-access-token": "nope"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_webhook_releases_credits(self, client):
        payload = {
            "event": "PAYMENT_CONFIRMED",
            "payment": {"id": "pay_1", "value": 149, "externalReference": "user-1"},
        }

        response = await client.post(
            "/v1/webhooks/payments", content=json.dumps(payload), headers=WEBHOOK_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["credits_released"] == 5

    @pytest.mark.asyncio
    async def test_webhook_malformed(self, client):
        response = await client.post(
            "/v1/webhooks/payments", content=b"[]", headers=WEBHOOK_HEADERS
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    async def test_webhook_other_methods_rejected_and_audited(
        self, client, session_factory, method
    ):
        response = await client.request(method, "/v1/webhooks/payments", headers=WEBHOOK_HEADERS)

        assert response.status_code == 405
        assert response.headers["allow"] == "POST"
        async with session_factory() as session:
            row = (await session.execute(select(WebhookEvent))).scalar_one()
        assert row.action_taken == WebhookAction.REJECTED_METHOD.value
        assert row.processed is False
        assert row.error_message == f"Method {method} not allowed"

    @pytest.mark.asyncio
    async def test_webhook_not_yet_processable_is_acknowledged(self, client):
        payload = {
            "event": "SUBSCRIPTION_PAYMENT_CONFIRMED",
            "payment": {"id": "pay_c1", "value": 99, "subscription": "sub_unknown"},
        }

        response = await client.post(
            "/v1/webhooks/payments", content=json.dumps(payload), headers=WEBHOOK_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["action"] == "SKIPPED - Subscription not found"

    @pytest.mark.asyncio
    async def test_sync(self, client):
        response = await client.post("/v1/payments/pay_9/sync", headers=API_HEADERS)

        assert response.status_code == 200
        assert response.json()["gateway_status"] == "RECEIVED"
        assert response.json()["credits_released"] == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payment_id,code", [("pay_missing", 404), ("pay_down", 502)])
    async def test_sync_gateway_errors(self, client, payment_id, code):
        response = await client.post(f"/v1/payments/{payment_id}/sync", headers=API_HEADERS)

        assert response.status_code == code


class TestRegistrationRoutes:
    """Tests for the registration endpoints."""

    @pytest.mark.asyncio
    async def test_submit_confirms(self, client, session_factory, stored_content):
        await fund(session_factory, "user-1", 1)
        registration_id = await create_registration(client, stored_content)

        response = await client.post(
            f"/v1/registrations/{registration_id}/submit",
            json={"owner_id": "user-1"},
            headers=API_HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "CONFIRMED"
        assert body["content_hash"] == CONTENT_HASH
        assert body["anchor"]["method"] == "EXTERNAL"
        assert body["anchor"]["externally_verifiable"] is True

        again = await client.post(
            f"/v1/registrations/{registration_id}/submit",
            json={"owner_id": "user-1"},
            headers=API_HEADERS,
        )
        assert again.status_code == 409
        assert again.json()["detail"] == "Registration is CONFIRMED"

        status = await client.get(
            f"/v1/registrations/{registration_id}",
            params={"owner_id": "user-1"},
            headers=API_HEADERS,
        )
        assert status.json()["status"] == "CONFIRMED"

    @pytest.mark.asyncio
    async def test_submit_without_credit_is_402(self, client, stored_content):
        registration_id = await create_registration(client, stored_content)

        response = await client.post(
            f"/v1/registrations/{registration_id}/submit",
            json={"owner_id": "user-1"},
            headers=API_HEADERS,
        )

        assert response.status_code == 402

    @pytest.mark.asyncio
    async def test_other_owner_gets_404(self, client, stored_content):
        registration_id = await create_registration(client, stored_content)

        submit = await client.post(
            f"/v1/registrations/{registration_id}/submit",
            json={"owner_id": "user-2"},
            headers=API_HEADERS,
        )
        status = await client.get(
            f"/v1/registrations/{registration_id}",
            params={"owner_id": "user-2"},
            headers=API_HEADERS,
        )

        assert submit.status_code == 404
        assert status.status_code == 404

    @pytest.mark.asyncio
    async def test_missing_content_reports_failed(self, client, session_factory):
        await fund(session_factory, "user-1", 1)
        registration_id = await create_registration(client, "user-1/missing.txt")

        response = await client.post(
            f"/v1/registrations/{registration_id}/submit",
            json={"owner_id": "user-1"},
            headers=API_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "FAILED"
        assert response.json()["error_reason"].startswith("Content unavailable")

    @pytest.mark.asyncio
    async def test_retry(self, client, session_factory, stored_content):
        await fund(session_factory, "user-1", 1)
        await create_registration(client, stored_content)

        response = await client.post(
            "/v1/registrations/retry", params={"limit": 5}, headers=API_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["submitted"] == 1
        assert response.json()["registrations"][0]["status"] == "CONFIRMED"


class TestVerificationRoutes:
    """Tests for public verification."""

    @pytest.mark.asyncio
    async def test_bad_hash_is_400(self, client):
        response = await client.get("/v1/verify", params={"hash": "xyz"})

        assert response.status_code == 400
        assert response.json()["status"] == "INVALID_FORMAT"

    @pytest.mark.asyncio
    async def test_unknown_hash(self, client):
        response = await client.get("/v1/verify", params={"hash": CONTENT_HASH})

        assert response.status_code == 200
        assert response.json()["status"] == "NOT_FOUND"
        assert response.json()["found"] is False

    @pytest.mark.asyncio
    async def test_confirmed_hash(self, client, session_factory, stored_content):
        await fund(session_factory, "user-1", 1)
        registration_id = await create_registration(client, stored_content)
        await client.post(
            f"/v1/registrations/{registration_id}/submit",
            json={"owner_id": "user-1"},
            headers=API_HEADERS,
        )

        response = await client.get("/v1/verify", params={"hash": CONTENT_HASH})

        body = response.json()
        assert body["status"] == "VERIFIED"
        assert body["verified"] is True
        assert body["registration_id"] == registration_id
        assert body["anchor"]["authority"] is not None

    @pytest.mark.asyncio
    async def test_proof(self, client):
        proof = OTS_HEADER_MAGIC + bytes([OTS_OP_SHA256]) + bytes.fromhex(CONTENT_HASH)

        response = await client.post(
            "/v1/verify/proof",
            json={"hash": CONTENT_HASH, "proof_base64": base64.b64encode(proof).decode()},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "VERIFIED"

    @pytest.mark.asyncio
    async def test_proof_bad_base64(self, client):
        response = await client.post(
            "/v1/verify/proof", json={"hash": CONTENT_HASH, "proof_base64": "@@not base64@@"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "proof_base64 is not valid base64"


class TestLedgerErrorFallback:
    """Errors no route translated still get a status and never leak internals."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,status_code,detail",
        [
            (
                InsufficientBalanceError("user-1", 0),
                402,
                "Insufficient credits. Balance: 0, Required: 1",
            ),
            (RegistrationNotFoundError(uuid4()), 404, None),
            (
                AuthorityError("https://a.calendar.test", "HTTP 503"),
                502,
                "Upstream service unavailable",
            ),
            (WriteVerificationError("cache row missing"), 500, "Internal server error"),
        ],
    )
    async def test_mapping(self, error, status_code, detail):
        request = Request(
            {
                "type": "http",
                "method": "POST",
                "path": "/v1/anything",
                "headers": [],
                "query_string": b"",
                "scheme": "http",
                "server": ("test", 80),
            }
        )

        response = await ledger_exception_handler(request, error)

        assert response.status_code == status_code
        body = json.loads(response.body)
        assert body["detail"] == (detail if detail is not None else str(error))
