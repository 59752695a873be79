"""
Tests for TimestampClient.

Authorities are faked with httpx.MockTransport keyed by host.
"""

import json
from datetime import UTC, datetime

import httpx
import pytest

from stampledger.exceptions import AuthorityError
from stampledger.models.api import AnchorMethod
from stampledger.models.domain import RetryPolicy
from stampledger.services.timestamping import (
    OTS_MEDIA_TYPE,
    TimestampClient,
    build_internal_proof,
)

HASH = "ab" * 32
PROOF = b"\x00OpenTimestamps\x00\x00Proof\x00calendar-proof"


def make_client(policy: RetryPolicy, transport: httpx.MockTransport) -> TimestampClient:
    return TimestampClient(policy, http_client=httpx.AsyncClient(transport=transport))


class TestSubmit:
    """Tests for a single authority request."""

    @pytest.mark.asyncio
    async def test_request_shape(self, policy, fake_authorities):
        first, _ = policy.authorities
        calls: list[httpx.Request] = []
        client = make_client(
            policy,
            fake_authorities({first: httpx.Response(200, content=PROOF)}, calls),
        )

        proof = await client.submit(first, HASH)

        assert proof == PROOF
        request = calls[0]
        assert request.method == "POST"
        assert str(request.url) == f"{first}/digest"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert request.headers["Accept"] == OTS_MEDIA_TYPE
        assert request.content == HASH.encode("ascii")
        await client.close()

    @pytest.mark.asyncio
    async def test_trailing_slash_in_authority(self, policy, fake_authorities):
        first, _ = policy.authorities
        calls: list[httpx.Request] = []
        client = make_client(
            policy, fake_authorities({first: httpx.Response(200, content=PROOF)}, calls)
        )

        await client.submit(f"{first}/", HASH)

        assert str(calls[0].url) == f"{first}/digest"
        await client.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "answer,message",
        [
            (httpx.Response(503, content=b"down"), "HTTP 503"),
            (httpx.Response(200, content=b""), "empty proof"),
            (httpx.ConnectTimeout("slow"), "timed out after 1.0s"),
            (httpx.ConnectError("refused"), "request failed"),
        ],
    )
    async def test_unusable_answers_raise(self, policy, fake_authorities, answer, message):
        first, _ = policy.authorities
        client = make_client(policy, fake_authorities({first: answer}))

        with pytest.raises(AuthorityError) as exc_info:
            await client.submit(first, HASH)

        assert message in str(exc_info.value)
        assert exc_info.value.authority == first
        await client.close()


class TestStamp:
    """Tests for authority fallback."""

    @pytest.mark.asyncio
    async def test_first_authority_wins(self, policy, fake_authorities):
        first, second = policy.authorities
        calls: list[httpx.Request] = []
        client = make_client(
            policy,
            fake_authorities(
                {
                    first: httpx.Response(200, content=PROOF),
                    second: httpx.Response(200, content=b"other"),
                },
                calls,
            ),
        )

        result = await client.stamp(HASH)

        assert result.method == AnchorMethod.EXTERNAL
        assert result.authority == first
        assert result.proof == PROOF
        assert len(calls) == 1
        assert [a.succeeded for a in result.attempts] == [True]
        await client.close()

    @pytest.mark.asyncio
    async def test_falls_back_in_order(self, policy, fake_authorities):
        first, second = policy.authorities
        client = make_client(
            policy,
            fake_authorities(
                {
                    first: httpx.ConnectTimeout("slow"),
                    second: httpx.Response(200, content=PROOF),
                }
            ),
        )

        result = await client.stamp(HASH)

        assert result.method == AnchorMethod.EXTERNAL
        assert result.authority == second
        assert [(a.authority, a.succeeded) for a in result.attempts] == [
            (first, False),
            (second, True),
        ]
        assert "timed out" in result.attempts[0].error
        await client.close()

    @pytest.mark.asyncio
    async def test_internal_proof_when_all_fail(self, policy, fake_authorities):
        first, second = policy.authorities
        client = make_client(
            policy,
            fake_authorities(
                {
                    first: httpx.Response(500),
                    second: httpx.ConnectError("refused"),
                }
            ),
        )

        result = await client.stamp(HASH)

        assert result.method == AnchorMethod.INTERNAL
        assert result.authority is None
        assert len(result.attempts) == 2
        assert not any(a.succeeded for a in result.attempts)
        assert result.note.startswith("All timestamping authorities unavailable")

        proof = json.loads(result.proof)
        assert proof["hash"] == HASH
        assert proof["method"] == "internal"
        assert proof["note"] == result.note
        assert "timestamp" in proof
        await client.close()

    @pytest.mark.asyncio
    async def test_no_authorities_configured(self, fake_authorities):
        client = make_client(RetryPolicy(authorities=()), fake_authorities({}))

        result = await client.stamp(HASH)

        assert result.method == AnchorMethod.INTERNAL
        assert result.attempts == ()
        assert result.note == "No timestamping authorities configured; anchored internally"
        await client.close()


class TestInternalProof:
    """Tests for the self-issued proof document."""

    def test_proof_is_stable_json(self):
        issued = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)

        proof = build_internal_proof(HASH, "fallback", issued)

        assert proof == build_internal_proof(HASH, "fallback", issued)
        assert json.loads(proof) == {
            "hash": HASH,
            "method": "internal",
            "note": "fallback",
            "timestamp": "2026-01-02T03:04:05+00:00",
        }
