"""
Tests for public hash and proof verification.
"""

import hashlib

import pytest
from hypothesis import given
from hypothesis import strategies as st

from stampledger.db.models import Anchor
from stampledger.models.api import AnchorMethod, RegistrationStatus, VerificationStatus
from stampledger.services.verification import (
    OTS_HEADER_MAGIC,
    OTS_OP_SHA256,
    VerificationService,
    extract_proof_digest,
    normalize_hash,
)

CONTENT_HASH = hashlib.sha256(b"my original work").hexdigest()


def ots_proof(digest_hex: str, op: int = OTS_OP_SHA256, tail: bytes = b"\xf0\x10") -> bytes:
    """Minimal proof file: header, op byte, digest, then calendar operations."""
    return OTS_HEADER_MAGIC + bytes([op]) + bytes.fromhex(digest_hex) + tail


@pytest.fixture
def service(db_session) -> VerificationService:
    return VerificationService(db_session)


async def anchor(db_session, registration_id, method=AnchorMethod.EXTERNAL) -> Anchor:
    row = Anchor(
        registration_id=registration_id,
        method=method,
        authority="https://a.calendar.test" if method == AnchorMethod.EXTERNAL else None,
        proof=b"proof",
    )
    db_session.add(row)
    await db_session.commit()
    return row


class TestNormalizeHash:
    """Tests for hash format validation."""

    def test_uppercase_and_whitespace_accepted(self):
        assert normalize_hash(f"  {CONTENT_HASH.upper()} ") == CONTENT_HASH

    @pytest.mark.parametrize("value", [None, "", "abc", "g" * 64, "a" * 63, "a" * 65])
    def test_bad_values_rejected(self, value):
        assert normalize_hash(value) is None

    @given(st.binary())
    def test_any_sha256_digest_accepted(self, data):
        digest = hashlib.sha256(data).hexdigest()
        assert normalize_hash(digest) == digest


class TestExtractProofDigest:
    """Tests for the proof header parser."""

    def test_digest_extracted(self):
        assert extract_proof_digest(ots_proof(CONTENT_HASH)) == CONTENT_HASH

    def test_wrong_magic(self):
        proof = b"\x01" + ots_proof(CONTENT_HASH)[1:]
        assert extract_proof_digest(proof) is None

    def test_wrong_hash_op(self):
        # 0x02 is SHA-1 in the proof format
        assert extract_proof_digest(ots_proof("ab" * 32, op=0x02)) is None

    def test_truncated(self):
        assert extract_proof_digest(ots_proof(CONTENT_HASH)[:-10]) is None

    @given(st.binary(max_size=200))
    def test_random_bytes_never_raise(self, data):
        assert extract_proof_digest(data) in (None, data[32:64].hex())


class TestVerifyHash:
    """Tests for hash lookup."""

    @pytest.mark.asyncio
    async def test_invalid_format(self, service):
        result = await service.verify_hash("not-a-hash")

        assert result.status == VerificationStatus.INVALID_FORMAT
        assert result.hash == "not-a-hash"

    @pytest.mark.asyncio
    async def test_unknown_hash(self, service):
        result = await service.verify_hash(CONTENT_HASH)

        assert result.status == VerificationStatus.NOT_FOUND
        assert result.found is False

    @pytest.mark.asyncio
    async def test_confirmed_registration(self, service, make_registration, db_session):
        registration_id = await make_registration(
            status=RegistrationStatus.CONFIRMED, content_hash=CONTENT_HASH
        )
        row = await anchor(db_session, registration_id)

        result = await service.verify_hash(CONTENT_HASH.upper())

        assert result.status == VerificationStatus.VERIFIED
        assert result.hash == CONTENT_HASH
        assert result.registration_id == registration_id
        assert result.anchor.anchor_id == row.id
        assert result.anchor.externally_verifiable is True

    @pytest.mark.asyncio
    async def test_internal_anchor_is_flagged(self, service, make_registration, db_session):
        registration_id = await make_registration(
            status=RegistrationStatus.CONFIRMED, content_hash=CONTENT_HASH
        )
        await anchor(db_session, registration_id, method=AnchorMethod.INTERNAL)

        result = await service.verify_hash(CONTENT_HASH)

        assert result.verified is True
        assert result.anchor.externally_verifiable is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [RegistrationStatus.PENDING, RegistrationStatus.PROCESSING]
    )
    async def test_in_flight_registration(self, service, make_registration, status):
        registration_id = await make_registration(status=status, content_hash=CONTENT_HASH)

        result = await service.verify_hash(CONTENT_HASH)

        assert result.status == VerificationStatus.PROCESSING
        assert result.registration_id == registration_id
        assert result.anchor is None

    @pytest.mark.asyncio
    async def test_failed_registration_is_not_found(self, service, make_registration):
        await make_registration(status=RegistrationStatus.FAILED, content_hash=CONTENT_HASH)

        result = await service.verify_hash(CONTENT_HASH)

        assert result.status == VerificationStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_confirmed_wins_over_in_flight(self, service, make_registration, db_session):
        await make_registration(
            owner_id="user-2", status=RegistrationStatus.PENDING, content_hash=CONTENT_HASH
        )
        confirmed_id = await make_registration(
            status=RegistrationStatus.CONFIRMED, content_hash=CONTENT_HASH
        )
        await anchor(db_session, confirmed_id)

        result = await service.verify_hash(CONTENT_HASH)

        assert result.status == VerificationStatus.VERIFIED
        assert result.registration_id == confirmed_id


class TestVerifyProof:
    """Tests for uploaded proof checks."""

    @pytest.mark.asyncio
    async def test_matching_proof_without_registration(self, service):
        result = await service.verify_proof(ots_proof(CONTENT_HASH), CONTENT_HASH)

        assert result.status == VerificationStatus.VERIFIED
        assert result.registration_id is None
        assert result.anchor is None

    @pytest.mark.asyncio
    async def test_matching_proof_with_confirmed_registration(
        self, service, make_registration, db_session
    ):
        registration_id = await make_registration(
            status=RegistrationStatus.CONFIRMED, content_hash=CONTENT_HASH
        )
        await anchor(db_session, registration_id)

        result = await service.verify_proof(ots_proof(CONTENT_HASH), CONTENT_HASH)

        assert result.status == VerificationStatus.VERIFIED
        assert result.registration_id == registration_id
        assert result.anchor is not None

    @pytest.mark.asyncio
    async def test_mismatched_proof(self, service):
        result = await service.verify_proof(ots_proof("ab" * 32), CONTENT_HASH)

        assert result.status == VerificationStatus.NOT_FOUND
        assert result.message == "Proof does not match this hash"

    @pytest.mark.asyncio
    async def test_garbage_proof(self, service):
        result = await service.verify_proof(b"definitely not a proof", CONTENT_HASH)

        assert result.status == VerificationStatus.INVALID_FORMAT

    @pytest.mark.asyncio
    async def test_bad_hash(self, service):
        result = await service.verify_proof(ots_proof(CONTENT_HASH), "xyz")

        assert result.status == VerificationStatus.INVALID_FORMAT
