"""
Verification Service - Public, read-only checks of hashes and proofs.

NO DICTIONARIES - Answers are VerificationResult dataclasses.
"""

import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stampledger.db.models import Anchor, Registration
from stampledger.models.api import RegistrationStatus, VerificationStatus
from stampledger.models.domain import VerificationResult
from stampledger.observability import get_logger
from stampledger.services.pipeline import anchor_to_domain

logger = get_logger(__name__)

HASH_PATTERN = re.compile(r"^[a-f0-9]{64}$")

# "\x00OpenTimestamps\x00\x00Proof\x00" followed by the format's magic tail
OTS_HEADER_MAGIC = bytes.fromhex("004f70656e54696d657374616d7073000050726f6f6600bf89e2e884e89294")
OTS_OP_SHA256 = 0x08
SHA256_DIGEST_SIZE = 32

IN_FLIGHT_STATUSES = (RegistrationStatus.PENDING, RegistrationStatus.PROCESSING)


def normalize_hash(value: str | None) -> str | None:
    """Lowercase, stripped hex digest, or None if it isn't one."""
    if value is None:
        return None
    candidate = value.strip().lower()
    return candidate if HASH_PATTERN.match(candidate) else None


def extract_proof_digest(proof: bytes) -> str | None:
    """
    Digest a proof file commits to, or None if it isn't an OpenTimestamps file.

    Layout: header magic, one op byte (0x08 for SHA-256), then the 32-byte digest.
    """
    if len(proof) < len(OTS_HEADER_MAGIC) + 1 + SHA256_DIGEST_SIZE:
        return None
    if not proof.startswith(OTS_HEADER_MAGIC):
        return None

    offset = len(OTS_HEADER_MAGIC)
    if proof[offset] != OTS_OP_SHA256:
        return None
    return proof[offset + 1 : offset + 1 + SHA256_DIGEST_SIZE].hex()


class VerificationService:
    """Answers 'did this content exist, and since when?'"""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def verify_hash(self, content_hash: str | None) -> VerificationResult:
        """
        Look a hash up among registrations.

        Confirmed registrations win (newest first); pending or processing ones
        answer PROCESSING; failed or unknown hashes are NOT_FOUND.
        """
        normalized = normalize_hash(content_hash)
        if normalized is None:
            return VerificationResult(
                status=VerificationStatus.INVALID_FORMAT,
                hash=content_hash,
                message="Hash must be 64 hexadecimal characters (SHA-256)",
            )

        confirmed_stmt = (
            select(Registration, Anchor)
            .join(Anchor, Anchor.registration_id == Registration.id)
            .where(Registration.content_hash == normalized)
            .where(Registration.status == RegistrationStatus.CONFIRMED)
            .order_by(Registration.created_at.desc())
            .limit(1)
        )
        row = (await self.session.execute(confirmed_stmt)).first()
        if row is not None:
            registration, anchor = row
            logger.info("hash_verified", hash=normalized, registration_id=str(registration.id))
            return VerificationResult(
                status=VerificationStatus.VERIFIED,
                hash=normalized,
                message="Registration confirmed",
                registration_id=registration.id,
                anchor=anchor_to_domain(anchor),
            )

        pending_stmt = (
            select(Registration.id)
            .where(Registration.content_hash == normalized)
            .where(Registration.status.in_(IN_FLIGHT_STATUSES))
            .limit(1)
        )
        pending_id = (await self.session.execute(pending_stmt)).scalar_one_or_none()
        if pending_id is not None:
            return VerificationResult(
                status=VerificationStatus.PROCESSING,
                hash=normalized,
                message="Registration is being anchored",
                registration_id=pending_id,
            )

        return VerificationResult(
            status=VerificationStatus.NOT_FOUND,
            hash=normalized,
            message="No registration found for this hash",
        )

    async def verify_proof(self, proof: bytes, content_hash: str | None) -> VerificationResult:
        """
        Check that an uploaded proof file commits to content_hash.

        This is a structural check of the proof only; anchor metadata is added
        when a confirmed registration for the hash exists.
        """
        normalized = normalize_hash(content_hash)
        if normalized is None:
            return VerificationResult(
                status=VerificationStatus.INVALID_FORMAT,
                hash=content_hash,
                message="Hash must be 64 hexadecimal characters (SHA-256)",
            )

        digest = extract_proof_digest(proof)
        if digest is None:
            return VerificationResult(
                status=VerificationStatus.INVALID_FORMAT,
                hash=normalized,
                message="Not a valid OpenTimestamps SHA-256 proof",
            )

        if digest != normalized:
            logger.info("proof_hash_mismatch", hash=normalized, proof_digest=digest)
            return VerificationResult(
                status=VerificationStatus.NOT_FOUND,
                hash=normalized,
                message="Proof does not match this hash",
            )

        known = await self.verify_hash(normalized)
        return VerificationResult(
            status=VerificationStatus.VERIFIED,
            hash=normalized,
            message="Proof matches this hash",
            registration_id=known.registration_id if known.verified else None,
            anchor=known.anchor if known.verified else None,
        )
