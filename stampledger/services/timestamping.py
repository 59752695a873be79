"""
Timestamp Client - Submits content hashes to timestamping authorities.

Authorities are OpenTimestamps calendar servers. Each one is tried in policy
order; the first usable proof wins. When every authority fails the hash is
anchored internally instead, and the proof says so.
"""

import json
import time
from datetime import UTC, datetime, timedelta

import httpx

from stampledger.config import settings
from stampledger.exceptions import AuthorityError
from stampledger.models.api import AnchorMethod
from stampledger.models.domain import AuthorityAttempt, RetryPolicy, StampResult
from stampledger.observability import get_logger, metrics
from stampledger.observability.tracing import add_span_attributes, trace_operation

logger = get_logger(__name__)

OTS_MEDIA_TYPE = "application/vnd.opentimestamps.v1"
INTERNAL_PROOF_METHOD = "internal"


def retry_policy_from_settings() -> RetryPolicy:
    """Build the submission policy from configuration."""
    return RetryPolicy(
        authorities=tuple(settings.authority_urls),
        timeout_seconds=settings.timestamp_timeout_seconds,
        max_attempts=settings.max_submission_attempts,
        stale_after=timedelta(minutes=settings.stale_processing_minutes),
    )


def build_internal_proof(hash_hex: str, note: str, timestamp: datetime | None = None) -> bytes:
    """Self-issued proof: the hash plus the moment this service saw it."""
    issued_at = timestamp or datetime.now(UTC)
    return json.dumps(
        {
            "hash": hash_hex,
            "timestamp": issued_at.isoformat(),
            "method": INTERNAL_PROOF_METHOD,
            "note": note,
        },
        sort_keys=True,
    ).encode("utf-8")


class TimestampClient:
    """HTTP client for a list of timestamping authorities."""

    def __init__(self, policy: RetryPolicy, http_client: httpx.AsyncClient | None = None) -> None:
        self.policy = policy
        self.timeout = httpx.Timeout(policy.timeout_seconds)
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def submit(self, authority: str, hash_hex: str) -> bytes:
        """
        POST the hex digest to one authority and return its proof bytes.

        Raises:
            AuthorityError: On timeout, transport failure, non-2xx or empty body
        """
        url = f"{authority.rstrip('/')}/digest"
        try:
            response = await self.http_client.post(
                url,
                content=hash_hex.encode("ascii"),
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": OTS_MEDIA_TYPE,
                },
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise AuthorityError(
                authority, f"timed out after {self.policy.timeout_seconds}s"
            ) from e
        except httpx.HTTPError as e:
            raise AuthorityError(authority, f"request failed: {e}") from e

        if not response.is_success:
            raise AuthorityError(authority, f"HTTP {response.status_code}")
        if not response.content:
            raise AuthorityError(authority, "empty proof")

        return response.content

    async def stamp(self, hash_hex: str) -> StampResult:
        """
        Obtain a proof for hash_hex.

        Never raises for authority failures: they are recorded as attempts and,
        once every authority has failed, an internal proof is returned.
        """
        attempts: list[AuthorityAttempt] = []
        last_error: str | None = None

        for authority in self.policy.authorities:
            start = time.perf_counter()
            try:
                with trace_operation("authority_submission", authority=authority) as span:
                    proof = await self.submit(authority, hash_hex)
                    add_span_attributes(span, proof_bytes=len(proof))
            except AuthorityError as e:
                duration = time.perf_counter() - start
                last_error = str(e)
                attempts.append(
                    AuthorityAttempt(
                        authority=authority,
                        succeeded=False,
                        duration_ms=int(duration * 1000),
                        error=last_error,
                    )
                )
                metrics.record_authority_submission(authority, False, duration)
                logger.warning(
                    "authority_submission_failed",
                    authority=authority,
                    hash=hash_hex,
                    error=last_error,
                )
                continue

            duration = time.perf_counter() - start
            attempts.append(
                AuthorityAttempt(
                    authority=authority, succeeded=True, duration_ms=int(duration * 1000)
                )
            )
            metrics.record_authority_submission(authority, True, duration)
            logger.info(
                "authority_submission_succeeded",
                authority=authority,
                hash=hash_hex,
                proof_bytes=len(proof),
            )
            return StampResult(
                method=AnchorMethod.EXTERNAL,
                authority=authority,
                proof=proof,
                attempts=tuple(attempts),
            )

        if last_error is None:
            note = "No timestamping authorities configured; anchored internally"
        else:
            note = f"All timestamping authorities unavailable; last error: {last_error}"

        logger.error(
            "authority_fallback_internal",
            hash=hash_hex,
            authorities=len(self.policy.authorities),
            last_error=last_error,
        )
        return StampResult(
            method=AnchorMethod.INTERNAL,
            authority=None,
            proof=build_internal_proof(hash_hex, note),
            attempts=tuple(attempts),
            note=note,
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
