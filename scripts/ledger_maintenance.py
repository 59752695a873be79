#!/usr/bin/env python3
"""
StampLedger maintenance jobs (for cron).

Usage:
    # Rebuild every cached balance that drifted from the ledger
    python3 scripts/ledger_maintenance.py reconcile

    # Reconcile a single user
    python3 scripts/ledger_maintenance.py reconcile --user-id user-123

    # Fail abandoned PROCESSING registrations, then resubmit pending/failed
    # registrations that still have attempts left
    python3 scripts/ledger_maintenance.py retry-registrations --limit 100

    # Verbose logging
    python3 scripts/ledger_maintenance.py --verbose reconcile
"""

import argparse
import asyncio
import logging
import sys

from stampledger.config import settings
from stampledger.db.session import close_engines, get_write_session
from stampledger.services.content import FilesystemContentSource
from stampledger.services.ledger import LedgerService
from stampledger.services.pipeline import RegistrationPipeline
from stampledger.services.reconciler import BalanceReconciler
from stampledger.services.timestamping import TimestampClient, retry_policy_from_settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


async def reconcile(user_id: str | None) -> int:
    """Reconcile one or all users. Returns the number of corrected caches."""
    async with get_write_session() as session:
        reconciler = BalanceReconciler(session)
        if user_id:
            results = [await reconciler.reconcile(user_id)]
        else:
            results = await reconciler.reconcile_all()

    corrected = [r for r in results if r.corrected]
    for result in corrected:
        logger.warning(
            f"Corrected {result.user_id}: cache={result.cache_available} "
            f"ledger={result.ledger_available}"
        )
    logger.info(f"Reconciled {len(results)} user(s), corrected {len(corrected)}")
    return len(corrected)


async def retry_registrations(limit: int) -> int:
    """Resubmit eligible registrations. Returns the number still FAILED."""
    policy = retry_policy_from_settings()
    client = TimestampClient(policy)
    try:
        async with get_write_session() as session:
            pipeline = RegistrationPipeline(
                session=session,
                ledger=LedgerService(session),
                timestamp_client=client,
                content_source=FilesystemContentSource(settings.content_root),
                policy=policy,
            )
            outcomes = await pipeline.retry_pending(limit)
    finally:
        await client.close()

    failed = [o for o in outcomes if o.status.value == "FAILED"]
    for outcome in failed:
        logger.warning(f"Registration {outcome.registration_id} failed: {outcome.error_reason}")
    logger.info(f"Submitted {len(outcomes)} registration(s), {len(failed)} failed")
    return len(failed)


def main() -> int:
    parser = argparse.ArgumentParser(description="StampLedger maintenance jobs")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    reconcile_parser = subparsers.add_parser("reconcile", help="Reconcile cached balances")
    reconcile_parser.add_argument("--user-id", help="Only reconcile this user")

    retry_parser = subparsers.add_parser(
        "retry-registrations", help="Resubmit pending/failed registrations"
    )
    retry_parser.add_argument("--limit", type=int, default=50, help="Max registrations")

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    async def run() -> int:
        try:
            if args.command == "reconcile":
                await reconcile(args.user_id)
                return 0
            failed = await retry_registrations(args.limit)
            return 1 if failed else 0
        finally:
            await close_engines()

    try:
        return asyncio.run(run())
    except Exception as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
