#!/usr/bin/env python3
"""
Promind Ledger Audit

Replays every token account's transaction log and compares the result with
the live balance. Exits non-zero when any account disagrees.

Usage:
    # Audit all accounts
    python3 scripts/audit_ledger.py

    # Audit specific users
    python3 scripts/audit_ledger.py --user 123456789 --user 987654321

    # Verbose logging
    python3 scripts/audit_ledger.py --verbose
"""

import argparse
import asyncio
import sys

from sqlalchemy import select

from promind.config import settings
from promind.db.models import TokenAccount
from promind.db.session import close_engines, get_write_session
from promind.exceptions import AccountNotFoundError, DataIntegrityError
from promind.observability import get_logger, setup_logging
from promind.services.ledger import LedgerService

logger = get_logger("audit_ledger")


async def audit(user_ids: list[int] | None) -> int:
    """Audit accounts; returns the number of mismatches."""
    async with get_write_session() as session:
        if user_ids:
            targets = user_ids
        else:
            stmt = select(TokenAccount.user_id).order_by(TokenAccount.user_id)
            result = await session.execute(stmt)
            targets = list(result.scalars().all())

        ledger = LedgerService(session)
        mismatches = 0
        for user_id in targets:
            try:
                balance = await ledger.verify_balance(user_id)
            except DataIntegrityError as exc:
                mismatches += 1
                logger.error("audit_account_mismatch", user_id=user_id, error=exc.message)
                continue
            except AccountNotFoundError:
                mismatches += 1
                logger.error("audit_account_missing", user_id=user_id)
                continue
            logger.debug("audit_account_ok", user_id=user_id, balance=balance)

    logger.info("audit_finished", accounts=len(targets), mismatches=mismatches)
    return mismatches


async def main() -> int:
    parser = argparse.ArgumentParser(description="Replay token ledgers and report mismatches")
    parser.add_argument("--user", type=int, action="append", dest="users", help="User id to audit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log every account")
    args = parser.parse_args()

    if args.verbose:
        settings.log_level = "DEBUG"
    setup_logging()

    try:
        mismatches = await audit(args.users)
    finally:
        await close_engines()
    return 1 if mismatches else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
