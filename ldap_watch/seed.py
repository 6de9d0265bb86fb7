"""
First-run seeding of the ledger.

When no ledger file exists yet, every user account already in the directory
is recorded with ``reacted = 0`` so that later change events for those
accounts are never mistaken for new ones. Running the seed again is
harmless: existing rows are never modified.
"""

import logging
from typing import Dict, Iterable

logger = logging.getLogger(__name__)


def seed_ledger(ledger, account_names: Iterable[str]) -> Dict[str, int]:
    """
    Record every account in ``account_names`` as pre-existing.

    Args:
        ledger: Ledger to write to
        account_names: Iterable of account identifiers (e.g. from
            ``DirectoryClient.iter_user_accounts``)

    Returns:
        Counts of ``seen``, ``inserted`` and ``already_present`` accounts

    Raises:
        LedgerWriteFailure: If any insert fails
    """
    logger.info("First run: initializing the ledger with existing user accounts")

    stats = {'seen': 0, 'inserted': 0, 'already_present': 0}
    for account_name in account_names:
        stats['seen'] += 1
        if ledger.record_existing(account_name):
            stats['inserted'] += 1
        else:
            stats['already_present'] += 1

        if stats['seen'] % 1000 == 0:
            logger.info(f"Seeded {stats['seen']} accounts so far")

    logger.info(f"Ledger initialization complete: {stats['seen']} accounts seen, "
                f"{stats['inserted']} recorded, {stats['already_present']} already present")
    return stats
