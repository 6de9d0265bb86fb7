"""
Existence confirmation for accounts announced by the change feed.
"""

import logging

from ldap_watch.ldap_client import DirectoryUnavailable
from ldap_watch.retry import attempt_with_reconnect

logger = logging.getLogger(__name__)


class ExistenceVerifier:
    """
    Answers "does this account exist right now?" against the directory.

    A failed lookup is retried once on a fresh connection; a second failure
    is raised as ``DirectoryUnavailable``.
    """

    def __init__(self, directory):
        self.directory = directory

    def exists(self, account_id: str) -> bool:
        result = attempt_with_reconnect(
            lambda: self.directory.find_by_account_name(account_id),
            self.directory.reconnect,
            operation_name=f"Lookup of {account_id}"
        )
        if not result.ok:
            raise DirectoryUnavailable(
                f"Lookup of {account_id} failed after {result.attempts} attempt(s): {result.error}"
            ) from result.error

        found = result.value
        return bool(found) and bool(found.get('has_valid_identity'))
