"""
LDAP User Watch - React exactly once to every new user account in a directory.

This package subscribes to Active Directory change notifications, confirms
that each newly announced user account really exists, and invokes a
configurable downstream action at most once per account using a durable
SQLite ledger.
"""

__version__ = "1.0.0"
__author__ = "LDAP Watch Team"
