"""
Durable record of which accounts have already triggered the downstream action.

The ledger is a single SQLite file with one row per account. A row with
``reacted = 0`` means "known, but never reacted to" (written by the first-run
seed); ``reacted = 1`` means the downstream action has succeeded for that
account. ``reacted`` only ever moves from 0 to 1.
"""

import os
import sqlite3
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS account_ledger (
    account_id TEXT PRIMARY KEY,
    reacted INTEGER NOT NULL DEFAULT 0,
    recorded_at TEXT NOT NULL
)
"""


class LedgerError(Exception):
    """Raised when the ledger cannot be opened or read."""
    pass


class LedgerWriteFailure(LedgerError):
    """Raised when a ledger write fails."""
    pass


@dataclass(frozen=True)
class AccountRecord:
    account_id: str
    reacted: bool
    recorded_at: datetime


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Ledger:
    """
    SQLite-backed account ledger.

    One connection is opened at construction and shared by every caller;
    statements are serialized with a lock so concurrent event pipelines can
    use the same instance.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._lock = threading.Lock()

        directory = os.path.dirname(os.path.abspath(db_path))
        try:
            os.makedirs(directory, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
            self._conn.execute(SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise LedgerError(f"Failed to open ledger {db_path}: {e}")

        logger.debug(f"Ledger opened at {db_path}")

    @staticmethod
    def is_initialized(db_path: str) -> bool:
        """True if the ledger file already exists (i.e. this is not a first run)."""
        return os.path.exists(db_path)

    def _read(self, sql: str, params: tuple = ()):
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise LedgerError(f"Ledger read failed: {e}")

    def _write(self, sql: str, params: tuple) -> int:
        with self._lock:
            try:
                return self._conn.execute(sql, params).rowcount
            except sqlite3.Error as e:
                raise LedgerWriteFailure(f"Ledger write failed: {e}")

    def exists(self, account_id: str) -> bool:
        """True if a row exists for the account, whatever its ``reacted`` value."""
        row = self._read("SELECT 1 FROM account_ledger WHERE account_id = ?", (account_id,))
        return row is not None

    def has_reacted(self, account_id: str) -> bool:
        row = self._read("SELECT reacted FROM account_ledger WHERE account_id = ?", (account_id,))
        return row is not None and bool(row[0])

    def mark_reacted(self, account_id: str) -> bool:
        """
        Record that the downstream action succeeded for ``account_id``.

        Returns:
            True if a row was inserted or flipped, False if it was already reacted

        Raises:
            LedgerWriteFailure: If the write fails
        """
        written = self._write(
            "INSERT INTO account_ledger (account_id, reacted, recorded_at) VALUES (?, 1, ?) "
            "ON CONFLICT(account_id) DO UPDATE SET reacted = 1, recorded_at = excluded.recorded_at "
            "WHERE account_ledger.reacted = 0",
            (account_id, _now())
        )
        return written > 0

    def record_existing(self, account_id: str) -> bool:
        """
        Insert a ``reacted = 0`` row for an account that already exists.

        Existing rows are left untouched.

        Returns:
            True if a row was inserted
        """
        written = self._write(
            "INSERT OR IGNORE INTO account_ledger (account_id, reacted, recorded_at) VALUES (?, 0, ?)",
            (account_id, _now())
        )
        return written > 0

    def get(self, account_id: str) -> Optional[AccountRecord]:
        row = self._read(
            "SELECT account_id, reacted, recorded_at FROM account_ledger WHERE account_id = ?",
            (account_id,)
        )
        if row is None:
            return None
        return AccountRecord(account_id=row[0], reacted=bool(row[1]),
                             recorded_at=datetime.fromisoformat(row[2]))

    def count(self, reacted: Optional[bool] = None) -> int:
        if reacted is None:
            row = self._read("SELECT COUNT(*) FROM account_ledger")
        else:
            row = self._read("SELECT COUNT(*) FROM account_ledger WHERE reacted = ?", (int(reacted),))
        return row[0]

    def close(self):
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing ledger: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
