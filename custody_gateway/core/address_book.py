"""SQLite address book: user identity -> custody wallet id (+ cached address).

The only state the gateway owns. Holds no keys, tokens or balances; one row
per user, created at signup and never deleted by the gateway.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import structlog

from custody_gateway.errors import ConflictError, NotFoundError, UpstreamError

log = structlog.get_logger()


@dataclass(frozen=True)
class UserWalletMapping:
    user_id: str
    wallet_id: str
    cached_address: str | None
    created_at: str
    updated_at: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AddressBook:
    """SQLite-backed store of user -> wallet mappings.

    ``user_id`` and ``wallet_id`` are each unique. Pass ``None`` as the path
    for an in-memory database (tests).
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self._lock = threading.Lock()
        if db_path is not None and str(db_path) != ":memory:":
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(path), check_same_thread=False)
        else:
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS user_wallets (
                user_id         TEXT PRIMARY KEY,
                wallet_id       TEXT NOT NULL UNIQUE,
                cached_address  TEXT,
                created_at      TEXT NOT NULL,
                updated_at      TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def _fetch(self, user_id: str) -> UserWalletMapping | None:
        row = self._conn.execute(
            "SELECT user_id, wallet_id, cached_address, created_at, updated_at "
            "FROM user_wallets WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return UserWalletMapping(*row) if row else None

    def save(
        self, user_id: str, wallet_id: str, address: str | None = None
    ) -> UserWalletMapping:
        """Insert the mapping for a new user. Raises ConflictError on duplicates."""
        now = _now()
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO user_wallets (user_id, wallet_id, cached_address, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (user_id, wallet_id, address, now, now),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise ConflictError(f"Wallet mapping already exists for user {user_id}") from e
            except sqlite3.Error as e:
                self._conn.rollback()
                log.error("address_book_save_failed", user_id=user_id, err=str(e))
                raise UpstreamError("database", f"Failed to save user wallet: {e}") from e
            log.info("wallet_mapping_saved", user_id=user_id, wallet_id=wallet_id)
            return UserWalletMapping(user_id, wallet_id, address, now, now)

    def get(self, user_id: str) -> UserWalletMapping | None:
        with self._lock:
            try:
                return self._fetch(user_id)
            except sqlite3.Error as e:
                raise UpstreamError("database", f"Failed to fetch user wallet: {e}") from e

    def require(self, user_id: str) -> UserWalletMapping:
        """Like ``get`` but raises NotFoundError when the user has no wallet."""
        mapping = self.get(user_id)
        if mapping is None:
            raise NotFoundError("Wallet not found for this user")
        return mapping

    def update_address(self, user_id: str, address: str) -> UserWalletMapping:
        """Cache the chain address once the custody provider reports it."""
        with self._lock:
            try:
                cur = self._conn.execute(
                    "UPDATE user_wallets SET cached_address = ?, updated_at = ? WHERE user_id = ?",
                    (address, _now(), user_id),
                )
                self._conn.commit()
                if cur.rowcount == 0:
                    raise NotFoundError("Wallet not found for this user")
                mapping = self._fetch(user_id)
            except sqlite3.Error as e:
                self._conn.rollback()
                raise UpstreamError("database", f"Failed to update wallet address: {e}") from e
        log.info("wallet_address_cached", user_id=user_id, address=address)
        return mapping  # type: ignore[return-value]

    def ping(self) -> bool:
        with self._lock:
            try:
                self._conn.execute("SELECT 1").fetchone()
                return True
            except sqlite3.Error:
                return False

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
