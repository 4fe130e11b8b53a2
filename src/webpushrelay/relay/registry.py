"""Persistent registries backing verification and token dedup."""

import sqlite3
import time

import structlog

from webpushrelay.relay.db import RelayDatabase, StorageError
from webpushrelay.relay.models import (
    ServerKeyRecord,
    TokenCheckRecord,
    TokenCheckResult,
)

logger = structlog.get_logger()


class ServerKeyRegistry:
    """One VAPID public key per client_id, last write wins.

    Keys are stored as given; they are only checked for being a
    valid P-256 point when a callback is verified against them.
    """

    def __init__(self, db: RelayDatabase) -> None:
        self._db = db

    def upsert(self, client_id: str, public_key: bytes) -> None:
        """Insert or replace the key for client_id."""
        now = time.time()
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO webpush_server_key"
                " (client_id, public_key, created_at, updated_at)"
                " VALUES (?, ?, ?, ?)"
                " ON CONFLICT(client_id) DO UPDATE SET"
                "   public_key = excluded.public_key,"
                "   updated_at = excluded.updated_at",
                (client_id, public_key, now, now),
            )

    def lookup(self, client_id: str) -> ServerKeyRecord | None:
        """Registered key for client_id, or None."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT client_id, public_key FROM webpush_server_key"
                " WHERE client_id = ?",
                (client_id,),
            ).fetchone()
        if row is None:
            return None
        return ServerKeyRecord(client_id=row[0], public_key=bytes(row[1]))


class TokenRegistry:
    """First-write-wins mapping of token digest to install id.

    The UNIQUE index on token_digest decides which of several
    concurrent first registrations creates the row. Losers fall
    back to comparing install ids with the stored row.
    """

    def __init__(self, db: RelayDatabase) -> None:
        self._db = db

    def check_or_register(
        self,
        token_digest: str,
        install_id: str,
    ) -> TokenCheckResult:
        """Register a new digest or confirm an existing one.

        Returns:
            REGISTERED when this call created the record,
            REFRESHED when the stored install_id matches (its
            updated_at is bumped), IDENTITY_MISMATCH when another
            install owns the digest (the record is left untouched).
        """
        now = time.time()
        try:
            with self._db.transaction() as conn:
                conn.execute(
                    "INSERT INTO webpush_token_check"
                    " (token_digest, install_id, created_at, updated_at)"
                    " VALUES (?, ?, ?, ?)",
                    (token_digest, install_id, now, now),
                )
            return TokenCheckResult.REGISTERED
        except sqlite3.IntegrityError:
            pass

        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT install_id FROM webpush_token_check"
                " WHERE token_digest = ?",
                (token_digest,),
            ).fetchone()
            if row is None:
                # Rows are never deleted, so a conflict without a row
                # means the store is not behaving.
                msg = f"token_digest conflict but no row: {token_digest}"
                raise StorageError(msg)
            if row[0] != install_id:
                logger.warning(
                    "token_check_mismatch",
                    token_digest=token_digest,
                    install_id=install_id,
                )
                return TokenCheckResult.IDENTITY_MISMATCH
            cur = conn.execute(
                "UPDATE webpush_token_check SET updated_at = ?"
                " WHERE token_digest = ? AND install_id = ?",
                (now, token_digest, install_id),
            )
            if cur.rowcount != 1:
                logger.info(
                    "token_check_update_rowcount",
                    token_digest=token_digest,
                    affected=cur.rowcount,
                )
        return TokenCheckResult.REFRESHED

    def get(self, token_digest: str) -> TokenCheckRecord | None:
        """Stored record for token_digest, or None."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT token_digest, install_id, created_at, updated_at"
                " FROM webpush_token_check WHERE token_digest = ?",
                (token_digest,),
            ).fetchone()
        if row is None:
            return None
        return TokenCheckRecord(
            token_digest=row[0],
            install_id=row[1],
            created_at=row[2],
            updated_at=row[3],
        )

    def count(self) -> int:
        """Number of stored token records."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM webpush_token_check",
            ).fetchone()
        return int(row[0])
