"""
Replay guard for payment authorizations.

An authorization id may be consumed exactly once. The guarantee rests on a
single ``INSERT OR IGNORE`` against a primary key, so concurrent verifiers in
any thread or process race on the database and exactly one of them wins.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from pathlib import Path
from typing import Optional

from .models import ReplayRecord
from .storage import connect, ensure_private_file, init_pragmas


logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


def normalize_authorization_id(authorization_id: str) -> str:
    value = (authorization_id or "").strip().lower()
    if not value:
        raise ValueError("authorization_id is required")
    return value


class ReplayGuard:
    def __init__(self, db_path: Path, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.db_path = db_path
        self.retention_days = retention_days
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            init_pragmas(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS replay_records (
                    authorization_id TEXT PRIMARY KEY,
                    tenant_id TEXT,
                    decision_id TEXT,
                    first_seen_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_replay_first_seen
                ON replay_records (first_seen_at)
                """
            )
        ensure_private_file(self.db_path)

    def check(self, authorization_id: str) -> bool:
        """Return True if the authorization was already consumed and has not expired."""
        auth_id = normalize_authorization_id(authorization_id)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT expires_at FROM replay_records WHERE authorization_id = ?",
                (auth_id,),
            ).fetchone()
        return row is not None and row["expires_at"] > time.time()

    def record_if_absent(
        self,
        authorization_id: str,
        tenant_id: Optional[str] = None,
        decision_id: Optional[str] = None,
    ) -> bool:
        """Consume the authorization. Returns False if another caller already did."""
        auth_id = normalize_authorization_id(authorization_id)
        now = time.time()
        expires = now + self.retention_days * 86400
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO replay_records (
                    authorization_id, tenant_id, decision_id, first_seen_at, expires_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (auth_id, tenant_id, decision_id, now, expires),
            )
            accepted = cur.rowcount == 1
        if not accepted:
            logger.info("Replay rejected for authorization %s", auth_id)
        return accepted

    def get(self, authorization_id: str) -> Optional[ReplayRecord]:
        auth_id = normalize_authorization_id(authorization_id)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM replay_records WHERE authorization_id = ?",
                (auth_id,),
            ).fetchone()
        if row is None:
            return None
        return ReplayRecord(
            authorization_id=row["authorization_id"],
            tenant_id=row["tenant_id"],
            decision_id=row["decision_id"],
            first_seen_at=row["first_seen_at"],
            expires_at=row["expires_at"],
        )

    def cleanup(self, retention_days: Optional[int] = None) -> int:
        """Delete records first seen before the retention window. Returns rows deleted."""
        days = self.retention_days if retention_days is None else retention_days
        if days < 0:
            raise ValueError("retention_days must be non-negative")
        cutoff = time.time() - days * 86400
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM replay_records WHERE first_seen_at < ?",
                (cutoff,),
            )
            deleted = cur.rowcount
        logger.info("Replay cleanup removed %d records older than %d days", deleted, days)
        return deleted
