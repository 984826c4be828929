"""
Append-only event log for routing decisions.

Each plan/verify attempt produces exactly one row. Rows carry an HMAC hash
chain (``prev_hash`` -> ``event_hash``) so any edit or deletion is detected
by ``verify_chain``. Appends are serialized with ``BEGIN IMMEDIATE`` so the
chain stays linear under concurrent writers.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Any, Optional

from .models import SPEND_OUTCOMES, Event
from .money import amount_to_micros
from .storage import connect, ensure_private_dir, ensure_private_file, init_pragmas


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
KEY_ENV = "SWITCHYARD_EVENT_HMAC_KEY"

_HASHED_FIELDS = (
    "event_id",
    "tenant_id",
    "route_id",
    "decision_id",
    "outcome",
    "network",
    "scheme",
    "asset",
    "amount",
    "amount_micros",
    "facilitator_id",
    "deny_code",
    "steps",
    "trace",
    "raw_payload",
    "created_at",
)


class EventStore:
    """Tamper-evident SQLite event log."""

    def __init__(self, db_path: Path, key_path: Optional[Path] = None):
        self.db_path = db_path
        self.key_path = key_path or db_path.parent / "secrets" / "event_hmac.key"
        ensure_private_dir(self.key_path.parent)
        self._hmac_key = self._load_or_create_key()
        self._init_db()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            init_pragmas(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    tenant_id TEXT NOT NULL,
                    route_id TEXT NOT NULL,
                    decision_id TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    network TEXT,
                    scheme TEXT,
                    asset TEXT,
                    amount TEXT,
                    amount_micros INTEGER NOT NULL DEFAULT 0,
                    facilitator_id TEXT,
                    deny_code TEXT,
                    steps TEXT NOT NULL,
                    trace TEXT NOT NULL,
                    raw_payload TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    prev_hash TEXT,
                    event_hash TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_events_tenant_created
                ON events (tenant_id, created_at)
                """
            )
        ensure_private_file(self.db_path)

    def _event_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def insert_event(
        self,
        tenant_id: str,
        route_id: str,
        decision_id: str,
        outcome: str,
        network: Optional[str] = None,
        scheme: Optional[str] = None,
        asset: Optional[str] = None,
        amount: Optional[str] = None,
        facilitator_id: Optional[str] = None,
        deny_code: Optional[str] = None,
        steps: Optional[list[dict]] = None,
        trace: Optional[dict] = None,
        raw_payload: Optional[dict] = None,
    ) -> Event:
        payload: dict[str, Any] = {
            "event_id": str(uuid.uuid4()),
            "tenant_id": tenant_id,
            "route_id": route_id,
            "decision_id": decision_id,
            "outcome": outcome,
            "network": network,
            "scheme": scheme,
            "asset": asset,
            "amount": amount,
            "amount_micros": amount_to_micros(amount) if amount else 0,
            "facilitator_id": facilitator_id,
            "deny_code": deny_code,
            "steps": steps or [],
            "trace": trace or {},
            "raw_payload": raw_payload or {},
            "created_at": time.time(),
        }

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT event_hash FROM events ORDER BY seq DESC LIMIT 1"
                ).fetchone()
                prev_hash = row["event_hash"] if row else ""
                event_hash = self._event_hash(payload, prev_hash)
                conn.execute(
                    """
                    INSERT INTO events (
                        event_id, tenant_id, route_id, decision_id, outcome, network,
                        scheme, asset, amount, amount_micros, facilitator_id, deny_code,
                        steps, trace, raw_payload, created_at, prev_hash, event_hash
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        payload["event_id"],
                        tenant_id,
                        route_id,
                        decision_id,
                        outcome,
                        network,
                        scheme,
                        asset,
                        amount,
                        payload["amount_micros"],
                        facilitator_id,
                        deny_code,
                        json.dumps(payload["steps"], default=str),
                        json.dumps(payload["trace"], default=str),
                        json.dumps(payload["raw_payload"], default=str),
                        payload["created_at"],
                        prev_hash or None,
                        event_hash,
                    ),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        return Event(
            event_id=payload["event_id"],
            tenant_id=tenant_id,
            route_id=route_id,
            decision_id=decision_id,
            outcome=outcome,
            network=network,
            scheme=scheme,
            asset=asset,
            amount=amount,
            facilitator_id=facilitator_id,
            deny_code=deny_code,
            steps=payload["steps"],
            trace=payload["trace"],
            raw_payload=payload["raw_payload"],
            created_at=payload["created_at"],
            prev_hash=prev_hash or None,
            event_hash=event_hash,
        )

    def query_spend(
        self,
        tenant_id: str,
        since: float,
        until: Optional[float] = None,
        route_id: Optional[str] = None,
    ) -> int:
        """Sum of paid + settled amounts in ``[since, until)``, in micro-dollars."""
        clauses = ["tenant_id = ?", "outcome IN (?, ?)", "created_at >= ?"]
        params: list[Any] = [tenant_id, *SPEND_OUTCOMES, since]
        if until is not None:
            clauses.append("created_at < ?")
            params.append(until)
        if route_id is not None:
            clauses.append("route_id = ?")
            params.append(route_id)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COALESCE(SUM(amount_micros), 0) AS spent FROM events WHERE {' AND '.join(clauses)}",
                params,
            ).fetchone()
        return int(row["spent"])

    def _row_to_event(self, row: sqlite3.Row) -> Event:
        return Event(
            event_id=row["event_id"],
            tenant_id=row["tenant_id"],
            route_id=row["route_id"],
            decision_id=row["decision_id"],
            outcome=row["outcome"],
            network=row["network"],
            scheme=row["scheme"],
            asset=row["asset"],
            amount=row["amount"],
            facilitator_id=row["facilitator_id"],
            deny_code=row["deny_code"],
            steps=json.loads(row["steps"]),
            trace=json.loads(row["trace"]),
            raw_payload=json.loads(row["raw_payload"]),
            created_at=row["created_at"],
            prev_hash=row["prev_hash"],
            event_hash=row["event_hash"],
        )

    def list_events(
        self,
        tenant_id: str,
        route_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        since: Optional[float] = None,
    ) -> list[Event]:
        """Newest first. ``limit`` is capped at 100."""
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))
        clauses = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]
        if route_id:
            clauses.append("route_id = ?")
            params.append(route_id)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM events WHERE {' AND '.join(clauses)}
                ORDER BY seq DESC LIMIT ? OFFSET ?
                """,
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def iter_tenant_events(self, tenant_id: str, since: Optional[float] = None) -> list[Event]:
        """All of a tenant's events in insertion order, for analytics."""
        clauses = ["tenant_id = ?"]
        params: list[Any] = [tenant_id]
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(since)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM events WHERE {' AND '.join(clauses)} ORDER BY seq",
                params,
            ).fetchall()
        return [self._row_to_event(r) for r in rows]

    def verify_chain(self) -> int:
        """Walk the whole log and check every link. Returns the number of events."""
        expected_prev = ""
        count = 0
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM events ORDER BY seq").fetchall()
        for row in rows:
            payload = {k: row[k] for k in _HASHED_FIELDS}
            payload["steps"] = json.loads(payload["steps"])
            payload["trace"] = json.loads(payload["trace"])
            payload["raw_payload"] = json.loads(payload["raw_payload"])
            prev_hash = row["prev_hash"] or ""
            if prev_hash != expected_prev:
                raise RuntimeError("Event chain broken: previous hash mismatch")
            expected_hash = self._event_hash(payload, prev_hash)
            if not hmac.compare_digest(expected_hash, row["event_hash"]):
                raise RuntimeError("Event chain broken: event hash mismatch")
            expected_prev = row["event_hash"]
            count += 1
        return count
