"""Tenant-scoped policy persistence. Each tenant has at most one active policy."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Optional

from .errors import InvalidInputError, NotFoundError, PolicyOwnershipError
from .policy_rules import Policy, PolicyRules
from .storage import connect, ensure_private_file, init_pragmas


logger = logging.getLogger(__name__)


class PolicyStore:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            init_pragmas(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS policies (
                    policy_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    rules TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_policies_tenant_active
                ON policies (tenant_id, active)
                """
            )
        ensure_private_file(self.db_path)

    def _row_to_policy(self, row: sqlite3.Row) -> Policy:
        return Policy(
            policy_id=row["policy_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            rules=PolicyRules.parse(json.loads(row["rules"])),
            version=row["version"],
            active=bool(row["active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def upsert_policy(
        self,
        policy_id: str,
        tenant_id: str,
        name: str,
        rules: Any,
    ) -> Policy:
        """
        Create or update a policy and make it the tenant's active one.

        ``rules`` may be a parsed ``PolicyRules`` or raw camelCase JSON. The
        upsert only touches rows already owned by ``tenant_id``; a policy id
        held by another tenant raises ``PolicyOwnershipError``.
        """
        if not policy_id or not tenant_id:
            raise InvalidInputError("policy_id and tenant_id are required")
        parsed = rules if isinstance(rules, PolicyRules) else PolicyRules.parse(rules)
        now = time.time()

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cur = conn.execute(
                    """
                    INSERT INTO policies (
                        policy_id, tenant_id, name, rules, version, active, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 1, 1, ?, ?)
                    ON CONFLICT(policy_id) DO UPDATE SET
                        name = excluded.name,
                        rules = excluded.rules,
                        version = policies.version + 1,
                        active = 1,
                        updated_at = excluded.updated_at
                    WHERE policies.tenant_id = excluded.tenant_id
                    """,
                    (policy_id, tenant_id, name or policy_id, json.dumps(parsed.to_dict()), now, now),
                )
                if cur.rowcount == 0:
                    raise PolicyOwnershipError(f"Policy not found: {policy_id}")
                conn.execute(
                    """
                    UPDATE policies SET active = 0, updated_at = ?
                    WHERE tenant_id = ? AND policy_id != ? AND active = 1
                    """,
                    (now, tenant_id, policy_id),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.info("Policy %s is now active for tenant %s", policy_id, tenant_id)
        return self.get_policy(policy_id, tenant_id)

    def get_policy(self, policy_id: str, tenant_id: str) -> Policy:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM policies WHERE policy_id = ? AND tenant_id = ?",
                (policy_id, tenant_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Policy not found: {policy_id}")
        return self._row_to_policy(row)

    def get_active_policy(self, tenant_id: str) -> Optional[Policy]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM policies WHERE tenant_id = ? AND active = 1
                ORDER BY updated_at DESC LIMIT 1
                """,
                (tenant_id,),
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def list_policies(self, tenant_id: str) -> list[Policy]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM policies WHERE tenant_id = ? ORDER BY created_at",
                (tenant_id,),
            ).fetchall()
        return [self._row_to_policy(r) for r in rows]
