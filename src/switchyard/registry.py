"""
Facilitator registry.

Global facilitators are visible to every tenant; private ones only to their
owner. Routing reads an in-memory snapshot that is rebuilt from SQLite on a
TTL and swapped in as a single reference assignment, so readers never lock.
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterable, Optional

from .errors import AlreadyExistsError, InvalidInputError, NotFoundError
from .models import (
    Facilitator,
    FacilitatorHealth,
    FacilitatorStatus,
    FacilitatorType,
    HealthStatus,
)
from .storage import connect, ensure_private_file, init_pragmas


logger = logging.getLogger(__name__)

DEFAULT_LATENCY_NORMALIZER_MS = 1000.0
DEFAULT_REFRESH_SECONDS = 30.0


def new_facilitator_id() -> str:
    return f"fac_{secrets.token_hex(6)}"


def score(facilitator: Facilitator, latency_normalizer: float = DEFAULT_LATENCY_NORMALIZER_MS) -> float:
    """Higher is better. Unmeasured facilitators count as fully reliable and instant."""
    health = facilitator.health
    success_rate = 1.0 if health.success_rate is None else health.success_rate
    p95 = 0.0 if health.p95_latency_ms is None else health.p95_latency_ms
    return success_rate - p95 / latency_normalizer


def rank(
    facilitators: Iterable[Facilitator],
    latency_normalizer: float = DEFAULT_LATENCY_NORMALIZER_MS,
) -> list[Facilitator]:
    return sorted(
        facilitators,
        key=lambda f: (
            -score(f, latency_normalizer),
            0 if f.is_private else 1,
            f.facilitator_id,
        ),
    )


class FacilitatorRegistry:
    """SQLite-backed facilitator catalogue with a TTL-cached snapshot."""

    def __init__(
        self,
        db_path: Path,
        latency_normalizer: float = DEFAULT_LATENCY_NORMALIZER_MS,
        refresh_seconds: float = DEFAULT_REFRESH_SECONDS,
    ):
        if latency_normalizer <= 0:
            raise ValueError("latency_normalizer must be positive")
        self.db_path = db_path
        self.latency_normalizer = latency_normalizer
        self.refresh_seconds = refresh_seconds
        self._refresh_lock = threading.Lock()
        self._snapshot: tuple[Facilitator, ...] = ()
        self._snapshot_at = 0.0
        self._init_db()
        self.refresh()

    def _connect(self) -> sqlite3.Connection:
        return connect(self.db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            init_pragmas(conn)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS facilitators (
                    facilitator_id TEXT PRIMARY KEY,
                    tenant_id TEXT,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL,
                    endpoint TEXT NOT NULL,
                    networks TEXT NOT NULL,
                    schemes TEXT NOT NULL,
                    assets TEXT NOT NULL,
                    status TEXT NOT NULL,
                    health_status TEXT NOT NULL,
                    p95_latency_ms REAL,
                    success_rate REAL,
                    last_checked_at REAL,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_facilitators_tenant_name
                ON facilitators (tenant_id, name)
                WHERE tenant_id IS NOT NULL
                """
            )
        ensure_private_file(self.db_path)

    def _row_to_facilitator(self, row: sqlite3.Row) -> Facilitator:
        return Facilitator(
            facilitator_id=row["facilitator_id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            type=row["type"],
            endpoint=row["endpoint"],
            networks=frozenset(json.loads(row["networks"])),
            schemes=frozenset(json.loads(row["schemes"])),
            assets=frozenset(json.loads(row["assets"])),
            status=row["status"],
            health=FacilitatorHealth(
                status=row["health_status"],
                p95_latency_ms=row["p95_latency_ms"],
                success_rate=row["success_rate"],
                last_checked_at=row["last_checked_at"],
            ),
        )

    def _insert(self, conn: sqlite3.Connection, fac: Facilitator) -> None:
        conn.execute(
            """
            INSERT INTO facilitators (
                facilitator_id, tenant_id, name, type, endpoint, networks, schemes,
                assets, status, health_status, p95_latency_ms, success_rate,
                last_checked_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                fac.facilitator_id,
                fac.tenant_id,
                fac.name,
                fac.type,
                fac.endpoint,
                json.dumps(sorted(fac.networks)),
                json.dumps(sorted(fac.schemes)),
                json.dumps(sorted(fac.assets)),
                fac.status,
                fac.health.status,
                fac.health.p95_latency_ms,
                fac.health.success_rate,
                fac.health.last_checked_at,
                time.time(),
            ),
        )

    def register(
        self,
        name: str,
        endpoint: str,
        networks: Iterable[str],
        schemes: Iterable[str] = (),
        assets: Iterable[str] = (),
        tenant_id: Optional[str] = None,
        facilitator_id: Optional[str] = None,
        health: Optional[FacilitatorHealth] = None,
    ) -> Facilitator:
        """Register a facilitator. ``tenant_id=None`` registers a Global one."""
        if not name or not endpoint:
            raise InvalidInputError("Facilitator name and endpoint are required")
        network_set = frozenset(n for n in networks if n)
        if not network_set:
            raise InvalidInputError("Facilitator must support at least one network")
        fac = Facilitator(
            facilitator_id=facilitator_id or new_facilitator_id(),
            tenant_id=tenant_id,
            name=name,
            type=(FacilitatorType.PRIVATE if tenant_id else FacilitatorType.GLOBAL).value,
            endpoint=endpoint.rstrip("/"),
            networks=network_set,
            schemes=frozenset(s for s in schemes if s),
            assets=frozenset(a.upper() for a in assets if a),
            health=health or FacilitatorHealth(),
        )
        with self._connect() as conn:
            try:
                self._insert(conn, fac)
            except sqlite3.IntegrityError as e:
                raise AlreadyExistsError(
                    f"Facilitator {fac.facilitator_id} or name {name!r} already exists"
                ) from e
        logger.info("Registered %s facilitator %s (%s)", fac.type, fac.facilitator_id, name)
        self.refresh()
        return fac

    def get(self, facilitator_id: str, tenant_id: Optional[str] = None) -> Facilitator:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM facilitators WHERE facilitator_id = ?",
                (facilitator_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Facilitator not found: {facilitator_id}")
        fac = self._row_to_facilitator(row)
        if tenant_id is not None and not fac.visible_to(tenant_id):
            raise NotFoundError(f"Facilitator not found: {facilitator_id}")
        return fac

    def list_visible(self, tenant_id: Optional[str], include_inactive: bool = False) -> list[Facilitator]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM facilitators
                WHERE tenant_id IS NULL OR tenant_id = ?
                ORDER BY facilitator_id
                """,
                (tenant_id,),
            ).fetchall()
        facilitators = [self._row_to_facilitator(r) for r in rows]
        if not include_inactive:
            facilitators = [f for f in facilitators if f.is_active]
        return facilitators

    def import_global(self, facilitator_id: str, tenant_id: str) -> Facilitator:
        """Copy a Global facilitator into the tenant's private set. The source is untouched."""
        if not tenant_id:
            raise InvalidInputError("tenant_id is required to import a facilitator")
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT * FROM facilitators WHERE facilitator_id = ?",
                    (facilitator_id,),
                ).fetchone()
                if row is None or row["type"] != FacilitatorType.GLOBAL.value:
                    raise NotFoundError(f"Global facilitator not found: {facilitator_id}")
                source = self._row_to_facilitator(row)
                dup = conn.execute(
                    "SELECT 1 FROM facilitators WHERE tenant_id = ? AND name = ?",
                    (tenant_id, source.name),
                ).fetchone()
                if dup is not None:
                    raise AlreadyExistsError(
                        f"Tenant already has a facilitator named {source.name!r}"
                    )
                imported = Facilitator(
                    facilitator_id=new_facilitator_id(),
                    tenant_id=tenant_id,
                    name=source.name,
                    type=FacilitatorType.PRIVATE.value,
                    endpoint=source.endpoint,
                    networks=source.networks,
                    schemes=source.schemes,
                    assets=source.assets,
                    health=source.health,
                )
                self._insert(conn, imported)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        logger.info(
            "Imported global facilitator %s as %s for tenant %s",
            facilitator_id,
            imported.facilitator_id,
            tenant_id,
        )
        self.refresh()
        return imported

    def deactivate(self, facilitator_id: str, tenant_id: Optional[str] = None) -> Facilitator:
        """Mark a facilitator inactive. Tenants may only deactivate their own."""
        fac = self.get(facilitator_id)
        if tenant_id is not None and fac.tenant_id != tenant_id:
            raise NotFoundError(f"Facilitator not found: {facilitator_id}")
        with self._connect() as conn:
            conn.execute(
                "UPDATE facilitators SET status = ? WHERE facilitator_id = ?",
                (FacilitatorStatus.INACTIVE.value, facilitator_id),
            )
        logger.info("Deactivated facilitator %s", facilitator_id)
        self.refresh()
        return self.get(facilitator_id)

    def update_health(self, facilitator_id: str, health: FacilitatorHealth) -> None:
        if health.status not in {s.value for s in HealthStatus}:
            raise InvalidInputError(f"Invalid health status: {health.status}")
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE facilitators
                SET health_status = ?, p95_latency_ms = ?, success_rate = ?, last_checked_at = ?
                WHERE facilitator_id = ?
                """,
                (
                    health.status,
                    health.p95_latency_ms,
                    health.success_rate,
                    health.last_checked_at,
                    facilitator_id,
                ),
            )
        if cur.rowcount == 0:
            raise NotFoundError(f"Facilitator not found: {facilitator_id}")

    def refresh(self) -> tuple[Facilitator, ...]:
        """Reload the active set from storage and swap the snapshot."""
        with self._refresh_lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM facilitators WHERE status = ? ORDER BY facilitator_id",
                    (FacilitatorStatus.ACTIVE.value,),
                ).fetchall()
            snapshot = tuple(self._row_to_facilitator(r) for r in rows)
            self._snapshot = snapshot
            self._snapshot_at = time.monotonic()
        return snapshot

    def snapshot(self) -> tuple[Facilitator, ...]:
        if time.monotonic() - self._snapshot_at >= self.refresh_seconds:
            return self.refresh()
        return self._snapshot

    def list_candidates(
        self,
        network: str,
        scheme: str,
        asset: str,
        tenant_id: Optional[str],
    ) -> list[Facilitator]:
        """Ranked facilitators that can take this payment for this tenant."""
        eligible = [
            f
            for f in self.snapshot()
            if f.is_active
            and f.visible_to(tenant_id)
            and f.health.status != HealthStatus.DOWN.value
            and f.supports(network, scheme, asset)
        ]
        return rank(eligible, self.latency_normalizer)
