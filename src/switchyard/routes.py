"""Catalogue of tenant-published payable routes."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Iterable, Optional

from .errors import AlreadyExistsError, InvalidInputError, NotFoundError
from .models import AcceptedPayment, PaymentDetails, Route
from .money import parse_amount
from .storage import connect, ensure_private_file, init_pragmas


logger = logging.getLogger(__name__)


class RouteStore:
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
                CREATE TABLE IF NOT EXISTS routes (
                    tenant_id TEXT NOT NULL,
                    route_id TEXT NOT NULL,
                    method TEXT NOT NULL,
                    path TEXT NOT NULL,
                    accepts TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    PRIMARY KEY (tenant_id, route_id)
                )
                """
            )
        ensure_private_file(self.db_path)

    def publish(
        self,
        tenant_id: str,
        route_id: str,
        path: str,
        accepts: Iterable[AcceptedPayment],
        method: str = "POST",
    ) -> Route:
        """Publish a route. Routes are immutable; re-publishing raises ``AlreadyExistsError``."""
        if not route_id:
            raise InvalidInputError("route_id is required")
        options = tuple(accepts)
        if not options:
            raise InvalidInputError("Route must accept at least one payment option")
        for option in options:
            try:
                parse_amount(option.amount)
            except ValueError as e:
                raise InvalidInputError(str(e)) from e
        route = Route(
            route_id=route_id,
            tenant_id=tenant_id,
            method=method.upper(),
            path=path,
            accepts=options,
        )
        with self._connect() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO routes (tenant_id, route_id, method, path, accepts, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tenant_id,
                        route_id,
                        route.method,
                        path,
                        json.dumps([a.to_dict() for a in options]),
                        time.time(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise AlreadyExistsError(f"Route already exists: {route_id}") from e
        logger.info("Published route %s for tenant %s", route_id, tenant_id)
        return route

    def get(self, tenant_id: str, route_id: str) -> Optional[Route]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM routes WHERE tenant_id = ? AND route_id = ?",
                (tenant_id, route_id),
            ).fetchone()
        if row is None:
            return None
        return Route(
            route_id=row["route_id"],
            tenant_id=row["tenant_id"],
            method=row["method"],
            path=row["path"],
            accepts=tuple(AcceptedPayment.from_dict(a) for a in json.loads(row["accepts"])),
        )

    def require(self, tenant_id: str, route_id: str) -> Route:
        route = self.get(tenant_id, route_id)
        if route is None:
            raise NotFoundError(f"Route not found: {route_id}")
        return route

    def resolve(
        self,
        tenant_id: str,
        route_id: str,
        payment: PaymentDetails,
        path: Optional[str] = None,
        method: str = "POST",
    ) -> tuple[Route, AcceptedPayment]:
        """
        Find the route and the accepted option matching ``payment``.

        Unregistered routes are priced ad hoc from the request itself.
        """
        route = self.get(tenant_id, route_id) if route_id else None
        if route is None:
            accepted = AcceptedPayment(
                scheme=payment.scheme,
                network=payment.network,
                asset=payment.asset,
                amount=payment.amount,
            )
            adhoc = Route(
                route_id=route_id,
                tenant_id=tenant_id,
                method=method.upper(),
                path=path or f"/{route_id}",
                accepts=(accepted,),
            )
            return adhoc, accepted
        accepted = route.accepted_for(payment)
        if accepted is None:
            raise InvalidInputError(
                f"Route {route_id} does not accept {payment.scheme}/{payment.network}/{payment.asset}"
            )
        return route, accepted
