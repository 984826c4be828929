"""
Core data model shared by the registry, engines and stores.

Routes and facilitators are plain dataclasses with ``to_dict``/``from_dict``
helpers so they can be stored as JSON columns and returned over HTTP.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class FacilitatorType(str, Enum):
    GLOBAL = "Global"
    PRIVATE = "Private"


class FacilitatorStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"
    UNKNOWN = "unknown"


class Outcome(str, Enum):
    PLAN = "plan"
    PAID = "paid"
    SETTLED = "settled"
    DENY = "deny"
    ERROR = "error"


SPEND_OUTCOMES = (Outcome.PAID.value, Outcome.SETTLED.value)


@dataclass(frozen=True)
class PaymentDetails:
    """Proposed payment: network, scheme, asset and decimal amount string."""

    network: str
    scheme: str
    amount: str
    asset: str

    def to_dict(self) -> dict:
        return {
            "network": self.network,
            "scheme": self.scheme,
            "amount": self.amount,
            "asset": self.asset,
        }


@dataclass(frozen=True)
class AcceptedPayment:
    scheme: str
    network: str
    asset: str
    amount: str

    def matches(self, payment: PaymentDetails) -> bool:
        return (
            self.scheme == payment.scheme
            and self.network == payment.network
            and self.asset.upper() == payment.asset.upper()
        )

    def to_dict(self) -> dict:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "asset": self.asset,
            "amount": self.amount,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AcceptedPayment":
        return cls(
            scheme=str(d["scheme"]),
            network=str(d["network"]),
            asset=str(d["asset"]),
            amount=str(d["amount"]),
        )


@dataclass(frozen=True)
class Route:
    """A payable endpoint. Immutable once published."""

    route_id: str
    method: str = "POST"
    path: str = "/"
    accepts: tuple[AcceptedPayment, ...] = ()
    tenant_id: Optional[str] = None

    def accepted_for(self, payment: PaymentDetails) -> Optional[AcceptedPayment]:
        for option in self.accepts:
            if option.matches(payment):
                return option
        return None

    def to_dict(self) -> dict:
        return {
            "route_id": self.route_id,
            "tenant_id": self.tenant_id,
            "method": self.method,
            "path": self.path,
            "accepts": [a.to_dict() for a in self.accepts],
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Route":
        return cls(
            route_id=d["route_id"],
            tenant_id=d.get("tenant_id"),
            method=d.get("method", "POST"),
            path=d.get("path", "/"),
            accepts=tuple(AcceptedPayment.from_dict(a) for a in d.get("accepts", [])),
        )


@dataclass(frozen=True)
class FacilitatorHealth:
    status: str = HealthStatus.UNKNOWN.value
    p95_latency_ms: Optional[float] = None
    success_rate: Optional[float] = None
    last_checked_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "p95_latency_ms": self.p95_latency_ms,
            "success_rate": self.success_rate,
            "last_checked_at": self.last_checked_at,
        }


@dataclass(frozen=True)
class Facilitator:
    """A payment processor that verifies and settles payments."""

    facilitator_id: str
    name: str
    type: str
    endpoint: str
    networks: frozenset[str]
    schemes: frozenset[str] = frozenset()
    assets: frozenset[str] = frozenset()
    tenant_id: Optional[str] = None
    status: str = FacilitatorStatus.ACTIVE.value
    health: FacilitatorHealth = field(default_factory=FacilitatorHealth)

    @property
    def is_private(self) -> bool:
        return self.type == FacilitatorType.PRIVATE.value

    @property
    def is_active(self) -> bool:
        return self.status == FacilitatorStatus.ACTIVE.value

    def visible_to(self, tenant_id: Optional[str]) -> bool:
        if self.type == FacilitatorType.GLOBAL.value:
            return True
        return tenant_id is not None and self.tenant_id == tenant_id

    def supports(self, network: str, scheme: str, asset: str) -> bool:
        if network not in self.networks:
            return False
        if self.schemes and scheme not in self.schemes:
            return False
        if self.assets and asset.upper() not in {a.upper() for a in self.assets}:
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "facilitator_id": self.facilitator_id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "type": self.type,
            "endpoint": self.endpoint,
            "networks": sorted(self.networks),
            "schemes": sorted(self.schemes),
            "assets": sorted(self.assets),
            "status": self.status,
            "health": self.health.to_dict(),
        }


@dataclass
class Event:
    """Durable record of one plan/verify attempt. Written once."""

    event_id: str
    tenant_id: str
    route_id: str
    decision_id: str
    outcome: str
    network: Optional[str] = None
    scheme: Optional[str] = None
    asset: Optional[str] = None
    amount: Optional[str] = None
    facilitator_id: Optional[str] = None
    deny_code: Optional[str] = None
    steps: list[dict[str, Any]] = field(default_factory=list)
    trace: dict[str, Any] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "tenant_id": self.tenant_id,
            "route_id": self.route_id,
            "decision_id": self.decision_id,
            "outcome": self.outcome,
            "network": self.network,
            "scheme": self.scheme,
            "asset": self.asset,
            "amount": self.amount,
            "facilitator_id": self.facilitator_id,
            "deny_code": self.deny_code,
            "steps": self.steps,
            "trace": self.trace,
            "raw_payload": self.raw_payload,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ReplayRecord:
    authorization_id: str
    first_seen_at: float
    expires_at: float
    tenant_id: Optional[str] = None
    decision_id: Optional[str] = None
