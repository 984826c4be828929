"""Routing engine: validate a proposed payment and pick the best facilitator."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import InvalidInputError, NoFacilitatorAvailableError
from .models import Facilitator, PaymentDetails, Route
from .money import parse_amount
from .registry import FacilitatorRegistry


@dataclass(frozen=True)
class RoutePlan:
    selected_facilitator_id: str
    candidates: tuple[Facilitator, ...]

    @property
    def selected(self) -> Facilitator:
        return self.candidates[0]

    def candidate_ids(self) -> list[str]:
        return [c.facilitator_id for c in self.candidates]


def validate_payment(route: Route, payment: PaymentDetails) -> None:
    if not route.route_id or not route.route_id.strip():
        raise InvalidInputError("route_id is required")
    try:
        parse_amount(payment.amount)
    except ValueError as e:
        raise InvalidInputError(str(e), details={"field": "amount"}) from e
    if not payment.asset or not 2 <= len(payment.asset) <= 10:
        raise InvalidInputError(
            "asset must be 2-10 characters", details={"field": "asset"}
        )
    if not payment.network:
        raise InvalidInputError("network is required", details={"field": "network"})
    if not payment.scheme:
        raise InvalidInputError("scheme is required", details={"field": "scheme"})


class RoutingEngine:
    """Stateless over an injected registry: same snapshot in, same plan out."""

    def __init__(self, registry: FacilitatorRegistry):
        self.registry = registry

    def plan(self, route: Route, payment: PaymentDetails, tenant_id: str) -> RoutePlan:
        validate_payment(route, payment)
        candidates = self.registry.list_candidates(
            payment.network, payment.scheme, payment.asset, tenant_id
        )
        if not candidates:
            raise NoFacilitatorAvailableError(
                f"No facilitator available for {payment.scheme} {payment.asset} on {payment.network}",
                details={
                    "network": payment.network,
                    "scheme": payment.scheme,
                    "asset": payment.asset,
                },
            )
        return RoutePlan(
            selected_facilitator_id=candidates[0].facilitator_id,
            candidates=tuple(candidates),
        )
