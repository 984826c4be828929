"""
Policy engine.

Rules are evaluated in a fixed order (deny predicates, route scopes, budgets,
rate limits) and the first failing rule decides the verdict. Later rules are
never evaluated, so a request denied by scope does not consume rate budget.
"""

from __future__ import annotations

import fnmatch
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .deny_codes import DenyCode
from .events import EventStore
from .models import PaymentDetails, Route
from .money import amount_to_micros, limit_to_micros, micros_to_decimal
from .policy_rules import Policy, ScopeRule
from .policy_store import PolicyStore
from .ratelimit import RateCounter


logger = logging.getLogger(__name__)

RPM_WINDOW_SECONDS = 60
TENANT_WIDE_ROUTE = "*"


@dataclass(frozen=True)
class Verdict:
    allow: bool
    reason: str
    deny_code: Optional[DenyCode] = None
    matched_rule: Optional[str] = None
    policy_id: Optional[str] = None
    policy_version: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "allow": self.allow,
            "reason": self.reason,
            "deny_code": self.deny_code.value if self.deny_code else None,
            "matched_rule": self.matched_rule,
            "policy_id": self.policy_id,
            "policy_version": self.policy_version,
        }


def _scope_matches(scope: ScopeRule, route: Route) -> bool:
    if scope.route_id is not None:
        return scope.route_id == route.route_id
    if scope.methods and route.method.upper() not in scope.methods:
        return False
    return fnmatch.fnmatchcase(route.path, scope.path or "")


class PolicyEngine:
    def __init__(
        self,
        policies: PolicyStore,
        events: EventStore,
        rate_counter: RateCounter,
        clock: Callable[[], float] = time.time,
    ):
        self.policies = policies
        self.events = events
        self.rate_counter = rate_counter
        self._clock = clock

    def evaluate(
        self,
        tenant_id: str,
        route: Route,
        payment: PaymentDetails,
        buyer_id: Optional[str] = None,
        count_request: bool = True,
    ) -> Verdict:
        """
        Evaluate the tenant's active policy against one payment attempt.

        With ``count_request=False`` rate limits are checked against the current
        window without recording a hit, so a verify following its plan is not
        counted twice.
        """
        policy = self.policies.get_active_policy(tenant_id)
        if policy is None:
            return Verdict(allow=True, reason="No active policy")
        verdict = self._evaluate_policy(
            policy, tenant_id, route, payment, buyer_id, count_request
        )
        if not verdict.allow:
            logger.info(
                "Policy %s denied tenant %s route %s: %s",
                policy.policy_id,
                tenant_id,
                route.route_id,
                verdict.reason,
            )
        return verdict

    def _deny(self, policy: Policy, code: DenyCode, rule: str, reason: str) -> Verdict:
        return Verdict(
            allow=False,
            reason=reason,
            deny_code=code,
            matched_rule=rule,
            policy_id=policy.policy_id,
            policy_version=policy.version,
        )

    def _evaluate_policy(
        self,
        policy: Policy,
        tenant_id: str,
        route: Route,
        payment: PaymentDetails,
        buyer_id: Optional[str],
        count_request: bool,
    ) -> Verdict:
        rules = policy.rules
        attrs = {
            "network": payment.network,
            "scheme": payment.scheme,
            "asset": payment.asset,
            "amount": payment.amount,
            "route_id": route.route_id,
            "method": route.method,
            "path": route.path,
            "buyer_id": buyer_id,
        }

        for rule in rules.deny_if:
            if rule.matches(attrs):
                return self._deny(
                    policy, DenyCode.SCOPE_DENIED, rule.describe(), f"Matched {rule.describe()}"
                )

        if rules.route_scopes and not any(_scope_matches(s, route) for s in rules.route_scopes):
            return self._deny(
                policy,
                DenyCode.ROUTE_NOT_SCOPED,
                "routeScopes",
                f"Route {route.route_id} ({route.method} {route.path}) is not in scope",
            )

        if rules.budgets:
            now = self._clock()
            amount_micros = amount_to_micros(payment.amount)
            for budget in rules.budgets:
                if not budget.applies_at(now):
                    continue
                since, until = budget.window(now)
                spent = self.events.query_spend(tenant_id, since, until)
                limit = limit_to_micros(budget.limit_usd)
                if spent + amount_micros > limit:
                    return self._deny(
                        policy,
                        DenyCode.BUDGET_EXCEEDED,
                        budget.describe(),
                        (
                            f"Amount {micros_to_decimal(amount_micros)} USD would exceed "
                            f"{budget.describe()} (spent {micros_to_decimal(spent)} USD)"
                        ),
                    )

        counts: dict[str, int] = {}
        for rpm in rules.rpm_limits:
            if not rpm.applies_to(route.route_id):
                continue
            key = rpm.route_id or TENANT_WIDE_ROUTE
            if key not in counts:
                if count_request:
                    counts[key] = self.rate_counter.increment(tenant_id, key, RPM_WINDOW_SECONDS)
                else:
                    counts[key] = self.rate_counter.count(tenant_id, key, RPM_WINDOW_SECONDS)
            if counts[key] > rpm.limit:
                return self._deny(
                    policy,
                    DenyCode.RATE_LIMITED,
                    rpm.describe(),
                    f"{counts[key]} requests in the last minute exceeds {rpm.limit}",
                )

        return Verdict(
            allow=True,
            reason="All rules passed",
            policy_id=policy.policy_id,
            policy_version=policy.version,
        )
