"""
Closed policy rule schema.

Policies arrive as JSON with camelCase keys. Every rule is parsed into one of
four typed variants; unknown keys, fields and operators are rejected at the
boundary instead of being silently ignored at evaluation time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .errors import PolicyValidationError
from .money import parse_amount


class RuleOp(str, Enum):
    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "not_in"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"


class BudgetPeriod(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


PERIOD_SECONDS = {
    BudgetPeriod.HOUR: 3600,
    BudgetPeriod.DAY: 86400,
    BudgetPeriod.WEEK: 7 * 86400,
    BudgetPeriod.MONTH: 30 * 86400,
}

DENY_FIELDS = frozenset(
    {"network", "scheme", "asset", "amount", "route_id", "method", "path", "buyer_id"}
)
_NUMERIC_OPS = {RuleOp.GT, RuleOp.GTE, RuleOp.LT, RuleOp.LTE}
_LIST_OPS = {RuleOp.IN, RuleOp.NOT_IN}


def _check_keys(raw: Any, allowed: set[str], required: set[str], where: str) -> dict:
    if not isinstance(raw, dict):
        raise PolicyValidationError(f"{where} must be an object")
    unknown = set(raw) - allowed
    if unknown:
        raise PolicyValidationError(
            f"{where} has unknown keys: {', '.join(sorted(unknown))}"
        )
    missing = required - set(raw)
    if missing:
        raise PolicyValidationError(
            f"{where} is missing keys: {', '.join(sorted(missing))}"
        )
    return raw


def _parse_usd(value: Any, where: str):
    try:
        return parse_amount(str(value))
    except ValueError as e:
        raise PolicyValidationError(f"{where}: {e}") from e


@dataclass(frozen=True)
class DenyRule:
    """Deny the request when ``field <op> value`` holds."""

    field: str
    op: RuleOp
    value: Any

    @classmethod
    def parse(cls, raw: Any, index: int) -> "DenyRule":
        where = f"denyIf[{index}]"
        d = _check_keys(raw, {"field", "op", "value"}, {"field", "op", "value"}, where)
        name = d["field"]
        if name not in DENY_FIELDS:
            raise PolicyValidationError(f"{where}: unknown field {name!r}")
        try:
            op = RuleOp(d["op"])
        except ValueError as e:
            raise PolicyValidationError(f"{where}: unknown op {d['op']!r}") from e
        value = d["value"]
        if op in _LIST_OPS:
            if not isinstance(value, list):
                raise PolicyValidationError(f"{where}: {op.value} needs a list value")
            value = tuple(str(v) for v in value)
        elif op in _NUMERIC_OPS:
            value = _parse_usd(value, where)
        else:
            value = str(value)
        return cls(field=name, op=op, value=value)

    def matches(self, attrs: dict[str, Optional[str]]) -> bool:
        actual = attrs.get(self.field)
        if actual is None:
            # Absent attributes (no buyer id) only satisfy negative predicates.
            return self.op in {RuleOp.NE, RuleOp.NOT_IN}
        if self.op == RuleOp.EQ:
            return _norm(self.field, actual) == _norm(self.field, self.value)
        if self.op == RuleOp.NE:
            return _norm(self.field, actual) != _norm(self.field, self.value)
        if self.op == RuleOp.IN:
            return _norm(self.field, actual) in {_norm(self.field, v) for v in self.value}
        if self.op == RuleOp.NOT_IN:
            return _norm(self.field, actual) not in {_norm(self.field, v) for v in self.value}
        try:
            number = parse_amount(actual)
        except ValueError:
            return False
        if self.op == RuleOp.GT:
            return number > self.value
        if self.op == RuleOp.GTE:
            return number >= self.value
        if self.op == RuleOp.LT:
            return number < self.value
        return number <= self.value

    def describe(self) -> str:
        return f"denyIf {self.field} {self.op.value} {self.value!r}"

    def to_dict(self) -> dict:
        value = list(self.value) if isinstance(self.value, tuple) else str(self.value)
        return {"field": self.field, "op": self.op.value, "value": value}


def _norm(field_name: str, value: Any) -> str:
    text = str(value)
    if field_name in {"asset", "method"}:
        return text.upper()
    return text


@dataclass(frozen=True)
class ScopeRule:
    """Allow-list entry: an exact route id, or a path glob with optional methods."""

    route_id: Optional[str] = None
    path: Optional[str] = None
    methods: tuple[str, ...] = ()

    @classmethod
    def parse(cls, raw: Any, index: int) -> "ScopeRule":
        where = f"routeScopes[{index}]"
        d = _check_keys(raw, {"routeId", "path", "methods"}, set(), where)
        route_id = d.get("routeId")
        path = d.get("path")
        if bool(route_id) == bool(path):
            raise PolicyValidationError(f"{where}: exactly one of routeId or path is required")
        methods = d.get("methods") or []
        if not isinstance(methods, list):
            raise PolicyValidationError(f"{where}: methods must be a list")
        return cls(
            route_id=str(route_id) if route_id else None,
            path=str(path) if path else None,
            methods=tuple(str(m).upper() for m in methods),
        )

    def describe(self) -> str:
        if self.route_id:
            return f"routeScopes routeId={self.route_id}"
        return f"routeScopes path={self.path}"

    def to_dict(self) -> dict:
        if self.route_id:
            return {"routeId": self.route_id}
        d: dict[str, Any] = {"path": self.path}
        if self.methods:
            d["methods"] = list(self.methods)
        return d


@dataclass(frozen=True)
class BudgetRule:
    """Spend ceiling over a rolling period or a fixed ``[window_start, window_end)`` window."""

    limit_usd: Any
    period: Optional[BudgetPeriod] = None
    window_start: Optional[float] = None
    window_end: Optional[float] = None

    @classmethod
    def parse(cls, raw: Any, index: int) -> "BudgetRule":
        where = f"budgets[{index}]"
        d = _check_keys(
            raw, {"limitUsd", "period", "windowStart", "windowEnd"}, {"limitUsd"}, where
        )
        limit = _parse_usd(d["limitUsd"], where)
        has_period = "period" in d
        has_window = "windowStart" in d or "windowEnd" in d
        if has_period == has_window:
            raise PolicyValidationError(
                f"{where}: exactly one of period or windowStart/windowEnd is required"
            )
        if has_period:
            try:
                period = BudgetPeriod(d["period"])
            except ValueError as e:
                raise PolicyValidationError(f"{where}: unknown period {d['period']!r}") from e
            return cls(limit_usd=limit, period=period)
        try:
            start = float(d["windowStart"])
            end = float(d["windowEnd"])
        except (KeyError, TypeError, ValueError) as e:
            raise PolicyValidationError(
                f"{where}: windowStart and windowEnd must both be epoch seconds"
            ) from e
        if end <= start:
            raise PolicyValidationError(f"{where}: windowEnd must be after windowStart")
        return cls(limit_usd=limit, window_start=start, window_end=end)

    def window(self, now: float) -> tuple[float, float]:
        if self.period is not None:
            return now - PERIOD_SECONDS[self.period], now
        assert self.window_start is not None and self.window_end is not None
        return self.window_start, self.window_end

    def applies_at(self, now: float) -> bool:
        if self.period is not None:
            return True
        return self.window_start <= now < self.window_end

    def describe(self) -> str:
        if self.period is not None:
            return f"budgets {self.limit_usd} USD per {self.period.value}"
        return f"budgets {self.limit_usd} USD in fixed window"

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"limitUsd": str(self.limit_usd)}
        if self.period is not None:
            d["period"] = self.period.value
        else:
            d["windowStart"] = self.window_start
            d["windowEnd"] = self.window_end
        return d


@dataclass(frozen=True)
class RpmRule:
    """Requests-per-minute ceiling, tenant-wide or for a single route."""

    limit: int
    route_id: Optional[str] = None

    @classmethod
    def parse(cls, raw: Any, index: int) -> "RpmRule":
        where = f"rpmLimits[{index}]"
        d = _check_keys(raw, {"limit", "routeId"}, {"limit"}, where)
        limit = d["limit"]
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
            raise PolicyValidationError(f"{where}: limit must be a non-negative integer")
        route_id = d.get("routeId")
        return cls(limit=limit, route_id=str(route_id) if route_id else None)

    def applies_to(self, route_id: str) -> bool:
        return self.route_id is None or self.route_id == route_id

    def describe(self) -> str:
        target = self.route_id or "*"
        return f"rpmLimits {self.limit}/min on {target}"

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"limit": self.limit}
        if self.route_id:
            d["routeId"] = self.route_id
        return d


Rule = Union[DenyRule, ScopeRule, BudgetRule, RpmRule]


@dataclass(frozen=True)
class PolicyRules:
    deny_if: tuple[DenyRule, ...] = ()
    route_scopes: tuple[ScopeRule, ...] = ()
    budgets: tuple[BudgetRule, ...] = ()
    rpm_limits: tuple[RpmRule, ...] = ()

    @classmethod
    def parse(cls, raw: Any) -> "PolicyRules":
        if raw is None:
            return cls()
        d = _check_keys(raw, {"denyIf", "routeScopes", "budgets", "rpmLimits"}, set(), "rules")
        for key in d:
            if not isinstance(d[key], list):
                raise PolicyValidationError(f"rules.{key} must be a list")
        return cls(
            deny_if=tuple(DenyRule.parse(r, i) for i, r in enumerate(d.get("denyIf", []))),
            route_scopes=tuple(
                ScopeRule.parse(r, i) for i, r in enumerate(d.get("routeScopes", []))
            ),
            budgets=tuple(BudgetRule.parse(r, i) for i, r in enumerate(d.get("budgets", []))),
            rpm_limits=tuple(RpmRule.parse(r, i) for i, r in enumerate(d.get("rpmLimits", []))),
        )

    def to_dict(self) -> dict:
        return {
            "denyIf": [r.to_dict() for r in self.deny_if],
            "routeScopes": [r.to_dict() for r in self.route_scopes],
            "budgets": [r.to_dict() for r in self.budgets],
            "rpmLimits": [r.to_dict() for r in self.rpm_limits],
        }


@dataclass
class Policy:
    policy_id: str
    tenant_id: str
    name: str
    rules: PolicyRules = field(default_factory=PolicyRules)
    version: int = 1
    active: bool = True
    created_at: float = 0.0
    updated_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "policy_id": self.policy_id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "rules": self.rules.to_dict(),
            "version": self.version,
            "active": self.active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
