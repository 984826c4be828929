"""Spend and outcome summaries computed from the event log."""

from __future__ import annotations

import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from .events import EventStore
from .models import SPEND_OUTCOMES
from .money import amount_to_micros, micros_to_float


def _day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def spend_summary(
    events: EventStore,
    tenant_id: str,
    days: int = 30,
    now: Optional[float] = None,
) -> dict:
    """Paid and settled spend over the last ``days`` days, in USD."""
    if days <= 0:
        raise ValueError("days must be positive")
    now = time.time() if now is None else now
    since = now - days * 86400
    today_since = now - 86400

    total = 0
    today = 0
    by_facilitator: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    by_day: dict[str, int] = defaultdict(int)

    for event in events.iter_tenant_events(tenant_id, since=since):
        if event.outcome not in SPEND_OUTCOMES or not event.amount:
            continue
        micros = amount_to_micros(event.amount)
        total += micros
        if event.created_at > today_since:
            today += micros
        bucket = by_facilitator[event.facilitator_id or "unknown"]
        bucket[0] += micros
        bucket[1] += 1
        by_day[_day(event.created_at)] += micros

    return {
        "summary": {
            "total": micros_to_float(total),
            "today": micros_to_float(today),
            "days": days,
        },
        "by_facilitator": [
            {"facilitator_id": fid, "amount": micros_to_float(amount), "count": count}
            for fid, (amount, count) in sorted(
                by_facilitator.items(), key=lambda kv: (-kv[1][0], kv[0])
            )
        ],
        "history": [
            {"date": day, "amount": micros_to_float(amount)}
            for day, amount in sorted(by_day.items())
        ],
    }


def outcome_breakdown(
    events: EventStore,
    tenant_id: str,
    days: Optional[int] = None,
    now: Optional[float] = None,
) -> dict:
    """Event counts per outcome and per deny code."""
    since = None
    if days is not None:
        since = (time.time() if now is None else now) - days * 86400
    by_outcome: dict[str, int] = defaultdict(int)
    by_deny_code: dict[str, int] = defaultdict(int)
    total = 0
    for event in events.iter_tenant_events(tenant_id, since=since):
        total += 1
        by_outcome[event.outcome] += 1
        if event.deny_code:
            by_deny_code[event.deny_code] += 1
    return {
        "total_events": total,
        "by_outcome": dict(sorted(by_outcome.items())),
        "by_deny_code": dict(sorted(by_deny_code.items())),
    }
