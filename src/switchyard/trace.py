"""Decision trace builder: an append-only, time-ordered record of routing steps."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .errors import TraceClosedError


class StepStatus(str, Enum):
    OK = "ok"
    DENY = "deny"
    ERROR = "error"


@dataclass(frozen=True)
class TraceStep:
    t: float
    name: str
    status: str
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "t": self.t,
            "name": self.name,
            "status": self.status,
            "attributes": dict(self.attributes),
        }


@dataclass
class DecisionTrace:
    trace_id: str
    span_id: str
    decision_id: str
    started_at: float
    ended_at: Optional[float] = None
    steps: list[TraceStep] = field(default_factory=list)

    @property
    def closed(self) -> bool:
        return self.ended_at is not None

    def metadata(self) -> dict:
        return {
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "decision_id": self.decision_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }

    def steps_as_dicts(self) -> list[dict]:
        return [s.to_dict() for s in self.steps]


def _now(trace: DecisionTrace) -> float:
    # Clamp so step times never go backwards if the wall clock does.
    now = time.time()
    if trace.steps and now < trace.steps[-1].t:
        return trace.steps[-1].t
    return max(now, trace.started_at)


def start_trace(decision_id: Optional[str] = None) -> DecisionTrace:
    """Open a new trace with a ``trace.started`` step."""
    started = time.time()
    trace = DecisionTrace(
        trace_id=uuid.uuid4().hex,
        span_id=uuid.uuid4().hex[:16],
        decision_id=decision_id or str(uuid.uuid4()),
        started_at=started,
    )
    trace.steps.append(TraceStep(t=started, name="trace.started", status=StepStatus.OK.value))
    return trace


def add_step(
    trace: DecisionTrace,
    name: str,
    status: StepStatus | str = StepStatus.OK,
    attributes: Optional[dict[str, Any]] = None,
) -> TraceStep:
    if trace.closed:
        raise TraceClosedError(f"Trace {trace.trace_id} already ended; cannot add {name!r}")
    step = TraceStep(
        t=_now(trace),
        name=name,
        status=StepStatus(status).value,
        attributes=dict(attributes or {}),
    )
    trace.steps.append(step)
    return step


def end_trace(trace: DecisionTrace) -> DecisionTrace:
    """Close the trace. Ending an already-ended trace changes nothing."""
    if trace.closed:
        return trace
    t = _now(trace)
    trace.steps.append(TraceStep(t=t, name="trace.ended", status=StepStatus.OK.value))
    trace.ended_at = t
    return trace
