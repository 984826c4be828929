"""
Facilitator health polling.

Each poll probes every active facilitator's ``/supported`` endpoint, keeps
the most recent samples per facilitator, and writes the derived success
rate, p95 latency and status back to the registry.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Optional

import httpx

from .cdp_facilitator import auth_for_endpoint
from .models import Facilitator, FacilitatorHealth, HealthStatus
from .registry import FacilitatorRegistry


logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 20
HEALTHY_SUCCESS_RATE = 0.95
SLOW_P95_MS = 2000.0


@dataclass(frozen=True)
class ProbeSample:
    ok: bool
    latency_ms: Optional[float]
    error: Optional[str] = None


def p95(values: list[float]) -> Optional[float]:
    """Nearest-rank 95th percentile."""
    if not values:
        return None
    ordered = sorted(values)
    rank = max(1, math.ceil(0.95 * len(ordered)))
    return ordered[rank - 1]


def derive_health(samples: list[ProbeSample], checked_at: float) -> FacilitatorHealth:
    if not samples:
        return FacilitatorHealth(status=HealthStatus.UNKNOWN.value, last_checked_at=checked_at)
    successes = [s for s in samples if s.ok]
    success_rate = len(successes) / len(samples)
    latency = p95([s.latency_ms for s in successes if s.latency_ms is not None])
    if not successes:
        status = HealthStatus.DOWN
    elif success_rate >= HEALTHY_SUCCESS_RATE and (latency is None or latency <= SLOW_P95_MS):
        status = HealthStatus.HEALTHY
    else:
        status = HealthStatus.DEGRADED
    return FacilitatorHealth(
        status=status.value,
        p95_latency_ms=latency,
        success_rate=round(success_rate, 4),
        last_checked_at=checked_at,
    )


class HealthPoller:
    def __init__(
        self,
        registry: FacilitatorRegistry,
        timeout_seconds: float = 2.5,
        window: int = DEFAULT_WINDOW,
        client: Optional[httpx.Client] = None,
    ):
        self.registry = registry
        self.window = window
        self._http = client or httpx.Client(timeout=timeout_seconds)
        self._samples: dict[str, deque[ProbeSample]] = defaultdict(lambda: deque(maxlen=self.window))
        self._lock = threading.Lock()

    def probe(self, facilitator: Facilitator) -> ProbeSample:
        url = f"{facilitator.endpoint}/supported"
        headers = {"Accept": "application/json"}
        started = time.monotonic()
        try:
            auth = auth_for_endpoint(facilitator.endpoint)
            if auth is not None:
                headers.update(auth.headers_for("supported"))
            resp = self._http.get(url, headers=headers)
        except (httpx.HTTPError, ValueError) as e:
            return ProbeSample(ok=False, latency_ms=None, error=f"{type(e).__name__}: {e}")
        latency_ms = (time.monotonic() - started) * 1000.0
        if resp.status_code >= 400:
            return ProbeSample(ok=False, latency_ms=latency_ms, error=f"HTTP {resp.status_code}")
        return ProbeSample(ok=True, latency_ms=latency_ms)

    def poll_once(self) -> list[dict]:
        """Probe all active facilitators once. Returns one summary row per facilitator."""
        results: list[dict] = []
        for facilitator in self.registry.refresh():
            sample = self.probe(facilitator)
            with self._lock:
                window = self._samples[facilitator.facilitator_id]
                window.append(sample)
                health = derive_health(list(window), checked_at=time.time())
            self.registry.update_health(facilitator.facilitator_id, health)
            if not sample.ok:
                logger.warning(
                    "Facilitator %s probe failed: %s", facilitator.facilitator_id, sample.error
                )
            results.append(
                {
                    "facilitator_id": facilitator.facilitator_id,
                    "status": health.status,
                    "success_rate": health.success_rate,
                    "p95_latency_ms": health.p95_latency_ms,
                    "error": sample.error,
                }
            )
        self.registry.refresh()
        logger.info("Health poll probed %d facilitators", len(results))
        return results
