"""Shared fixtures: per-test SQLite stores and a service factory."""

from types import SimpleNamespace

import pytest

from switchyard.events import EventStore
from switchyard.models import FacilitatorHealth
from switchyard.oracle import SandboxOracle
from switchyard.policy_store import PolicyStore
from switchyard.registry import FacilitatorRegistry
from switchyard.replay import ReplayGuard
from switchyard.routes import RouteStore
from switchyard.service import RouterService
from switchyard.settlement import SandboxSettlementBackend


TREASURY = "0x273326453960864FbA4D2F6Cf09D65fA13E45297"
BASE = "eip155:8453"


@pytest.fixture(autouse=True)
def _no_env_event_key(monkeypatch):
    monkeypatch.delenv("SWITCHYARD_EVENT_HMAC_KEY", raising=False)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "switchyard.sqlite3"


@pytest.fixture
def stores(db_path):
    return SimpleNamespace(
        registry=FacilitatorRegistry(db_path, refresh_seconds=3600),
        policies=PolicyStore(db_path),
        events=EventStore(db_path),
        routes=RouteStore(db_path),
        replay=ReplayGuard(db_path),
    )


def healthy(success_rate, p95_ms):
    return FacilitatorHealth(status="healthy", success_rate=success_rate, p95_latency_ms=p95_ms)


@pytest.fixture
def make_service(stores):
    created = []

    def _make(oracle=None, settlement=None, **kwargs):
        service = RouterService(
            registry=stores.registry,
            policies=stores.policies,
            events=stores.events,
            routes=stores.routes,
            replay=stores.replay,
            oracle=oracle or SandboxOracle(),
            settlement=settlement or SandboxSettlementBackend(),
            treasury_address=TREASURY,
            **kwargs,
        )
        created.append(service)
        return service

    yield _make
    for service in created:
        service.close()
