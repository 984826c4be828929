"""Tests for the facilitator registry and candidate ranking."""

import pytest

from switchyard.errors import AlreadyExistsError, InvalidInputError, NotFoundError
from switchyard.models import FacilitatorHealth, FacilitatorType
from switchyard.registry import FacilitatorRegistry, score

from conftest import BASE, healthy


def test_register_global_and_private(stores):
    g = stores.registry.register("cdp", "https://fac.example/", [BASE], assets=["usdc"])
    p = stores.registry.register("mine", "https://mine.example", [BASE], tenant_id="t1")

    assert g.type == FacilitatorType.GLOBAL.value
    assert g.tenant_id is None
    assert g.endpoint == "https://fac.example"
    assert g.assets == frozenset({"USDC"})
    assert p.type == FacilitatorType.PRIVATE.value
    assert stores.registry.get(p.facilitator_id).name == "mine"


def test_register_requires_a_network(stores):
    with pytest.raises(InvalidInputError):
        stores.registry.register("x", "https://x.example", [])


def test_duplicate_private_name_is_rejected(stores):
    stores.registry.register("mine", "https://a.example", [BASE], tenant_id="t1")
    with pytest.raises(AlreadyExistsError):
        stores.registry.register("mine", "https://b.example", [BASE], tenant_id="t1")
    # Same name under another tenant is fine.
    stores.registry.register("mine", "https://c.example", [BASE], tenant_id="t2")


def test_candidates_are_ranked_by_score(stores):
    reg = stores.registry
    reg.register("b", "https://b.example", [BASE], facilitator_id="B", health=healthy(0.95, 40))
    reg.register("a", "https://a.example", [BASE], facilitator_id="A", health=healthy(0.99, 50))

    ranked = reg.list_candidates(BASE, "exact", "USDC", "t1")
    assert [f.facilitator_id for f in ranked] == ["A", "B"]
    assert score(ranked[0]) == pytest.approx(0.94)
    assert score(ranked[1]) == pytest.approx(0.91)


def test_ties_prefer_private_then_id(stores):
    reg = stores.registry
    h = healthy(0.99, 50)
    reg.register("g2", "https://g2.example", [BASE], facilitator_id="G2", health=h)
    reg.register("g1", "https://g1.example", [BASE], facilitator_id="G1", health=h)
    reg.register("p", "https://p.example", [BASE], facilitator_id="Z", tenant_id="t1", health=h)

    ranked = reg.list_candidates(BASE, "exact", "USDC", "t1")
    assert [f.facilitator_id for f in ranked] == ["Z", "G1", "G2"]


def test_unmeasured_facilitator_counts_as_perfect(stores):
    reg = stores.registry
    reg.register("measured", "https://m.example", [BASE], facilitator_id="M", health=healthy(0.99, 10))
    reg.register("fresh", "https://f.example", [BASE], facilitator_id="F")
    ranked = reg.list_candidates(BASE, "exact", "USDC", None)
    assert ranked[0].facilitator_id == "F"


def test_filters_visibility_support_status_and_health(stores):
    reg = stores.registry
    reg.register("other", "https://o.example", [BASE], facilitator_id="OTHER", tenant_id="t2")
    reg.register("eth", "https://e.example", ["eip155:1"], facilitator_id="ETH")
    reg.register("dai", "https://d.example", [BASE], assets=["DAI"], facilitator_id="DAI")
    reg.register("any", "https://any.example", [BASE], facilitator_id="ANY")
    reg.register("down", "https://down.example", [BASE], facilitator_id="DOWN")
    reg.register("off", "https://off.example", [BASE], facilitator_id="OFF")

    reg.update_health("DOWN", FacilitatorHealth(status="down", success_rate=0.0))
    reg.deactivate("OFF")
    reg.refresh()

    ranked = reg.list_candidates(BASE, "exact", "usdc", "t1")
    assert [f.facilitator_id for f in ranked] == ["ANY"]


def test_degraded_facilitator_is_still_a_candidate(stores):
    reg = stores.registry
    reg.register("slow", "https://s.example", [BASE], facilitator_id="S")
    reg.update_health("S", FacilitatorHealth(status="degraded", success_rate=0.8, p95_latency_ms=3000))
    reg.refresh()
    assert [f.facilitator_id for f in reg.list_candidates(BASE, "exact", "USDC", "t1")] == ["S"]


def test_update_health_unknown_facilitator(stores):
    with pytest.raises(NotFoundError):
        stores.registry.update_health("nope", FacilitatorHealth(status="healthy"))
    with pytest.raises(InvalidInputError):
        stores.registry.update_health("nope", FacilitatorHealth(status="great"))


def test_snapshot_is_not_reloaded_before_ttl(db_path):
    reg = FacilitatorRegistry(db_path, refresh_seconds=3600)
    reg.register("a", "https://a.example", [BASE], facilitator_id="A")
    reg.update_health("A", FacilitatorHealth(status="down"))
    # Health writes land in storage; routing sees them on the next refresh.
    assert [f.facilitator_id for f in reg.list_candidates(BASE, "exact", "USDC", None)] == ["A"]
    reg.refresh()
    assert reg.list_candidates(BASE, "exact", "USDC", None) == []


def test_import_global_copies_into_tenant(stores):
    reg = stores.registry
    src = reg.register("cdp", "https://cdp.example", [BASE], schemes=["exact"], facilitator_id="GLOBAL1")

    imported = reg.import_global("GLOBAL1", "t1")

    assert imported.facilitator_id != src.facilitator_id
    assert imported.type == FacilitatorType.PRIVATE.value
    assert imported.tenant_id == "t1"
    assert imported.endpoint == src.endpoint
    assert imported.schemes == frozenset({"exact"})
    assert reg.get("GLOBAL1").type == FacilitatorType.GLOBAL.value
    assert {f.facilitator_id for f in reg.list_visible("t1")} == {"GLOBAL1", imported.facilitator_id}
    assert {f.facilitator_id for f in reg.list_visible("t2")} == {"GLOBAL1"}


def test_import_global_twice_is_rejected(stores):
    stores.registry.register("cdp", "https://cdp.example", [BASE], facilitator_id="GLOBAL1")
    stores.registry.import_global("GLOBAL1", "t1")
    with pytest.raises(AlreadyExistsError):
        stores.registry.import_global("GLOBAL1", "t1")


def test_import_rejects_missing_and_private_sources(stores):
    stores.registry.register("p", "https://p.example", [BASE], facilitator_id="P", tenant_id="t2")
    with pytest.raises(NotFoundError):
        stores.registry.import_global("missing", "t1")
    with pytest.raises(NotFoundError):
        stores.registry.import_global("P", "t1")


def test_private_facilitator_hidden_from_other_tenants(stores):
    stores.registry.register("p", "https://p.example", [BASE], facilitator_id="P", tenant_id="t2")
    with pytest.raises(NotFoundError):
        stores.registry.get("P", tenant_id="t1")
    with pytest.raises(NotFoundError):
        stores.registry.deactivate("P", tenant_id="t1")
    assert stores.registry.get("P", tenant_id="t2").facilitator_id == "P"


def test_list_visible_can_include_inactive(stores):
    stores.registry.register("a", "https://a.example", [BASE], facilitator_id="A")
    stores.registry.deactivate("A")
    assert stores.registry.list_visible("t1") == []
    assert [f.facilitator_id for f in stores.registry.list_visible("t1", include_inactive=True)] == ["A"]
