"""CLI tests via click's CliRunner."""

import json
import sqlite3

import pytest
from click.testing import CliRunner

from switchyard.cli import main
from switchyard.events import EventStore
from switchyard.storage import database_path

from conftest import BASE


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    for name in ("SWITCHYARD_DATA_DIR", "SWITCHYARD_SETTLEMENT_BACKEND", "SWITCHYARD_TREASURY_ADDRESS"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path / "data"


def _run(data_dir, *args):
    return CliRunner().invoke(main, ["--data-dir", str(data_dir), *args])


def test_facilitator_add_and_list(data_dir):
    added = _run(
        data_dir,
        "facilitator", "add",
        "--name", "cdp",
        "--endpoint", "https://fac.example/",
        "--network", BASE,
        "--asset", "USDC",
    )
    assert added.exit_code == 0, added.output
    assert "Facilitator registered" in added.output
    assert "Global" in added.output

    listed = _run(data_dir, "facilitator", "list", "--tenant", "t1")
    assert listed.exit_code == 0
    assert "cdp" in listed.output
    assert "health=unknown" in listed.output


def test_facilitator_import_missing_fails(data_dir):
    result = _run(data_dir, "facilitator", "import", "fac_missing", "--tenant", "t1")
    assert result.exit_code == 1
    assert "Import failed" in result.output


def test_policy_set_and_show(data_dir, tmp_path):
    rules = tmp_path / "rules.json"
    rules.write_text(json.dumps({"budgets": [{"limitUsd": "10", "period": "day"}]}))

    result = _run(data_dir, "policy", "set", "p1", "--tenant", "t1", "--rules-file", str(rules))
    assert result.exit_code == 0, result.output
    assert "Policy p1 v1 active for t1" in result.output

    shown = _run(data_dir, "policy", "show", "--tenant", "t1")
    assert json.loads(shown.output)["rules"]["budgets"] == [{"limitUsd": "10", "period": "day"}]


def test_policy_set_rejects_bad_rules(data_dir, tmp_path):
    rules = tmp_path / "rules.json"
    rules.write_text(json.dumps({"rpmLimits": [{"limit": -1}]}))

    result = _run(data_dir, "policy", "set", "p1", "--tenant", "t1", "--rules-file", str(rules))

    assert result.exit_code == 1
    assert "Policy rejected" in result.output


def test_route_publish(data_dir):
    args = ("route", "publish", "search", "--tenant", "t1", "--path", "/v1/search",
            "--accept", f"exact,{BASE},USDC,0.05")
    first = _run(data_dir, *args)
    second = _run(data_dir, *args)

    assert first.exit_code == 0, first.output
    assert "Route published: POST /v1/search" in first.output
    assert second.exit_code == 1
    assert "already exists" in second.output


def test_events_chain_and_spend(data_dir):
    store = EventStore(database_path(data_dir))
    store.insert_event("t1", "search", "d1", "settled", amount="0.05", asset="USDC", facilitator_id="F1")
    store.insert_event("t1", "search", "d2", "deny", deny_code="BUDGET_EXCEEDED")

    events = _run(data_dir, "events", "--tenant", "t1")
    assert events.exit_code == 0
    assert "[BUDGET_EXCEEDED]" in events.output
    assert "settled" in events.output

    chain = _run(data_dir, "verify-chain")
    assert chain.exit_code == 0
    assert "Event chain intact (2 events)" in chain.output

    spend = _run(data_dir, "spend", "--tenant", "t1")
    assert spend.exit_code == 0
    assert "Total: $0.050000" in spend.output
    assert "BUDGET_EXCEEDED" in spend.output


def test_verify_chain_reports_tampering(data_dir):
    db_path = database_path(data_dir)
    EventStore(db_path).insert_event("t1", "search", "d1", "paid", amount="1")
    with sqlite3.connect(db_path) as conn:
        conn.execute("UPDATE events SET amount = '0.01'")

    result = _run(data_dir, "verify-chain")

    assert result.exit_code == 1
    assert "Event chain broken" in result.output


def test_replay_cleanup(data_dir):
    result = _run(data_dir, "replay-cleanup", "--days", "0")
    assert result.exit_code == 0
    assert "Removed 0 replay records" in result.output


def test_poll_health_without_facilitators(data_dir):
    result = _run(data_dir, "poll-health")
    assert result.exit_code == 0
    assert "No active facilitators" in result.output
