"""End-to-end tests for plan/verify orchestration."""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from switchyard.deny_codes import DenyCode
from switchyard.dispatch import BestEffortDispatcher
from switchyard.errors import FacilitatorError, InvalidInputError
from switchyard.models import AcceptedPayment, PaymentDetails
from switchyard.oracle import VerificationOutcome
from switchyard.service import PlanRequest, VerifyRequest
from switchyard.settlement import SettlementResult

from conftest import BASE, healthy


SIG = "0xdeadbeef"


def _payment(amount="0.01", **overrides):
    values = {"network": BASE, "scheme": "exact", "amount": amount, "asset": "USDC"}
    values.update(overrides)
    return PaymentDetails(**values)


def _verify_request(auth="0xauth1", amount="0.01", **overrides):
    values = {
        "tenant_id": "t1",
        "authorization_id": auth,
        "payment_signature": SIG,
        "payment": _payment(amount),
        "route_id": "r1",
    }
    values.update(overrides)
    return VerifyRequest(**values)


@pytest.fixture
def facilitators(stores):
    stores.registry.register("f1", "https://f1.example", [BASE], facilitator_id="F1", health=healthy(0.99, 50))
    stores.registry.register("f2", "https://f2.example", [BASE], facilitator_id="F2", health=healthy(0.90, 50))


def _step_names(trace):
    return [s.name for s in trace.steps]


class StubOracle:
    def __init__(self, outcome=None, exc=None):
        self.outcome = outcome or VerificationOutcome(verified=True)
        self.exc = exc
        self.calls = []

    def verify_transfer(self, tx_hash, expected_amount, expected_recipient, **kwargs):
        self.calls.append((tx_hash, expected_amount, expected_recipient, kwargs))
        if self.exc is not None:
            raise self.exc
        return self.outcome


class BlockingOracle:
    def __init__(self):
        self.release = threading.Event()

    def verify_transfer(self, *args, **kwargs):
        self.release.wait(5)
        return VerificationOutcome(verified=True)


class FailingSettlement:
    def __init__(self, raises=False):
        self.raises = raises

    def settle(self, *args, **kwargs):
        if self.raises:
            raise RuntimeError("settlement exploded")
        return SettlementResult(success=False, error="insufficient funds")


class RecordingSink:
    def __init__(self):
        self.payloads = []

    def send(self, payload):
        self.payloads.append(payload)


class TestPlan:
    def test_selects_best_facilitator(self, make_service, facilitators, stores):
        service = make_service()

        resp = service.plan(PlanRequest(route_id="r1", payment=_payment()), tenant_id="t1")

        assert resp.status == 200
        assert resp.body["facilitatorId"] == "F1"
        assert resp.body["price"] == "0.01"
        assert [c["facilitatorId"] for c in resp.body["candidates"]] == ["F1", "F2"]
        assert _step_names(resp.trace) == [
            "trace.started",
            "policy.allow",
            "route.selected",
            "trace.ended",
        ]
        [event] = stores.events.list_events("t1")
        assert event.outcome == "plan"
        assert event.decision_id == resp.decision_id
        assert event.facilitator_id == "F1"
        assert event.trace["trace_id"] == resp.body["traceId"]

    def test_unknown_network_is_unavailable(self, make_service, facilitators, stores):
        service = make_service()

        resp = service.plan(
            PlanRequest(route_id="r1", payment=_payment(network="chain-1")), tenant_id="t1"
        )

        assert resp.status == 503
        assert resp.body["error"]["code"] == "NO_FACILITATOR_AVAILABLE"
        [event] = stores.events.list_events("t1")
        assert event.outcome == "error"
        assert [s["name"] for s in event.steps][-2:] == ["route.unavailable", "trace.ended"]

    def test_policy_denial(self, make_service, facilitators, stores):
        stores.policies.upsert_policy(
            "p1", "t1", "no usdc", {"denyIf": [{"field": "asset", "op": "eq", "value": "USDC"}]}
        )
        service = make_service()

        resp = service.plan(PlanRequest(route_id="r1", payment=_payment()), tenant_id="t1")

        assert resp.status == 403
        assert resp.deny_code == DenyCode.SCOPE_DENIED
        assert resp.body["denyCode"] == "SCOPE_DENIED"
        assert resp.body["error"]["code"] == "POLICY_DENIED"
        assert _step_names(resp.trace) == ["trace.started", "policy.deny", "trace.ended"]
        [event] = stores.events.list_events("t1")
        assert (event.outcome, event.deny_code) == ("deny", "SCOPE_DENIED")

    def test_registered_route_sets_price(self, make_service, facilitators, stores):
        stores.routes.publish(
            "t1",
            "r1",
            "/v1/search",
            [AcceptedPayment(scheme="exact", network=BASE, asset="USDC", amount="0.05")],
        )
        service = make_service()

        resp = service.plan(PlanRequest(route_id="r1", payment=_payment("0.05")), tenant_id="t1")
        assert resp.body["price"] == "0.05"

        with pytest.raises(InvalidInputError):
            service.plan(PlanRequest(route_id="r1", payment=_payment(asset="DAI")), tenant_id="t1")

    def test_invalid_input_raises_before_any_event(self, make_service, facilitators, stores):
        service = make_service()
        with pytest.raises(InvalidInputError):
            service.plan(PlanRequest(route_id="r1", payment=_payment("lots")), tenant_id="t1")
        assert stores.events.list_events("t1") == []

    def test_storage_failure_does_not_change_the_response(
        self, make_service, facilitators, stores, monkeypatch
    ):
        def broken(**kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(stores.events, "insert_event", broken)
        service = make_service()

        resp = service.plan(PlanRequest(route_id="r1", payment=_payment()), tenant_id="t1")

        assert resp.status == 200
        assert resp.body["facilitatorId"] == "F1"

    def test_analytics_are_dispatched(self, make_service, facilitators):
        sink = RecordingSink()
        service = make_service(dispatcher=BestEffortDispatcher(), analytics=sink)

        resp = service.plan(PlanRequest(route_id="r1", payment=_payment()), tenant_id="t1")
        service.dispatcher.flush(timeout=2)

        assert sink.payloads[0]["decisionId"] == resp.decision_id
        assert sink.payloads[0]["outcome"] == "plan"


class TestVerify:
    def test_plan_then_verify_settles_on_same_facilitator(self, make_service, facilitators, stores):
        service = make_service()
        planned = service.plan(PlanRequest(route_id="r1", payment=_payment()), tenant_id="t1")

        resp = service.verify(_verify_request(decision_id=planned.decision_id))

        assert resp.status == 200
        assert resp.body["verified"] is True
        assert resp.body["outcome"] == "settled"
        assert resp.body["facilitatorId"] == planned.body["facilitatorId"]
        assert resp.body["decisionId"] == planned.decision_id
        assert resp.body["settlement"]["settlement_id"].startswith("sandbox-")
        assert resp.body["verification"]["verified"] is True
        assert _step_names(resp.trace) == [
            "trace.started",
            "policy.allow",
            "route.selected",
            "replay.check",
            "verify.ok",
            "settle.ok",
            "trace.ended",
        ]
        assert stores.replay.check("0xauth1")

    def test_oracle_gets_route_price_and_treasury(self, make_service, facilitators):
        oracle = StubOracle()
        service = make_service(oracle=oracle)

        service.verify(_verify_request())

        tx_hash, amount, recipient, kwargs = oracle.calls[0]
        assert (tx_hash, amount) == ("0xauth1", "0.01")
        assert recipient == "0x273326453960864FbA4D2F6Cf09D65fA13E45297"
        assert kwargs["facilitator"].facilitator_id == "F1"
        assert kwargs["payment_signature"] == SIG

    def test_second_use_of_authorization_is_rejected(self, make_service, facilitators, stores):
        service = make_service()
        assert service.verify(_verify_request()).status == 200

        resp = service.verify(_verify_request(auth="0xAUTH1"))

        assert resp.status == 409
        assert resp.deny_code == DenyCode.REPLAY_DETECTED
        assert resp.body["error"]["code"] == "REPLAY_DETECTED"
        newest = stores.events.list_events("t1")[0]
        assert (newest.outcome, newest.deny_code) == ("deny", "REPLAY_DETECTED")

    def test_concurrent_verifies_settle_exactly_once(self, make_service, facilitators, stores):
        service = make_service()

        with ThreadPoolExecutor(max_workers=50) as ex:
            responses = list(ex.map(lambda _: service.verify(_verify_request(auth="0xrace")), range(50)))

        statuses = sorted(r.status for r in responses)
        assert statuses.count(200) == 1
        assert statuses.count(409) == 49
        assert all(r.deny_code == DenyCode.REPLAY_DETECTED for r in responses if r.status == 409)
        settled = [e for e in stores.events.list_events("t1", limit=100) if e.outcome == "settled"]
        assert len(settled) == 1

    def test_bad_signature_does_not_consume_authorization(self, make_service, facilitators, stores):
        service = make_service()

        resp = service.verify(_verify_request(payment_signature="not-a-signature"))

        assert resp.status == 400
        assert resp.deny_code == DenyCode.INVALID_SIGNATURE
        assert stores.replay.get("0xauth1") is None
        assert service.verify(_verify_request()).status == 200

    def test_oracle_reason_code_is_returned(self, make_service, facilitators):
        oracle = StubOracle(
            VerificationOutcome(
                verified=False, reason_code=DenyCode.AUTHORIZATION_EXPIRED, detail="expired"
            )
        )
        resp = make_service(oracle=oracle).verify(_verify_request())

        assert resp.status == 400
        assert resp.body["denyCode"] == "AUTHORIZATION_EXPIRED"

    def test_timeout_leaves_authorization_unused(self, make_service, facilitators, stores):
        oracle = BlockingOracle()
        service = make_service(oracle=oracle, verify_timeout_seconds=0.1)

        try:
            resp = service.verify(_verify_request())
        finally:
            oracle.release.set()

        assert resp.status == 503
        assert resp.deny_code == DenyCode.VERIFICATION_TIMEOUT
        assert resp.body["error"]["code"] == "VERIFICATION_TIMEOUT"
        assert "verify.timeout" in _step_names(resp.trace)
        assert stores.replay.get("0xauth1") is None
        assert stores.events.list_events("t1")[0].outcome == "error"

    def test_facilitator_error_is_unavailable(self, make_service, facilitators, stores):
        oracle = StubOracle(exc=FacilitatorError("Facilitator verify returned HTTP 502"))

        resp = make_service(oracle=oracle).verify(_verify_request())

        assert resp.status == 503
        assert resp.body["error"]["code"] == "FACILITATOR_ERROR"
        assert resp.deny_code == DenyCode.VERIFICATION_FAILED
        assert stores.replay.get("0xauth1") is None

    @pytest.mark.parametrize("raises", [False, True])
    def test_failed_settlement_still_records_payment(self, make_service, facilitators, stores, raises):
        service = make_service(settlement=FailingSettlement(raises=raises))

        resp = service.verify(_verify_request())

        assert resp.status == 200
        assert resp.body["outcome"] == "paid"
        assert "settle.error" in _step_names(resp.trace)
        assert stores.events.list_events("t1")[0].outcome == "paid"

    def test_settled_spend_feeds_budget(self, make_service, facilitators, stores):
        stores.policies.upsert_policy(
            "p1", "t1", "tight", {"budgets": [{"limitUsd": "0.015", "period": "day"}]}
        )
        service = make_service()

        assert service.verify(_verify_request(auth="0xa")).status == 200
        resp = service.verify(_verify_request(auth="0xb"))

        assert resp.status == 403
        assert resp.deny_code == DenyCode.BUDGET_EXCEEDED
        assert stores.replay.get("0xb") is None

    def test_registered_route_price_is_charged_whatever_the_client_claims(
        self, make_service, facilitators, stores
    ):
        stores.routes.publish(
            "t1",
            "r1",
            "/v1/search",
            [AcceptedPayment(scheme="exact", network=BASE, asset="USDC", amount="5.00")],
        )
        stores.policies.upsert_policy(
            "p1", "t1", "daily", {"budgets": [{"limitUsd": "6", "period": "day"}]}
        )
        oracle = StubOracle()
        service = make_service(oracle=oracle)

        first = service.verify(_verify_request(auth="0xa", amount="0"))
        second = service.verify(_verify_request(auth="0xb", amount="0"))

        assert first.status == 200
        assert oracle.calls[0][1] == "5.00"
        assert second.status == 403
        assert second.deny_code == DenyCode.BUDGET_EXCEEDED
        settled = [e for e in stores.events.list_events("t1") if e.outcome == "settled"]
        assert [e.amount for e in settled] == ["5.00"]
        assert settled[0].raw_payload["payment"]["amount"] == "0"

    def test_unexpected_oracle_failure_is_recorded(self, make_service, facilitators, stores):
        oracle = StubOracle(exc=AttributeError("'list' object has no attribute 'get'"))

        resp = make_service(oracle=oracle).verify(_verify_request())

        assert resp.status == 500
        assert resp.body["error"]["code"] == "INTERNAL_ERROR"
        assert resp.deny_code == DenyCode.VERIFICATION_FAILED
        assert "verify.error" in _step_names(resp.trace)
        [event] = stores.events.list_events("t1")
        assert event.outcome == "error"
        assert stores.replay.get("0xauth1") is None

    def test_blank_authorization_is_rejected_before_any_event(
        self, make_service, facilitators, stores
    ):
        with pytest.raises(InvalidInputError):
            make_service().verify(_verify_request(auth="   "))
        assert stores.events.list_events("t1") == []

    def test_plan_and_verify_count_once_against_rate_limits(
        self, make_service, facilitators, stores
    ):
        stores.policies.upsert_policy("p1", "t1", "rpm", {"rpmLimits": [{"limit": 1}]})
        service = make_service()

        planned = service.plan(PlanRequest(route_id="r1", payment=_payment()), tenant_id="t1")
        verified = service.verify(_verify_request(decision_id=planned.decision_id))
        replanned = service.plan(PlanRequest(route_id="r1", payment=_payment()), tenant_id="t1")

        assert planned.status == 200
        assert verified.status == 200
        assert replanned.deny_code == DenyCode.RATE_LIMITED
