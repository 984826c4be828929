"""
Router service: orchestrates plan and verify.

A request moves Received -> PolicyChecked -> Routed and then either ends as
a plan, or goes through Verifying to Verified, Denied or ReplayRejected.
Every path ends by persisting exactly one Event carrying the decision
trace. Persisting is best effort: a storage failure is logged and the
response already computed is returned unchanged.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from .config import RouterConfig
from .deny_codes import DenyCode, http_status_for
from .dispatch import AnalyticsSink, BestEffortDispatcher
from .errors import (
    FacilitatorError,
    InvalidInputError,
    NoFacilitatorAvailableError,
    ReplayDetectedError,
    VerificationTimeoutError,
)
from .events import EventStore
from .models import AcceptedPayment, Outcome, PaymentDetails, Route
from .oracle import FacilitatorOracle, SandboxOracle, VerificationOracle, VerificationOutcome
from .policy import PolicyEngine, Verdict
from .policy_store import PolicyStore
from .ratelimit import RateCounter
from .registry import FacilitatorRegistry, score
from .replay import ReplayGuard, normalize_authorization_id
from .routes import RouteStore
from .routing import RoutePlan, RoutingEngine, validate_payment
from .settlement import SettlementBackend, SettlementMode, build_settlement_backend
from .storage import database_path
from .trace import DecisionTrace, StepStatus, add_step, end_trace, start_trace


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlanRequest:
    route_id: str
    payment: PaymentDetails
    policy_id: Optional[str] = None
    buyer_id: Optional[str] = None
    path: Optional[str] = None
    method: str = "POST"


@dataclass(frozen=True)
class VerifyRequest:
    tenant_id: str
    authorization_id: str
    payment_signature: str
    payment: PaymentDetails
    route_id: str
    path: Optional[str] = None
    decision_id: Optional[str] = None
    buyer_id: Optional[str] = None


@dataclass
class RouterResponse:
    status: int
    body: dict[str, Any]
    decision_id: str
    deny_code: Optional[DenyCode] = None
    trace: Optional[DecisionTrace] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.status < 400


def error_body(
    code: str,
    message: str,
    details: Any = None,
    deny_code: Optional[DenyCode] = None,
    decision_id: Optional[str] = None,
) -> dict:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    body: dict[str, Any] = {"error": error}
    if deny_code is not None:
        body["denyCode"] = deny_code.value
    if decision_id is not None:
        body["decisionId"] = decision_id
    return body


def _candidate_view(plan: RoutePlan, latency_normalizer: float) -> list[dict]:
    return [
        {
            "facilitatorId": c.facilitator_id,
            "name": c.name,
            "type": c.type,
            "score": round(score(c, latency_normalizer), 6),
            "health": c.health.status,
        }
        for c in plan.candidates
    ]


class RouterService:
    def __init__(
        self,
        registry: FacilitatorRegistry,
        policies: PolicyStore,
        events: EventStore,
        routes: RouteStore,
        replay: ReplayGuard,
        oracle: VerificationOracle,
        settlement: SettlementBackend,
        rate_counter: Optional[RateCounter] = None,
        treasury_address: str = "",
        verify_timeout_seconds: float = 10.0,
        oracle_workers: int = 32,
        dispatcher: Optional[BestEffortDispatcher] = None,
        analytics: Optional[AnalyticsSink] = None,
    ):
        self.registry = registry
        self.policies = policies
        self.events = events
        self.routes = routes
        self.replay = replay
        self.oracle = oracle
        self.settlement = settlement
        self.rate_counter = rate_counter or RateCounter()
        self.policy_engine = PolicyEngine(policies, events, self.rate_counter)
        self.routing = RoutingEngine(registry)
        self.treasury_address = treasury_address
        self.verify_timeout_seconds = verify_timeout_seconds
        self.dispatcher = dispatcher
        self.analytics = analytics
        self._oracle_pool = ThreadPoolExecutor(
            max_workers=oracle_workers, thread_name_prefix="switchyard-oracle"
        )

    def close(self) -> None:
        self._oracle_pool.shutdown(wait=False, cancel_futures=True)
        if self.dispatcher is not None:
            self.dispatcher.stop()

    # ── persistence ───────────────────────────────────────────────

    def _persist(
        self,
        tenant_id: str,
        route: Route,
        payment: PaymentDetails,
        trace: DecisionTrace,
        outcome: Outcome,
        request_id: Optional[str],
        raw_payload: dict,
        facilitator_id: Optional[str] = None,
        deny_code: Optional[DenyCode] = None,
    ) -> None:
        end_trace(trace)
        meta = trace.metadata()
        if request_id:
            meta["request_id"] = request_id
        try:
            self.events.insert_event(
                tenant_id=tenant_id,
                route_id=route.route_id,
                decision_id=trace.decision_id,
                outcome=outcome.value,
                network=payment.network,
                scheme=payment.scheme,
                asset=payment.asset,
                amount=payment.amount,
                facilitator_id=facilitator_id,
                deny_code=deny_code.value if deny_code else None,
                steps=trace.steps_as_dicts(),
                trace=meta,
                raw_payload=raw_payload,
            )
        except Exception:
            logger.exception(
                "Failed to persist %s event for decision %s", outcome.value, trace.decision_id
            )
        if self.dispatcher is not None and self.analytics is not None:
            self.dispatcher.submit(
                self.analytics.send,
                {
                    "tenantId": tenant_id,
                    "routeId": route.route_id,
                    "decisionId": trace.decision_id,
                    "outcome": outcome.value,
                    "denyCode": deny_code.value if deny_code else None,
                    "facilitatorId": facilitator_id,
                    "network": payment.network,
                    "amount": payment.amount,
                },
            )

    # ── shared steps ──────────────────────────────────────────────

    def _check_policy(
        self,
        tenant_id: str,
        route: Route,
        payment: PaymentDetails,
        buyer_id: Optional[str],
        trace: DecisionTrace,
        requested_policy_id: Optional[str] = None,
        count_request: bool = True,
    ) -> Verdict:
        verdict = self.policy_engine.evaluate(
            tenant_id, route, payment, buyer_id=buyer_id, count_request=count_request
        )
        attrs = {
            "policyId": verdict.policy_id,
            "policyVersion": verdict.policy_version,
            "reason": verdict.reason,
        }
        if requested_policy_id:
            attrs["requestedPolicyId"] = requested_policy_id
        if verdict.allow:
            add_step(trace, "policy.allow", StepStatus.OK, attrs)
        else:
            attrs["denyCode"] = verdict.deny_code.value if verdict.deny_code else None
            attrs["matchedRule"] = verdict.matched_rule
            add_step(trace, "policy.deny", StepStatus.DENY, attrs)
        return verdict

    def _policy_denied(
        self,
        tenant_id: str,
        route: Route,
        payment: PaymentDetails,
        verdict: Verdict,
        trace: DecisionTrace,
        request_id: Optional[str],
        raw_payload: dict,
    ) -> RouterResponse:
        assert verdict.deny_code is not None
        self._persist(
            tenant_id, route, payment, trace, Outcome.DENY, request_id, raw_payload,
            deny_code=verdict.deny_code,
        )
        return RouterResponse(
            status=http_status_for(verdict.deny_code),
            body=error_body(
                "POLICY_DENIED",
                verdict.reason,
                details={"matchedRule": verdict.matched_rule, "policyId": verdict.policy_id},
                deny_code=verdict.deny_code,
                decision_id=trace.decision_id,
            ),
            decision_id=trace.decision_id,
            deny_code=verdict.deny_code,
            trace=trace,
        )

    def _route(
        self,
        tenant_id: str,
        route: Route,
        payment: PaymentDetails,
        trace: DecisionTrace,
        request_id: Optional[str],
        raw_payload: dict,
    ) -> tuple[Optional[RoutePlan], Optional[RouterResponse]]:
        try:
            plan = self.routing.plan(route, payment, tenant_id)
        except NoFacilitatorAvailableError as e:
            add_step(trace, "route.unavailable", StepStatus.ERROR, {"message": e.message})
            self._persist(tenant_id, route, payment, trace, Outcome.ERROR, request_id, raw_payload)
            return None, RouterResponse(
                status=e.status,
                body=error_body(e.code, e.message, e.details, decision_id=trace.decision_id),
                decision_id=trace.decision_id,
                trace=trace,
            )
        add_step(
            trace,
            "route.selected",
            StepStatus.OK,
            {
                "facilitatorId": plan.selected_facilitator_id,
                "candidates": plan.candidate_ids(),
            },
        )
        return plan, None

    # ── plan ──────────────────────────────────────────────────────

    def plan(
        self,
        request: PlanRequest,
        tenant_id: str,
        request_id: Optional[str] = None,
    ) -> RouterResponse:
        """Pick a facilitator for a proposed payment. Input errors raise ``InvalidInputError``."""
        payment = request.payment
        validate_payment(Route(route_id=request.route_id), payment)
        route, accepted = self.routes.resolve(
            tenant_id, request.route_id, payment, path=request.path, method=request.method
        )
        trace = start_trace()
        raw_payload = {
            "routeId": request.route_id,
            "payment": payment.to_dict(),
            "policyId": request.policy_id,
            "buyerId": request.buyer_id,
        }
        # The route's price is what gets charged, budgeted and recorded.
        payment = replace(payment, amount=accepted.amount)

        verdict = self._check_policy(
            tenant_id, route, payment, request.buyer_id, trace, request.policy_id
        )
        if not verdict.allow:
            return self._policy_denied(
                tenant_id, route, payment, verdict, trace, request_id, raw_payload
            )

        plan, failure = self._route(tenant_id, route, payment, trace, request_id, raw_payload)
        if failure is not None:
            return failure
        assert plan is not None

        self._persist(
            tenant_id, route, payment, trace, Outcome.PLAN, request_id, raw_payload,
            facilitator_id=plan.selected_facilitator_id,
        )
        return RouterResponse(
            status=200,
            body={
                "decisionId": trace.decision_id,
                "facilitatorId": plan.selected_facilitator_id,
                "accepted": accepted.to_dict(),
                "price": accepted.amount,
                "candidates": _candidate_view(plan, self.registry.latency_normalizer),
                "traceId": trace.trace_id,
            },
            decision_id=trace.decision_id,
            trace=trace,
        )

    # ── verify ────────────────────────────────────────────────────

    def _call_oracle(
        self,
        request: VerifyRequest,
        plan: RoutePlan,
        accepted: AcceptedPayment,
    ) -> VerificationOutcome:
        future = self._oracle_pool.submit(
            self.oracle.verify_transfer,
            request.authorization_id,
            accepted.amount,
            self.treasury_address,
            facilitator=plan.selected,
            payment=replace(request.payment, amount=accepted.amount),
            payment_signature=request.payment_signature,
        )
        try:
            return future.result(timeout=self.verify_timeout_seconds)
        except FutureTimeoutError as e:
            future.cancel()
            raise VerificationTimeoutError(
                f"Verification did not finish within {self.verify_timeout_seconds}s"
            ) from e

    def verify(self, request: VerifyRequest, request_id: Optional[str] = None) -> RouterResponse:
        """Verify a signed payment, consume its authorization, then settle."""
        tenant_id = request.tenant_id
        payment = request.payment
        validate_payment(Route(route_id=request.route_id), payment)
        try:
            normalize_authorization_id(request.authorization_id)
        except ValueError as e:
            raise InvalidInputError("authorizationId must not be blank") from e
        route, accepted = self.routes.resolve(
            tenant_id, request.route_id, payment, path=request.path
        )
        trace = start_trace(request.decision_id)
        raw_payload = {
            "routeId": request.route_id,
            "path": request.path,
            "payment": payment.to_dict(),
            "authorizationId": request.authorization_id,
        }
        payment = replace(payment, amount=accepted.amount)

        # The plan for this attempt already counted it against rate limits.
        verdict = self._check_policy(
            tenant_id, route, payment, request.buyer_id, trace, count_request=False
        )
        if not verdict.allow:
            return self._policy_denied(
                tenant_id, route, payment, verdict, trace, request_id, raw_payload
            )

        plan, failure = self._route(tenant_id, route, payment, trace, request_id, raw_payload)
        if failure is not None:
            return failure
        assert plan is not None
        facilitator_id = plan.selected_facilitator_id

        if self.replay.check(request.authorization_id):
            add_step(trace, "replay.check", StepStatus.DENY, {"seen": True})
            return self._replay_rejected(
                tenant_id, route, payment, trace, request_id, raw_payload, facilitator_id
            )
        add_step(trace, "replay.check", StepStatus.OK, {"seen": False})

        try:
            outcome = self._call_oracle(request, plan, accepted)
        except VerificationTimeoutError as e:
            logger.warning("Verification timed out for decision %s", trace.decision_id)
            add_step(trace, "verify.timeout", StepStatus.ERROR, {"facilitatorId": facilitator_id})
            return self._verify_failed(
                tenant_id, route, payment, trace, request_id, raw_payload, facilitator_id,
                DenyCode.VERIFICATION_TIMEOUT, e.message, status=e.status, code=e.code,
            )
        except FacilitatorError as e:
            add_step(trace, "verify.error", StepStatus.ERROR, {"message": e.message})
            return self._verify_failed(
                tenant_id, route, payment, trace, request_id, raw_payload, facilitator_id,
                DenyCode.VERIFICATION_FAILED, e.message, status=e.status, code=e.code,
            )
        except Exception as e:
            logger.exception("Verification oracle raised for decision %s", trace.decision_id)
            add_step(
                trace, "verify.error", StepStatus.ERROR,
                {"message": f"{type(e).__name__}: {e}"},
            )
            return self._verify_failed(
                tenant_id, route, payment, trace, request_id, raw_payload, facilitator_id,
                DenyCode.VERIFICATION_FAILED, "Verification failed unexpectedly",
                status=500, code="INTERNAL_ERROR",
            )

        if not outcome.verified:
            code = outcome.reason_code or DenyCode.VERIFICATION_FAILED
            add_step(
                trace,
                "verify.error",
                StepStatus.ERROR,
                {"reasonCode": code.value, "detail": outcome.detail},
            )
            return self._verify_failed(
                tenant_id, route, payment, trace, request_id, raw_payload, facilitator_id,
                code, outcome.detail or "Payment verification failed",
            )

        if not self.replay.record_if_absent(
            request.authorization_id, tenant_id=tenant_id, decision_id=trace.decision_id
        ):
            add_step(trace, "replay.rejected", StepStatus.DENY)
            return self._replay_rejected(
                tenant_id, route, payment, trace, request_id, raw_payload, facilitator_id
            )
        add_step(trace, "verify.ok", StepStatus.OK, {"payer": outcome.payer})

        settlement = None
        try:
            settlement = self.settlement.settle(
                request.authorization_id,
                payment,
                plan.selected,
                self.treasury_address,
                payment_signature=request.payment_signature,
            )
        except Exception:
            logger.exception("Settlement raised for decision %s", trace.decision_id)

        if settlement is not None and settlement.success:
            add_step(trace, "settle.ok", StepStatus.OK, {"settlementId": settlement.settlement_id})
            final = Outcome.SETTLED
        else:
            error = settlement.error if settlement is not None else "settlement backend raised"
            add_step(trace, "settle.error", StepStatus.ERROR, {"error": error})
            final = Outcome.PAID

        self._persist(
            tenant_id, route, payment, trace, final, request_id, raw_payload,
            facilitator_id=facilitator_id,
        )
        return RouterResponse(
            status=200,
            body={
                "verified": True,
                "decisionId": trace.decision_id,
                "facilitatorId": facilitator_id,
                "outcome": final.value,
                "verification": outcome.to_dict(),
                "settlement": settlement.to_dict() if settlement is not None else None,
                "traceId": trace.trace_id,
            },
            decision_id=trace.decision_id,
            trace=trace,
        )

    def _replay_rejected(
        self,
        tenant_id: str,
        route: Route,
        payment: PaymentDetails,
        trace: DecisionTrace,
        request_id: Optional[str],
        raw_payload: dict,
        facilitator_id: str,
    ) -> RouterResponse:
        err = ReplayDetectedError("Authorization has already been used")
        self._persist(
            tenant_id, route, payment, trace, Outcome.DENY, request_id, raw_payload,
            facilitator_id=facilitator_id, deny_code=DenyCode.REPLAY_DETECTED,
        )
        return RouterResponse(
            status=err.status,
            body=error_body(
                err.code, err.message,
                deny_code=DenyCode.REPLAY_DETECTED, decision_id=trace.decision_id,
            ),
            decision_id=trace.decision_id,
            deny_code=DenyCode.REPLAY_DETECTED,
            trace=trace,
        )

    def _verify_failed(
        self,
        tenant_id: str,
        route: Route,
        payment: PaymentDetails,
        trace: DecisionTrace,
        request_id: Optional[str],
        raw_payload: dict,
        facilitator_id: str,
        deny_code: DenyCode,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ) -> RouterResponse:
        self._persist(
            tenant_id, route, payment, trace, Outcome.ERROR, request_id, raw_payload,
            facilitator_id=facilitator_id, deny_code=deny_code,
        )
        return RouterResponse(
            status=status or http_status_for(deny_code),
            body=error_body(
                code or deny_code.value, message,
                deny_code=deny_code, decision_id=trace.decision_id,
            ),
            decision_id=trace.decision_id,
            deny_code=deny_code,
            trace=trace,
        )


def build_service(config: RouterConfig, oracle: Optional[VerificationOracle] = None) -> RouterService:
    """Wire a RouterService and its stores from a ``RouterConfig``."""
    db_path = database_path(config.data_dir)
    registry = FacilitatorRegistry(
        db_path,
        latency_normalizer=config.latency_normalizer_ms,
        refresh_seconds=config.registry_refresh_seconds,
    )
    if oracle is None:
        if config.settlement_backend == SettlementMode.FACILITATOR.value:
            oracle = FacilitatorOracle(timeout_seconds=config.facilitator_timeout_seconds)
        else:
            oracle = SandboxOracle()
    dispatcher = None
    analytics = None
    if config.analytics_url:
        dispatcher = BestEffortDispatcher()
        analytics = AnalyticsSink(config.analytics_url, secret=config.cron_secret)
    return RouterService(
        registry=registry,
        policies=PolicyStore(db_path),
        events=EventStore(db_path),
        routes=RouteStore(db_path),
        replay=ReplayGuard(db_path, retention_days=config.replay_retention_days),
        oracle=oracle,
        settlement=build_settlement_backend(
            config.settlement_backend, timeout_seconds=config.facilitator_timeout_seconds
        ),
        treasury_address=config.treasury_address,
        verify_timeout_seconds=config.verify_timeout_seconds,
        oracle_workers=config.oracle_workers,
        dispatcher=dispatcher,
        analytics=analytics,
    )
