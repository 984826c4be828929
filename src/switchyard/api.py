"""
HTTP surface for the router.

Run with:
    switchyard serve
or
    uvicorn switchyard.api:create_app --factory

Endpoints are plain ``def`` handlers so FastAPI runs each request on its
worker threadpool; the stores underneath are synchronous SQLite.
"""

from __future__ import annotations

import hmac
import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .analytics import outcome_breakdown, spend_summary
from .config import RouterConfig
from .errors import InvalidInputError, SwitchyardError, UnauthorizedError
from .health import HealthPoller
from .models import AcceptedPayment, PaymentDetails
from .service import PlanRequest, RouterResponse, RouterService, VerifyRequest, build_service, error_body


logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"


# ── request bodies ────────────────────────────────────────────────


class PaymentBody(BaseModel):
    network: str
    scheme: str
    amount: str
    asset: str


class BuyerBody(BaseModel):
    buyerId: Optional[str] = None


class PlanBody(BaseModel):
    policyId: Optional[str] = None
    routeId: str
    payment: PaymentBody
    buyer: Optional[BuyerBody] = None


class VerifyRouteBody(BaseModel):
    path: str
    routeId: Optional[str] = None


class VerifyBody(BaseModel):
    tenantId: Optional[str] = None
    decisionId: Optional[str] = None
    paymentSignature: str = Field(min_length=1)
    authorizationId: str = Field(min_length=1)
    amount: str
    asset: str
    scheme: str
    network: Optional[str] = None
    route: VerifyRouteBody


class FacilitatorBody(BaseModel):
    name: str
    endpoint: str
    networks: list[str]
    schemes: list[str] = Field(default_factory=list)
    assets: list[str] = Field(default_factory=list)


class ImportBody(BaseModel):
    facilitatorId: str


class PolicyBody(BaseModel):
    name: Optional[str] = None
    rules: dict[str, Any] = Field(default_factory=dict)


class AcceptedBody(BaseModel):
    scheme: str
    network: str
    asset: str
    amount: str


class RouteBody(BaseModel):
    routeId: str
    path: str
    method: str = "POST"
    accepts: list[AcceptedBody]


class CleanupBody(BaseModel):
    retentionDays: Optional[int] = Field(None, ge=0)


# ── app factory ───────────────────────────────────────────────────


def create_app(
    config: Optional[RouterConfig] = None,
    service: Optional[RouterService] = None,
    poller: Optional[HealthPoller] = None,
) -> FastAPI:
    config = config or RouterConfig.from_env()
    service = service or build_service(config)
    poller = poller or HealthPoller(service.registry)

    app = FastAPI(title="Switchyard payment router", version=__version__)
    app.state.config = config
    app.state.service = service
    app.state.poller = poller

    def _tenant(header_value: Optional[str]) -> str:
        return header_value or config.default_tenant_id

    def _require_cron(authorization: Optional[str]) -> None:
        expected = f"Bearer {config.cron_secret}" if config.cron_secret else None
        if expected is None or not hmac.compare_digest(authorization or "", expected):
            raise UnauthorizedError("Missing or invalid cron secret")

    def _respond(result: RouterResponse) -> JSONResponse:
        return JSONResponse(status_code=result.status, content=result.body)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error for request %s", request_id)
            response = JSONResponse(
                status_code=500,
                content=error_body("INTERNAL_ERROR", "Internal server error"),
            )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    @app.exception_handler(SwitchyardError)
    async def switchyard_error_handler(request: Request, exc: SwitchyardError):
        if exc.status >= 500:
            logger.warning("Request failed with %s: %s", exc.code, exc.message)
        return JSONResponse(status_code=exc.status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        err = InvalidInputError(
            "Request body failed validation",
            details=[
                {"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()
            ],
        )
        return JSONResponse(status_code=err.status, content={"error": err.to_dict()})

    # ── router ────────────────────────────────────────────────────

    @app.post("/router/plan")
    def plan(body: PlanBody, request: Request, x_tenant_id: Optional[str] = Header(None)):
        result = service.plan(
            PlanRequest(
                route_id=body.routeId,
                payment=PaymentDetails(**body.payment.model_dump()),
                policy_id=body.policyId,
                buyer_id=body.buyer.buyerId if body.buyer else None,
            ),
            tenant_id=_tenant(x_tenant_id),
            request_id=request.state.request_id,
        )
        return _respond(result)

    @app.post("/router/verify")
    def verify(body: VerifyBody, request: Request, x_tenant_id: Optional[str] = Header(None)):
        result = service.verify(
            VerifyRequest(
                tenant_id=body.tenantId or _tenant(x_tenant_id),
                authorization_id=body.authorizationId,
                payment_signature=body.paymentSignature,
                payment=PaymentDetails(
                    network=body.network or config.default_network,
                    scheme=body.scheme,
                    amount=body.amount,
                    asset=body.asset,
                ),
                route_id=body.route.routeId or body.route.path,
                path=body.route.path,
                decision_id=body.decisionId,
            ),
            request_id=request.state.request_id,
        )
        return _respond(result)

    # ── facilitators ──────────────────────────────────────────────

    @app.get("/facilitators")
    def list_facilitators(x_tenant_id: Optional[str] = Header(None)):
        tenant_id = _tenant(x_tenant_id)
        return {"facilitators": [f.to_dict() for f in service.registry.list_visible(tenant_id)]}

    @app.post("/facilitators", status_code=201)
    def add_facilitator(body: FacilitatorBody, x_tenant_id: Optional[str] = Header(None)):
        fac = service.registry.register(
            name=body.name,
            endpoint=body.endpoint,
            networks=body.networks,
            schemes=body.schemes,
            assets=body.assets,
            tenant_id=_tenant(x_tenant_id),
        )
        return fac.to_dict()

    @app.post("/facilitators/import", status_code=201)
    def import_facilitator(body: ImportBody, x_tenant_id: Optional[str] = Header(None)):
        return service.registry.import_global(body.facilitatorId, _tenant(x_tenant_id)).to_dict()

    @app.post("/facilitators/{facilitator_id}/deactivate")
    def deactivate_facilitator(facilitator_id: str, x_tenant_id: Optional[str] = Header(None)):
        return service.registry.deactivate(facilitator_id, _tenant(x_tenant_id)).to_dict()

    # ── policies ──────────────────────────────────────────────────

    @app.get("/policies")
    def list_policies(x_tenant_id: Optional[str] = Header(None)):
        tenant_id = _tenant(x_tenant_id)
        return {"policies": [p.to_dict() for p in service.policies.list_policies(tenant_id)]}

    @app.put("/policies/{policy_id}")
    def put_policy(policy_id: str, body: PolicyBody, x_tenant_id: Optional[str] = Header(None)):
        policy = service.policies.upsert_policy(
            policy_id=policy_id,
            tenant_id=_tenant(x_tenant_id),
            name=body.name or policy_id,
            rules=body.rules,
        )
        return policy.to_dict()

    # ── routes ────────────────────────────────────────────────────

    @app.post("/routes", status_code=201)
    def publish_route(body: RouteBody, x_tenant_id: Optional[str] = Header(None)):
        route = service.routes.publish(
            tenant_id=_tenant(x_tenant_id),
            route_id=body.routeId,
            path=body.path,
            method=body.method,
            accepts=[AcceptedPayment(**a.model_dump()) for a in body.accepts],
        )
        return route.to_dict()

    @app.get("/routes/{route_id}")
    def get_route(route_id: str, x_tenant_id: Optional[str] = Header(None)):
        return service.routes.require(_tenant(x_tenant_id), route_id).to_dict()

    # ── reporting ─────────────────────────────────────────────────

    @app.get("/events")
    def list_events(
        x_tenant_id: Optional[str] = Header(None),
        routeId: Optional[str] = None,
        limit: int = Query(50, ge=1, le=100),
        offset: int = Query(0, ge=0),
    ):
        events = service.events.list_events(
            _tenant(x_tenant_id), route_id=routeId, limit=limit, offset=offset
        )
        return {"events": [e.to_dict() for e in events], "limit": limit, "offset": offset}

    @app.get("/analytics/spend")
    def analytics_spend(
        x_tenant_id: Optional[str] = Header(None),
        days: int = Query(30, ge=1, le=365),
    ):
        return spend_summary(service.events, _tenant(x_tenant_id), days=days)

    @app.get("/analytics/outcomes")
    def analytics_outcomes(
        x_tenant_id: Optional[str] = Header(None),
        days: Optional[int] = Query(None, ge=1, le=365),
    ):
        return outcome_breakdown(service.events, _tenant(x_tenant_id), days=days)

    @app.get("/health")
    def health():
        return {
            "ok": True,
            "version": __version__,
            "facilitators": len(service.registry.snapshot()),
            "settlementBackend": config.settlement_backend,
        }

    # ── cron ──────────────────────────────────────────────────────

    @app.post("/internal/replay/cleanup")
    def replay_cleanup(
        body: Optional[CleanupBody] = None,
        authorization: Optional[str] = Header(None),
    ):
        _require_cron(authorization)
        days = body.retentionDays if body and body.retentionDays is not None else None
        deleted = service.replay.cleanup(days)
        return {"ok": True, "deleted": deleted}

    @app.post("/internal/facilitators/poll")
    def poll_facilitators(authorization: Optional[str] = Header(None)):
        _require_cron(authorization)
        return {"ok": True, "results": poller.poll_once()}

    return app
