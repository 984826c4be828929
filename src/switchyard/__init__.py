"""
Switchyard — payment-aware API router for x402 services.

Plan a payment against a route, enforce the tenant's spend policy,
pick the best facilitator, then verify and settle, with every decision
traced and written to a tamper-evident event log.
"""

__version__ = "0.1.0"

from .errors import (
    AlreadyExistsError,
    InvalidInputError,
    NoFacilitatorAvailableError,
    NotFoundError,
    PolicyOwnershipError,
    ReplayDetectedError,
    SwitchyardError,
    TraceClosedError,
    VerificationTimeoutError,
)
from .deny_codes import DenyCode
from .models import AcceptedPayment, Facilitator, FacilitatorHealth, PaymentDetails, Route
from .policy_rules import Policy, PolicyRules
from .registry import FacilitatorRegistry
from .routing import RoutePlan, RoutingEngine
from .policy import PolicyEngine, Verdict
from .replay import ReplayGuard
from .trace import DecisionTrace, add_step, end_trace, start_trace
from .events import EventStore
from .config import RouterConfig
from .service import PlanRequest, RouterResponse, RouterService, VerifyRequest, build_service

__all__ = [
    "SwitchyardError", "InvalidInputError", "NotFoundError", "AlreadyExistsError",
    "PolicyOwnershipError", "NoFacilitatorAvailableError", "VerificationTimeoutError",
    "ReplayDetectedError", "TraceClosedError", "DenyCode",
    "AcceptedPayment", "Facilitator", "FacilitatorHealth", "PaymentDetails", "Route",
    "Policy", "PolicyRules", "FacilitatorRegistry", "RoutePlan", "RoutingEngine",
    "PolicyEngine", "Verdict", "ReplayGuard",
    "DecisionTrace", "start_trace", "add_step", "end_trace",
    "EventStore", "RouterConfig",
    "PlanRequest", "RouterResponse", "RouterService", "VerifyRequest", "build_service",
]
