"""
Settlement backends.

After a payment is verified the router asks a backend to settle it. The
sandbox backend returns a deterministic mock settlement id and never touches
the network; the facilitator backend calls ``{endpoint}/settle``.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import httpx

from .cdp_facilitator import auth_for_endpoint
from .models import Facilitator, PaymentDetails
from .oracle import X402_VERSION, build_requirements


logger = logging.getLogger(__name__)


class SettlementMode(str, Enum):
    SANDBOX = "sandbox"
    FACILITATOR = "facilitator"


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    settlement_id: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "settlement_id": self.settlement_id,
            "tx_hash": self.tx_hash,
            "error": self.error,
        }


class SettlementBackend(Protocol):
    def settle(
        self,
        authorization_id: str,
        payment: PaymentDetails,
        facilitator: Facilitator,
        recipient: str,
        payment_signature: Optional[str] = None,
    ) -> SettlementResult:
        ...


class SandboxSettlementBackend:
    def settle(
        self,
        authorization_id: str,
        payment: PaymentDetails,
        facilitator: Facilitator,
        recipient: str,
        payment_signature: Optional[str] = None,
    ) -> SettlementResult:
        digest = hashlib.sha256(
            f"{authorization_id}:{facilitator.facilitator_id}:{payment.amount}".encode()
        ).hexdigest()
        return SettlementResult(success=True, settlement_id=f"sandbox-{digest[:16]}")


class FacilitatorSettlementBackend:
    def __init__(self, timeout_seconds: float = 30.0, client: Optional[httpx.Client] = None):
        self._http = client or httpx.Client(timeout=timeout_seconds)

    def settle(
        self,
        authorization_id: str,
        payment: PaymentDetails,
        facilitator: Facilitator,
        recipient: str,
        payment_signature: Optional[str] = None,
    ) -> SettlementResult:
        auth = auth_for_endpoint(facilitator.endpoint)
        headers = auth.headers_for("settle") if auth else {}
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": {
                "x402Version": X402_VERSION,
                "scheme": payment.scheme,
                "network": payment.network,
                "payload": {"signature": payment_signature, "authorizationId": authorization_id},
            },
            "paymentRequirements": build_requirements(payment, payment.amount, recipient),
        }
        try:
            resp = self._http.post(f"{facilitator.endpoint}/settle", json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Settlement via %s failed: %s", facilitator.facilitator_id, e)
            return SettlementResult(success=False, error=f"{type(e).__name__}: {e}")

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if resp.status_code >= 400 or not data.get("success"):
            error = data.get("errorReason") or f"HTTP {resp.status_code}"
            return SettlementResult(success=False, error=str(error))
        tx_hash = data.get("transaction")
        return SettlementResult(success=True, settlement_id=tx_hash, tx_hash=tx_hash)


def build_settlement_backend(
    mode: str,
    timeout_seconds: float = 30.0,
    client: Optional[httpx.Client] = None,
) -> SettlementBackend:
    selected = SettlementMode(mode)
    if selected == SettlementMode.FACILITATOR:
        return FacilitatorSettlementBackend(timeout_seconds=timeout_seconds, client=client)
    return SandboxSettlementBackend()
