"""
Verification oracles.

An oracle answers one question: did this authorization really move
``expected_amount`` to ``expected_recipient``? The router only depends on
the ``VerificationOracle`` protocol; the facilitator HTTP adapter and the
sandbox oracle are the two shipped implementations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from eth_utils import is_hex

from .cdp_facilitator import auth_for_endpoint
from .deny_codes import DenyCode
from .errors import FacilitatorError, VerificationTimeoutError
from .models import Facilitator, PaymentDetails


logger = logging.getLogger(__name__)

X402_VERSION = 1


@dataclass(frozen=True)
class VerificationOutcome:
    verified: bool
    reason_code: Optional[DenyCode] = None
    detail: Optional[str] = None
    payer: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "verified": self.verified,
            "reason_code": self.reason_code.value if self.reason_code else None,
            "detail": self.detail,
            "payer": self.payer,
        }


class VerificationOracle(Protocol):
    def verify_transfer(
        self,
        tx_hash: str,
        expected_amount: str,
        expected_recipient: str,
        *,
        facilitator: Optional[Facilitator] = None,
        payment: Optional[PaymentDetails] = None,
        payment_signature: Optional[str] = None,
    ) -> VerificationOutcome:
        ...


def reason_from_invalid(invalid_reason: Optional[str]) -> DenyCode:
    """Map a facilitator ``invalidReason`` string to a deny code."""
    reason = (invalid_reason or "").lower()
    if "signature" in reason:
        return DenyCode.INVALID_SIGNATURE
    if "not_yet_valid" in reason or "valid_after" in reason or "not yet valid" in reason:
        return DenyCode.AUTHORIZATION_NOT_YET_VALID
    if "expired" in reason or "valid_before" in reason:
        return DenyCode.AUTHORIZATION_EXPIRED
    return DenyCode.VERIFICATION_FAILED


def build_requirements(
    payment: Optional[PaymentDetails],
    expected_amount: str,
    expected_recipient: str,
) -> dict[str, Any]:
    requirements: dict[str, Any] = {
        "maxAmountRequired": expected_amount,
        "payTo": expected_recipient,
    }
    if payment is not None:
        requirements.update(
            {"scheme": payment.scheme, "network": payment.network, "asset": payment.asset}
        )
    return requirements


class FacilitatorOracle:
    """Verifies through the selected facilitator's ``/verify`` endpoint."""

    def __init__(self, timeout_seconds: float = 10.0, client: Optional[httpx.Client] = None):
        self._http = client or httpx.Client(timeout=timeout_seconds)

    def verify_transfer(
        self,
        tx_hash: str,
        expected_amount: str,
        expected_recipient: str,
        *,
        facilitator: Optional[Facilitator] = None,
        payment: Optional[PaymentDetails] = None,
        payment_signature: Optional[str] = None,
    ) -> VerificationOutcome:
        if facilitator is None:
            raise FacilitatorError("FacilitatorOracle needs a facilitator to call")
        url = f"{facilitator.endpoint}/verify"
        auth = auth_for_endpoint(facilitator.endpoint)
        headers = auth.headers_for("verify") if auth else {}
        body = {
            "x402Version": X402_VERSION,
            "paymentPayload": {
                "x402Version": X402_VERSION,
                "scheme": payment.scheme if payment else None,
                "network": payment.network if payment else None,
                "payload": {"signature": payment_signature, "authorizationId": tx_hash},
            },
            "paymentRequirements": build_requirements(payment, expected_amount, expected_recipient),
        }
        try:
            resp = self._http.post(url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("Facilitator %s verify timed out", facilitator.facilitator_id)
            raise VerificationTimeoutError(
                f"Facilitator {facilitator.facilitator_id} did not answer in time"
            ) from e
        except httpx.HTTPError as e:
            raise FacilitatorError(f"Facilitator verify request failed: {e}") from e

        if resp.status_code >= 500:
            raise FacilitatorError(
                f"Facilitator verify returned HTTP {resp.status_code}",
                details={"facilitator_id": facilitator.facilitator_id},
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise FacilitatorError("Facilitator verify returned invalid JSON") from e
        if not isinstance(data, dict):
            raise FacilitatorError("Facilitator verify returned a non-object JSON body")

        if data.get("isValid"):
            return VerificationOutcome(verified=True, payer=data.get("payer"))
        invalid_reason = data.get("invalidReason") or f"HTTP {resp.status_code}"
        return VerificationOutcome(
            verified=False,
            reason_code=reason_from_invalid(invalid_reason),
            detail=str(invalid_reason),
            payer=data.get("payer"),
        )


class SandboxOracle:
    """Offline oracle for development: any hex signature is accepted."""

    def verify_transfer(
        self,
        tx_hash: str,
        expected_amount: str,
        expected_recipient: str,
        *,
        facilitator: Optional[Facilitator] = None,
        payment: Optional[PaymentDetails] = None,
        payment_signature: Optional[str] = None,
    ) -> VerificationOutcome:
        if not payment_signature or not is_hex(payment_signature):
            return VerificationOutcome(
                verified=False,
                reason_code=DenyCode.INVALID_SIGNATURE,
                detail="Payment signature must be a hex string",
            )
        return VerificationOutcome(verified=True, detail="sandbox")
