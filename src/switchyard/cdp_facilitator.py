"""
CDP facilitator authentication.

Coinbase's hosted facilitator wants a fresh short-lived JWT on every call,
bound to the HTTP method and the full URL path. ``auth_for_endpoint`` hands
out a signer for any ``*.cdp.coinbase.com`` facilitator and ``None`` for
everyone else, so oracles, settlement and health probes can call it blindly.
"""

from __future__ import annotations

import base64
import functools
import json
import os
import random
import subprocess
import time
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import quote, urlparse

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from . import __version__

CDP_FACILITATOR_URL = "https://api.cdp.coinbase.com/platform/v2/x402"
CDP_HOST_SUFFIX = "cdp.coinbase.com"
CDP_API_AUDIENCE = ["cdp_service"]

CDP_API_KEY_ID_ENV = "CDP_API_KEY_ID"
CDP_API_KEY_SECRET_ENV = "CDP_API_KEY_SECRET"
SWITCHYARD_CDP_OP_ITEM_ENV = "SWITCHYARD_CDP_OP_ITEM"
SWITCHYARD_CDP_OP_VAULT_ENV = "SWITCHYARD_CDP_OP_VAULT"

# 1Password field labels, matched case-insensitively
OP_KEY_ID_LABEL = "CDP_API_KEY_ID"
OP_KEY_SECRET_LABEL = "CDP_API_KEY_SECRET"

# action -> HTTP method of the facilitator endpoint
FACILITATOR_ACTIONS = {"verify": "POST", "settle": "POST", "supported": "GET"}

SigningKey = Union[ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey]


@dataclass(frozen=True)
class CDPApiCredentials:
    api_key_id: str
    api_key_secret: str


class CDPFacilitatorAuth:
    """Signs per-action headers for one CDP facilitator base URL."""

    def __init__(
        self,
        api_key_id: str,
        api_key_secret: str,
        facilitator_url: str = CDP_FACILITATOR_URL,
        expires_in_seconds: int = 120,
    ):
        if not api_key_id or not api_key_secret:
            raise ValueError("CDP API key ID and secret are both required")
        self._api_key_id = api_key_id
        self._key, self._algorithm = load_signing_key(api_key_secret)
        self._host, self._base_path = _split_facilitator_url(facilitator_url)
        self._ttl = expires_in_seconds

    @classmethod
    def from_credentials(
        cls, credentials: CDPApiCredentials, facilitator_url: str = CDP_FACILITATOR_URL
    ) -> "CDPFacilitatorAuth":
        return cls(credentials.api_key_id, credentials.api_key_secret, facilitator_url)

    def headers_for(self, action: str) -> dict[str, str]:
        try:
            method = FACILITATOR_ACTIONS[action]
        except KeyError:
            raise ValueError(f"Unknown facilitator action: {action}") from None
        token = self._sign(f"{method} {self._host}{self._base_path}/{action}")
        return {
            "Authorization": f"Bearer {token}",
            "Correlation-Context": _correlation_context(),
        }

    def all_headers(self) -> dict[str, dict[str, str]]:
        return {action: self.headers_for(action) for action in FACILITATOR_ACTIONS}

    def _sign(self, uri: str) -> str:
        issued = int(time.time())
        claims = {
            "iss": "cdp",
            "sub": self._api_key_id,
            "aud": CDP_API_AUDIENCE,
            "nbf": issued,
            "exp": issued + self._ttl,
            "uris": [uri],
        }
        header = {"kid": self._api_key_id, "typ": "JWT", "nonce": _nonce()}
        return jwt.encode(claims, self._key, algorithm=self._algorithm, headers=header)


def _split_facilitator_url(url: str) -> tuple[str, str]:
    parsed = urlparse(url)
    path = parsed.path.rstrip("/")
    if not parsed.scheme or not parsed.netloc or not path:
        raise ValueError(f"Facilitator URL needs a scheme, host and path: {url}")
    return parsed.netloc, path


def load_cdp_api_credentials(
    *,
    api_key_id: Optional[str] = None,
    api_key_secret: Optional[str] = None,
    op_item: Optional[str] = None,
    op_vault: Optional[str] = None,
    timeout_seconds: float = 10.0,
) -> CDPApiCredentials:
    """Resolve the CDP key from arguments, then the environment, then 1Password."""
    key_id = api_key_id or os.getenv(CDP_API_KEY_ID_ENV)
    key_secret = api_key_secret or os.getenv(CDP_API_KEY_SECRET_ENV)

    item = op_item or os.getenv(SWITCHYARD_CDP_OP_ITEM_ENV)
    vault = op_vault or os.getenv(SWITCHYARD_CDP_OP_VAULT_ENV)
    if not (key_id and key_secret) and item and vault:
        fields = _read_1password_item(item, vault, timeout_seconds)
        key_id = key_id or fields.get(OP_KEY_ID_LABEL.lower())
        key_secret = key_secret or fields.get(OP_KEY_SECRET_LABEL.lower())

    if not key_id or not key_secret:
        raise ValueError(
            f"CDP API credentials not found. Set {CDP_API_KEY_ID_ENV}/{CDP_API_KEY_SECRET_ENV} "
            f"or {SWITCHYARD_CDP_OP_ITEM_ENV} + {SWITCHYARD_CDP_OP_VAULT_ENV}."
        )
    return CDPApiCredentials(api_key_id=key_id, api_key_secret=key_secret)


def _read_1password_item(item: str, vault: str, timeout_seconds: float) -> dict[str, str]:
    """Non-empty fields of a 1Password item, keyed by lower-cased label."""
    proc = subprocess.run(
        ["op", "item", "get", item, "--vault", vault, "--format", "json"],
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
    )
    if proc.returncode != 0:
        raise RuntimeError(f"1Password error: {proc.stderr.strip()}")
    return {
        str(field["label"]).lower(): str(field["value"])
        for field in json.loads(proc.stdout).get("fields", [])
        if field.get("label") and field.get("value")
    }


def auth_for_endpoint(endpoint: str) -> Optional[CDPFacilitatorAuth]:
    """CDP auth for Coinbase-hosted facilitators, ``None`` for any other host."""
    if not urlparse(endpoint).netloc.endswith(CDP_HOST_SUFFIX):
        return None
    return _cached_auth(endpoint)


@functools.lru_cache(maxsize=32)
def _cached_auth(endpoint: str) -> CDPFacilitatorAuth:
    # Credentials are resolved once per endpoint; 1Password is not hit per request.
    return CDPFacilitatorAuth.from_credentials(load_cdp_api_credentials(), endpoint)


def load_signing_key(secret: str) -> tuple[SigningKey, str]:
    """Parse a CDP key secret: PEM EC (ES256) or base64 64-byte Ed25519 (EdDSA)."""
    # Env vars often carry literal '\n' sequences.
    secret = secret.replace("\\n", "\n")
    if "PRIVATE KEY" in secret:
        try:
            key = serialization.load_pem_private_key(secret.encode(), password=None)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Unreadable PEM CDP key: {e}") from e
        if isinstance(key, ec.EllipticCurvePrivateKey):
            return key, "ES256"
        raise ValueError("PEM CDP key must be an EC key")
    try:
        raw = base64.b64decode(secret, validate=True)
    except ValueError:
        raw = b""
    if len(raw) != 64:
        raise ValueError("CDP API key secret must be either PEM EC key or base64 Ed25519 key")
    return ed25519.Ed25519PrivateKey.from_private_bytes(raw[:32]), "EdDSA"


def _correlation_context() -> str:
    fields = (
        ("sdk_version", __version__),
        ("sdk_language", "python"),
        ("source", "switchyard"),
        ("source_version", __version__),
    )
    return ",".join(f"{name}={quote(value, safe='')}" for name, value in fields)


def _nonce() -> str:
    return "".join(random.choices("0123456789", k=16))
