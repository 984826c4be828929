"""Router configuration loaded from ``SWITCHYARD_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from eth_utils import is_address, to_checksum_address

from .settlement import SettlementMode


DEFAULT_DATA_DIR = Path.home() / ".switchyard"
DEFAULT_NETWORK = "eip155:8453"
DEFAULT_TENANT_ID = "default"
SANDBOX_TREASURY = "0x0000000000000000000000000000000000000402"


def _float(env: Mapping[str, str], name: str, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= minimum:
        raise ValueError(f"{name} must be greater than {minimum}")
    return value


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}")
    return value


def normalize_treasury(address: str) -> str:
    if not is_address(address):
        raise ValueError(f"Invalid treasury address: {address}")
    return to_checksum_address(address)


@dataclass(frozen=True)
class RouterConfig:
    data_dir: Path = DEFAULT_DATA_DIR
    default_tenant_id: str = DEFAULT_TENANT_ID
    default_network: str = DEFAULT_NETWORK
    latency_normalizer_ms: float = 1000.0
    verify_timeout_seconds: float = 10.0
    replay_retention_days: int = 30
    registry_refresh_seconds: float = 30.0
    settlement_backend: str = SettlementMode.SANDBOX.value
    treasury_address: str = SANDBOX_TREASURY
    facilitator_timeout_seconds: float = 30.0
    analytics_url: Optional[str] = None
    cron_secret: Optional[str] = None
    oracle_workers: int = 32

    def __post_init__(self) -> None:
        SettlementMode(self.settlement_backend)
        object.__setattr__(self, "treasury_address", normalize_treasury(self.treasury_address))
        if self.latency_normalizer_ms <= 0:
            raise ValueError("latency_normalizer_ms must be positive")
        if self.verify_timeout_seconds <= 0:
            raise ValueError("verify_timeout_seconds must be positive")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RouterConfig":
        env = os.environ if env is None else env
        backend = env.get("SWITCHYARD_SETTLEMENT_BACKEND", SettlementMode.SANDBOX.value)
        try:
            SettlementMode(backend)
        except ValueError as e:
            raise ValueError(
                f"SWITCHYARD_SETTLEMENT_BACKEND must be one of "
                f"{', '.join(m.value for m in SettlementMode)}, got {backend!r}"
            ) from e
        return cls(
            data_dir=Path(env.get("SWITCHYARD_DATA_DIR") or DEFAULT_DATA_DIR).expanduser(),
            default_tenant_id=env.get("SWITCHYARD_DEFAULT_TENANT") or DEFAULT_TENANT_ID,
            default_network=env.get("SWITCHYARD_DEFAULT_NETWORK") or DEFAULT_NETWORK,
            latency_normalizer_ms=_float(env, "SWITCHYARD_LATENCY_NORMALIZER_MS", 1000.0),
            verify_timeout_seconds=_float(env, "SWITCHYARD_VERIFY_TIMEOUT_SECONDS", 10.0),
            replay_retention_days=_int(env, "SWITCHYARD_REPLAY_RETENTION_DAYS", 30, minimum=1),
            registry_refresh_seconds=_float(env, "SWITCHYARD_REGISTRY_REFRESH_SECONDS", 30.0),
            settlement_backend=backend,
            treasury_address=env.get("SWITCHYARD_TREASURY_ADDRESS") or SANDBOX_TREASURY,
            facilitator_timeout_seconds=_float(env, "SWITCHYARD_FACILITATOR_TIMEOUT_SECONDS", 30.0),
            analytics_url=env.get("SWITCHYARD_ANALYTICS_URL") or None,
            cron_secret=env.get("SWITCHYARD_CRON_SECRET") or None,
            oracle_workers=_int(env, "SWITCHYARD_ORACLE_WORKERS", 32, minimum=1),
        )
