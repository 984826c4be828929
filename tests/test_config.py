"""Tests for environment-driven router configuration."""

from pathlib import Path

import pytest
from eth_utils import is_checksum_address

from switchyard.config import SANDBOX_TREASURY, RouterConfig


def test_defaults():
    config = RouterConfig.from_env({})
    assert config.default_tenant_id == "default"
    assert config.default_network == "eip155:8453"
    assert config.settlement_backend == "sandbox"
    assert config.treasury_address == SANDBOX_TREASURY
    assert config.verify_timeout_seconds == 10.0
    assert config.replay_retention_days == 30
    assert config.analytics_url is None
    assert config.cron_secret is None


def test_reads_switchyard_variables(tmp_path):
    config = RouterConfig.from_env(
        {
            "SWITCHYARD_DATA_DIR": str(tmp_path / "data"),
            "SWITCHYARD_DEFAULT_TENANT": "acme",
            "SWITCHYARD_LATENCY_NORMALIZER_MS": "500",
            "SWITCHYARD_VERIFY_TIMEOUT_SECONDS": "2.5",
            "SWITCHYARD_REPLAY_RETENTION_DAYS": "7",
            "SWITCHYARD_SETTLEMENT_BACKEND": "facilitator",
            "SWITCHYARD_TREASURY_ADDRESS": "0x273326453960864fba4d2f6cf09d65fa13e45297",
            "SWITCHYARD_ANALYTICS_URL": "https://analytics.example",
            "SWITCHYARD_CRON_SECRET": "cron",
            "SWITCHYARD_ORACLE_WORKERS": "4",
        }
    )
    assert config.data_dir == Path(tmp_path / "data")
    assert config.default_tenant_id == "acme"
    assert config.latency_normalizer_ms == 500.0
    assert config.verify_timeout_seconds == 2.5
    assert config.replay_retention_days == 7
    assert config.settlement_backend == "facilitator"
    assert is_checksum_address(config.treasury_address)
    assert config.treasury_address.lower() == "0x273326453960864fba4d2f6cf09d65fa13e45297"
    assert config.analytics_url == "https://analytics.example"
    assert config.cron_secret == "cron"
    assert config.oracle_workers == 4


@pytest.mark.parametrize(
    "env, message",
    [
        ({"SWITCHYARD_SETTLEMENT_BACKEND": "mainnet"}, "SWITCHYARD_SETTLEMENT_BACKEND"),
        ({"SWITCHYARD_VERIFY_TIMEOUT_SECONDS": "soon"}, "must be a number"),
        ({"SWITCHYARD_VERIFY_TIMEOUT_SECONDS": "0"}, "greater than"),
        ({"SWITCHYARD_REPLAY_RETENTION_DAYS": "0"}, "at least 1"),
        ({"SWITCHYARD_TREASURY_ADDRESS": "0x1234"}, "Invalid treasury address"),
    ],
)
def test_invalid_values_are_rejected(env, message):
    with pytest.raises(ValueError, match=message):
        RouterConfig.from_env(env)
