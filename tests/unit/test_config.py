import os

import pytest

from hdwallet_payments.config import NETWORK_CONFIG, Settings, endpoint_label, get_config_summary
from hdwallet_payments.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("HDWalletPayments_"):
            monkeypatch.delenv(key, raising=False)


def test_defaults():
    settings = Settings()
    assert settings.network == "sepolia"
    assert settings.chain_id == 11155111
    assert settings.scan_horizon == 1000
    assert settings.address_ttl_minutes == 30
    assert settings.endpoints() == NETWORK_CONFIG["sepolia"]["public_endpoints"]


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("HDWalletPayments_Network", "Mainnet")
    monkeypatch.setenv("HDWalletPayments_DataDir", str(tmp_path))
    monkeypatch.setenv("HDWalletPayments_CustomRpcEndpoints", "https://a.example.com, https://b.example.com,https://a.example.com")
    monkeypatch.setenv("HDWalletPayments_InfuraUrl", "https://mainnet.infura.io/v3/secret")
    monkeypatch.setenv("HDWalletPayments_UsePublicEndpoints", "false")
    monkeypatch.setenv("HDWalletPayments_AllowSignerFallback", "yes")
    monkeypatch.setenv("HDWalletPayments_BackupMaxAgeDays", "7")

    settings = Settings.from_env()
    assert settings.network == "mainnet"
    assert settings.chain_id == 1
    assert settings.data_dir == str(tmp_path)
    assert settings.endpoints() == [
        "https://a.example.com",
        "https://b.example.com",
        "https://mainnet.infura.io/v3/secret",
    ]
    assert settings.allow_signer_fallback is True
    assert settings.backup_max_age_days == 7


def test_overrides_win_over_env(monkeypatch):
    monkeypatch.setenv("HDWalletPayments_Network", "mainnet")
    assert Settings.from_env(network="sepolia").network == "sepolia"


def test_unsupported_network():
    with pytest.raises(ConfigurationError) as exc_info:
        Settings(network="goerli")
    assert exc_info.value.config_key == "network"


def test_invalid_endpoint_rejected():
    with pytest.raises(ConfigurationError):
        Settings(custom_endpoints=["ftp://nope"])


@pytest.mark.parametrize("value", ["abc", "-3"])
def test_invalid_numeric_env(monkeypatch, value):
    monkeypatch.setenv("HDWalletPayments_ScanHorizon", value)
    with pytest.raises(ConfigurationError):
        Settings.from_env()


def test_endpoint_list_limits(monkeypatch):
    monkeypatch.setenv("HDWalletPayments_CustomRpcEndpoints", ",".join(f"https://h{i}.example.com" for i in range(25)))
    with pytest.raises(ConfigurationError):
        Settings.from_env()


def test_summary_hides_endpoint_paths():
    settings = Settings(custom_endpoints=["https://mainnet.infura.io/v3/secret"], include_public_endpoints=False)
    summary = get_config_summary(settings)
    assert summary["endpoints"] == ["mainnet.infura.io"]
    assert "secret" not in str(summary)
    assert endpoint_label("not a url") == "<invalid endpoint>"
