"""
Configuration module for the HD Wallet Payments gateway.

Handles environment-based configuration for networks, RPC endpoints, data files
and the backup policy.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urlparse

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "HDWalletPayments_"

# Network configuration
NETWORK_CONFIG = {
    "mainnet": {
        "name": "Ethereum Mainnet",
        "chain_id": 1,
        "gas_limit": 21000,
        "public_endpoints": [
            "https://ethereum-rpc.publicnode.com",
            "https://eth.llamarpc.com",
        ],
    },
    "sepolia": {
        "name": "Sepolia Testnet",
        "chain_id": 11155111,
        "gas_limit": 21000,
        "public_endpoints": [
            "https://ethereum-sepolia.publicnode.com",
            "https://rpc.sepolia.org",
            "https://sepolia.gateway.tenderly.co",
            "https://rpc2.sepolia.org",
            "https://eth-sepolia.public.blastapi.io",
        ],
    },
}

SUPPORTED_NETWORKS = set(NETWORK_CONFIG)

# Critical file locations, relative to the data directory
LEDGER_FILE = "merchant_transactions.json"
ADDRESS_BOOK_FILE = os.path.join("Json", "keys.json")
INDEX_MAP_FILE = "address_index_map.json"
BACKUP_DIR = "database_backups"
CORRUPTION_BACKUP_DIR = "corruption_backups"

# Defaults
DEFAULT_NETWORK = "sepolia"
DEFAULT_DATA_DIR = "hdwallet_payments_data"
DEFAULT_RPC_TIMEOUT = 30.0
DEFAULT_PROVIDER_FRESHNESS = 3600.0
DEFAULT_ADDRESS_TTL_MINUTES = 30
DEFAULT_ABANDON_AFTER_HOURS = 24
DEFAULT_SCAN_HORIZON = 1000
DEFAULT_SIGNING_KEY_HORIZON = 200
DEFAULT_BACKUP_INTERVAL_HOURS = 24.0
DEFAULT_BACKUP_MAX_AGE_DAYS = 30
DEFAULT_STATUS_CACHE_TTL = 60.0
DEFAULT_FIAT_CURRENCY = "AUD"
DEFAULT_CRYPTO_TYPE = "ETH"

# Configuration limits
MAX_CONFIG_STRING_LENGTH = 4000
MAX_CONFIG_VALUES = 20


def _validate_config_string(config_string: str, config_name: str) -> str:
    """Validate configuration string for type, length, and content."""
    if not isinstance(config_string, str):
        raise ConfigurationError(
            f"{config_name} must be a string, got {type(config_string).__name__}",
            config_key=config_name,
        )

    if len(config_string) > MAX_CONFIG_STRING_LENGTH:
        raise ConfigurationError(
            f"{config_name} string too long ({len(config_string)} chars). Max: {MAX_CONFIG_STRING_LENGTH}",
            config_key=config_name,
        )

    if any(char in config_string for char in ["\0", "\r", "\n", "\t"]):
        raise ConfigurationError(f"{config_name} contains invalid characters", config_key=config_name)

    return config_string


def _normalize_config_list(config_string: str, config_name: str) -> List[str]:
    """Split a comma-separated configuration string, dropping blanks and duplicates."""
    if not config_string:
        return []

    config_string = _validate_config_string(config_string, config_name)

    values: List[str] = []
    for raw in config_string.split(","):
        value = raw.strip()
        if value and value not in values:
            values.append(value)

    if len(values) > MAX_CONFIG_VALUES:
        raise ConfigurationError(
            f"Too many {config_name} values ({len(values)}). Max: {MAX_CONFIG_VALUES}",
            config_key=config_name,
        )
    return values


def _validate_endpoint(endpoint: str, config_name: str) -> str:
    parsed = urlparse(endpoint)
    if parsed.scheme not in ("http", "https", "ws", "wss") or not parsed.netloc:
        raise ConfigurationError(
            f"Invalid RPC endpoint in {config_name}",
            config_key=config_name,
            expected_value="http(s)://host[/path]",
            actual_value=endpoint_label(endpoint),
        )
    return endpoint


def endpoint_label(endpoint: str) -> str:
    """Host part of an endpoint URL, safe to log."""
    parsed = urlparse(endpoint)
    return parsed.netloc or "<invalid endpoint>"


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_number(name: str, default: float, cast=float, minimum: float = 0):
    raw = _env(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(
            f"{ENV_PREFIX}{name} must be a number",
            config_key=f"{ENV_PREFIX}{name}",
            actual_value=raw,
        )
    if value < minimum:
        raise ConfigurationError(
            f"{ENV_PREFIX}{name} must be at least {minimum}",
            config_key=f"{ENV_PREFIX}{name}",
            actual_value=raw,
        )
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime settings for one gateway instance."""

    network: str = DEFAULT_NETWORK
    data_dir: str = DEFAULT_DATA_DIR
    custom_endpoints: List[str] = field(default_factory=list)
    primary_endpoints: List[str] = field(default_factory=list)
    include_public_endpoints: bool = True
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT
    provider_freshness: float = DEFAULT_PROVIDER_FRESHNESS
    address_ttl_minutes: int = DEFAULT_ADDRESS_TTL_MINUTES
    scan_horizon: int = DEFAULT_SCAN_HORIZON
    signing_key_horizon: int = DEFAULT_SIGNING_KEY_HORIZON
    backup_interval_hours: float = DEFAULT_BACKUP_INTERVAL_HOURS
    backup_max_age_days: int = DEFAULT_BACKUP_MAX_AGE_DAYS
    status_cache_ttl: float = DEFAULT_STATUS_CACHE_TTL
    merchant_address: Optional[str] = None
    allow_signer_fallback: bool = False
    fiat_currency: str = DEFAULT_FIAT_CURRENCY

    def __post_init__(self):
        if self.network not in SUPPORTED_NETWORKS:
            raise ConfigurationError(
                f"Unsupported network: {self.network}",
                config_key="network",
                expected_value=", ".join(sorted(SUPPORTED_NETWORKS)),
                actual_value=self.network,
            )
        for endpoint in self.custom_endpoints + self.primary_endpoints:
            _validate_endpoint(endpoint, "endpoints")
        if self.scan_horizon < 1 or self.signing_key_horizon < 0:
            raise ConfigurationError("Scan horizons must be positive", config_key="scan_horizon")

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        """Build settings from ``HDWalletPayments_*`` environment variables."""
        primary = [url for url in (_env("InfuraUrl"), _env("AlchemyUrl")) if url]
        values = dict(
            network=(_env("Network", DEFAULT_NETWORK) or DEFAULT_NETWORK).strip().lower(),
            data_dir=_env("DataDir", DEFAULT_DATA_DIR) or DEFAULT_DATA_DIR,
            custom_endpoints=_normalize_config_list(_env("CustomRpcEndpoints", "") or "", "custom RPC endpoints"),
            primary_endpoints=primary,
            include_public_endpoints=_env_bool("UsePublicEndpoints", True),
            rpc_timeout=_env_number("RpcTimeout", DEFAULT_RPC_TIMEOUT, minimum=1),
            provider_freshness=_env_number("ProviderFreshness", DEFAULT_PROVIDER_FRESHNESS, minimum=1),
            address_ttl_minutes=_env_number("AddressTtlMinutes", DEFAULT_ADDRESS_TTL_MINUTES, cast=int, minimum=1),
            scan_horizon=_env_number("ScanHorizon", DEFAULT_SCAN_HORIZON, cast=int, minimum=1),
            signing_key_horizon=_env_number("SigningKeyHorizon", DEFAULT_SIGNING_KEY_HORIZON, cast=int),
            backup_interval_hours=_env_number("BackupIntervalHours", DEFAULT_BACKUP_INTERVAL_HOURS, minimum=0.01),
            backup_max_age_days=_env_number("BackupMaxAgeDays", DEFAULT_BACKUP_MAX_AGE_DAYS, cast=int, minimum=1),
            status_cache_ttl=_env_number("StatusCacheTtl", DEFAULT_STATUS_CACHE_TTL, minimum=1),
            merchant_address=_env("MerchantAddress"),
            allow_signer_fallback=_env_bool("AllowSignerFallback", False),
            fiat_currency=_env("FiatCurrency", DEFAULT_FIAT_CURRENCY) or DEFAULT_FIAT_CURRENCY,
        )
        values.update(overrides)
        return cls(**values)

    @property
    def network_config(self) -> dict:
        return NETWORK_CONFIG[self.network]

    @property
    def chain_id(self) -> int:
        return self.network_config["chain_id"]

    def endpoints(self) -> List[str]:
        """Endpoints in priority order: custom, then primary, then public fallbacks."""
        ordered: List[str] = []
        public = self.network_config["public_endpoints"] if self.include_public_endpoints else []
        for endpoint in [*self.custom_endpoints, *self.primary_endpoints, *public]:
            if endpoint not in ordered:
                ordered.append(endpoint)
        return ordered

    def path(self, relative: str) -> str:
        return os.path.join(self.data_dir, relative)


def get_config_summary(settings: Optional[Settings] = None) -> dict:
    """Get a summary of the current configuration with endpoint secrets removed."""
    settings = settings or Settings.from_env()
    return {
        "network": settings.network,
        "chain_id": settings.chain_id,
        "data_dir": settings.data_dir,
        "endpoints": [endpoint_label(e) for e in settings.endpoints()],
        "scan_horizon": settings.scan_horizon,
        "signing_key_horizon": settings.signing_key_horizon,
        "backup_interval_hours": settings.backup_interval_hours,
        "backup_max_age_days": settings.backup_max_age_days,
        "merchant_address": settings.merchant_address,
        "allow_signer_fallback": settings.allow_signer_fallback,
    }
