"""
Custom exceptions for the HD Wallet Payments gateway.

Defines the exception hierarchy for provider failures, transaction rejections,
address allocation, storage integrity and configuration errors.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


def _merge_details(details: dict[str, Any], values: dict[str, Any]) -> None:
    details.update({k: v for k, v in values.items() if v is not None})


@dataclass
class HDWalletPaymentsError(Exception):
    """Base exception for all HD Wallet Payments errors."""

    message: str
    error_code: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        logger.error(
            "%s: %s (Code: %s, Details: %s)",
            self.__class__.__name__,
            self.message,
            self.error_code,
            self.details,
        )

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}" if self.error_code else self.message


@dataclass
class ConfigurationError(HDWalletPaymentsError):
    """Raised for configuration errors."""

    config_key: Optional[str] = None
    expected_value: Optional[str] = None
    actual_value: Optional[str] = None

    def __post_init__(self):
        _merge_details(
            self.details,
            {
                "config_key": self.config_key,
                "expected_value": self.expected_value,
                "actual_value": self.actual_value,
            },
        )
        self.error_code = self.error_code or "CONFIGURATION_ERROR"
        super().__post_init__()


@dataclass
class ValidationError(HDWalletPaymentsError):
    """Raised for validation errors."""

    field: Optional[str] = None
    value: Any = None

    def __post_init__(self):
        _merge_details(self.details, {"field": self.field, "value": self.value})
        self.error_code = self.error_code or "VALIDATION_ERROR"
        super().__post_init__()


@dataclass
class StorageError(HDWalletPaymentsError):
    """Raised when a persisted file cannot be read or written."""

    path: Optional[str] = None
    operation: Optional[str] = None

    def __post_init__(self):
        _merge_details(self.details, {"path": self.path, "operation": self.operation})
        self.error_code = self.error_code or "STORAGE_ERROR"
        super().__post_init__()


@dataclass
class DataIntegrityError(StorageError):
    """Raised when a critical file is unusable and could not be preserved before repair."""

    health: Optional[str] = None

    def __post_init__(self):
        _merge_details(self.details, {"health": self.health})
        self.error_code = self.error_code or "DATA_INTEGRITY_ERROR"
        super().__post_init__()


@dataclass
class BackupError(HDWalletPaymentsError):
    """Raised when a backup cannot be created, validated or restored."""

    backup_file: Optional[str] = None

    def __post_init__(self):
        _merge_details(self.details, {"backup_file": self.backup_file})
        self.error_code = self.error_code or "BACKUP_ERROR"
        super().__post_init__()


@dataclass
class ProviderError(HDWalletPaymentsError):
    """Raised for errors from JSON-RPC providers."""

    provider: Optional[str] = None
    endpoint: Optional[str] = None
    provider_error_message: Optional[str] = None

    def __post_init__(self):
        _merge_details(
            self.details,
            {
                "provider": self.provider,
                "endpoint": self.endpoint,
                "provider_error_message": self.provider_error_message,
            },
        )
        self.error_code = self.error_code or "PROVIDER_ERROR"
        super().__post_init__()


@dataclass
class NoProviderAvailable(ProviderError):
    """Raised when no endpoint answers on the expected network and no fresh fallback exists."""

    endpoints_tried: Optional[list] = None
    errors: Optional[dict[str, str]] = None

    def __post_init__(self):
        _merge_details(self.details, {"endpoints_tried": self.endpoints_tried, "errors": self.errors})
        self.error_code = self.error_code or "NO_PROVIDER_AVAILABLE"
        super().__post_init__()


@dataclass
class TransactionError(HDWalletPaymentsError):
    """Base exception for on-chain transfer errors."""

    tx_hash: Optional[str] = None
    attempts: Optional[int] = None
    provider_error: Optional[str] = None

    def __post_init__(self):
        _merge_details(
            self.details,
            {
                "tx_hash": self.tx_hash,
                "attempts": self.attempts,
                "provider_error": self.provider_error,
            },
        )
        self.error_code = self.error_code or "TRANSACTION_ERROR"
        super().__post_init__()


@dataclass
class TransactionFailed(TransactionError):
    """Raised when a transfer could not be submitted within the retry budget."""

    def __post_init__(self):
        self.error_code = self.error_code or "TRANSACTION_FAILED"
        super().__post_init__()


@dataclass
class TransactionRejected(TransactionError):
    """Raised when the network deterministically rejects a transfer. Never retried."""

    def __post_init__(self):
        self.error_code = self.error_code or "TRANSACTION_REJECTED"
        super().__post_init__()


@dataclass
class InsufficientFunds(TransactionRejected):
    """Raised when the signer cannot cover value plus gas."""

    address: Optional[str] = None
    balance_wei: Optional[int] = None
    required_wei: Optional[int] = None

    def __post_init__(self):
        _merge_details(
            self.details,
            {
                "address": self.address,
                "balance_wei": self.balance_wei,
                "required_wei": self.required_wei,
            },
        )
        self.error_code = self.error_code or "INSUFFICIENT_FUNDS"
        super().__post_init__()


@dataclass
class AllocationError(HDWalletPaymentsError):
    """Base exception for HD address allocation errors."""

    horizon: Optional[int] = None

    def __post_init__(self):
        _merge_details(self.details, {"horizon": self.horizon})
        self.error_code = self.error_code or "ALLOCATION_ERROR"
        super().__post_init__()


@dataclass
class NoZeroBalanceAddressFound(AllocationError):
    """Raised when every candidate within the scan horizon holds funds."""

    start_index: Optional[int] = None

    def __post_init__(self):
        _merge_details(self.details, {"start_index": self.start_index})
        self.error_code = self.error_code or "NO_ZERO_BALANCE_ADDRESS"
        super().__post_init__()


@dataclass
class AddressNotDerivable(AllocationError):
    """Raised when an address does not derive from the seed within the search horizon."""

    address: Optional[str] = None

    def __post_init__(self):
        _merge_details(self.details, {"address": self.address})
        self.error_code = self.error_code or "ADDRESS_NOT_DERIVABLE"
        super().__post_init__()


@dataclass
class AddressExpired(HDWalletPaymentsError):
    """Raised when a payment targets a retired address."""

    address: Optional[str] = None
    expired_at: Optional[str] = None
    reason: Optional[str] = None

    def __post_init__(self):
        _merge_details(
            self.details,
            {"address": self.address, "expired_at": self.expired_at, "reason": self.reason},
        )
        self.error_code = self.error_code or "ADDRESS_EXPIRED"
        super().__post_init__()
        logger.warning("Address Expired: %s (Expired at: %s)", self.address, self.expired_at)
