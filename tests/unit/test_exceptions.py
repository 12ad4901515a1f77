import pytest

from hdwallet_payments.exceptions import (
    AddressExpired,
    AddressNotDerivable,
    AllocationError,
    BackupError,
    ConfigurationError,
    DataIntegrityError,
    HDWalletPaymentsError,
    InsufficientFunds,
    NoProviderAvailable,
    NoZeroBalanceAddressFound,
    ProviderError,
    StorageError,
    TransactionError,
    TransactionFailed,
    TransactionRejected,
    ValidationError,
)


def test_base_error_str():
    err = HDWalletPaymentsError("msg", error_code="E1", details={"foo": "bar"})
    assert str(err) == "[E1] msg"
    assert err.details["foo"] == "bar"
    assert str(HDWalletPaymentsError("plain")) == "plain"


def test_configuration_error_details():
    err = ConfigurationError("bad", config_key="network", expected_value="sepolia", actual_value="goerli")
    assert err.error_code == "CONFIGURATION_ERROR"
    assert err.details == {"config_key": "network", "expected_value": "sepolia", "actual_value": "goerli"}


def test_data_integrity_error_is_storage_error():
    err = DataIntegrityError("bad file", path="/tmp/x.json", operation="recover", health="corrupted")
    assert isinstance(err, StorageError)
    assert err.error_code == "DATA_INTEGRITY_ERROR"
    assert err.details["health"] == "corrupted"


def test_no_provider_available_details():
    err = NoProviderAvailable("none", endpoints_tried=["a", "b"], errors={"a": "down"})
    assert isinstance(err, ProviderError)
    assert err.error_code == "NO_PROVIDER_AVAILABLE"
    assert err.details["endpoints_tried"] == ["a", "b"]
    assert err.details["errors"] == {"a": "down"}


def test_insufficient_funds_is_rejection():
    err = InsufficientFunds("broke", attempts=1, address="0xabc", balance_wei=1, required_wei=2)
    assert isinstance(err, TransactionRejected)
    assert isinstance(err, TransactionError)
    assert err.error_code == "INSUFFICIENT_FUNDS"
    assert err.details["attempts"] == 1
    assert err.details["required_wei"] == 2


def test_transaction_failed_details():
    err = TransactionFailed("fail", tx_hash="0x1", attempts=5, provider_error="timeout")
    assert err.error_code == "TRANSACTION_FAILED"
    assert err.details == {"tx_hash": "0x1", "attempts": 5, "provider_error": "timeout"}


def test_allocation_errors():
    err = NoZeroBalanceAddressFound("full", horizon=1000, start_index=3)
    assert isinstance(err, AllocationError)
    assert err.error_code == "NO_ZERO_BALANCE_ADDRESS"
    assert err.details == {"horizon": 1000, "start_index": 3}
    assert AddressNotDerivable("no", address="0x1").details["address"] == "0x1"


def test_address_expired_details():
    err = AddressExpired("expired", address="0x1", expired_at="2025-01-01T00:00:00.000Z", reason="wrong payment")
    assert err.error_code == "ADDRESS_EXPIRED"
    assert err.details["reason"] == "wrong payment"


@pytest.mark.parametrize(
    "exc_class,code",
    [
        (ValidationError, "VALIDATION_ERROR"),
        (StorageError, "STORAGE_ERROR"),
        (BackupError, "BACKUP_ERROR"),
        (ProviderError, "PROVIDER_ERROR"),
        (TransactionRejected, "TRANSACTION_REJECTED"),
    ],
)
def test_default_error_codes(exc_class, code):
    err = exc_class("message")
    assert err.error_code == code
    assert isinstance(err, HDWalletPaymentsError)
    assert err.details == {}


def test_explicit_error_code_wins():
    assert ProviderError("wrong chain", error_code="WRONG_NETWORK").error_code == "WRONG_NETWORK"
