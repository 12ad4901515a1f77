"""
End-to-end flows through PaymentGateway on a temporary data directory with a
mocked JSON-RPC node.
"""

import dataclasses
import json
import os
from datetime import timedelta

import pytest

from hdwallet_payments import PaymentGateway, api
from hdwallet_payments.exceptions import ConfigurationError, DataIntegrityError, InsufficientFunds, ValidationError
from hdwallet_payments.models import AddressStatus

from conftest import (
    INDEX_1_ADDRESS,
    INDEX_2_ADDRESS,
    INDEX_3_ADDRESS,
    MERCHANT_ADDRESS,
    ROOT_ADDRESS,
    TEST_MNEMONIC,
)


def age_address(gateway, address, **delta):
    def shift(record):
        record.created_at -= timedelta(**delta)
        record.expires_at -= timedelta(**delta)

    gateway.address_book.update(address, shift)


def test_initialize_prepares_data_dir(gateway, settings):
    status = gateway.get_database_status(force=True)
    assert status.is_healthy
    assert os.path.isdir(os.path.join(settings.data_dir, "database_backups"))
    assert os.path.isdir(os.path.join(settings.data_dir, "corruption_backups"))


def test_initialize_can_create_wallet(settings, web3_factory):
    gw = PaymentGateway(settings, web3_factory=web3_factory, sleep=lambda s: None)
    result = gw.initialize(create_wallet=True)
    assert result["walletCreated"] is True
    assert len(gw.address_book.get_mnemonic().split()) == 12
    assert gw.initialize(create_wallet=True)["walletCreated"] is False


def test_payment_lifecycle(gateway):
    # Rounded amount confirms the first address
    first = gateway.allocate_address("0.01", order_id="order-1")
    assert first.address == INDEX_1_ADDRESS
    result = gateway.record_payment(first.address, "0.0099999")
    assert result["success"]
    assert not result["isWrongPayment"]
    assert result["status"] == "confirmed"
    assert gateway.address_book.get(first.address).status == AddressStatus.CONFIRMED
    payments = [e for e in gateway.ledger.all() if e.type == "payment"]
    assert len(payments) == 1
    assert payments[0].status == "confirmed"
    assert payments[0].extra["orderId"] == "order-1"

    # A wrong amount retires the second address
    second = gateway.allocate_address("0.01", order_id="order-2")
    assert second.address == INDEX_2_ADDRESS
    wrong = gateway.record_payment(second.address, "0.02")
    assert wrong["success"]
    assert wrong["isWrongPayment"]
    assert wrong["reason"] == "Please submit 0.01000000 ETH. You sent 0.020000 ETH which is incorrect."
    record = gateway.address_book.get(second.address)
    assert record.status == AddressStatus.WRONG
    assert record.is_expired

    # Later payments to a retired address are refused
    again = gateway.record_payment(second.address, "0.01")
    assert again["success"] is False
    assert again["isExpired"] is True
    assert again["expiredAt"]
    assert len(gateway.ledger.all()) == 2

    summary = gateway.wrong_payment_summary()
    assert summary["wrongCount"] == 1
    assert summary["wrongTotal"] == "0.020000"
    assert summary["verifiedTotal"] == "0.010000"


def test_record_payment_unknown_address(gateway):
    with pytest.raises(ValidationError):
        gateway.record_payment("0x0000000000000000000000000000000000000001", "0.01")


def test_funded_addresses_are_never_reallocated(gateway, fake_web3):
    fake_web3.balances[INDEX_1_ADDRESS.lower()] = 10**15
    assert gateway.allocate_address("0.05").address == INDEX_2_ADDRESS


def test_verify_address_stamps_expiry(gateway):
    payment_address = gateway.allocate_address("0.01")
    assert gateway.verify_address(payment_address.address)["active"]

    age_address(gateway, payment_address.address, minutes=31)
    result = gateway.verify_address(payment_address.address)
    assert result == {"active": False, "message": "Address expired"}
    stored = gateway.address_book.get(payment_address.address)
    assert stored.is_expired
    assert stored.expired_reason == "Payment window elapsed"
    assert gateway.verify_address("0xnothing")["message"] == "Address not found"


def test_list_and_cleanup_addresses(gateway):
    expired = gateway.allocate_address("0.01")
    abandoned = gateway.allocate_address("0.02")
    live = gateway.allocate_address("0.03")
    age_address(gateway, expired.address, hours=2)
    age_address(gateway, abandoned.address, hours=30)

    statuses = {row["address"]: row["status"] for row in gateway.list_addresses()}
    assert statuses == {expired.address: "expired", abandoned.address: "abandoned", live.address: "pending"}

    assert gateway.cleanup_addresses("abandoned") == {"removed": [abandoned.address], "count": 1}
    assert gateway.cleanup_addresses("expired")["removed"] == [expired.address]
    assert [a.address for a in gateway.address_book.all()] == [live.address]
    with pytest.raises(ValidationError):
        gateway.cleanup_addresses("confirmed")


def test_discard_keeps_paid_addresses(gateway):
    paid = gateway.allocate_address("0.01")
    gateway.record_payment(paid.address, "0.01")
    unpaid = gateway.allocate_address("0.01")

    assert gateway.discard_address(paid.address)["discarded"] is False
    assert gateway.discard_address(unpaid.address)["discarded"] is True
    assert gateway.address_book.get(unpaid.address) is None
    assert gateway.discard_address(unpaid.address)["discarded"] is False


def test_release_from_root(gateway, fake_web3):
    fake_web3.balances[ROOT_ADDRESS.lower()] = 10**18
    result = gateway.release_funds(amount="0.1")
    assert result["state"] == "confirmed"
    assert result["from"] == ROOT_ADDRESS
    assert result["to"] == MERCHANT_ADDRESS
    assert result["amount"] == "0.1"
    entry = gateway.ledger.get(tx_hash=result["txHash"])
    assert entry.type == "release"
    assert entry.status == "confirmed"
    assert entry.address == ROOT_ADDRESS


def test_release_from_payment_address_sweeps(gateway, fake_web3):
    payment_address = gateway.allocate_address("0.01")
    fake_web3.balances[payment_address.address.lower()] = 10**16
    result = gateway.release_funds(payment_address.address, wait=False)
    assert result["state"] == "pending"
    assert result["from"] == INDEX_1_ADDRESS
    assert int(result["valueWei"]) == 10**16 - 2_400_000_000 * 21000


def test_release_without_funds_fails_without_fallback(gateway):
    with pytest.raises(InsufficientFunds):
        gateway.release_funds(amount="0.1")
    response = api.release_funds(gateway, amount="0.1")
    assert response["success"] is False
    assert response["errorCode"] == "INSUFFICIENT_FUNDS"


def test_release_signer_fallback_is_recorded(gateway, fake_web3):
    gateway.settings = dataclasses.replace(gateway.settings, allow_signer_fallback=True)
    fake_web3.balances[INDEX_3_ADDRESS.lower()] = 10**18
    fake_web3.balances[INDEX_1_ADDRESS.lower()] = 10**17

    result = gateway.release_funds(amount="0.1")
    assert result["from"] == INDEX_3_ADDRESS
    assert result["signerFallback"]["requestedSigner"] == ROOT_ADDRESS
    assert result["signerFallback"]["usedSigner"] == INDEX_3_ADDRESS
    entry = gateway.ledger.get(tx_hash=result["txHash"])
    assert entry.extra["signerFallback"]["usedSigner"] == INDEX_3_ADDRESS


def test_release_requires_merchant_address(gateway):
    gateway.settings = dataclasses.replace(gateway.settings, merchant_address=None)
    with pytest.raises(ConfigurationError):
        gateway.release_funds()


def test_release_all_funds(gateway, fake_web3):
    fake_web3.balances[INDEX_1_ADDRESS.lower()] = 10**16
    fake_web3.balances[INDEX_3_ADDRESS.lower()] = 10**17
    hashes = iter(bytes([n]) * 32 for n in range(1, 10))
    fake_web3.eth.send_raw_transaction.side_effect = lambda raw: next(hashes)

    result = gateway.release_all_funds(max_index=5)
    assert result["success"]
    assert result["released"] == 2
    assert [r["index"] for r in result["results"]] == [3, 1]
    assert len([e for e in gateway.ledger.all() if e.type == "release"]) == 2


def test_release_status_backfills_ledger(gateway):
    tx_hash = "0x" + "cd" * 32
    status = gateway.get_release_status(tx_hash)
    assert status["state"] == "confirmed"
    assert status["ledgerStatus"] == "confirmed"
    entry = gateway.ledger.get(tx_hash=tx_hash)
    assert entry.type == "release"
    assert entry.block_number == 998


def test_wallet_balance_aggregates(gateway, fake_web3):
    payment_address = gateway.allocate_address("0.01")
    gateway.record_payment(payment_address.address, "0.01")
    fake_web3.balances[ROOT_ADDRESS.lower()] = 10**18
    fake_web3.balances[INDEX_1_ADDRESS.lower()] = 10**16

    balance = gateway.get_wallet_balance()
    assert balance["address"] == ROOT_ADDRESS
    assert balance["totalBalance"] == "1.01"
    assert balance["verifiedBalance"] == "0.010000"
    assert balance["failedCount"] == 0


def test_corrupted_ledger_is_preserved_and_recovered(gateway, settings):
    gateway.allocate_address("0.01")
    gateway.record_payment(INDEX_1_ADDRESS, "0.01")
    gateway.create_backup()

    ledger_path = gateway.specs["merchant_transactions.json"].path
    with open(ledger_path, "w", encoding="utf-8") as f:
        f.write('{"not": "an array"}')

    status = gateway.get_database_status(force=True)
    assert ledger_path in status.corrupted_files
    corrupted = os.listdir(os.path.join(settings.data_dir, "corruption_backups"))
    assert any(".corrupted." in name for name in corrupted)

    result = gateway.auto_recover()
    assert result["success"]
    with open(ledger_path, encoding="utf-8") as f:
        assert len(json.load(f)) == 1
    assert gateway.get_database_status().is_healthy


def test_restore_by_name_and_import(gateway):
    records = gateway.create_backup()
    ledger_backup = next(r for r in records if r.source_file == "merchant_transactions.json")
    gateway.ledger.append({"txHash": "0x1", "type": "release"})

    restored = gateway.restore_backup(ledger_backup.file_name)
    assert restored.success
    assert gateway.ledger.all() == []

    imported = gateway.import_backup("keys.json", json.dumps({"mnemonic": TEST_MNEMONIC, "activeAddresses": {}}))
    assert gateway.verify_backup(imported.file_name)["valid"]


def test_api_envelopes(gateway):
    allocated = api.allocate_address(gateway, "0.01", order_id="order-9")
    assert allocated["success"]
    assert allocated["networkId"] == 11155111
    assert allocated["networkType"] == "sepolia"
    assert allocated["address"] == INDEX_1_ADDRESS

    bad = api.allocate_address(gateway, "-1")
    assert bad == {"success": False, "error": "Expected amount must be positive", "errorCode": "VALIDATION_ERROR"}

    assert api.record_payment(gateway, INDEX_1_ADDRESS, "0.01")["success"]
    assert api.get_database_status(gateway)["status"]["isHealthy"]

    backups = api.create_backup(gateway)
    assert backups["success"]
    assert api.list_backups(gateway)["count"] >= len(backups["backups"])
    assert api.auto_recover(gateway)["success"]

    missing = api.restore_backup(gateway, "nothing.json.manual.2025-01-01T00-00-00.000Z.bak")
    assert missing["success"] is False


def test_storage_health_reports_each_store(gateway):
    gateway.allocate_address("0.01")
    health = gateway.storage_health()
    assert set(health) == {"LedgerStore", "AddressBook", "DerivationIndexMap"}
    assert health["LedgerStore"]["is_healthy"]
    assert health["LedgerStore"]["record_count"] == 0
    assert health["AddressBook"]["is_healthy"]


def test_scheduled_backups_use_settings_interval(gateway):
    gateway.start_scheduled_backups()
    try:
        job = gateway.backups._scheduler.get_job("scheduled_backup")
        assert job.trigger.interval.total_seconds() == gateway.settings.backup_interval_hours * 3600
    finally:
        gateway.stop_scheduled_backups()
    assert not gateway.backups.scheduler_running


def test_deleted_ledger_is_restored_before_next_write(gateway):
    gateway.ledger.append({"txHash": "0x1", "type": "release"})
    gateway.create_backup()
    os.remove(gateway.specs["merchant_transactions.json"].path)

    gateway.ledger.append({"txHash": "0x2", "type": "release"})
    assert [e.tx_hash for e in gateway.ledger.all()] == ["0x1", "0x2"]
    assert gateway.get_database_status(force=True).is_healthy


def test_deleted_ledger_with_only_bad_backups_is_not_recreated(gateway, settings):
    ledger_path = gateway.specs["merchant_transactions.json"].path
    backup_dir = os.path.join(settings.data_dir, "database_backups")
    for name in os.listdir(backup_dir):
        if name.startswith("merchant_transactions.json."):
            with open(os.path.join(backup_dir, name), "w", encoding="utf-8") as f:
                f.write("{broken")
    os.remove(ledger_path)

    with pytest.raises(DataIntegrityError):
        gateway.ledger.append({"txHash": "0x2", "type": "release"})
    assert not os.path.exists(ledger_path)
    assert ledger_path in gateway.get_database_status(force=True).missing_files


def test_create_backup_rejects_unknown_reason(gateway):
    response = api.create_backup(gateway, reason="nightly")
    assert response == {"success": False, "error": "Unknown backup reason: nightly", "errorCode": "VALIDATION_ERROR"}
