"""
Core payment gateway.

``PaymentGateway`` wires the stores, the provider layer, the allocator and the
integrity subsystem for one data directory and exposes the operations the API
and CLI call.
"""

import logging
import os
import time
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from web3 import Web3

from . import config
from .amounts import compare_amounts
from .backup import BackupManager
from .config import Settings
from .exceptions import (
    AddressExpired,
    ConfigurationError,
    HDWalletPaymentsError,
    InsufficientFunds,
    ValidationError,
)
from .logging_config import log_blockchain_event
from .models import (
    AddressStatus,
    BackupReason,
    BackupRecord,
    DatabaseStatus,
    EntryType,
    LedgerStatus,
    PaymentAddress,
    Receipt,
    RestoreResult,
    TransactionState,
)
from .monitor import IntegrityMonitor
from .providers import BalanceReader, ProviderPool, TransactionDispatcher
from .storage import AddressBook, DerivationIndexMap, JsonFile, LedgerStore, critical_files
from .utils import Deadline, RetryPolicy, format_amount, isoformat_z, to_decimal, utc_now
from .wallet import AddressAllocator, DerivedWallet, HDKeyVault, KeyVault

logger = logging.getLogger(__name__)

CLEANUP_KINDS = (AddressStatus.EXPIRED.value, AddressStatus.ABANDONED.value)


class PaymentGateway:
    """Entry point for payments, releases and data integrity on one data directory."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        vault: Optional[KeyVault] = None,
        pool: Optional[ProviderPool] = None,
        web3_factory: Optional[Callable[[str, float], Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or Settings.from_env()
        self.specs = critical_files(self.settings.data_dir)

        self.backups = BackupManager.for_data_dir(
            self.settings.data_dir, self.specs, max_age_days=self.settings.backup_max_age_days
        )
        self.monitor = IntegrityMonitor(self.specs, self.backups, cache_ttl=self.settings.status_cache_ttl)

        self.ledger = LedgerStore(self._file(config.LEDGER_FILE))
        self.address_book = AddressBook(self._file(config.ADDRESS_BOOK_FILE))
        self.index_map = DerivationIndexMap(self._file(config.INDEX_MAP_FILE))

        self.pool = pool or ProviderPool.from_settings(self.settings, web3_factory=web3_factory)
        self.balances = BalanceReader(
            self.pool,
            retry_policy=RetryPolicy(
                max_attempts=3, initial_delay=0.5, backoff_factor=2.0, max_delay=2.0, classifier=lambda exc: True, sleep=sleep
            ),
        )
        self.dispatcher = TransactionDispatcher(
            self.pool,
            ledger=self.ledger,
            retry_policy=RetryPolicy(max_attempts=5, initial_delay=2.0, backoff_factor=2.0, max_delay=10.0, sleep=sleep),
            gas_limit=self.settings.network_config["gas_limit"],
            sleep=sleep,
        )
        self.vault = vault or HDKeyVault()
        self.allocator = AddressAllocator(self.vault, self.address_book, self.index_map, self.balances, self.settings)
        logger.info("Payment gateway ready on %s (data dir %s)", self.settings.network, self.settings.data_dir)

    def _file(self, relative: str) -> JsonFile:
        return JsonFile(
            self.specs[os.path.basename(relative)], on_corrupted=self._on_corrupted, on_missing=self._on_missing
        )

    def _on_corrupted(self, path: str) -> str:
        backup_path = self.backups.corruption_hook(path)
        self.monitor.invalidate()
        return backup_path

    def _on_missing(self, path: str) -> Optional[bytes]:
        content = self.backups.missing_file_hook(path)
        self.monitor.invalidate()
        return content

    # Setup

    def initialize(self, create_wallet: bool = False) -> Dict[str, Any]:
        """Prepare the data directory; optionally generate a wallet mnemonic when none is stored."""
        result = self.monitor.initialize()
        result["walletCreated"] = self.allocator.ensure_mnemonic() if create_wallet else False
        return result

    # Addresses

    def allocate_address(
        self,
        expected_amount: Any,
        crypto_type: str = config.DEFAULT_CRYPTO_TYPE,
        order_id: Optional[str] = None,
        fiat_amount: Optional[Any] = None,
        fiat_currency: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> PaymentAddress:
        return self.allocator.allocate(
            expected_amount,
            crypto_type=crypto_type,
            order_id=order_id,
            fiat_amount=fiat_amount,
            fiat_currency=fiat_currency,
            deadline=Deadline(timeout) if timeout else None,
        )

    def verify_address(self, address: str) -> Dict[str, Any]:
        """Whether an address can still receive its payment; stamps expiry once the window has passed."""
        record = self.address_book.get(address)
        if record is None:
            return {"active": False, "message": "Address not found"}
        if record.is_live():
            return {"active": True, "message": "Address is active", "expiresAt": isoformat_z(record.expires_at)}
        if record.status == AddressStatus.PENDING and not record.is_expired:
            self.address_book.update(address, lambda a: a.mark_expired("Payment window elapsed"))
            return {"active": False, "message": "Address expired"}
        return {"active": False, "message": "Address expired or marked as wrong payment"}

    def list_addresses(self) -> List[Dict[str, Any]]:
        """Stored addresses with the status an operator should see, oldest first."""
        abandon_after = self._abandon_after()
        now = utc_now()
        rows = []
        for record in sorted(self.address_book.all(), key=lambda a: a.created_at):
            row = record.to_dict()
            row["storedStatus"] = record.status.value
            row["status"] = record.effective_status(now, abandon_after).value
            rows.append(row)
        return rows

    def _abandon_after(self) -> timedelta:
        return timedelta(hours=config.DEFAULT_ABANDON_AFTER_HOURS)

    def cleanup_addresses(self, kind: str = AddressStatus.EXPIRED.value) -> Dict[str, Any]:
        """Remove every address whose computed status is ``kind`` (expired or abandoned)."""
        if kind not in CLEANUP_KINDS:
            raise ValidationError(f"Cleanup kind must be one of {', '.join(CLEANUP_KINDS)}", field="kind", value=kind)
        targets = [row["address"] for row in self.list_addresses() if row["status"] == kind]
        removed = self.address_book.delete_many(targets)
        for address in targets:
            self.index_map.forget(address)
        return {"removed": targets, "count": removed}

    def delete_address(self, address: str) -> bool:
        removed = self.address_book.delete(address)
        if removed:
            self.index_map.forget(address)
        return removed

    def discard_address(self, address: str) -> Dict[str, Any]:
        """Drop an abandoned checkout address. Addresses that received funds are kept."""
        record = self.address_book.get(address)
        if record is None:
            return {"discarded": False, "message": "Address not found or already inactive"}
        if record.status in (AddressStatus.CONFIRMED, AddressStatus.WRONG):
            return {"discarded": False, "message": f"Address has a {record.status.value} payment and is kept"}
        self.delete_address(address)
        return {"discarded": True, "message": "Payment address discarded successfully"}

    def scan_address_indices(self, max_index: int = 50) -> Dict[str, int]:
        return self.allocator.scan_address_indices(max_index)

    def repair_derivation_indexes(self) -> List[Dict[str, Any]]:
        return self.allocator.repair_derivation_indexes()

    # Payments

    def record_payment(
        self,
        address: str,
        amount: Any,
        crypto_type: str = config.DEFAULT_CRYPTO_TYPE,
        tx_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Match a received amount against the address's expected amount.

        A matching amount confirms the address. A mismatch records a wrong
        payment and retires the address; later payments to it are rejected
        with ``isExpired``.
        """
        formatted = format_amount(amount)
        outcome: Dict[str, Any] = {}

        def apply(record: PaymentAddress) -> None:
            if record.is_expired or record.status in (AddressStatus.WRONG, AddressStatus.EXPIRED):
                raise AddressExpired(
                    "This payment address has expired",
                    address=record.address,
                    expired_at=isoformat_z(record.expired_at) if record.expired_at else isoformat_z(),
                    reason=record.expired_reason or "Address expired due to previous wrong payment",
                )
            comparison = compare_amounts(record.expected_amount, formatted)
            outcome["expected"] = record.expected_amount
            outcome["matched"] = comparison.matched
            if comparison.matched:
                record.mark_confirmed(formatted)
            else:
                reason = (
                    f"Please submit {record.expected_amount} {crypto_type}. "
                    f"You sent {formatted} {crypto_type} which is incorrect."
                )
                outcome["reason"] = reason
                record.mark_wrong(formatted, reason)

        try:
            updated = self.address_book.update(address, apply)
        except AddressExpired as e:
            return {
                "success": False,
                "isExpired": True,
                "message": e.message,
                "reason": e.reason,
                "expiredAt": e.expired_at,
            }
        if updated is None:
            raise ValidationError(f"Unknown payment address: {address}", field="address", value=address)

        matched = outcome["matched"]
        entry = self.ledger.append(
            {
                "txHash": tx_hash,
                "address": updated.address,
                "to": updated.address,
                "amount": formatted,
                "expectedAmount": outcome["expected"],
                "cryptoType": crypto_type,
                "status": LedgerStatus.CONFIRMED.value if matched else LedgerStatus.WRONG.value,
                "type": EntryType.PAYMENT.value,
                "orderId": updated.order_id,
                "amountVerified": matched,
                "isWrongPayment": not matched,
                "wrongReason": outcome.get("reason"),
            }
        )
        log_blockchain_event(
            "payment_recorded",
            level=logging.INFO if matched else logging.WARNING,
            address=updated.address,
            amount=formatted,
            matched=matched,
        )
        if not matched:
            return {
                "success": True,
                "isWrongPayment": True,
                "message": "Wrong payment recorded",
                "reason": outcome["reason"],
                "transaction": entry.to_dict(),
            }
        return {
            "success": True,
            "isWrongPayment": False,
            "status": AddressStatus.CONFIRMED.value,
            "message": "Payment recorded",
            "transaction": entry.to_dict(),
        }

    def get_release_status(self, tx_hash: str) -> Dict[str, Any]:
        """Single receipt lookup; records a ``release`` ledger entry for a mined transfer the ledger lacks."""
        receipt = self.dispatcher.get_status(tx_hash)
        entry = self.ledger.get(tx_hash=tx_hash)
        if entry is None and receipt.state in (TransactionState.CONFIRMED, TransactionState.FAILED):
            entry = self.ledger.append(
                {
                    "txHash": tx_hash,
                    "from": receipt.from_address,
                    "to": receipt.to_address,
                    "status": LedgerStatus.CONFIRMED.value if receipt.succeeded else LedgerStatus.FAILED.value,
                    "type": EntryType.RELEASE.value,
                    "blockNumber": receipt.block_number,
                    "gasUsed": receipt.gas_used,
                    "confirmations": receipt.confirmations,
                }
            )
        result = receipt.to_dict()
        result["ledgerStatus"] = entry.status if entry is not None else None
        return result

    check_payment_status = get_release_status

    def wait_for_receipt(self, tx_hash: str, timeout: float = 120.0, poll_interval: float = 3.0) -> Receipt:
        return self.dispatcher.wait_for_receipt(tx_hash, timeout=timeout, poll_interval=poll_interval)

    def wrong_payment_summary(self) -> Dict[str, Any]:
        return {
            "wrongPayments": [e.to_dict() for e in self.ledger.wrong_payments()],
            **self.ledger.payment_totals(),
        }

    def get_wallet_balance(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Root plus every stored address, read in parallel; unreadable addresses count as zero."""
        root = self.allocator.root_wallet()
        addresses = [root.address] + [a.address for a in self.address_book.all()]
        report = self.balances.get_balances(addresses, deadline=Deadline(timeout) if timeout else None, use_cache=False)
        totals = self.ledger.payment_totals()
        return {
            "address": root.address,
            **report.to_dict(),
            "verifiedBalance": totals["verifiedTotal"],
            "wrongPaymentsBalance": totals["wrongTotal"],
            "lastUpdated": isoformat_z(),
        }

    # Releases

    def _merchant_address(self) -> str:
        merchant = self.settings.merchant_address
        if not merchant or not Web3.is_address(merchant):
            raise ConfigurationError(
                "A valid merchant address is required to release funds",
                config_key=f"{config.ENV_PREFIX}MerchantAddress",
                actual_value=merchant,
            )
        return Web3.to_checksum_address(merchant)

    def _signer_for(self, address: Optional[str], required_wei: int) -> tuple[DerivedWallet, Optional[Dict[str, Any]]]:
        wallet = self.allocator.find_signing_key_for(address) if address else self.allocator.root_wallet()
        balance = self.balances.get_balance(wallet.address, use_cache=False)
        if balance > required_wei:
            return wallet, None
        if not self.settings.allow_signer_fallback:
            raise InsufficientFunds(
                f"Address {wallet.address} has insufficient balance for this release",
                attempts=0,
                address=wallet.address,
                balance_wei=balance,
                required_wei=required_wei,
            )
        funded = [(w, b) for w, b in self.allocator.funded_wallets() if b > required_wei]
        if not funded:
            raise InsufficientFunds(
                "No derived address holds enough funds for this release",
                attempts=0,
                address=wallet.address,
                balance_wei=balance,
                required_wei=required_wei,
            )
        fallback, fallback_balance = funded[0]
        logger.warning(
            "Signer fallback: %s lacks funds, releasing from %s (balance %d wei)",
            wallet.address,
            fallback.address,
            fallback_balance,
        )
        return fallback, {"requestedSigner": wallet.address, "usedSigner": fallback.address, "reason": "insufficient balance"}

    def release_funds(
        self, address: Optional[str] = None, amount: Optional[Any] = None, wait: bool = True
    ) -> Dict[str, Any]:
        """
        Send funds from ``address`` (root wallet when omitted) to the merchant address.

        Without ``amount`` the whole balance minus the network fee is swept. When
        the signer lacks funds and signer fallback is enabled, the highest-balance
        derived address signs instead and the substitution is written to the ledger.
        """
        merchant = self._merchant_address()
        amount_wei = None
        if amount is not None:
            amount_wei = int(Web3.to_wei(to_decimal(amount), "ether"))
            if amount_wei <= 0:
                raise ValidationError("Release amount must be positive", field="amount", value=amount)
        wallet, fallback = self._signer_for(address, amount_wei or 0)

        ledger_fields: Dict[str, Any] = {"address": wallet.address}
        if fallback:
            ledger_fields["signerFallback"] = fallback
        receipt = self.dispatcher.send(
            wallet.private_key,
            merchant,
            amount_wei=amount_wei,
            sweep=amount_wei is None,
            wait=wait,
            ledger_fields=ledger_fields,
        )
        self.balances.invalidate(wallet.address)
        result = receipt.to_dict()
        result["from"] = wallet.address
        result["to"] = merchant
        if receipt.value_wei is not None:
            result["amount"] = str(Web3.from_wei(receipt.value_wei, "ether"))
        if fallback:
            result["signerFallback"] = fallback
        return result

    def release_all_funds(self, max_index: int = 50, wait: bool = False) -> Dict[str, Any]:
        """Sweep every funded derived address to the merchant, one result per address."""
        merchant = self._merchant_address()
        results = []
        for wallet, balance in self.allocator.funded_wallets(max_index):
            try:
                receipt = self.dispatcher.send(
                    wallet.private_key, merchant, sweep=True, wait=wait, ledger_fields={"address": wallet.address}
                )
                results.append({"address": wallet.address, "index": wallet.index, "success": True, **receipt.to_dict()})
            except HDWalletPaymentsError as e:
                results.append({"address": wallet.address, "index": wallet.index, "success": False, "error": e.message})
            self.balances.invalidate(wallet.address)
        released = sum(1 for r in results if r["success"])
        logger.info("Released funds from %d of %d funded address(es)", released, len(results))
        return {
            "success": released == len(results),
            "released": released,
            "failed": len(results) - released,
            "results": results,
        }

    # Integrity and backups

    def get_database_status(self, force: bool = False) -> DatabaseStatus:
        return self.monitor.check_status(force=force)

    def storage_health(self) -> Dict[str, Any]:
        return {store.name: store.check_health().to_dict() for store in (self.ledger, self.address_book, self.index_map)}

    def create_backup(self, reason: BackupReason = BackupReason.MANUAL) -> List[BackupRecord]:
        return self.backups.backup_all(reason)

    def list_backups(self, source_file: Optional[str] = None) -> List[BackupRecord]:
        return self.backups.list_backups(source_file)

    def verify_backup(self, backup: str) -> Dict[str, Any]:
        return self.backups.verify_backup(backup)

    def import_backup(self, file_name: str, content: Any, force: bool = False) -> BackupRecord:
        return self.backups.import_backup(file_name, content, force=force)

    def restore_backup(self, backup: str, force: bool = False, snapshot_current: bool = True) -> RestoreResult:
        return self.backups.restore(backup, force=force, snapshot_current=snapshot_current)

    def auto_recover(self) -> Dict[str, Any]:
        return self.monitor.auto_recover()

    def cleanup_backups(self, max_age_days: Optional[int] = None) -> Dict[str, Any]:
        return self.backups.cleanup(max_age_days)

    def start_scheduled_backups(self, interval_hours: Optional[float] = None) -> None:
        self.backups.start_scheduler(interval_hours or self.settings.backup_interval_hours)

    def stop_scheduled_backups(self) -> None:
        self.backups.stop_scheduler()
