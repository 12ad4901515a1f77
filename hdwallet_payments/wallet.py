"""
HD wallet key derivation and payment address allocation.

Child wallets are derived along ``m/44'/60'/0'/0/{index}``. Index 0 is the root
wallet; payment addresses start at index 1. New addresses are allocated past the
highest index already recorded and must hold a zero on-chain balance, so funds
left on an old address are never attributed to a new order.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Protocol

from eth_account import Account
from eth_account.hdaccount import key_from_seed, seed_from_mnemonic

from .config import Settings
from .exceptions import AddressNotDerivable, ConfigurationError, NoZeroBalanceAddressFound, ValidationError
from .logging_config import log_blockchain_event
from .models import PaymentAddress
from .providers.balances import BalanceReader
from .storage.address_book import AddressBook, DerivationIndexMap
from .utils import Deadline, format_amount, redact_message, to_decimal, utc_now

logger = logging.getLogger(__name__)

DERIVATION_PATH = "m/44'/60'/0'/0/{index}"
EXPECTED_AMOUNT_PLACES = 8


@dataclass
class DerivedWallet:
    address: str
    index: int
    private_key: str = field(repr=False)


class KeyVault(Protocol):
    """Source of deterministic child wallets for a stored mnemonic."""

    def decrypt(self, encrypted_mnemonic: str) -> str: ...

    def derive_wallet(self, mnemonic: str, index: int) -> DerivedWallet: ...


@lru_cache(maxsize=4)
def _seed(mnemonic: str) -> bytes:
    return seed_from_mnemonic(mnemonic, "")


class HDKeyVault:
    """
    BIP-44 derivation through ``eth_account``.

    Mnemonic encryption lives outside this package; pass a ``decryptor`` to
    unwrap stored phrases. Without one, stored phrases are taken as plaintext.
    """

    def __init__(self, decryptor: Optional[Callable[[str], str]] = None):
        self.decryptor = decryptor

    def decrypt(self, encrypted_mnemonic: str) -> str:
        if not encrypted_mnemonic:
            raise ConfigurationError("No wallet mnemonic has been stored", config_key="mnemonic")
        if self.decryptor is None:
            return encrypted_mnemonic.strip()
        return self.decryptor(encrypted_mnemonic).strip()

    def derive_wallet(self, mnemonic: str, index: int) -> DerivedWallet:
        if index < 0:
            raise ValidationError("Derivation index must be non-negative", field="index", value=index)
        try:
            key = key_from_seed(_seed(mnemonic), DERIVATION_PATH.format(index=index))
        except Exception as e:
            raise ValidationError(f"Could not derive wallet: {redact_message(str(e))}", field="mnemonic") from e
        account = Account.from_key(key)
        return DerivedWallet(address=account.address, index=index, private_key=key.hex())

    @staticmethod
    def generate_mnemonic() -> str:
        Account.enable_unaudited_hdwallet_features()
        _, mnemonic = Account.create_with_mnemonic()
        return mnemonic


class AddressAllocator:
    """Allocates zero-balance payment addresses and recovers their signing keys."""

    def __init__(
        self,
        vault: KeyVault,
        address_book: AddressBook,
        index_map: DerivationIndexMap,
        balances: BalanceReader,
        settings: Optional[Settings] = None,
    ):
        self.vault = vault
        self.address_book = address_book
        self.index_map = index_map
        self.balances = balances
        self.settings = settings or Settings()
        self._lock = threading.Lock()

    def _mnemonic(self) -> str:
        return self.vault.decrypt(self.address_book.get_mnemonic())

    def ensure_mnemonic(self) -> bool:
        """Store a freshly generated mnemonic when none exists. Returns True if one was created."""
        if self.address_book.get_mnemonic():
            return False
        generator = getattr(self.vault, "generate_mnemonic", None) or HDKeyVault.generate_mnemonic
        self.address_book.set_mnemonic(generator())
        logger.warning("Generated a new wallet mnemonic; back up the address book now")
        return True

    def root_wallet(self) -> DerivedWallet:
        return self.vault.derive_wallet(self._mnemonic(), 0)

    def allocate(
        self,
        expected_amount: Any,
        crypto_type: str = "ETH",
        order_id: Optional[str] = None,
        fiat_amount: Optional[Any] = None,
        fiat_currency: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> PaymentAddress:
        """
        Allocate the first zero-balance address past the highest recorded index.

        Candidates whose balance cannot be read are skipped rather than assumed
        empty. Raises ``NoZeroBalanceAddressFound`` once the scan horizon is spent.
        """
        formatted_amount = format_amount(expected_amount, EXPECTED_AMOUNT_PLACES)
        if to_decimal(formatted_amount) <= 0:
            raise ValidationError("Expected amount must be positive", field="expectedAmount", value=expected_amount)

        with self._lock:
            mnemonic = self._mnemonic()
            start = self.address_book.highest_index() + 1
            horizon = self.settings.scan_horizon
            scanned = 0
            connection = None
            for index in range(start, start + horizon):
                if deadline is not None and deadline.expired():
                    logger.warning("Address scan deadline reached after %d candidate(s)", scanned)
                    break
                scanned += 1
                wallet = self.vault.derive_wallet(mnemonic, index)
                try:
                    balance, connection = self.balances.read_balance(wallet.address, connection, deadline=deadline)
                except Exception as e:
                    connection = None
                    logger.warning(
                        "Skipping index %d (%s): balance unavailable: %s", index, wallet.address, redact_message(str(e))
                    )
                    continue
                if balance != 0:
                    logger.info("Skipping index %d (%s): balance %d wei", index, wallet.address, balance)
                    continue

                created_at = utc_now()
                payment_address = PaymentAddress(
                    address=wallet.address,
                    derivation_index=index,
                    expected_amount=formatted_amount,
                    crypto_type=crypto_type,
                    created_at=created_at,
                    expires_at=created_at + timedelta(minutes=self.settings.address_ttl_minutes),
                    order_id=order_id,
                    fiat_amount=format_amount(fiat_amount, 2) if fiat_amount is not None else None,
                    fiat_currency=fiat_currency or (self.settings.fiat_currency if fiat_amount is not None else None),
                )
                self.address_book.save(payment_address)
                self.index_map.set(wallet.address, index)
                log_blockchain_event(
                    "address_allocated", address=wallet.address, index=index, amount=formatted_amount, order=order_id
                )
                return payment_address

        raise NoZeroBalanceAddressFound(
            f"No zero-balance address found in {scanned} indices starting at {start}",
            horizon=horizon,
            start_index=start,
        )

    def find_signing_key_for(self, address: str) -> DerivedWallet:
        """
        Recover the wallet that controls ``address``.

        Tries the cached index, then the index stored in the address book, then
        re-derives every index up to the signing-key horizon.
        """
        mnemonic = self._mnemonic()
        target = address.lower()

        candidates: List[int] = []
        cached = self.index_map.get(address)
        if cached is not None:
            candidates.append(cached)
        stored = self.address_book.get(address)
        if stored is not None and stored.derivation_index not in candidates:
            candidates.append(stored.derivation_index)

        for index in candidates:
            wallet = self.vault.derive_wallet(mnemonic, index)
            if wallet.address.lower() == target:
                return wallet
            logger.warning("Cached derivation index %d does not match %s; rescanning", index, address)

        horizon = self.settings.signing_key_horizon
        for index in range(horizon + 1):
            wallet = self.vault.derive_wallet(mnemonic, index)
            if wallet.address.lower() == target:
                self.index_map.set(wallet.address, index)
                logger.info("Recovered derivation index %d for %s", index, address)
                return wallet

        raise AddressNotDerivable(
            f"Address {address} is not derivable within {horizon} indices",
            horizon=horizon,
            address=address,
        )

    def scan_address_indices(self, max_index: int = 50) -> Dict[str, int]:
        """Rebuild the derivation index map for indices ``0..max_index``."""
        mnemonic = self._mnemonic()
        mapping = {}
        for index in range(max_index + 1):
            wallet = self.vault.derive_wallet(mnemonic, index)
            mapping[wallet.address] = index
        changed = self.index_map.merge(mapping)
        logger.info("Scanned %d derivation indices, %d map entries changed", max_index + 1, changed)
        return mapping

    def repair_derivation_indexes(self) -> List[Dict[str, Any]]:
        """Correct stored indices that no longer derive to their address."""
        mnemonic = self._mnemonic()
        repaired = []
        for payment_address in self.address_book.all():
            wallet = self.vault.derive_wallet(mnemonic, payment_address.derivation_index)
            if wallet.address.lower() == payment_address.address.lower():
                continue
            try:
                actual = self.find_signing_key_for(payment_address.address)
            except AddressNotDerivable:
                logger.error("Address %s is not derivable from the stored mnemonic", payment_address.address)
                continue

            def set_index(record: PaymentAddress, index: int = actual.index) -> None:
                record.derivation_index = index

            self.address_book.update(payment_address.address, set_index)
            repaired.append(
                {"address": payment_address.address, "oldIndex": payment_address.derivation_index, "newIndex": actual.index}
            )
        if repaired:
            logger.warning("Repaired %d stored derivation index(es)", len(repaired))
        return repaired

    def funded_wallets(self, max_index: int = 50, deadline: Optional[Deadline] = None) -> List[tuple[DerivedWallet, int]]:
        """Derived wallets ``1..max_index`` holding a positive balance, highest balance first."""
        mnemonic = self._mnemonic()
        wallets = [self.vault.derive_wallet(mnemonic, index) for index in range(1, max_index + 1)]
        report = self.balances.get_balances([w.address for w in wallets], deadline=deadline, use_cache=False)
        funded = [(w, report.balances_wei.get(w.address, 0)) for w in wallets]
        funded = [(w, balance) for w, balance in funded if balance > 0]
        funded.sort(key=lambda item: item[1], reverse=True)
        return funded
