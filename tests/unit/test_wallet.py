from datetime import timedelta

import pytest

from hdwallet_payments.exceptions import (
    AddressNotDerivable,
    ConfigurationError,
    NoZeroBalanceAddressFound,
    ValidationError,
)
from hdwallet_payments.models import PaymentAddress
from hdwallet_payments.providers import BalanceReader, ProviderPool
from hdwallet_payments.utils import Deadline, RetryPolicy
from hdwallet_payments.wallet import AddressAllocator, HDKeyVault

from conftest import (
    ENDPOINTS,
    INDEX_1_ADDRESS,
    INDEX_2_ADDRESS,
    INDEX_3_ADDRESS,
    ROOT_ADDRESS,
    ROOT_PRIVATE_KEY,
    SEPOLIA_CHAIN_ID,
    TEST_MNEMONIC,
)


@pytest.fixture
def allocator(settings, vault, address_book, index_map, web3_factory):
    pool = ProviderPool(ENDPOINTS, SEPOLIA_CHAIN_ID, web3_factory=web3_factory)
    reader = BalanceReader(
        pool, retry_policy=RetryPolicy(max_attempts=2, initial_delay=0, max_delay=0, sleep=lambda s: None)
    )
    return AddressAllocator(vault, address_book, index_map, reader, settings)


@pytest.mark.parametrize(
    "index,address",
    [(0, ROOT_ADDRESS), (1, INDEX_1_ADDRESS), (2, INDEX_2_ADDRESS), (3, INDEX_3_ADDRESS)],
)
def test_derivation_vectors(vault, index, address):
    wallet = vault.derive_wallet(TEST_MNEMONIC, index)
    assert wallet.address == address
    assert wallet.index == index


def test_root_private_key(vault):
    wallet = vault.derive_wallet(TEST_MNEMONIC, 0)
    assert "0x" + wallet.private_key == ROOT_PRIVATE_KEY
    assert wallet.private_key not in repr(wallet)


def test_vault_rejects_bad_input(vault):
    with pytest.raises(ConfigurationError):
        vault.decrypt("")
    with pytest.raises(ValidationError):
        vault.derive_wallet(TEST_MNEMONIC, -1)


def test_vault_uses_decryptor():
    vault = HDKeyVault(decryptor=lambda value: value[::-1])
    assert vault.decrypt(TEST_MNEMONIC[::-1]) == TEST_MNEMONIC


def test_generated_mnemonic_has_twelve_words():
    assert len(HDKeyVault.generate_mnemonic().split()) == 12


def test_allocate_first_address(allocator, address_book, index_map):
    payment_address = allocator.allocate("0.01", order_id="order-1", fiat_amount="25")
    assert payment_address.address == INDEX_1_ADDRESS
    assert payment_address.derivation_index == 1
    assert payment_address.expected_amount == "0.01000000"
    assert payment_address.fiat_amount == "25.00"
    assert payment_address.fiat_currency == "AUD"
    assert payment_address.expires_at - payment_address.created_at == timedelta(minutes=30)
    assert address_book.get(INDEX_1_ADDRESS).order_id == "order-1"
    assert index_map.get(INDEX_1_ADDRESS) == 1


def test_allocate_skips_funded_candidates(allocator, fake_web3):
    fake_web3.balances[INDEX_1_ADDRESS.lower()] = 1
    fake_web3.balances[INDEX_2_ADDRESS.lower()] = 10**15
    assert allocator.allocate("0.01").address == INDEX_3_ADDRESS


def test_allocate_skips_unreadable_candidates(allocator, fake_web3):
    def get_balance(address, *args):
        if address == INDEX_1_ADDRESS:
            raise ConnectionError("timeout")
        return 0

    fake_web3.eth.get_balance.side_effect = get_balance
    assert allocator.allocate("0.01").address == INDEX_2_ADDRESS


def test_allocation_scan_reuses_one_provider(allocator, fake_web3, web3_factory):
    fake_web3.balances[INDEX_1_ADDRESS.lower()] = 1
    fake_web3.balances[INDEX_2_ADDRESS.lower()] = 1
    assert allocator.allocate("0.01").address == INDEX_3_ADDRESS
    assert fake_web3.eth.get_balance.call_count == 3
    assert web3_factory.call_count == 1


def test_allocation_scan_reacquires_after_read_error(allocator, fake_web3, web3_factory):
    def get_balance(address, *args):
        if address == INDEX_1_ADDRESS:
            raise ConnectionError("timeout")
        return 0

    fake_web3.eth.get_balance.side_effect = get_balance
    assert allocator.allocate("0.01").address == INDEX_2_ADDRESS
    # one probe per attempt on the failing index, one for the next candidate
    assert web3_factory.call_count == 3


def test_allocate_starts_past_highest_recorded_index(allocator, address_book):
    address_book.save(PaymentAddress(address=INDEX_2_ADDRESS, derivation_index=2, expected_amount="0.5"))
    assert allocator.allocate("0.01").derivation_index == 3


def test_allocate_never_reuses_addresses(allocator):
    first = allocator.allocate("0.01")
    second = allocator.allocate("0.01")
    assert first.address != second.address
    assert second.derivation_index == first.derivation_index + 1


def test_allocate_fails_when_horizon_is_funded(allocator, fake_web3, settings):
    fake_web3.eth.get_balance.side_effect = lambda address, *args: 1
    with pytest.raises(NoZeroBalanceAddressFound) as exc_info:
        allocator.allocate("0.01")
    assert exc_info.value.horizon == settings.scan_horizon
    assert exc_info.value.start_index == 1


def test_allocate_respects_deadline(allocator):
    with pytest.raises(NoZeroBalanceAddressFound):
        allocator.allocate("0.01", deadline=Deadline(0))


@pytest.mark.parametrize("amount", ["0", "-1", "abc", None])
def test_allocate_rejects_bad_amounts(allocator, amount):
    with pytest.raises(ValidationError):
        allocator.allocate(amount)


def test_find_signing_key_uses_stored_index(allocator):
    payment_address = allocator.allocate("0.01")
    wallet = allocator.find_signing_key_for(payment_address.address.lower())
    assert wallet.address == INDEX_1_ADDRESS


def test_find_signing_key_recovers_from_wrong_index(allocator, address_book, index_map):
    address_book.save(PaymentAddress(address=INDEX_3_ADDRESS, derivation_index=7, expected_amount="0.1"))
    wallet = allocator.find_signing_key_for(INDEX_3_ADDRESS)
    assert wallet.index == 3
    assert index_map.get(INDEX_3_ADDRESS) == 3


def test_find_signing_key_not_derivable(allocator):
    with pytest.raises(AddressNotDerivable):
        allocator.find_signing_key_for("0x1234567890123456789012345678901234567890")


def test_scan_and_repair(allocator, address_book, index_map):
    mapping = allocator.scan_address_indices(max_index=3)
    assert mapping[INDEX_2_ADDRESS] == 2
    assert index_map.get(ROOT_ADDRESS) == 0

    address_book.save(PaymentAddress(address=INDEX_2_ADDRESS, derivation_index=9, expected_amount="0.1"))
    repaired = allocator.repair_derivation_indexes()
    assert repaired == [{"address": INDEX_2_ADDRESS, "oldIndex": 9, "newIndex": 2}]
    assert address_book.get(INDEX_2_ADDRESS).derivation_index == 2


def test_funded_wallets_sorted_by_balance(allocator, fake_web3):
    fake_web3.balances[INDEX_1_ADDRESS.lower()] = 5
    fake_web3.balances[INDEX_3_ADDRESS.lower()] = 50
    funded = allocator.funded_wallets(max_index=4)
    assert [(wallet.index, balance) for wallet, balance in funded] == [(3, 50), (1, 5)]


def test_ensure_mnemonic_keeps_existing(allocator, address_book):
    assert allocator.ensure_mnemonic() is False
    assert address_book.get_mnemonic() == TEST_MNEMONIC
