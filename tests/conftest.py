"""
conftest.py: Shared pytest fixtures for the hdwallet_payments test suite.

- ``fake_web3`` is a MagicMock standing in for a connected Web3 instance on Sepolia.
- ``settings`` and ``gateway`` keep all file state under ``tmp_path``.
- The wallet fixtures use the well-known development mnemonic, so derived
  addresses are stable across runs.

Usage:
    def test_something(gateway, fake_web3):
        fake_web3.balances[INDEX_1_ADDRESS.lower()] = 10**18
"""

from unittest.mock import MagicMock

import pytest

from hdwallet_payments import PaymentGateway, Settings
from hdwallet_payments.storage import AddressBook, DerivationIndexMap, JsonFile, LedgerStore, critical_files
from hdwallet_payments.wallet import HDKeyVault

SEPOLIA_CHAIN_ID = 11155111
TEST_MNEMONIC = "test test test test test test test test test test test junk"
ROOT_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
INDEX_1_ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
INDEX_2_ADDRESS = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
INDEX_3_ADDRESS = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"
ROOT_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
MERCHANT_ADDRESS = "0x1234567890123456789012345678901234567890"
ENDPOINTS = ["https://rpc-a.example.com", "https://rpc-b.example.com"]


def make_web3(chain_id=SEPOLIA_CHAIN_ID, block_number=1000, balances=None):
    """A MagicMock shaped like a connected Web3 instance."""
    w3 = MagicMock()
    w3.balances = balances if balances is not None else {}
    w3.eth.chain_id = chain_id
    w3.eth.block_number = block_number
    w3.eth.gas_price = 2 * 10**9
    w3.eth.get_transaction_count.return_value = 0
    w3.eth.get_balance.side_effect = lambda address, *args: w3.balances.get(address.lower(), 0)
    w3.eth.send_raw_transaction.return_value = bytes.fromhex("ab" * 32)
    w3.eth.get_transaction_receipt.return_value = {
        "status": 1,
        "blockNumber": block_number - 2,
        "gasUsed": 21000,
        "from": ROOT_ADDRESS,
        "to": MERCHANT_ADDRESS,
    }
    return w3


@pytest.fixture
def fake_web3():
    return make_web3()


@pytest.fixture
def web3_factory(fake_web3):
    """Factory that hands the same fake to every endpoint."""
    factory = MagicMock(side_effect=lambda endpoint, timeout: fake_web3)
    return factory


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path / "data"),
        custom_endpoints=list(ENDPOINTS),
        include_public_endpoints=False,
        merchant_address=MERCHANT_ADDRESS,
        scan_horizon=20,
        signing_key_horizon=10,
    )


@pytest.fixture
def specs(settings):
    return critical_files(settings.data_dir)


@pytest.fixture
def ledger(specs):
    return LedgerStore(JsonFile(specs["merchant_transactions.json"]))


@pytest.fixture
def address_book(specs):
    book = AddressBook(JsonFile(specs["keys.json"]))
    book.set_mnemonic(TEST_MNEMONIC)
    return book


@pytest.fixture
def index_map(specs):
    return DerivationIndexMap(JsonFile(specs["address_index_map.json"]))


@pytest.fixture
def vault():
    return HDKeyVault()


@pytest.fixture
def gateway(settings, web3_factory):
    """A PaymentGateway on a temporary data directory with a stored test mnemonic and no real sleeps."""
    gw = PaymentGateway(settings, web3_factory=web3_factory, sleep=lambda seconds: None)
    gw.initialize()
    gw.address_book.set_mnemonic(TEST_MNEMONIC)
    return gw
