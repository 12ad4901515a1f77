from unittest.mock import MagicMock, PropertyMock

import pytest
from web3.exceptions import TransactionNotFound

from hdwallet_payments.exceptions import InsufficientFunds, TransactionFailed, TransactionRejected
from hdwallet_payments.models import TransactionState
from hdwallet_payments.providers import ProviderPool, TransactionDispatcher
from hdwallet_payments.utils import Deadline, RetryPolicy

from conftest import ENDPOINTS, MERCHANT_ADDRESS, ROOT_ADDRESS, ROOT_PRIVATE_KEY, SEPOLIA_CHAIN_ID, make_web3

SUBMITTED_HASH = "0x" + "ab" * 32


def no_sleep(seconds):
    pass


def make_dispatcher(web3_factory, ledger=None, attempts=5):
    pool = ProviderPool(ENDPOINTS, SEPOLIA_CHAIN_ID, web3_factory=web3_factory)
    policy = RetryPolicy(max_attempts=attempts, initial_delay=0.01, max_delay=0.01, sleep=no_sleep)
    return TransactionDispatcher(pool, ledger=ledger, retry_policy=policy, sleep=no_sleep)


def test_nonce_is_max_of_pending_and_latest(fake_web3, web3_factory):
    fake_web3.eth.get_transaction_count.side_effect = lambda address, block: {"pending": 5, "latest": 7}[block]
    dispatcher = make_dispatcher(web3_factory)
    connection = dispatcher.pool.acquire()
    assert dispatcher.resolve_nonce(connection, ROOT_ADDRESS) == 7


def test_gas_price_applies_floor_and_multiplier(fake_web3, web3_factory):
    dispatcher = make_dispatcher(web3_factory)
    connection = dispatcher.pool.acquire()
    assert dispatcher.resolve_gas_price(connection) == 2_400_000_000

    fake_web3.eth.gas_price = 100
    assert dispatcher.resolve_gas_price(connection) == 1_200_000_000


def test_gas_price_falls_back_when_unavailable(fake_web3, web3_factory):
    dispatcher = make_dispatcher(web3_factory)
    connection = dispatcher.pool.acquire()
    type(fake_web3.eth).gas_price = PropertyMock(side_effect=ConnectionError("timeout"))
    assert dispatcher.resolve_gas_price(connection) == 1_800_000_000


def test_nonce_after_provider_switch_keeps_max_rule():
    primary = make_web3()
    primary.eth.get_transaction_count.side_effect = ConnectionError("connection reset")
    secondary = make_web3()
    secondary.eth.get_transaction_count.side_effect = lambda address, block: {"pending": 3, "latest": 6}[block]
    factory = MagicMock(side_effect=lambda endpoint, timeout: {ENDPOINTS[0]: primary, ENDPOINTS[1]: secondary}[endpoint])
    dispatcher = make_dispatcher(factory)
    connection = dispatcher.pool.acquire()
    dispatcher.pool.acquire = MagicMock(wraps=dispatcher.pool.acquire)
    deadline = Deadline(30)

    assert dispatcher.resolve_nonce(connection, ROOT_ADDRESS, deadline) == 6
    dispatcher.pool.acquire.assert_called_once_with(deadline=deadline, skip=[ENDPOINTS[0]])


def test_send_confirms_and_records_release(fake_web3, web3_factory, ledger):
    dispatcher = make_dispatcher(web3_factory, ledger=ledger)
    receipt = dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, amount_wei=10**16)

    assert receipt.state == TransactionState.CONFIRMED
    assert receipt.tx_hash == SUBMITTED_HASH
    assert receipt.attempts == 1
    assert receipt.confirmations == 3
    entry = ledger.get(tx_hash=SUBMITTED_HASH)
    assert entry.type == "release"
    assert entry.status == "confirmed"
    assert entry.amount == "0.01"
    assert entry.from_address == ROOT_ADDRESS
    assert [change.status for change in entry.status_history] == ["pending", "confirmed"]


def test_send_without_wait_returns_pending(web3_factory, ledger):
    dispatcher = make_dispatcher(web3_factory, ledger=ledger)
    receipt = dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, amount_wei=10**16, wait=False)
    assert receipt.state == TransactionState.PENDING
    assert receipt.is_pending
    assert ledger.get(tx_hash=SUBMITTED_HASH).status == "pending"


def test_insufficient_funds_is_not_retried(fake_web3, web3_factory):
    fake_web3.eth.send_raw_transaction.side_effect = ValueError("insufficient funds for gas * price + value")
    dispatcher = make_dispatcher(web3_factory)
    with pytest.raises(TransactionRejected) as exc_info:
        dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, amount_wei=10**16)
    assert exc_info.value.attempts == 1
    assert fake_web3.eth.send_raw_transaction.call_count == 1


def test_transient_error_retries_on_fresh_provider():
    flaky, healthy = make_web3(), make_web3()
    flaky.eth.send_raw_transaction.side_effect = ConnectionError("connection refused")
    factory = MagicMock(side_effect=lambda endpoint, timeout: flaky if endpoint == ENDPOINTS[0] else healthy)
    dispatcher = make_dispatcher(factory)

    receipt = dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, amount_wei=10**16)
    assert receipt.state == TransactionState.CONFIRMED
    assert receipt.attempts == 2
    assert healthy.eth.send_raw_transaction.call_count == 1


def test_retry_budget_exhausted_raises_transaction_failed(fake_web3, web3_factory):
    fake_web3.eth.send_raw_transaction.side_effect = ConnectionError("timed out")
    dispatcher = make_dispatcher(web3_factory, attempts=3)
    with pytest.raises(TransactionFailed) as exc_info:
        dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, amount_wei=10**16)
    assert exc_info.value.attempts == 3


def test_already_known_is_treated_as_submitted(fake_web3, web3_factory):
    fake_web3.eth.send_raw_transaction.side_effect = ValueError("already known")
    dispatcher = make_dispatcher(web3_factory)
    receipt = dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, amount_wei=10**16, wait=False)
    assert receipt.attempts == 1
    assert receipt.tx_hash.startswith("0x")
    assert len(receipt.tx_hash) == 66
    assert receipt.tx_hash != SUBMITTED_HASH


def test_pending_transfer_is_not_sent_twice(fake_web3, web3_factory, ledger):
    ledger.append({"txHash": "0xfeed", "from": ROOT_ADDRESS, "to": MERCHANT_ADDRESS, "type": "release"})
    dispatcher = make_dispatcher(web3_factory, ledger=ledger)
    receipt = dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, amount_wei=10**16)
    assert receipt.state == TransactionState.ALREADY_PENDING
    assert receipt.tx_hash == "0xfeed"
    fake_web3.eth.send_raw_transaction.assert_not_called()


def test_sweep_sends_balance_minus_fee(fake_web3, web3_factory):
    fake_web3.balances[ROOT_ADDRESS.lower()] = 10**18
    dispatcher = make_dispatcher(web3_factory)
    receipt = dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, sweep=True, wait=False)
    assert receipt.value_wei == 10**18 - 2_400_000_000 * 21000


def test_sweep_of_dust_raises_insufficient_funds(fake_web3, web3_factory):
    fake_web3.balances[ROOT_ADDRESS.lower()] = 1000
    dispatcher = make_dispatcher(web3_factory)
    with pytest.raises(InsufficientFunds):
        dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, sweep=True)
    fake_web3.eth.send_raw_transaction.assert_not_called()


def test_invalid_transfers_are_rejected(web3_factory):
    dispatcher = make_dispatcher(web3_factory)
    with pytest.raises(TransactionRejected):
        dispatcher.send(ROOT_PRIVATE_KEY, "not-an-address", amount_wei=1)
    with pytest.raises(TransactionRejected):
        dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS, amount_wei=0)
    with pytest.raises(ValueError):
        dispatcher.send(ROOT_PRIVATE_KEY, MERCHANT_ADDRESS)


def test_confirm_reports_failed_receipt(fake_web3, web3_factory, ledger):
    ledger.append({"txHash": "0xdead", "type": "release"})
    fake_web3.eth.get_transaction_receipt.return_value = {"status": 0, "blockNumber": 999, "gasUsed": 21000}
    dispatcher = make_dispatcher(web3_factory, ledger=ledger)
    receipt = dispatcher.confirm("0xdead", max_attempts=1)
    assert receipt.state == TransactionState.FAILED
    assert ledger.get(tx_hash="0xdead").status == "failed"


def test_confirm_not_found_after_polling(fake_web3, web3_factory):
    fake_web3.eth.get_transaction_receipt.side_effect = TransactionNotFound("missing")
    fake_web3.eth.get_transaction.side_effect = TransactionNotFound("missing")
    sleeps = []
    dispatcher = make_dispatcher(web3_factory)
    dispatcher.sleep = sleeps.append

    receipt = dispatcher.confirm("0xabc", max_attempts=3)
    assert receipt.state == TransactionState.NOT_FOUND
    assert receipt.attempts == 3
    assert sleeps == [2.0, 3.0]


def test_confirm_reports_pending_when_known_or_ambiguous(fake_web3, web3_factory, ledger):
    fake_web3.eth.get_transaction_receipt.side_effect = TransactionNotFound("missing")
    fake_web3.eth.get_transaction.side_effect = TransactionNotFound("missing")
    ledger.append({"txHash": "0xabc", "type": "release"})
    dispatcher = make_dispatcher(web3_factory, ledger=ledger)
    assert dispatcher.confirm("0xabc", max_attempts=1).state == TransactionState.PENDING

    fake_web3.eth.get_transaction.side_effect = ConnectionError("timeout")
    assert dispatcher.confirm("0xother", max_attempts=1).state == TransactionState.PENDING


def test_wait_for_receipt_polls_at_fixed_interval(fake_web3, web3_factory):
    fake_web3.eth.get_transaction_receipt.side_effect = [TransactionNotFound("missing"), {"status": 1, "blockNumber": 999}]
    sleeps = []
    dispatcher = make_dispatcher(web3_factory)
    dispatcher.sleep = sleeps.append

    receipt = dispatcher.wait_for_receipt("0xabc", timeout=30, poll_interval=3)
    assert receipt.succeeded
    assert sleeps == [3]
