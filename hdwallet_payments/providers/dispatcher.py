"""
Transaction dispatcher: nonce and gas resolution, signing, submission with
classified retries, and receipt confirmation.

All transfers go through ``resolve_nonce`` and ``resolve_gas_price``:

* nonce = max(pending count, latest count), so a stale local view never reuses a nonce
* gas price = max(network price, floor) * 1.2, so near-zero testnet prices still clear
"""

import logging
import time
from collections.abc import Callable
from typing import Any, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from ..exceptions import (
    InsufficientFunds,
    NoProviderAvailable,
    TransactionError,
    TransactionFailed,
    TransactionRejected,
)
from ..logging_config import log_blockchain_event
from ..models import EntryType, LedgerStatus, Receipt, TransactionState
from ..storage.ledger import LedgerStore
from ..utils import Deadline, RetryPolicy, is_provider_error, is_terminal_error, redact_message
from .pool import ProviderConnection, ProviderPool

logger = logging.getLogger(__name__)

GWEI = 10**9
DEFAULT_GAS_LIMIT = 21000
DEFAULT_MIN_GAS_PRICE_WEI = 1 * GWEI
FALLBACK_GAS_PRICE_WEI = 1_500_000_000
GAS_PRICE_MULTIPLIER = (12, 10)

_ALREADY_SUBMITTED_MARKERS = ("already known", "known transaction")


class TransactionDispatcher:
    """Sends and confirms single transfers on top of a ``ProviderPool``."""

    def __init__(
        self,
        pool: ProviderPool,
        ledger: Optional[LedgerStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        min_gas_price_wei: int = DEFAULT_MIN_GAS_PRICE_WEI,
        send_timeout: float = 180.0,
        confirm_attempts: int = 10,
        confirm_initial_delay: float = 2.0,
        confirm_backoff: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.pool = pool
        self.ledger = ledger
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=5, initial_delay=2.0, backoff_factor=2.0, max_delay=10.0, sleep=sleep
        )
        self.gas_limit = gas_limit
        self.min_gas_price_wei = min_gas_price_wei
        self.send_timeout = send_timeout
        self.confirm_attempts = confirm_attempts
        self.confirm_initial_delay = confirm_initial_delay
        self.confirm_backoff = confirm_backoff
        self.sleep = sleep

    def _fresh_connection(self, failed: Optional[ProviderConnection], deadline: Optional[Deadline] = None):
        skip = [failed.endpoint] if failed is not None else []
        try:
            return self.pool.acquire(deadline=deadline, skip=skip)
        except NoProviderAvailable:
            logger.warning("No fresh provider available; keeping current connection")
            return failed

    @staticmethod
    def _chain_nonce(connection: ProviderConnection, address: str) -> int:
        pending = connection.w3.eth.get_transaction_count(address, "pending")
        latest = connection.w3.eth.get_transaction_count(address, "latest")
        nonce = max(pending, latest)
        logger.debug("Nonce for %s on %s: pending=%d latest=%d using=%d", address, connection.label, pending, latest, nonce)
        return nonce

    def resolve_nonce(self, connection: ProviderConnection, address: str, deadline: Optional[Deadline] = None) -> int:
        """Next nonce for ``address``: the larger of the pending and latest transaction counts."""
        try:
            return self._chain_nonce(connection, address)
        except Exception as e:
            logger.warning("Nonce lookup failed on %s: %s", connection.label, redact_message(str(e)))
            fresh = self.pool.acquire(deadline=deadline, skip=[connection.endpoint])
            return self._chain_nonce(fresh, address)

    def resolve_gas_price(self, connection: ProviderConnection, deadline: Optional[Deadline] = None) -> int:
        """Gas price in wei: max(network price, floor) scaled by 1.2."""
        try:
            network_price = int(connection.w3.eth.gas_price)
        except Exception as e:
            logger.warning("Gas price lookup failed on %s: %s", connection.label, redact_message(str(e)))
            try:
                network_price = int(self.pool.acquire(deadline=deadline, skip=[connection.endpoint]).w3.eth.gas_price)
            except Exception as fallback_error:
                logger.warning(
                    "Gas price unavailable from fresh provider, using %d gwei fallback: %s",
                    FALLBACK_GAS_PRICE_WEI / GWEI,
                    redact_message(str(fallback_error)),
                )
                network_price = FALLBACK_GAS_PRICE_WEI
        numerator, denominator = GAS_PRICE_MULTIPLIER
        return max(network_price, self.min_gas_price_wei) * numerator // denominator

    def send(
        self,
        from_key: str,
        to: str,
        amount_wei: Optional[int] = None,
        sweep: bool = False,
        wait: bool = True,
        deadline: Optional[Deadline] = None,
        ledger_fields: Optional[dict[str, Any]] = None,
    ) -> Receipt:
        """
        Sign and submit a transfer of ``amount_wei`` (or the whole balance minus fees
        when ``sweep`` is set) from the key's address to ``to``.

        Returns an ``ALREADY_PENDING`` receipt without sending when the ledger holds an
        unconfirmed transfer for the same (from, to) pair.
        """
        if amount_wei is None and not sweep:
            raise ValueError("Either amount_wei or sweep=True is required")
        if amount_wei is not None and amount_wei <= 0:
            raise TransactionRejected("Transfer amount must be positive", attempts=0)
        try:
            to_address = Web3.to_checksum_address(to)
        except ValueError as e:
            raise TransactionRejected(f"Invalid destination address: {to}", attempts=0) from e
        from_address = Account.from_key(from_key).address

        if self.ledger is not None:
            pending = self.ledger.find_pending(from_address, to_address)
            if pending is not None:
                logger.warning(
                    "Transfer %s -> %s already pending as %s; not sending again",
                    from_address,
                    to_address,
                    pending.tx_hash or pending.tx_id,
                )
                return Receipt(
                    tx_hash=pending.tx_hash,
                    state=TransactionState.ALREADY_PENDING,
                    from_address=from_address,
                    to_address=to_address,
                    attempts=0,
                )

        deadline = deadline or Deadline(self.send_timeout)
        state: dict[str, Any] = {"connection": self.pool.acquire(deadline=deadline), "attempts": 0, "value": None}

        def submit(attempt: int) -> str:
            state["attempts"] = attempt
            connection = state["connection"]
            w3 = connection.w3
            nonce = self.resolve_nonce(connection, from_address, deadline)
            gas_price = self.resolve_gas_price(connection, deadline)
            fee = gas_price * self.gas_limit
            value = amount_wei
            if sweep:
                balance = int(w3.eth.get_balance(from_address))
                value = balance - fee
                if value <= 0:
                    raise InsufficientFunds(
                        f"Balance of {from_address} does not cover the network fee",
                        attempts=attempt,
                        address=from_address,
                        balance_wei=balance,
                        required_wei=fee,
                    )
            state["value"] = value
            transaction = {
                "to": to_address,
                "value": value,
                "gas": self.gas_limit,
                "gasPrice": gas_price,
                "nonce": nonce,
                "chainId": connection.chain_id,
            }
            signed = Account.sign_transaction(transaction, from_key)
            local_hash = Web3.to_hex(signed.hash)
            log_blockchain_event(
                "tx_submit", attempt=attempt, tx=local_hash, nonce=nonce, gas_price=gas_price, endpoint=connection.label
            )
            try:
                return Web3.to_hex(w3.eth.send_raw_transaction(signed.raw_transaction))
            except Exception as e:
                if any(marker in str(e).lower() for marker in _ALREADY_SUBMITTED_MARKERS):
                    logger.info("Transaction %s already in the mempool; treating as submitted", local_hash)
                    return local_hash
                raise

        def on_retry(attempt: int, error: BaseException) -> None:
            if is_provider_error(error):
                state["connection"] = self._fresh_connection(state["connection"], deadline)

        try:
            tx_hash = self.retry_policy.run(
                submit, deadline=deadline, on_retry=on_retry, description=f"transfer {from_address} -> {to_address}"
            )
        except TransactionError:
            raise
        except Exception as e:
            message = redact_message(str(e))
            if is_terminal_error(e):
                raise TransactionRejected(
                    f"Transfer rejected by the network: {message}", attempts=state["attempts"], provider_error=message
                ) from e
            raise TransactionFailed(
                f"Transfer failed after {state['attempts']} attempt(s): {message}",
                attempts=state["attempts"],
                provider_error=message,
            ) from e

        value = state["value"]
        logger.info("Submitted transfer %s (%s -> %s, %d wei)", tx_hash, from_address, to_address, value)
        if self.ledger is not None:
            self.ledger.append(
                {
                    "txHash": tx_hash,
                    "from": from_address,
                    "to": to_address,
                    "amount": str(Web3.from_wei(value, "ether")),
                    "cryptoType": "ETH",
                    "status": LedgerStatus.PENDING.value,
                    "type": EntryType.RELEASE.value,
                    **(ledger_fields or {}),
                }
            )

        if not wait:
            return Receipt(
                tx_hash=tx_hash,
                state=TransactionState.PENDING,
                from_address=from_address,
                to_address=to_address,
                value_wei=value,
                attempts=state["attempts"],
            )
        receipt = self.confirm(tx_hash, deadline=deadline, connection=state["connection"])
        receipt.value_wei = value
        receipt.attempts = state["attempts"]
        return receipt

    def confirm(
        self,
        tx_hash: str,
        deadline: Optional[Deadline] = None,
        max_attempts: Optional[int] = None,
        connection: Optional[ProviderConnection] = None,
        initial_delay: Optional[float] = None,
        backoff: Optional[float] = None,
    ) -> Receipt:
        """
        Poll for a mined receipt with growing waits (2s, 3s, 4.5s, ...).

        Running out of attempts or time yields ``PENDING`` when the transaction is
        known to the node or the ledger, ``NOT_FOUND`` otherwise; neither is an error.
        """
        max_attempts = max_attempts or self.confirm_attempts
        initial_delay = self.confirm_initial_delay if initial_delay is None else initial_delay
        backoff = self.confirm_backoff if backoff is None else backoff
        connection = connection or self.pool.acquire(deadline=deadline)
        attempt = 0
        for attempt in range(1, max_attempts + 1):
            try:
                raw = connection.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                raw = None
            except Exception as e:
                logger.warning("Receipt lookup for %s failed: %s", tx_hash, redact_message(str(e)))
                if is_provider_error(e):
                    connection = self._fresh_connection(connection, deadline)
                raw = None

            if raw is not None:
                receipt = self._build_receipt(connection, tx_hash, raw, attempt)
                self._record_outcome(receipt)
                return receipt

            if attempt == max_attempts:
                break
            delay = initial_delay * (backoff ** (attempt - 1))
            if deadline is not None and deadline.remaining() < delay:
                logger.info("Confirmation deadline reached for %s after %d poll(s)", tx_hash, attempt)
                break
            self.sleep(delay)

        state = TransactionState.PENDING if self._is_known(connection, tx_hash) else TransactionState.NOT_FOUND
        logger.info("Transaction %s not mined yet (%s)", tx_hash, state.value)
        return Receipt(tx_hash=tx_hash, state=state, attempts=attempt)

    def wait_for_receipt(self, tx_hash: str, timeout: float = 120.0, poll_interval: float = 3.0) -> Receipt:
        """Fixed-interval polling bounded by ``timeout`` seconds."""
        return self.confirm(
            tx_hash,
            deadline=Deadline(timeout),
            max_attempts=max(1, int(timeout // poll_interval) + 1),
            initial_delay=poll_interval,
            backoff=1.0,
        )

    def get_status(self, tx_hash: str) -> Receipt:
        """Single receipt lookup without waiting."""
        return self.confirm(tx_hash, max_attempts=1)

    def _is_known(self, connection: ProviderConnection, tx_hash: str) -> bool:
        if self.ledger is not None and self.ledger.get(tx_hash=tx_hash) is not None:
            return True
        try:
            return connection.w3.eth.get_transaction(tx_hash) is not None
        except TransactionNotFound:
            return False
        except Exception as e:
            # Cannot tell; an unknown answer must not be reported as "not found"
            logger.warning("Transaction lookup for %s failed: %s", tx_hash, redact_message(str(e)))
            return True

    def _build_receipt(self, connection: ProviderConnection, tx_hash: str, raw: Any, attempt: int) -> Receipt:
        block_number = raw.get("blockNumber")
        confirmations = None
        if block_number is not None:
            try:
                confirmations = max(0, int(connection.w3.eth.block_number) - int(block_number) + 1)
            except Exception as e:
                logger.debug("Could not compute confirmations for %s: %s", tx_hash, redact_message(str(e)))
        state = TransactionState.CONFIRMED if raw.get("status") == 1 else TransactionState.FAILED
        receipt = Receipt(
            tx_hash=tx_hash,
            state=state,
            block_number=block_number,
            gas_used=raw.get("gasUsed"),
            from_address=raw.get("from"),
            to_address=raw.get("to"),
            confirmations=confirmations,
            attempts=attempt,
        )
        log_blockchain_event(
            "tx_receipt", tx=tx_hash, state=state.value, block=block_number, confirmations=confirmations
        )
        return receipt

    def _record_outcome(self, receipt: Receipt) -> None:
        if self.ledger is None or receipt.tx_hash is None:
            return
        status = LedgerStatus.CONFIRMED if receipt.succeeded else LedgerStatus.FAILED
        self.ledger.update_status(
            receipt.tx_hash,
            status,
            blockNumber=receipt.block_number,
            gasUsed=receipt.gas_used,
            confirmations=receipt.confirmations,
        )


