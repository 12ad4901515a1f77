"""
On-chain balance reads.

Single reads are retried with a short backoff. Aggregations fan out across a
thread pool; an address whose read fails or exceeds its time budget counts as
zero instead of failing the whole aggregate.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from web3 import Web3

from ..utils import Deadline, RetryPolicy, TTLCache, redact_message
from .pool import ProviderConnection, ProviderPool

logger = logging.getLogger(__name__)


@dataclass
class BalanceReport:
    balances_wei: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def total_wei(self) -> int:
        return sum(self.balances_wei.values())

    @property
    def total_eth(self) -> Decimal:
        return Web3.from_wei(self.total_wei, "ether")

    def to_dict(self) -> dict:
        return {
            "totalBalance": str(self.total_eth),
            "totalBalanceWei": str(self.total_wei),
            "addresses": [
                {
                    "address": address,
                    "balance": str(Web3.from_wei(wei, "ether")),
                    "balanceWei": str(wei),
                    "error": self.errors.get(address),
                }
                for address, wei in self.balances_wei.items()
            ],
            "failedCount": len(self.errors),
        }


class BalanceReader:
    """Reads balances through the provider pool with a short-lived per-address cache."""

    def __init__(
        self,
        pool: ProviderPool,
        cache_ttl: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        per_call_timeout: float = 10.0,
        max_workers: int = 8,
    ):
        self.pool = pool
        self.cache: TTLCache[int] = TTLCache(cache_ttl)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=3, initial_delay=0.5, backoff_factor=2.0, max_delay=2.0, classifier=lambda exc: True
        )
        self.per_call_timeout = per_call_timeout
        self.max_workers = max_workers

    def get_balance(
        self, address: str, connection: Optional[ProviderConnection] = None, use_cache: bool = True
    ) -> int:
        """Balance in wei; raises the last error once the retry budget is spent."""
        key = address.lower()
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        balance, _ = self.read_balance(address, connection)
        return balance

    def read_balance(
        self, address: str, connection: Optional[ProviderConnection] = None, deadline: Optional[Deadline] = None
    ) -> tuple[int, ProviderConnection]:
        """
        Uncached read that also returns the connection which served it.

        ``connection`` is used for the first attempt; the pool is only consulted
        when none is given or after a failed attempt. Scans pass the returned
        connection back in so consecutive reads share one provider.
        """
        checksum = Web3.to_checksum_address(address)
        holder = {"connection": connection}

        def read(attempt: int) -> int:
            if holder["connection"] is None or attempt > 1:
                holder["connection"] = self.pool.acquire(deadline=deadline)
            return int(holder["connection"].w3.eth.get_balance(checksum))

        balance = self.retry_policy.run(read, deadline=deadline, description=f"balance read for {checksum}")
        self.cache.set(balance, address.lower())
        return balance, holder["connection"]

    def get_balance_or_zero(
        self, address: str, connection: Optional[ProviderConnection] = None, use_cache: bool = True
    ) -> tuple[int, Optional[str]]:
        try:
            return self.get_balance(address, connection=connection, use_cache=use_cache), None
        except Exception as e:
            message = redact_message(str(e))
            logger.warning("Balance read failed for %s, assuming zero: %s", address, message)
            return 0, message

    def get_balances(
        self, addresses: Iterable[str], deadline: Optional[Deadline] = None, use_cache: bool = True
    ) -> BalanceReport:
        """Parallel balance reads, degrading failed or slow addresses to zero."""
        addresses = list(dict.fromkeys(addresses))
        report = BalanceReport()
        if not addresses:
            return report

        waves = math.ceil(len(addresses) / self.max_workers)
        budget = self.per_call_timeout * waves
        if deadline is not None:
            budget = min(budget, deadline.remaining())

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="balance")
        try:
            futures = {
                executor.submit(self.get_balance_or_zero, address, None, use_cache): address for address in addresses
            }
            done, not_done = wait(futures, timeout=budget)
            for future, address in futures.items():
                if future in done:
                    balance, error = future.result()
                    report.balances_wei[address] = balance
                    if error:
                        report.errors[address] = error
                else:
                    report.balances_wei[address] = 0
                    report.errors[address] = "timed out"
            if not_done:
                logger.warning("%d balance read(s) timed out; counted as zero", len(not_done))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return report

    def invalidate(self, address: Optional[str] = None) -> None:
        if address is None:
            self.cache.clear()
        else:
            self.cache.invalidate(address.lower())
