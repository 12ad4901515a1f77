"""
JSON-RPC provider pool.

Endpoints are probed in priority order. A candidate is accepted only when it
answers a block-height probe and reports the expected chain id; wrong-network
endpoints are rejected outright. The last accepted connection is kept as a
degraded fallback for as long as it stays fresh.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from web3 import Web3

from ..config import Settings, endpoint_label
from ..exceptions import NoProviderAvailable, ProviderError
from ..logging_config import log_blockchain_event
from ..utils import Deadline, TTLCache, redact_message, utc_now

logger = logging.getLogger(__name__)

Web3Factory = Callable[[str, float], Any]


def default_web3_factory(endpoint: str, timeout: float) -> Web3:
    return Web3(Web3.HTTPProvider(endpoint, request_kwargs={"timeout": timeout}))


@dataclass
class ProviderConnection:
    """A verified connection handle."""

    w3: Any
    endpoint: str
    chain_id: int
    block_number: int
    acquired_at: datetime = field(default_factory=utc_now)
    degraded: bool = False

    @property
    def label(self) -> str:
        return endpoint_label(self.endpoint)


class ProviderPool:
    """Produces network-matched web3 connections from an ordered endpoint list."""

    def __init__(
        self,
        endpoints: Iterable[str],
        chain_id: int,
        timeout: float = 30.0,
        freshness: float = 3600.0,
        web3_factory: Optional[Web3Factory] = None,
        last_known_good: Optional[TTLCache] = None,
    ):
        self.endpoints: List[str] = list(endpoints)
        if not self.endpoints:
            raise ValueError("ProviderPool requires at least one endpoint")
        self.chain_id = chain_id
        self.timeout = timeout
        self.web3_factory = web3_factory or default_web3_factory
        self.last_known_good: TTLCache[ProviderConnection] = last_known_good or TTLCache(freshness)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ProviderPool":
        return cls(
            endpoints=settings.endpoints(),
            chain_id=settings.chain_id,
            timeout=settings.rpc_timeout,
            freshness=settings.provider_freshness,
            **kwargs,
        )

    def _probe(self, endpoint: str) -> ProviderConnection:
        label = endpoint_label(endpoint)
        try:
            w3 = self.web3_factory(endpoint, self.timeout)
            block_number = w3.eth.block_number
            chain_id = w3.eth.chain_id
        except Exception as e:
            raise ProviderError(
                f"Provider {label} failed liveness probe",
                provider=label,
                provider_error_message=redact_message(str(e)),
            ) from e
        if chain_id != self.chain_id:
            raise ProviderError(
                f"Provider {label} is on the wrong network (chainId {chain_id}, expected {self.chain_id})",
                provider=label,
                error_code="WRONG_NETWORK",
            )
        return ProviderConnection(w3=w3, endpoint=endpoint, chain_id=chain_id, block_number=block_number)

    def acquire(self, deadline: Optional[Deadline] = None, skip: Iterable[str] = ()) -> ProviderConnection:
        """
        Return the first healthy endpoint in priority order.

        Endpoints listed in ``skip`` (typically the one that just failed) are
        moved to the back of the queue rather than dropped.
        """
        skipped = set(skip)
        ordered = [e for e in self.endpoints if e not in skipped] + [e for e in self.endpoints if e in skipped]
        errors: dict[str, str] = {}
        tried: List[str] = []

        for endpoint in ordered:
            if deadline is not None and deadline.expired():
                logger.warning("Provider acquisition deadline reached after %d endpoint(s)", len(tried))
                break
            label = endpoint_label(endpoint)
            tried.append(label)
            try:
                connection = self._probe(endpoint)
            except ProviderError as e:
                errors[label] = e.message
                logger.warning("Provider %s rejected: %s", label, e.message)
                continue
            self.last_known_good.set(connection)
            log_blockchain_event("provider_connected", endpoint=label, block=connection.block_number)
            return connection

        fallback = self.last_known_good.get()
        if fallback is not None:
            try:
                fallback.block_number = fallback.w3.eth.block_number
            except Exception as e:
                errors[f"{fallback.label} (cached)"] = redact_message(str(e))
                self.last_known_good.invalidate()
            else:
                logger.warning(
                    "All providers failed; using cached provider %s (age %.0fs)",
                    fallback.label,
                    self.last_known_good.age() or 0,
                )
                log_blockchain_event("provider_degraded", level=logging.WARNING, endpoint=fallback.label)
                return ProviderConnection(
                    w3=fallback.w3,
                    endpoint=fallback.endpoint,
                    chain_id=fallback.chain_id,
                    block_number=fallback.block_number,
                    acquired_at=fallback.acquired_at,
                    degraded=True,
                )

        raise NoProviderAvailable(
            f"No JSON-RPC provider available for chain {self.chain_id}",
            endpoints_tried=tried,
            errors=errors,
        )

    def invalidate(self) -> None:
        """Forget the cached last-known-good connection."""
        self.last_known_good.invalidate()
