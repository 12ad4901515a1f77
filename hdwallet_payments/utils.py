"""
Utility functions for the HD Wallet Payments gateway.

This module contains the shared retry policy and error classifiers, deadline and
TTL cache helpers, and formatting helpers for ids, timestamps and amounts.
"""

import logging
import random
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from functools import wraps
from typing import Any, Generic, Optional, TypeVar, Union

import requests
from web3.exceptions import Web3Exception

from .exceptions import NoProviderAvailable, ProviderError, TransactionRejected, ValidationError
from .logging_config import SecretRedactor

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings that mark an RPC error as worth another attempt
TRANSIENT_ERROR_MARKERS = (
    "connection error",
    "connection reset",
    "connection refused",
    "connection aborted",
    "timeout",
    "timed out",
    "nonce too low",
    "known transaction",
    "already known",
    "replacement transaction underpriced",
    "invalid json response",
    "invalid response",
    "not connected",
    "unavailable",
    "cannot fetch",
    "bad gateway",
    "too many requests",
    "502",
    "503",
    "504",
)

# Subset of transient errors that mean the endpoint itself is unhealthy
PROVIDER_ERROR_MARKERS = (
    "connection error",
    "connection reset",
    "connection refused",
    "connection aborted",
    "timeout",
    "timed out",
    "invalid json response",
    "invalid response",
    "not connected",
    "unavailable",
    "cannot fetch",
    "bad gateway",
    "502",
    "503",
    "504",
)

# Deterministic rejections; checked before anything else
TERMINAL_ERROR_MARKERS = (
    "insufficient funds",
    "invalid signature",
    "invalid sender",
    "intrinsic gas too low",
    "exceeds block gas limit",
    "invalid address",
    "chain id mismatch",
)

_TRANSIENT_TYPES = (
    ConnectionError,
    TimeoutError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)

DEFAULT_RETRY_EXCEPTIONS = _TRANSIENT_TYPES + (Web3Exception,)


def redact_message(msg: str) -> str:
    """Consistent message redaction function for the entire package."""
    return SecretRedactor.redact(str(msg))


def _error_text(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}".lower()


def is_terminal_error(exc: BaseException) -> bool:
    """Return True for errors the network will keep rejecting no matter how often we retry."""
    if isinstance(exc, (TransactionRejected, ValidationError)):
        return True
    text = _error_text(exc)
    return any(marker in text for marker in TERMINAL_ERROR_MARKERS)


def is_provider_error(exc: BaseException) -> bool:
    """Return True when the error points at the endpoint rather than the transaction."""
    if is_terminal_error(exc):
        return False
    if isinstance(exc, (ProviderError, *_TRANSIENT_TYPES)):
        return True
    text = _error_text(exc)
    return any(marker in text for marker in PROVIDER_ERROR_MARKERS)


def is_transient_error(exc: BaseException) -> bool:
    """Classify an exception as transient (retry) or terminal (surface immediately)."""
    if is_terminal_error(exc):
        return False
    if isinstance(exc, (NoProviderAvailable, *_TRANSIENT_TYPES)) or is_provider_error(exc):
        return True
    text = _error_text(exc)
    return any(marker in text for marker in TRANSIENT_ERROR_MARKERS)


class Deadline:
    """Overall time budget for a bounded loop, independent of its attempt count."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._started = clock()

    def remaining(self) -> float:
        if self.seconds is None:
            return float("inf")
        return max(0.0, self.seconds - (self._clock() - self._started))

    def expired(self) -> bool:
        return self.remaining() <= 0

    def __repr__(self) -> str:
        return f"Deadline(seconds={self.seconds}, remaining={self.remaining():.2f})"


_DEFAULT_KEY = object()


class TTLCache(Generic[T]):
    """
    Thread-safe cache of values stamped with the time they were stored.

    Entries older than ``ttl`` seconds are treated as absent by ``get``. The cache
    is advisory: every value it holds must be re-derivable by its owner.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Any, tuple[T, float]] = {}
        self._lock = threading.Lock()

    def set(self, value: T, key: Any = _DEFAULT_KEY) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())

    def age(self, key: Any = _DEFAULT_KEY) -> Optional[float]:
        with self._lock:
            entry = self._entries.get(key)
        return None if entry is None else self._clock() - entry[1]

    def is_fresh(self, key: Any = _DEFAULT_KEY) -> bool:
        age = self.age(key)
        return age is not None and age < self.ttl

    def get(self, key: Any = _DEFAULT_KEY) -> Optional[T]:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or self._clock() - entry[1] >= self.ttl:
            return None
        return entry[0]

    def invalidate(self, key: Any = _DEFAULT_KEY) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@dataclass
class RetryPolicy:
    """
    Exponential backoff schedule paired with an error classifier.

    ``run`` calls ``func(attempt)`` until it returns, the classifier rejects the
    error, the attempt budget is spent or the deadline cannot fit another wait.
    The last error is always re-raised unchanged.
    """

    max_attempts: int = 5
    initial_delay: float = 2.0
    backoff_factor: float = 2.0
    max_delay: float = 10.0
    jitter: bool = False
    classifier: Callable[[BaseException], bool] = is_transient_error
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be non-negative")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be at least 1")
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be at least initial_delay")

    def delay_for(self, attempt: int) -> float:
        """Wait before the attempt following ``attempt`` (1-based)."""
        delay = min(self.initial_delay * (self.backoff_factor ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.75 + random.random() * 0.5
        return delay

    def delays(self):
        for attempt in range(1, self.max_attempts):
            yield self.delay_for(attempt)

    def run(
        self,
        func: Callable[[int], T],
        deadline: Optional[Deadline] = None,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
        description: str = "operation",
    ) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(attempt)
            except Exception as e:
                redacted_msg = redact_message(str(e))
                if not self.classifier(e):
                    logger.error("%s failed with non-retryable error on attempt %d: %s", description, attempt, redacted_msg)
                    raise
                if attempt == self.max_attempts:
                    logger.error("%s failed after %d attempts: %s", description, attempt, redacted_msg)
                    raise
                delay = self.delay_for(attempt)
                if deadline is not None and deadline.remaining() < delay:
                    logger.error("%s deadline reached after %d attempts: %s", description, attempt, redacted_msg)
                    raise
                logger.warning(
                    "Retrying %s (attempt %d/%d, delay %.2fs): %s",
                    description,
                    attempt,
                    self.max_attempts,
                    delay,
                    redacted_msg,
                )
                if on_retry:
                    on_retry(attempt, e)
                self.sleep(delay)
        raise RuntimeError(f"{description} exhausted retries unexpectedly")


def retry(
    exceptions: Union[type[Exception], tuple[type[Exception], ...]] = DEFAULT_RETRY_EXCEPTIONS,
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    backoff_factor: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    retry_message: Optional[str] = None,
):
    """
    Decorator to retry a function on specified exceptions with exponential backoff.
    Sensitive data in exception messages is always redacted.
    """
    safe_exceptions = tuple(
        exc
        for exc in (exceptions if isinstance(exceptions, tuple) else (exceptions,))
        if not issubclass(exc, (KeyboardInterrupt, SystemExit, MemoryError, ValueError, TypeError))
    )
    if not safe_exceptions:
        raise ValueError("No retryable exceptions provided after excluding critical/logic errors")

    policy = RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        backoff_factor=backoff_factor,
        max_delay=max_delay,
        jitter=jitter,
        classifier=lambda exc: isinstance(exc, safe_exceptions),
    )

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return policy.run(lambda attempt: func(*args, **kwargs), description=retry_message or func.__name__)

        return wrapper

    return decorator


def generate_tx_id() -> str:
    """Local transaction id for ledger entries that have no on-chain hash yet."""
    return f"tx_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def utc_now() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def isoformat_z(dt: Optional[datetime] = None) -> str:
    """ISO 8601 with millisecond precision and a ``Z`` suffix."""
    dt = (dt or utc_now()).astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def backup_timestamp(dt: Optional[datetime] = None) -> str:
    """Timestamp safe for file names: ISO 8601 with colons replaced by dashes."""
    return isoformat_z(dt).replace(":", "-")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO 8601 strings (``Z`` or offset) and epoch milliseconds; None if invalid."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def to_decimal(value: Any, field_name: str = "amount") -> Decimal:
    """Convert str/int/float/Decimal to a finite Decimal or raise ValidationError."""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric", field=field_name, value=value)
    try:
        amount = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be numeric", field=field_name, value=value)
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite", field=field_name, value=value)
    return amount


def format_amount(value: Any, places: int = 6) -> str:
    """Fixed-point rendering with half-up rounding, e.g. ``format_amount("0.0099999") == "0.010000"``."""
    quantum = Decimal(1).scaleb(-places)
    return str(to_decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))
