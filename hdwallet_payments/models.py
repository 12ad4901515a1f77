"""
Data models for the HD Wallet Payments gateway.

Defines payment addresses, ledger entries, receipts, backup records and the
integrity status reported for critical files. ``to_dict`` renders the on-disk and
API wire format (camelCase keys); ``from_dict`` accepts it back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from .exceptions import ValidationError
from .utils import generate_tx_id, isoformat_z, parse_timestamp, utc_now

logger = logging.getLogger(__name__)


class AddressStatus(Enum):
    """Lifecycle of an allocated payment address."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    WRONG = "wrong"
    EXPIRED = "expired"
    ABANDONED = "abandoned"


class LedgerStatus(Enum):
    """Status of a ledger entry."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    WRONG = "wrong"
    RELEASE = "release"


TERMINAL_LEDGER_STATUSES = {LedgerStatus.CONFIRMED.value, LedgerStatus.FAILED.value, LedgerStatus.WRONG.value}


class EntryType(Enum):
    PAYMENT = "payment"
    RELEASE = "release"


class BackupReason(Enum):
    """Why a backup file was captured. The value is embedded in the file name."""

    SCHEDULED = "scheduled"
    CORRUPTED = "corrupted"
    PRE_RESTORE = "pre-restore"
    UPLOADED = "uploaded"
    INITIAL = "initial"
    MANUAL = "manual"


class FileHealth(Enum):
    HEALTHY = "healthy"
    MISSING = "missing"
    EMPTY = "empty"
    CORRUPTED = "corrupted"


class TransactionState(Enum):
    """Outcome of sending or polling a transfer."""

    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"
    NOT_FOUND = "not_found"
    ALREADY_PENDING = "already_pending"


def _enum_value(enum_cls, value, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value}", field=field_name, value=value)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return isoformat_z(value) if value else None


_ADDRESS_KEYS = {
    "address",
    "index",
    "derivationIndex",
    "expectedAmount",
    "ethAmount",
    "cryptoType",
    "createdAt",
    "expiresAt",
    "status",
    "orderId",
    "fiatAmount",
    "fiatCurrency",
    "isExpired",
    "expiredAt",
    "expiredReason",
    "amount",
    "amountVerified",
    "isWrongPayment",
    "wrongReason",
}


@dataclass
class PaymentAddress:
    """An HD-derived address allocated to one order."""

    address: str
    derivation_index: int
    expected_amount: str
    crypto_type: str = "ETH"
    created_at: datetime = field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    status: AddressStatus = AddressStatus.PENDING
    order_id: Optional[str] = None
    fiat_amount: Optional[str] = None
    fiat_currency: Optional[str] = None
    is_expired: bool = False
    expired_at: Optional[datetime] = None
    expired_reason: Optional[str] = None
    received_amount: Optional[str] = None
    amount_verified: bool = False
    is_wrong_payment: bool = False
    wrong_reason: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.status = _enum_value(AddressStatus, self.status, "status")
        if not isinstance(self.derivation_index, int) or self.derivation_index < 0:
            raise ValidationError("Derivation index must be a non-negative integer", field="index", value=self.derivation_index)
        if self.expires_at is None:
            self.expires_at = self.created_at + timedelta(minutes=30)

    def is_past_expiry(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) > self.expires_at

    def is_live(self, now: Optional[datetime] = None) -> bool:
        """Live addresses may still receive the payment they were allocated for."""
        if self.is_expired or self.status in (AddressStatus.WRONG, AddressStatus.EXPIRED, AddressStatus.ABANDONED):
            return False
        return not (self.status == AddressStatus.PENDING and self.is_past_expiry(now))

    def effective_status(self, now: Optional[datetime] = None, abandon_after: timedelta = timedelta(hours=24)) -> AddressStatus:
        """Status as an operator should see it, accounting for elapsed time."""
        now = now or utc_now()
        if self.status != AddressStatus.PENDING:
            return self.status
        if self.is_expired:
            return AddressStatus.EXPIRED
        if now - self.created_at > abandon_after:
            return AddressStatus.ABANDONED
        if self.is_past_expiry(now):
            return AddressStatus.EXPIRED
        return AddressStatus.PENDING

    def mark_confirmed(self, amount: str) -> None:
        self.status = AddressStatus.CONFIRMED
        self.received_amount = amount
        self.amount_verified = True
        logger.info("Payment address %s confirmed for %s %s", self.address, amount, self.crypto_type)

    def mark_wrong(self, amount: str, reason: str, now: Optional[datetime] = None) -> None:
        """A wrong payment permanently retires the address."""
        self.status = AddressStatus.WRONG
        self.received_amount = amount
        self.amount_verified = False
        self.is_wrong_payment = True
        self.wrong_reason = reason
        self.mark_expired("Address expired due to wrong payment detection", now=now, keep_status=True)
        logger.warning("Payment address %s retired after wrong payment of %s", self.address, amount)

    def mark_expired(self, reason: str, now: Optional[datetime] = None, keep_status: bool = False) -> None:
        self.is_expired = True
        self.expired_at = now or utc_now()
        self.expired_reason = reason
        if not keep_status and self.status == AddressStatus.PENDING:
            self.status = AddressStatus.EXPIRED

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "address": self.address,
                "index": self.derivation_index,
                "expectedAmount": self.expected_amount,
                "cryptoType": self.crypto_type,
                "createdAt": _iso(self.created_at),
                "expiresAt": _iso(self.expires_at),
                "status": self.status.value,
                "orderId": self.order_id,
                "fiatAmount": self.fiat_amount,
                "fiatCurrency": self.fiat_currency,
                "isExpired": self.is_expired,
                "expiredAt": _iso(self.expired_at),
                "expiredReason": self.expired_reason,
                "amount": self.received_amount,
                "amountVerified": self.amount_verified,
                "isWrongPayment": self.is_wrong_payment,
                "wrongReason": self.wrong_reason,
            }
        )
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any], address: Optional[str] = None) -> "PaymentAddress":
        if not isinstance(data, dict):
            raise ValidationError("Payment address record must be an object", field="address", value=address)
        index = data.get("index", data.get("derivationIndex"))
        created_at = parse_timestamp(data.get("createdAt")) or utc_now()
        return cls(
            address=data.get("address") or address or "",
            derivation_index=int(index) if index is not None else 0,
            expected_amount=str(data.get("expectedAmount", data.get("ethAmount", "0"))),
            crypto_type=data.get("cryptoType", "ETH"),
            created_at=created_at,
            expires_at=parse_timestamp(data.get("expiresAt")),
            status=data.get("status", AddressStatus.PENDING.value),
            order_id=data.get("orderId"),
            fiat_amount=data.get("fiatAmount"),
            fiat_currency=data.get("fiatCurrency"),
            is_expired=bool(data.get("isExpired", False)),
            expired_at=parse_timestamp(data.get("expiredAt")),
            expired_reason=data.get("expiredReason"),
            received_amount=data.get("amount"),
            amount_verified=bool(data.get("amountVerified", False)),
            is_wrong_payment=bool(data.get("isWrongPayment", False)),
            wrong_reason=data.get("wrongReason"),
            extra={k: v for k, v in data.items() if k not in _ADDRESS_KEYS},
        )


@dataclass
class StatusChange:
    status: str
    timestamp: str = field(default_factory=isoformat_z)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "timestamp": self.timestamp}


@dataclass
class LedgerEntry:
    """One payment or release transaction and its status history."""

    tx_id: Optional[str] = field(default_factory=generate_tx_id)
    tx_hash: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    amount: str = "0"
    crypto_type: str = "ETH"
    status: str = LedgerStatus.PENDING.value
    type: str = EntryType.PAYMENT.value
    timestamp: str = field(default_factory=isoformat_z)
    status_history: list[StatusChange] = field(default_factory=list)
    gas_used: Optional[int] = None
    block_number: Optional[int] = None
    address: Optional[str] = None
    confirmations: Optional[int] = None
    last_updated: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    _FIELD_KEYS = {
        "tx_id": "txId",
        "tx_hash": "txHash",
        "from_address": "from",
        "to_address": "to",
        "amount": "amount",
        "crypto_type": "cryptoType",
        "status": "status",
        "type": "type",
        "timestamp": "timestamp",
        "gas_used": "gasUsed",
        "block_number": "blockNumber",
        "address": "address",
        "confirmations": "confirmations",
        "last_updated": "lastUpdated",
    }

    def __post_init__(self) -> None:
        self.status = _enum_value(LedgerStatus, self.status, "status").value
        self.type = _enum_value(EntryType, self.type, "type").value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LEDGER_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        for attr, key in self._FIELD_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        data["statusHistory"] = [change.to_dict() for change in self.status_history]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LedgerEntry":
        if not isinstance(data, dict):
            raise ValidationError("Ledger entry must be an object", field="entry", value=type(data).__name__)
        kwargs: dict[str, Any] = {attr: data[key] for attr, key in cls._FIELD_KEYS.items() if key in data}
        # Entries on disk keep the identity they were written with
        kwargs["tx_id"] = data.get("txId")
        if "amount" in kwargs:
            kwargs["amount"] = str(kwargs["amount"])
        history = data.get("statusHistory") or []
        kwargs["status_history"] = [
            StatusChange(status=h.get("status", ""), timestamp=h.get("timestamp", "")) for h in history if isinstance(h, dict)
        ]
        kwargs["extra"] = {k: v for k, v in data.items() if k not in cls._FIELD_KEYS.values() and k != "statusHistory"}
        return cls(**kwargs)


@dataclass
class Receipt:
    """Result of a send or a confirmation poll."""

    tx_hash: Optional[str]
    state: TransactionState
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    value_wei: Optional[int] = None
    confirmations: Optional[int] = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state == TransactionState.CONFIRMED

    @property
    def is_pending(self) -> bool:
        return self.state in (TransactionState.PENDING, TransactionState.ALREADY_PENDING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "state": self.state.value,
            "blockNumber": self.block_number,
            "gasUsed": self.gas_used,
            "from": self.from_address,
            "to": self.to_address,
            "valueWei": str(self.value_wei) if self.value_wei is not None else None,
            "confirmations": self.confirmations,
            "attempts": self.attempts,
        }


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid


@dataclass
class BackupRecord:
    """A backup file on disk, parsed from its name."""

    file_name: str
    path: str
    source_file: str
    reason: BackupReason
    created_at: datetime
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "fileName": self.file_name,
            "path": self.path,
            "sourceFile": self.source_file,
            "reason": self.reason.value,
            "createdAt": isoformat_z(self.created_at),
            "sizeBytes": self.size_bytes,
        }


@dataclass
class FileStatus:
    path: str
    health: FileHealth
    required: bool
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "health": self.health.value, "required": self.required, "error": self.error}


@dataclass
class DatabaseStatus:
    """Integrity status across every registered critical file."""

    files: dict[str, FileStatus] = field(default_factory=dict)
    issues: list[str] = field(default_factory=list)
    last_checked: datetime = field(default_factory=utc_now)

    @property
    def corrupted_files(self) -> list[str]:
        return [p for p, s in self.files.items() if s.health in (FileHealth.CORRUPTED, FileHealth.EMPTY)]

    @property
    def missing_files(self) -> list[str]:
        return [p for p, s in self.files.items() if s.health == FileHealth.MISSING]

    @property
    def is_healthy(self) -> bool:
        return not self.corrupted_files and not any(
            s.required for s in self.files.values() if s.health == FileHealth.MISSING
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "isHealthy": self.is_healthy,
            "corruptedFiles": self.corrupted_files,
            "missingFiles": self.missing_files,
            "issues": list(self.issues),
            "lastChecked": isoformat_z(self.last_checked),
            "files": {p: s.to_dict() for p, s in self.files.items()},
        }


@dataclass
class RestoreResult:
    success: bool
    file: Optional[str] = None
    backup_file: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {"success": self.success, "file": self.file, "backupFile": self.backup_file}
        if self.success:
            data["message"] = self.message
        else:
            data["error"] = self.error
        return data
