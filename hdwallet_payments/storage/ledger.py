"""
Ledger of payment and release transactions.

The ledger file is a JSON array of entries. Entries are never removed: an update
merges into the existing entry and appends to its ``statusHistory`` when the
status actually changes.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Union

from ..exceptions import ValidationError
from ..models import TERMINAL_LEDGER_STATUSES, EntryType, LedgerEntry, LedgerStatus
from ..utils import generate_tx_id, isoformat_z, parse_timestamp, to_decimal
from .base import JsonFile, JsonStore

logger = logging.getLogger(__name__)

# Fields that identify an entry and never change once written
_IMMUTABLE_FIELDS = ("txId", "timestamp", "statusHistory")


def _same(a: Any, b: Any) -> bool:
    return isinstance(a, str) and isinstance(b, str) and a.lower() == b.lower()


@dataclass(frozen=True)
class LedgerKey:
    """Identity of a ledger entry: tx hash, then tx id, then (address, timestamp)."""

    tx_hash: Optional[str] = None
    tx_id: Optional[str] = None
    address: Optional[str] = None
    timestamp: Optional[str] = None

    @classmethod
    def of(cls, data: Union[dict[str, Any], LedgerEntry]) -> "LedgerKey":
        if isinstance(data, LedgerEntry):
            data = data.to_dict()
        return cls(
            tx_hash=data.get("txHash"),
            tx_id=data.get("txId"),
            address=data.get("address"),
            timestamp=data.get("timestamp"),
        )

    def is_empty(self) -> bool:
        return not (self.tx_hash or self.tx_id or (self.address and self.timestamp))

    def find(self, entries: list[dict[str, Any]]) -> Optional[int]:
        """Position of the first entry matching this key, trying each identity rule in order."""
        if self.tx_hash:
            for position, entry in enumerate(entries):
                if _same(entry.get("txHash"), self.tx_hash):
                    return position
        if self.tx_id:
            for position, entry in enumerate(entries):
                if entry.get("txId") == self.tx_id:
                    return position
        if self.address and self.timestamp:
            for position, entry in enumerate(entries):
                if _same(entry.get("address"), self.address) and entry.get("timestamp") == self.timestamp:
                    return position
        return None


def _merge(existing: dict[str, Any], patch: dict[str, Any], now: str) -> dict[str, Any]:
    merged = dict(existing)
    history = list(existing.get("statusHistory") or [])
    current = existing.get("status")
    if not history and current:
        history.append({"status": current, "timestamp": existing.get("lastUpdated") or existing.get("timestamp") or now})

    new_status = patch.get("status")
    if new_status and new_status != current:
        if current in TERMINAL_LEDGER_STATUSES and new_status == LedgerStatus.PENDING.value:
            logger.warning(
                "Ignoring status regression %s -> %s for ledger entry %s",
                current,
                new_status,
                existing.get("txHash") or existing.get("txId"),
            )
            patch = {k: v for k, v in patch.items() if k != "status"}
        else:
            history.append({"status": new_status, "timestamp": now})

    for key, value in patch.items():
        if value is None or key in _IMMUTABLE_FIELDS:
            continue
        merged[key] = value
    if not merged.get("txId"):
        merged["txId"] = patch.get("txId") or generate_tx_id()
    merged["statusHistory"] = history
    merged["lastUpdated"] = now
    return merged


class LedgerStore(JsonStore):
    """Append/merge store over the merchant transaction ledger."""

    def __init__(self, file: JsonFile):
        super().__init__(file, "LedgerStore")

    def upsert(self, key: LedgerKey, patch: Union[dict[str, Any], LedgerEntry]) -> LedgerEntry:
        """Merge ``patch`` into the entry identified by ``key``, creating it if absent."""
        patch = patch.to_dict() if isinstance(patch, LedgerEntry) else dict(patch)
        # Validates status/type before touching the file
        LedgerEntry.from_dict({k: v for k, v in patch.items() if k != "statusHistory"})

        now = isoformat_z()
        with self.file.transaction() as entries:
            position = key.find(entries) if not key.is_empty() else None
            if position is None:
                entry = {k: v for k, v in patch.items() if v is not None}
                entry.setdefault("txId", generate_tx_id())
                entry.setdefault("timestamp", now)
                entry.setdefault("status", LedgerStatus.PENDING.value)
                entry.setdefault("type", EntryType.PAYMENT.value)
                if not entry.get("statusHistory"):
                    entry["statusHistory"] = [{"status": entry["status"], "timestamp": now}]
                entry["lastUpdated"] = now
                entries.append(entry)
                logger.info("Ledger entry created: %s (%s)", entry.get("txHash") or entry["txId"], entry["status"])
            else:
                entry = _merge(entries[position], patch, now)
                entries[position] = entry
                logger.info("Ledger entry updated: %s (%s)", entry.get("txHash") or entry["txId"], entry.get("status"))
        return LedgerEntry.from_dict(entry)

    def append(self, entry: Union[dict[str, Any], LedgerEntry]) -> LedgerEntry:
        """Record a new entry; an entry whose identity already exists is merged instead."""
        data = entry.to_dict() if isinstance(entry, LedgerEntry) else dict(entry)
        return self.upsert(LedgerKey.of(data), data)

    def update_status(self, tx_hash: str, status: Union[str, LedgerStatus], **fields: Any) -> Optional[LedgerEntry]:
        """Update an existing entry by hash; returns None when the hash is unknown."""
        if not tx_hash:
            raise ValidationError("tx_hash is required", field="tx_hash", value=tx_hash)
        if self.get(tx_hash=tx_hash) is None:
            logger.warning("No ledger entry found for transaction %s", tx_hash)
            return None
        patch = {"status": status.value if isinstance(status, LedgerStatus) else status, **fields}
        return self.upsert(LedgerKey(tx_hash=tx_hash), patch)

    def all(self) -> list[LedgerEntry]:
        entries = []
        for raw in self.file.read():
            try:
                entries.append(LedgerEntry.from_dict(raw))
            except ValidationError as e:
                logger.error("Error deserializing ledger entry %s: %s", raw.get("txHash") or raw.get("txId"), e)
        logger.debug("Retrieved %d ledger entries", len(entries))
        return entries

    def get(self, tx_hash: Optional[str] = None, tx_id: Optional[str] = None) -> Optional[LedgerEntry]:
        entries = self.file.read()
        position = LedgerKey(tx_hash=tx_hash, tx_id=tx_id).find(entries)
        return LedgerEntry.from_dict(entries[position]) if position is not None else None

    def find_pending(self, from_address: str, to_address: str) -> Optional[LedgerEntry]:
        """An unconfirmed transfer already submitted for this (from, to) pair, if any."""
        for entry in self.all():
            if (
                _same(entry.from_address, from_address)
                and _same(entry.to_address, to_address)
                and entry.status == LedgerStatus.PENDING.value
                and not entry.block_number
                and not entry.confirmations
            ):
                return entry
        return None

    def wrong_payments(self) -> list[LedgerEntry]:
        """Wrong payments, newest first."""
        wrong = [
            e for e in self.all() if e.type == EntryType.PAYMENT.value and e.status == LedgerStatus.WRONG.value
        ]
        wrong.sort(key=lambda e: parse_timestamp(e.timestamp) or parse_timestamp("1970-01-01T00:00:00Z"), reverse=True)
        return wrong

    def payment_totals(self) -> dict[str, Any]:
        verified = Decimal(0)
        wrong = Decimal(0)
        verified_count = wrong_count = 0
        for entry in self.all():
            if entry.type != EntryType.PAYMENT.value:
                continue
            try:
                amount = to_decimal(entry.amount)
            except ValidationError:
                continue
            if entry.status == LedgerStatus.CONFIRMED.value:
                verified += amount
                verified_count += 1
            elif entry.status == LedgerStatus.WRONG.value:
                wrong += amount
                wrong_count += 1
        return {
            "verifiedTotal": str(verified),
            "verifiedCount": verified_count,
            "wrongTotal": str(wrong),
            "wrongCount": wrong_count,
        }
