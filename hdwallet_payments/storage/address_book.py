"""
Address book and derivation index map stores.
"""

import logging
from collections.abc import Callable
from typing import Any, Optional

from ..exceptions import ValidationError
from ..models import PaymentAddress
from .base import JsonFile, JsonStore

logger = logging.getLogger(__name__)


def _find_key(mapping: dict[str, Any], address: str) -> Optional[str]:
    if address in mapping:
        return address
    lowered = address.lower()
    for key in mapping:
        if key.lower() == lowered:
            return key
    return None


class AddressBook(JsonStore):
    """
    Stored mnemonic plus every allocated payment address.

    On disk: ``{"mnemonic": <encrypted or plain phrase>, "activeAddresses": {<address>: {...}}}``.
    Lookups are case-insensitive; keys keep the checksum form they were written with.
    """

    def __init__(self, file: JsonFile):
        super().__init__(file, "AddressBook")

    def _record_count(self, data: Any) -> int:
        return len(data.get("activeAddresses", {}))

    def get_mnemonic(self) -> str:
        return self.file.read().get("mnemonic") or ""

    def set_mnemonic(self, mnemonic: str) -> None:
        if not isinstance(mnemonic, str) or not mnemonic.strip():
            raise ValidationError("Mnemonic must be a non-empty string", field="mnemonic")
        with self.file.transaction() as data:
            data["mnemonic"] = mnemonic
        logger.info("Stored wallet mnemonic in address book")

    def get(self, address: str) -> Optional[PaymentAddress]:
        active = self.file.read()["activeAddresses"]
        key = _find_key(active, address)
        if key is None:
            return None
        return PaymentAddress.from_dict(active[key], address=key)

    def save(self, payment_address: PaymentAddress) -> None:
        with self.file.transaction() as data:
            active = data["activeAddresses"]
            key = _find_key(active, payment_address.address) or payment_address.address
            active[key] = payment_address.to_dict()
        logger.debug("Saved payment address %s (index %d)", payment_address.address, payment_address.derivation_index)

    def update(self, address: str, mutate: Callable[[PaymentAddress], None]) -> Optional[PaymentAddress]:
        """Apply ``mutate`` to a stored address under the file lock."""
        with self.file.transaction() as data:
            active = data["activeAddresses"]
            key = _find_key(active, address)
            if key is None:
                return None
            payment_address = PaymentAddress.from_dict(active[key], address=key)
            mutate(payment_address)
            active[key] = payment_address.to_dict()
        return payment_address

    def all(self) -> list[PaymentAddress]:
        addresses = []
        for key, record in self.file.read()["activeAddresses"].items():
            try:
                addresses.append(PaymentAddress.from_dict(record, address=key))
            except (ValidationError, TypeError, ValueError) as e:
                logger.error("Error deserializing payment address %s: %s", key, e)
        return addresses

    def highest_index(self) -> int:
        """Highest derivation index in use; index 0 is reserved for the root wallet."""
        indices = [a.derivation_index for a in self.all() if a.derivation_index > 0]
        return max(indices, default=0)

    def delete(self, address: str) -> bool:
        return self.delete_many([address]) == 1

    def delete_many(self, addresses: list[str]) -> int:
        removed = 0
        with self.file.transaction() as data:
            active = data["activeAddresses"]
            for address in addresses:
                key = _find_key(active, address)
                if key is not None:
                    del active[key]
                    removed += 1
        if removed:
            logger.info("Removed %d payment address(es) from address book", removed)
        return removed


class DerivationIndexMap(JsonStore):
    """Cache of lowercase address -> derivation index. Safe to rebuild from the seed."""

    def __init__(self, file: JsonFile):
        super().__init__(file, "DerivationIndexMap")

    def get(self, address: str) -> Optional[int]:
        return self.file.read().get(address.lower())

    def set(self, address: str, index: int) -> None:
        self.merge({address: index})

    def merge(self, mapping: dict[str, int]) -> int:
        """Merge entries into the map; returns how many were new or changed."""
        changed = 0
        with self.file.transaction() as data:
            for address, index in mapping.items():
                key = address.lower()
                if data.get(key) != index:
                    data[key] = index
                    changed += 1
        if changed:
            logger.debug("Derivation index map updated with %d entries", changed)
        return changed

    def forget(self, address: str) -> None:
        with self.file.transaction() as data:
            data.pop(address.lower(), None)

    def all(self) -> dict[str, int]:
        return dict(self.file.read())
