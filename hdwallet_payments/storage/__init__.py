from .address_book import AddressBook, DerivationIndexMap
from .base import CriticalFileSpec, JsonFile, JsonStore, StorageStatus, critical_files, inspect_file
from .ledger import LedgerKey, LedgerStore

__all__ = [
    "AddressBook",
    "CriticalFileSpec",
    "DerivationIndexMap",
    "JsonFile",
    "JsonStore",
    "LedgerKey",
    "LedgerStore",
    "StorageStatus",
    "critical_files",
    "inspect_file",
]
