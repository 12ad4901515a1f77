"""
HD Wallet Payments

Payment-reliability layer for HD-wallet crypto payments: address allocation,
amount matching, provider failover, idempotent ledger and backup/recovery.
"""

from . import api, config, exceptions, models, storage, utils
from .amounts import compare_amounts, is_payment_amount_correct
from .backup import BackupManager
from .config import Settings
from .core import PaymentGateway
from .exceptions import (
    AddressNotDerivable,
    HDWalletPaymentsError,
    NoProviderAvailable,
    NoZeroBalanceAddressFound,
    TransactionFailed,
    TransactionRejected,
)
from .models import AddressStatus, LedgerStatus, PaymentAddress, TransactionState
from .monitor import IntegrityMonitor
from .providers import BalanceReader, ProviderPool, TransactionDispatcher
from .wallet import AddressAllocator, HDKeyVault

__version__ = "0.1.0"

__all__ = [
    "PaymentGateway",
    "Settings",
    "AddressAllocator",
    "HDKeyVault",
    "ProviderPool",
    "BalanceReader",
    "TransactionDispatcher",
    "BackupManager",
    "IntegrityMonitor",
    "compare_amounts",
    "is_payment_amount_correct",
    "api",
    "config",
    "exceptions",
    "models",
    "storage",
    "utils",
    "PaymentAddress",
    "AddressStatus",
    "LedgerStatus",
    "TransactionState",
    "HDWalletPaymentsError",
    "NoProviderAvailable",
    "NoZeroBalanceAddressFound",
    "AddressNotDerivable",
    "TransactionFailed",
    "TransactionRejected",
]
