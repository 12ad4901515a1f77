from .balances import BalanceReader, BalanceReport
from .dispatcher import TransactionDispatcher
from .pool import ProviderConnection, ProviderPool

__all__ = ["BalanceReader", "BalanceReport", "ProviderConnection", "ProviderPool", "TransactionDispatcher"]
