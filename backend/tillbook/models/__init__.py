from .stores import Store, DayOperation
from .catalog import Product, StoreProductStock
from .customers import Customer, CreditTransaction
from .sales import Transaction, TransactionItem
from .stocktaking import StockTakingSession, StockTakingItem
from .ledger import LedgerEvent

__all__ = [
    'Store', 'DayOperation',
    'Product', 'StoreProductStock',
    'Customer', 'CreditTransaction',
    'Transaction', 'TransactionItem',
    'StockTakingSession', 'StockTakingItem',
    'LedgerEvent',
]
