from .auth import User, SessionToken, USER_ROLES
from .catalog import Product
from .sales import Sale, SaleItem, CashSession
from .sync import SyncEvent

__all__ = [
    'User', 'SessionToken', 'USER_ROLES',
    'Product',
    'Sale', 'SaleItem', 'CashSession',
    'SyncEvent',
]
