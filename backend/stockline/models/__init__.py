from .auth import User, SessionToken
from .inventory import Product, Variant, StockAdjustment
from .customers import Customer, LoyaltyReward
from .sales import Sale, SaleItem
from .documents import DocumentSequence, OutboxEvent

__all__ = [
    'User', 'SessionToken',
    'Product', 'Variant', 'StockAdjustment',
    'Customer', 'LoyaltyReward',
    'Sale', 'SaleItem',
    'DocumentSequence', 'OutboxEvent',
]
