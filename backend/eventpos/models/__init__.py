from .tenancy import Organization, SalesContext
from .catalog import Category, Product
from .orders import Order, OrderItem
from .payments import Payment, OrderItemPayment
from .inventory import InventoryCount, InventoryCountItem, StockMovement
from .sequences import OrderSequence
from .online import OnlineOrderSession

__all__ = [
    'Organization', 'SalesContext',
    'Category', 'Product',
    'Order', 'OrderItem',
    'Payment', 'OrderItemPayment',
    'StockMovement', 'InventoryCount', 'InventoryCountItem',
    'OrderSequence',
    'OnlineOrderSession',
]
