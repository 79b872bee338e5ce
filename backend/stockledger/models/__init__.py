from .catalog import Product, Variant
from .orders import Order, OrderItem
from .stock import StockHistory

__all__ = [
    'Product', 'Variant',
    'Order', 'OrderItem',
    'StockHistory',
]
