from .orders import Order, OrderItem, OrderStatusHistory
from .inventory import ProductVariant, StockMovement
from .payments import Payment, PaymentNotification, PaymentAttempt, Refund

__all__ = [
    'Order', 'OrderItem', 'OrderStatusHistory',
    'ProductVariant', 'StockMovement',
    'Payment', 'PaymentNotification', 'PaymentAttempt', 'Refund',
]
