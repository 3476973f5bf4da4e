from .catalog import Product, Supplier, User
from .purchasing import PurchaseOrder, PurchaseOrderItem
from .orders import Order, OrderItem, OrderStatusHistory
from .sales import Sale, SaleLine, SalePayment
from .inventory import StockMovement, MOVEMENT_TYPES, ImmutableRowError
from .documents import DocumentSequence, AuditEvent

__all__ = [
    'Product', 'Supplier', 'User',
    'PurchaseOrder', 'PurchaseOrderItem',
    'Order', 'OrderItem', 'OrderStatusHistory',
    'Sale', 'SaleLine', 'SalePayment',
    'StockMovement', 'MOVEMENT_TYPES', 'ImmutableRowError',
    'DocumentSequence', 'AuditEvent',
]
