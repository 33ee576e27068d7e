from .catalog import Category, Product, product_categories
from .users import User
from .settings import SiteSetting
from .orders import Order, OrderItem, OrderStatusHistory, IdempotencyKey
from .inventory import InventoryMovement
from .vouchers import Voucher, VoucherRedemption, VoucherAuditLog

__all__ = [
    'Category', 'Product', 'product_categories',
    'User',
    'SiteSetting',
    'Order', 'OrderItem', 'OrderStatusHistory', 'IdempotencyKey',
    'InventoryMovement',
    'Voucher', 'VoucherRedemption', 'VoucherAuditLog',
]
