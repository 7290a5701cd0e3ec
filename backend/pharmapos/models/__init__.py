from .inventory import Product, Batch, StockMovement
from .sales import Sale, SaleItem
from .audit import AuditEvent

__all__ = [
    'Product', 'Batch', 'StockMovement',
    'Sale', 'SaleItem',
    'AuditEvent',
]
