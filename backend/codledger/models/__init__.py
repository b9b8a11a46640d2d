from .tenancy import Store
from .carriers import Carrier, CarrierRate
from .inventory import Product, InventoryMovement
from .orders import Order, OrderLineItem
from .settlements import Settlement, AdvisoryLock
from .audit import LedgerEvent

__all__ = [
    'Store',
    'Carrier', 'CarrierRate',
    'Product', 'InventoryMovement',
    'Order', 'OrderLineItem',
    'Settlement', 'AdvisoryLock',
    'LedgerEvent',
]
