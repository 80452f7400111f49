from .users import User, RetailerDeliveryBoy, SessionToken
from .catalog import Store, Listing
from .orders import Order, OrderItem, OrderEvent, PaymentAuditTrail, PaymentChangeRequest
from .ledger import LedgerAccount, LedgerEntry

__all__ = [
    'User', 'RetailerDeliveryBoy', 'SessionToken',
    'Store', 'Listing',
    'Order', 'OrderItem', 'OrderEvent', 'PaymentAuditTrail', 'PaymentChangeRequest',
    'LedgerAccount', 'LedgerEntry',
]
