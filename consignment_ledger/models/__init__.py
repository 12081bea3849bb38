"""Models package - exports all SQLAlchemy models."""
# Reference data
from consignment_ledger.models.customer import Customer
from consignment_ledger.models.stock import Stock, StockGroup, RESELLER_GROUP_NAMES, RESELLER_NAME_PREFIX
from consignment_ledger.models.product import Product
from consignment_ledger.models.stock_product import StockProduct

# Consignment ledger
from consignment_ledger.models.consignment import Consignment
from consignment_ledger.models.consignment_move import ConsignmentMove, MoveType

__all__ = [
    # Reference data
    'Customer', 'Stock', 'StockGroup', 'RESELLER_GROUP_NAMES', 'RESELLER_NAME_PREFIX',
    'Product', 'StockProduct',
    # Consignment ledger
    'Consignment', 'ConsignmentMove', 'MoveType',
]
