"""Stock and Stock Group models."""
from sqlalchemy import Column, BigInteger, String, ForeignKey
from sqlalchemy.orm import relationship
from consignment_ledger.database import Base, IdType

RESELLER_GROUP_NAMES = ('SOUS-TRAITANT', 'SOUS TRAITANT', 'SOUS_TRAITANT')
RESELLER_NAME_PREFIX = 'Sous-traitant:'


class StockGroup(Base):
    """Stock Group (groupe de stocks)."""

    __tablename__ = 'stock_groups'

    id = Column(IdType, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)

    stocks = relationship('Stock', back_populates='group')

    def __repr__(self):
        return f"<StockGroup(id={self.id}, name='{self.name}')>"


class Stock(Base):
    """Stock location. Reseller stocks hold consigned products."""

    __tablename__ = 'stocks'

    id = Column(IdType, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    group_id = Column(BigInteger, ForeignKey('stock_groups.id'), nullable=True)
    # Reseller identity for consignments opened on this stock
    customer_id = Column(BigInteger, ForeignKey('customers.id'), nullable=True)

    # Relationships
    group = relationship('StockGroup', back_populates='stocks')
    customer = relationship('Customer')

    @property
    def is_reseller(self):
        """True when the stock belongs to the reseller group or is named as one."""
        if self.group is not None and self.group.name in RESELLER_GROUP_NAMES:
            return True
        return (self.name or '').startswith(RESELLER_NAME_PREFIX)

    def __repr__(self):
        return f"<Stock(id={self.id}, name='{self.name}', group_id={self.group_id})>"
