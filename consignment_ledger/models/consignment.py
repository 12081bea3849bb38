"""Consignment model."""
from sqlalchemy import Column, BigInteger, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from consignment_ledger.database import Base, IdType


class Consignment(Base):
    """One product line held at one reseller stock (dépôt-vente)."""

    __tablename__ = 'consignments'
    __table_args__ = (
        UniqueConstraint('stock_id', 'product_id', name='uq_consignments_stock_product'),
    )

    id = Column(IdType, primary_key=True, autoincrement=True)
    stock_id = Column(BigInteger, ForeignKey('stocks.id'), nullable=False)
    product_id = Column(BigInteger, ForeignKey('products.id'), nullable=False)
    customer_id = Column(BigInteger, ForeignKey('customers.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    stock = relationship('Stock')
    product = relationship('Product')
    customer = relationship('Customer')
    # Append-only: no cascade delete on moves
    moves = relationship('ConsignmentMove', back_populates='consignment', order_by='ConsignmentMove.created_at')

    def __repr__(self):
        return f"<Consignment(id={self.id}, stock_id={self.stock_id}, product_id={self.product_id})>"
