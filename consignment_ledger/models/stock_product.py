"""Live stock snapshot model."""
from sqlalchemy import Column, BigInteger, Numeric, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from consignment_ledger.database import Base


class StockProduct(Base):
    """On-hand quantity of a product in a stock (stock_produit)."""

    __tablename__ = 'stock_produit'

    stock_id = Column(BigInteger, ForeignKey('stocks.id'), primary_key=True)
    product_id = Column(BigInteger, ForeignKey('products.id'), primary_key=True)
    quantite = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    # Relationships
    stock = relationship('Stock')
    product = relationship('Product')

    def __repr__(self):
        return f"<StockProduct(stock_id={self.stock_id}, product_id={self.product_id}, quantite={self.quantite})>"
