"""Product model."""
from sqlalchemy import Column, BigInteger, String, Numeric, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from consignment_ledger.database import Base, IdType


class Product(Base):
    """Product master record (read-only for the consignment ledger)."""

    __tablename__ = 'products'

    id = Column(IdType, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    sku = Column(String, nullable=True)
    serial_number = Column(String, nullable=True)
    parent_id = Column(BigInteger, ForeignKey('products.id'), nullable=True)
    product_type = Column(String(50), nullable=True)
    pro_price = Column(Numeric(12, 2), nullable=True)  # Prix revendeur
    retail_price = Column(Numeric(12, 2), nullable=True)
    sale_price_ht = Column(Numeric(12, 2), nullable=True)
    sale_price_ttc = Column(Numeric(12, 2), nullable=True)
    tax_rate = Column(Numeric(6, 4), nullable=True)  # Fraction, e.g. 0.2000
    vat_type = Column(String(20), nullable=True)
    vat_regime = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    parent = relationship('Product', remote_side=[id])

    @property
    def parent_name(self):
        return self.parent.name if self.parent is not None else None

    def __repr__(self):
        return f"<Product(id={self.id}, name='{self.name}', sku='{self.sku}')>"
