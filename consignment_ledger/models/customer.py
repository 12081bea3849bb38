"""Customer model."""
from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from consignment_ledger.database import Base, IdType


class Customer(Base):
    """Customer (client). Resellers are customers mapped to a stock."""

    __tablename__ = 'customers'

    id = Column(IdType, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self):
        return f"<Customer(id={self.id}, name='{self.name}')>"
