"""Consignment Move model."""
from sqlalchemy import Column, BigInteger, Numeric, DateTime, String, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from consignment_ledger.database import Base, IdType
import enum


class MoveType(enum.Enum):
    """Consignment move type enum."""
    OUT = "OUT"
    RETURN = "RETURN"
    INVOICE = "INVOICE"
    PAYMENT = "PAYMENT"


class ConsignmentMove(Base):
    """Consignment Move (mouvement de dépôt-vente). Append-only."""

    __tablename__ = 'consignment_moves'
    __table_args__ = (
        # One INVOICE and one PAYMENT per invoice line (NULLs stay distinct)
        UniqueConstraint('invoice_item_id', 'type', name='uq_consignment_moves_invoice_item_type'),
    )

    id = Column(IdType, primary_key=True, autoincrement=True)
    consignment_id = Column(BigInteger, ForeignKey('consignments.id'), nullable=False, index=True)
    type = Column(Enum(MoveType, name='consignment_move_type'), nullable=False)
    qty = Column(Numeric(12, 2), nullable=False)
    unit_price_ht = Column(Numeric(12, 2), nullable=False, default=0)
    vat_rate = Column(Numeric(6, 4), nullable=False, default=0)
    vat_regime = Column(String(20), nullable=True)  # Raw label, normalized on read
    invoice_id = Column(BigInteger, nullable=True)
    invoice_item_id = Column(BigInteger, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Relationships
    consignment = relationship('Consignment', back_populates='moves')

    def __repr__(self):
        return f"<ConsignmentMove(id={self.id}, type={self.type.value}, qty={self.qty})>"
