"""Response records shared by every data source tier."""
from dataclasses import dataclass, fields, asdict
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, Dict, Any

from consignment_ledger.services.pricing import to_decimal


def _json_value(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class RecordMixin:
    """dict conversion helpers for the flat dataclass records below."""

    DECIMAL_FIELDS = ()

    def as_record(self) -> Dict[str, Any]:
        """Field dict with native values (Decimal, datetime), used by the cache."""
        return asdict(self)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready dict (Decimal -> float, datetime -> ISO string)."""
        return {name: _json_value(value) for name, value in self.as_record().items()}

    @classmethod
    def from_record(cls, record: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in record.items() if key in known}
        for name in cls.DECIMAL_FIELDS:
            if values.get(name) is not None:
                values[name] = to_decimal(values[name])
        return cls(**values)


@dataclass(frozen=True)
class ConsignmentLine(RecordMixin):
    """
    One consignment line as returned to callers.

    Identical shape whatever tier produced it; ``source`` only tells which
    tier answered. Valuation fields are None when the line was never
    valorized through the ledger (live stock approximation).
    """
    consignment_id: Optional[int]
    stock_id: Optional[int]
    product_id: Optional[int]
    product_name: Optional[str] = None
    product_sku: Optional[str] = None
    serial_number: Optional[str] = None
    parent_id: Optional[int] = None
    parent_name: Optional[str] = None
    product_type: Optional[str] = None
    qty_en_depot: Optional[Decimal] = None
    qty_facture_non_payee: Optional[Decimal] = None
    pro_price: Optional[Decimal] = None
    vat_regime: Optional[str] = None
    unit_price: Optional[Decimal] = None
    total_line_price: Optional[Decimal] = None
    montant_ht: Optional[Decimal] = None
    tva_normal: Optional[Decimal] = None
    tva_marge: Optional[Decimal] = None
    last_move_at: Optional[Any] = None
    source: Optional[str] = None

    DECIMAL_FIELDS = (
        'qty_en_depot', 'qty_facture_non_payee', 'pro_price', 'unit_price',
        'total_line_price', 'montant_ht', 'tva_normal', 'tva_marge',
    )

    def matches(self, q: Optional[str]) -> bool:
        """Case-insensitive substring match on product name or SKU."""
        if not q:
            return True
        needle = q.strip().lower()
        return (
            needle in str(self.product_name or '').lower()
            or needle in str(self.product_sku or '').lower()
        )


@dataclass(frozen=True)
class StockSummary(RecordMixin):
    """Per-stock rollup merged with the reseller identity."""
    stock_id: Optional[int]
    stock_name: Optional[str] = None
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    total_en_depot: Optional[Decimal] = None
    total_facture_non_payee: Optional[Decimal] = None
    total_ht: Optional[Decimal] = None
    total_ttc: Optional[Decimal] = None
    total_tva_normal: Optional[Decimal] = None
    total_tva_marge: Optional[Decimal] = None

    DECIMAL_FIELDS = (
        'total_en_depot', 'total_facture_non_payee', 'total_ht', 'total_ttc',
        'total_tva_normal', 'total_tva_marge',
    )
