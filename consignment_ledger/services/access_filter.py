"""
Access filter - redaction of monetary fields by VAT visibility.

``redact`` is the only way to turn a record into something serializable
for a response: it returns ``Full(record)`` or ``Redacted(record)``.
Wrapped values are rejected, so a record cannot be redacted twice, and a
``Redacted`` value no longer holds the original amounts.
"""
from dataclasses import dataclass, replace
from typing import Any, ClassVar, Dict, Iterable, List

from consignment_ledger.services.consignment_lines import ConsignmentLine, StockSummary
from consignment_ledger.services.rollup_service import StockTotals

LINE_REDACTED_FIELDS = (
    'montant_ht', 'tva_normal', 'tva_marge', 'pro_price',
    'vat_regime', 'unit_price', 'total_line_price',
)
SUMMARY_REDACTED_FIELDS = ('total_ht', 'total_ttc', 'total_tva_normal', 'total_tva_marge')
TOTALS_REDACTED_FIELDS = ('ht', 'ttc_normale', 'ttc_marge', 'ttc_cumul')

REDACTED_FIELDS = {
    ConsignmentLine: LINE_REDACTED_FIELDS,
    StockSummary: SUMMARY_REDACTED_FIELDS,
    StockTotals: TOTALS_REDACTED_FIELDS,
}


@dataclass(frozen=True)
class Full:
    """Record visible as-is (caller can view VAT and amounts)."""
    record: Any
    redacted: ClassVar[bool] = False

    def to_dict(self) -> Dict[str, Any]:
        return self.record.to_dict()


@dataclass(frozen=True)
class Redacted:
    """Record with its monetary fields nulled out."""
    record: Any
    redacted: ClassVar[bool] = True

    def to_dict(self) -> Dict[str, Any]:
        return self.record.to_dict()


def redact(record, can_view_vat: bool):
    """
    Apply VAT visibility to a record.

    Args:
        record: ConsignmentLine, StockSummary or StockTotals (never an
            already filtered value)
        can_view_vat: Capability derived from the caller's role

    Returns:
        Full(record) when can_view_vat, else Redacted(copy with the
        monetary fields set to None). Identity and quantity fields are
        always kept.

    Raises:
        TypeError: record was already filtered, or its type is unknown
    """
    if isinstance(record, (Full, Redacted)):
        raise TypeError('Record already passed through the access filter')

    hidden = REDACTED_FIELDS.get(type(record))
    if hidden is None:
        raise TypeError(f'No redaction rule for {type(record).__name__}')

    if can_view_vat:
        return Full(record)
    return Redacted(replace(record, **{name: None for name in hidden}))


def redact_all(records: Iterable, can_view_vat: bool) -> List:
    return [redact(record, can_view_vat) for record in records]


def serialize(filtered: Iterable) -> List[Dict[str, Any]]:
    """JSON-ready dicts; only filtered values are accepted."""
    out = []
    for item in filtered:
        if not isinstance(item, (Full, Redacted)):
            raise TypeError('Only filtered records can be serialized')
        out.append(item.to_dict())
    return out
