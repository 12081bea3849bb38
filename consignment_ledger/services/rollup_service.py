"""Rollup service - per-stock and global consignment totals split by VAT regime."""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional
import unicodedata

from consignment_ledger.services.consignment_lines import RecordMixin
from consignment_ledger.services.pricing import ZERO, to_decimal
from consignment_ledger.services.vat_regime import VatRegime, normalize_vat_regime


@dataclass(frozen=True)
class StockTotals(RecordMixin):
    """Amounts due for a stock (or all stocks), split by VAT regime."""
    ht: Optional[Decimal] = ZERO
    ttc_normale: Optional[Decimal] = ZERO
    ttc_marge: Optional[Decimal] = ZERO
    ttc_cumul: Optional[Decimal] = ZERO

    DECIMAL_FIELDS = ('ht', 'ttc_normale', 'ttc_marge', 'ttc_cumul')

    def __add__(self, other):
        return make_totals(
            ht=self.ht + other.ht,
            ttc_normale=self.ttc_normale + other.ttc_normale,
            ttc_marge=self.ttc_marge + other.ttc_marge,
        )


def make_totals(ht=ZERO, ttc_normale=ZERO, ttc_marge=ZERO) -> StockTotals:
    """Build totals keeping ttc_cumul == ttc_normale + ttc_marge."""
    return StockTotals(ht=ht, ttc_normale=ttc_normale, ttc_marge=ttc_marge, ttc_cumul=ttc_normale + ttc_marge)


@dataclass(frozen=True)
class StockOverview:
    """One reseller stock in the overview: identity plus its totals."""
    stock_id: Optional[int]
    stock_name: Optional[str] = None
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    line_count: int = 0
    totals: StockTotals = field(default_factory=StockTotals)
    degraded: bool = False


def per_stock_totals(lines: Iterable) -> StockTotals:
    """
    Totals of one stock's lines.

    Each line with a positive total_line_price goes to ttc_marge or
    ttc_normale by its normalized regime; lines with a zero, negative or
    missing total are left out of both buckets. ``ht`` sums positive
    montant_ht values.

    Args:
        lines: ConsignmentLine records (unredacted)

    Returns:
        StockTotals with ttc_cumul = ttc_normale + ttc_marge
    """
    ht = ZERO
    ttc_normale = ZERO
    ttc_marge = ZERO

    for line in lines:
        line_total = to_decimal(line.total_line_price)
        if line_total > 0:
            if normalize_vat_regime(line.vat_regime) is VatRegime.MARGE:
                ttc_marge += line_total
            else:
                ttc_normale += line_total

        montant_ht = to_decimal(line.montant_ht)
        if montant_ht > 0:
            ht += montant_ht

    return make_totals(ht=ht, ttc_normale=ttc_normale, ttc_marge=ttc_marge)


def global_totals(totals: Iterable[StockTotals]) -> StockTotals:
    """Elementwise sum of per-stock totals."""
    result = make_totals()
    for item in totals:
        result = result + item
    return result


def collation_key(name: Optional[str]) -> str:
    """Accent and case insensitive sort key (é sorts with e)."""
    decomposed = unicodedata.normalize('NFKD', name or '')
    return ''.join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


def sorted_summary(entries: Iterable[StockOverview]) -> List[StockOverview]:
    """
    Order stocks by ttc_cumul descending, ties by name ascending.

    Zero-amount stocks end up last through the descending order itself.
    """
    by_name = sorted(entries, key=lambda e: (collation_key(e.stock_name), e.stock_name or ''))
    # sorted() is stable with reverse=True: equal totals keep name order
    return sorted(by_name, key=lambda e: e.totals.ttc_cumul, reverse=True)
