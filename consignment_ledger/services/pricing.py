"""Display pricing for consignment lines."""
from decimal import Decimal, InvalidOperation
from consignment_ledger.services.vat_regime import VatRegime, normalize_vat_regime

ZERO = Decimal('0')


def to_decimal(value, default=ZERO):
    """Convert DB/driver values (float, int, str, Decimal, None) to Decimal."""
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def display_unit_price(unit_price_ht, vat_rate, regime) -> Decimal:
    """
    Unit price shown for a consignment line.

    MARGE lines show a TTC-equivalent figure (HT + HT * rate); NORMAL lines
    show the HT price unchanged.

    Args:
        unit_price_ht: Unit price excluding tax
        vat_rate: VAT rate as a fraction (0.20)
        regime: Raw label or VatRegime
    """
    price = to_decimal(unit_price_ht)
    if normalize_vat_regime(regime) is VatRegime.MARGE:
        return price + price * to_decimal(vat_rate)
    return price


def total_line_price(unit_price, qty_en_depot) -> Decimal:
    """Line total: display unit price times the quantity currently in consignment."""
    return to_decimal(unit_price) * to_decimal(qty_en_depot)
