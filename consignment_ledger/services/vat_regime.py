"""VAT regime normalization.

Every place that reads a regime label (ledger bucketing, display badge,
rollup bucket selection) must go through ``normalize_vat_regime`` so the
two regimes are always told apart the same way.
"""
import enum


class VatRegime(enum.Enum):
    """VAT regime enum."""
    NORMAL = "NORMAL"
    MARGE = "MARGE"  # Margin scheme (second-hand goods)


MARGE_LABELS = frozenset({'margin', 'marge', 'tvm'})


def normalize_vat_regime(value) -> VatRegime:
    """
    Canonicalize a free-form VAT regime label.

    Args:
        value: None, VatRegime enum, or any label ('marge', ' TVM ', 'normal', ...)

    Returns:
        VatRegime.MARGE for margin-scheme labels, VatRegime.NORMAL otherwise
        (including empty and unrecognized values). Never raises.
    """
    if isinstance(value, VatRegime):
        return value
    if value is None:
        return VatRegime.NORMAL

    label = str(value).strip().lower()
    if label in MARGE_LABELS:
        return VatRegime.MARGE
    return VatRegime.NORMAL
