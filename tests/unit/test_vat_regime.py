"""
Unit tests for VAT regime normalization and display pricing.
"""

import pytest
from decimal import Decimal

from consignment_ledger.services.vat_regime import VatRegime, normalize_vat_regime
from consignment_ledger.services.pricing import display_unit_price, total_line_price, to_decimal


class TestNormalizeVatRegime:
    """Tests for normalize_vat_regime."""

    @pytest.mark.parametrize('label', [
        'marge', 'MARGE', 'Marge', ' marge ', 'margin', 'MARGIN', '\tMargin\n', 'tvm', 'TVM', ' Tvm',
    ])
    def test_margin_labels(self, label):
        assert normalize_vat_regime(label) is VatRegime.MARGE

    @pytest.mark.parametrize('label', [
        None, '', '   ', 'normal', 'NORMAL', 'standard', 'marges', 'tva', 'margin scheme', 0, 20, 0.2,
    ])
    def test_everything_else_is_normal(self, label):
        assert normalize_vat_regime(label) is VatRegime.NORMAL

    @pytest.mark.parametrize('label', ['marge', 'normal', None, ' TVM ', 'xyz'])
    def test_idempotent(self, label):
        once = normalize_vat_regime(label)
        assert normalize_vat_regime(once) is once
        assert normalize_vat_regime(once.value) is once


class TestPricing:
    """Tests for display pricing."""

    def test_marge_price_includes_vat(self):
        assert display_unit_price(Decimal('100'), Decimal('0.20'), 'MARGE') == Decimal('120')

    def test_normal_price_is_ht(self):
        assert display_unit_price(Decimal('100'), Decimal('0.20'), VatRegime.NORMAL) == Decimal('100')

    def test_regime_label_is_normalized(self):
        assert display_unit_price('100', '0.20', ' tvm ') == Decimal('120')

    def test_total_line_price(self):
        assert total_line_price(Decimal('120'), Decimal('3')) == Decimal('360')

    def test_total_line_price_keeps_negative_quantity(self):
        assert total_line_price(Decimal('100'), Decimal('-1')) == Decimal('-100')

    def test_to_decimal_from_driver_values(self):
        assert to_decimal(2) == Decimal('2')
        assert to_decimal(0.2) == Decimal('0.2')
        assert to_decimal(None) == Decimal('0')
        assert to_decimal(None, None) is None
        assert to_decimal('abc') == Decimal('0')
