"""
Integration tests for the consignment line and summary fallback chains.
"""

import pytest
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from consignment_ledger.exceptions import DataSourceError
from consignment_ledger.models import ConsignmentMove, Product
from consignment_ledger.services.source_resolver import (
    LineCriteria, SummaryCriteria, LINE_SOURCES, SUMMARY_SOURCES,
    DetailViewSource, RawReconstructionSource, LiveStockSource, SummaryViewSource,
    Applicable, NotApplicable, resolve, is_schema_missing,
)


def by_product(lines):
    return {line.product_id: line for line in lines}


class _PgError(Exception):
    pgcode = '42P01'


class TestSchemaMissing:

    def test_sqlite_message(self):
        assert is_schema_missing(OperationalError('SELECT', {}, Exception('no such table: consignment_lines_view')))

    def test_postgres_code(self):
        assert is_schema_missing(OperationalError('SELECT', {}, _PgError('boom')))

    def test_postgres_message(self):
        assert is_schema_missing(OperationalError('SELECT', {}, Exception('relation "x" does not exist')))

    def test_other_errors(self):
        assert not is_schema_missing(OperationalError('SELECT', {}, Exception('disk I/O error')))


class TestLineChain:
    """Each tier answers when the previous ones do not apply."""

    def test_detail_view_tier(self, views, session, ledger):
        result = resolve(session, LineCriteria(stock_id=ledger.catalog.reseller_id), LINE_SOURCES)

        assert result.source == 'detail_view'
        lines = by_product(result.rows)
        screen = lines[ledger.catalog.screen_id]
        phone = lines[ledger.catalog.phone_id]

        assert screen.qty_en_depot == Decimal('2')
        assert screen.montant_ht == Decimal('200')
        assert screen.tva_normal == Decimal('40')
        assert screen.unit_price == Decimal('100')
        assert screen.total_line_price == Decimal('200')
        assert screen.vat_regime == 'NORMAL'
        assert screen.serial_number == 'SN-0012'
        assert screen.pro_price == Decimal('80')
        assert screen.last_move_at is not None

        assert phone.unit_price == Decimal('120')
        assert phone.total_line_price == Decimal('120')
        assert phone.vat_regime == 'MARGE'
        assert phone.tva_marge == Decimal('20')
        assert {line.source for line in result.rows} == {'detail_view'}

    def test_raw_reconstruction_without_views(self, session, ledger):
        result = resolve(session, LineCriteria(stock_id=ledger.catalog.reseller_id), LINE_SOURCES)

        assert result.source == 'raw_reconstruction'
        lines = by_product(result.rows)
        screen = lines[ledger.catalog.screen_id]
        phone = lines[ledger.catalog.phone_id]

        assert screen.product_name == 'Ecran iPhone 12'
        assert screen.qty_en_depot == Decimal('2')
        assert screen.total_line_price == Decimal('200')
        assert phone.unit_price == Decimal('120')
        assert phone.vat_regime == 'MARGE'

    def test_both_tiers_agree(self, views, session, ledger):
        criteria = LineCriteria(stock_id=ledger.catalog.reseller_id)
        from_view = by_product(DetailViewSource().try_fetch(session, criteria).rows)
        from_moves = by_product(RawReconstructionSource().try_fetch(session, criteria).rows)

        for product_id, line in from_view.items():
            other = from_moves[product_id]
            for name in ('qty_en_depot', 'montant_ht', 'tva_normal', 'tva_marge', 'unit_price', 'total_line_price', 'vat_regime'):
                assert getattr(line, name) == getattr(other, name)

    def test_live_stock_tier(self, views, session, live_stock):
        result = resolve(session, LineCriteria(stock_id=live_stock.prefixed_id), LINE_SOURCES)

        assert result.source == 'live_stock'
        assert len(result.rows) == 1
        line = result.rows[0]
        assert line.product_id == live_stock.screen_id
        assert line.qty_en_depot == Decimal('3')
        assert line.unit_price == Decimal('80')
        assert line.total_line_price == Decimal('240')
        assert line.vat_regime == 'NORMAL'
        assert line.montant_ht is None
        assert line.tva_normal is None
        assert line.tva_marge is None
        assert line.consignment_id is None

    def test_no_tier_applies(self, session, catalog):
        result = resolve(session, LineCriteria(stock_id=catalog.plain_id), LINE_SOURCES)

        assert result.source == 'none'
        assert result.rows == []

    def test_detail_view_filter(self, views, session, ledger):
        result = resolve(session, LineCriteria(stock_id=ledger.catalog.reseller_id, q='ecr'), LINE_SOURCES)

        assert result.source == 'detail_view'
        assert [line.product_sku for line in result.rows] == ['ECR-IP12']

    def test_raw_filter_applied_after_reconstruction(self, session, ledger):
        result = resolve(session, LineCriteria(stock_id=ledger.catalog.reseller_id, q='IP11'), LINE_SOURCES)

        assert result.source == 'raw_reconstruction'
        assert [line.product_sku for line in result.rows] == ['IP11-REC']

    def test_raw_tier_applies_even_when_filter_matches_nothing(self, session, ledger):
        result = resolve(session, LineCriteria(stock_id=ledger.catalog.reseller_id, q='samsung'), LINE_SOURCES)

        assert result.source == 'raw_reconstruction'
        assert result.rows == []

    @pytest.mark.parametrize('q', ['_', '%', 'ecr%'])
    def test_like_wildcards_match_literally(self, views, session, ledger, q):
        criteria = LineCriteria(stock_id=ledger.catalog.reseller_id, q=q)

        from_view = DetailViewSource().try_fetch(session, criteria)
        from_moves = RawReconstructionSource().try_fetch(session, criteria)

        assert isinstance(from_view, NotApplicable)
        assert from_moves.rows == []

    def test_live_stock_not_applicable_without_stock(self, session, catalog):
        result = LiveStockSource().try_fetch(session, LineCriteria(stock_id=catalog.reseller_id))

        assert isinstance(result, NotApplicable)


class TestDataSourceErrors:

    def test_other_database_error_is_raised(self, session, ledger, monkeypatch):
        def broken_execute(*args, **kwargs):
            raise OperationalError('SELECT', {}, Exception('disk I/O error'))
        real_session = session()
        monkeypatch.setattr(real_session, 'execute', broken_execute)

        with pytest.raises(DataSourceError) as exc:
            DetailViewSource().try_fetch(real_session, LineCriteria(stock_id=ledger.catalog.reseller_id))
        assert exc.value.error == 'detail_view_error'

    def test_pricing_enrichment_failure_degrades_fields(self, views, session, ledger, monkeypatch):
        real_session = session()
        original_query = real_session.query

        def flaky_query(*entities, **kwargs):
            if entities and entities[0] is ConsignmentMove:
                raise OperationalError('SELECT', {}, Exception('connection reset'))
            return original_query(*entities, **kwargs)
        monkeypatch.setattr(real_session, 'query', flaky_query)

        result = DetailViewSource().try_fetch(real_session, LineCriteria(stock_id=ledger.catalog.reseller_id))

        assert isinstance(result, Applicable)
        for line in result.rows:
            assert line.unit_price is None
            assert line.total_line_price is None
            assert line.vat_regime is None
            assert line.qty_en_depot is not None
            assert line.product_name is not None

    def test_pricing_failure_keeps_loaded_product_fields(self, views, session, ledger, monkeypatch):
        real_session = session()
        original_query = real_session.query

        def dead_connection(*args, **kwargs):
            raise OperationalError('SELECT', {}, Exception('server closed the connection unexpectedly'))

        def flaky_query(*entities, **kwargs):
            if entities and entities[0] is ConsignmentMove:
                # Every later round-trip fails too
                monkeypatch.setattr(real_session, 'execute', dead_connection)
                raise OperationalError('SELECT', {}, Exception('connection reset'))
            return original_query(*entities, **kwargs)
        monkeypatch.setattr(real_session, 'query', flaky_query)

        result = DetailViewSource().try_fetch(real_session, LineCriteria(stock_id=ledger.catalog.reseller_id))

        assert isinstance(result, Applicable)
        screen = by_product(result.rows)[ledger.catalog.screen_id]
        assert screen.serial_number == 'SN-0012'
        assert screen.pro_price == Decimal('80')
        assert screen.product_type == 'piece'
        assert screen.unit_price is None
        assert screen.montant_ht == Decimal('200')

    def test_product_enrichment_failure_degrades_metadata(self, views, session, ledger, monkeypatch):
        real_session = session()
        original_query = real_session.query

        def flaky_query(*entities, **kwargs):
            if entities and entities[0] is Product:
                raise OperationalError('SELECT', {}, Exception('connection reset'))
            return original_query(*entities, **kwargs)
        monkeypatch.setattr(real_session, 'query', flaky_query)

        result = DetailViewSource().try_fetch(real_session, LineCriteria(stock_id=ledger.catalog.reseller_id))

        assert isinstance(result, Applicable)
        screen = by_product(result.rows)[ledger.catalog.screen_id]
        assert screen.serial_number is None
        assert screen.parent_name is None
        assert screen.pro_price is None
        # Identity from the view row, valuation from the moves
        assert screen.product_name == 'Ecran iPhone 12'
        assert screen.product_sku == 'ECR-IP12'
        assert screen.unit_price == Decimal('100')
        assert screen.total_line_price == Decimal('200')
        assert screen.montant_ht == Decimal('200')


class TestSummaryChain:

    def test_missing_view_gives_empty_summary(self, session, ledger):
        result = resolve(session, SummaryCriteria(), SUMMARY_SOURCES)

        assert result.source == 'empty_summary'
        assert result.rows == []

    def test_summary_view(self, views, session, ledger):
        result = resolve(session, SummaryCriteria(stock_id=ledger.catalog.reseller_id), SUMMARY_SOURCES)

        assert result.source == 'summary_view'
        assert len(result.rows) == 1
        summary = result.rows[0]
        assert summary.stock_name == 'Dépôt Dupont'
        assert summary.customer_name == 'Réparations Dupont'
        assert summary.total_en_depot == Decimal('3')
        assert summary.total_ht == Decimal('300')
        assert summary.total_ttc == Decimal('360')
        assert summary.total_tva_normal == Decimal('40')
        assert summary.total_tva_marge == Decimal('20')

    def test_summary_customer_filter(self, views, session, ledger):
        result = SummaryViewSource().try_fetch(session, SummaryCriteria(customer_id=ledger.catalog.zola_id))

        assert isinstance(result, Applicable)
        assert result.rows == []
