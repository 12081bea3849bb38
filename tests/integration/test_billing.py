"""
Integration tests for INVOICE/PAYMENT moves synced from invoice lines.
"""

import json
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from consignment_ledger.exceptions import ValidationError
from consignment_ledger.models import Consignment, ConsignmentMove, MoveType
from consignment_ledger.services.move_service import (
    billing_vat_rate, find_unpaid_invoices, record_billing_move, sync_invoice_items,
)


def invoice_line(catalog, item_id, status, **overrides):
    line = {
        'id': item_id,
        'invoice_id': item_id // 10,
        'product_id': catalog.screen_id,
        'stock_id': catalog.reseller_id,
        'quantity': 2,
        'unit_price': 100,
        'tax_rate': 20,
        'status': status,
    }
    line.update(overrides)
    return line


class TestBillingVatRate:

    @pytest.mark.parametrize('tax_rate, expected', [
        (20, Decimal('0.2')),
        ('5.5', Decimal('0.055')),
        ('0.2', Decimal('0.2')),
        (None, Decimal('0.20')),
        (0, Decimal('0.20')),
    ])
    def test_rate_as_fraction(self, tax_rate, expected):
        assert billing_vat_rate(tax_rate, '0.20') == expected


class TestRecordBillingMove:

    def test_invoice_recorded_once(self, session, catalog):
        first = record_billing_move(session, 'invoice', catalog.reseller_id, catalog.screen_id, 2,
                                    invoice_item_id=501, invoice_id=50, unit_price_ht='100', tax_rate='20')
        second = record_billing_move(session, 'INVOICE', catalog.reseller_id, catalog.screen_id, 2,
                                     invoice_item_id=501, invoice_id=50, unit_price_ht='100', tax_rate='20')

        assert first.created is True
        assert second.created is False
        assert second.move_id == first.move_id
        assert session.query(ConsignmentMove).count() == 1

        move = session.query(ConsignmentMove).filter_by(id=first.move_id).one()
        assert move.type is MoveType.INVOICE
        assert move.vat_rate == Decimal('0.2')
        assert move.vat_regime == 'NORMAL'
        assert move.invoice_id == 50
        assert move.unit_price_ht == Decimal('100')

    def test_payment_takes_regime_from_product(self, session, catalog):
        result = record_billing_move(session, 'PAYMENT', catalog.prefixed_id, catalog.phone_id, 1,
                                     invoice_item_id=502, tax_rate='0.2', customer_id=catalog.zola_id)

        move = session.query(ConsignmentMove).filter_by(id=result.move_id).one()
        assert move.type is MoveType.PAYMENT
        assert move.vat_regime == 'MARGE'
        assert move.vat_rate == Decimal('0.2')
        consignment = session.query(Consignment).filter_by(id=result.consignment_id).one()
        assert consignment.customer_id == catalog.zola_id

    def test_reuses_existing_consignment(self, session, ledger):
        result = record_billing_move(session, 'INVOICE', ledger.catalog.reseller_id, ledger.catalog.screen_id, 1,
                                     invoice_item_id=503)

        assert result.consignment_id == ledger.screen_consignment_id

    @pytest.mark.parametrize('move_type', ['OUT', 'RETURN', 'refund'])
    def test_only_billing_types(self, session, catalog, move_type):
        with pytest.raises(ValidationError) as exc:
            record_billing_move(session, move_type, catalog.reseller_id, catalog.screen_id, 1, invoice_item_id=504)
        assert exc.value.error == 'invalid_type'

    def test_invoice_item_required(self, session, catalog):
        with pytest.raises(ValidationError) as exc:
            record_billing_move(session, 'INVOICE', catalog.reseller_id, catalog.screen_id, 1, invoice_item_id=None)
        assert exc.value.error == 'missing_params'

    def test_not_a_reseller_stock(self, session, catalog):
        with pytest.raises(ValidationError) as exc:
            record_billing_move(session, 'INVOICE', catalog.plain_id, catalog.screen_id, 1, invoice_item_id=505)
        assert exc.value.error == 'invalid_stock'


class TestSyncInvoiceItems:

    def test_status_mapping_and_skips(self, session, catalog):
        items = [
            invoice_line(catalog, 601, 'sent'),
            invoice_line(catalog, 602, 'paid'),
            invoice_line(catalog, 603, 'cancelled'),
            invoice_line(catalog, 604, 'sent', stock_id=catalog.plain_id),
            invoice_line(catalog, 605, 'draft', quantity=0),
        ]

        result = sync_invoice_items(session, items)

        assert result == {
            'processed': 5,
            'invoice_moves_created': 2,
            'payment_moves_created': 1,
            'skipped': 3,
            'errors': 0,
        }
        types = sorted((m.invoice_item_id, m.type.value) for m in session.query(ConsignmentMove).all())
        assert types == [(601, 'INVOICE'), (602, 'INVOICE'), (602, 'PAYMENT')]

    def test_sync_is_idempotent(self, session, catalog):
        items = [invoice_line(catalog, 611, 'sent'), invoice_line(catalog, 612, 'paid')]
        sync_invoice_items(session, items)

        again = sync_invoice_items(session, items)

        assert again['invoice_moves_created'] == 0
        assert again['payment_moves_created'] == 0
        assert again['errors'] == 0
        assert session.query(ConsignmentMove).count() == 3

    def test_failing_item_does_not_stop_the_batch(self, session, catalog):
        items = [
            invoice_line(catalog, 621, 'sent', product_id=9999),
            'not-an-invoice-line',
            invoice_line(catalog, 622, 'sent'),
        ]

        result = sync_invoice_items(session, items)

        assert result['errors'] == 2
        assert result['invoice_moves_created'] == 1

    def test_unpaid_check_sees_synced_payment(self, session, catalog):
        later = datetime.now(timezone.utc) + timedelta(days=40)
        sync_invoice_items(session, [invoice_line(catalog, 631, 'sent'), invoice_line(catalog, 632, 'sent')])

        unpaid = find_unpaid_invoices(session, 30, now=later)
        assert sorted(u.invoice_item_id for u in unpaid) == [631, 632]

        sync_invoice_items(session, [invoice_line(catalog, 631, 'paid')])

        unpaid = find_unpaid_invoices(session, 30, now=later)
        assert [u.invoice_item_id for u in unpaid] == [632]
        assert unpaid[0].severity == 'warning'

    def test_synced_moves_feed_the_detail(self, session, client, auth_headers, ledger):
        sync_invoice_items(session, [invoice_line(ledger.catalog, 641, 'sent', quantity=1)])

        body = client.get(
            f'/api/consignments?detail=1&stock_id={ledger.catalog.reseller_id}', headers=auth_headers('ADMIN')
        ).get_json()

        screen = next(line for line in body['detail'] if line['product_sku'] == 'ECR-IP12')
        assert screen['qty_en_depot'] == pytest.approx(2)
        assert screen['qty_facture_non_payee'] == pytest.approx(1)


class TestSyncInvoicesApi:

    def test_admin_sync(self, client, auth_headers, catalog):
        response = client.post(
            '/api/consignments/sync-invoices',
            json={'items': [invoice_line(catalog, 701, 'sent'), invoice_line(catalog, 702, 'paid')]},
            headers=auth_headers('ADMIN'),
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body['ok'] is True
        assert body['invoice_moves_created'] == 2
        assert body['payment_moves_created'] == 1

    def test_accounting_role_forbidden(self, client, auth_headers, catalog):
        response = client.post(
            '/api/consignments/sync-invoices',
            json={'items': [invoice_line(catalog, 711, 'sent')]},
            headers=auth_headers('COMPTABLE'),
        )

        assert response.status_code == 403

    def test_items_required(self, client, auth_headers):
        response = client.post('/api/consignments/sync-invoices', json={}, headers=auth_headers('ADMIN'))

        assert response.status_code == 400
        assert response.get_json()['error'] == 'missing_params'


class TestSyncInvoicesCommand:

    def test_sync_from_file(self, app, catalog, tmp_path):
        export = tmp_path / 'invoice_items.json'
        export.write_text(json.dumps([invoice_line(catalog, 801, 'paid')]), encoding='utf-8')

        result = app.test_cli_runner().invoke(args=['consignments', 'sync-invoices', str(export)])

        assert result.exit_code == 0
        assert '1 INVOICE, 1 PAYMENT' in result.output

    def test_invalid_file(self, app, tmp_path):
        export = tmp_path / 'broken.json'
        export.write_text('{not json', encoding='utf-8')

        result = app.test_cli_runner().invoke(args=['consignments', 'sync-invoices', str(export)])

        assert result.exit_code == 1
