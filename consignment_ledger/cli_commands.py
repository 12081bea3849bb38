"""
Flask CLI commands for consignment ledger maintenance.

Commands:
- flask consignments create-views: Create or replace the precomputed views
- flask consignments check-unpaid: List invoiced consignments still unpaid
- flask consignments sync-invoices: Create INVOICE/PAYMENT moves from an invoice lines export
"""

import json

import click
from flask import current_app
from flask.cli import AppGroup
from consignment_ledger.database import get_session, get_engine
from consignment_ledger.models.views import create_views
from consignment_ledger.services.move_service import find_unpaid_invoices, sync_invoice_items


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    consignments_cli = AppGroup('consignments', help='Consignment ledger maintenance.')

    @consignments_cli.command('create-views')
    def create_views_command():
        """Create (or replace) consignment_lines_view and consignment_summary_by_stock."""
        try:
            with get_engine().begin() as connection:
                create_views(connection)
        except Exception as e:
            click.echo(click.style(f'❌ Erreur lors de la création des vues: {str(e)}', fg='red'))
            raise SystemExit(1)

        click.echo(click.style('✅ Vues de dépôt-vente créées.', fg='green', bold=True))

    @consignments_cli.command('check-unpaid')
    @click.option('--days', type=int, default=None, help='Alert threshold in days (default: CONSIGNMENT_UNPAID_DAYS)')
    def check_unpaid(days):
        """List INVOICE moves older than N days without a matching PAYMENT."""
        if days is None:
            days = current_app.config.get('CONSIGNMENT_UNPAID_DAYS', 30)

        unpaid = find_unpaid_invoices(get_session(), days)

        if not unpaid:
            click.echo(click.style(f'✅ Aucun impayé (seuil: {days} jours)', fg='green'))
            return

        click.echo(click.style(f'⚠️  {len(unpaid)} facture(s) impayée(s) depuis plus de {days} jours', fg='yellow', bold=True))
        for item in unpaid:
            color = 'red' if item.severity == 'urgent' else 'yellow'
            click.echo(click.style(f'   [{item.severity}] ', fg=color) + item.message)

    @consignments_cli.command('sync-invoices')
    @click.argument('items_file', type=click.File('r', encoding='utf-8'))
    def sync_invoices(items_file):
        """Create INVOICE/PAYMENT moves from a JSON list of invoice lines."""
        try:
            items = json.load(items_file)
        except ValueError as e:
            click.echo(click.style(f'❌ Fichier JSON invalide: {e}', fg='red'))
            raise SystemExit(1)
        if not isinstance(items, list):
            click.echo(click.style('❌ Le fichier doit contenir une liste de lignes de facture', fg='red'))
            raise SystemExit(1)

        result = sync_invoice_items(get_session(), items)

        color = 'yellow' if result['errors'] else 'green'
        click.echo(click.style(
            f"✅ {result['processed']} ligne(s) traitée(s): "
            f"{result['invoice_moves_created']} INVOICE, {result['payment_moves_created']} PAYMENT créés, "
            f"{result['skipped']} ignorée(s), {result['errors']} erreur(s)",
            fg=color,
        ))

    app.cli.add_command(consignments_cli)
