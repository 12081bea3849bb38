"""
Move service - append OUT/RETURN moves, sync INVOICE/PAYMENT moves from
invoice lines and detect unpaid consignment invoices.

Moves are append-only; the ledger never updates or deletes one.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional
import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import joinedload

from consignment_ledger.exceptions import LedgerError, ValidationError, NotFoundError, DataSourceError
from consignment_ledger.models import Consignment, ConsignmentMove, MoveType, Product, Stock
from consignment_ledger.services.cache_service import get_cache
from consignment_ledger.services.pricing import ZERO, to_decimal
from consignment_ledger.services.vat_regime import normalize_vat_regime

logger = logging.getLogger(__name__)

RECORDABLE_TYPES = (MoveType.OUT, MoveType.RETURN)
BILLING_TYPES = (MoveType.INVOICE, MoveType.PAYMENT)

# Invoice status -> moves to ensure, in order
INVOICE_STATUS_MOVES = {
    'draft': (MoveType.INVOICE,),
    'sent': (MoveType.INVOICE,),
    'paid': (MoveType.INVOICE, MoveType.PAYMENT),
}


@dataclass(frozen=True)
class RecordedMove:
    move_id: int
    consignment_id: int
    type: str
    qty: Decimal
    unit_price_ht: Decimal
    vat_rate: Decimal
    vat_regime: str

    def to_dict(self):
        return {
            'ok': True,
            'move_id': self.move_id,
            'consignment_id': self.consignment_id,
            'type': self.type,
            'qty': float(self.qty),
            'unit_price_ht': float(self.unit_price_ht),
            'vat_rate': float(self.vat_rate),
            'vat_regime': self.vat_regime,
        }


@dataclass(frozen=True)
class BillingMove:
    move_id: int
    consignment_id: int
    type: str
    invoice_id: Optional[int]
    invoice_item_id: int
    created: bool

    def to_dict(self):
        return {
            'ok': True,
            'move_id': self.move_id,
            'consignment_id': self.consignment_id,
            'type': self.type,
            'invoice_id': self.invoice_id,
            'invoice_item_id': self.invoice_item_id,
            'created': self.created,
        }


@dataclass(frozen=True)
class UnpaidInvoice:
    move_id: int
    consignment_id: int
    stock_id: int
    stock_name: Optional[str]
    product_name: Optional[str]
    product_sku: Optional[str]
    customer_name: Optional[str]
    invoice_id: Optional[int]
    invoice_item_id: Optional[int]
    qty: Decimal
    days_overdue: int
    severity: str

    @property
    def message(self):
        who = f' ({self.customer_name})' if self.customer_name else ''
        return (
            f'Le produit "{self.product_name}" ({self.product_sku or ""}) chez "{self.stock_name}"{who} '
            f'est facturé mais non payé depuis {self.days_overdue} jours.'
        )


def _parse_move_type(value, allowed, message) -> MoveType:
    try:
        move_type = MoveType(str(value or '').strip().upper())
    except ValueError:
        move_type = None
    if move_type not in allowed:
        raise ValidationError(message, error='invalid_type')
    return move_type


def _parse_qty(value) -> Decimal:
    qty = to_decimal(value, None)
    if qty is None or not qty.is_finite() or qty <= 0:
        raise ValidationError('Quantité doit être > 0', error='invalid_qty')
    return qty


def resolve_move_pricing(product, default_vat_rate):
    """
    HT unit price, VAT rate and regime stamped on a new move.

    HT comes from sale_price_ht, else sale_price_ttc / (1 + rate); a
    missing or non-positive price is recorded as 0.
    """
    vat_rate = to_decimal(product.tax_rate)
    if vat_rate <= 0:
        vat_rate = to_decimal(default_vat_rate)

    unit_price_ht = to_decimal(product.sale_price_ht)
    if unit_price_ht <= 0 and to_decimal(product.sale_price_ttc) > 0:
        unit_price_ht = (to_decimal(product.sale_price_ttc) / (1 + vat_rate)).quantize(Decimal('0.01'))
    if unit_price_ht <= 0:
        logger.warning(f"[MOVES] No usable price for product {product.id}, recording 0")
        unit_price_ht = ZERO

    regime = normalize_vat_regime(product.vat_type)
    return unit_price_ht, vat_rate, regime


def _get_or_create_consignment(session, stock, product_id, customer_id=None) -> Consignment:
    consignment = session.query(Consignment).filter_by(stock_id=stock.id, product_id=product_id).first()
    if consignment:
        return consignment

    try:
        consignment = Consignment(
            stock_id=stock.id,
            product_id=product_id,
            customer_id=customer_id or stock.customer_id,
        )
        session.add(consignment)
        session.flush()
        return consignment
    except IntegrityError:
        # Concurrent creation of the same (stock, product) line
        session.rollback()
        consignment = session.query(Consignment).filter_by(stock_id=stock.id, product_id=product_id).first()
        if consignment is None:
            raise
        return consignment


def _load_reseller_stock(session, stock_id) -> Stock:
    stock = session.query(Stock).options(joinedload(Stock.group)).filter_by(id=stock_id).first()
    if stock is None:
        raise NotFoundError('Stock introuvable', error='stock_not_found')
    if not stock.is_reseller:
        raise ValidationError("Ce stock n'est pas un stock sous-traitant", error='invalid_stock')
    return stock


def _load_product(session, product_id) -> Product:
    product = session.query(Product).filter_by(id=product_id).first()
    if product is None:
        raise NotFoundError('Produit introuvable', error='product_not_found')
    return product


def _invalidate_stock_cache(stock_id):
    try:
        get_cache().invalidate_stock(stock_id)
    except RuntimeError:
        pass


def record_move(session, move_type, stock_id, product_id, qty) -> RecordedMove:
    """
    Append an OUT or RETURN move to a reseller stock.

    The consignment line is created on first use (unique per stock and
    product). Every cached read of the stock is invalidated.

    Raises:
        ValidationError: Bad type/qty/ids, or the stock is not a reseller stock
        NotFoundError: Unknown stock or product
        DataSourceError: The move could not be written
    """
    move_type = _parse_move_type(move_type, RECORDABLE_TYPES, 'Type doit être OUT ou RETURN')
    if not stock_id or not product_id:
        raise ValidationError('stock_id et product_id requis', error='missing_params')
    qty = _parse_qty(qty)

    stock = _load_reseller_stock(session, stock_id)
    product = _load_product(session, product_id)

    unit_price_ht, vat_rate, regime = resolve_move_pricing(
        product, current_app.config.get('CONSIGNMENT_DEFAULT_VAT_RATE', '0.20')
    )

    try:
        consignment = _get_or_create_consignment(session, stock, product.id)
        move = ConsignmentMove(
            consignment_id=consignment.id,
            type=move_type,
            qty=qty,
            unit_price_ht=unit_price_ht,
            vat_rate=vat_rate,
            vat_regime=regime.value,
        )
        session.add(move)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"[MOVES] Failed to record {move_type.value} on stock {stock_id}: {e}")
        raise DataSourceError("Erreur d'enregistrement du mouvement", error='move_error') from e

    logger.info(
        f"[MOVES] {move_type.value} qty={qty} product={product.id} stock={stock.id} "
        f"consignment={consignment.id} move={move.id}"
    )
    _invalidate_stock_cache(stock.id)

    return RecordedMove(
        move_id=move.id,
        consignment_id=consignment.id,
        type=move_type.value,
        qty=qty,
        unit_price_ht=unit_price_ht,
        vat_rate=vat_rate,
        vat_regime=regime.value,
    )


def billing_vat_rate(tax_rate, default_vat_rate) -> Decimal:
    """Invoice line tax rate as a fraction: 20 -> 0.20, 0.2 stays 0.2, missing -> default."""
    rate = to_decimal(tax_rate)
    if rate <= 0:
        return to_decimal(default_vat_rate)
    if rate > 1:
        rate = rate / 100
    return rate


def _find_billing_move(session, invoice_item_id, move_type) -> Optional[ConsignmentMove]:
    return (
        session.query(ConsignmentMove)
        .filter_by(invoice_item_id=invoice_item_id, type=move_type)
        .first()
    )


def _billing_result(move, created) -> BillingMove:
    return BillingMove(
        move_id=move.id,
        consignment_id=move.consignment_id,
        type=move.type.value,
        invoice_id=move.invoice_id,
        invoice_item_id=move.invoice_item_id,
        created=created,
    )


def record_billing_move(session, move_type, stock_id, product_id, qty, invoice_item_id,
                        invoice_id=None, unit_price_ht=None, tax_rate=None, customer_id=None) -> BillingMove:
    """
    Append the INVOICE or PAYMENT move of an invoice line billed from a reseller stock.

    Idempotent per (invoice_item_id, type): a second call returns the
    existing move with created=False. The regime comes from the product's
    vat_type; a tax rate given in percent is converted to a fraction.

    Raises:
        ValidationError: Bad type/qty/ids, or the stock is not a reseller stock
        NotFoundError: Unknown stock or product
        DataSourceError: The move could not be written
    """
    move_type = _parse_move_type(move_type, BILLING_TYPES, 'Type doit être INVOICE ou PAYMENT')
    if not stock_id or not product_id or not invoice_item_id:
        raise ValidationError('stock_id, product_id et invoice_item_id requis', error='missing_params')
    qty = _parse_qty(qty)

    stock = _load_reseller_stock(session, stock_id)
    product = _load_product(session, product_id)

    existing = _find_billing_move(session, invoice_item_id, move_type)
    if existing is not None:
        logger.info(f"[BILLING] {move_type.value} already recorded for invoice item {invoice_item_id}")
        return _billing_result(existing, created=False)

    vat_rate = billing_vat_rate(tax_rate, current_app.config.get('CONSIGNMENT_DEFAULT_VAT_RATE', '0.20'))
    regime = normalize_vat_regime(product.vat_type)

    try:
        consignment = _get_or_create_consignment(session, stock, product.id, customer_id=customer_id)
        move = ConsignmentMove(
            consignment_id=consignment.id,
            type=move_type,
            qty=qty,
            unit_price_ht=to_decimal(unit_price_ht),
            vat_rate=vat_rate,
            vat_regime=regime.value,
            invoice_id=invoice_id,
            invoice_item_id=invoice_item_id,
        )
        session.add(move)
        session.commit()
    except IntegrityError as e:
        # Same invoice line synced concurrently
        session.rollback()
        existing = _find_billing_move(session, invoice_item_id, move_type)
        if existing is None:
            logger.error(f"[BILLING] Failed to record {move_type.value} for invoice item {invoice_item_id}: {e}")
            raise DataSourceError("Erreur d'enregistrement du mouvement", error='move_error') from e
        return _billing_result(existing, created=False)
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"[BILLING] Failed to record {move_type.value} for invoice item {invoice_item_id}: {e}")
        raise DataSourceError("Erreur d'enregistrement du mouvement", error='move_error') from e

    logger.info(
        f"[BILLING] {move_type.value} qty={qty} invoice_item={invoice_item_id} stock={stock.id} "
        f"consignment={consignment.id} move={move.id}"
    )
    _invalidate_stock_cache(stock.id)
    return _billing_result(move, created=True)


def sync_invoice_items(session, items) -> Dict[str, int]:
    """
    Create the INVOICE/PAYMENT moves of invoice lines billed from reseller stocks.

    Each item is an invoice line: {id, invoice_id, product_id, stock_id,
    quantity, unit_price, tax_rate, status, customer_id?}. Draft and sent
    invoices give an INVOICE move; paid invoices give the INVOICE (when it
    was never synced) and the PAYMENT. Other statuses, non-reseller stocks
    and non-positive quantities are skipped. A failing item is counted and
    the batch goes on.

    Returns:
        dict counters: processed, invoice_moves_created, payment_moves_created, skipped, errors
    """
    result = {
        'processed': 0,
        'invoice_moves_created': 0,
        'payment_moves_created': 0,
        'skipped': 0,
        'errors': 0,
    }

    for item in items:
        result['processed'] += 1
        if not isinstance(item, dict):
            result['errors'] += 1
            continue

        status = str(item.get('status') or '').strip().lower()
        move_types = INVOICE_STATUS_MOVES.get(status)
        if not move_types:
            result['skipped'] += 1
            continue

        try:
            for move_type in move_types:
                move = record_billing_move(
                    session,
                    move_type,
                    stock_id=item.get('stock_id'),
                    product_id=item.get('product_id'),
                    qty=item.get('quantity'),
                    invoice_item_id=item.get('id'),
                    invoice_id=item.get('invoice_id'),
                    unit_price_ht=item.get('unit_price'),
                    tax_rate=item.get('tax_rate'),
                    customer_id=item.get('customer_id'),
                )
                if move.created:
                    counter = 'invoice_moves_created' if move_type is MoveType.INVOICE else 'payment_moves_created'
                    result[counter] += 1
        except ValidationError as e:
            logger.info(f"[BILLING] Invoice item {item.get('id')} skipped: {e.message}")
            result['skipped'] += 1
        except LedgerError as e:
            logger.error(f"[BILLING] Invoice item {item.get('id')} failed: {e.message}")
            result['errors'] += 1

    logger.info(f"[BILLING] Sync done: {result}")
    return result


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def find_unpaid_invoices(session, days: int, now: Optional[datetime] = None,
                         urgent_days: Optional[int] = None) -> List[UnpaidInvoice]:
    """
    INVOICE moves older than ``days`` with no PAYMENT for the same invoice item.

    Severity is 'urgent' beyond ``urgent_days`` (CONSIGNMENT_URGENT_DAYS),
    'warning' otherwise.
    """
    if days is None or days < 0:
        raise ValidationError('days doit être >= 0', error='invalid_days')

    now = _as_aware(now or datetime.now(timezone.utc))
    if urgent_days is None:
        urgent_days = current_app.config.get('CONSIGNMENT_URGENT_DAYS', 60)
    threshold = now - timedelta(days=days)

    invoices = (
        session.query(ConsignmentMove)
        .options(
            joinedload(ConsignmentMove.consignment).joinedload(Consignment.stock),
            joinedload(ConsignmentMove.consignment).joinedload(Consignment.product),
            joinedload(ConsignmentMove.consignment).joinedload(Consignment.customer),
        )
        .filter(ConsignmentMove.type == MoveType.INVOICE)
        .order_by(ConsignmentMove.created_at, ConsignmentMove.id)
        .all()
    )

    paid_items = {
        item_id for (item_id,) in (
            session.query(ConsignmentMove.invoice_item_id)
            .filter(ConsignmentMove.type == MoveType.PAYMENT)
            .filter(ConsignmentMove.invoice_item_id.isnot(None))
            .distinct()
            .all()
        )
    }

    unpaid = []
    for move in invoices:
        created_at = _as_aware(move.created_at)
        if created_at >= threshold:
            continue
        if move.invoice_item_id is not None and move.invoice_item_id in paid_items:
            continue

        days_overdue = (now - created_at).days
        consignment = move.consignment
        unpaid.append(UnpaidInvoice(
            move_id=move.id,
            consignment_id=move.consignment_id,
            stock_id=consignment.stock_id,
            stock_name=consignment.stock.name if consignment.stock else None,
            product_name=consignment.product.name if consignment.product else None,
            product_sku=consignment.product.sku if consignment.product else None,
            customer_name=consignment.customer.name if consignment.customer else None,
            invoice_id=move.invoice_id,
            invoice_item_id=move.invoice_item_id,
            qty=to_decimal(move.qty),
            days_overdue=days_overdue,
            severity='urgent' if days_overdue > urgent_days else 'warning',
        ))

    logger.info(f"[MOVES] Unpaid check: {len(unpaid)} unpaid of {len(invoices)} invoices (threshold {days} days)")
    return unpaid
