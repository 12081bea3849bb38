"""Consignment blueprint - JSON API over the consignment ledger."""
from flask import Blueprint, request, jsonify, g
from typing import Optional
import logging

from consignment_ledger.database import get_session
from consignment_ledger.exceptions import ValidationError
from consignment_ledger.middleware import require_consignment_access, require_move_permission, require_billing_sync
from consignment_ledger.services.consignment_service import list_consignments, build_overview
from consignment_ledger.services.move_service import record_move, sync_invoice_items

logger = logging.getLogger(__name__)

consignments_bp = Blueprint('consignments', __name__, url_prefix='/api/consignments')


def _parse_int(value, name: str) -> Optional[int]:
    """Parse an optional integer (query string or JSON body); garbage is a 400, not a silent default."""
    if value is None or str(value).strip() == '':
        return None
    # JSON numbers: 1.9 must not truncate to 1, true must not become 1
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f'{name} doit être un entier')
    try:
        return int(value)
    except (ValueError, TypeError):
        raise ValidationError(f'{name} doit être un entier')


@consignments_bp.route('', methods=['GET'])
@consignments_bp.route('/', methods=['GET'])
@require_consignment_access
def list_view():
    """Summaries per stock, plus detail lines when detail=1 and stock_id is given."""
    stock_id = _parse_int(request.args.get('stock_id'), 'stock_id')
    customer_id = _parse_int(request.args.get('customer_id'), 'customer_id')
    q = (request.args.get('q') or '').strip() or None
    detail = request.args.get('detail') == '1'

    payload = list_consignments(
        get_session(),
        stock_id=stock_id,
        customer_id=customer_id,
        q=q,
        detail=detail,
        user_role=g.user_role,
        can_view_vat=g.can_view_vat,
    )
    return jsonify(payload)


@consignments_bp.route('/overview', methods=['GET'])
@require_consignment_access
def overview():
    """Totals for every reseller stock and the global total."""
    customer_id = _parse_int(request.args.get('customer_id'), 'customer_id')

    payload = build_overview(
        get_session(),
        customer_id=customer_id,
        user_role=g.user_role,
        can_view_vat=g.can_view_vat,
    )
    return jsonify(payload)


@consignments_bp.route('/moves', methods=['POST'])
@require_move_permission
def create_move():
    """Record an OUT or RETURN move on a reseller stock."""
    body = request.get_json(silent=True) or {}

    move = record_move(
        get_session(),
        move_type=body.get('type'),
        stock_id=_parse_int(body.get('stock_id'), 'stock_id'),
        product_id=_parse_int(body.get('product_id'), 'product_id'),
        qty=body.get('qty'),
    )
    logger.info(f"[MOVES] Recorded by user {g.identity.user_id} ({g.user_role})")
    return jsonify(move.to_dict()), 201


@consignments_bp.route('/sync-invoices', methods=['POST'])
@require_billing_sync
def sync_invoices():
    """Create INVOICE/PAYMENT moves for invoice lines billed from reseller stocks."""
    body = request.get_json(silent=True) or {}
    items = body.get('items')
    if not isinstance(items, list):
        raise ValidationError('items doit être une liste de lignes de facture', error='missing_params')

    result = sync_invoice_items(get_session(), items)
    logger.info(f"[BILLING] Sync by user {g.identity.user_id} ({g.user_role}): {result}")
    return jsonify({'ok': True, **result})
