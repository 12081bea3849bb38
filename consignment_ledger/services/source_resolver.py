"""
Source resolver - ordered fallback chain for consignment lines and summaries.

Each source implements ``try_fetch(session, criteria)`` and answers either
``Applicable(rows)`` or ``NotApplicable(reason)``. Sources are tried in
order until one applies:

    Lines:    detail view -> raw reconstruction -> live stock approximation
    Summary:  summary view -> empty summary

A missing relation (view or table) makes a source NotApplicable. Any other
database error is raised as DataSourceError. Whatever the tier, callers get
the same record types (ConsignmentLine / StockSummary).
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union, Dict
import logging

from sqlalchemy import select, or_
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.orm import joinedload, selectinload

from consignment_ledger.blueprints.metrics import consignment_source_total
from consignment_ledger.exceptions import DataSourceError
from consignment_ledger.models import Consignment, ConsignmentMove, Product, StockProduct
from consignment_ledger.models.views import consignment_lines_view, consignment_summary_by_stock
from consignment_ledger.services.consignment_lines import ConsignmentLine, StockSummary
from consignment_ledger.services.pricing import ZERO, to_decimal, display_unit_price, total_line_price
from consignment_ledger.services.reconciliation_service import MoveRecord, reconcile, recency_key
from consignment_ledger.services.vat_regime import normalize_vat_regime

logger = logging.getLogger(__name__)

# PostgreSQL: undefined_table, invalid_schema_name
SCHEMA_MISSING_CODES = {'42P01', '3F000'}
SCHEMA_MISSING_MESSAGES = ('does not exist', 'no such table')

LIKE_ESCAPE = "\\"


@dataclass(frozen=True)
class LineCriteria:
    """Detail filters: one stock, optional free-text filter on name/SKU."""
    stock_id: int
    q: Optional[str] = None


@dataclass(frozen=True)
class SummaryCriteria:
    stock_id: Optional[int] = None
    customer_id: Optional[int] = None


@dataclass(frozen=True)
class Applicable:
    rows: list
    source: str


@dataclass(frozen=True)
class NotApplicable:
    reason: str
    source: str


FetchResult = Union[Applicable, NotApplicable]


def is_schema_missing(error: Exception) -> bool:
    """True when a DB error means the relation/schema does not exist."""
    orig = getattr(error, 'orig', None)
    code = getattr(orig, 'pgcode', None) or getattr(orig, 'sqlstate', None)
    if code in SCHEMA_MISSING_CODES:
        return True
    message = str(orig if orig is not None else error).lower()
    return any(fragment in message for fragment in SCHEMA_MISSING_MESSAGES)


def _escape_like(text: str) -> str:
    """Match % and _ literally, like the in-memory filter does."""
    return (
        text.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


class _SchemaMissing(Exception):
    """Internal signal: the queried relation is absent."""


def _guarded(session, source_name, query_fn):
    """
    Run ``query_fn()`` and translate DB errors.

    Raises:
        _SchemaMissing: relation/schema absent (session rolled back)
        DataSourceError: any other DB error (session rolled back)
    """
    try:
        return query_fn()
    except DBAPIError as e:
        # PostgreSQL aborts the transaction on error; the next tier needs a clean one
        session.rollback()
        if is_schema_missing(e):
            logger.info(f"[SOURCE] {source_name}: relation missing ({e.orig})")
            raise _SchemaMissing(str(e.orig)) from e
        logger.error(f"[SOURCE] {source_name}: query failed: {e}")
        raise DataSourceError(f'Erreur de lecture ({source_name})', error=f'{source_name}_error') from e


class LineSource:
    """Base class for consignment line sources."""

    name = 'line_source'

    def try_fetch(self, session, criteria: LineCriteria) -> FetchResult:
        raise NotImplementedError

    def applicable(self, rows) -> Applicable:
        return Applicable(rows=rows, source=self.name)

    def not_applicable(self, reason) -> NotApplicable:
        return NotApplicable(reason=reason, source=self.name)


def _product_fields(product) -> Dict:
    """Identity fields taken from the product master, as plain values."""
    if product is None:
        return {}
    return {
        'product_name': product.name,
        'product_sku': product.sku,
        'serial_number': product.serial_number,
        'parent_id': product.parent_id,
        'parent_name': product.parent_name,
        'product_type': product.product_type,
        'pro_price': to_decimal(product.pro_price),
    }


def line_from_aggregate(aggregate, product=None, source=None) -> ConsignmentLine:
    """Build the response line from a reconciled aggregate."""
    regime = aggregate.vat_regime
    return ConsignmentLine(
        consignment_id=aggregate.consignment_id,
        stock_id=aggregate.stock_id,
        product_id=aggregate.product_id,
        qty_en_depot=aggregate.qty_en_depot,
        qty_facture_non_payee=aggregate.qty_facture_non_payee,
        vat_regime=regime.value if regime is not None else None,
        unit_price=aggregate.display_unit_price,
        total_line_price=aggregate.total_line_price,
        montant_ht=aggregate.montant_ht,
        tva_normal=aggregate.tva_normal,
        tva_marge=aggregate.tva_marge,
        last_move_at=aggregate.last_move.created_at if aggregate.last_move else None,
        source=source,
        **_product_fields(product),
    )


class DetailViewSource(LineSource):
    """Tier 1: precomputed per-line view, enriched with product and last move."""

    name = 'detail_view'

    def try_fetch(self, session, criteria):
        view = consignment_lines_view
        stmt = select(*view.c).where(view.c.stock_id == criteria.stock_id)
        if criteria.q:
            pattern = f"%{_escape_like(criteria.q.strip())}%"
            stmt = stmt.where(or_(
                view.c.product_name.ilike(pattern, escape=LIKE_ESCAPE),
                view.c.product_sku.ilike(pattern, escape=LIKE_ESCAPE),
            ))
        stmt = stmt.order_by(view.c.consignment_id)

        try:
            rows = _guarded(session, self.name, lambda: session.execute(stmt).all())
        except _SchemaMissing as e:
            return self.not_applicable(f'relation missing: {e}')

        if not rows:
            return self.not_applicable('no rows')

        products = self._load_products(session, {row.product_id for row in rows if row.product_id})
        last_moves = self._load_last_moves(session, {row.consignment_id for row in rows if row.consignment_id})

        lines = [self._build_line(row, products, last_moves) for row in rows]
        return self.applicable(lines)

    def _load_products(self, session, product_ids) -> Optional[Dict]:
        """
        Product metadata by id, copied out of the ORM objects; None when the
        lookup itself failed.

        A later rollback expires loaded instances, so lines are built from
        these copies only.
        """
        if not product_ids:
            return {}
        try:
            products = (
                session.query(Product)
                .options(joinedload(Product.parent))
                .filter(Product.id.in_(product_ids))
                .all()
            )
            return {p.id: _product_fields(p) for p in products}
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"[SOURCE] {self.name}: product enrichment failed, fields degraded: {e}")
            return None

    def _load_last_moves(self, session, consignment_ids) -> Optional[Dict]:
        """Most recent move per consignment (as MoveRecord); None when the lookup itself failed."""
        if not consignment_ids:
            return {}
        try:
            moves = (
                session.query(ConsignmentMove)
                .filter(ConsignmentMove.consignment_id.in_(consignment_ids))
                .all()
            )
        except SQLAlchemyError as e:
            session.rollback()
            logger.warning(f"[SOURCE] {self.name}: pricing enrichment failed, fields degraded: {e}")
            return None

        latest = {}
        for move in moves:
            current = latest.get(move.consignment_id)
            if current is None or recency_key(move) > recency_key(current):
                latest[move.consignment_id] = move
        return {consignment_id: MoveRecord.from_move(move) for consignment_id, move in latest.items()}

    def _build_line(self, row, products, last_moves) -> ConsignmentLine:
        qty_en_depot = to_decimal(row.qty_en_depot)

        product_fields = dict(products.get(row.product_id, {})) if products else {}
        product_fields['product_name'] = row.product_name
        product_fields['product_sku'] = row.product_sku

        if last_moves is None:
            # Pricing unknown for this row: leave valuation display empty
            vat_regime = unit_price = line_total = None
        else:
            move = last_moves.get(row.consignment_id)
            if move is None:
                vat_regime, unit_price = None, ZERO
            else:
                regime = normalize_vat_regime(move.vat_regime)
                vat_regime = regime.value
                unit_price = display_unit_price(move.unit_price_ht, move.vat_rate, regime)
            line_total = total_line_price(unit_price, qty_en_depot)

        return ConsignmentLine(
            consignment_id=row.consignment_id,
            stock_id=row.stock_id,
            product_id=row.product_id,
            qty_en_depot=qty_en_depot,
            qty_facture_non_payee=to_decimal(row.qty_facture_non_payee),
            vat_regime=vat_regime,
            unit_price=unit_price,
            total_line_price=line_total,
            montant_ht=to_decimal(row.montant_ht),
            tva_normal=to_decimal(row.tva_normal),
            tva_marge=to_decimal(row.tva_marge),
            last_move_at=row.last_move_at,
            source=self.name,
            **product_fields,
        )


class RawReconstructionSource(LineSource):
    """Tier 2: consignments x moves x products, reconciled in Python."""

    name = 'raw_reconstruction'

    def try_fetch(self, session, criteria):
        def query():
            return (
                session.query(Consignment)
                .options(
                    selectinload(Consignment.moves),
                    joinedload(Consignment.product).joinedload(Product.parent),
                )
                .filter(Consignment.stock_id == criteria.stock_id)
                .order_by(Consignment.id)
                .all()
            )

        try:
            consignments = _guarded(session, self.name, query)
        except _SchemaMissing as e:
            return self.not_applicable(f'relation missing: {e}')

        if not consignments:
            return self.not_applicable('no consignment for stock')

        lines = []
        for consignment in consignments:
            aggregate = reconcile(
                consignment.moves,
                consignment_id=consignment.id,
                stock_id=consignment.stock_id,
                product_id=consignment.product_id,
            )
            line = line_from_aggregate(aggregate, consignment.product, source=self.name)
            # Free-text filter applies after reconstruction
            if line.matches(criteria.q):
                lines.append(line)

        return self.applicable(lines)


class LiveStockSource(LineSource):
    """Tier 3: live on-hand snapshot priced from the product master (not valorized)."""

    name = 'live_stock'

    def try_fetch(self, session, criteria):
        def query():
            return (
                session.query(StockProduct)
                .options(joinedload(StockProduct.product).joinedload(Product.parent))
                .filter(StockProduct.stock_id == criteria.stock_id)
                .filter(StockProduct.quantite > 0)
                .order_by(StockProduct.product_id)
                .all()
            )

        try:
            snapshot = _guarded(session, self.name, query)
        except _SchemaMissing as e:
            return self.not_applicable(f'relation missing: {e}')

        if not snapshot:
            return self.not_applicable('no live stock')

        lines = []
        for item in snapshot:
            product = item.product
            qty = to_decimal(item.quantite)
            pro_price = to_decimal(product.pro_price) if product else ZERO
            retail_price = to_decimal(product.retail_price) if product else ZERO
            unit_price = pro_price if pro_price > 0 else retail_price
            raw_regime = (product.vat_regime or product.vat_type) if product else None

            line = ConsignmentLine(
                consignment_id=None,
                stock_id=item.stock_id,
                product_id=item.product_id,
                qty_en_depot=qty,
                vat_regime=normalize_vat_regime(raw_regime).value,
                unit_price=unit_price,
                total_line_price=total_line_price(unit_price, qty),
                # No valuation without ledger moves
                montant_ht=None,
                tva_normal=None,
                tva_marge=None,
                source=self.name,
                **_product_fields(product),
            )
            if line.matches(criteria.q):
                lines.append(line)

        return self.applicable(lines)


class SummarySource:
    """Base class for reseller summary sources."""

    name = 'summary_source'

    def try_fetch(self, session, criteria: SummaryCriteria) -> FetchResult:
        raise NotImplementedError


class SummaryViewSource(SummarySource):
    """Precomputed per-stock summary view."""

    name = 'summary_view'

    def try_fetch(self, session, criteria):
        view = consignment_summary_by_stock
        stmt = select(*view.c)
        if criteria.stock_id is not None:
            stmt = stmt.where(view.c.stock_id == criteria.stock_id)
        if criteria.customer_id is not None:
            stmt = stmt.where(view.c.customer_id == criteria.customer_id)
        stmt = stmt.order_by(view.c.stock_id)

        try:
            rows = _guarded(session, 'summary', lambda: session.execute(stmt).all())
        except _SchemaMissing as e:
            return NotApplicable(reason=f'relation missing: {e}', source=self.name)

        summaries = [
            StockSummary(
                stock_id=row.stock_id,
                stock_name=row.stock_name,
                customer_id=row.customer_id,
                customer_name=row.customer_name,
                total_en_depot=to_decimal(row.total_en_depot, None),
                total_facture_non_payee=to_decimal(row.total_facture_non_payee, None),
                total_ht=to_decimal(row.total_ht, None),
                total_ttc=to_decimal(row.total_ttc, None),
                total_tva_normal=to_decimal(row.total_tva_normal, None),
                total_tva_marge=to_decimal(row.total_tva_marge, None),
            )
            for row in rows
        ]
        return Applicable(rows=summaries, source=self.name)


class EmptySummarySource(SummarySource):
    """Last resort: an empty summary is a valid answer, resellers are listed by identity."""

    name = 'empty_summary'

    def try_fetch(self, session, criteria):
        return Applicable(rows=[], source=self.name)


LINE_SOURCES = (DetailViewSource(), RawReconstructionSource(), LiveStockSource())
LIVE_STOCK_SOURCES = (LiveStockSource(),)
SUMMARY_SOURCES = (SummaryViewSource(), EmptySummarySource())


def resolve(session, criteria, sources: Sequence) -> Applicable:
    """
    Try each source in order and return the first Applicable result.

    Returns Applicable([], 'none') when no source applies.
    """
    for source in sources:
        result = source.try_fetch(session, criteria)
        if isinstance(result, Applicable):
            logger.debug(f"[SOURCE] {result.source} answered {criteria} ({len(result.rows)} rows)")
            consignment_source_total.labels(source=result.source).inc()
            return result
        logger.info(f"[SOURCE] {result.source} not applicable for {criteria}: {result.reason}")

    consignment_source_total.labels(source='none').inc()
    return Applicable(rows=[], source='none')


def resolve_lines(session, criteria: LineCriteria, sources: Sequence = LINE_SOURCES) -> List[ConsignmentLine]:
    """Consignment lines of one stock from the first applicable tier."""
    return resolve(session, criteria, sources).rows


def resolve_summary(session, criteria: SummaryCriteria, sources: Sequence = SUMMARY_SOURCES) -> List[StockSummary]:
    """Per-stock summaries; empty (not an error) when the summary view is missing."""
    return resolve(session, criteria, sources).rows
