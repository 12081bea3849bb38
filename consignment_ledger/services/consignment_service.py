"""
Consignment service - read operations over the consignment ledger.

- list_consignments: per-stock summaries and, for one stock, detail lines
- build_overview: totals for every reseller stock, fetched concurrently

Monetary redaction is applied once, last, on every path.
"""
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Any
import logging

from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload

from consignment_ledger.blueprints.metrics import consignment_degraded_total
from consignment_ledger.database import new_session
from consignment_ledger.exceptions import LedgerError
from consignment_ledger.models import (
    Consignment, ConsignmentMove, Stock, StockGroup, RESELLER_GROUP_NAMES, RESELLER_NAME_PREFIX,
)
from consignment_ledger.services.access_filter import redact, redact_all, serialize
from consignment_ledger.services.cache_service import get_cache
from consignment_ledger.services.consignment_lines import ConsignmentLine
from consignment_ledger.services.rollup_service import (
    StockOverview, per_stock_totals, global_totals, sorted_summary,
)
from consignment_ledger.services.source_resolver import (
    LineCriteria, SummaryCriteria, LINE_SOURCES, LIVE_STOCK_SOURCES,
    resolve_lines, resolve_summary,
)

logger = logging.getLogger(__name__)

DETAIL_CACHE_MODULE = 'detail'


def _detail_cache_key(version: int, q: Optional[str]) -> str:
    return f"v={version}:q={(q or '').strip().lower()}"


def ledger_version(session, stock_id: int) -> Optional[int]:
    """
    Highest move id of the stock's consignments (0 without moves).

    Moves are append-only, so any new move changes the version whoever
    wrote it. None when it cannot be read.
    """
    try:
        version = (
            session.query(func.max(ConsignmentMove.id))
            .join(Consignment, ConsignmentMove.consignment_id == Consignment.id)
            .filter(Consignment.stock_id == stock_id)
            .scalar()
        )
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning(f"[CACHE] Ledger version unavailable for stock {stock_id}, bypassing cache: {e}")
        return None
    return version or 0


def get_detail_lines(session, stock_id: int, q: Optional[str] = None) -> List[ConsignmentLine]:
    """
    Unredacted detail lines of one stock, through the optional cache.

    The cache key carries the ledger version, so a move appended by any
    writer makes older entries unreachable. Stocks without moves are never
    cached: the live stock snapshot they fall back to carries no version.
    The cache holds raw records only; callers redact afterwards.
    """
    criteria = LineCriteria(stock_id=stock_id, q=q)
    try:
        cache = get_cache()
    except RuntimeError:
        cache = None

    if cache is None or not cache.is_available():
        return resolve_lines(session, criteria)

    version = ledger_version(session, stock_id)
    if not version:
        return resolve_lines(session, criteria)

    key = _detail_cache_key(version, q)
    cached = cache.get(stock_id, DETAIL_CACHE_MODULE, key)
    if cached is not None:
        logger.debug(f"[CACHE] HIT detail stock={stock_id} {key}")
        return [ConsignmentLine.from_record(record) for record in cached]

    lines = resolve_lines(session, criteria)
    cache.set(
        stock_id, DETAIL_CACHE_MODULE, key,
        [line.as_record() for line in lines],
        ttl=current_app.config.get('CACHE_DETAIL_TTL', 60),
    )
    return lines


def list_consignments(session, stock_id=None, customer_id=None, q=None, detail=False,
                      user_role=None, can_view_vat=False) -> Dict[str, Any]:
    """
    Consignment summaries (and optional detail) for the caller.

    Args:
        session: Database session
        stock_id: Optional stock filter
        customer_id: Optional reseller customer filter
        q: Optional free-text filter on product name/SKU (detail only)
        detail: Include detail lines; only filled when stock_id is given
        user_role: Caller role, echoed in meta
        can_view_vat: Capability derived from the caller's role

    Returns:
        dict payload: {ok, summary, detail?, meta}

    Raises:
        DataSourceError: A data store query failed (not a missing view)
    """
    summaries = resolve_summary(session, SummaryCriteria(stock_id=stock_id, customer_id=customer_id))

    payload = {
        'ok': True,
        'summary': serialize(redact_all(summaries, can_view_vat)),
    }

    if detail:
        lines = get_detail_lines(session, stock_id, q) if stock_id is not None else []
        payload['detail'] = serialize(redact_all(lines, can_view_vat))

    payload['meta'] = {
        'user_role': user_role,
        'can_view_vat': can_view_vat,
        'filters': {'stock_id': stock_id, 'customer_id': customer_id, 'q': q},
    }
    return payload


def list_reseller_stocks(session, customer_id=None) -> List[StockOverview]:
    """
    Reseller stocks to include in the overview.

    Stocks of the reseller group or named with the reseller prefix, merged
    with the summary rows (which also carry the customer identity). When
    the stock tables cannot be read, the summary rows alone are used.
    """
    summaries = resolve_summary(session, SummaryCriteria(customer_id=customer_id))
    by_stock = {summary.stock_id: summary for summary in summaries}

    try:
        query = (
            session.query(Stock)
            .outerjoin(StockGroup, Stock.group_id == StockGroup.id)
            .options(joinedload(Stock.customer))
            .filter(or_(
                StockGroup.name.in_(RESELLER_GROUP_NAMES),
                Stock.name.like(f'{RESELLER_NAME_PREFIX}%'),
            ))
        )
        if customer_id is not None:
            query = query.filter(Stock.customer_id == customer_id)
        stocks = query.order_by(Stock.id).all()
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning(f"[SOURCE] Reseller stocks unavailable, using summary rows only: {e}")
        return [
            StockOverview(
                stock_id=s.stock_id,
                stock_name=s.stock_name,
                customer_id=s.customer_id,
                customer_name=s.customer_name,
            )
            for s in summaries
        ]

    entries = []
    seen = set()
    for stock in stocks:
        summary = by_stock.get(stock.id)
        entries.append(StockOverview(
            stock_id=stock.id,
            stock_name=stock.name,
            customer_id=stock.customer_id if stock.customer_id is not None else (summary.customer_id if summary else None),
            customer_name=stock.customer.name if stock.customer else (summary.customer_name if summary else None),
        ))
        seen.add(stock.id)

    # Summary rows for stocks not flagged as resellers still belong to the overview
    for summary in summaries:
        if summary.stock_id not in seen:
            entries.append(StockOverview(
                stock_id=summary.stock_id,
                stock_name=summary.stock_name,
                customer_id=summary.customer_id,
                customer_name=summary.customer_name,
            ))
            seen.add(summary.stock_id)

    return entries


def _fetch_with_own_session(stock_id: int) -> List[ConsignmentLine]:
    """Worker: full line chain on a dedicated session."""
    session = new_session()
    try:
        return resolve_lines(session, LineCriteria(stock_id=stock_id), LINE_SOURCES)
    finally:
        session.close()


def _degraded_lines(stock_id: int) -> List[ConsignmentLine]:
    """Live stock approximation for a reseller whose detail fetch failed."""
    session = new_session()
    try:
        return resolve_lines(session, LineCriteria(stock_id=stock_id), LIVE_STOCK_SOURCES)
    except (LedgerError, SQLAlchemyError) as e:
        logger.warning(f"[SOURCE] Live stock fallback failed for stock {stock_id}: {e}")
        return []
    finally:
        session.close()


def build_overview(session, customer_id=None, user_role=None, can_view_vat=False,
                   fetch_lines: Optional[Callable[[int], List[ConsignmentLine]]] = None,
                   workers: Optional[int] = None) -> Dict[str, Any]:
    """
    Totals for every reseller stock plus the global total.

    Detail lines of each reseller are fetched in parallel (one session per
    worker). A failed fetch degrades that reseller to the live stock tier,
    then to no lines; it never fails the whole overview.

    Args:
        session: Database session (reseller listing)
        customer_id: Optional reseller filter
        user_role: Caller role, echoed in meta
        can_view_vat: Capability derived from the caller's role
        fetch_lines: Per-stock line fetcher (defaults to the full line chain)
        workers: Pool size (defaults to CONSIGNMENT_FETCH_WORKERS; 1 runs inline)

    Returns:
        dict payload: {ok, stocks, global_totals, meta}
    """
    fetch_lines = fetch_lines or _fetch_with_own_session
    if workers is None:
        workers = current_app.config.get('CONSIGNMENT_FETCH_WORKERS', 4)

    entries = list_reseller_stocks(session, customer_id=customer_id)
    stock_ids = [entry.stock_id for entry in entries]

    # Release the request connection before workers open their own
    session.commit()

    def safe_fetch(stock_id):
        try:
            return fetch_lines(stock_id), False
        except (LedgerError, SQLAlchemyError) as e:
            logger.warning(f"[SOURCE] Detail fetch failed for stock {stock_id}, degrading: {e}")
            consignment_degraded_total.inc()
            return _degraded_lines(stock_id), True

    if workers > 1 and len(stock_ids) > 1:
        with ThreadPoolExecutor(max_workers=min(workers, len(stock_ids))) as executor:
            results = list(executor.map(safe_fetch, stock_ids))
    else:
        results = [safe_fetch(stock_id) for stock_id in stock_ids]

    computed = []
    for entry, (lines, degraded) in zip(entries, results):
        computed.append(StockOverview(
            stock_id=entry.stock_id,
            stock_name=entry.stock_name,
            customer_id=entry.customer_id,
            customer_name=entry.customer_name,
            line_count=len(lines),
            totals=per_stock_totals(lines),
            degraded=degraded,
        ))

    # Order on real amounts, redact afterwards
    ordered = sorted_summary(computed)
    total = global_totals(entry.totals for entry in computed)

    stocks = []
    for entry in ordered:
        stocks.append({
            'stock_id': entry.stock_id,
            'stock_name': entry.stock_name,
            'customer_id': entry.customer_id,
            'customer_name': entry.customer_name,
            'line_count': entry.line_count,
            'degraded': entry.degraded,
            'totals': redact(entry.totals, can_view_vat).to_dict(),
        })

    return {
        'ok': True,
        'stocks': stocks,
        'global_totals': redact(total, can_view_vat).to_dict(),
        'meta': {
            'user_role': user_role,
            'can_view_vat': can_view_vat,
            'filters': {'customer_id': customer_id},
            'degraded_stocks': [entry.stock_id for entry in ordered if entry.degraded],
        },
    }
