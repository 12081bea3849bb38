"""Reconciliation service - folds a consignment's move history into a line aggregate."""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Any
import logging

from consignment_ledger.models.consignment_move import MoveType
from consignment_ledger.services.vat_regime import VatRegime, normalize_vat_regime
from consignment_ledger.services.pricing import ZERO, to_decimal, display_unit_price, total_line_price

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MoveRecord:
    """Plain move, same attributes as the ConsignmentMove model."""
    id: Optional[int]
    consignment_id: Optional[int]
    type: Any
    qty: Decimal
    unit_price_ht: Decimal = ZERO
    vat_rate: Decimal = ZERO
    vat_regime: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_move(cls, move) -> "MoveRecord":
        """Detached copy of a ConsignmentMove row."""
        return cls(
            id=move.id,
            consignment_id=move.consignment_id,
            type=move.type,
            qty=to_decimal(move.qty),
            unit_price_ht=to_decimal(move.unit_price_ht),
            vat_rate=to_decimal(move.vat_rate),
            vat_regime=move.vat_regime,
            created_at=move.created_at,
        )


@dataclass(frozen=True)
class LastMove:
    """Pricing carried by the most recent move of a consignment."""
    unit_price_ht: Decimal
    vat_rate: Decimal
    vat_regime: VatRegime
    created_at: Optional[datetime]


@dataclass(frozen=True)
class ConsignmentLineAggregate:
    """Quantities and amounts of one consignment, derived from its moves."""
    consignment_id: Optional[int]
    stock_id: Optional[int]
    product_id: Optional[int]
    qty_en_depot: Decimal = ZERO
    qty_facture_non_payee: Decimal = ZERO
    montant_ht: Decimal = ZERO
    tva_normal: Decimal = ZERO
    tva_marge: Decimal = ZERO
    last_move: Optional[LastMove] = field(default=None)

    @property
    def vat_regime(self) -> Optional[VatRegime]:
        return self.last_move.vat_regime if self.last_move else None

    @property
    def display_unit_price(self) -> Decimal:
        if self.last_move is None:
            return ZERO
        return display_unit_price(
            self.last_move.unit_price_ht,
            self.last_move.vat_rate,
            self.last_move.vat_regime,
        )

    @property
    def total_line_price(self) -> Decimal:
        return total_line_price(self.display_unit_price, self.qty_en_depot)

    @property
    def is_consistent(self) -> bool:
        """False when a running quantity went negative (upstream data problem)."""
        return self.qty_en_depot >= 0 and self.qty_facture_non_payee >= 0


def parse_move_type(value) -> Optional[MoveType]:
    """Map a MoveType or label ('out', 'PAYMENT') to MoveType, None if unknown."""
    if isinstance(value, MoveType):
        return value
    try:
        return MoveType(str(value or '').strip().upper())
    except ValueError:
        return None


def recency_key(move):
    # Moves without a timestamp never win against timestamped ones; id breaks ties
    created_at = getattr(move, 'created_at', None)
    move_id = getattr(move, 'id', None)
    return (
        created_at is not None,
        created_at if created_at is not None else datetime.min,
        move_id if move_id is not None else -1,
    )


def reconcile(moves: Iterable, consignment_id=None, stock_id=None, product_id=None) -> ConsignmentLineAggregate:
    """
    Fold all moves of one consignment into a ConsignmentLineAggregate.

    Rules:
    - OUT adds to qty_en_depot, RETURN subtracts.
    - INVOICE adds to qty_facture_non_payee, PAYMENT subtracts.
    - unit_price_ht * qty is added to montant_ht for OUT/INVOICE and
      subtracted for PAYMENT; RETURN leaves amounts untouched.
    - The VAT part (amount * vat_rate) goes to tva_normal or tva_marge.
    - last_move is the move with the latest created_at (ties: highest id).

    Summed fields do not depend on input order. Negative quantities are
    passed through as-is (logged), never clamped.

    Args:
        moves: ConsignmentMove models or MoveRecord objects, any order
        consignment_id, stock_id, product_id: Identity copied to the aggregate

    Returns:
        ConsignmentLineAggregate
    """
    qty_en_depot = ZERO
    qty_facture_non_payee = ZERO
    montant_ht = ZERO
    tva_normal = ZERO
    tva_marge = ZERO
    latest = None

    for move in moves:
        move_type = parse_move_type(move.type)
        if move_type is None:
            logger.warning(
                f"[LEDGER] Unknown move type {move.type!r} on consignment {consignment_id} "
                f"(move {getattr(move, 'id', None)}), ignored"
            )
            continue

        qty = to_decimal(move.qty)
        unit_price_ht = to_decimal(move.unit_price_ht)
        vat_rate = to_decimal(move.vat_rate)

        if move_type is MoveType.OUT:
            qty_en_depot += qty
        elif move_type is MoveType.RETURN:
            qty_en_depot -= qty
        elif move_type is MoveType.INVOICE:
            qty_facture_non_payee += qty
        elif move_type is MoveType.PAYMENT:
            qty_facture_non_payee -= qty

        if move_type in (MoveType.OUT, MoveType.INVOICE, MoveType.PAYMENT):
            delta = unit_price_ht * qty
            if move_type is MoveType.PAYMENT:
                delta = -delta
            montant_ht += delta
            if normalize_vat_regime(move.vat_regime) is VatRegime.MARGE:
                tva_marge += delta * vat_rate
            else:
                tva_normal += delta * vat_rate

        if latest is None or recency_key(move) > recency_key(latest):
            latest = move

    last_move = None
    if latest is not None:
        last_move = LastMove(
            unit_price_ht=to_decimal(latest.unit_price_ht),
            vat_rate=to_decimal(latest.vat_rate),
            vat_regime=normalize_vat_regime(latest.vat_regime),
            created_at=getattr(latest, 'created_at', None),
        )

    aggregate = ConsignmentLineAggregate(
        consignment_id=consignment_id,
        stock_id=stock_id,
        product_id=product_id,
        qty_en_depot=qty_en_depot,
        qty_facture_non_payee=qty_facture_non_payee,
        montant_ht=montant_ht,
        tva_normal=tva_normal,
        tva_marge=tva_marge,
        last_move=last_move,
    )

    if not aggregate.is_consistent:
        logger.warning(
            f"[LEDGER] Negative running quantity on consignment {consignment_id}: "
            f"en_depot={qty_en_depot}, facture_non_payee={qty_facture_non_payee}"
        )

    return aggregate
