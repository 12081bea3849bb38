"""Precomputed consignment views.

The views are optional: deployments that never ran ``flask consignments
create-views`` simply lack them, and readers fall back to the raw tables.
They are declared as lightweight ``table()`` constructs rather than mapped
classes so that ``Base.metadata.create_all`` never tries to create them.
"""
from sqlalchemy import table, column, text

LINES_VIEW_NAME = 'consignment_lines_view'
SUMMARY_VIEW_NAME = 'consignment_summary_by_stock'

consignment_lines_view = table(
    LINES_VIEW_NAME,
    column('consignment_id'),
    column('stock_id'),
    column('product_id'),
    column('customer_id'),
    column('product_name'),
    column('product_sku'),
    column('qty_en_depot'),
    column('qty_facture_non_payee'),
    column('montant_ht'),
    column('tva_normal'),
    column('tva_marge'),
    column('last_move_at'),
)

consignment_summary_by_stock = table(
    SUMMARY_VIEW_NAME,
    column('stock_id'),
    column('stock_name'),
    column('customer_id'),
    column('customer_name'),
    column('total_en_depot'),
    column('total_facture_non_payee'),
    column('total_ht'),
    column('total_ttc'),
    column('total_tva_normal'),
    column('total_tva_marge'),
)

# Same regime rule as services.vat_regime.normalize_vat_regime
_IS_MARGE = "LOWER(TRIM(COALESCE(m.vat_regime, ''))) IN ('margin', 'marge', 'tvm')"

_LINES_VIEW_SQL = f"""
CREATE VIEW {LINES_VIEW_NAME} AS
SELECT
    c.id AS consignment_id,
    c.stock_id AS stock_id,
    c.product_id AS product_id,
    c.customer_id AS customer_id,
    p.name AS product_name,
    p.sku AS product_sku,
    COALESCE(SUM(CASE WHEN m.type = 'OUT' THEN m.qty
                      WHEN m.type = 'RETURN' THEN -m.qty
                      ELSE 0 END), 0) AS qty_en_depot,
    COALESCE(SUM(CASE WHEN m.type = 'INVOICE' THEN m.qty
                      WHEN m.type = 'PAYMENT' THEN -m.qty
                      ELSE 0 END), 0) AS qty_facture_non_payee,
    COALESCE(SUM(CASE WHEN m.type IN ('OUT', 'INVOICE') THEN m.unit_price_ht * m.qty
                      WHEN m.type = 'PAYMENT' THEN -(m.unit_price_ht * m.qty)
                      ELSE 0 END), 0) AS montant_ht,
    COALESCE(SUM(CASE WHEN {_IS_MARGE} THEN 0
                      WHEN m.type IN ('OUT', 'INVOICE') THEN m.unit_price_ht * m.qty * m.vat_rate
                      WHEN m.type = 'PAYMENT' THEN -(m.unit_price_ht * m.qty * m.vat_rate)
                      ELSE 0 END), 0) AS tva_normal,
    COALESCE(SUM(CASE WHEN NOT ({_IS_MARGE}) THEN 0
                      WHEN m.type IN ('OUT', 'INVOICE') THEN m.unit_price_ht * m.qty * m.vat_rate
                      WHEN m.type = 'PAYMENT' THEN -(m.unit_price_ht * m.qty * m.vat_rate)
                      ELSE 0 END), 0) AS tva_marge,
    MAX(m.created_at) AS last_move_at
FROM consignments c
JOIN products p ON p.id = c.product_id
LEFT JOIN consignment_moves m ON m.consignment_id = c.id
GROUP BY c.id, c.stock_id, c.product_id, c.customer_id, p.name, p.sku
"""

_SUMMARY_VIEW_SQL = f"""
CREATE VIEW {SUMMARY_VIEW_NAME} AS
SELECT
    s.id AS stock_id,
    s.name AS stock_name,
    cu.id AS customer_id,
    cu.name AS customer_name,
    SUM(l.qty_en_depot) AS total_en_depot,
    SUM(l.qty_facture_non_payee) AS total_facture_non_payee,
    SUM(l.montant_ht) AS total_ht,
    SUM(l.montant_ht + l.tva_normal + l.tva_marge) AS total_ttc,
    SUM(l.tva_normal) AS total_tva_normal,
    SUM(l.tva_marge) AS total_tva_marge
FROM {LINES_VIEW_NAME} l
JOIN stocks s ON s.id = l.stock_id
LEFT JOIN customers cu ON cu.id = s.customer_id
GROUP BY s.id, s.name, cu.id, cu.name
"""


def create_views(connection):
    """Drop and recreate both views (portable SQL: PostgreSQL and SQLite)."""
    drop_views(connection)
    connection.execute(text(_LINES_VIEW_SQL))
    connection.execute(text(_SUMMARY_VIEW_SQL))


def drop_views(connection):
    """Drop both views if present (summary first, it depends on the lines view)."""
    connection.execute(text(f"DROP VIEW IF EXISTS {SUMMARY_VIEW_NAME}"))
    connection.execute(text(f"DROP VIEW IF EXISTS {LINES_VIEW_NAME}"))
