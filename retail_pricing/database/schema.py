from pathlib import Path
import logging
import sqlite3
import sys

_log = logging.getLogger(__name__)

SQL = r"""
PRAGMA foreign_keys = ON;

/* ======================== CATALOG ======================== */

CREATE TABLE IF NOT EXISTS categories (
    category_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT UNIQUE NOT NULL
);

/* one sellable unit of a product (e.g. "Milk / carton"); price is a decimal string */
CREATE TABLE IF NOT EXISTS product_units (
    product_unit_id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_name    TEXT NOT NULL,
    unit_name       TEXT NOT NULL DEFAULT 'unit',
    category_id     INTEGER,
    price           TEXT NOT NULL CHECK (CAST(price AS REAL) >= 0),
    is_active       INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0,1)),
    FOREIGN KEY (category_id) REFERENCES categories(category_id)
);
CREATE INDEX IF NOT EXISTS idx_product_units_category ON product_units(category_id);

/* ======================== INVENTORY ======================== */

CREATE TABLE IF NOT EXISTS stock (
    product_unit_id  INTEGER PRIMARY KEY,
    quantity_on_hand INTEGER NOT NULL DEFAULT 0 CHECK (quantity_on_hand >= 0),
    FOREIGN KEY (product_unit_id) REFERENCES product_units(product_unit_id) ON DELETE CASCADE
);

/* signed movements: sales are negative, returns and adjustments positive or negative */
CREATE TABLE IF NOT EXISTS inventory_transactions (
    transaction_id   INTEGER PRIMARY KEY AUTOINCREMENT,
    product_unit_id  INTEGER NOT NULL,
    transaction_type TEXT NOT NULL CHECK (transaction_type IN ('sale','return','adjustment')),
    quantity         INTEGER NOT NULL CHECK (quantity <> 0),
    reference_table  TEXT,
    reference_id     INTEGER,
    notes            TEXT,
    created_at       TEXT NOT NULL DEFAULT (datetime('now','localtime')),
    FOREIGN KEY (product_unit_id) REFERENCES product_units(product_unit_id)
);
CREATE INDEX IF NOT EXISTS idx_inv_tx_product ON inventory_transactions(product_unit_id);
CREATE INDEX IF NOT EXISTS idx_inv_tx_reference ON inventory_transactions(reference_table, reference_id);

/* ======================== PROMOTIONS ======================== */

CREATE TABLE IF NOT EXISTS promotion_headers (
    promotion_id  INTEGER PRIMARY KEY AUTOINCREMENT,
    name          TEXT NOT NULL,
    description   TEXT,
    start_date    TEXT NOT NULL,
    end_date      TEXT,
    manual_status TEXT NOT NULL DEFAULT 'ACTIVE'
                  CHECK (manual_status IN ('ACTIVE','PAUSED','CANCELLED')),
    created_at    TEXT NOT NULL DEFAULT (datetime('now','localtime'))
);

CREATE TABLE IF NOT EXISTS promotion_lines (
    promotion_line_id INTEGER PRIMARY KEY AUTOINCREMENT,
    promotion_id      INTEGER NOT NULL,
    promotion_code    TEXT UNIQUE NOT NULL,
    promotion_type    TEXT NOT NULL
                      CHECK (promotion_type IN ('PRODUCT_DISCOUNT','ORDER_DISCOUNT','BUY_X_GET_Y')),
    name              TEXT NOT NULL,
    description       TEXT,
    start_date        TEXT NOT NULL,
    end_date          TEXT,
    manual_status     TEXT NOT NULL DEFAULT 'ACTIVE'
                      CHECK (manual_status IN ('ACTIVE','PAUSED','CANCELLED')),
    usage_limit       INTEGER CHECK (usage_limit IS NULL OR usage_limit >= 1),
    usage_count       INTEGER NOT NULL DEFAULT 0 CHECK (usage_count >= 0),
    created_at        TEXT NOT NULL DEFAULT (datetime('now','localtime')),
    CHECK (usage_limit IS NULL OR usage_count <= usage_limit),
    FOREIGN KEY (promotion_id) REFERENCES promotion_headers(promotion_id)
);
CREATE INDEX IF NOT EXISTS idx_promotion_lines_header ON promotion_lines(promotion_id);

/*
  Variant parameters live in one table with nullable columns per kind.
  Replacing a detail inserts a new row and stamps the old one superseded,
  so invoices keep pointing at the exact parameters they were priced with.
*/
CREATE TABLE IF NOT EXISTS promotion_details (
    detail_id                INTEGER PRIMARY KEY AUTOINCREMENT,
    promotion_line_id        INTEGER NOT NULL,
    detail_type              TEXT NOT NULL
                             CHECK (detail_type IN ('PRODUCT_DISCOUNT','ORDER_DISCOUNT','BUY_X_GET_Y')),
    discount_type            TEXT CHECK (discount_type IN ('PERCENTAGE','FIXED_AMOUNT')),
    discount_value           TEXT,
    apply_to_type            TEXT CHECK (apply_to_type IN ('ALL','PRODUCT','CATEGORY')),
    apply_to_target_id       INTEGER,
    min_order_value          TEXT,
    min_promotion_value      TEXT,
    min_promotion_quantity   INTEGER,
    max_discount_value       TEXT,
    min_order_total_value    TEXT,
    min_order_total_quantity INTEGER,
    buy_product_id           INTEGER,
    buy_min_quantity         INTEGER,
    buy_min_value            TEXT,
    gift_product_id          INTEGER,
    gift_quantity            INTEGER,
    gift_discount_type       TEXT CHECK (gift_discount_type IN ('FREE','PERCENTAGE','FIXED_AMOUNT')),
    gift_discount_value      TEXT,
    gift_max_quantity        INTEGER,
    created_at               TEXT NOT NULL DEFAULT (datetime('now','localtime')),
    superseded_at            TEXT,
    FOREIGN KEY (promotion_line_id) REFERENCES promotion_lines(promotion_line_id) ON DELETE CASCADE
);
/* exactly one current detail per line */
CREATE UNIQUE INDEX IF NOT EXISTS idx_promotion_details_current
ON promotion_details(promotion_line_id) WHERE superseded_at IS NULL;

/* ======================== INVOICES ======================== */

CREATE TABLE IF NOT EXISTS invoices (
    invoice_id         INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_number     TEXT UNIQUE NOT NULL,
    status             TEXT NOT NULL DEFAULT 'PAID' CHECK (status IN ('PAID','RETURNED')),
    payment_method     TEXT NOT NULL CHECK (payment_method IN ('CASH','CARD')),
    subtotal           TEXT NOT NULL,
    line_item_discount TEXT NOT NULL,
    order_discount     TEXT NOT NULL,
    gift_total         TEXT NOT NULL DEFAULT '0',
    total_discount     TEXT NOT NULL,
    total_amount       TEXT NOT NULL CHECK (CAST(total_amount AS REAL) >= 0),
    amount_paid        TEXT NOT NULL,
    change_amount      TEXT NOT NULL,
    employee_id        INTEGER NOT NULL,
    customer_id        INTEGER,
    priced_at          TEXT NOT NULL,
    created_at         TEXT NOT NULL DEFAULT (datetime('now','localtime'))
);

/* returned_quantity is the per-line return ledger (cumulative, only increases) */
CREATE TABLE IF NOT EXISTS invoice_items (
    item_id           INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_id        INTEGER NOT NULL,
    line_no           INTEGER NOT NULL,
    product_unit_id   INTEGER NOT NULL,
    product_name      TEXT NOT NULL,
    unit_name         TEXT NOT NULL,
    quantity          INTEGER NOT NULL CHECK (quantity >= 1),
    unit_price        TEXT NOT NULL,
    line_subtotal     TEXT NOT NULL,
    discount_amount   TEXT NOT NULL DEFAULT '0',
    line_total        TEXT NOT NULL,
    is_gift           INTEGER NOT NULL DEFAULT 0 CHECK (is_gift IN (0,1)),
    source_item_id    INTEGER,
    returned_quantity INTEGER NOT NULL DEFAULT 0
                      CHECK (returned_quantity >= 0 AND returned_quantity <= quantity),
    UNIQUE (invoice_id, line_no),
    FOREIGN KEY (invoice_id) REFERENCES invoices(invoice_id) ON DELETE CASCADE,
    FOREIGN KEY (product_unit_id) REFERENCES product_units(product_unit_id),
    FOREIGN KEY (source_item_id) REFERENCES invoice_items(item_id)
);
CREATE INDEX IF NOT EXISTS idx_invoice_items_invoice ON invoice_items(invoice_id);

/* frozen promotions: scope LINE rows point at an item, ORDER rows do not */
CREATE TABLE IF NOT EXISTS applied_promotions (
    applied_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_id          INTEGER NOT NULL,
    item_id             INTEGER,
    scope               TEXT NOT NULL CHECK (scope IN ('LINE','ORDER')),
    promotion_line_id   INTEGER NOT NULL,
    promotion_code      TEXT NOT NULL,
    promotion_name      TEXT NOT NULL,
    promotion_type      TEXT NOT NULL,
    promotion_detail_id INTEGER,
    summary             TEXT NOT NULL,
    discount_type       TEXT NOT NULL,
    discount_value      TEXT,
    discount_amount     TEXT NOT NULL,
    source_item_id      INTEGER,
    CHECK ((scope = 'LINE' AND item_id IS NOT NULL) OR (scope = 'ORDER' AND item_id IS NULL)),
    FOREIGN KEY (invoice_id) REFERENCES invoices(invoice_id) ON DELETE CASCADE,
    FOREIGN KEY (item_id) REFERENCES invoice_items(item_id) ON DELETE CASCADE,
    FOREIGN KEY (promotion_line_id) REFERENCES promotion_lines(promotion_line_id)
);
CREATE INDEX IF NOT EXISTS idx_applied_promotions_invoice ON applied_promotions(invoice_id);

/* ======================== RETURNS ======================== */

CREATE TABLE IF NOT EXISTS returns (
    return_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    return_code        TEXT UNIQUE NOT NULL,
    invoice_id         INTEGER NOT NULL,
    reason_note        TEXT,
    gross_refund       TEXT NOT NULL,
    reclaimed_discount TEXT NOT NULL,
    final_refund       TEXT NOT NULL CHECK (CAST(final_refund AS REAL) >= 0),
    status             TEXT NOT NULL DEFAULT 'COMPLETED'
                       CHECK (status IN ('COMPLETED')),
    created_at         TEXT NOT NULL DEFAULT (datetime('now','localtime')),
    FOREIGN KEY (invoice_id) REFERENCES invoices(invoice_id)
);
CREATE INDEX IF NOT EXISTS idx_returns_invoice ON returns(invoice_id);

CREATE TABLE IF NOT EXISTS return_items (
    return_item_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    return_id          INTEGER NOT NULL,
    item_id            INTEGER NOT NULL,
    quantity           INTEGER NOT NULL CHECK (quantity >= 1),
    gross_refund       TEXT NOT NULL,
    reclaimed_discount TEXT NOT NULL,
    refund_amount      TEXT NOT NULL,
    FOREIGN KEY (return_id) REFERENCES returns(return_id) ON DELETE CASCADE,
    FOREIGN KEY (item_id) REFERENCES invoice_items(item_id)
);
CREATE INDEX IF NOT EXISTS idx_return_items_item ON return_items(item_id);
"""


def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply the (idempotent) schema on an open connection."""
    conn.executescript(SQL)


def init_schema(db_path: Path | str = "retail.db") -> Path:
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        apply_schema(conn)
        conn.commit()
    finally:
        conn.close()
    _log.info("schema applied to %s", db_path)
    return db_path


if __name__ == "__main__":
    target = sys.argv[1] if len(sys.argv) > 1 else Path(__file__).resolve().parents[1] / "data" / "retail.db"
    init_schema(target)
