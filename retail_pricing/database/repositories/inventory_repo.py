from __future__ import annotations

"""
Repository for stock levels and the inventory transaction journal.

Stock moves only through `debit`/`credit`/`add_adjustment`. Debits are
compare-and-swap UPDATEs (`... WHERE quantity_on_hand >= ?`) whose row count
is checked, so two writers can never take the last unit twice. Callers run
them inside `database.atomic` together with the rest of their write.

Conventions:
- List-returning methods yield `list[dict]` (sqlite3.Row -> dict).
- Quantities are integers (units of a product unit).
"""

import sqlite3
from typing import Dict, List

from ...errors import InsufficientStockError
from .. import atomic


class InventoryRepo:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def on_hand(self, product_unit_id: int) -> int:
        row = self.conn.execute(
            "SELECT quantity_on_hand FROM stock WHERE product_unit_id = ?",
            (int(product_unit_id),),
        ).fetchone()
        return int(row["quantity_on_hand"]) if row else 0

    def transactions_for(self, reference_table: str, reference_id: int) -> List[Dict]:
        """Journal rows written for one invoice/return, oldest first."""
        rows = self.conn.execute(
            """
            SELECT transaction_id, product_unit_id, transaction_type, quantity,
                   reference_table, reference_id, notes, created_at
            FROM inventory_transactions
            WHERE reference_table = ? AND reference_id = ?
            ORDER BY transaction_id
            """,
            (reference_table, int(reference_id)),
        ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Writes (caller owns the transaction)
    # ------------------------------------------------------------------
    def debit(
        self,
        product_unit_id: int,
        quantity: int,
        *,
        reference_table: str | None = None,
        reference_id: int | None = None,
        notes: str | None = None,
    ) -> int:
        """
        Take `quantity` units out of stock. Raises InsufficientStockError
        (nothing written) when fewer are on hand. Returns the new level.
        """
        pid, qty = int(product_unit_id), int(quantity)
        cur = self.conn.execute(
            """
            UPDATE stock
               SET quantity_on_hand = quantity_on_hand - ?
             WHERE product_unit_id = ? AND quantity_on_hand >= ?
            """,
            (qty, pid, qty),
        )
        if cur.rowcount != 1:
            raise InsufficientStockError(pid, qty, self.on_hand(pid))
        self._journal(pid, "sale", -qty, reference_table, reference_id, notes)
        return self.on_hand(pid)

    def credit(
        self,
        product_unit_id: int,
        quantity: int,
        *,
        reference_table: str | None = None,
        reference_id: int | None = None,
        notes: str | None = None,
        transaction_type: str = "return",
    ) -> int:
        pid, qty = int(product_unit_id), int(quantity)
        self.conn.execute(
            """
            INSERT INTO stock(product_unit_id, quantity_on_hand) VALUES (?, ?)
            ON CONFLICT(product_unit_id) DO UPDATE
               SET quantity_on_hand = quantity_on_hand + excluded.quantity_on_hand
            """,
            (pid, qty),
        )
        self._journal(pid, transaction_type, qty, reference_table, reference_id, notes)
        return self.on_hand(pid)

    def add_adjustment(self, product_unit_id: int, quantity: int, notes: str | None = None) -> int:
        """
        Receive (positive) or write off (negative) stock outside a sale.
        Runs in its own transaction; returns the new level.
        """
        pid, qty = int(product_unit_id), int(quantity)
        with atomic(self.conn):
            if qty > 0:
                return self.credit(pid, qty, notes=notes, transaction_type="adjustment")
            if qty == 0:
                return self.on_hand(pid)
            cur = self.conn.execute(
                "UPDATE stock SET quantity_on_hand = quantity_on_hand - ? "
                "WHERE product_unit_id = ? AND quantity_on_hand >= ?",
                (-qty, pid, -qty),
            )
            if cur.rowcount != 1:
                raise InsufficientStockError(pid, -qty, self.on_hand(pid))
            self._journal(pid, "adjustment", qty, None, None, notes)
            return self.on_hand(pid)

    def _journal(self, pid, transaction_type, quantity, reference_table, reference_id, notes) -> None:
        self.conn.execute(
            """
            INSERT INTO inventory_transactions
                (product_unit_id, transaction_type, quantity, reference_table, reference_id, notes)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (pid, transaction_type, quantity, reference_table, reference_id, notes),
        )

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_dict(r: sqlite3.Row | dict) -> Dict:
        return dict(r)
