from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import sqlite3
from typing import TYPE_CHECKING, Dict

from ...errors import OverReturnRequestedError, ReturnNotFoundError
from ...utils.helpers import to_decimal

if TYPE_CHECKING:
    from ...modules.returns.refund import RefundResult

RETURN_COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class LedgerEntry:
    item_id: int
    original_quantity: int
    returned_quantity: int

    @property
    def available_quantity(self) -> int:
        return max(self.original_quantity - self.returned_quantity, 0)


@dataclass(frozen=True)
class ReturnItemRecord:
    return_item_id: int
    line_item_id: int
    quantity: int
    gross_refund: Decimal
    reclaimed_discount: Decimal
    refund_amount: Decimal


@dataclass(frozen=True)
class ReturnRecord:
    return_id: int
    return_code: str
    invoice_id: int
    reason_note: str | None
    gross_refund: Decimal
    reclaimed_discount: Decimal
    final_refund: Decimal
    status: str
    created_at: str
    items: tuple[ReturnItemRecord, ...] = ()

    def to_dict(self) -> dict:
        return {
            "return_id": self.return_id,
            "return_code": self.return_code,
            "invoice_id": self.invoice_id,
            "reason_note": self.reason_note,
            "gross_refund": self.gross_refund,
            "reclaimed_discount_amount": self.reclaimed_discount,
            "final_refund_amount": self.final_refund,
            "status": self.status,
            "created_at": self.created_at,
            "items": [
                {
                    "line_item_id": i.line_item_id,
                    "quantity": i.quantity,
                    "gross_refund": i.gross_refund,
                    "reclaimed_discount": i.reclaimed_discount,
                    "refund_amount": i.refund_amount,
                }
                for i in self.items
            ],
        }


class ReturnsRepo:
    """
    Return ledger and append-only return records.

    The ledger lives on invoice_items.returned_quantity. `advance_ledger`
    moves it with a compare-and-swap on the value the refund was computed
    against; the schema CHECK (returned_quantity <= quantity) backs it up.
    """

    def __init__(self, conn: sqlite3.Connection):
        conn.row_factory = sqlite3.Row
        self.conn = conn

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    def ledger(self, invoice_id: int) -> Dict[int, LedgerEntry]:
        rows = self.conn.execute(
            "SELECT item_id, quantity, returned_quantity FROM invoice_items WHERE invoice_id = ?",
            (int(invoice_id),),
        ).fetchall()
        return {
            int(r["item_id"]): LedgerEntry(int(r["item_id"]), int(r["quantity"]), int(r["returned_quantity"]))
            for r in rows
        }

    def returned_so_far(self, invoice_id: int) -> Dict[int, int]:
        """
        Per-line returned quantity summed from return_items. Matches the
        ledger column; used to audit the ledger.
        """
        rows = self.conn.execute(
            """
            SELECT ii.item_id,
                   COALESCE((
                       SELECT SUM(ri.quantity)
                       FROM return_items ri
                       JOIN returns r ON r.return_id = ri.return_id
                       WHERE ri.item_id = ii.item_id AND r.status = 'COMPLETED'
                   ), 0) AS returned
            FROM invoice_items ii
            WHERE ii.invoice_id = ?
            """,
            (int(invoice_id),),
        ).fetchall()
        return {int(r["item_id"]): int(r["returned"]) for r in rows}

    def advance_ledger(self, invoice_id: int, item_id: int, expected_returned: int, quantity: int) -> None:
        cur = self.conn.execute(
            """
            UPDATE invoice_items
               SET returned_quantity = returned_quantity + ?
             WHERE item_id = ? AND invoice_id = ?
               AND returned_quantity = ?
               AND returned_quantity + ? <= quantity
            """,
            (int(quantity), int(item_id), int(invoice_id), int(expected_returned), int(quantity)),
        )
        if cur.rowcount != 1:
            ledger = self.ledger(invoice_id)
            entry = ledger.get(int(item_id))
            available = entry.available_quantity if entry else 0
            raise OverReturnRequestedError(
                {int(item_id): (int(quantity), available)},
                {lid: e.available_quantity for lid, e in ledger.items()},
            )

    # ------------------------------------------------------------------
    # Records (caller owns the transaction)
    # ------------------------------------------------------------------
    def code_exists(self, return_code: str) -> bool:
        return self.conn.execute(
            "SELECT 1 FROM returns WHERE return_code = ?", (return_code,)
        ).fetchone() is not None

    def insert(self, return_code: str, result: RefundResult, reason_note: str | None) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO returns
                (return_code, invoice_id, reason_note, gross_refund, reclaimed_discount,
                 final_refund, status)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                return_code, result.invoice_id, reason_note,
                str(result.gross_refund), str(result.reclaimed_discount),
                str(result.final_refund), RETURN_COMPLETED,
            ),
        )
        return_id = int(cur.lastrowid)
        self.conn.executemany(
            """
            INSERT INTO return_items
                (return_id, item_id, quantity, gross_refund, reclaimed_discount, refund_amount)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    return_id, ln.line_item_id, ln.quantity, str(ln.discounted_subtotal),
                    str(ln.total_cart_discount_amount), str(ln.refund_amount),
                )
                for ln in result.lines
            ],
        )
        return return_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, return_id: int) -> ReturnRecord:
        h = self.conn.execute("SELECT * FROM returns WHERE return_id = ?", (int(return_id),)).fetchone()
        if h is None:
            raise ReturnNotFoundError(f"Return not found: {return_id}")
        return self._load(h)

    def _load(self, h: sqlite3.Row) -> ReturnRecord:
        items = self.conn.execute(
            "SELECT * FROM return_items WHERE return_id = ? ORDER BY return_item_id",
            (int(h["return_id"]),),
        ).fetchall()
        return ReturnRecord(
            return_id=int(h["return_id"]),
            return_code=h["return_code"],
            invoice_id=int(h["invoice_id"]),
            reason_note=h["reason_note"],
            gross_refund=to_decimal(h["gross_refund"]),
            reclaimed_discount=to_decimal(h["reclaimed_discount"]),
            final_refund=to_decimal(h["final_refund"]),
            status=h["status"],
            created_at=h["created_at"],
            items=tuple(
                ReturnItemRecord(
                    return_item_id=int(i["return_item_id"]),
                    line_item_id=int(i["item_id"]),
                    quantity=int(i["quantity"]),
                    gross_refund=to_decimal(i["gross_refund"]),
                    reclaimed_discount=to_decimal(i["reclaimed_discount"]),
                    refund_amount=to_decimal(i["refund_amount"]),
                )
                for i in items
            ),
        )
