from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
import sqlite3
from typing import Optional

from ...errors import InvoiceNotFoundError
from ...modules.promotion.model import AppliedPromotion, PricedCart, PromotionType
from ...utils.helpers import ZERO, to_decimal


INVOICE_PAID = "PAID"
INVOICE_RETURNED = "RETURNED"


@dataclass(frozen=True)
class InvoiceItem:
    item_id: int
    line_no: int
    product_unit_id: int
    product_name: str
    unit_name: str
    quantity: int
    unit_price: Decimal
    line_subtotal: Decimal
    discount_amount: Decimal
    line_total: Decimal
    is_gift: bool
    source_item_id: Optional[int]
    returned_quantity: int
    promotion: Optional[AppliedPromotion] = None

    @property
    def available_quantity(self) -> int:
        return max(self.quantity - self.returned_quantity, 0)

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.item_id,
            "line_no": self.line_no,
            "product_unit_id": self.product_unit_id,
            "product_name": self.product_name,
            "unit_name": self.unit_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_subtotal": self.line_subtotal,
            "discount_amount": self.discount_amount,
            "line_total": self.line_total,
            "is_gift": self.is_gift,
            "source_line_item_id": self.source_item_id,
            "returned_quantity": self.returned_quantity,
            "promotion_applied": self.promotion.to_dict() if self.promotion else None,
        }


@dataclass(frozen=True)
class Invoice:
    invoice_id: int
    invoice_number: str
    status: str
    payment_method: str
    subtotal: Decimal
    line_item_discount: Decimal
    order_discount: Decimal
    gift_total: Decimal
    total_discount: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    change_amount: Decimal
    employee_id: int
    customer_id: Optional[int]
    priced_at: str
    created_at: str
    items: tuple[InvoiceItem, ...] = ()
    order_promotions: tuple[AppliedPromotion, ...] = ()

    @property
    def paid_items(self) -> tuple[InvoiceItem, ...]:
        return tuple(i for i in self.items if not i.is_gift)

    @property
    def paid_base(self) -> Decimal:
        """Σ quantity × unit_price over paid lines: the order discount's spread base."""
        return sum((i.quantity * i.unit_price for i in self.paid_items), ZERO)

    def item(self, item_id: int) -> InvoiceItem | None:
        for i in self.items:
            if i.item_id == item_id:
                return i
        return None

    def to_dict(self) -> dict:
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "status": self.status,
            "payment_method": self.payment_method,
            "items": [i.to_dict() for i in self.items],
            "applied_order_promotions": [p.to_dict() for p in self.order_promotions],
            "subtotal": self.subtotal,
            "line_item_discount": self.line_item_discount,
            "order_discount": self.order_discount,
            "gift_total": self.gift_total,
            "total_discount": self.total_discount,
            "total_amount": self.total_amount,
            "amount_paid": self.amount_paid,
            "change_amount": self.change_amount,
            "employee_id": self.employee_id,
            "customer_id": self.customer_id,
            "priced_at": self.priced_at,
            "created_at": self.created_at,
        }


def _money(v) -> str:
    return str(to_decimal(v))


class InvoicesRepo:
    """
    Append-only invoice store.

    Key behavior:
      - `insert` freezes a PricedCart verbatim: line amounts and applied
        promotions are copied, never recomputed. It must run inside the
        caller's write transaction (see CheckoutFinalizer).
      - The only later mutations are the per-line return ledger
        (invoice_items.returned_quantity, owned by ReturnsRepo) and the
        PAID -> RETURNED status flip.
    """

    def __init__(self, conn: sqlite3.Connection):
        # ensure rows behave like dicts/tuples
        conn.row_factory = sqlite3.Row
        self.conn = conn

    # ---------------------------------------------------------------------
    # WRITE
    # ---------------------------------------------------------------------
    def number_exists(self, invoice_number: str) -> bool:
        return self.conn.execute(
            "SELECT 1 FROM invoices WHERE invoice_number = ?", (invoice_number,)
        ).fetchone() is not None

    def insert(
        self,
        invoice_number: str,
        priced: PricedCart,
        *,
        payment_method: str,
        amount_paid: Decimal,
        change_amount: Decimal,
        employee_id: int,
        customer_id: int | None = None,
    ) -> int:
        total_discount = priced.line_item_discount + priced.order_discount
        cur = self.conn.execute(
            """
            INSERT INTO invoices
                (invoice_number, status, payment_method, subtotal, line_item_discount,
                 order_discount, gift_total, total_discount, total_amount,
                 amount_paid, change_amount, employee_id, customer_id, priced_at)
            VALUES (?, 'PAID', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                invoice_number, payment_method,
                _money(priced.subtotal), _money(priced.line_item_discount),
                _money(priced.order_discount), _money(priced.gift_total),
                _money(total_discount), _money(priced.total_payable),
                _money(amount_paid), _money(change_amount),
                int(employee_id), customer_id,
                priced.priced_at.isoformat(timespec="seconds"),
            ),
        )
        invoice_id = int(cur.lastrowid)

        # line_no is the cart line id; gifts point back at their source through it
        item_ids: dict[int, int] = {}
        for ln in priced.all_lines:
            cur = self.conn.execute(
                """
                INSERT INTO invoice_items
                    (invoice_id, line_no, product_unit_id, product_name, unit_name, quantity,
                     unit_price, line_subtotal, discount_amount, line_total, is_gift, source_item_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    invoice_id, ln.line_id, ln.product_unit_id, ln.product_name, ln.unit_name,
                    ln.quantity, _money(ln.unit_price), _money(ln.line_subtotal),
                    _money(ln.discount_amount), _money(ln.line_total), int(ln.is_gift),
                    item_ids.get(ln.source_line_id) if ln.source_line_id is not None else None,
                ),
            )
            item_ids[ln.line_id] = int(cur.lastrowid)
            if ln.promotion is not None:
                self._insert_applied(invoice_id, item_ids[ln.line_id], "LINE", ln.promotion,
                                     item_ids.get(ln.promotion.source_line_item_id))

        for promo in priced.order_promotions:
            self._insert_applied(invoice_id, None, "ORDER", promo, None)
        return invoice_id

    def _insert_applied(self, invoice_id, item_id, scope, promo: AppliedPromotion, source_item_id) -> None:
        self.conn.execute(
            """
            INSERT INTO applied_promotions
                (invoice_id, item_id, scope, promotion_line_id, promotion_code, promotion_name,
                 promotion_type, promotion_detail_id, summary, discount_type, discount_value,
                 discount_amount, source_item_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                invoice_id, item_id, scope, promo.promotion_line_id, promo.promotion_code,
                promo.promotion_name, PromotionType(promo.promotion_type).value,
                promo.promotion_detail_id, promo.summary, promo.discount_type,
                _money(promo.discount_value) if promo.discount_value is not None else None,
                _money(promo.discount_amount), source_item_id,
            ),
        )

    def mark_returned(self, invoice_id: int) -> bool:
        """PAID -> RETURNED once every line is fully returned. True if flipped."""
        cur = self.conn.execute(
            """
            UPDATE invoices SET status = 'RETURNED'
             WHERE invoice_id = ? AND status = 'PAID'
               AND NOT EXISTS (
                   SELECT 1 FROM invoice_items
                    WHERE invoice_id = ? AND returned_quantity < quantity
               )
            """,
            (int(invoice_id), int(invoice_id)),
        )
        return cur.rowcount == 1

    # ---------------------------------------------------------------------
    # READ
    # ---------------------------------------------------------------------
    def get(self, invoice_id: int) -> Invoice:
        h = self.conn.execute(
            "SELECT * FROM invoices WHERE invoice_id = ?", (int(invoice_id),)
        ).fetchone()
        if h is None:
            raise InvoiceNotFoundError(invoice_id)
        return self._load(h)

    def _load(self, h: sqlite3.Row) -> Invoice:
        invoice_id = int(h["invoice_id"])
        applied = self.conn.execute(
            "SELECT * FROM applied_promotions WHERE invoice_id = ? ORDER BY applied_id",
            (invoice_id,),
        ).fetchall()
        line_promos = {int(a["item_id"]): self._to_applied(a) for a in applied if a["scope"] == "LINE"}
        order_promos = tuple(self._to_applied(a) for a in applied if a["scope"] == "ORDER")

        rows = self.conn.execute(
            "SELECT * FROM invoice_items WHERE invoice_id = ? ORDER BY line_no",
            (invoice_id,),
        ).fetchall()
        items = tuple(
            InvoiceItem(
                item_id=int(r["item_id"]),
                line_no=int(r["line_no"]),
                product_unit_id=int(r["product_unit_id"]),
                product_name=r["product_name"],
                unit_name=r["unit_name"],
                quantity=int(r["quantity"]),
                unit_price=to_decimal(r["unit_price"]),
                line_subtotal=to_decimal(r["line_subtotal"]),
                discount_amount=to_decimal(r["discount_amount"]),
                line_total=to_decimal(r["line_total"]),
                is_gift=bool(r["is_gift"]),
                source_item_id=r["source_item_id"],
                returned_quantity=int(r["returned_quantity"]),
                promotion=line_promos.get(int(r["item_id"])),
            )
            for r in rows
        )
        return Invoice(
            invoice_id=invoice_id,
            invoice_number=h["invoice_number"],
            status=h["status"],
            payment_method=h["payment_method"],
            subtotal=to_decimal(h["subtotal"]),
            line_item_discount=to_decimal(h["line_item_discount"]),
            order_discount=to_decimal(h["order_discount"]),
            gift_total=to_decimal(h["gift_total"]),
            total_discount=to_decimal(h["total_discount"]),
            total_amount=to_decimal(h["total_amount"]),
            amount_paid=to_decimal(h["amount_paid"]),
            change_amount=to_decimal(h["change_amount"]),
            employee_id=int(h["employee_id"]),
            customer_id=h["customer_id"],
            priced_at=h["priced_at"],
            created_at=h["created_at"],
            items=items,
            order_promotions=order_promos,
        )

    @staticmethod
    def _to_applied(a: sqlite3.Row) -> AppliedPromotion:
        return AppliedPromotion(
            promotion_line_id=int(a["promotion_line_id"]),
            promotion_code=a["promotion_code"],
            promotion_name=a["promotion_name"],
            promotion_type=PromotionType(a["promotion_type"]),
            promotion_detail_id=a["promotion_detail_id"],
            summary=a["summary"],
            discount_type=a["discount_type"],
            discount_value=to_decimal(a["discount_value"]),
            discount_amount=to_decimal(a["discount_amount"]),
            source_line_item_id=a["source_item_id"],
        )
