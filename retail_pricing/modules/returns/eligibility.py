"""
How much of each invoice line can still come back.

The ledger is the per-line cumulative returned quantity; nothing here reads
storage, so the same function drives previews and request validation.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Mapping, Optional

from ...database.repositories.invoices_repo import Invoice
from ...database.repositories.returns_repo import LedgerEntry
from ...utils.helpers import ZERO, quantize_money

ReturnLedger = Mapping[int, LedgerEntry]


@dataclass(frozen=True)
class LineAvailability:
    line_item_id: int
    product_unit_id: int
    product_name: str
    original_quantity: int
    returned_quantity: int
    available_quantity: int
    unit_price: Decimal
    price_after_discount: Decimal
    is_fully_returned: bool
    is_gift: bool = False
    source_line_item_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.line_item_id,
            "product_unit_id": self.product_unit_id,
            "product_name": self.product_name,
            "original_quantity": self.original_quantity,
            "returned_quantity": self.returned_quantity,
            "available_quantity": self.available_quantity,
            "unit_price": self.unit_price,
            "price_after_discount": self.price_after_discount,
            "is_fully_returned": self.is_fully_returned,
            "is_gift": self.is_gift,
            "source_line_item_id": self.source_line_item_id,
        }


def ledger_from_invoice(invoice: Invoice) -> dict[int, LedgerEntry]:
    return {
        i.item_id: LedgerEntry(i.item_id, i.quantity, i.returned_quantity)
        for i in invoice.items
    }


def available_to_return(invoice: Invoice, ledger: ReturnLedger) -> list[LineAvailability]:
    """One entry per invoice line, in line order. Lines missing from the ledger have nothing returned."""
    out = []
    for item in invoice.items:
        entry = ledger.get(item.item_id) or LedgerEntry(item.item_id, item.quantity, 0)
        returned = min(entry.returned_quantity, item.quantity)
        available = max(item.quantity - returned, 0)
        out.append(
            LineAvailability(
                line_item_id=item.item_id,
                product_unit_id=item.product_unit_id,
                product_name=item.product_name,
                original_quantity=item.quantity,
                returned_quantity=returned,
                available_quantity=available,
                unit_price=item.unit_price,
                price_after_discount=quantize_money(item.line_total / item.quantity),
                is_fully_returned=available == 0,
                is_gift=item.is_gift,
                source_line_item_id=item.source_item_id,
            )
        )
    return out


def availability_totals(lines: list[LineAvailability]) -> dict:
    return {
        "original_quantity": sum(ln.original_quantity for ln in lines),
        "returned_quantity": sum(ln.returned_quantity for ln in lines),
        "available_quantity": sum(ln.available_quantity for ln in lines),
        "available_value": quantize_money(
            sum((ln.available_quantity * ln.price_after_discount for ln in lines), ZERO)
        ),
    }
