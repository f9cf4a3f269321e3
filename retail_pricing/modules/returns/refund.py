"""
modules/returns/refund.py

Refund proration for (partial) returns against a frozen invoice.

For a paid line with quantity Q, frozen subtotal S and frozen product
discount D, and an invoice-wide order discount O spread over the paid base
B = Σ quantity × unit_price, the cumulative entitlement after n units have
come back is

    R(n) = round_half_up(max(0, n × (S − D) / Q − O × n × unit_price / B))

Decimal arithmetic is exact up to that single rounding. A request for q
more units refunds R(prev + q) − R(prev); summed over any sequence of
returns this telescopes to R(Q), so successive partial refunds never drift
above what the customer paid. Gift lines refund their frozen residual
(zero for free gifts) and carry no share of the order discount.

The reclaimed discount reported for a line is its gross share minus its
refund, so gross - reclaimed == refund holds per line and per return even
where separate rounding of the two terms would differ by a cent.

Only the amounts frozen on the invoice are read; promotion rules are never
re-evaluated.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping

from ...database.repositories.invoices_repo import INVOICE_PAID, Invoice, InvoiceItem
from ...errors import (
    LineItemNotFoundError,
    OverReturnRequestedError,
    RefundInvariantError,
    ReturnValidationError,
)
from ...utils.helpers import ZERO, quantize_money
from ...utils.validators import is_positive_int
from .eligibility import ReturnLedger, available_to_return

ROUNDING_UNIT = Decimal("0.01")


@dataclass(frozen=True)
class ReturnLineRequest:
    line_item_id: int
    quantity: int


@dataclass(frozen=True)
class RefundLine:
    line_item_id: int
    product_unit_id: int
    quantity: int
    price: Decimal
    subtotal: Decimal
    discounted_price: Decimal
    discounted_subtotal: Decimal
    maximum_refundable_quantity: int
    total_cart_discount_amount: Decimal
    refund_amount: Decimal
    is_gift: bool = False

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.line_item_id,
            "product_unit_id": self.product_unit_id,
            "quantity": self.quantity,
            "price": self.price,
            "subtotal": self.subtotal,
            "discounted_price": self.discounted_price,
            "discounted_subtotal": self.discounted_subtotal,
            "maximum_refundable_quantity": self.maximum_refundable_quantity,
            "total_cart_discount_amount": self.total_cart_discount_amount,
            "refund_amount": self.refund_amount,
            "is_gift": self.is_gift,
        }


@dataclass(frozen=True)
class RefundResult:
    invoice_id: int
    invoice_number: str
    lines: tuple[RefundLine, ...]
    gross_refund: Decimal
    reclaimed_discount: Decimal
    maximum_refundable: Decimal

    @property
    def final_refund(self) -> Decimal:
        return self.maximum_refundable

    def to_dict(self) -> dict:
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "maximum_refundable": self.maximum_refundable,
            "refund_line_items": [ln.to_dict() for ln in self.lines],
            "transaction": {
                "gross_refund": self.gross_refund,
                "reclaimed_discount": self.reclaimed_discount,
                "final_refund": self.final_refund,
            },
        }


class LineEntitlement:
    """Cumulative refund functions for one invoice line."""

    def __init__(self, item: InvoiceItem, order_discount: Decimal, paid_base: Decimal):
        self.item = item
        self.quantity = item.quantity
        if item.is_gift:
            self.net_total = item.line_total
            self.order_discount = ZERO
        else:
            self.net_total = item.line_subtotal - item.discount_amount
            self.order_discount = order_discount if paid_base > ZERO else ZERO
        self.paid_base = paid_base

    @property
    def unit_net(self) -> Decimal:
        return self.net_total / self.quantity

    def _gross_exact(self, n: int) -> Decimal:
        return n * self.net_total / self.quantity

    def _reclaim_exact(self, n: int) -> Decimal:
        if self.order_discount == ZERO:
            return ZERO
        return self.order_discount * (n * self.item.unit_price) / self.paid_base

    def gross(self, n: int) -> Decimal:
        return quantize_money(self._gross_exact(n))

    def refund(self, n: int) -> Decimal:
        exact = self._gross_exact(n) - self._reclaim_exact(n)
        return quantize_money(exact if exact > ZERO else ZERO)


def normalize_request(lines) -> "OrderedDict[int, int]":
    """
    Group a request per line id, summing quantities. Accepts
    ReturnLineRequest objects, {"line_item_id", "quantity"} mappings, a
    {line_item_id: quantity} mapping, or (line_item_id, quantity) pairs.
    """
    if isinstance(lines, Mapping):
        pairs = list(lines.items())
    else:
        pairs = []
        for ln in lines or ():
            if isinstance(ln, ReturnLineRequest):
                pairs.append((ln.line_item_id, ln.quantity))
            elif isinstance(ln, Mapping):
                pairs.append((ln.get("line_item_id"), ln.get("quantity")))
            else:
                line_item_id, quantity = ln
                pairs.append((line_item_id, quantity))

    grouped: "OrderedDict[int, int]" = OrderedDict()
    for line_item_id, quantity in pairs:
        if not is_positive_int(quantity):
            raise ReturnValidationError(
                f"Return quantity for line {line_item_id} must be an integer >= 1 (got {quantity!r})"
            )
        try:
            key = int(line_item_id)
        except (TypeError, ValueError) as e:
            raise ReturnValidationError(f"Invalid line item id {line_item_id!r}") from e
        grouped[key] = grouped.get(key, 0) + quantity
    return grouped


def compute_refund(
    invoice: Invoice,
    ledger: ReturnLedger,
    lines: Iterable,
) -> RefundResult:
    """
    Validate a return request against the ledger and prorate its refund.

    Raises ReturnValidationError (empty/malformed request, invoice not
    PAID), LineItemNotFoundError, OverReturnRequestedError (whole request
    rejected, with per-line availability) or RefundInvariantError.
    """
    if invoice.status != INVOICE_PAID:
        raise ReturnValidationError(
            f"Invoice {invoice.invoice_number} is {invoice.status}; only PAID invoices accept returns"
        )
    requested = normalize_request(lines)
    if not requested:
        raise ReturnValidationError("Return request has no lines")

    availability = {a.line_item_id: a for a in available_to_return(invoice, ledger)}
    for line_item_id in requested:
        if line_item_id not in availability:
            raise LineItemNotFoundError(line_item_id, invoice.invoice_id)

    violations = {
        lid: (qty, availability[lid].available_quantity)
        for lid, qty in requested.items()
        if qty > availability[lid].available_quantity
    }
    if violations:
        raise OverReturnRequestedError(
            violations, {lid: a.available_quantity for lid, a in availability.items()}
        )

    paid_base = invoice.paid_base
    entitlements = {
        item.item_id: LineEntitlement(item, invoice.order_discount, paid_base)
        for item in invoice.items
    }

    refund_lines = []
    for item in invoice.items:
        qty = requested.get(item.item_id)
        if qty is None:
            continue
        ent = entitlements[item.item_id]
        before = availability[item.item_id].returned_quantity
        after = before + qty
        gross = ent.gross(after) - ent.gross(before)
        refund = ent.refund(after) - ent.refund(before)
        refund_lines.append(
            RefundLine(
                line_item_id=item.item_id,
                product_unit_id=item.product_unit_id,
                quantity=qty,
                price=item.unit_price,
                subtotal=quantize_money(qty * item.unit_price),
                discounted_price=quantize_money(ent.unit_net),
                discounted_subtotal=gross,
                maximum_refundable_quantity=availability[item.item_id].available_quantity,
                total_cart_discount_amount=gross - refund,
                refund_amount=refund,
                is_gift=item.is_gift,
            )
        )

    cumulative = sum(
        (
            ent.refund(availability[lid].returned_quantity + requested.get(lid, 0))
            for lid, ent in entitlements.items()
        ),
        ZERO,
    )
    limit = invoice.total_amount + ROUNDING_UNIT * len(invoice.items)
    if cumulative > limit:
        raise RefundInvariantError(
            f"Refunds on invoice {invoice.invoice_number} would reach {cumulative}, "
            f"above the amount paid ({invoice.total_amount})",
            invoice_id=invoice.invoice_id,
            entitlement=cumulative,
            limit=limit,
        )

    return RefundResult(
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        lines=tuple(refund_lines),
        gross_refund=sum((ln.discounted_subtotal for ln in refund_lines), ZERO),
        reclaimed_discount=sum((ln.total_cart_discount_amount for ln in refund_lines), ZERO),
        maximum_refundable=sum((ln.refund_amount for ln in refund_lines), ZERO),
    )
