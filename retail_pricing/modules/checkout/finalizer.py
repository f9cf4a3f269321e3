"""
modules/checkout/finalizer.py

Turns a PricedCart into an immutable invoice.

Everything happens in one BEGIN IMMEDIATE transaction: usage counters are
bumped with a compare-and-swap per promotion line, the invoice with its
frozen lines and promotions is inserted, and stock is debited (also
compare-and-swap) per product unit for paid and gift lines together. Any
failure rolls the whole checkout back.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
import logging
import sqlite3

from ...constants import INVOICE_PREFIX
from ...database import atomic
from ...database.repositories.inventory_repo import InventoryRepo
from ...database.repositories.invoices_repo import Invoice, InvoicesRepo
from ...database.repositories.promotions_repo import PromotionsRepo
from ...errors import CartValidationError, DomainError, PaymentValidationError
from ...modules.promotion.model import PricedCart
from ...utils.helpers import make_document_number, to_decimal
from ...utils.loggers import get_audit_logger, log_event


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"


@dataclass(frozen=True)
class PaymentInfo:
    method: PaymentMethod
    amount_paid: Decimal

    def __post_init__(self):
        raw = self.method.value if isinstance(self.method, PaymentMethod) else str(self.method).strip().upper()
        try:
            object.__setattr__(self, "method", PaymentMethod(raw))
        except ValueError as e:
            raise PaymentValidationError(
                f"Unsupported payment method {self.method!r}; use CASH or CARD"
            ) from e
        try:
            amount = to_decimal(self.amount_paid)
        except ValueError as e:
            raise PaymentValidationError(f"Invalid amount paid {self.amount_paid!r}") from e
        if amount is None or not amount.is_finite() or amount < 0:
            raise PaymentValidationError(f"Invalid amount paid {self.amount_paid!r}")
        object.__setattr__(self, "amount_paid", amount)


def stock_demand(priced: PricedCart) -> dict[int, int]:
    """Units to debit per product unit, paid and gift lines combined."""
    demand: dict[int, int] = defaultdict(int)
    for ln in priced.all_lines:
        demand[ln.product_unit_id] += ln.quantity
    return dict(sorted(demand.items()))


class CheckoutFinalizer:
    MAX_NUMBER_ATTEMPTS = 5

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.invoices = InvoicesRepo(conn)
        self.promotions = PromotionsRepo(conn)
        self.inventory = InventoryRepo(conn)
        self.audit = get_audit_logger()

    def finalize(
        self,
        priced: PricedCart,
        employee_id: int,
        customer_id: int | None,
        payment: PaymentInfo,
    ) -> Invoice:
        if priced.is_empty:
            raise CartValidationError("Cannot check out an empty cart")
        if employee_id is None:
            raise CartValidationError("employee_id is required at checkout")
        total = priced.total_payable
        if payment.amount_paid < total:
            raise PaymentValidationError(
                f"Amount paid {payment.amount_paid} is less than the total {total}"
            )
        change = payment.amount_paid - total

        try:
            with atomic(self.conn):
                for promotion_line_id in priced.used_promotion_line_ids():
                    self.promotions.increment_usage(promotion_line_id)

                invoice_id = self.invoices.insert(
                    self._new_invoice_number(),
                    priced,
                    payment_method=payment.method.value,
                    amount_paid=payment.amount_paid,
                    change_amount=change,
                    employee_id=employee_id,
                    customer_id=customer_id,
                )
                for product_unit_id, quantity in stock_demand(priced).items():
                    self.inventory.debit(
                        product_unit_id,
                        quantity,
                        reference_table="invoices",
                        reference_id=invoice_id,
                    )
        except DomainError as e:
            log_event(
                self.audit, "checkout", "rejected", str(e),
                extra={"error": e.code, "employee_id": employee_id},
                level=logging.WARNING,
            )
            raise

        invoice = self.invoices.get(invoice_id)
        log_event(
            self.audit, "checkout", "committed", f"invoice {invoice.invoice_number} created",
            extra={
                "invoice_id": invoice.invoice_id,
                "total_amount": invoice.total_amount,
                "promotion_line_ids": priced.used_promotion_line_ids(),
            },
        )
        return invoice

    def _new_invoice_number(self) -> str:
        for _ in range(self.MAX_NUMBER_ATTEMPTS):
            number = make_document_number(INVOICE_PREFIX)
            if not self.invoices.number_exists(number):
                return number
        raise DomainError("Could not allocate a unique invoice number; retry the checkout")
