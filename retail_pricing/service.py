"""
service.py

PosService: the request/response surface of the engine. Every call takes
plain Python values and returns plain dicts (Decimal amounts, ISO strings),
raising DomainError subclasses for the caller to render.

Public API
----------
- check_promotion(items, at=None)
- checkout(items, payment_method, amount_paid, employee_id, customer_id=None)
- get_available_return_quantity(invoice_id)
- calculate_refund(invoice_id, lines)
- create_refund(invoice_id, lines, reason_note=None)
- get_invoice(invoice_id) / get_return(return_id)
- render_invoice(invoice_id) / export_invoice_pdf(invoice_id, path)
"""

from __future__ import annotations

from datetime import datetime
import logging
from pathlib import Path
import sqlite3
from typing import Iterable, Mapping, Optional

from .database import get_connection
from .database.repositories import InvoicesRepo, ProductsRepo, PromotionCatalog, ReturnsRepo
from .errors import CartValidationError, ProductNotFoundError, PromotionStatusError, UsageLimitExceededError
from .modules.checkout.finalizer import CheckoutFinalizer, PaymentInfo
from .modules.checkout.invoice_render import export_invoice_pdf, render_invoice_html
from .modules.promotion.engine import CartPricingEngine
from .modules.promotion.model import CartLineItem, PricedCart
from .modules.returns.eligibility import availability_totals, available_to_return
from .modules.returns.processor import RefundProcessor

_log = logging.getLogger(__name__)

# one reprice after a promotion is exhausted (or paused) between pricing and commit
CHECKOUT_ATTEMPTS = 2


class PosService:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.products = ProductsRepo(conn)
        self.catalog = PromotionCatalog(conn)
        self.engine = CartPricingEngine(self.catalog, self.products)
        self.finalizer = CheckoutFinalizer(conn)
        self.invoices = InvoicesRepo(conn)
        self.returns = ReturnsRepo(conn)
        self.refunds = RefundProcessor(conn)

    @classmethod
    def open(cls, db_path: Path | str | None = None) -> "PosService":
        return cls(get_connection(db_path))

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------
    def build_cart(self, items: Iterable[Mapping]) -> list[CartLineItem]:
        """
        Resolve [{product_unit_id, quantity}, ...] against current prices.
        Line ids are 1..n in request order.
        """
        requested = list(items or [])
        pids = []
        for line_id, it in enumerate(requested, start=1):
            pid = it.get("product_unit_id")
            if pid is None:
                raise CartValidationError(f"Cart line {line_id} has no product_unit_id")
            try:
                pids.append(int(pid))
            except (TypeError, ValueError) as e:
                raise CartValidationError(f"Cart line {line_id} has an invalid product_unit_id {pid!r}") from e
        products = self.products.get_many(pids)
        cart = []
        for line_id, (pid, it) in enumerate(zip(pids, requested), start=1):
            product = products.get(pid)
            if product is None:
                raise ProductNotFoundError(pid)
            if not product.is_active:
                raise CartValidationError(f"Product unit {pid} is not for sale")
            cart.append(
                CartLineItem(
                    line_id=line_id,
                    product_unit_id=product.product_unit_id,
                    quantity=it.get("quantity"),
                    unit_price=product.price,
                    category_id=product.category_id,
                    product_name=product.product_name,
                    unit_name=product.unit_name,
                )
            )
        return cart

    def price_cart(self, items: Iterable[Mapping], at: Optional[datetime] = None) -> PricedCart:
        return self.engine.price(self.build_cart(items), at)

    def check_promotion(self, items: Iterable[Mapping], at: Optional[datetime] = None) -> dict:
        return self.price_cart(items, at).to_dict()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    def checkout(
        self,
        items: Iterable[Mapping],
        payment_method: str,
        amount_paid,
        employee_id: int,
        customer_id: int | None = None,
        at: Optional[datetime] = None,
    ) -> dict:
        """
        Price and finalize. When a promotion runs out (or is paused) between
        pricing and commit, the cart is repriced once without it.
        """
        items = list(items or [])
        payment = PaymentInfo(payment_method, amount_paid)
        attempt = 1
        while True:
            priced = self.price_cart(items, at)
            try:
                invoice = self.finalizer.finalize(priced, employee_id, customer_id, payment)
            except (UsageLimitExceededError, PromotionStatusError) as e:
                if attempt >= CHECKOUT_ATTEMPTS:
                    raise
                _log.info("checkout attempt %d lost a promotion, repricing: %s", attempt, e)
                attempt += 1
                continue
            return invoice.to_dict()

    # ------------------------------------------------------------------
    # Returns
    # ------------------------------------------------------------------
    def get_available_return_quantity(self, invoice_id: int) -> dict:
        invoice = self.invoices.get(invoice_id)
        lines = available_to_return(invoice, self.returns.ledger(invoice_id))
        return {
            "invoice_id": invoice.invoice_id,
            "invoice_number": invoice.invoice_number,
            "status": invoice.status,
            "line_items": [ln.to_dict() for ln in lines],
            "totals": availability_totals(lines),
        }

    def calculate_refund(self, invoice_id: int, lines) -> dict:
        return self.refunds.preview(invoice_id, lines).to_dict()

    def create_refund(self, invoice_id: int, lines, reason_note: str | None = None) -> dict:
        record = self.refunds.create(invoice_id, lines, reason_note)
        out = record.to_dict()
        out["invoice_status"] = self.invoices.get(invoice_id).status
        return out

    # ------------------------------------------------------------------
    # Lookups & documents
    # ------------------------------------------------------------------
    def get_invoice(self, invoice_id: int) -> dict:
        return self.invoices.get(invoice_id).to_dict()

    def get_return(self, return_id: int) -> dict:
        return self.returns.get(return_id).to_dict()

    def render_invoice(self, invoice_id: int) -> str:
        return render_invoice_html(self.invoices.get(invoice_id))

    def export_invoice_pdf(self, invoice_id: int, path: Path | str) -> str:
        return str(export_invoice_pdf(self.invoices.get(invoice_id), path))
