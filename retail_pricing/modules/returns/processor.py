"""
Recording a return: refund computation, ledger advance, return record and
stock credit commit together, or not at all.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Iterable

from ...constants import RETURN_PREFIX
from ...database import atomic
from ...database.repositories.inventory_repo import InventoryRepo
from ...database.repositories.invoices_repo import InvoicesRepo
from ...database.repositories.returns_repo import ReturnRecord, ReturnsRepo
from ...errors import DomainError
from ...utils.helpers import make_document_number
from ...utils.loggers import get_audit_logger, log_event
from .refund import RefundResult, compute_refund


class RefundProcessor:
    MAX_CODE_ATTEMPTS = 5

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.invoices = InvoicesRepo(conn)
        self.returns = ReturnsRepo(conn)
        self.inventory = InventoryRepo(conn)
        self.audit = get_audit_logger()

    def preview(self, invoice_id: int, lines: Iterable) -> RefundResult:
        """Refund the request would produce right now. Writes nothing."""
        invoice = self.invoices.get(invoice_id)
        return compute_refund(invoice, self.returns.ledger(invoice_id), lines)

    def create(self, invoice_id: int, lines: Iterable, reason_note: str | None = None) -> ReturnRecord:
        """
        Recompute the refund inside the write transaction (so it is validated
        against the ledger it advances), then persist it.
        """
        try:
            with atomic(self.conn):
                invoice = self.invoices.get(invoice_id)
                ledger = self.returns.ledger(invoice_id)
                result = compute_refund(invoice, ledger, lines)

                for ln in result.lines:
                    self.returns.advance_ledger(
                        invoice_id, ln.line_item_id, ledger[ln.line_item_id].returned_quantity, ln.quantity
                    )
                return_id = self.returns.insert(self._new_return_code(), result, reason_note)
                for ln in result.lines:
                    self.inventory.credit(
                        ln.product_unit_id,
                        ln.quantity,
                        reference_table="returns",
                        reference_id=return_id,
                    )
                fully_returned = self.invoices.mark_returned(invoice_id)
        except DomainError as e:
            log_event(
                self.audit, "refund", "rejected", str(e),
                extra={"invoice_id": invoice_id, "error": e.code},
                level=logging.WARNING,
            )
            raise

        record = self.returns.get(return_id)
        log_event(
            self.audit, "refund", "committed", f"return {record.return_code} recorded",
            extra={
                "invoice_id": invoice_id,
                "return_id": record.return_id,
                "final_refund": record.final_refund,
                "reclaimed_discount": record.reclaimed_discount,
                "invoice_fully_returned": fully_returned,
            },
        )
        return record

    def _new_return_code(self) -> str:
        for _ in range(self.MAX_CODE_ATTEMPTS):
            code = make_document_number(RETURN_PREFIX)
            if not self.returns.code_exists(code):
                return code
        raise DomainError("Could not allocate a unique return code; retry the refund")
