"""
Domain errors raised by the pricing, checkout and refund flows.

Every error carries the ids and quantities a caller needs to render an
actionable message; `to_dict()` gives a transport-friendly payload.
"""

from __future__ import annotations

from decimal import Decimal


class DomainError(Exception):
    """Domain-level error suitable for surfacing to the caller."""

    code = "domain_error"

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


# ---- pricing / catalog --------------------------------------------------

class PromotionValidationError(DomainError):
    """A promotion detail is internally inconsistent."""

    code = "promotion_validation"

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["field"] = self.field
        return d


class PromotionStatusError(DomainError):
    """Illegal status transition on a promotion line or header."""

    code = "promotion_status"


class PromotionNotFoundError(DomainError):
    code = "promotion_not_found"


class ProductNotFoundError(DomainError):
    code = "product_not_found"

    def __init__(self, product_unit_id: int):
        super().__init__(f"Product unit not found: {product_unit_id}")
        self.product_unit_id = product_unit_id


# ---- checkout ------------------------------------------------------------

class CartValidationError(DomainError):
    """Malformed cart input (quantity, price or unknown product)."""

    code = "cart_validation"


class InsufficientStockError(DomainError):
    code = "insufficient_stock"

    def __init__(self, product_unit_id: int, required: int, available: int):
        super().__init__(
            f"Insufficient stock for product unit {product_unit_id}: "
            f"required {required}, available {available}"
        )
        self.product_unit_id = product_unit_id
        self.required = required
        self.available = available

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(product_unit_id=self.product_unit_id, required=self.required, available=self.available)
        return d


class UsageLimitExceededError(DomainError):
    code = "usage_limit_exceeded"

    def __init__(self, promotion_line_id: int, usage_limit: int | None, usage_count: int | None):
        super().__init__(
            f"Promotion line {promotion_line_id} has reached its usage limit "
            f"({usage_count}/{usage_limit})"
        )
        self.promotion_line_id = promotion_line_id
        self.usage_limit = usage_limit
        self.usage_count = usage_count

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update(
            promotion_line_id=self.promotion_line_id,
            usage_limit=self.usage_limit,
            usage_count=self.usage_count,
        )
        return d


class PaymentValidationError(DomainError):
    code = "payment_validation"


# ---- returns / refunds -----------------------------------------------------

class ReturnValidationError(DomainError):
    code = "return_validation"


class OverReturnRequestedError(DomainError):
    """
    A return request asks for more than is still returnable on one or more
    lines. `violations` maps line_item_id -> (requested, available);
    `availability` maps every invoice line_item_id -> available quantity.
    """

    code = "over_return_requested"

    def __init__(self, violations: dict[int, tuple[int, int]], availability: dict[int, int]):
        parts = ", ".join(
            f"line {lid}: requested {req}, available {avail}"
            for lid, (req, avail) in sorted(violations.items())
        )
        super().__init__(f"Return quantity exceeds remaining ({parts})")
        self.violations = violations
        self.availability = availability

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["violations"] = {
            lid: {"requested": req, "available": avail}
            for lid, (req, avail) in self.violations.items()
        }
        d["availability"] = dict(self.availability)
        return d


class RefundInvariantError(DomainError):
    code = "refund_invariant"

    def __init__(self, message: str, *, invoice_id: int | None = None,
                 entitlement: Decimal | None = None, limit: Decimal | None = None):
        super().__init__(message)
        self.invoice_id = invoice_id
        self.entitlement = entitlement
        self.limit = limit


# ---- not found ---------------------------------------------------------

class InvoiceNotFoundError(DomainError):
    code = "invoice_not_found"

    def __init__(self, invoice_ref):
        super().__init__(f"Invoice not found: {invoice_ref}")
        self.invoice_ref = invoice_ref


class LineItemNotFoundError(DomainError):
    code = "line_item_not_found"

    def __init__(self, line_item_id: int, invoice_id: int | None = None):
        super().__init__(f"Line item {line_item_id} not found on invoice {invoice_id}")
        self.line_item_id = line_item_id
        self.invoice_id = invoice_id


class ReturnNotFoundError(DomainError):
    code = "return_not_found"
