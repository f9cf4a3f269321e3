"""
modules/promotion/rules.py

Eligibility and effect for each promotion kind, dispatched through RULES
keyed by PromotionType. Rules never touch storage; they read a CartState
and return an effect the engine folds into the priced cart.

Amounts are kept exact here; the engine rounds once when it freezes an
AppliedPromotion.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from ...utils.helpers import HUNDRED, ZERO
from .model import (
    ApplyToType,
    BuyXGetYDetail,
    CartLineItem,
    DiscountType,
    OrderDiscountDetail,
    ProductDiscountDetail,
    PromotionType,
)


@dataclass
class CartState:
    """
    The cart as seen by a rule: original paid lines plus the product-level
    discounts granted so far (line_id -> exact amount).
    """
    lines: list[CartLineItem]
    line_discounts: dict[int, Decimal] = field(default_factory=dict)

    @property
    def subtotal(self) -> Decimal:
        return sum((ln.line_subtotal for ln in self.lines), ZERO)

    @property
    def total_quantity(self) -> int:
        return sum(ln.quantity for ln in self.lines)

    @property
    def line_item_discount(self) -> Decimal:
        return sum(self.line_discounts.values(), ZERO)

    @property
    def net_subtotal(self) -> Decimal:
        """Order subtotal after product-level discounts (order discount base)."""
        return self.subtotal - self.line_item_discount

    def net_total(self, line: CartLineItem) -> Decimal:
        return line.line_subtotal - self.line_discounts.get(line.line_id, ZERO)

    def lines_in_scope(self, apply_to_type: ApplyToType, target_id: Optional[int]) -> list[CartLineItem]:
        if apply_to_type is ApplyToType.PRODUCT:
            return [ln for ln in self.lines if ln.product_unit_id == target_id]
        if apply_to_type is ApplyToType.CATEGORY:
            return [ln for ln in self.lines if ln.category_id is not None and ln.category_id == target_id]
        return list(self.lines)

    def buy_lines(self, buy_product_id: Optional[int]) -> list[CartLineItem]:
        if buy_product_id is None:
            return list(self.lines)
        return [ln for ln in self.lines if ln.product_unit_id == buy_product_id]


@dataclass(frozen=True)
class GiftGrant:
    """A BuyXGetY effect: how many gift units, and which paid line earned them."""
    gift_product_id: int
    quantity: int
    trigger_count: int
    source_line_id: int


# ---------------------------------------------------------------------------
# Product discount
# ---------------------------------------------------------------------------

class ProductDiscountRule:
    def is_eligible(self, detail: ProductDiscountDetail, state: CartState) -> bool:
        scope = state.lines_in_scope(detail.apply_to_type, detail.apply_to_target_id)
        if not scope:
            return False
        if detail.min_order_value is not None and state.subtotal < detail.min_order_value:
            return False
        if detail.min_promotion_value is not None:
            scope_value = sum((state.net_total(ln) for ln in scope), ZERO)
            if scope_value < detail.min_promotion_value:
                return False
        if detail.min_promotion_quantity is not None:
            if sum(ln.quantity for ln in scope) < detail.min_promotion_quantity:
                return False
        return True

    def apply(self, detail: ProductDiscountDetail, state: CartState) -> dict[int, Decimal]:
        """line_id -> discount for every in-scope line not already discounted."""
        out: dict[int, Decimal] = {}
        for ln in state.lines_in_scope(detail.apply_to_type, detail.apply_to_target_id):
            if ln.line_id in state.line_discounts:
                continue
            out[ln.line_id] = self.amount_for(detail, ln.line_subtotal)
        return out

    @staticmethod
    def amount_for(detail: ProductDiscountDetail, line_subtotal: Decimal) -> Decimal:
        if detail.discount_type is DiscountType.FIXED_AMOUNT:
            amount = detail.discount_value
        else:
            amount = line_subtotal * detail.discount_value / HUNDRED
        return min(amount, line_subtotal)


# ---------------------------------------------------------------------------
# Order discount
# ---------------------------------------------------------------------------

class OrderDiscountRule:
    def is_eligible(self, detail: OrderDiscountDetail, state: CartState) -> bool:
        if not state.lines:
            return False
        if detail.min_order_total_value is not None and state.net_subtotal < detail.min_order_total_value:
            return False
        if detail.min_order_total_quantity is not None and state.total_quantity < detail.min_order_total_quantity:
            return False
        return True

    def apply(self, detail: OrderDiscountDetail, state: CartState) -> Decimal:
        base = state.net_subtotal
        if detail.discount_type is DiscountType.FIXED_AMOUNT:
            amount = detail.discount_value
        else:
            amount = base * detail.discount_value / HUNDRED
            if detail.max_discount_value is not None:
                amount = min(amount, detail.max_discount_value)
        return max(min(amount, base), ZERO)


# ---------------------------------------------------------------------------
# Buy X get Y
# ---------------------------------------------------------------------------

class BuyXGetYRule:
    def trigger_count(self, detail: BuyXGetYDetail, state: CartState) -> int:
        """
        How many times the buy condition is met. Quantity is measured on the
        original lines, value on post-product-discount totals; when both are
        set the smaller count wins.
        """
        scope = state.buy_lines(detail.buy_product_id)
        if not scope:
            return 0
        counts = []
        if detail.buy_min_quantity is not None:
            counts.append(sum(ln.quantity for ln in scope) // detail.buy_min_quantity)
        if detail.buy_min_value is not None:
            value = sum((state.net_total(ln) for ln in scope), ZERO)
            counts.append(int(value // detail.buy_min_value))
        triggers = min(counts) if counts else 1
        if detail.gift_max_quantity is not None:
            triggers = min(triggers, detail.gift_max_quantity // detail.gift_quantity)
        return max(triggers, 0)

    def is_eligible(self, detail: BuyXGetYDetail, state: CartState) -> bool:
        return self.trigger_count(detail, state) >= 1

    def apply(self, detail: BuyXGetYDetail, state: CartState) -> Optional[GiftGrant]:
        triggers = self.trigger_count(detail, state)
        if triggers < 1:
            return None
        source = state.buy_lines(detail.buy_product_id)[0]
        return GiftGrant(
            gift_product_id=detail.gift_product_id,
            quantity=triggers * detail.gift_quantity,
            trigger_count=triggers,
            source_line_id=source.line_id,
        )


RULES = {
    PromotionType.PRODUCT_DISCOUNT: ProductDiscountRule(),
    PromotionType.ORDER_DISCOUNT: OrderDiscountRule(),
    PromotionType.BUY_X_GET_Y: BuyXGetYRule(),
}
