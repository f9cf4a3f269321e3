"""
modules/promotion/engine.py

CartPricingEngine: evaluates the active promotion lines against a cart.

Order of evaluation (fixed, it decides who wins when caps bite):
  1. product discounts, ascending line id, first eligible rule per cart line;
  2. buy-x-get-y, ascending line id, each may add one gift line;
  3. order discounts, the single largest amount wins (ties: lowest id).

A promotion that fails validation or points at an unknown gift product is
skipped and logged; it never aborts the pricing pass.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from ...errors import ProductNotFoundError, PromotionValidationError
from ...utils.helpers import ZERO, clamp_non_negative, quantize_money
from .model import (
    AppliedPromotion,
    BuyXGetYDetail,
    CartLineItem,
    PricedCart,
    PricedLine,
    PromotionLine,
    PromotionType,
    describe,
)
from .rules import RULES, CartState

_log = logging.getLogger(__name__)


class Catalog(Protocol):
    def active_lines(self, at: datetime) -> list[PromotionLine]: ...


class ProductLookup(Protocol):
    def get(self, product_unit_id: int): ...


def _applied(promo: PromotionLine, amount: Decimal, **overrides) -> AppliedPromotion:
    detail = promo.detail
    discount_type = getattr(detail, "discount_type", None)
    values = dict(
        promotion_line_id=promo.promotion_line_id,
        promotion_code=promo.code,
        promotion_name=promo.name,
        promotion_type=promo.promotion_type,
        promotion_detail_id=detail.detail_id,
        summary=describe(detail),
        discount_type=discount_type.value if discount_type is not None else "",
        discount_value=getattr(detail, "discount_value", None),
        discount_amount=amount,
    )
    values.update(overrides)
    return AppliedPromotion(**values)


class CartPricingEngine:
    def __init__(self, catalog: Catalog, products: ProductLookup):
        self.catalog = catalog
        self.products = products

    def price(self, cart: Iterable[CartLineItem], at: Optional[datetime] = None) -> PricedCart:
        at = at or datetime.now()
        lines = list(cart)
        if not lines:
            return PricedCart(priced_at=at)

        by_type: dict[PromotionType, list[PromotionLine]] = defaultdict(list)
        for promo in sorted(self.catalog.active_lines(at), key=lambda p: p.promotion_line_id):
            by_type[PromotionType(promo.promotion_type)].append(promo)

        state = CartState(lines)
        line_promos = self._apply_product_discounts(by_type[PromotionType.PRODUCT_DISCOUNT], state)
        gift_lines = self._apply_buy_x_get_y(by_type[PromotionType.BUY_X_GET_Y], state, lines)
        order_promo = self._choose_order_discount(by_type[PromotionType.ORDER_DISCOUNT], state)

        priced = tuple(
            PricedLine(
                line_id=ln.line_id,
                product_unit_id=ln.product_unit_id,
                product_name=ln.product_name,
                unit_name=ln.unit_name,
                quantity=ln.quantity,
                unit_price=ln.unit_price,
                line_subtotal=ln.line_subtotal,
                discount_amount=state.line_discounts.get(ln.line_id, ZERO),
                line_total=state.net_total(ln),
                category_id=ln.category_id,
                promotion=line_promos.get(ln.line_id),
            )
            for ln in lines
        )

        subtotal = state.subtotal
        line_item_discount = state.line_item_discount
        order_discount = order_promo.discount_amount if order_promo else ZERO
        gift_total = sum((g.line_total for g in gift_lines), ZERO)
        gift_discount = sum((g.promotion.discount_amount for g in gift_lines), ZERO)
        total = clamp_non_negative(subtotal - line_item_discount - order_discount + gift_total)

        return PricedCart(
            lines=priced,
            gift_lines=tuple(gift_lines),
            order_promotions=(order_promo,) if order_promo else (),
            subtotal=subtotal,
            line_item_discount=line_item_discount,
            order_discount=order_discount,
            gift_total=gift_total,
            gift_discount=gift_discount,
            total_payable=total,
            priced_at=at,
        )

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------
    def _apply_product_discounts(self, promos, state: CartState) -> dict[int, AppliedPromotion]:
        rule = RULES[PromotionType.PRODUCT_DISCOUNT]
        granted: dict[int, AppliedPromotion] = {}
        for promo in promos:
            try:
                if not rule.is_eligible(promo.detail, state):
                    continue
                effect = rule.apply(promo.detail, state)
            except PromotionValidationError as e:
                self._skip(promo, e)
                continue
            subtotals = {ln.line_id: ln.line_subtotal for ln in state.lines}
            for line_id, amount in effect.items():
                frozen = min(quantize_money(amount), subtotals[line_id])
                state.line_discounts[line_id] = frozen
                granted[line_id] = _applied(promo, frozen)
        return granted

    def _apply_buy_x_get_y(self, promos, state: CartState, lines: list[CartLineItem]) -> list[PricedLine]:
        rule = RULES[PromotionType.BUY_X_GET_Y]
        gifts: list[PricedLine] = []
        next_line_id = max(ln.line_id for ln in lines) + 1
        for promo in promos:
            detail: BuyXGetYDetail = promo.detail
            try:
                grant = rule.apply(detail, state)
                if grant is None:
                    continue
                product = self.products.get(grant.gift_product_id)
                if product is None:
                    raise ProductNotFoundError(grant.gift_product_id)
            except (PromotionValidationError, ProductNotFoundError) as e:
                self._skip(promo, e)
                continue

            residual = detail.residual_unit_price(product.price)
            line_total = quantize_money(grant.quantity * residual)
            granted_value = quantize_money(grant.quantity * product.price) - line_total
            applied = _applied(
                promo,
                clamp_non_negative(granted_value),
                discount_type=detail.gift_discount_type.value,
                discount_value=detail.gift_discount_value,
                source_line_item_id=grant.source_line_id,
            )
            gifts.append(
                PricedLine(
                    line_id=next_line_id,
                    product_unit_id=product.product_unit_id,
                    product_name=product.product_name,
                    unit_name=product.unit_name,
                    quantity=grant.quantity,
                    unit_price=quantize_money(residual),
                    line_subtotal=line_total,
                    discount_amount=ZERO,
                    line_total=line_total,
                    category_id=product.category_id,
                    is_gift=True,
                    source_line_id=grant.source_line_id,
                    promotion=applied,
                )
            )
            next_line_id += 1
        return gifts

    def _choose_order_discount(self, promos, state: CartState) -> Optional[AppliedPromotion]:
        rule = RULES[PromotionType.ORDER_DISCOUNT]
        base = state.net_subtotal
        best: Optional[tuple[PromotionLine, Decimal]] = None
        for promo in promos:
            try:
                if not rule.is_eligible(promo.detail, state):
                    continue
                amount = min(quantize_money(rule.apply(promo.detail, state)), base)
            except PromotionValidationError as e:
                self._skip(promo, e)
                continue
            if amount <= ZERO:
                continue
            # promos arrive in ascending id order, so strict > keeps the lowest id on ties
            if best is None or amount > best[1]:
                best = (promo, amount)
        if best is None:
            return None
        return _applied(best[0], best[1])

    @staticmethod
    def _skip(promo: PromotionLine, err: Exception) -> None:
        _log.warning(
            "skipping promotion line %s (%s): %s", promo.promotion_line_id, promo.code, err
        )
