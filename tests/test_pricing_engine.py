# retail_pricing/tests/test_pricing_engine.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging

import pytest

from retail_pricing.database.repositories.products_repo import ProductUnit
from retail_pricing.modules.promotion.engine import CartPricingEngine
from retail_pricing.modules.promotion.model import (
    BuyXGetYDetail,
    CartLineItem,
    OrderDiscountDetail,
    ProductDiscountDetail,
    PromotionLine,
)


AT = datetime(2025, 6, 15, 12, 0, 0)

MILK, JUICE, CHIPS = 1, 2, 3
DRINKS, SNACKS = 10, 20


class _Catalog:
    """In-memory stand-in: every line handed in is considered active."""

    def __init__(self, *lines):
        self.lines = list(lines)

    def active_lines(self, at=None):
        return list(self.lines)


class _Products:
    def __init__(self):
        self.by_id = {
            MILK: ProductUnit(MILK, "Milk", "carton", DRINKS, Decimal("10000.00")),
            JUICE: ProductUnit(JUICE, "Juice", "bottle", DRINKS, Decimal("25000.00")),
            CHIPS: ProductUnit(CHIPS, "Chips", "bag", SNACKS, Decimal("8000.00")),
        }

    def get(self, product_unit_id):
        return self.by_id.get(product_unit_id)


def _promo(line_id, detail, code=None):
    return PromotionLine(
        promotion_line_id=line_id,
        promotion_id=1,
        code=code or f"P{line_id}",
        name=f"Promo {line_id}",
        promotion_type=detail.tag,
        start_date="2025-01-01",
        end_date=None,
        detail=detail,
    )


def _cart(*items):
    products = _Products()
    out = []
    for line_id, (pid, qty) in enumerate(items, start=1):
        p = products.get(pid)
        out.append(CartLineItem(line_id=line_id, product_unit_id=pid, quantity=qty,
                                unit_price=p.price, category_id=p.category_id,
                                product_name=p.product_name, unit_name=p.unit_name))
    return out


def _engine(*promos):
    return CartPricingEngine(_Catalog(*promos), _Products())


TEN_PERCENT = ProductDiscountDetail(discount_type="PERCENTAGE", discount_value="10")
FIVE_PERCENT_CAPPED = OrderDiscountDetail(discount_type="PERCENTAGE", discount_value="5", max_discount_value="4000")
BUY_2_GET_1 = BuyXGetYDetail(gift_product_id=MILK, buy_product_id=MILK, buy_min_quantity=2)


# ---------------------------------------------------------------------
# B1. Worked scenarios
# ---------------------------------------------------------------------

def test_b1_product_discount_ten_percent():
    """10 x 10,000 with 10% off: 10,000 discount, 90,000 payable."""
    priced = _engine(_promo(1, TEN_PERCENT)).price(_cart((MILK, 10)), AT)
    assert priced.subtotal == Decimal("100000.00")
    assert priced.line_item_discount == Decimal("10000.00")
    assert priced.total_payable == Decimal("90000.00")
    line = priced.lines[0]
    assert line.promotion.promotion_line_id == 1
    assert line.line_total == Decimal("90000.00")


def test_b1_order_discount_capped_on_top():
    """5% of 90,000 is 4,500, capped to 4,000: 86,000 payable."""
    priced = _engine(_promo(1, TEN_PERCENT), _promo(2, FIVE_PERCENT_CAPPED)).price(_cart((MILK, 10)), AT)
    assert priced.order_discount == Decimal("4000.00")
    assert priced.total_payable == Decimal("86000.00")
    (order_promo,) = priced.order_promotions
    assert order_promo.promotion_line_id == 2
    assert order_promo.discount_amount == Decimal("4000.00")


def test_b1_buy_two_get_one_free():
    """6 units with buy-2-get-1: 3 gift units at unit price 0."""
    priced = _engine(_promo(1, BUY_2_GET_1)).price(_cart((MILK, 6)), AT)
    (gift,) = priced.gift_lines
    assert gift.is_gift
    assert gift.quantity == 3
    assert gift.unit_price == Decimal("0.00")
    assert gift.line_total == Decimal("0.00")
    assert gift.source_line_id == 1
    assert gift.line_id == 2
    assert gift.promotion.discount_amount == Decimal("30000.00")
    assert priced.gift_discount == Decimal("30000.00")
    assert priced.total_payable == Decimal("60000")


# ---------------------------------------------------------------------
# B2. Precedence and tie-breaks
# ---------------------------------------------------------------------

def test_b2_first_eligible_product_discount_wins_per_line():
    """No stacking: the lowest id eligible rule claims the line."""
    targeted = ProductDiscountDetail(discount_type="PERCENTAGE", discount_value="20",
                                     apply_to_type="PRODUCT", apply_to_target_id=MILK)
    priced = _engine(_promo(2, targeted), _promo(1, TEN_PERCENT)).price(_cart((MILK, 1), (CHIPS, 1)), AT)
    assert [ln.promotion.promotion_line_id for ln in priced.lines] == [1, 1]
    assert priced.line_item_discount == Decimal("1800.00")


def test_b2_category_scope_only_touches_its_category():
    drinks_only = ProductDiscountDetail(discount_type="FIXED_AMOUNT", discount_value="1000",
                                        apply_to_type="CATEGORY", apply_to_target_id=DRINKS)
    priced = _engine(_promo(1, drinks_only)).price(_cart((JUICE, 2), (CHIPS, 1)), AT)
    juice, chips = priced.lines
    assert juice.discount_amount == Decimal("1000")
    assert chips.discount_amount == Decimal("0")
    assert not chips.has_promotion


def test_b2_earlier_discount_can_drop_scope_below_min_promotion_value():
    """A later category rule sees the drinks scope net of the milk discount: 40,000 < 42,000."""
    milk_off = ProductDiscountDetail(discount_type="FIXED_AMOUNT", discount_value="5000",
                                     apply_to_type="PRODUCT", apply_to_target_id=MILK)
    drinks_pct = ProductDiscountDetail(discount_type="PERCENTAGE", discount_value="10",
                                       apply_to_type="CATEGORY", apply_to_target_id=DRINKS,
                                       min_promotion_value="42000")
    cart = _cart((MILK, 2), (JUICE, 1))

    alone = _engine(_promo(2, drinks_pct)).price(cart, AT)
    assert [ln.discount_amount for ln in alone.lines] == [Decimal("2000.00"), Decimal("2500.00")]

    both = _engine(_promo(1, milk_off), _promo(2, drinks_pct)).price(cart, AT)
    milk, juice = both.lines
    assert milk.discount_amount == Decimal("5000.00")
    assert milk.promotion.promotion_line_id == 1
    assert juice.discount_amount == Decimal("0")
    assert not juice.has_promotion


def test_b2_largest_order_discount_wins():
    fixed = OrderDiscountDetail(discount_type="FIXED_AMOUNT", discount_value="3000")
    pct = OrderDiscountDetail(discount_type="PERCENTAGE", discount_value="5")
    priced = _engine(_promo(1, fixed), _promo(2, pct)).price(_cart((MILK, 9)), AT)
    assert priced.order_promotions[0].promotion_line_id == 2
    assert priced.order_discount == Decimal("4500.00")


def test_b2_order_discount_tie_keeps_lowest_id():
    same = OrderDiscountDetail(discount_type="FIXED_AMOUNT", discount_value="1000")
    priced = _engine(_promo(5, same), _promo(3, same)).price(_cart((MILK, 1)), AT)
    assert len(priced.order_promotions) == 1
    assert priced.order_promotions[0].promotion_line_id == 3


def test_b2_order_discount_below_minimum_is_not_applied():
    picky = OrderDiscountDetail(discount_type="FIXED_AMOUNT", discount_value="1000",
                                min_order_total_value="50000")
    priced = _engine(_promo(1, picky)).price(_cart((MILK, 2)), AT)
    assert priced.order_promotions == ()
    assert priced.total_payable == Decimal("20000.00")


# ---------------------------------------------------------------------
# B3. Gifts
# ---------------------------------------------------------------------

def test_b3_discounted_gift_is_charged_its_residual():
    """Half-price juice gift: the residual is payable and recorded on the line."""
    half_juice = BuyXGetYDetail(gift_product_id=JUICE, buy_product_id=MILK, buy_min_quantity=5,
                                gift_discount_type="PERCENTAGE", gift_discount_value="50")
    priced = _engine(_promo(1, half_juice)).price(_cart((MILK, 5)), AT)
    (gift,) = priced.gift_lines
    assert gift.unit_price == Decimal("12500.00")
    assert gift.line_total == Decimal("12500.00")
    assert gift.promotion.discount_amount == Decimal("12500.00")
    assert priced.gift_total == Decimal("12500.00")
    assert priced.total_payable == Decimal("62500.00")


def test_b3_unknown_gift_product_is_skipped_and_logged(caplog):
    ghost = BuyXGetYDetail(gift_product_id=999, buy_min_quantity=1)
    with caplog.at_level(logging.WARNING, logger="retail_pricing.modules.promotion.engine"):
        priced = _engine(_promo(1, ghost), _promo(2, TEN_PERCENT)).price(_cart((MILK, 2)), AT)
    assert priced.gift_lines == ()
    assert priced.line_item_discount == Decimal("2000.00")
    assert "skipping promotion line 1" in caplog.text


def test_b3_gift_units_capped_by_gift_max_quantity():
    capped = BuyXGetYDetail(gift_product_id=CHIPS, buy_product_id=MILK, buy_min_quantity=1,
                            gift_max_quantity=2)
    priced = _engine(_promo(1, capped)).price(_cart((MILK, 10)), AT)
    assert priced.gift_lines[0].quantity == 2


def test_b3_gift_line_ids_follow_the_cart():
    a = BuyXGetYDetail(gift_product_id=CHIPS, buy_product_id=MILK, buy_min_quantity=1, gift_max_quantity=1)
    b = BuyXGetYDetail(gift_product_id=JUICE, buy_product_id=CHIPS, buy_min_quantity=1, gift_max_quantity=1)
    priced = _engine(_promo(1, a), _promo(2, b)).price(_cart((MILK, 1), (CHIPS, 1)), AT)
    assert [g.line_id for g in priced.gift_lines] == [3, 4]
    assert [g.source_line_id for g in priced.gift_lines] == [1, 2]


# ---------------------------------------------------------------------
# B4. Properties
# ---------------------------------------------------------------------

def test_b4_empty_cart_prices_to_zero():
    priced = _engine(_promo(1, TEN_PERCENT)).price([], AT)
    assert priced.is_empty
    assert priced.total_payable == Decimal("0")
    assert priced.to_dict()["items"] == []


def test_b4_pricing_is_deterministic():
    engine = _engine(_promo(1, TEN_PERCENT), _promo(2, FIVE_PERCENT_CAPPED), _promo(3, BUY_2_GET_1))
    cart = _cart((MILK, 7), (JUICE, 1), (CHIPS, 3))
    assert engine.price(cart, AT) == engine.price(cart, AT)


@pytest.mark.parametrize("qty", [1, 3, 7, 25])
def test_b4_total_within_bounds(qty):
    """0 <= total_payable <= subtotal with free gifts; amounts have two decimals at most."""
    huge = OrderDiscountDetail(discount_type="FIXED_AMOUNT", discount_value="999999")
    priced = _engine(_promo(1, TEN_PERCENT), _promo(2, huge), _promo(3, BUY_2_GET_1)).price(
        _cart((MILK, qty), (CHIPS, 1)), AT)
    assert Decimal("0") <= priced.total_payable <= priced.subtotal
    for ln in priced.all_lines:
        assert Decimal("0") <= ln.discount_amount <= ln.line_subtotal
        assert ln.line_total == ln.line_total.quantize(Decimal("0.01"))


def test_b4_used_promotion_line_ids_are_unique_and_sorted():
    priced = _engine(_promo(1, TEN_PERCENT), _promo(2, FIVE_PERCENT_CAPPED), _promo(3, BUY_2_GET_1)).price(
        _cart((MILK, 4), (CHIPS, 2)), AT)
    assert priced.used_promotion_line_ids() == [1, 2, 3]


def test_b4_to_dict_shape():
    d = _engine(_promo(1, TEN_PERCENT)).price(_cart((MILK, 2)), AT).to_dict()
    assert set(d["summary"]) == {
        "sub_total", "line_item_discount", "order_discount", "gift_total", "gift_discount", "total_payable",
    }
    item = d["items"][0]
    assert item["line_item_id"] == 1
    assert item["has_promotion"] is True
    assert item["promotion_applied"]["promotion_code"] == "P1"
    assert d["priced_at"] == "2025-06-15T12:00:00"
