"""
modules/promotion/model.py

Value types shared by the catalog, the rules and the pricing engine.

PromotionDetail is a closed union of three frozen dataclasses. Each variant
validates itself on construction and raises PromotionValidationError; a
detail is never mutated, `replace_detail` builds a fresh variant instead.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional, Union

from ...errors import CartValidationError, PromotionValidationError
from ...utils.helpers import HUNDRED, ZERO, fmt_money, to_decimal, to_datetime


class PromotionType(str, Enum):
    PRODUCT_DISCOUNT = "PRODUCT_DISCOUNT"
    ORDER_DISCOUNT = "ORDER_DISCOUNT"
    BUY_X_GET_Y = "BUY_X_GET_Y"


class PromotionStatus(str, Enum):
    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class GiftDiscountType(str, Enum):
    FREE = "FREE"
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class ApplyToType(str, Enum):
    ALL = "ALL"
    PRODUCT = "PRODUCT"
    CATEGORY = "CATEGORY"


# ---------------------------------------------------------------------------
# field coercion (raise PromotionValidationError, never ValueError)
# ---------------------------------------------------------------------------

def _set(obj, name, value):
    object.__setattr__(obj, name, value)


def _enum(obj, name, enum_cls, *, required=True):
    raw = getattr(obj, name)
    if raw is None:
        if required:
            raise PromotionValidationError(f"{name} is required", field=name)
        return
    try:
        _set(obj, name, enum_cls(raw))
    except ValueError as e:
        raise PromotionValidationError(f"{name} has unknown value {raw!r}", field=name) from e


def _amount(obj, name, *, required=False, positive=False):
    raw = getattr(obj, name)
    if raw is None:
        if required:
            raise PromotionValidationError(f"{name} is required", field=name)
        return
    try:
        value = to_decimal(raw)
    except ValueError as e:
        raise PromotionValidationError(f"{name} is not a number: {raw!r}", field=name) from e
    if not value.is_finite() or value < ZERO:
        raise PromotionValidationError(f"{name} must be >= 0", field=name)
    if positive and value == ZERO:
        raise PromotionValidationError(f"{name} must be > 0", field=name)
    _set(obj, name, value)


def _quantity(obj, name, *, required=False):
    raw = getattr(obj, name)
    if raw is None:
        if required:
            raise PromotionValidationError(f"{name} is required", field=name)
        return
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1:
        raise PromotionValidationError(f"{name} must be an integer >= 1", field=name)


def _percentage(obj, name):
    if getattr(obj, name) > HUNDRED:
        raise PromotionValidationError(f"{name} must be within [0, 100]", field=name)


# ---------------------------------------------------------------------------
# detail variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProductDiscountDetail:
    discount_type: DiscountType
    discount_value: Decimal
    apply_to_type: ApplyToType = ApplyToType.ALL
    apply_to_target_id: Optional[int] = None
    min_order_value: Optional[Decimal] = None
    min_promotion_value: Optional[Decimal] = None
    min_promotion_quantity: Optional[int] = None
    detail_id: Optional[int] = None

    tag: ClassVar[PromotionType] = PromotionType.PRODUCT_DISCOUNT

    def __post_init__(self):
        _enum(self, "discount_type", DiscountType)
        _amount(self, "discount_value", required=True)
        if self.discount_type is DiscountType.PERCENTAGE:
            _percentage(self, "discount_value")
        _enum(self, "apply_to_type", ApplyToType)
        if self.apply_to_type is not ApplyToType.ALL and self.apply_to_target_id is None:
            raise PromotionValidationError(
                f"apply_to_target_id is required when applying to {self.apply_to_type.value}",
                field="apply_to_target_id",
            )
        _amount(self, "min_order_value")
        _amount(self, "min_promotion_value")
        _quantity(self, "min_promotion_quantity")


@dataclass(frozen=True)
class OrderDiscountDetail:
    discount_type: DiscountType
    discount_value: Decimal
    max_discount_value: Optional[Decimal] = None
    min_order_total_value: Optional[Decimal] = None
    min_order_total_quantity: Optional[int] = None
    detail_id: Optional[int] = None

    tag: ClassVar[PromotionType] = PromotionType.ORDER_DISCOUNT

    def __post_init__(self):
        _enum(self, "discount_type", DiscountType)
        _amount(self, "discount_value", required=True)
        if self.discount_type is DiscountType.PERCENTAGE:
            _percentage(self, "discount_value")
        _amount(self, "max_discount_value")
        _amount(self, "min_order_total_value")
        _quantity(self, "min_order_total_quantity")


@dataclass(frozen=True)
class BuyXGetYDetail:
    gift_product_id: int
    gift_quantity: int = 1
    gift_discount_type: GiftDiscountType = GiftDiscountType.FREE
    gift_discount_value: Optional[Decimal] = None
    buy_product_id: Optional[int] = None   # None: any product counts
    buy_min_quantity: Optional[int] = None
    buy_min_value: Optional[Decimal] = None
    gift_max_quantity: Optional[int] = None
    detail_id: Optional[int] = None

    tag: ClassVar[PromotionType] = PromotionType.BUY_X_GET_Y

    def __post_init__(self):
        if self.gift_product_id is None:
            raise PromotionValidationError("gift_product_id is required", field="gift_product_id")
        _quantity(self, "gift_quantity", required=True)
        _enum(self, "gift_discount_type", GiftDiscountType)
        if self.gift_discount_type is not GiftDiscountType.FREE:
            _amount(self, "gift_discount_value", required=True)
            if self.gift_discount_type is GiftDiscountType.PERCENTAGE:
                _percentage(self, "gift_discount_value")
        else:
            _amount(self, "gift_discount_value")
        _quantity(self, "buy_min_quantity")
        _amount(self, "buy_min_value", positive=True)
        _quantity(self, "gift_max_quantity")
        if self.gift_max_quantity is not None and self.gift_max_quantity < self.gift_quantity:
            raise PromotionValidationError(
                "gift_max_quantity must be >= gift_quantity", field="gift_max_quantity"
            )

    def residual_unit_price(self, unit_price: Decimal) -> Decimal:
        """What the customer still pays per gift unit (never negative)."""
        if self.gift_discount_type is GiftDiscountType.FREE:
            return ZERO
        if self.gift_discount_type is GiftDiscountType.PERCENTAGE:
            return unit_price * (HUNDRED - self.gift_discount_value) / HUNDRED
        return max(unit_price - self.gift_discount_value, ZERO)


PromotionDetail = Union[ProductDiscountDetail, OrderDiscountDetail, BuyXGetYDetail]

DETAIL_TYPES: dict[PromotionType, type] = {
    PromotionType.PRODUCT_DISCOUNT: ProductDiscountDetail,
    PromotionType.ORDER_DISCOUNT: OrderDiscountDetail,
    PromotionType.BUY_X_GET_Y: BuyXGetYDetail,
}


def build_detail(promotion_type, values: dict) -> PromotionDetail:
    """
    Construct the variant for `promotion_type` from a flat mapping (a DB row
    or request payload). Keys belonging to other variants are ignored.
    """
    try:
        tag = PromotionType(promotion_type)
    except ValueError as e:
        raise PromotionValidationError(
            f"Unknown promotion type {promotion_type!r}", field="promotion_type"
        ) from e
    cls = DETAIL_TYPES[tag]
    accepted = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in values.items() if k in accepted})


def replace_detail(current: PromotionDetail, **changes) -> PromotionDetail:
    """New validated variant of the same kind with `changes` applied."""
    changes.setdefault("detail_id", None)
    unknown = set(changes) - {f.name for f in fields(current)}
    if unknown:
        raise PromotionValidationError(
            f"{current.tag.value} has no field(s): {', '.join(sorted(unknown))}",
            field=sorted(unknown)[0],
        )
    return replace(current, **changes)


def detail_to_dict(detail: PromotionDetail) -> dict:
    out = {"detail_type": detail.tag.value}
    for f in fields(detail):
        v = getattr(detail, f.name)
        out[f.name] = v.value if isinstance(v, Enum) else v
    return out


def describe(detail: PromotionDetail) -> str:
    """Human summary shown on receipts."""
    if isinstance(detail, ProductDiscountDetail):
        amount = _describe_amount(detail.discount_type, detail.discount_value)
        if detail.apply_to_type is ApplyToType.PRODUCT:
            return f"{amount} off product #{detail.apply_to_target_id}"
        if detail.apply_to_type is ApplyToType.CATEGORY:
            return f"{amount} off category #{detail.apply_to_target_id}"
        return f"{amount} off every item"
    if isinstance(detail, OrderDiscountDetail):
        text = f"{_describe_amount(detail.discount_type, detail.discount_value)} off the order"
        if detail.discount_type is DiscountType.PERCENTAGE and detail.max_discount_value is not None:
            text += f" (max {fmt_money(detail.max_discount_value)})"
        return text
    buy = f"product #{detail.buy_product_id}" if detail.buy_product_id is not None else "any product"
    conditions = []
    if detail.buy_min_quantity:
        conditions.append(f"{detail.buy_min_quantity} x {buy}")
    if detail.buy_min_value is not None:
        conditions.append(f"{fmt_money(detail.buy_min_value)} of {buy}")
    condition = " and ".join(conditions) or buy
    if detail.gift_discount_type is GiftDiscountType.FREE:
        reward = "free"
    elif detail.gift_discount_type is GiftDiscountType.PERCENTAGE:
        reward = f"at {detail.gift_discount_value.normalize():f}% off"
    else:
        reward = f"at {fmt_money(detail.gift_discount_value)} off"
    return f"Buy {condition}, get {detail.gift_quantity} x product #{detail.gift_product_id} {reward}"


def _describe_amount(discount_type: DiscountType, value: Decimal) -> str:
    if discount_type is DiscountType.PERCENTAGE:
        return f"{value.normalize():f}%"
    return fmt_money(value)


# ---------------------------------------------------------------------------
# lines and headers
# ---------------------------------------------------------------------------

def derive_status(manual_status, start, end, at: datetime) -> PromotionStatus:
    """
    Effective status at `at`. CANCELLED and EXPIRED are terminal and win
    over a manual pause; the window decides between UPCOMING and ACTIVE.
    """
    manual = PromotionStatus(manual_status)
    if manual is PromotionStatus.CANCELLED:
        return PromotionStatus.CANCELLED
    end_dt = to_datetime(end, end_of_day=True)
    if end_dt is not None and at > end_dt:
        return PromotionStatus.EXPIRED
    if manual is PromotionStatus.PAUSED:
        return PromotionStatus.PAUSED
    if at < to_datetime(start):
        return PromotionStatus.UPCOMING
    return PromotionStatus.ACTIVE


@dataclass(frozen=True)
class PromotionHeader:
    promotion_id: int
    name: str
    start_date: str
    end_date: Optional[str]
    manual_status: PromotionStatus = PromotionStatus.ACTIVE
    description: Optional[str] = None

    def status_at(self, at: datetime) -> PromotionStatus:
        return derive_status(self.manual_status, self.start_date, self.end_date, at)


@dataclass(frozen=True)
class PromotionLine:
    promotion_line_id: int
    promotion_id: int
    code: str
    name: str
    promotion_type: PromotionType
    start_date: str
    end_date: Optional[str]
    detail: PromotionDetail
    manual_status: PromotionStatus = PromotionStatus.ACTIVE
    usage_limit: Optional[int] = None
    usage_count: int = 0
    description: Optional[str] = None

    def status_at(self, at: datetime) -> PromotionStatus:
        return derive_status(self.manual_status, self.start_date, self.end_date, at)

    @property
    def has_usage_left(self) -> bool:
        return self.usage_limit is None or self.usage_count < self.usage_limit


# ---------------------------------------------------------------------------
# cart input and priced output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CartLineItem:
    line_id: int
    product_unit_id: int
    quantity: int
    unit_price: Decimal
    category_id: Optional[int] = None
    product_name: str = ""
    unit_name: str = ""

    def __post_init__(self):
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity < 1:
            raise CartValidationError(
                f"Quantity for product unit {self.product_unit_id} must be an integer >= 1"
            )
        try:
            price = to_decimal(self.unit_price)
        except ValueError as e:
            raise CartValidationError(f"Invalid unit price {self.unit_price!r}") from e
        if price is None or price < ZERO:
            raise CartValidationError(f"Invalid unit price {self.unit_price!r}")
        object.__setattr__(self, "unit_price", price)

    @property
    def line_subtotal(self) -> Decimal:
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class AppliedPromotion:
    """
    A promotion as it was granted. `discount_value` is the configured
    parameter (percentage or amount); `discount_amount` is the currency
    amount actually taken off, already rounded.
    """
    promotion_line_id: int
    promotion_code: str
    promotion_name: str
    promotion_type: PromotionType
    promotion_detail_id: Optional[int]
    summary: str
    discount_type: str
    discount_value: Optional[Decimal]
    discount_amount: Decimal
    source_line_item_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "promotion_line_id": self.promotion_line_id,
            "promotion_code": self.promotion_code,
            "promotion_name": self.promotion_name,
            "promotion_type": PromotionType(self.promotion_type).value,
            "promotion_detail_id": self.promotion_detail_id,
            "summary": self.summary,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "discount_amount": self.discount_amount,
            "source_line_item_id": self.source_line_item_id,
        }


@dataclass(frozen=True)
class PricedLine:
    line_id: int
    product_unit_id: int
    product_name: str
    unit_name: str
    quantity: int
    unit_price: Decimal
    line_subtotal: Decimal
    discount_amount: Decimal
    line_total: Decimal
    category_id: Optional[int] = None
    is_gift: bool = False
    source_line_id: Optional[int] = None
    promotion: Optional[AppliedPromotion] = None

    @property
    def has_promotion(self) -> bool:
        return self.promotion is not None

    def to_dict(self) -> dict:
        return {
            "line_item_id": self.line_id,
            "product_unit_id": self.product_unit_id,
            "product_name": self.product_name,
            "unit_name": self.unit_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_subtotal": self.line_subtotal,
            "discount_amount": self.discount_amount,
            "line_total": self.line_total,
            "is_gift": self.is_gift,
            "source_line_item_id": self.source_line_id,
            "has_promotion": self.has_promotion,
            "promotion_applied": self.promotion.to_dict() if self.promotion else None,
        }


@dataclass(frozen=True)
class PricedCart:
    lines: tuple[PricedLine, ...] = ()
    gift_lines: tuple[PricedLine, ...] = ()
    order_promotions: tuple[AppliedPromotion, ...] = ()
    subtotal: Decimal = ZERO
    line_item_discount: Decimal = ZERO
    order_discount: Decimal = ZERO
    gift_total: Decimal = ZERO
    gift_discount: Decimal = ZERO
    total_payable: Decimal = ZERO
    priced_at: datetime = field(default_factory=datetime.now)

    @property
    def all_lines(self) -> tuple[PricedLine, ...]:
        return self.lines + self.gift_lines

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def used_promotion_line_ids(self) -> list[int]:
        """Each promotion line used by this cart, once, ascending."""
        ids = {p.promotion_line_id for p in self.order_promotions}
        ids.update(ln.promotion.promotion_line_id for ln in self.all_lines if ln.promotion)
        return sorted(ids)

    def to_dict(self) -> dict:
        return {
            "items": [ln.to_dict() for ln in self.all_lines],
            "summary": {
                "sub_total": self.subtotal,
                "line_item_discount": self.line_item_discount,
                "order_discount": self.order_discount,
                "gift_total": self.gift_total,
                "gift_discount": self.gift_discount,
                "total_payable": self.total_payable,
            },
            "applied_order_promotions": [p.to_dict() for p in self.order_promotions],
            "priced_at": self.priced_at.isoformat(timespec="seconds"),
        }
