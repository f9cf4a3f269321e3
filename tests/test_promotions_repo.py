# retail_pricing/tests/test_promotions_repo.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import logging

import pytest

from retail_pricing.database import atomic
from retail_pricing.errors import (
    PromotionNotFoundError,
    PromotionStatusError,
    PromotionValidationError,
    UsageLimitExceededError,
)
from retail_pricing.modules.promotion.model import (
    OrderDiscountDetail,
    ProductDiscountDetail,
    PromotionStatus,
)

AT = datetime(2025, 6, 15, 12, 0, 0)
AFTER_YEAR_END = datetime(2026, 2, 1)

TEN_PERCENT = ProductDiscountDetail(discount_type="PERCENTAGE", discount_value="10")


def _active_ids(promotions, at=AT):
    return [ln.promotion_line_id for ln in promotions.active_lines(at)]


# ---------------------------------------------------------------------
# C1. Creation and windows
# ---------------------------------------------------------------------

def test_c1_line_inherits_header_window(add_line, promotions):
    line = add_line(TEN_PERCENT, code="TEN")
    assert (line.start_date, line.end_date) == ("2025-01-01", "2025-12-31")
    assert line.detail.detail_id is not None
    assert line.usage_count == 0
    assert _active_ids(promotions) == [line.promotion_line_id]


def test_c1_line_window_narrows_applicability(add_line, promotions):
    july = add_line(TEN_PERCENT, start_date="2025-07-01", end_date="2025-07-31")
    assert _active_ids(promotions, AT) == []
    assert _active_ids(promotions, datetime(2025, 7, 31, 23, 0)) == [july.promotion_line_id]
    assert _active_ids(promotions, datetime(2025, 8, 1)) == []


def test_c1_line_window_must_fit_inside_header(add_line):
    with pytest.raises(PromotionValidationError):
        add_line(TEN_PERCENT, start_date="2024-12-01")
    with pytest.raises(PromotionValidationError):
        add_line(TEN_PERCENT, end_date="2026-01-15")


def test_c1_end_before_start_is_rejected(promotions):
    with pytest.raises(PromotionValidationError) as ei:
        promotions.create_header("Backwards", "2025-05-01", "2025-04-01")
    assert ei.value.field == "end_date"


def test_c1_codes_are_unique(add_line):
    add_line(TEN_PERCENT, code="SAVE10")
    with pytest.raises(PromotionValidationError) as ei:
        add_line(TEN_PERCENT, code="SAVE10")
    assert ei.value.field == "code"


def test_c1_unknown_line_raises(promotions):
    with pytest.raises(PromotionNotFoundError):
        promotions.get_line(12345)


# ---------------------------------------------------------------------
# C2. Status transitions
# ---------------------------------------------------------------------

def test_c2_pause_and_resume_line(add_line, promotions):
    line = add_line(TEN_PERCENT)
    lid = line.promotion_line_id
    assert promotions.pause_line(lid, at=AT).status_at(AT) is PromotionStatus.PAUSED
    assert _active_ids(promotions) == []
    assert promotions.resume_line(lid, at=AT).status_at(AT) is PromotionStatus.ACTIVE
    assert _active_ids(promotions) == [lid]


def test_c2_cancelled_is_terminal(add_line, promotions):
    lid = add_line(TEN_PERCENT).promotion_line_id
    promotions.cancel_line(lid, at=AT)
    with pytest.raises(PromotionStatusError):
        promotions.resume_line(lid, at=AT)
    with pytest.raises(PromotionStatusError):
        promotions.pause_line(lid, at=AT)
    cancelled = promotions.list_lines(status=PromotionStatus.CANCELLED, at=AT)
    assert [ln.promotion_line_id for ln in cancelled] == [lid]


def test_c2_expired_is_terminal(add_line, promotions):
    lid = add_line(TEN_PERCENT).promotion_line_id
    with pytest.raises(PromotionStatusError):
        promotions.pause_line(lid, at=AFTER_YEAR_END)
    with pytest.raises(PromotionStatusError):
        promotions.cancel_line(lid, at=AFTER_YEAR_END)


def test_c2_resuming_an_active_line_is_refused(add_line, promotions):
    lid = add_line(TEN_PERCENT).promotion_line_id
    with pytest.raises(PromotionStatusError):
        promotions.resume_line(lid, at=AT)


def test_c2_paused_header_hides_its_lines(add_line, promotions, ids):
    lid = add_line(TEN_PERCENT).promotion_line_id
    promotions.pause_header(ids["promo"], at=AT)
    assert _active_ids(promotions) == []
    promotions.resume_header(ids["promo"], at=AT)
    assert _active_ids(promotions) == [lid]


# ---------------------------------------------------------------------
# C3. Detail replacement
# ---------------------------------------------------------------------

def test_c3_replace_detail_supersedes_previous_row(add_line, promotions, conn):
    line = add_line(TEN_PERCENT)
    old_detail_id = line.detail.detail_id
    updated = promotions.replace_detail(line.promotion_line_id, discount_value="15")

    assert updated.detail.discount_value == Decimal("15")
    assert updated.detail.detail_id != old_detail_id
    rows = conn.execute(
        "SELECT detail_id, superseded_at FROM promotion_details WHERE promotion_line_id = ? ORDER BY detail_id",
        (line.promotion_line_id,),
    ).fetchall()
    assert [r["detail_id"] for r in rows] == [old_detail_id, updated.detail.detail_id]
    assert rows[0]["superseded_at"] is not None
    assert rows[1]["superseded_at"] is None


def test_c3_invalid_replacement_keeps_current_detail(add_line, promotions):
    line = add_line(TEN_PERCENT)
    with pytest.raises(PromotionValidationError):
        promotions.replace_detail(line.promotion_line_id, discount_value="250")
    assert promotions.get_line(line.promotion_line_id).detail == line.detail


def test_c3_corrupt_stored_detail_is_skipped(add_line, promotions, conn, caplog):
    bad = add_line(TEN_PERCENT)
    good = add_line(OrderDiscountDetail(discount_type="FIXED_AMOUNT", discount_value="500"))
    conn.execute(
        "UPDATE promotion_details SET discount_value = '150' WHERE promotion_line_id = ?",
        (bad.promotion_line_id,),
    )
    conn.commit()
    with caplog.at_level(logging.WARNING, logger="retail_pricing.database.repositories.promotions_repo"):
        assert _active_ids(promotions) == [good.promotion_line_id]
    assert "invalid detail" in caplog.text


# ---------------------------------------------------------------------
# C4. Usage counter
# ---------------------------------------------------------------------

def test_c4_usage_limit_is_enforced(add_line, promotions, conn):
    lid = add_line(TEN_PERCENT, usage_limit=1).promotion_line_id
    with atomic(conn):
        assert promotions.increment_usage(lid) == 1
    assert _active_ids(promotions) == []
    with pytest.raises(UsageLimitExceededError) as ei:
        with atomic(conn):
            promotions.increment_usage(lid)
    assert (ei.value.usage_limit, ei.value.usage_count) == (1, 1)
    assert promotions.get_line(lid).usage_count == 1


def test_c4_unlimited_line_counts_every_use(add_line, promotions, conn):
    lid = add_line(TEN_PERCENT).promotion_line_id
    with atomic(conn):
        for _ in range(3):
            promotions.increment_usage(lid)
    line = promotions.get_line(lid)
    assert line.usage_count == 3
    assert line.has_usage_left


def test_c4_paused_line_cannot_be_consumed(add_line, promotions, conn):
    lid = add_line(TEN_PERCENT).promotion_line_id
    promotions.pause_line(lid, at=AT)
    with pytest.raises(PromotionStatusError):
        with atomic(conn):
            promotions.increment_usage(lid)
    assert promotions.get_line(lid).usage_count == 0


def test_c4_usage_limit_must_be_positive(add_line):
    with pytest.raises(PromotionValidationError):
        add_line(TEN_PERCENT, usage_limit=0)
