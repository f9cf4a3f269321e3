# retail_pricing/tests/test_service_cli.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
import json

import pytest

from retail_pricing.database import get_connection
from retail_pricing.database.repositories import PromotionsRepo
from retail_pricing.main import main
from retail_pricing.modules.checkout.invoice_render import load_invoice_template, render_invoice_html
from retail_pricing.modules.promotion.model import BuyXGetYDetail, ProductDiscountDetail
from retail_pricing.utils.helpers import fmt_money

AT = datetime(2025, 6, 15, 12, 0, 0)


@pytest.fixture()
def sold(service, add_line, ids):
    add_line(ProductDiscountDetail(discount_type="PERCENTAGE", discount_value="10"), name="Ten off")
    add_line(BuyXGetYDetail(gift_product_id=ids["chips"], buy_product_id=ids["milk"], buy_min_quantity=2))
    return service.checkout([{"product_unit_id": ids["milk"], "quantity": 2}], "CASH", "20000",
                            employee_id=ids["employee"], customer_id=ids["customer"], at=AT)


# ---------------------------------------------------------------------
# F1. Service payloads
# ---------------------------------------------------------------------

def test_f1_check_promotion_payload(service, add_line, ids):
    add_line(ProductDiscountDetail(discount_type="PERCENTAGE", discount_value="10"), code="TEN")
    out = service.check_promotion([{"product_unit_id": ids["juice"], "quantity": 2}], AT)
    assert out["summary"]["sub_total"] == Decimal("50000.00")
    assert out["summary"]["total_payable"] == Decimal("45000.00")
    (item,) = out["items"]
    assert item["product_name"] == "Juice"
    assert item["promotion_applied"]["promotion_code"] == "TEN"
    assert item["promotion_applied"]["summary"] == "10% off every item"


def test_f1_check_promotion_ignores_inactive_lines(service, add_line, ids, promotions):
    line = add_line(ProductDiscountDetail(discount_type="PERCENTAGE", discount_value="10"))
    promotions.pause_line(line.promotion_line_id, at=AT)
    out = service.check_promotion([{"product_unit_id": ids["juice"], "quantity": 1}], AT)
    assert out["items"][0]["has_promotion"] is False
    assert out["summary"]["total_payable"] == Decimal("25000.00")


def test_f1_available_returns_payload(service, sold):
    out = service.get_available_return_quantity(sold["invoice_id"])
    assert out["invoice_number"] == sold["invoice_number"]
    assert out["status"] == "PAID"
    assert [ln["is_gift"] for ln in out["line_items"]] == [False, True]
    assert out["totals"] == {
        "original_quantity": 3,
        "returned_quantity": 0,
        "available_quantity": 3,
        "available_value": Decimal("18000.00"),
    }


# ---------------------------------------------------------------------
# F2. Invoice documents
# ---------------------------------------------------------------------

def test_f2_render_invoice_html(service, sold):
    html = service.render_invoice(sold["invoice_id"])
    assert sold["invoice_number"] in html
    assert "Retail Pricing" in html
    assert "[gift]" in html
    assert "18,000.00" in html
    assert "10% off every item" in html


def test_f2_custom_template(service, sold, tmp_path):
    tpl = tmp_path / "mini.html"
    tpl.write_text("{{ invoice_number }}|{{ total_amount }}|{{ company_name }}", encoding="utf-8")
    invoice = service.invoices.get(sold["invoice_id"])
    out = render_invoice_html(invoice, company_name="<Corner Shop>", template_path=tpl)
    assert out == f"{sold['invoice_number']}|18,000.00|&lt;Corner Shop&gt;"


def test_f2_money_formatting_rounds_half_up():
    assert fmt_money(Decimal("1234567.005")) == "1,234,567.01"
    assert fmt_money(0) == "0.00"
    assert fmt_money("n/a") == "n/a"


def test_f2_missing_template_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_invoice_template(tmp_path / "nope.html")


# ---------------------------------------------------------------------
# F3. Command line
# ---------------------------------------------------------------------

def test_f3_cli_init_and_check_promotion(tmp_path, seed, capsys):
    db = tmp_path / "cli.db"
    assert main(["--db", str(db), "init-db"]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "ready"

    conn = get_connection(db)
    ids = seed(conn)
    PromotionsRepo(conn).create_line(
        ids["promo"], "TEN", "Ten off", ProductDiscountDetail(discount_type="PERCENTAGE", discount_value="10")
    )
    conn.close()

    rc = main(["--db", str(db), "check-promotion", "--item", f"{ids['milk']}:2", "--at", "2025-06-15"])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert out["summary"]["total_payable"] == "18000.00"
    assert out["items"][0]["promotion_applied"]["promotion_code"] == "TEN"


def test_f3_cli_reports_domain_errors(tmp_path, capsys):
    db = tmp_path / "cli.db"
    rc = main(["--db", str(db), "available-returns", "77"])
    assert rc == 2
    err = capsys.readouterr().err
    payload = json.loads(err.strip().splitlines()[-1])
    assert payload["error"] == "invoice_not_found"


def test_f3_cli_rejects_malformed_pairs(tmp_path):
    with pytest.raises(SystemExit) as ei:
        main(["--db", str(tmp_path / "cli.db"), "check-promotion", "--item", "milk"])
    assert ei.value.code == 2


@pytest.mark.parametrize("when", ["yesterday", "2025-13-45"])
def test_f3_cli_rejects_malformed_at(tmp_path, capsys, when):
    with pytest.raises(SystemExit) as ei:
        main(["--db", str(tmp_path / "cli.db"), "check-promotion", "--item", "1:1", "--at", when])
    assert ei.value.code == 2
    assert "ISO date" in capsys.readouterr().err
