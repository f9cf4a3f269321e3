"""
Invoice rendering: HTML through a jinja2 template, PDF through WeasyPrint.
"""

from __future__ import annotations

import logging
from pathlib import Path

from jinja2 import Template

from ...constants import APP_NAME, INVOICE_TEMPLATE_PATH
from ...database.repositories.invoices_repo import Invoice
from ...utils.helpers import fmt_money

_log = logging.getLogger(__name__)

PACKAGE_ROOT = Path(__file__).resolve().parent.parent.parent

INVOICE_PDF_CSS = """
    @page {
        margin: 10mm;
        size: A4;
    }
    body {
        margin: 0 !important;
        padding: 0 !important;
        width: 100% !important;
    }
"""


def load_invoice_template(template_path: Path | str | None = None) -> Template:
    path = Path(template_path) if template_path else PACKAGE_ROOT / INVOICE_TEMPLATE_PATH
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        msg = f"Template file not found at: {path}. Please ensure the invoice template exists. Error: {e}"
        _log.error(msg)
        raise FileNotFoundError(msg) from e
    return Template(content, autoescape=True)


def invoice_context(invoice: Invoice, company_name: str = APP_NAME) -> dict:
    """Template variables; money is pre-formatted so the template stays dumb."""
    items = []
    for item in invoice.items:
        items.append({
            "line_no": item.line_no,
            "product_name": item.product_name,
            "unit_name": item.unit_name,
            "quantity": item.quantity,
            "unit_price": fmt_money(item.unit_price),
            "discount": fmt_money(item.discount_amount),
            "line_total": fmt_money(item.line_total),
            "is_gift": item.is_gift,
            "returned_quantity": item.returned_quantity,
            "promotion": item.promotion.summary if item.promotion else None,
        })
    return {
        "company_name": company_name,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status,
        "created_at": invoice.created_at,
        "payment_method": invoice.payment_method,
        "customer_id": invoice.customer_id,
        "employee_id": invoice.employee_id,
        "items": items,
        "order_promotions": [
            {"name": p.promotion_name, "summary": p.summary, "amount": fmt_money(p.discount_amount)}
            for p in invoice.order_promotions
        ],
        "subtotal": fmt_money(invoice.subtotal),
        "line_item_discount": fmt_money(invoice.line_item_discount),
        "order_discount": fmt_money(invoice.order_discount),
        "gift_total": fmt_money(invoice.gift_total),
        "total_discount": fmt_money(invoice.total_discount),
        "total_amount": fmt_money(invoice.total_amount),
        "amount_paid": fmt_money(invoice.amount_paid),
        "change_amount": fmt_money(invoice.change_amount),
    }


def render_invoice_html(invoice: Invoice, *, company_name: str = APP_NAME,
                        template_path: Path | str | None = None) -> str:
    template = load_invoice_template(template_path)
    return template.render(**invoice_context(invoice, company_name))


def export_invoice_pdf(invoice: Invoice, output_path: Path | str, *, company_name: str = APP_NAME) -> Path:
    """Write the invoice as an A4 PDF and return its path."""
    # WeasyPrint pulls in native libraries; import it only when a PDF is wanted
    from weasyprint import CSS, HTML

    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)
    html_content = render_invoice_html(invoice, company_name=company_name)
    HTML(string=html_content).write_pdf(str(output), stylesheets=[CSS(string=INVOICE_PDF_CSS)])
    _log.info("invoice %s exported to %s", invoice.invoice_number, output)
    return output
