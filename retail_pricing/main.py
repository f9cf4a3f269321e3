"""
Command line entry point (`retail-pricing`).

    retail-pricing --db data/retail.db init-db
    retail-pricing check-promotion --item 1:10 --item 4:2
    retail-pricing available-returns 12
    retail-pricing calculate-refund 12 --line 31:5
    retail-pricing render-invoice 12 --out inv.html [--pdf inv.pdf]
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from .database import get_connection
from .database.schema import init_schema
from .config import DB_PATH
from .errors import DomainError
from .service import PosService
from .utils.helpers import to_datetime
from .utils.loggers import get_logger


def _pair(text: str) -> tuple[int, int]:
    """'ID:QTY' -> (ID, QTY)."""
    try:
        left, right = text.split(":", 1)
        return int(left), int(right)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected ID:QTY, got {text!r}") from None


def _when(text: str):
    """ISO date or date-time for --at."""
    try:
        return to_datetime(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an ISO date or date-time, got {text!r}") from None


def _dump(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="retail-pricing", description="Promotion-aware pricing and refunds")
    parser.add_argument("--db", default=None, help=f"Path to SQLite DB (default: {DB_PATH})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create or upgrade the database schema")

    p = sub.add_parser("check-promotion", help="Price a cart against the active promotions")
    p.add_argument("--item", dest="items", action="append", type=_pair, required=True,
                   metavar="PRODUCT_UNIT_ID:QTY")
    p.add_argument("--at", default=None, type=_when, help="Price as of this ISO date/time (default: now)")

    p = sub.add_parser("available-returns", help="Returnable quantity per invoice line")
    p.add_argument("invoice_id", type=int)

    p = sub.add_parser("calculate-refund", help="Preview the refund for a return request")
    p.add_argument("invoice_id", type=int)
    p.add_argument("--line", dest="lines", action="append", type=_pair, required=True,
                   metavar="LINE_ITEM_ID:QTY")

    p = sub.add_parser("render-invoice", help="Render an invoice as HTML (and optionally PDF)")
    p.add_argument("invoice_id", type=int)
    p.add_argument("--out", default=None, help="Write HTML here instead of stdout")
    p.add_argument("--pdf", default=None, help="Also export a PDF to this path")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    log = get_logger("retail_pricing")
    if args.verbose:
        log.setLevel(logging.DEBUG)

    if args.command == "init-db":
        path = init_schema(args.db or DB_PATH)
        conn = get_connection(path)
        conn.close()
        _dump({"database": str(path), "status": "ready"})
        return 0

    service = PosService(get_connection(args.db))
    try:
        if args.command == "check-promotion":
            items = [{"product_unit_id": pid, "quantity": qty} for pid, qty in args.items]
            _dump(service.check_promotion(items, args.at))
        elif args.command == "available-returns":
            _dump(service.get_available_return_quantity(args.invoice_id))
        elif args.command == "calculate-refund":
            lines = [{"line_item_id": lid, "quantity": qty} for lid, qty in args.lines]
            _dump(service.calculate_refund(args.invoice_id, lines))
        elif args.command == "render-invoice":
            html = service.render_invoice(args.invoice_id)
            if args.out:
                with open(args.out, "w", encoding="utf-8") as f:
                    f.write(html)
            else:
                print(html)
            if args.pdf:
                service.export_invoice_pdf(args.invoice_id, args.pdf)
    except DomainError as e:
        log.error("%s failed: %s", args.command, e)
        print(json.dumps(e.to_dict(), ensure_ascii=False, default=str), file=sys.stderr)
        return 2
    finally:
        service.conn.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
