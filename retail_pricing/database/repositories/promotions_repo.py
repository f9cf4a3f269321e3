"""
Promotion catalog (read side) and its administration (write side).

PromotionCatalog answers one question: which promotion lines, with their
current detail, may be applied at a given instant. PromotionsRepo adds
header/line creation, detail replacement, status transitions and the
compare-and-swap usage counter used by checkout.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
import logging
import sqlite3
from typing import Optional

from ...errors import PromotionNotFoundError, PromotionStatusError, PromotionValidationError, UsageLimitExceededError
from ...modules.promotion.model import (
    PromotionDetail,
    PromotionHeader,
    PromotionLine,
    PromotionStatus,
    PromotionType,
    build_detail,
    detail_to_dict,
    replace_detail,
)
from ...utils.helpers import to_datetime
from .. import atomic

_log = logging.getLogger(__name__)

DETAIL_COLUMNS = (
    "discount_type",
    "discount_value",
    "apply_to_type",
    "apply_to_target_id",
    "min_order_value",
    "min_promotion_value",
    "min_promotion_quantity",
    "max_discount_value",
    "min_order_total_value",
    "min_order_total_quantity",
    "buy_product_id",
    "buy_min_quantity",
    "buy_min_value",
    "gift_product_id",
    "gift_quantity",
    "gift_discount_type",
    "gift_discount_value",
    "gift_max_quantity",
)

_LINE_SELECT = """
    SELECT l.promotion_line_id, l.promotion_id, l.promotion_code, l.promotion_type,
           l.name, l.description, l.start_date, l.end_date, l.manual_status,
           l.usage_limit, l.usage_count,
           h.start_date    AS header_start_date,
           h.end_date      AS header_end_date,
           h.manual_status AS header_manual_status,
           d.detail_id, {detail_cols}
    FROM promotion_lines l
    JOIN promotion_headers h ON h.promotion_id = l.promotion_id
    LEFT JOIN promotion_details d
           ON d.promotion_line_id = l.promotion_line_id AND d.superseded_at IS NULL
""".format(detail_cols=", ".join(f"d.{c}" for c in DETAIL_COLUMNS))


def _db_value(v):
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, Decimal):
        return str(v)
    return v


class PromotionCatalog:
    """Read-only view used by the pricing engine."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.row_factory = sqlite3.Row

    def active_lines(self, at: datetime | None = None) -> list[PromotionLine]:
        """
        Lines applicable at `at`: inside their own and their header's window,
        neither paused nor cancelled, and with usage left. Ordered by id.
        Lines whose stored detail does not validate are logged and skipped.
        """
        at = at or datetime.now()
        rows = self.conn.execute(
            _LINE_SELECT
            + """
            WHERE l.manual_status = 'ACTIVE'
              AND h.manual_status = 'ACTIVE'
              AND (l.usage_limit IS NULL OR l.usage_count < l.usage_limit)
            ORDER BY l.promotion_line_id
            """
        ).fetchall()

        out: list[PromotionLine] = []
        for r in rows:
            header_status = PromotionHeader(
                promotion_id=r["promotion_id"],
                name="",
                start_date=r["header_start_date"],
                end_date=r["header_end_date"],
                manual_status=PromotionStatus(r["header_manual_status"]),
            ).status_at(at)
            if header_status is not PromotionStatus.ACTIVE:
                continue
            try:
                line = self._to_line(r)
            except PromotionValidationError as e:
                _log.warning(
                    "promotion line %s (%s) has an invalid detail, skipped: %s",
                    r["promotion_line_id"], r["promotion_code"], e,
                )
                continue
            if line.status_at(at) is PromotionStatus.ACTIVE and line.has_usage_left:
                out.append(line)
        return out

    # ------------------------------------------------------------------
    @staticmethod
    def _to_line(r: sqlite3.Row) -> PromotionLine:
        if r["detail_id"] is None:
            raise PromotionValidationError("promotion line has no detail", field="detail")
        values = {c: r[c] for c in DETAIL_COLUMNS if r[c] is not None}
        values["detail_id"] = r["detail_id"]
        return PromotionLine(
            promotion_line_id=int(r["promotion_line_id"]),
            promotion_id=int(r["promotion_id"]),
            code=r["promotion_code"],
            name=r["name"],
            promotion_type=PromotionType(r["promotion_type"]),
            start_date=r["start_date"],
            end_date=r["end_date"],
            detail=build_detail(r["promotion_type"], values),
            manual_status=PromotionStatus(r["manual_status"]),
            usage_limit=r["usage_limit"],
            usage_count=int(r["usage_count"]),
            description=r["description"],
        )


class PromotionsRepo(PromotionCatalog):
    """
    Promotion administration.

    Key behavior:
      - A line's window defaults to its header's and must lie inside it.
      - Details are immutable: replacing one inserts a new row and marks the
        old row superseded (frozen invoices keep their detail_id).
      - Status transitions are monotone: EXPIRED and CANCELLED are terminal.
      - usage_count only moves through `increment_usage` (checkout).
    """

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------
    def create_header(
        self,
        name: str,
        start_date: str,
        end_date: str | None = None,
        description: str | None = None,
    ) -> PromotionHeader:
        self._check_window(start_date, end_date)
        with atomic(self.conn):
            cur = self.conn.execute(
                "INSERT INTO promotion_headers(name, description, start_date, end_date) VALUES (?, ?, ?, ?)",
                (name, description, str(start_date), str(end_date) if end_date else None),
            )
        return self.get_header(int(cur.lastrowid))

    def get_header(self, promotion_id: int) -> PromotionHeader:
        r = self.conn.execute(
            "SELECT promotion_id, name, description, start_date, end_date, manual_status "
            "FROM promotion_headers WHERE promotion_id = ?",
            (int(promotion_id),),
        ).fetchone()
        if r is None:
            raise PromotionNotFoundError(f"Promotion {promotion_id} not found")
        return PromotionHeader(
            promotion_id=int(r["promotion_id"]),
            name=r["name"],
            start_date=r["start_date"],
            end_date=r["end_date"],
            manual_status=PromotionStatus(r["manual_status"]),
            description=r["description"],
        )

    def pause_header(self, promotion_id: int, at: datetime | None = None) -> PromotionHeader:
        header = self.get_header(promotion_id)
        self._transition("promotion_headers", "promotion_id", promotion_id,
                         header.status_at(at or datetime.now()), PromotionStatus.PAUSED, header.manual_status)
        return self.get_header(promotion_id)

    def resume_header(self, promotion_id: int, at: datetime | None = None) -> PromotionHeader:
        header = self.get_header(promotion_id)
        self._transition("promotion_headers", "promotion_id", promotion_id,
                         header.status_at(at or datetime.now()), PromotionStatus.ACTIVE, header.manual_status)
        return self.get_header(promotion_id)

    def cancel_header(self, promotion_id: int, at: datetime | None = None) -> PromotionHeader:
        header = self.get_header(promotion_id)
        self._transition("promotion_headers", "promotion_id", promotion_id,
                         header.status_at(at or datetime.now()), PromotionStatus.CANCELLED, header.manual_status)
        return self.get_header(promotion_id)

    # ------------------------------------------------------------------
    # Lines
    # ------------------------------------------------------------------
    def create_line(
        self,
        promotion_id: int,
        code: str,
        name: str,
        detail: PromotionDetail,
        *,
        start_date: str | None = None,
        end_date: str | None = None,
        usage_limit: int | None = None,
        description: str | None = None,
    ) -> PromotionLine:
        header = self.get_header(promotion_id)
        start = str(start_date) if start_date else header.start_date
        end = str(end_date) if end_date else header.end_date
        self._check_window(start, end)
        h_start, h_end = to_datetime(header.start_date), to_datetime(header.end_date, end_of_day=True)
        if to_datetime(start) < h_start or (
            h_end is not None and (end is None or to_datetime(end, end_of_day=True) > h_end)
        ):
            raise PromotionValidationError(
                "Promotion line window must lie inside its promotion's window", field="start_date"
            )
        if usage_limit is not None and (isinstance(usage_limit, bool) or int(usage_limit) < 1):
            raise PromotionValidationError("usage_limit must be >= 1", field="usage_limit")
        code = (code or "").strip()
        if not code:
            raise PromotionValidationError("promotion code is required", field="code")
        if self.conn.execute(
            "SELECT 1 FROM promotion_lines WHERE promotion_code = ?", (code,)
        ).fetchone():
            raise PromotionValidationError(f"promotion code {code!r} already exists", field="code")

        with atomic(self.conn):
            cur = self.conn.execute(
                """
                INSERT INTO promotion_lines
                    (promotion_id, promotion_code, promotion_type, name, description,
                     start_date, end_date, usage_limit)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (int(promotion_id), code, detail.tag.value, name, description,
                 start, end, usage_limit),
            )
            line_id = int(cur.lastrowid)
            self._insert_detail(line_id, detail)
        return self.get_line(line_id)

    def get_line(self, promotion_line_id: int) -> PromotionLine:
        r = self.conn.execute(
            _LINE_SELECT + " WHERE l.promotion_line_id = ?", (int(promotion_line_id),)
        ).fetchone()
        if r is None:
            raise PromotionNotFoundError(f"Promotion line {promotion_line_id} not found")
        return self._to_line(r)

    def list_lines(
        self,
        promotion_id: int | None = None,
        *,
        status: PromotionStatus | str | None = None,
        at: datetime | None = None,
    ) -> list[PromotionLine]:
        """All lines (optionally of one header / one effective status)."""
        sql = _LINE_SELECT
        params: list = []
        if promotion_id is not None:
            sql += " WHERE l.promotion_id = ?"
            params.append(int(promotion_id))
        sql += " ORDER BY l.promotion_line_id"
        lines = []
        for r in self.conn.execute(sql, params).fetchall():
            try:
                lines.append(self._to_line(r))
            except PromotionValidationError as e:
                _log.warning("promotion line %s skipped: %s", r["promotion_line_id"], e)
        if status is not None:
            wanted = PromotionStatus(status)
            when = at or datetime.now()
            lines = [ln for ln in lines if ln.status_at(when) is wanted]
        return lines

    def replace_detail(self, promotion_line_id: int, **changes) -> PromotionLine:
        """
        Swap the line's detail for a new variant of the same kind built from
        the current one plus `changes`. The previous row is kept, superseded.
        """
        line = self.get_line(promotion_line_id)
        new_detail = replace_detail(line.detail, **changes)
        with atomic(self.conn):
            self.conn.execute(
                "UPDATE promotion_details SET superseded_at = datetime('now','localtime') "
                "WHERE promotion_line_id = ? AND superseded_at IS NULL",
                (int(promotion_line_id),),
            )
            self._insert_detail(int(promotion_line_id), new_detail)
        return self.get_line(promotion_line_id)

    def pause_line(self, promotion_line_id: int, at: datetime | None = None) -> PromotionLine:
        return self._set_line_status(promotion_line_id, PromotionStatus.PAUSED, at)

    def resume_line(self, promotion_line_id: int, at: datetime | None = None) -> PromotionLine:
        return self._set_line_status(promotion_line_id, PromotionStatus.ACTIVE, at)

    def cancel_line(self, promotion_line_id: int, at: datetime | None = None) -> PromotionLine:
        return self._set_line_status(promotion_line_id, PromotionStatus.CANCELLED, at)

    # ------------------------------------------------------------------
    # Usage (checkout only; caller owns the transaction)
    # ------------------------------------------------------------------
    def increment_usage(self, promotion_line_id: int) -> int:
        """
        Compare-and-swap +1 on usage_count. Raises UsageLimitExceededError
        when the limit is already reached, PromotionStatusError when the
        line was paused or cancelled after pricing. Returns the new count.
        """
        lid = int(promotion_line_id)
        cur = self.conn.execute(
            """
            UPDATE promotion_lines
               SET usage_count = usage_count + 1
             WHERE promotion_line_id = ?
               AND manual_status = 'ACTIVE'
               AND (usage_limit IS NULL OR usage_count < usage_limit)
            """,
            (lid,),
        )
        row = self.conn.execute(
            "SELECT manual_status, usage_limit, usage_count FROM promotion_lines WHERE promotion_line_id = ?",
            (lid,),
        ).fetchone()
        if row is None:
            raise PromotionNotFoundError(f"Promotion line {lid} not found")
        if cur.rowcount != 1:
            if row["manual_status"] != PromotionStatus.ACTIVE.value:
                raise PromotionStatusError(
                    f"Promotion line {lid} is {row['manual_status']} and can no longer be used"
                )
            raise UsageLimitExceededError(lid, row["usage_limit"], row["usage_count"])
        return int(row["usage_count"])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _insert_detail(self, line_id: int, detail: PromotionDetail) -> int:
        values = detail_to_dict(detail)
        cols = [c for c in DETAIL_COLUMNS if c in values]
        cur = self.conn.execute(
            f"INSERT INTO promotion_details (promotion_line_id, detail_type, {', '.join(cols)}) "
            f"VALUES (?, ?, {', '.join('?' for _ in cols)})",
            [line_id, detail.tag.value] + [_db_value(values[c]) for c in cols],
        )
        return int(cur.lastrowid)

    def _set_line_status(self, promotion_line_id, target: PromotionStatus, at) -> PromotionLine:
        line = self.get_line(promotion_line_id)
        self._transition(
            "promotion_lines", "promotion_line_id", promotion_line_id,
            line.status_at(at or datetime.now()), target, line.manual_status,
        )
        return self.get_line(promotion_line_id)

    def _transition(self, table, key, row_id, current: PromotionStatus, target: PromotionStatus,
                    manual: PromotionStatus) -> None:
        """
        Allowed: ACTIVE/UPCOMING -> PAUSED, PAUSED -> ACTIVE, and anything
        not terminal -> CANCELLED. The UPDATE is conditional on the manual
        status we read, so a concurrent change surfaces as an error.
        """
        if current in (PromotionStatus.EXPIRED, PromotionStatus.CANCELLED):
            raise PromotionStatusError(f"Cannot move a {current.value} promotion to {target.value}")
        allowed = {
            PromotionStatus.PAUSED: current in (PromotionStatus.ACTIVE, PromotionStatus.UPCOMING),
            PromotionStatus.ACTIVE: current is PromotionStatus.PAUSED,
            PromotionStatus.CANCELLED: True,
        }
        if not allowed.get(target, False):
            raise PromotionStatusError(f"Cannot move a {current.value} promotion to {target.value}")
        with atomic(self.conn):
            cur = self.conn.execute(
                f"UPDATE {table} SET manual_status = ? WHERE {key} = ? AND manual_status = ?",
                (target.value, int(row_id), PromotionStatus(manual).value),
            )
            if cur.rowcount != 1:
                raise PromotionStatusError(f"{table} {row_id} changed concurrently; reload and retry")

    @staticmethod
    def _check_window(start_date, end_date) -> None:
        if not start_date:
            raise PromotionValidationError("start_date is required", field="start_date")
        try:
            start = to_datetime(start_date)
            end = to_datetime(end_date, end_of_day=True)
        except ValueError as e:
            raise PromotionValidationError(f"invalid date: {e}", field="start_date") from e
        if end is not None and end < start:
            raise PromotionValidationError("end_date must not be before start_date", field="end_date")
