# retail_pricing/database/repositories/products_repo.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional
import sqlite3

from ...errors import CartValidationError
from ...utils.helpers import to_decimal
from .. import atomic


@dataclass(frozen=True)
class ProductUnit:
    product_unit_id: int
    product_name: str
    unit_name: str
    category_id: Optional[int]
    price: Decimal
    is_active: bool = True


class ProductsRepo:
    """
    Minimal read model of sellable product units. Prices are the current
    undiscounted unit prices the pricing engine starts from.
    """

    _COLUMNS = "product_unit_id, product_name, unit_name, category_id, price, is_active"

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        # Use Row for named access
        self.conn.row_factory = sqlite3.Row

    # ---------------------------- Categories ----------------------------

    def create_category(self, name: str) -> int:
        name = (name or "").strip()
        if not name:
            raise CartValidationError("Category name is required.")
        with atomic(self.conn):
            cur = self.conn.execute("INSERT INTO categories(name) VALUES (?)", (name,))
        return int(cur.lastrowid)

    # ---------------------------- Product units ----------------------------

    def create(
        self,
        product_name: str,
        price,
        *,
        unit_name: str = "unit",
        category_id: int | None = None,
    ) -> int:
        price_d = to_decimal(price)
        if price_d is None or price_d < 0:
            raise CartValidationError(f"Invalid price {price!r} for {product_name!r}.")
        with atomic(self.conn):
            cur = self.conn.execute(
                "INSERT INTO product_units(product_name, unit_name, category_id, price) "
                "VALUES (?, ?, ?, ?)",
                (product_name, unit_name, category_id, str(price_d)),
            )
        return int(cur.lastrowid)

    def get(self, product_unit_id: int) -> ProductUnit | None:
        r = self.conn.execute(
            f"SELECT {self._COLUMNS} FROM product_units WHERE product_unit_id=?",
            (int(product_unit_id),),
        ).fetchone()
        return self._to_product(r) if r else None

    def get_many(self, ids: Iterable[int]) -> dict[int, ProductUnit]:
        wanted = sorted({int(i) for i in ids})
        if not wanted:
            return {}
        marks = ",".join("?" for _ in wanted)
        rows = self.conn.execute(
            f"SELECT {self._COLUMNS} FROM product_units WHERE product_unit_id IN ({marks})",
            wanted,
        ).fetchall()
        return {int(r["product_unit_id"]): self._to_product(r) for r in rows}

    @staticmethod
    def _to_product(r: sqlite3.Row) -> ProductUnit:
        return ProductUnit(
            product_unit_id=int(r["product_unit_id"]),
            product_name=r["product_name"],
            unit_name=r["unit_name"],
            category_id=r["category_id"],
            price=to_decimal(r["price"]),
            is_active=bool(r["is_active"]),
        )
