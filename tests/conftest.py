# retail_pricing/tests/conftest.py
# ---------------------------------------------------------------------
# Ground rules:
# - Every test gets a fresh in-memory DB with the full schema applied
# - conn.row_factory = sqlite3.Row, PRAGMA foreign_keys=ON (get_connection)
# - `ids` seeds three product units with opening stock and one
#   promotion header covering 2025; tests price "as of" a fixed instant
# - `add_line` creates promotion lines under that header
# ---------------------------------------------------------------------

from __future__ import annotations

import sqlite3

import pytest

from retail_pricing.database import get_connection
from retail_pricing.database.repositories import InventoryRepo, ProductsRepo, PromotionsRepo
from retail_pricing.service import PosService

OPENING_STOCK = 100


def seed_catalog(conn: sqlite3.Connection) -> dict:
    """Categories, three product units with stock, and an all-year promotion header."""
    products = ProductsRepo(conn)
    inventory = InventoryRepo(conn)
    drinks = products.create_category("Drinks")
    snacks = products.create_category("Snacks")
    milk = products.create("Milk", "10000.00", unit_name="carton", category_id=drinks)
    juice = products.create("Juice", "25000.00", unit_name="bottle", category_id=drinks)
    chips = products.create("Chips", "8000.00", unit_name="bag", category_id=snacks)
    for pid in (milk, juice, chips):
        inventory.add_adjustment(pid, OPENING_STOCK, notes="opening stock")
    header = PromotionsRepo(conn).create_header("Year sale", "2025-01-01", "2025-12-31")
    return {
        "cat_drinks": drinks,
        "cat_snacks": snacks,
        "milk": milk,
        "juice": juice,
        "chips": chips,
        "promo": header.promotion_id,
        "employee": 7,
        "customer": 42,
    }


@pytest.fixture()
def conn():
    con = get_connection(":memory:")
    try:
        yield con
    finally:
        con.close()


@pytest.fixture()
def ids(conn: sqlite3.Connection) -> dict:
    return seed_catalog(conn)


@pytest.fixture()
def promotions(conn: sqlite3.Connection) -> PromotionsRepo:
    return PromotionsRepo(conn)


@pytest.fixture()
def add_line(promotions: PromotionsRepo, ids: dict):
    """Factory: add_line(detail, code=..., usage_limit=..., start_date=..., end_date=...)."""
    counter = {"n": 0}

    def _make(detail, code: str | None = None, name: str | None = None, **kw):
        counter["n"] += 1
        code = code or f"PL{counter['n']:03d}"
        return promotions.create_line(ids["promo"], code, name or code, detail, **kw)

    return _make


@pytest.fixture()
def service(conn: sqlite3.Connection, ids: dict) -> PosService:
    return PosService(conn)


@pytest.fixture()
def seed():
    """seed_catalog itself, for tests that open their own (file) databases."""
    return seed_catalog
