# database/repositories/__init__.py
"""
Repository layer public API.

Usage:
    from retail_pricing.database.repositories import (
        # Products
        ProductsRepo, ProductUnit,
        # Inventory
        InventoryRepo,
        # Promotions
        PromotionCatalog, PromotionsRepo,
        # Invoices
        InvoicesRepo, Invoice, InvoiceItem,
        # Returns
        ReturnsRepo, ReturnRecord, LedgerEntry,
    )
"""

# ---------------- Products -----------------
from .products_repo import ProductsRepo, ProductUnit

# ---------------- Inventory ----------------
from .inventory_repo import InventoryRepo

# --------------- Promotions ----------------
from .promotions_repo import PromotionCatalog, PromotionsRepo

# ---------------- Invoices -----------------
from .invoices_repo import Invoice, InvoiceItem, InvoicesRepo

# ----------------- Returns -----------------
from .returns_repo import LedgerEntry, ReturnItemRecord, ReturnRecord, ReturnsRepo

__all__ = [
    # products_repo
    "ProductsRepo",
    "ProductUnit",
    # inventory_repo
    "InventoryRepo",
    # promotions_repo
    "PromotionCatalog",
    "PromotionsRepo",
    # invoices_repo
    "Invoice",
    "InvoiceItem",
    "InvoicesRepo",
    # returns_repo
    "LedgerEntry",
    "ReturnItemRecord",
    "ReturnRecord",
    "ReturnsRepo",
]
