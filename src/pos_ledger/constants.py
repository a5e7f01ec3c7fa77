"""Enumerations and shared constants for the point-of-sale ledger.

The data layer, the business layer, and the CLI all import identifiers from
here so that sheet names, category tags, and document versions have a single
definition.
"""

from __future__ import annotations

from enum import Enum


# Schema version the workbook declares in config.ini.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Version stamped on backup documents.
EXPORT_VERSION = "1.0.0"

DEFAULT_LOW_STOCK_THRESHOLD = 5
DEFAULT_TOP_PRODUCTS_LIMIT = 5
REPORT_TOP_PRODUCTS_LIMIT = 10
RECENT_ACTIVITY_LIMIT = 5

# Phrase a caller must type before the ledger is wiped.
CLEAR_ALL_CONFIRMATION = "DELETE ALL"

ORDER_SHORT_ID_LENGTH = 6


class Category(str, Enum):
    """Product categories offered by the shop."""

    FOOD = "food"
    ACCESSORIES = "accessories"
    TOYS = "toys"
    CLOTHES = "clothes"


class StockFilter(str, Enum):
    """Pseudo-categories understood by the catalog filter."""

    ALL = "all"
    OUT_OF_STOCK = "out-of-stock"
    LOW_STOCK = "low-stock"


class StockStatus(str, Enum):
    """Display status derived from a stock level."""

    OUT_OF_STOCK = "out-of-stock"
    LOW_STOCK = "low-stock"
    IN_STOCK = "in-stock"


class PaymentMethod(str, Enum):
    """Supported payment methods at checkout."""

    CASH = "cash"
    BANK = "bank"


class OrderStatus(str, Enum):
    """Order lifecycle states. Orders are always created completed."""

    COMPLETED = "completed"


class TransactionType(str, Enum):
    """Ledger entry types. Only ``SALE`` is produced by checkout."""

    SALE = "sale"
    PURCHASE = "purchase"
    REFUND = "refund"


class Period(str, Enum):
    """Reporting windows used by the statistics engine."""

    TODAY = "today"
    WEEK = "week"
    MONTH = "month"


class SheetName(str, Enum):
    """Worksheet names managed by the data layer."""

    PRODUCTS = "Products"
    ORDERS = "Orders"
    ORDER_ITEMS = "OrderItems"
    TRANSACTIONS = "Transactions"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "EXPORT_VERSION",
    "DEFAULT_LOW_STOCK_THRESHOLD",
    "DEFAULT_TOP_PRODUCTS_LIMIT",
    "REPORT_TOP_PRODUCTS_LIMIT",
    "RECENT_ACTIVITY_LIMIT",
    "CLEAR_ALL_CONFIRMATION",
    "ORDER_SHORT_ID_LENGTH",
    "Category",
    "StockFilter",
    "StockStatus",
    "PaymentMethod",
    "OrderStatus",
    "TransactionType",
    "Period",
    "SheetName",
]
