"""Enumerations and limits shared across the pharmacy ERP modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), reporting, and the CLI agree on a single source of truth
for stored identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Environment variable that overrides the configured session account.
ACCOUNT_ENV_VAR = "PHARMACY_ACCOUNT_ID"

DAILY_SALES_LIMIT = 7
TOP_MEDICINES_LIMIT = 5
EXPIRING_SOON_DAYS = 30


class PaymentMethod(str, Enum):
    """Enumerate the tender types accepted at the point of sale."""

    CASH = "cash"
    CARD = "card"
    CHECK = "check"
    INSURANCE = "insurance"


class PaymentStatus(str, Enum):
    """Enumerate the settlement states a committed sale can carry."""

    COMPLETED = "completed"


class StockStatus(str, Enum):
    """Inventory distribution buckets, in reporting order."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    MEDICINES = "Medicines"
    CUSTOMERS = "Customers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ACCOUNT_ENV_VAR",
    "DAILY_SALES_LIMIT",
    "TOP_MEDICINES_LIMIT",
    "EXPIRING_SOON_DAYS",
    "PaymentMethod",
    "PaymentStatus",
    "StockStatus",
    "SheetName",
]
