"""Reporting aggregator for the pharmacy ERP.

Reports are derived on demand from the account's persisted sales, line items
and catalog. The ``calculate_*`` helpers are pure functions over record lists;
:func:`build_report` and :func:`summarize_dashboard` fetch the owner-scoped
sets through the BLL read helpers and feed them in. Nothing here writes.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from . import core_logic, data_manager, log
from .constants import DAILY_SALES_LIMIT, EXPIRING_SOON_DAYS, TOP_MEDICINES_LIMIT, StockStatus

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class DailySales:
    date: date
    amount: Decimal


@dataclass(frozen=True)
class TopMedicine:
    name: str
    quantity: int


@dataclass(frozen=True)
class InventoryStatusCount:
    status: StockStatus
    count: int


@dataclass(frozen=True)
class ExpiringMedicine:
    medicine_id: str
    name: str
    expiry_date: date
    days_left: int


@dataclass(frozen=True)
class ReportWindow:
    """Inclusive range of local calendar dates; open ends are unbounded."""

    start: Optional[date] = None
    end: Optional[date] = None

    def __post_init__(self) -> None:
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("Report window start must not be after its end")

    def contains(self, day: date) -> bool:
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True


@dataclass(frozen=True)
class SalesReport:
    """Aggregate snapshot returned by :func:`build_report`.

    ``expiring_soon`` is ``None`` unless the report was requested with
    ``include_expiring=True``.
    """

    daily_sales: Tuple[DailySales, ...]
    top_medicines: Tuple[TopMedicine, ...]
    inventory_status: Tuple[InventoryStatusCount, ...]
    total_revenue: Decimal
    total_transactions: int
    expiring_soon: Optional[Tuple[ExpiringMedicine, ...]] = None


@dataclass(frozen=True)
class DashboardSummary:
    total_medicines: int
    low_stock_items: int
    total_customers: int
    total_sales: int
    total_revenue: Decimal
    expiring_items: int


def format_money(amount: Decimal) -> str:
    """Round ``amount`` half-up to two places for display."""
    return format(amount.quantize(_CENT, rounding=ROUND_HALF_UP), "f")


def local_date(moment: datetime, tz: tzinfo) -> date:
    """Return the calendar date of ``moment`` in ``tz``."""
    return moment.astimezone(tz).date()


def calculate_daily_sales(
    sales: Iterable[data_manager.SaleRow],
    tz: tzinfo,
    limit: int = DAILY_SALES_LIMIT,
) -> Tuple[DailySales, ...]:
    """Sum sale totals per local calendar date.

    Dates are emitted in ascending order and only the most recent ``limit``
    dates that actually carry sales are kept. Days without sales are not
    filled in.
    """
    totals: Dict[date, Decimal] = defaultdict(lambda: Decimal("0"))
    for sale in sales:
        totals[local_date(sale.sale_date, tz)] += sale.total_amount

    ordered = sorted(totals.items())
    if limit >= 0:
        ordered = ordered[-limit:] if limit else []
    log.debug("Calculated daily sales for %d date(s)", len(ordered))
    return tuple(DailySales(date=day, amount=amount) for day, amount in ordered)


def rank_top_medicines(
    items: Iterable[data_manager.SaleItemRow],
    medicines_by_id: Mapping[str, data_manager.MedicineRow],
    limit: int = TOP_MEDICINES_LIMIT,
) -> Tuple[TopMedicine, ...]:
    """Rank medicines by total quantity sold.

    Quantities are accumulated per medicine *name*. Line items whose medicine
    no longer resolves in the catalog are skipped. Ties on quantity are broken
    by name ascending so the ranking is deterministic.
    """
    quantities: Dict[str, int] = defaultdict(int)
    skipped = 0
    for item in items:
        medicine = medicines_by_id.get(item.medicine_id)
        if medicine is None:
            skipped += 1
            continue
        quantities[medicine.name] += item.quantity

    if skipped:
        log.debug("Skipped %d line item(s) referencing unknown medicines", skipped)

    ranked = sorted(quantities.items(), key=lambda pair: (-pair[1], pair[0]))
    return tuple(TopMedicine(name=name, quantity=quantity) for name, quantity in ranked[:limit])


def classify_stock(medicine: data_manager.MedicineRow) -> StockStatus:
    if medicine.quantity_in_stock < medicine.reorder_level:
        return StockStatus.LOW
    if medicine.quantity_in_stock >= 2 * medicine.reorder_level:
        return StockStatus.HIGH
    return StockStatus.NORMAL


def calculate_inventory_status(
    medicines: Iterable[data_manager.MedicineRow],
) -> Tuple[InventoryStatusCount, ...]:
    """Count medicines per stock bucket.

    All three buckets are always present, in ``low``, ``normal``, ``high``
    order, and their counts sum to the number of medicines.
    """
    counts: Dict[StockStatus, int] = {status: 0 for status in StockStatus}
    for medicine in medicines:
        counts[classify_stock(medicine)] += 1
    return tuple(InventoryStatusCount(status=status, count=counts[status]) for status in StockStatus)


def calculate_revenue_summary(sales: Sequence[data_manager.SaleRow]) -> Tuple[Decimal, int]:
    """Return the exact revenue total and the transaction count."""
    total = sum((sale.total_amount for sale in sales), Decimal("0"))
    log.debug("Calculated revenue summary: revenue=%s transactions=%d", total, len(sales))
    return total, len(sales)


def find_expiring_medicines(
    medicines: Iterable[data_manager.MedicineRow],
    today: date,
    days: int = EXPIRING_SOON_DAYS,
) -> Tuple[ExpiringMedicine, ...]:
    """Return medicines expiring after ``today`` and within ``days`` days.

    Already-expired medicines and medicines expiring today are excluded.
    Results are ordered by days left, then name.
    """
    expiring: List[ExpiringMedicine] = []
    for medicine in medicines:
        if medicine.expiry_date is None:
            continue
        days_left = (medicine.expiry_date - today).days
        if 0 < days_left <= days:
            expiring.append(
                ExpiringMedicine(
                    medicine_id=medicine.medicine_id,
                    name=medicine.name,
                    expiry_date=medicine.expiry_date,
                    days_left=days_left,
                )
            )
    expiring.sort(key=lambda entry: (entry.days_left, entry.name))
    return tuple(expiring)


def _report_timezone(context: core_logic.RuntimeContext) -> tzinfo:
    return ZoneInfo(context.settings.timezone)


def build_report(
    context: core_logic.RuntimeContext,
    account_id: Optional[str],
    *,
    window: Optional[ReportWindow] = None,
    include_expiring: bool = False,
    today: Optional[date] = None,
) -> SalesReport:
    """Derive the sales report for one account.

    Each table is read as its own snapshot; a commit landing between two reads
    may be partially visible. Missing data produces empty sections rather than
    errors.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        account_id (str | None): Account whose records are aggregated.
        window (ReportWindow | None): Optional local-date filter applied to
            sales and their line items. Inventory figures are unaffected.
        include_expiring (bool): When ``True`` the report lists medicines
            expiring within the next 30 days.
        today (date | None): Reference date for the expiry calculation;
            defaults to the current local date.

    Returns:
        SalesReport: Daily sales, top medicines, stock buckets and totals.

    Raises:
        NotAuthenticatedError: If ``account_id`` is missing.
    """
    owner = core_logic.require_account(account_id)
    tz = _report_timezone(context)

    sales = core_logic.list_sales(context, owner)
    items = core_logic.list_sale_items(context, owner)
    medicines = core_logic.list_medicines(context, owner)

    if window is not None:
        sales = [sale for sale in sales if window.contains(local_date(sale.sale_date, tz))]
        sale_ids = {sale.sale_id for sale in sales}
        items = [item for item in items if item.sale_id in sale_ids]

    total_revenue, total_transactions = calculate_revenue_summary(sales)
    expiring: Optional[Tuple[ExpiringMedicine, ...]] = None
    if include_expiring:
        reference = today if today is not None else datetime.now(tz).date()
        expiring = find_expiring_medicines(medicines, reference)

    report = SalesReport(
        daily_sales=calculate_daily_sales(sales, tz),
        top_medicines=rank_top_medicines(
            items,
            {medicine.medicine_id: medicine for medicine in medicines},
        ),
        inventory_status=calculate_inventory_status(medicines),
        total_revenue=total_revenue,
        total_transactions=total_transactions,
        expiring_soon=expiring,
    )
    log.info(
        "Built report for account '%s': %d sale(s), revenue=%s",
        owner,
        total_transactions,
        total_revenue,
    )
    return report


def summarize_dashboard(
    context: core_logic.RuntimeContext,
    account_id: Optional[str],
    *,
    today: Optional[date] = None,
) -> DashboardSummary:
    """Return the headline counters shown on the overview screen."""
    owner = core_logic.require_account(account_id)
    medicines = core_logic.list_medicines(context, owner)
    sales = core_logic.list_sales(context, owner)
    reference = today if today is not None else datetime.now(_report_timezone(context)).date()
    total_revenue, total_sales = calculate_revenue_summary(sales)
    return DashboardSummary(
        total_medicines=len(medicines),
        low_stock_items=sum(1 for medicine in medicines if classify_stock(medicine) is StockStatus.LOW),
        total_customers=len(core_logic.list_customers(context, owner)),
        total_sales=total_sales,
        total_revenue=total_revenue,
        expiring_items=len(find_expiring_medicines(medicines, reference)),
    )
