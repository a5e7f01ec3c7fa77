"""Read-side statistics over the ledger.

Everything in this module is a pure query: it reads products, orders and
transactions through :mod:`pos_ledger.core_logic` and never writes. Dates are
compared as timezone-aware datetimes; period boundaries are computed in the
local timezone of ``now``.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Union

from . import backup, core_logic, data_manager, log
from .constants import (
    DEFAULT_TOP_PRODUCTS_LIMIT,
    RECENT_ACTIVITY_LIMIT,
    REPORT_TOP_PRODUCTS_LIMIT,
    Period,
    StockStatus,
    TransactionType,
)

Number = Union[int, float, Decimal]

_ONE_MICROSECOND = timedelta(microseconds=1)
_ONE_DECIMAL = Decimal("0.1")


@dataclass(frozen=True)
class DateRange:
    """Closed interval ``[start, end]`` of aware datetimes."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class PercentageChange:
    """Magnitude of a change in percent plus its direction."""

    percentage: Decimal
    is_positive: bool


@dataclass(frozen=True)
class TopSeller:
    product: data_manager.ProductRow
    sold_quantity: int
    revenue: Decimal


@dataclass(frozen=True)
class PeriodSummary:
    """Dashboard figures for a period and the period before it."""

    period: Period
    current_range: DateRange
    previous_range: DateRange
    revenue: Decimal
    previous_revenue: Decimal
    profit: Decimal
    previous_profit: Decimal
    orders: int
    previous_orders: int
    revenue_change: PercentageChange
    profit_change: PercentageChange
    orders_change: PercentageChange


def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO-8601 timestamp. Naive values are taken as UTC."""

    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def _local_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now().astimezone()
    if now.tzinfo is None:
        return now.astimezone()
    return now


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _start_of_week(day_start: datetime) -> datetime:
    # Weeks start on Sunday; Monday is weekday() == 0.
    return day_start - timedelta(days=(day_start.weekday() + 1) % 7)


def _start_of_next_month(month_start: datetime) -> datetime:
    return (month_start + timedelta(days=32)).replace(day=1)


def period_range(period: Period, now: Optional[datetime] = None) -> DateRange:
    """Return the window for ``period`` that contains ``now``.

    * ``TODAY``: local midnight to the last microsecond of the day.
    * ``WEEK``: the most recent Sunday midnight plus seven days, minus one
      microsecond.
    * ``MONTH``: the first of the month to the last microsecond of the month.

    Args:
        period (Period): Window to compute.
        now (datetime | None): Reference moment; defaults to the current
            local time. Naive values are read as local time.

    Returns:
        DateRange: Inclusive boundaries of the window.
    """
    now = _local_now(now)
    today = _start_of_day(now)
    period = Period(period)

    if period is Period.TODAY:
        return DateRange(today, today + timedelta(days=1) - _ONE_MICROSECOND)
    if period is Period.WEEK:
        week_start = _start_of_week(today)
        return DateRange(week_start, week_start + timedelta(days=7) - _ONE_MICROSECOND)

    month_start = today.replace(day=1)
    return DateRange(month_start, _start_of_next_month(month_start) - _ONE_MICROSECOND)


def previous_period_range(period: Period, now: Optional[datetime] = None) -> DateRange:
    """Return the window immediately before :func:`period_range`.

    Yesterday for ``TODAY``, the prior Sunday-to-Saturday week for ``WEEK``
    and the prior calendar month for ``MONTH``.
    """
    current = period_range(period, now)
    period = Period(period)

    if period is Period.TODAY:
        return DateRange(current.start - timedelta(days=1), current.start - _ONE_MICROSECOND)
    if period is Period.WEEK:
        return DateRange(current.start - timedelta(days=7), current.start - _ONE_MICROSECOND)

    previous_start = (current.start - timedelta(days=1)).replace(day=1)
    return DateRange(previous_start, current.start - _ONE_MICROSECOND)


def _in_range(created_at: str, date_range: DateRange) -> bool:
    return date_range.contains(parse_timestamp(created_at))


def revenue(context: core_logic.RuntimeContext, date_range: DateRange) -> Decimal:
    """Sum of ``sale`` transaction amounts whose timestamp falls in ``date_range``."""

    return sum(
        (
            transaction.amount
            for transaction in core_logic.list_transactions(context)
            if transaction.transaction_type == TransactionType.SALE.value
            and _in_range(transaction.created_at, date_range)
        ),
        Decimal("0"),
    )


def profit(context: core_logic.RuntimeContext, date_range: DateRange) -> Decimal:
    """Gross profit of the orders placed in ``date_range``.

    Each line contributes ``(sale price - current product cost) * quantity``.
    The cost is read from the product as it is now, not as it was at the time
    of sale, and lines whose product has since been deleted contribute
    nothing.
    """
    products = {product.product_id: product for product in core_logic.list_products(context)}
    total = Decimal("0")
    skipped = 0
    for order in core_logic.list_orders(context):
        if not _in_range(order.created_at, date_range):
            continue
        for item in order.items:
            product = products.get(item.product_id)
            if product is None:
                skipped += 1
                continue
            total += (item.price - product.cost) * item.quantity
    if skipped:
        log.debug("Profit skipped %d line(s) for deleted products", skipped)
    return total


def order_count(context: core_logic.RuntimeContext, date_range: DateRange) -> int:
    return sum(1 for order in core_logic.list_orders(context) if _in_range(order.created_at, date_range))


def percentage_change(current: Number, previous: Number) -> PercentageChange:
    """Compare two figures the way the dashboard shows them.

    With ``previous == 0`` the result is 100 (positive) when ``current`` is
    above zero and 0 (not positive) otherwise. In every other case it is
    ``|(current - previous) / previous * 100|`` rounded half-up to one
    decimal, so the percentage is never negative even for a negative
    ``previous``. It is positive when ``current >= previous``.

    Examples:
        >>> percentage_change(150, 100)
        PercentageChange(percentage=Decimal('50.0'), is_positive=True)
        >>> percentage_change(0, 0)
        PercentageChange(percentage=Decimal('0'), is_positive=False)
    """
    current = Decimal(str(current))
    previous = Decimal(str(previous))

    if previous == 0:
        if current > 0:
            return PercentageChange(percentage=Decimal("100"), is_positive=True)
        return PercentageChange(percentage=Decimal("0"), is_positive=False)

    delta = current - previous
    magnitude = abs(delta / previous * 100).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP)
    return PercentageChange(percentage=magnitude, is_positive=delta >= 0)


def top_selling_products(context: core_logic.RuntimeContext, limit: int = DEFAULT_TOP_PRODUCTS_LIMIT) -> List[TopSeller]:
    """Rank products by units sold across every order.

    Quantities and revenue (``price * quantity`` per line) are aggregated per
    product id, sorted by quantity descending (ties keep first-sold order),
    cut to ``limit``, and then joined to the current catalog. Entries whose
    product no longer exists are dropped after the cut, so fewer than
    ``limit`` results may come back.
    """
    quantities: Dict[str, int] = defaultdict(int)
    revenues: Dict[str, Decimal] = defaultdict(Decimal)
    for order in core_logic.list_orders(context):
        for item in order.items:
            quantities[item.product_id] += item.quantity
            revenues[item.product_id] += item.price * item.quantity

    ranked = sorted(quantities, key=lambda product_id: quantities[product_id], reverse=True)[: max(limit, 0)]
    products = {product.product_id: product for product in core_logic.list_products(context)}
    return [
        TopSeller(product=products[product_id], sold_quantity=quantities[product_id], revenue=revenues[product_id])
        for product_id in ranked
        if product_id in products
    ]


def low_stock_products(context: core_logic.RuntimeContext, threshold: Optional[int] = None) -> List[data_manager.ProductRow]:
    """Products at or below ``threshold`` units, out-of-stock ones included.

    The threshold defaults to the configured ``LowStockThreshold``.
    """
    if threshold is None:
        threshold = context.settings.low_stock_threshold
    return [product for product in core_logic.list_products(context) if product.stock <= threshold]


def stock_status(stock: int, threshold: int) -> StockStatus:
    if stock <= 0:
        return StockStatus.OUT_OF_STOCK
    if stock <= threshold:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


def period_summary(context: core_logic.RuntimeContext, period: Period, now: Optional[datetime] = None) -> PeriodSummary:
    """Revenue, profit, and order count for ``period`` next to the previous period."""

    current_range = period_range(period, now)
    previous_range = previous_period_range(period, now)

    current_revenue = revenue(context, current_range)
    previous_revenue = revenue(context, previous_range)
    current_profit = profit(context, current_range)
    previous_profit = profit(context, previous_range)
    current_orders = order_count(context, current_range)
    previous_orders = order_count(context, previous_range)

    return PeriodSummary(
        period=Period(period),
        current_range=current_range,
        previous_range=previous_range,
        revenue=current_revenue,
        previous_revenue=previous_revenue,
        profit=current_profit,
        previous_profit=previous_profit,
        orders=current_orders,
        previous_orders=previous_orders,
        revenue_change=percentage_change(current_revenue, previous_revenue),
        profit_change=percentage_change(current_profit, previous_profit),
        orders_change=percentage_change(current_orders, previous_orders),
    )


def build_report(context: core_logic.RuntimeContext, period: Period, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Assemble the exportable report document for ``period``.

    Keys: ``store`` (the configured store name), ``period``, ``dateRange`` (``start``/``end`` ISO strings),
    ``revenue``, ``orders``, ``profit``, ``topProducts`` (ten best sellers
    with ``soldQuantity`` and ``revenue``), ``lowStockProducts`` and
    ``exportDate``.
    """
    period = Period(period)
    date_range = period_range(period, now)
    top = top_selling_products(context, REPORT_TOP_PRODUCTS_LIMIT)
    report = {
        "store": context.settings.store_name,
        "period": period.value,
        "dateRange": {
            "start": date_range.start.isoformat(),
            "end": date_range.end.isoformat(),
        },
        "revenue": revenue(context, date_range),
        "orders": order_count(context, date_range),
        "profit": profit(context, date_range),
        "topProducts": [
            {
                **backup.product_to_document(seller.product),
                "soldQuantity": seller.sold_quantity,
                "revenue": seller.revenue,
            }
            for seller in top
        ],
        "lowStockProducts": [backup.product_to_document(product) for product in low_stock_products(context)],
        "exportDate": _local_now(now).isoformat(),
    }
    log.info("Built %s report (%d top products)", period.value, len(top))
    return report


def default_report_filename(period: Period, now: Optional[datetime] = None) -> str:
    moment = _local_now(now)
    return f"pos-report-{Period(period).value}-{int(moment.timestamp() * 1000)}.json"


def recent_activity(context: core_logic.RuntimeContext, limit: int = RECENT_ACTIVITY_LIMIT) -> List[data_manager.TransactionRow]:
    """The last ``limit`` transactions, newest first."""

    if limit <= 0:
        return []
    return list(reversed(core_logic.list_transactions(context)[-limit:]))


def catalog_counts(context: core_logic.RuntimeContext) -> Dict[str, int]:
    return {
        "products": len(core_logic.list_products(context)),
        "orders": len(core_logic.list_orders(context)),
    }
