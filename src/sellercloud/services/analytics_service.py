"""
Analytics over cached marketplace snapshots.

The functions here are pure: they take normalized records and return
statistics, with no I/O and no clock reads unless ``today`` is left out.
Revenue always goes through ``amount_in_local_currency`` and order
classification always through ``classify_order``.
"""

from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import Any, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from sellercloud.core.models import (
    DataType,
    NormalizedOrder,
    NormalizedProduct,
    OrderStatusClass,
    amount_in_local_currency,
    item_amount_in_local_currency,
)
from sellercloud.marketplaces.factory import classify_order
from sellercloud.services.data_store import MarketplaceDataStore, SnapshotStatus
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)

DEFAULT_LOW_STOCK_THRESHOLD = 5


@dataclass(frozen=True)
class MarketplaceStats:
    total_products: int = 0
    total_orders: int = 0
    total_revenue: float = 0.0
    average_order_value: float = 0.0
    pending_orders: int = 0
    processing_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0
    low_stock_products: int = 0
    out_of_stock_products: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DailyRevenue:
    date: date
    revenue: float = 0.0
    orders: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date.isoformat(), "revenue": self.revenue, "orders": self.orders}


@dataclass(frozen=True)
class TopProduct:
    offer_id: str
    name: str
    quantity: int
    revenue: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_stats(products: Iterable[NormalizedProduct], orders: Iterable[NormalizedOrder],
                  low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD) -> MarketplaceStats:
    """
    Compute headline statistics of one snapshot.

    Revenue and average order value only include completed orders.
    A product is low on stock when ``0 < stock_total < low_stock_threshold``.
    """
    products = list(products)
    orders = list(orders)

    counts = {status_class: 0 for status_class in OrderStatusClass}
    revenue = 0.0
    for order in orders:
        status_class = classify_order(order)
        counts[status_class] += 1
        if status_class is OrderStatusClass.COMPLETED:
            revenue += amount_in_local_currency(order)

    completed = counts[OrderStatusClass.COMPLETED]

    return MarketplaceStats(
        total_products=len(products),
        total_orders=len(orders),
        total_revenue=round(revenue, 2),
        average_order_value=round(revenue / completed, 2) if completed else 0.0,
        pending_orders=counts[OrderStatusClass.PENDING],
        processing_orders=counts[OrderStatusClass.PROCESSING],
        completed_orders=completed,
        cancelled_orders=counts[OrderStatusClass.CANCELLED],
        low_stock_products=sum(1 for p in products if 0 < p.stock_total < low_stock_threshold),
        out_of_stock_products=sum(1 for p in products if p.stock_total == 0),
    )


def combine_stats(stats: Iterable[MarketplaceStats]) -> MarketplaceStats:
    """Sum statistics of several marketplaces; the average is recomputed."""
    stats = list(stats)
    revenue = sum(s.total_revenue for s in stats)
    completed = sum(s.completed_orders for s in stats)
    return MarketplaceStats(
        total_products=sum(s.total_products for s in stats),
        total_orders=sum(s.total_orders for s in stats),
        total_revenue=round(revenue, 2),
        average_order_value=round(revenue / completed, 2) if completed else 0.0,
        pending_orders=sum(s.pending_orders for s in stats),
        processing_orders=sum(s.processing_orders for s in stats),
        completed_orders=completed,
        cancelled_orders=sum(s.cancelled_orders for s in stats),
        low_stock_products=sum(s.low_stock_products for s in stats),
        out_of_stock_products=sum(s.out_of_stock_products for s in stats),
    )


def _local_timezone() -> tzinfo:
    return datetime.now().astimezone().tzinfo


def _order_date(created_at: Optional[str], tz: tzinfo) -> Optional[date]:
    if not created_at:
        return None
    try:
        moment = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable order date '{created_at}'")
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=tz)
    return moment.astimezone(tz).date()


def revenue_by_day(orders: Iterable[NormalizedOrder], window_days: int = 7,
                   today: Optional[date] = None, tz: Optional[tzinfo] = None) -> List[DailyRevenue]:
    """
    Revenue and order count per day over the last ``window_days`` days.

    The series is dense: every day of the window is present, oldest first,
    ending with ``today`` in time zone ``tz`` (local time zone by default).
    Revenue counts completed orders; ``orders`` counts orders that are not
    cancelled. Orders without a parseable ``created_at`` are ignored.
    """
    if window_days < 1:
        raise ValueError("window_days must be at least 1")

    tz = tz or _local_timezone()
    today = today or datetime.now(tz).date()
    days = [today - timedelta(days=offset) for offset in range(window_days - 1, -1, -1)]

    revenue: Dict[date, float] = defaultdict(float)
    counts: Dict[date, int] = defaultdict(int)
    for order in orders:
        day = _order_date(order.created_at, tz)
        if day is None or day < days[0] or day > today:
            continue
        status_class = classify_order(order)
        if status_class is OrderStatusClass.CANCELLED:
            continue
        counts[day] += 1
        if status_class is OrderStatusClass.COMPLETED:
            revenue[day] += amount_in_local_currency(order)

    return [DailyRevenue(day, round(revenue[day], 2), counts[day]) for day in days]


def top_products(orders: Iterable[NormalizedOrder], n: int = 5) -> List[TopProduct]:
    """
    Best-selling products of completed orders.

    Sorted by revenue, then quantity (both descending), then ``offer_id``.
    """
    quantity: Dict[str, int] = defaultdict(int)
    revenue: Dict[str, float] = defaultdict(float)
    names: Dict[str, str] = {}

    for order in orders:
        if classify_order(order) is not OrderStatusClass.COMPLETED:
            continue
        for item in order.items:
            quantity[item.offer_id] += item.count
            revenue[item.offer_id] += item_amount_in_local_currency(item) * item.count
            if not names.get(item.offer_id):
                names[item.offer_id] = item.offer_name

    ranked = sorted(quantity, key=lambda offer_id: (-revenue[offer_id], -quantity[offer_id], offer_id))
    return [
        TopProduct(offer_id, names.get(offer_id, ""), quantity[offer_id], round(revenue[offer_id], 2))
        for offer_id in ranked[:n]
    ]


class AnalyticsService:
    """
    Analytics over a ``MarketplaceDataStore``.

    Results are memoized per marketplace until the store's ``data_version``
    changes.
    """

    def __init__(self, store: MarketplaceDataStore, low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD,
                 window_days: int = 7, top_n: int = 5, tz: Optional[tzinfo] = None):
        """
        Initialize analytics service

        Args:
            store: MarketplaceDataStore to read snapshots from
            low_stock_threshold: Stock below this counts as low
            window_days: Length of the revenue-by-day series
            top_n: Number of top products
            tz: Time zone for daily buckets (local if omitted)
        """
        self.store = store
        self.low_stock_threshold = low_stock_threshold
        self.window_days = window_days
        self.top_n = top_n
        self.tz = tz
        self._memo: Dict[Hashable, Tuple[Tuple[int, Optional[date]], Any]] = {}

    def _memoized(self, key: Hashable, compute, day: Optional[date] = None):
        stamp = (self.store.data_version, day)
        cached = self._memo.get(key)
        if cached is not None and cached[0] == stamp:
            return cached[1]
        value = compute()
        self._memo[key] = (stamp, value)
        return value

    def stats_for(self, marketplace: str) -> MarketplaceStats:
        return self._memoized(
            ("stats", marketplace),
            lambda: compute_stats(
                self.store.get_products(marketplace),
                self.store.get_orders(marketplace),
                self.low_stock_threshold,
            ),
        )

    def revenue_by_day_for(self, marketplace: str, today: Optional[date] = None) -> List[DailyRevenue]:
        tz = self.tz or _local_timezone()
        today = today or datetime.now(tz).date()
        # The window moves at midnight
        return self._memoized(
            ("revenue_by_day", marketplace),
            lambda: revenue_by_day(self.store.get_orders(marketplace), self.window_days, today, tz),
            day=today,
        )

    def top_products_for(self, marketplace: str) -> List[TopProduct]:
        return self._memoized(
            ("top_products", marketplace),
            lambda: top_products(self.store.get_orders(marketplace), self.top_n),
        )

    def failed_marketplaces(self, marketplaces: Optional[Sequence[str]] = None) -> List[str]:
        """Marketplaces whose last refresh of any data type failed."""
        failing = (SnapshotStatus.FAILED, SnapshotStatus.STALE_WITH_ERROR)
        return [
            marketplace for marketplace in (marketplaces or self.store.marketplaces)
            if any(self.store.status(marketplace, data_type) in failing for data_type in DataType)
        ]

    def summary(self) -> Dict[str, Any]:
        """
        Aggregate statistics across every cached marketplace.

        Returns:
            Dictionary with per-marketplace stats, totals, and the
            marketplaces whose data could not be refreshed
        """
        marketplaces = self.store.marketplaces
        per_marketplace = {marketplace: self.stats_for(marketplace) for marketplace in marketplaces}
        totals = combine_stats(per_marketplace.values())

        logger.info(
            f"Analytics summary for {len(marketplaces)} marketplace(s): "
            f"revenue {totals.total_revenue}, {totals.completed_orders} completed orders"
        )

        return {
            "data_version": self.store.data_version,
            "marketplaces": {marketplace: stats.to_dict() for marketplace, stats in per_marketplace.items()},
            "totals": totals.to_dict(),
            "failed": self.failed_marketplaces(marketplaces),
        }
