"""
Unit tests for analytics over normalized records
"""
from datetime import date, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from sellercloud.core.models import DataType
from sellercloud.services.analytics_service import (
    AnalyticsService,
    MarketplaceStats,
    combine_stats,
    compute_stats,
    revenue_by_day,
    top_products,
)
from sellercloud.services.data_store import SnapshotStatus
from conftest import make_item, make_order, make_product


TODAY = date(2024, 3, 10)
TASHKENT = timezone(timedelta(hours=5))


class TestComputeStats:
    """Test headline statistics"""

    def test_revenue_counts_completed_orders_only(self):
        """Test one delivered, one cancelled and one pending Yandex order"""
        orders = [
            make_order(1, "DELIVERED", 100000.0),
            make_order(2, "CANCELLED", 50000.0),
            make_order(3, "PENDING", 30000.0),
        ]

        stats = compute_stats([], orders)

        assert stats.total_revenue == 100000
        assert stats.total_orders == 3
        assert stats.average_order_value == 100000
        assert stats.completed_orders == 1
        assert stats.cancelled_orders == 1
        assert stats.pending_orders == 1

    def test_no_completed_orders(self):
        stats = compute_stats([], [make_order(1, "PROCESSING", 10.0)])

        assert stats.total_revenue == 0.0
        assert stats.average_order_value == 0.0
        assert stats.processing_orders == 1

    def test_local_currency_amount_is_used(self):
        """Test converted amounts win over native totals"""
        orders = [make_order("W1", "SOLD", 100.0, marketplace="wildberries", total_uzs=14000.0)]

        assert compute_stats([], orders).total_revenue == 14000.0

    def test_stock_buckets(self):
        products = [
            make_product("A", stock_fbo=0, stock_fbs=0),
            make_product("B", stock_fbo=2, stock_fbs=2),
            make_product("C", stock_fbo=5),
            make_product("D", stock_fbs=1),
        ]

        stats = compute_stats(products, [])

        assert stats.total_products == 4
        assert stats.out_of_stock_products == 1
        assert stats.low_stock_products == 2

    def test_custom_low_stock_threshold(self):
        products = [make_product("A", stock_fbo=8)]

        assert compute_stats(products, [], low_stock_threshold=10).low_stock_products == 1

    def test_empty(self):
        assert compute_stats([], []) == MarketplaceStats()

    def test_combine_recomputes_average(self):
        combined = combine_stats([
            MarketplaceStats(total_orders=1, total_revenue=100.0, completed_orders=1, average_order_value=100.0),
            MarketplaceStats(total_orders=3, total_revenue=200.0, completed_orders=3, average_order_value=66.67),
        ])

        assert combined.total_orders == 4
        assert combined.total_revenue == 300.0
        assert combined.average_order_value == 75.0


class TestRevenueByDay:
    """Test the daily revenue series"""

    def test_dense_series_for_no_orders(self):
        series = revenue_by_day([], window_days=7, today=TODAY, tz=timezone.utc)

        assert [day.date for day in series] == [TODAY - timedelta(days=n) for n in range(6, -1, -1)]
        assert all(day.revenue == 0 and day.orders == 0 for day in series)

    def test_buckets_by_local_day(self):
        """Test 21:00 UTC lands on the next day in UTC+5"""
        orders = [
            make_order(1, "DELIVERED", 100.0, created_at="2024-03-08T21:00:00Z"),
            make_order(2, "DELIVERED", 50.0, created_at="2024-03-09T10:00:00+05:00"),
        ]

        series = revenue_by_day(orders, window_days=3, today=TODAY, tz=TASHKENT)

        by_day = {day.date: day for day in series}
        assert by_day[date(2024, 3, 9)].revenue == 150.0
        assert by_day[date(2024, 3, 9)].orders == 2
        assert by_day[date(2024, 3, 8)].orders == 0

    def test_counts_open_orders_without_revenue(self):
        orders = [
            make_order(1, "PROCESSING", 100.0, created_at="2024-03-10T08:00:00Z"),
            make_order(2, "CANCELLED", 100.0, created_at="2024-03-10T09:00:00Z"),
        ]

        series = revenue_by_day(orders, window_days=1, today=TODAY, tz=timezone.utc)

        assert series[0].orders == 1
        assert series[0].revenue == 0.0

    def test_ignores_orders_outside_window_or_undated(self):
        orders = [
            make_order(1, "DELIVERED", 100.0, created_at="2024-03-01T08:00:00Z"),
            make_order(2, "DELIVERED", 100.0, created_at="2024-03-11T08:00:00Z"),
            make_order(3, "DELIVERED", 100.0),
            make_order(4, "DELIVERED", 100.0, created_at="yesterday"),
        ]

        series = revenue_by_day(orders, window_days=7, today=TODAY, tz=timezone.utc)

        assert sum(day.orders for day in series) == 0

    def test_naive_timestamp_uses_given_zone(self):
        orders = [make_order(1, "DELIVERED", 10.0, created_at="2024-03-10T01:00:00")]

        series = revenue_by_day(orders, window_days=1, today=TODAY, tz=TASHKENT)

        assert series[0].revenue == 10.0

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            revenue_by_day([], window_days=0)


class TestTopProducts:
    """Test best-seller ranking"""

    def test_ranking_and_tie_breaks(self):
        orders = [
            make_order(1, "DELIVERED", 0.0, items=[
                make_item("B", count=1, price=100.0, name="Bravo"),
                make_item("A", count=2, price=50.0, name="Alpha"),
                make_item("C", count=1, price=100.0, name="Charlie"),
            ]),
            make_order(2, "DELIVERED", 0.0, items=[make_item("D", count=1, price=500.0)]),
        ]

        ranked = top_products(orders, n=5)

        # A, B and C tie on revenue; A sold more, then B before C by offer id
        assert [p.offer_id for p in ranked] == ["D", "A", "B", "C"]
        assert ranked[1].quantity == 2
        assert ranked[1].name == "Alpha"

    def test_only_completed_orders(self):
        orders = [
            make_order(1, "CANCELLED", 0.0, items=[make_item("A", count=5, price=10.0)]),
            make_order(2, "DELIVERED", 0.0, items=[make_item("B", count=1, price=1.0)]),
        ]

        assert [p.offer_id for p in top_products(orders)] == ["B"]

    def test_local_item_price_and_limit(self):
        orders = [make_order("W1", "SOLD", 0.0, marketplace="wildberries", items=[
            make_item(f"SKU-{n}", count=1, price=1.0, price_uzs=140.0 * n) for n in range(1, 8)
        ])]

        ranked = top_products(orders, n=3)

        assert [p.offer_id for p in ranked] == ["SKU-7", "SKU-6", "SKU-5"]
        assert ranked[0].revenue == 980.0


def fake_store(data_version=1, marketplaces=("yandex",), products=(), orders=(), statuses=None):
    store = MagicMock()
    store.data_version = data_version
    store.marketplaces = marketplaces
    store.get_products.return_value = tuple(products)
    store.get_orders.return_value = tuple(orders)
    statuses = statuses or {}
    store.status.side_effect = lambda mp, dt: statuses.get((mp, dt), SnapshotStatus.FRESH)
    return store


class TestAnalyticsService:
    """Test memoized analytics over the data store"""

    def test_stats_memoized_until_version_changes(self):
        store = fake_store(orders=[make_order(1, "DELIVERED", 100.0)])
        service = AnalyticsService(store)

        first = service.stats_for("yandex")
        second = service.stats_for("yandex")

        assert first is second
        assert store.get_orders.call_count == 1

        store.data_version = 2
        service.stats_for("yandex")

        assert store.get_orders.call_count == 2

    def test_revenue_series_keyed_by_day(self):
        store = fake_store(orders=[make_order(1, "DELIVERED", 100.0, created_at="2024-03-10T08:00:00Z")])
        service = AnalyticsService(store, window_days=2, tz=timezone.utc)

        today = service.revenue_by_day_for("yandex", today=TODAY)
        tomorrow = service.revenue_by_day_for("yandex", today=TODAY + timedelta(days=1))

        assert today[-1].revenue == 100.0
        assert tomorrow[-1].revenue == 0.0
        assert tomorrow[0].revenue == 100.0

    def test_revenue_series_replaces_previous_day(self):
        """Test a long-running service keeps one revenue series per marketplace"""
        service = AnalyticsService(fake_store(), window_days=2, tz=timezone.utc)

        for offset in range(5):
            service.revenue_by_day_for("yandex", today=TODAY + timedelta(days=offset))

        assert len(service._memo) == 1

    def test_top_products_for(self):
        store = fake_store(orders=[make_order(1, "DELIVERED", 0.0, items=[make_item("A", price=5.0)])])

        assert [p.offer_id for p in AnalyticsService(store, top_n=1).top_products_for("yandex")] == ["A"]

    def test_summary_totals_and_failures(self):
        store = fake_store(
            data_version=7,
            marketplaces=("yandex", "ozon"),
            orders=[make_order(1, "DELIVERED", 100.0)],
            statuses={("ozon", DataType.ORDERS): SnapshotStatus.STALE_WITH_ERROR},
        )

        summary = AnalyticsService(store).summary()

        assert summary["data_version"] == 7
        assert set(summary["marketplaces"]) == {"yandex", "ozon"}
        assert summary["totals"]["total_revenue"] == 200.0
        assert summary["totals"]["completed_orders"] == 2
        assert summary["failed"] == ["ozon"]
