"""
Unit tests for the snapshot data store
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from sellercloud.core.models import DataType
from sellercloud.services.data_store import MarketplaceDataStore, SnapshotStatus
from sellercloud.services.gateway import FetchResult
from sellercloud.utils.config import CacheConfig
from sellercloud.utils.exceptions import (
    AuthExpired,
    PaginationLimitExceeded,
    SellerCloudError,
    TransientUpstreamError,
    UnsupportedMarketplaceError,
)
from conftest import make_order, make_product


# =============================================================================
# Test doubles
# =============================================================================

class Pending:
    """Gateway response held back until ``release`` is set"""

    def __init__(self, value):
        self.value = value
        self.release = asyncio.Event()


class FakeGateway:
    """
    Gateway double answering from per-(marketplace, data type) queues.

    Each queue entry is a list of records, a FetchResult, an exception or a
    Pending. The last entry of a queue is repeated.
    """

    def __init__(self, connected=()):
        self.calls = []
        self.responses = {}
        self.credential_store = MagicMock()
        self.credential_store.list_connected = AsyncMock(
            return_value=[MagicMock(marketplace=name) for name in connected]
        )

    def respond(self, marketplace, data_type, *responses):
        self.responses[(marketplace, data_type)] = list(responses)

    async def fetch(self, marketplace, data_type, options=None):
        self.calls.append((marketplace, data_type, options))
        queue = self.responses[(marketplace, data_type)]
        response = queue.pop(0) if len(queue) > 1 else queue[0]

        if isinstance(response, Pending):
            await response.release.wait()
            response = response.value
        if isinstance(response, Exception):
            raise response
        if isinstance(response, FetchResult):
            return response
        return FetchResult(marketplace, data_type, list(response), len(response), 1)


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_store(gateway, storage, clock, metrics):
    def factory(**cache):
        return MarketplaceDataStore(
            "user-1", gateway, storage, cache_config=CacheConfig(**cache), clock=clock, metrics=metrics
        )

    return factory


# =============================================================================
# Refresh
# =============================================================================

class TestRefresh:
    """Test refresh, coalescing and supersession"""

    @pytest.mark.asyncio
    async def test_commit_bumps_version(self, gateway, make_store):
        gateway.respond("uzum", DataType.PRODUCTS, [make_product("A")])
        store = make_store()

        outcome = await store.refetch_products("uzum")

        assert outcome.ok and outcome.records == 1
        assert [p.offer_id for p in store.get_products("uzum")] == ["A"]
        assert store.data_version == 1
        assert store.get_snapshot("uzum").data_version == 1
        assert store.status("uzum", DataType.PRODUCTS) is SnapshotStatus.FRESH
        assert gateway.calls[0][2].fetch_all is True

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_fetch(self, gateway, make_store):
        """Test two callers of the same refresh observe one gateway call"""
        pending = Pending([make_product("A")])
        gateway.respond("uzum", DataType.PRODUCTS, pending)
        store = make_store()

        first = asyncio.create_task(store.refetch_products("uzum"))
        second = asyncio.create_task(store.refetch_products("uzum"))
        await settle()
        assert store.is_fetching
        pending.release.set()
        outcomes = await asyncio.gather(first, second)

        assert len(gateway.calls) == 1
        assert all(outcome.ok for outcome in outcomes)
        assert store.data_version == 1
        assert not store.is_fetching

    @pytest.mark.asyncio
    async def test_forced_refresh_supersedes_in_flight(self, gateway, make_store, registry):
        """Test a superseded result arriving late is discarded"""
        old = Pending([make_product("OLD")])
        gateway.respond("uzum", DataType.PRODUCTS, old, [make_product("NEW")])
        store = make_store()

        slow = asyncio.create_task(store.refetch_products("uzum"))
        await settle()
        forced = await store.refetch_products("uzum", force=True)
        old.release.set()
        superseded = await slow

        assert forced.ok
        assert superseded.discarded and not superseded.ok
        assert [p.offer_id for p in store.get_products("uzum")] == ["NEW"]
        assert store.data_version == 1
        assert registry.get_sample_value(
            "sellercloud_snapshot_refreshes_total",
            {"marketplace": "uzum", "data_type": "products", "outcome": "discarded"},
        ) == 1.0

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_data(self, gateway, make_store):
        gateway.respond(
            "ozon", DataType.ORDERS,
            [make_order("P1", "delivered", 10.0, marketplace="ozon")],
            TransientUpstreamError("down", "ozon", 503),
        )
        store = make_store()
        await store.refetch_orders("ozon")
        version = store.data_version

        outcome = await store.refetch_orders("ozon")

        assert not outcome.ok
        assert isinstance(outcome.error, TransientUpstreamError)
        assert [o.id for o in store.get_orders("ozon")] == ["P1"]
        assert store.status("ozon", DataType.ORDERS) is SnapshotStatus.STALE_WITH_ERROR
        assert store.data_version == version

    @pytest.mark.asyncio
    async def test_success_clears_error(self, gateway, make_store):
        gateway.respond(
            "ozon", DataType.ORDERS,
            AuthExpired("expired", "ozon", 401),
            [make_order("P1", "delivered", 10.0, marketplace="ozon")],
        )
        store = make_store()
        await store.refetch_orders("ozon")

        await store.refetch_orders("ozon")

        assert store.status("ozon", DataType.ORDERS) is SnapshotStatus.FRESH
        assert store.get_snapshot("ozon").orders_error is None

    @pytest.mark.asyncio
    async def test_first_load_failure(self, gateway, make_store):
        gateway.respond("wildberries", DataType.PRODUCTS, AuthExpired("expired", "wildberries", 401))
        store = make_store()

        await store.refetch_products("wildberries")

        assert store.status("wildberries", DataType.PRODUCTS) is SnapshotStatus.FAILED
        assert store.get_products("wildberries") == ()
        assert store.status("wildberries", DataType.ORDERS) is SnapshotStatus.NEVER_LOADED

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded_as_failure(self, gateway, make_store, registry):
        """Test a non-SellerCloudError from a fetch sets the error flag instead of escaping"""
        gateway.respond("yandex", DataType.PRODUCTS, AttributeError("'list' object has no attribute 'get'"))
        store = make_store()

        outcome = await store.refetch_products("yandex")

        assert not outcome.ok and not outcome.discarded
        assert isinstance(outcome.error, SellerCloudError)
        assert isinstance(outcome.error.__cause__, AttributeError)
        assert outcome.error.details["error_type"] == "AttributeError"
        assert store.status("yandex", DataType.PRODUCTS) is SnapshotStatus.FAILED
        assert not store.is_fetching
        assert registry.get_sample_value(
            "sellercloud_snapshot_refreshes_total",
            {"marketplace": "yandex", "data_type": "products", "outcome": "failed"},
        ) == 1.0

    @pytest.mark.asyncio
    async def test_truncated_fetch_is_partial(self, gateway, make_store, clock):
        """Test a fetch stopped at the page cap commits its data and stays flagged"""
        orders = [make_order(f"P{n}", "delivered", 1.0, marketplace="ozon") for n in range(3)]
        truncated_by = PaginationLimitExceeded("ozon", "orders", max_pages=3, accumulated=3)
        gateway.respond(
            "ozon", DataType.ORDERS,
            FetchResult("ozon", DataType.ORDERS, orders, 3, 3, truncated_by=truncated_by),
            orders,
        )
        store = make_store()

        outcome = await store.refetch_orders("ozon")

        assert outcome.ok and outcome.partial
        assert outcome.truncated_by is truncated_by
        assert outcome.records == 3
        assert len(store.get_orders("ozon")) == 3
        assert store.get_snapshot("ozon").orders_truncated
        assert store.status("ozon", DataType.ORDERS) is SnapshotStatus.PARTIAL

        clock.now += CacheConfig().orders_ttl + 1
        assert store.status("ozon", DataType.ORDERS) is SnapshotStatus.STALE

        outcome = await store.refetch_orders("ozon")

        assert outcome.ok and not outcome.partial
        assert store.status("ozon", DataType.ORDERS) is SnapshotStatus.FRESH

    @pytest.mark.asyncio
    async def test_snapshot_is_replaced_not_mutated(self, gateway, make_store):
        """Test readers holding a snapshot never see a half-applied refresh"""
        gateway.respond("yandex", DataType.PRODUCTS, [make_product("A", marketplace="yandex")])
        pending = Pending([make_order(2, "DELIVERED", 50.0)])
        gateway.respond("yandex", DataType.ORDERS, [make_order(1, "DELIVERED", 10.0)], pending)
        store = make_store()
        await store.refetch_products("yandex")
        await store.refetch_orders("yandex")
        before = store.get_snapshot("yandex")

        refresh = asyncio.create_task(store.refetch_orders("yandex"))
        await settle()
        assert store.get_snapshot("yandex") is before
        pending.release.set()
        await refresh

        after = store.get_snapshot("yandex")
        assert after is not before
        assert [o.id for o in before.orders] == [1]
        assert [o.id for o in after.orders] == [2]
        assert after.products == before.products

    @pytest.mark.asyncio
    async def test_unsupported_marketplace(self, make_store):
        with pytest.raises(UnsupportedMarketplaceError):
            await make_store().refetch_products("amazon")

    @pytest.mark.asyncio
    async def test_refetch_all_isolates_failures(self, storage, clock, metrics):
        gateway = FakeGateway(connected=["uzum", "ozon"])
        gateway.respond("uzum", DataType.PRODUCTS, [make_product("A")])
        gateway.respond("uzum", DataType.ORDERS, [make_order("U1", "COMPLETED", 5.0, marketplace="uzum")])
        gateway.respond("ozon", DataType.PRODUCTS, TransientUpstreamError("down", "ozon", 500))
        gateway.respond("ozon", DataType.ORDERS, [make_order("P1", "delivered", 1.0, marketplace="ozon")])
        store = MarketplaceDataStore("user-1", gateway, storage, clock=clock, metrics=metrics)

        outcomes = await store.refetch_all()

        assert set(outcomes) == {
            ("uzum", DataType.PRODUCTS), ("uzum", DataType.ORDERS),
            ("ozon", DataType.PRODUCTS), ("ozon", DataType.ORDERS),
        }
        assert not outcomes[("ozon", DataType.PRODUCTS)].ok
        assert sum(1 for outcome in outcomes.values() if outcome.ok) == 3
        assert store.status("ozon", DataType.PRODUCTS) is SnapshotStatus.FAILED
        assert len(store.all_orders()) == 2


# =============================================================================
# Staleness
# =============================================================================

class TestStaleness:
    """Test TTLs and background refresh on read"""

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, gateway, make_store, clock):
        gateway.respond("uzum", DataType.ORDERS, [make_order("U1", "CREATED", 1.0, marketplace="uzum")])
        store = make_store(orders_ttl=120, auto_refresh=False)
        await store.refetch_orders("uzum")

        clock.now += 120
        assert store.status("uzum", DataType.ORDERS) is SnapshotStatus.FRESH
        clock.now += 1
        assert store.status("uzum", DataType.ORDERS) is SnapshotStatus.STALE
        assert store.is_stale("uzum", DataType.ORDERS)

    @pytest.mark.asyncio
    async def test_stale_read_refreshes_in_background(self, gateway, make_store, clock):
        gateway.respond("uzum", DataType.PRODUCTS, [make_product("A")], [make_product("B")])
        store = make_store(products_ttl=300)
        await store.refetch_products("uzum")
        clock.now += 301

        stale = store.get_products("uzum")
        await settle()

        assert [p.offer_id for p in stale] == ["A"]
        assert len(gateway.calls) == 2
        assert [p.offer_id for p in store.get_products("uzum")] == ["B"]

    @pytest.mark.asyncio
    async def test_no_background_refresh_when_disabled(self, gateway, make_store, clock):
        gateway.respond("uzum", DataType.PRODUCTS, [make_product("A")])
        store = make_store(auto_refresh=False)
        await store.refetch_products("uzum")
        clock.now += 10_000

        store.get_products("uzum")
        await settle()

        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_never_loaded_read_does_not_fetch(self, gateway, make_store):
        store = make_store()

        assert store.get_orders("ozon") == ()
        await settle()

        assert gateway.calls == []

    def test_read_without_event_loop(self, gateway, storage, clock, metrics):
        """Test a synchronous reader gets stale data without scheduling work"""
        storage.set("sellercloud:snapshot:user-1", json.dumps({
            "format": 1,
            "data_version": 3,
            "marketplaces": {"uzum": {"products": [make_product("A").to_dict()], "products_fetched_at": 1.0}},
        }))
        store = MarketplaceDataStore("user-1", gateway, storage, clock=clock, metrics=metrics)

        assert [p.offer_id for p in store.get_products("uzum")] == ["A"]
        assert gateway.calls == []


# =============================================================================
# Persistence and teardown
# =============================================================================

class TestPersistence:
    """Test the durable mirror"""

    @pytest.mark.asyncio
    async def test_hydrate_round_trip(self, gateway, make_store):
        gateway.respond("yandex", DataType.ORDERS, [make_order(15, "DELIVERED", 100.0)])
        store = make_store()
        await store.refetch_orders("yandex")

        restored = make_store()

        assert restored.get_orders("yandex") == store.get_orders("yandex")
        assert restored.data_version == store.data_version
        assert restored.get_snapshot("yandex").orders_fetched_at == 1000.0

    @pytest.mark.asyncio
    async def test_partial_flag_survives_hydrate(self, gateway, make_store):
        products = [make_product("A", marketplace="wildberries")]
        truncated_by = PaginationLimitExceeded("wildberries", "products", max_pages=1, accumulated=1)
        gateway.respond(
            "wildberries", DataType.PRODUCTS,
            FetchResult("wildberries", DataType.PRODUCTS, products, 1, 1, truncated_by=truncated_by),
        )
        await make_store().refetch_products("wildberries")

        restored = make_store()

        assert restored.status("wildberries", DataType.PRODUCTS) is SnapshotStatus.PARTIAL

    @pytest.mark.parametrize("raw", [
        "{not json",
        json.dumps({"format": 99, "marketplaces": {}}),
        json.dumps({"format": 1, "marketplaces": {"uzum": {"products": [{"offer_id": ""}]}}}),
        json.dumps(["unexpected"]),
    ])
    def test_corrupt_mirror_is_discarded(self, raw, gateway, storage, clock, metrics):
        storage.set("sellercloud:snapshot:user-1", raw)

        store = MarketplaceDataStore("user-1", gateway, storage, clock=clock, metrics=metrics)

        assert store.marketplaces == ()
        assert storage.get("sellercloud:snapshot:user-1") is None

    def test_unsupported_marketplace_skipped(self, gateway, storage, clock, metrics):
        storage.set("sellercloud:snapshot:user-1", json.dumps({
            "format": 1,
            "marketplaces": {"amazon": {}, "ozon": {"orders_fetched_at": 5.0}},
        }))

        store = MarketplaceDataStore("user-1", gateway, storage, clock=clock, metrics=metrics)

        assert store.marketplaces == ("ozon",)


class TestTeardown:
    """Test disconnect and logout"""

    @pytest.mark.asyncio
    async def test_disconnect_evicts_marketplace(self, gateway, make_store):
        gateway.respond("uzum", DataType.PRODUCTS, [make_product("A")])
        gateway.respond("ozon", DataType.PRODUCTS, [make_product("B", marketplace="ozon")])
        store = make_store()
        await store.refetch_products("uzum")
        await store.refetch_products("ozon")
        version = store.data_version

        store.disconnect("uzum")

        assert store.marketplaces == ("ozon",)
        assert store.data_version == version + 1
        assert make_store().marketplaces == ("ozon",)

    @pytest.mark.asyncio
    async def test_disconnect_discards_in_flight_refresh(self, gateway, make_store):
        pending = Pending([make_product("A")])
        gateway.respond("uzum", DataType.PRODUCTS, pending)
        store = make_store()

        refresh = asyncio.create_task(store.refetch_products("uzum"))
        await settle()
        store.disconnect("uzum")
        outcome = await refresh

        assert outcome.discarded
        assert store.get_snapshot("uzum") is None

    @pytest.mark.asyncio
    async def test_clear_drops_everything(self, gateway, make_store, storage):
        gateway.respond("uzum", DataType.PRODUCTS, [make_product("A")])
        gateway.respond("ozon", DataType.ORDERS, Pending([]))
        store = make_store()
        await store.refetch_products("uzum")
        refresh = asyncio.create_task(store.refetch_orders("ozon"))
        await settle()
        version = store.data_version

        store.clear()
        outcome = await refresh

        assert outcome.discarded
        assert store.all_products() == ()
        assert store.data_version == version + 1
        assert storage.get(store.storage_key) is None
