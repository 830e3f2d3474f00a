"""
Per-user snapshot store of normalized marketplace data.

The store keeps one immutable snapshot per marketplace, refreshes it through
the fetch gateway and mirrors it to a key-value storage so that the last known
data survives restarts and offline periods.

Reads never wait for the network. Concurrent refresh requests for the same
marketplace and data type share a single in-flight fetch; a forced refresh
supersedes it, and results of superseded requests are dropped when they
arrive. A failed refresh keeps the previous snapshot and flags the error.
"""

import asyncio
import itertools
import json
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from sellercloud.core.models import DataType, NormalizedOrder, NormalizedProduct
from sellercloud.marketplaces.base import FetchOptions
from sellercloud.marketplaces.factory import SUPPORTED_MARKETPLACES, ensure_supported
from sellercloud.cache.storage import KeyValueStorage
from sellercloud.monitoring.prometheus_metrics import PrometheusMetrics, get_metrics
from sellercloud.services.gateway import FetchGateway
from sellercloud.utils.config import CacheConfig
from sellercloud.utils.exceptions import PaginationLimitExceeded, SellerCloudError
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)

SNAPSHOT_FORMAT_VERSION = 1

RefreshKey = Tuple[str, DataType]


class SnapshotStatus(Enum):
    """Load state of one marketplace and data type."""
    NEVER_LOADED = "never_loaded"
    FRESH = "fresh"
    STALE = "stale"
    PARTIAL = "partial"  # last fetch stopped at the page cap
    STALE_WITH_ERROR = "stale_with_error"  # last refresh failed, older data kept
    FAILED = "failed"  # first load failed, no data


@dataclass(frozen=True)
class MarketplaceSnapshot:
    """
    Cached data of one marketplace.

    Replaced as a whole on every change so readers always see a consistent
    pair of products and orders.
    """

    marketplace: str
    products: Tuple[NormalizedProduct, ...] = ()
    orders: Tuple[NormalizedOrder, ...] = ()
    products_fetched_at: Optional[float] = None
    orders_fetched_at: Optional[float] = None
    products_error: Optional[SellerCloudError] = None
    orders_error: Optional[SellerCloudError] = None
    products_truncated: bool = False
    orders_truncated: bool = False
    data_version: int = 0

    def records(self, data_type: DataType) -> tuple:
        return self.products if data_type is DataType.PRODUCTS else self.orders

    def fetched_at(self, data_type: DataType) -> Optional[float]:
        if data_type is DataType.PRODUCTS:
            return self.products_fetched_at
        return self.orders_fetched_at

    def error_for(self, data_type: DataType) -> Optional[SellerCloudError]:
        return self.products_error if data_type is DataType.PRODUCTS else self.orders_error

    def truncated(self, data_type: DataType) -> bool:
        return self.products_truncated if data_type is DataType.PRODUCTS else self.orders_truncated

    def to_dict(self) -> Dict[str, Any]:
        return {
            "products": [product.to_dict() for product in self.products],
            "orders": [order.to_dict() for order in self.orders],
            "products_fetched_at": self.products_fetched_at,
            "orders_fetched_at": self.orders_fetched_at,
            "products_truncated": self.products_truncated,
            "orders_truncated": self.orders_truncated,
            "data_version": self.data_version,
        }

    @classmethod
    def from_dict(cls, marketplace: str, data: Dict[str, Any]) -> "MarketplaceSnapshot":
        return cls(
            marketplace=marketplace,
            products=tuple(NormalizedProduct.from_dict(p) for p in data.get("products") or ()),
            orders=tuple(NormalizedOrder.from_dict(o) for o in data.get("orders") or ()),
            products_fetched_at=data.get("products_fetched_at"),
            orders_fetched_at=data.get("orders_fetched_at"),
            products_truncated=bool(data.get("products_truncated", False)),
            orders_truncated=bool(data.get("orders_truncated", False)),
            data_version=int(data.get("data_version", 0)),
        )


@dataclass
class RefreshOutcome:
    """Result of one refresh request."""

    marketplace: str
    data_type: DataType
    ok: bool
    error: Optional[BaseException] = None
    discarded: bool = False
    records: int = 0
    truncated_by: Optional[PaginationLimitExceeded] = None

    @property
    def partial(self) -> bool:
        return self.truncated_by is not None


class MarketplaceDataStore:
    """
    Snapshot store for one user.

    Construct it explicitly with its gateway and storage; ``clear()`` on
    logout. Nothing here is a module-level singleton.
    """

    KEY_PREFIX = "sellercloud:snapshot"

    def __init__(
        self,
        user_id: str,
        gateway: FetchGateway,
        storage: KeyValueStorage,
        cache_config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.time,
        metrics: Optional[PrometheusMetrics] = None,
        hydrate: bool = True,
    ):
        """
        Initialize the store.

        Args:
            user_id: Owner of the snapshot
            gateway: Fetch gateway bound to the same user
            storage: Durable mirror of the snapshot
            cache_config: TTLs and auto refresh switch
            clock: Returns epoch seconds; injectable for tests
            metrics: Metrics collector (global instance if omitted)
            hydrate: Load the mirrored snapshot immediately
        """
        self.user_id = user_id
        self.gateway = gateway
        self.storage = storage
        self.cache_config = cache_config or CacheConfig()
        self._clock = clock
        self._metrics = metrics

        self._entries: Dict[str, MarketplaceSnapshot] = {}
        self._data_version = 0
        self._inflight: Dict[RefreshKey, asyncio.Task] = {}
        self._latest_request: Dict[RefreshKey, int] = {}
        self._request_ids = itertools.count(1)

        if hydrate:
            self.hydrate()

        logger.info(f"MarketplaceDataStore initialized for user {user_id}")

    @property
    def metrics(self) -> PrometheusMetrics:
        if self._metrics is None:
            self._metrics = get_metrics()
        return self._metrics

    @property
    def storage_key(self) -> str:
        return f"{self.KEY_PREFIX}:{self.user_id}"

    @property
    def data_version(self) -> int:
        """Store-wide version, bumped on every change of cached data."""
        return self._data_version

    @property
    def is_fetching(self) -> bool:
        return any(not task.done() for task in self._inflight.values())

    @property
    def marketplaces(self) -> Tuple[str, ...]:
        """Marketplaces with a snapshot entry."""
        return tuple(self._entries)

    # Reads

    def get_products(self, marketplace: str) -> Tuple[NormalizedProduct, ...]:
        """Current products of a marketplace; schedules a refresh if stale."""
        return self._read(marketplace, DataType.PRODUCTS)

    def get_orders(self, marketplace: str) -> Tuple[NormalizedOrder, ...]:
        """Current orders of a marketplace; schedules a refresh if stale."""
        return self._read(marketplace, DataType.ORDERS)

    def get_snapshot(self, marketplace: str) -> Optional[MarketplaceSnapshot]:
        return self._entries.get(marketplace)

    def all_products(self) -> Tuple[NormalizedProduct, ...]:
        return tuple(itertools.chain.from_iterable(e.products for e in self._entries.values()))

    def all_orders(self) -> Tuple[NormalizedOrder, ...]:
        return tuple(itertools.chain.from_iterable(e.orders for e in self._entries.values()))

    def is_stale(self, marketplace: str, data_type: DataType) -> bool:
        entry = self._entries.get(marketplace)
        fetched_at = entry.fetched_at(data_type) if entry else None
        return self._expired(fetched_at, data_type)

    def status(self, marketplace: str, data_type: DataType) -> SnapshotStatus:
        """Load state of a marketplace and data type."""
        data_type = DataType(data_type)
        entry = self._entries.get(marketplace)
        if entry is None:
            return SnapshotStatus.NEVER_LOADED

        fetched_at = entry.fetched_at(data_type)
        error = entry.error_for(data_type)
        if fetched_at is None:
            return SnapshotStatus.FAILED if error is not None else SnapshotStatus.NEVER_LOADED
        if error is not None:
            return SnapshotStatus.STALE_WITH_ERROR
        if self._expired(fetched_at, data_type):
            return SnapshotStatus.STALE
        if entry.truncated(data_type):
            return SnapshotStatus.PARTIAL
        return SnapshotStatus.FRESH

    # Refresh

    async def refetch_products(self, marketplace: str, force: bool = False) -> RefreshOutcome:
        return await self._refetch(marketplace, DataType.PRODUCTS, force)

    async def refetch_orders(self, marketplace: str, force: bool = False) -> RefreshOutcome:
        return await self._refetch(marketplace, DataType.ORDERS, force)

    async def refetch_all(self, marketplaces: Optional[Iterable[str]] = None,
                          force: bool = False) -> Dict[RefreshKey, RefreshOutcome]:
        """
        Refresh products and orders of several marketplaces concurrently.

        Args:
            marketplaces: Names to refresh; all connected marketplaces if None
            force: Supersede in-flight refreshes

        Returns:
            Outcome per (marketplace, data type); one failure never cancels
            the others
        """
        if marketplaces is None:
            connections = await self.gateway.credential_store.list_connected(self.user_id)
            marketplaces = [connection.marketplace for connection in connections]

        keys = [(marketplace, data_type) for marketplace in marketplaces for data_type in DataType]
        results = await asyncio.gather(
            *(self._refetch(marketplace, data_type, force) for marketplace, data_type in keys),
            return_exceptions=True
        )

        outcomes: Dict[RefreshKey, RefreshOutcome] = {}
        for (marketplace, data_type), result in zip(keys, results):
            if isinstance(result, BaseException):
                logger.error(f"Refreshing {marketplace} {data_type.value} raised: {result}")
                result = RefreshOutcome(marketplace, data_type, ok=False, error=result)
            outcomes[(marketplace, data_type)] = result

        failed = sum(1 for outcome in outcomes.values() if not outcome.ok)
        logger.info(f"Refreshed {len(outcomes)} snapshot(s) for user {self.user_id}, {failed} failed")
        return outcomes

    async def _refetch(self, marketplace: str, data_type: DataType, force: bool) -> RefreshOutcome:
        ensure_supported(marketplace)
        key = (marketplace, data_type)

        task = self._inflight.get(key)
        if task is None or task.done() or force:
            task = self._start_refresh(key)
        else:
            logger.debug(f"Joining in-flight refresh of {marketplace} {data_type.value}")

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            return RefreshOutcome(marketplace, data_type, ok=False, discarded=True)

    def _read(self, marketplace: str, data_type: DataType) -> tuple:
        ensure_supported(marketplace)
        entry = self._entries.get(marketplace)
        if entry is None:
            return ()
        self._maybe_refresh_in_background(entry, data_type)
        return entry.records(data_type)

    def _maybe_refresh_in_background(self, entry: MarketplaceSnapshot, data_type: DataType) -> None:
        if not self.cache_config.auto_refresh:
            return
        fetched_at = entry.fetched_at(data_type)
        if fetched_at is None or not self._expired(fetched_at, data_type):
            return

        key = (entry.marketplace, data_type)
        task = self._inflight.get(key)
        if task is not None and not task.done():
            return

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return

        logger.debug(f"{entry.marketplace} {data_type.value} is stale, refreshing in background")
        self._start_refresh(key)

    def _start_refresh(self, key: RefreshKey) -> asyncio.Task:
        request_id = next(self._request_ids)
        self._latest_request[key] = request_id

        task = asyncio.create_task(self._run_refresh(key, request_id))
        self._inflight[key] = task
        task.add_done_callback(lambda done, key=key: self._refresh_done(key, done))
        return task

    def _refresh_done(self, key: RefreshKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Refresh of {key[0]} {key[1].value} crashed: {task.exception()}")

    async def _run_refresh(self, key: RefreshKey, request_id: int) -> RefreshOutcome:
        marketplace, data_type = key
        try:
            result = await self.gateway.fetch(marketplace, data_type, FetchOptions(fetch_all=True))
        except SellerCloudError as e:
            return self._fail(key, request_id, e)
        except Exception as e:
            logger.exception(f"Unexpected error refreshing {marketplace} {data_type.value}")
            error = SellerCloudError(
                f"Refresh of {marketplace} {data_type.value} failed: {e}",
                {"marketplace": marketplace, "error_type": type(e).__name__}
            )
            error.__cause__ = e
            return self._fail(key, request_id, error)

        if self._latest_request.get(key) != request_id:
            return self._discard(key)

        self._commit(marketplace, data_type, result.data, truncated=result.truncated_by is not None)
        self.metrics.track_refresh(marketplace, data_type.value, "committed")
        return RefreshOutcome(marketplace, data_type, ok=True, records=len(result.data),
                              truncated_by=result.truncated_by)

    def _fail(self, key: RefreshKey, request_id: int, error: SellerCloudError) -> RefreshOutcome:
        marketplace, data_type = key
        if self._latest_request.get(key) != request_id:
            return self._discard(key)
        self._record_failure(marketplace, data_type, error)
        self.metrics.track_refresh(marketplace, data_type.value, "failed")
        return RefreshOutcome(marketplace, data_type, ok=False, error=error)

    def _discard(self, key: RefreshKey) -> RefreshOutcome:
        marketplace, data_type = key
        logger.info(f"Discarding superseded {marketplace} {data_type.value} result")
        self.metrics.track_refresh(marketplace, data_type.value, "discarded")
        return RefreshOutcome(marketplace, data_type, ok=False, discarded=True)

    def _commit(self, marketplace: str, data_type: DataType, records: list, truncated: bool = False) -> None:
        entry = self._entries.get(marketplace) or MarketplaceSnapshot(marketplace)
        self._data_version += 1
        now = self._clock()

        if data_type is DataType.PRODUCTS:
            entry = replace(entry, products=tuple(records), products_fetched_at=now,
                            products_error=None, products_truncated=truncated,
                            data_version=self._data_version)
        else:
            entry = replace(entry, orders=tuple(records), orders_fetched_at=now,
                            orders_error=None, orders_truncated=truncated,
                            data_version=self._data_version)

        self._entries[marketplace] = entry
        logger.info(
            f"Committed {len(records)} {data_type.value} for {marketplace} "
            f"(data version {self._data_version}{', partial' if truncated else ''})"
        )
        self.persist()

    def _record_failure(self, marketplace: str, data_type: DataType, error: SellerCloudError) -> None:
        entry = self._entries.get(marketplace) or MarketplaceSnapshot(marketplace)
        if data_type is DataType.PRODUCTS:
            entry = replace(entry, products_error=error)
        else:
            entry = replace(entry, orders_error=error)
        self._entries[marketplace] = entry

        if entry.fetched_at(data_type) is None:
            logger.error(f"First load of {marketplace} {data_type.value} failed: {error}")
        else:
            logger.warning(f"Refresh of {marketplace} {data_type.value} failed, keeping previous data: {error}")

    def _expired(self, fetched_at: Optional[float], data_type: DataType) -> bool:
        if fetched_at is None:
            return True
        ttl = self.cache_config.products_ttl if data_type is DataType.PRODUCTS else self.cache_config.orders_ttl
        return self._clock() - fetched_at > ttl

    # Persistence

    def hydrate(self) -> bool:
        """
        Load the mirrored snapshot from storage.

        Corrupt data is logged and removed; the store then starts empty.

        Returns:
            True if a snapshot was loaded
        """
        raw = self.storage.get(self.storage_key)
        if raw is None:
            return False

        try:
            data = json.loads(raw)
            if data.get("format") != SNAPSHOT_FORMAT_VERSION:
                raise ValueError(f"unknown snapshot format {data.get('format')!r}")

            entries = {}
            for marketplace, entry_data in data["marketplaces"].items():
                if marketplace not in SUPPORTED_MARKETPLACES:
                    logger.warning(f"Ignoring stored snapshot of unsupported marketplace {marketplace}")
                    continue
                entries[marketplace] = MarketplaceSnapshot.from_dict(marketplace, entry_data)
            data_version = int(data.get("data_version", 0))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Stored snapshot for user {self.user_id} is corrupt, discarding: {e}")
            self.storage.remove(self.storage_key)
            return False

        self._entries = entries
        self._data_version = data_version
        logger.info(f"Hydrated snapshot for user {self.user_id}: {len(entries)} marketplace(s)")
        return True

    def persist(self) -> bool:
        """Mirror the current snapshot to storage."""
        payload = {
            "format": SNAPSHOT_FORMAT_VERSION,
            "data_version": self._data_version,
            "marketplaces": {
                marketplace: entry.to_dict() for marketplace, entry in self._entries.items()
            },
        }
        if not self.storage.set(self.storage_key, json.dumps(payload, ensure_ascii=False)):
            logger.warning(f"Failed to persist snapshot for user {self.user_id}")
            return False
        return True

    # Teardown

    def disconnect(self, marketplace: str) -> None:
        """Evict one marketplace from memory and from the mirror."""
        for data_type in DataType:
            self._cancel((marketplace, data_type))

        if self._entries.pop(marketplace, None) is not None:
            self._data_version += 1
            self.persist()
            logger.info(f"Evicted {marketplace} snapshot for user {self.user_id}")

    def clear(self) -> None:
        """Cancel all refreshes and drop every cached record (logout)."""
        for key in list(self._inflight):
            self._cancel(key)

        self._entries.clear()
        self._data_version += 1
        self.storage.remove(self.storage_key)
        logger.info(f"Cleared snapshot store for user {self.user_id}")

    def _cancel(self, key: RefreshKey) -> None:
        self._latest_request.pop(key, None)
        task = self._inflight.pop(key, None)
        if task is not None and not task.done():
            task.cancel()
