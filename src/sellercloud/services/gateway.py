"""
Fetch gateway: the single entry point for pulling data from a marketplace.

For one user the gateway looks up credentials, drives the client's
pagination, retries transient upstream failures, normalizes pages through the
marketplace adapter and deduplicates the result. Successful fetches record the
sync time on the connection in the background.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import httpx

from sellercloud.core.currency import RateTable
from sellercloud.core.models import DataType
from sellercloud.marketplaces.base import (
    FetchOptions,
    MarketplaceAdapter,
    MarketplaceClient,
    MarketplaceCredentials,
    RawPage,
)
from sellercloud.marketplaces.factory import (
    create_adapter,
    create_marketplace_client,
    ensure_supported,
)
from sellercloud.monitoring.prometheus_metrics import PrometheusMetrics, get_metrics
from sellercloud.services.credentials import CredentialStore
from sellercloud.utils.config import GatewayConfig
from sellercloud.utils.exceptions import (
    NotConnectedError,
    PaginationLimitExceeded,
    SellerCloudError,
    is_transient,
)
from sellercloud.utils.logger import get_logger
from sellercloud.utils.retry import RetryConfig, retry_async


logger = get_logger(__name__)

__all__ = ["FetchGateway", "FetchOptions", "FetchResult"]


@dataclass
class FetchResult:
    """Normalized, deduplicated outcome of one gateway fetch."""

    marketplace: str
    data_type: DataType
    data: list
    total: int
    pages: int
    truncated_by: Optional[PaginationLimitExceeded] = None

    @property
    def truncated(self) -> bool:
        return self.truncated_by is not None


def _record_key(data_type: DataType, record: Any) -> Any:
    if data_type is DataType.PRODUCTS:
        return record.offer_id
    return record.id


class FetchGateway:
    """
    Fetches normalized products and orders for one user.

    The gateway owns its HTTP client unless one is injected, and keeps one
    marketplace client per marketplace for as long as the stored credentials
    do not change. Call ``aclose()`` when done.
    """

    def __init__(
        self,
        user_id: str,
        credential_store: CredentialStore,
        config: Optional[GatewayConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        rates: Optional[RateTable] = None,
        metrics: Optional[PrometheusMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the gateway.

        Args:
            user_id: User whose connections are used
            credential_store: Source of marketplace credentials
            config: Gateway settings (timeouts, page cap, retries, concurrency)
            http_client: Shared async HTTP client; created and owned if omitted
            rates: Exchange rates handed to adapters
            metrics: Metrics collector (global instance if omitted)
            sleep: Awaitable sleep used between retries
        """
        self.user_id = user_id
        self.credential_store = credential_store
        self.config = config or GatewayConfig()
        self.rates = rates or RateTable.default()
        self._metrics = metrics
        self._sleep = sleep

        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=self.config.request_timeout)

        self.retry_config = RetryConfig(
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )
        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_requests)
        self._clients: Dict[str, Tuple[MarketplaceCredentials, MarketplaceClient]] = {}
        self._adapters: Dict[str, MarketplaceAdapter] = {}
        self._background: Set[asyncio.Task] = set()

        logger.info(f"FetchGateway initialized for user {user_id}")

    @property
    def metrics(self) -> PrometheusMetrics:
        if self._metrics is None:
            self._metrics = get_metrics()
        return self._metrics

    async def __aenter__(self) -> "FetchGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def fetch(self, marketplace: str, data_type: Union[DataType, str],
                    options: Optional[FetchOptions] = None) -> FetchResult:
        """
        Fetch normalized records of one type from one marketplace.

        Args:
            marketplace: Marketplace name
            data_type: Products or orders
            options: Page size, fetch_all flag, date window and status filter

        Returns:
            FetchResult; ``truncated_by`` is set when ``fetch_all`` hit the page cap

        Raises:
            UnsupportedMarketplaceError: Unknown marketplace name
            NotConnectedError: No active credentials for the marketplace
            AuthExpired, RequestInvalid, TransientUpstreamError: Upstream failures
        """
        ensure_supported(marketplace)
        data_type = DataType(data_type)
        options = options or FetchOptions(limit=self.config.page_size)

        client = await self._client_for(marketplace)
        adapter = self._adapter_for(marketplace)

        start_time = time.monotonic()
        try:
            result = await self._paginate(marketplace, data_type, client, adapter, options)
        except SellerCloudError as e:
            duration = time.monotonic() - start_time
            self.metrics.track_request(marketplace, data_type.value, type(e).__name__, duration)
            logger.error(f"Fetching {marketplace} {data_type.value} failed after {duration:.2f}s: {e}")
            raise

        duration = time.monotonic() - start_time
        outcome = "partial" if result.truncated else "success"
        self.metrics.track_request(marketplace, data_type.value, outcome, duration)
        logger.info(
            f"Fetched {len(result.data)} {data_type.value} from {marketplace} "
            f"in {result.pages} page(s), {duration:.2f}s"
        )

        self._schedule_last_sync(marketplace, data_type, len(result.data))
        return result

    async def test_connection(self, marketplace: str) -> Dict[str, Any]:
        """Check the stored credentials of a marketplace against its API."""
        ensure_supported(marketplace)
        client = await self._client_for(marketplace)
        async with self._semaphore:
            return await client.test_connection()

    async def aclose(self) -> None:
        """Wait for pending background work and release the HTTP client."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._owns_http:
            await self.http.aclose()
        logger.debug(f"FetchGateway for user {self.user_id} closed")

    async def _paginate(self, marketplace: str, data_type: DataType, client: MarketplaceClient,
                        adapter: MarketplaceAdapter, options: FetchOptions) -> FetchResult:
        accumulated: Dict[Any, Any] = {}
        cursor = None
        pages = 0
        reported_total: Optional[int] = None
        truncated_by: Optional[PaginationLimitExceeded] = None

        while True:
            page = await self._fetch_page(marketplace, data_type, client, cursor, options)
            pages += 1
            if page.total is not None:
                reported_total = page.total

            records = adapter.normalize(data_type, page)
            added = self._merge(data_type, accumulated, records)

            if not options.fetch_all:
                break
            if page.size == 0 or not page.next_cursor:
                break
            if reported_total is not None and len(accumulated) >= reported_total:
                logger.debug(f"{marketplace} {data_type.value}: reached reported total {reported_total}")
                break
            if records and added == 0:
                logger.warning(
                    f"{marketplace} {data_type.value}: page {pages} added no new records, "
                    f"stopping pagination"
                )
                break
            if pages >= self.config.max_pages:
                truncated_by = PaginationLimitExceeded(
                    marketplace, data_type.value, self.config.max_pages,
                    len(accumulated), reported_total
                )
                logger.warning(f"{truncated_by}, returning partial result")
                self.metrics.track_truncated(marketplace, data_type.value)
                break

            cursor = page.next_cursor

        data = list(accumulated.values())
        if not options.fetch_all:
            data = data[:options.limit]

        return FetchResult(
            marketplace=marketplace,
            data_type=data_type,
            data=data,
            total=reported_total if reported_total is not None else len(data),
            pages=pages,
            truncated_by=truncated_by,
        )

    async def _fetch_page(self, marketplace: str, data_type: DataType, client: MarketplaceClient,
                          cursor: Any, options: FetchOptions) -> RawPage:
        async def attempt() -> RawPage:
            async with self._semaphore:
                return await client.fetch_page(data_type, cursor, options)

        def on_retry(exc: BaseException, attempt_number: int, delay: float) -> None:
            self.metrics.track_retry(marketplace, data_type.value)

        return await retry_async(
            attempt,
            config=self.retry_config,
            classifier=is_transient,
            sleep=self._sleep,
            on_retry=on_retry,
            description=f"{marketplace} {data_type.value} page",
        )

    @staticmethod
    def _merge(data_type: DataType, accumulated: Dict[Any, Any], records: List[Any]) -> int:
        """
        Merge page records into the accumulator.

        Products keep the first occurrence of an ``offer_id``; orders keep the
        last occurrence of an ``id``. Returns how many records were new or
        changed the accumulated value.
        """
        added = 0
        for record in records:
            key = _record_key(data_type, record)
            if data_type is DataType.PRODUCTS:
                if key in accumulated:
                    continue
                accumulated[key] = record
                added += 1
            elif accumulated.get(key) != record:
                accumulated[key] = record
                added += 1
        return added

    async def _client_for(self, marketplace: str) -> MarketplaceClient:
        connection = await self.credential_store.get_connection(self.user_id, marketplace)
        if connection is None or not connection.is_active:
            raise NotConnectedError(marketplace, self.user_id)

        cached = self._clients.get(marketplace)
        if cached is not None and cached[0] == connection.credentials:
            return cached[1]

        client = create_marketplace_client(
            marketplace, connection.credentials, self.http, self.config.request_timeout
        )
        self._clients[marketplace] = (connection.credentials, client)
        return client

    def _adapter_for(self, marketplace: str) -> MarketplaceAdapter:
        if marketplace not in self._adapters:
            self._adapters[marketplace] = create_adapter(marketplace, self.rates, self.metrics)
        return self._adapters[marketplace]

    def _schedule_last_sync(self, marketplace: str, data_type: DataType, records: int) -> None:
        task = asyncio.create_task(self._record_last_sync(marketplace, data_type, records))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record_last_sync(self, marketplace: str, data_type: DataType, records: int) -> None:
        try:
            await self.credential_store.update_last_sync(
                self.user_id, marketplace, datetime.now(timezone.utc), records, data_type.value
            )
        except Exception as e:
            logger.warning(f"Failed to record last sync for {marketplace}: {e}")
