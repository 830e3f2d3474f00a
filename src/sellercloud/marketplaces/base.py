"""
Abstract base classes for marketplace adapters and API clients.

A marketplace integration has two halves:

- ``MarketplaceClient`` talks HTTP: it knows the auth header scheme, endpoints
  and pagination style, and returns one raw page plus an opaque continuation
  cursor.
- ``MarketplaceAdapter`` is pure: it turns a raw page into normalized records
  and classifies the marketplace's native order statuses.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Type

import httpx

from sellercloud.core.currency import RateTable
from sellercloud.core.models import (
    DataType,
    NormalizedOrder,
    NormalizedProduct,
    OrderItem,
    OrderStatusClass,
)
from sellercloud.monitoring.prometheus_metrics import PrometheusMetrics, get_metrics
from sellercloud.utils.exceptions import (
    MalformedRecord,
    TransientUpstreamError,
    raise_for_upstream_status,
)
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass
class MarketplaceCredentials:
    """Base credentials for marketplace authentication."""
    api_key: str


@dataclass
class YandexCredentials(MarketplaceCredentials):
    """Yandex Market Partner API credentials."""
    campaign_id: str = ""
    business_id: Optional[str] = None


@dataclass
class UzumCredentials(MarketplaceCredentials):
    """Uzum Market seller OpenAPI credentials."""
    shop_id: Optional[str] = None


@dataclass
class WildberriesCredentials(MarketplaceCredentials):
    """Wildberries API credentials."""
    pass


@dataclass
class OzonCredentials(MarketplaceCredentials):
    """Ozon Seller API credentials."""
    client_id: str = ""


@dataclass
class FetchOptions:
    """Parameters of one gateway fetch."""

    limit: int = 50
    fetch_all: bool = False
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    status: Optional[str] = None

    def __post_init__(self):
        if self.limit < 1:
            raise ValueError("limit must be at least 1")
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("from_date must not be after to_date")


@dataclass
class RawPage:
    """
    One upstream page as returned by a client.

    ``payload`` is marketplace-native and only understood by the matching
    adapter. ``size`` is the number of raw records on the page, ``total`` the
    upstream-reported total when the marketplace provides one.
    """

    payload: Dict[str, Any]
    size: int
    next_cursor: Optional[Any] = None
    total: Optional[int] = None


class MarketplaceAdapter(ABC):
    """
    Pure translation of raw marketplace pages into normalized records.

    Subclasses declare their native order-status enum and an explicit mapping
    of every member to an ``OrderStatusClass``. Records that cannot be
    normalized raise ``MalformedRecord``, which is logged, counted and skipped
    here so that one bad record never fails a page.
    """

    marketplace: str = ""
    status_enum: Type[Enum]
    status_classes: Mapping[Enum, OrderStatusClass]

    def __init__(self, rates: Optional[RateTable] = None,
                 metrics: Optional[PrometheusMetrics] = None):
        self.rates = rates or RateTable.default()
        self._metrics = metrics

    @property
    def metrics(self) -> PrometheusMetrics:
        if self._metrics is None:
            self._metrics = get_metrics()
        return self._metrics

    def list_products(self, raw_page: RawPage) -> List[NormalizedProduct]:
        context = self._page_context(raw_page.payload)
        return self._normalize_all(
            self._product_records(raw_page.payload),
            lambda record: self._normalize_product(record, context),
            DataType.PRODUCTS,
        )

    def list_orders(self, raw_page: RawPage) -> List[NormalizedOrder]:
        context = self._page_context(raw_page.payload)
        return self._normalize_all(
            self._order_records(raw_page.payload),
            lambda record: self._normalize_order(record, context),
            DataType.ORDERS,
        )

    def normalize(self, data_type: DataType, raw_page: RawPage) -> list:
        if data_type is DataType.PRODUCTS:
            return self.list_products(raw_page)
        return self.list_orders(raw_page)

    @classmethod
    def classify_order_status(cls, native: Optional[str]) -> OrderStatusClass:
        """
        Map a native status string to its class.

        Unknown values are logged and classified as pending so that they never
        count as revenue and never as cancelled.
        """
        try:
            member = cls.status_enum(native)
        except ValueError:
            logger.warning(f"Unknown {cls.marketplace} order status '{native}', treating as pending")
            return OrderStatusClass.PENDING
        return cls.status_classes[member]

    def _normalize_all(self, records: Iterable[Any],
                       normalizer: Callable[[Any], Any], data_type: DataType) -> list:
        normalized = []
        for record in records:
            try:
                if not isinstance(record, dict):
                    raise MalformedRecord("Record is not an object", record)
                normalized.append(normalizer(record))
            except (MalformedRecord, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping malformed {self.marketplace} {data_type.value} record: {e}")
                self.metrics.track_dropped_record(self.marketplace, data_type.value)
        return normalized

    def _page_context(self, payload: Dict[str, Any]) -> Any:
        """Page-level data shared by all records (e.g. a stock map)."""
        return None

    def _to_local(self, amount: float, currency: str) -> float:
        return self.rates.convert(amount, currency)

    @abstractmethod
    def _product_records(self, payload: Dict[str, Any]) -> Iterable[Any]:
        pass

    @abstractmethod
    def _order_records(self, payload: Dict[str, Any]) -> Iterable[Any]:
        pass

    @abstractmethod
    def _normalize_product(self, record: Dict[str, Any], context: Any) -> NormalizedProduct:
        pass

    @abstractmethod
    def _normalize_order(self, record: Dict[str, Any], context: Any) -> NormalizedOrder:
        pass


class MarketplaceClient(ABC):
    """
    Abstract marketplace API client.

    All HTTP calls go through ``_request`` which maps transport failures and
    non-success statuses into the SellerCloud error taxonomy, so raw httpx
    errors never leave the client.
    """

    base_url: str = ""

    def __init__(self, credentials: MarketplaceCredentials, http_client: httpx.AsyncClient,
                 timeout: float = 30.0):
        """
        Initialize marketplace client with credentials.

        Args:
            credentials: Marketplace-specific credentials
            http_client: Shared async HTTP client
            timeout: Per-request timeout in seconds
        """
        self.credentials = credentials
        self.http = http_client
        self.timeout = timeout

    @property
    @abstractmethod
    def marketplace_name(self) -> str:
        """Get marketplace name."""
        pass

    @abstractmethod
    def _auth_headers(self) -> Dict[str, str]:
        pass

    @abstractmethod
    async def fetch_page(self, data_type: DataType, cursor: Optional[Any],
                         options: FetchOptions) -> RawPage:
        """
        Fetch one page of raw records.

        Args:
            data_type: Products or orders
            cursor: Continuation cursor from the previous page, None for the first
            options: Fetch options (page size, date window, status filter)

        Returns:
            RawPage with the continuation cursor of the next page
        """
        pass

    @abstractmethod
    async def test_connection(self) -> Dict[str, Any]:
        """
        Test API connectivity and credentials.

        Returns:
            Dict with connection test results
        """
        pass

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """
        Make HTTP request and return the decoded JSON body.

        Args:
            method: HTTP method
            url: Absolute URL or path relative to ``base_url``
            **kwargs: Additional httpx request parameters

        Raises:
            AuthExpired, RequestInvalid, TransientUpstreamError
        """
        if not url.startswith("http"):
            url = f"{self.base_url}{url}"

        headers = {"Accept": "application/json", **self._auth_headers(), **kwargs.pop("headers", {})}
        kwargs.setdefault("timeout", self.timeout)

        logger.debug(f"Making {method} request to {url}")

        try:
            response = await self.http.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException:
            raise TransientUpstreamError(
                f"Request timeout after {self.timeout}s",
                marketplace=self.marketplace_name,
                endpoint=url
            )
        except httpx.TransportError as e:
            raise TransientUpstreamError(
                f"Connection failed: {e}",
                marketplace=self.marketplace_name,
                endpoint=url
            )

        raise_for_upstream_status(response, self.marketplace_name, url)

        try:
            return response.json()
        except ValueError:
            raise TransientUpstreamError(
                "Upstream returned a non-JSON body",
                marketplace=self.marketplace_name,
                status_code=response.status_code,
                endpoint=url,
                response_data=response.text[:200]
            )


def first_of(mapping: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First truthy value among ``keys`` in ``mapping``."""
    for key in keys:
        value = mapping.get(key)
        if value:
            return value
    return default


def as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def build_items(raw_items: Iterable[Dict[str, Any]], marketplace: str,
                item_factory: Callable[[Dict[str, Any]], Optional[OrderItem]]) -> tuple:
    """Build order items, skipping lines that have no offer id."""
    items = []
    for raw_item in raw_items:
        if not isinstance(raw_item, dict):
            continue
        item = item_factory(raw_item)
        if item is None:
            logger.debug(f"Skipping {marketplace} order line without offer id")
            continue
        items.append(item)
    return tuple(items)


def to_number(value: Any, default: float = 0.0) -> float:
    """Parse a number that upstream may send as a string."""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedRecord(f"Not a number: {value!r}")
