"""
Factory for marketplace adapters and clients, and the shared order
classification used by every revenue computation.
"""

from typing import Any, Dict, Optional, Type

import httpx

from sellercloud.core.currency import RateTable
from sellercloud.core.models import NormalizedOrder, OrderStatusClass
from sellercloud.marketplaces.base import (
    MarketplaceAdapter,
    MarketplaceClient,
    MarketplaceCredentials,
    OzonCredentials,
    UzumCredentials,
    WildberriesCredentials,
    YandexCredentials,
)
from sellercloud.marketplaces.ozon_client import OzonAdapter, OzonClient
from sellercloud.marketplaces.uzum_client import UzumAdapter, UzumClient
from sellercloud.marketplaces.wildberries_client import WildberriesAdapter, WildberriesClient
from sellercloud.marketplaces.yandex_client import YandexAdapter, YandexClient
from sellercloud.monitoring.prometheus_metrics import PrometheusMetrics
from sellercloud.utils.exceptions import CredentialError, UnsupportedMarketplaceError
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)


_ADAPTERS: Dict[str, Type[MarketplaceAdapter]] = {
    "yandex": YandexAdapter,
    "uzum": UzumAdapter,
    "wildberries": WildberriesAdapter,
    "ozon": OzonAdapter,
}

_CLIENTS: Dict[str, Type[MarketplaceClient]] = {
    "yandex": YandexClient,
    "uzum": UzumClient,
    "wildberries": WildberriesClient,
    "ozon": OzonClient,
}

_CREDENTIALS: Dict[str, Type[MarketplaceCredentials]] = {
    "yandex": YandexCredentials,
    "uzum": UzumCredentials,
    "wildberries": WildberriesCredentials,
    "ozon": OzonCredentials,
}

SUPPORTED_MARKETPLACES = tuple(_ADAPTERS)


def ensure_supported(marketplace: str) -> str:
    """
    Validate a marketplace name.

    Raises:
        UnsupportedMarketplaceError: If no adapter exists for it
    """
    if marketplace not in _ADAPTERS:
        raise UnsupportedMarketplaceError(marketplace)
    return marketplace


def create_adapter(marketplace: str, rates: Optional[RateTable] = None,
                   metrics: Optional[PrometheusMetrics] = None) -> MarketplaceAdapter:
    """Create the pure adapter for a marketplace."""
    return _ADAPTERS[ensure_supported(marketplace)](rates=rates, metrics=metrics)


def create_marketplace_client(marketplace: str, credentials: MarketplaceCredentials,
                              http_client: httpx.AsyncClient, timeout: float = 30.0) -> MarketplaceClient:
    """
    Create marketplace client for the given credentials.

    Args:
        marketplace: Marketplace name
        credentials: Credentials matching the marketplace
        http_client: Shared async HTTP client
        timeout: Per-request timeout in seconds

    Returns:
        Appropriate MarketplaceClient implementation

    Raises:
        UnsupportedMarketplaceError: If marketplace not supported
    """
    client_class = _CLIENTS[ensure_supported(marketplace)]
    logger.debug(f"Creating {marketplace} client")
    return client_class(credentials, http_client, timeout)


def credentials_from_dict(marketplace: str, data: Dict[str, Any]) -> MarketplaceCredentials:
    """
    Build typed credentials from their stored dictionary form.

    Raises:
        UnsupportedMarketplaceError: If marketplace not supported
        CredentialError: If required fields are missing
    """
    credentials_class = _CREDENTIALS[ensure_supported(marketplace)]
    try:
        return credentials_class(**data)
    except TypeError as e:
        raise CredentialError(f"Invalid {marketplace} credentials: {e}", {"marketplace": marketplace})


def classify_order_status(marketplace: str, status: Optional[str]) -> OrderStatusClass:
    """Classify a native order status of the given marketplace."""
    return _ADAPTERS[ensure_supported(marketplace)].classify_order_status(status)


def classify_order(order: NormalizedOrder) -> OrderStatusClass:
    """
    Classify a normalized order.

    This is the only place that decides whether an order counts toward revenue.
    """
    return classify_order_status(order.marketplace, order.status)


def counts_toward_revenue(order: NormalizedOrder) -> bool:
    return classify_order(order) is OrderStatusClass.COMPLETED


def is_cancelled(order: NormalizedOrder) -> bool:
    return classify_order(order) is OrderStatusClass.CANCELLED
