"""
Marketplace abstraction layer for SellerCloud.

Provides a unified interface for different marketplace platforms.
"""

from .base import (
    FetchOptions,
    MarketplaceAdapter,
    MarketplaceClient,
    MarketplaceCredentials,
    OzonCredentials,
    RawPage,
    UzumCredentials,
    WildberriesCredentials,
    YandexCredentials,
)
from .ozon_client import OzonAdapter, OzonClient
from .uzum_client import UzumAdapter, UzumClient
from .wildberries_client import WildberriesAdapter, WildberriesClient
from .yandex_client import YandexAdapter, YandexClient
# factory is imported separately: it is the classification entry point

__all__ = [
    "FetchOptions",
    "MarketplaceAdapter",
    "MarketplaceClient",
    "MarketplaceCredentials",
    "OzonCredentials",
    "RawPage",
    "UzumCredentials",
    "WildberriesCredentials",
    "YandexCredentials",
    "OzonAdapter",
    "OzonClient",
    "UzumAdapter",
    "UzumClient",
    "WildberriesAdapter",
    "WildberriesClient",
    "YandexAdapter",
    "YandexClient",
]
