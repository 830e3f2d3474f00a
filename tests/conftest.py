"""
Test configuration and fixtures for SellerCloud
"""
import json
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from cryptography.fernet import Fernet
from prometheus_client import CollectorRegistry

from sellercloud.cache.storage import MemoryStorage
from sellercloud.core.currency import RateTable
from sellercloud.core.models import NormalizedOrder, NormalizedProduct, OrderItem
from sellercloud.marketplaces.base import (
    OzonCredentials,
    UzumCredentials,
    WildberriesCredentials,
    YandexCredentials,
)
from sellercloud.monitoring.prometheus_metrics import PrometheusMetrics
from sellercloud.security.encryption import CredentialEncryptor
from sellercloud.services.credentials import EncryptedCredentialStore
from sellercloud.services.gateway import FetchGateway
from sellercloud.utils.config import GatewayConfig


# =============================================================================
# Metrics, rates and storage
# =============================================================================

@pytest.fixture
def registry() -> CollectorRegistry:
    """Isolated Prometheus registry per test"""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry) -> PrometheusMetrics:
    return PrometheusMetrics(registry=registry)


@pytest.fixture
def rates() -> RateTable:
    return RateTable.default()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


# =============================================================================
# Credentials
# =============================================================================

@pytest.fixture
def encryption_key() -> str:
    return Fernet.generate_key().decode()


@pytest.fixture
def encryptor(encryption_key) -> CredentialEncryptor:
    return CredentialEncryptor(master_key=encryption_key)


@pytest.fixture
def credential_store(storage, encryptor) -> EncryptedCredentialStore:
    return EncryptedCredentialStore(storage, encryptor)


@pytest.fixture
def connected_store(credential_store) -> EncryptedCredentialStore:
    """Credential store with every marketplace connected for user-1"""
    credential_store.connect("user-1", "yandex", YandexCredentials("ya-key", campaign_id="111", business_id="222"))
    credential_store.connect("user-1", "uzum", UzumCredentials("uzum-key", shop_id="7"))
    credential_store.connect("user-1", "wildberries", WildberriesCredentials("wb-key"))
    credential_store.connect("user-1", "ozon", OzonCredentials("ozon-key", client_id="42"))
    return credential_store


# =============================================================================
# HTTP mocking
# =============================================================================

class RecordingTransport(httpx.MockTransport):
    """MockTransport that remembers every request"""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.requests: List[httpx.Request] = []

        def recording_handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(recording_handler)


def json_response(data: Any, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> httpx.Response:
    return httpx.Response(status_code, json=data, headers=headers)


def request_json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content or b"{}")


@pytest.fixture
def make_http():
    """Build an AsyncClient whose requests are answered by ``handler``"""
    clients: List[httpx.AsyncClient] = []

    def factory(handler: Callable[[httpx.Request], httpx.Response]):
        transport = RecordingTransport(handler)
        client = httpx.AsyncClient(transport=transport)
        clients.append(client)
        return client, transport

    return factory


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def make_gateway(connected_store, metrics, rates):
    """Gateway for user-1 over a mocked HTTP transport, without retry waits"""

    def factory(http_client: httpx.AsyncClient, **config) -> FetchGateway:
        return FetchGateway(
            "user-1",
            connected_store,
            config=GatewayConfig(**config),
            http_client=http_client,
            rates=rates,
            metrics=metrics,
            sleep=no_sleep,
        )

    return factory


# =============================================================================
# Record builders
# =============================================================================

def make_product(offer_id: str = "SKU-1", stock_fbo: int = 0, stock_fbs: int = 0,
                 marketplace: str = "uzum", **kwargs) -> NormalizedProduct:
    return NormalizedProduct(
        offer_id=offer_id,
        name=kwargs.pop("name", f"Product {offer_id}"),
        stock_fbo=stock_fbo,
        stock_fbs=stock_fbs,
        marketplace=marketplace,
        **kwargs
    )


def make_order(order_id, status: str, total: float, created_at: Optional[str] = None,
               marketplace: str = "yandex", items=(), total_uzs: Optional[float] = None) -> NormalizedOrder:
    return NormalizedOrder(
        id=order_id,
        status=status,
        created_at=created_at,
        total=total,
        total_uzs=total_uzs,
        items_total=total,
        items=tuple(items),
        marketplace=marketplace,
    )


def make_item(offer_id: str, count: int = 1, price: float = 0.0,
              price_uzs: Optional[float] = None, name: str = "") -> OrderItem:
    return OrderItem(offer_id=offer_id, offer_name=name, count=count, price=price, price_uzs=price_uzs)
