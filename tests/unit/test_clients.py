"""
Unit tests for marketplace HTTP clients using httpx.MockTransport
"""
from datetime import date

import httpx
import pytest

from sellercloud.core.models import DataType
from sellercloud.marketplaces.base import (
    FetchOptions,
    OzonCredentials,
    UzumCredentials,
    WildberriesCredentials,
    YandexCredentials,
)
from sellercloud.marketplaces.ozon_client import OzonClient
from sellercloud.marketplaces.uzum_client import UzumClient
from sellercloud.marketplaces.wildberries_client import WildberriesClient
from sellercloud.marketplaces.yandex_client import YandexClient
from sellercloud.utils.exceptions import (
    AuthExpired,
    ConfigurationError,
    TransientUpstreamError,
)
from conftest import json_response, request_json


class TestYandexClient:
    """Test Yandex Partner API paging"""

    @pytest.mark.asyncio
    async def test_products_page_with_stocks(self, make_http):
        """Test offer mappings are merged with campaign stocks and the page token returned"""
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Api-Key"] == "ya-key"
            if request.url.path == "/v2/businesses/222/offer-mappings":
                return json_response({"result": {
                    "offerMappings": [{"offer": {"offerId": "A1"}}],
                    "paging": {"nextPageToken": "tok-2", "total": 2},
                }})
            if request.url.path == "/campaigns/111/warehouses":
                return json_response({"result": {"warehouses": [{"id": 1}]}})
            if request.url.path == "/campaigns/111/offers/stocks":
                assert request_json(request) == {"offerIds": ["A1"]}
                return json_response({"result": {"warehouses": [
                    {"warehouseId": 1, "offers": [{"offerId": "A1", "stocks": [{"type": "FIT", "count": 2}]}]}
                ]}})
            return httpx.Response(404)

        http, transport = make_http(handler)
        client = YandexClient(YandexCredentials("ya-key", campaign_id="111", business_id="222"), http)

        raw_page = await client.fetch_page(DataType.PRODUCTS, None, FetchOptions(limit=10))

        assert raw_page.size == 1
        assert raw_page.next_cursor == "tok-2"
        assert raw_page.total == 2
        assert raw_page.payload["sellerWarehouseIds"] == [1]
        assert raw_page.payload["stocks"][0]["warehouseId"] == 1
        assert transport.requests[0].url.params["limit"] == "10"

    @pytest.mark.asyncio
    async def test_repeated_page_token_ends_paging(self, make_http):
        def handler(request):
            return json_response({"result": {"offerMappings": [], "paging": {"nextPageToken": "same"}}})

        http, _ = make_http(handler)
        client = YandexClient(YandexCredentials("k", business_id="222"), http)

        raw_page = await client.fetch_page(DataType.PRODUCTS, "same", FetchOptions())

        assert raw_page.next_cursor is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[], "unexpected", 42])
    async def test_non_object_body_is_empty_page(self, make_http, body):
        http, _ = make_http(lambda request: json_response(body))
        client = YandexClient(YandexCredentials("k", campaign_id="111", business_id="222"), http)

        products = await client.fetch_page(DataType.PRODUCTS, None, FetchOptions())
        orders = await client.fetch_page(
            DataType.ORDERS, None, FetchOptions(from_date=date(2024, 3, 1), to_date=date(2024, 3, 31))
        )

        assert products.size == 0 and products.next_cursor is None
        assert orders.size == 0

    @pytest.mark.asyncio
    async def test_business_id_resolved_from_campaign(self, make_http):
        def handler(request):
            if request.url.path == "/campaigns/111":
                return json_response({"campaign": {"id": 111, "business": {"id": 999}}})
            if request.url.path == "/v2/businesses/999/offer-mappings":
                return json_response({"result": {"offerMappings": []}})
            return httpx.Response(404)

        http, transport = make_http(handler)
        client = YandexClient(YandexCredentials("k", campaign_id="111"), http)

        await client.fetch_page(DataType.PRODUCTS, None, FetchOptions())
        await client.fetch_page(DataType.PRODUCTS, None, FetchOptions())

        campaign_calls = [r for r in transport.requests if r.url.path == "/campaigns/111"]
        assert len(campaign_calls) == 1

    @pytest.mark.asyncio
    async def test_orders_skip_empty_chunks(self, make_http):
        """Test empty 30-day chunks are walked past within one fetch_page call"""
        def handler(request):
            if request.url.params["toDate"] == "2024-03-31":
                return json_response({"orders": [], "pager": {"pagesCount": 0}})
            return json_response({"orders": [{"id": 7, "status": "DELIVERED"}], "pager": {"pagesCount": 1}})

        http, transport = make_http(handler)
        client = YandexClient(YandexCredentials("k", campaign_id="111"), http)
        options = FetchOptions(fetch_all=True, from_date=date(2024, 1, 1), to_date=date(2024, 3, 31))

        raw_page = await client.fetch_page(DataType.ORDERS, None, options)

        assert raw_page.size == 1
        assert len(transport.requests) == 2
        assert transport.requests[1].url.params["toDate"] == "2024-02-29"
        # One more chunk remains before the window start
        assert raw_page.next_cursor is not None


class TestUzumClient:
    """Test Uzum seller OpenAPI paging"""

    @pytest.mark.asyncio
    async def test_configured_shop_first_and_raw_key(self, make_http):
        def handler(request):
            assert request.headers["Authorization"] == "uzum-key"
            if request.url.path.endswith("/v1/shops"):
                return json_response([{"shopId": 5}, {"shopId": 7}])
            if request.url.path.endswith("/v1/product/shop/7"):
                return json_response({"productList": [{"productId": 1}], "totalProductsAmount": 1})
            return json_response({"productList": []})

        http, transport = make_http(handler)
        client = UzumClient(UzumCredentials("uzum-key", shop_id="7"), http)

        raw_page = await client.fetch_page(DataType.PRODUCTS, None, FetchOptions(limit=10))

        assert raw_page.size == 1
        # A short page moves on to the next shop
        assert raw_page.next_cursor is not None
        assert transport.requests[1].url.params["filter"] == "ALL"

    @pytest.mark.asyncio
    async def test_no_shops_is_configuration_error(self, make_http):
        http, _ = make_http(lambda request: json_response({"payload": []}))
        client = UzumClient(UzumCredentials("k"), http)

        with pytest.raises(ConfigurationError):
            await client.fetch_page(DataType.PRODUCTS, None, FetchOptions())

    @pytest.mark.asyncio
    async def test_orders_walk_statuses(self, make_http):
        """Test statuses without orders are skipped and the status travels with the page"""
        def handler(request):
            if request.url.path.endswith("/v1/shops"):
                return json_response([{"shopId": 7}])
            if request.url.params["status"] == "DELIVERED":
                return json_response({"payload": {"orders": [{"id": 1}]}})
            return json_response({"payload": {"orders": []}})

        http, transport = make_http(handler)
        client = UzumClient(UzumCredentials("k"), http)

        raw_page = await client.fetch_page(DataType.ORDERS, None, FetchOptions(limit=10))

        assert raw_page.payload["status"] == "DELIVERED"
        statuses = [r.url.params["status"] for r in transport.requests if "status" in r.url.params]
        assert statuses == ["CREATED", "PACKING", "PENDING_DELIVERY", "DELIVERING", "DELIVERED"]
        assert transport.requests[-1].url.params["shopIds"] == "7"


class TestWildberriesClient:
    """Test Wildberries card and statistics paging"""

    @pytest.mark.asyncio
    async def test_cards_cursor(self, make_http):
        def handler(request):
            assert request.url.host == "content-api.wildberries.ru"
            body = request_json(request)
            assert body["settings"]["cursor"]["limit"] == 2
            return json_response({
                "cards": [{"nmID": 1}, {"nmID": 2}],
                "cursor": {"updatedAt": "2024-01-01T00:00:00Z", "nmID": 2, "total": 2},
            })

        http, _ = make_http(handler)
        client = WildberriesClient(WildberriesCredentials("wb-key"), http)

        raw_page = await client.fetch_page(DataType.PRODUCTS, None, FetchOptions(limit=2))

        assert raw_page.next_cursor == {"updatedAt": "2024-01-01T00:00:00Z", "nmID": 2}

    @pytest.mark.asyncio
    async def test_statistics_orders_then_sales(self, make_http):
        """Test the sales phase starts at the original window start"""
        def handler(request):
            assert request.url.host == "statistics-api.wildberries.ru"
            if request.url.path.endswith("/orders"):
                return json_response([{"srid": "s1", "lastChangeDate": "2024-03-05T00:00:00"}])
            return json_response([{"srid": "s1", "saleID": "S1"}])

        http, transport = make_http(handler)
        client = WildberriesClient(WildberriesCredentials("wb-key"), http)
        options = FetchOptions(fetch_all=True, from_date=date(2024, 3, 1))

        first = await client.fetch_page(DataType.ORDERS, None, options)
        second = await client.fetch_page(DataType.ORDERS, first.next_cursor, options)

        assert first.payload["phase"] == "orders"
        assert second.payload["phase"] == "sales"
        assert second.next_cursor is None
        assert [r.url.params["dateFrom"] for r in transport.requests] == [
            "2024-03-01T00:00:00", "2024-03-01T00:00:00"
        ]


class TestOzonClient:
    """Test Ozon Seller API paging"""

    @pytest.mark.asyncio
    async def test_products_list_and_info(self, make_http):
        def handler(request):
            assert request.headers["Client-Id"] == "42"
            assert request.headers["Api-Key"] == "ozon-key"
            if request.url.path == "/v3/product/list":
                return json_response({"result": {
                    "items": [{"product_id": 1}, {"product_id": 2}], "last_id": "abc", "total": 5,
                }})
            assert request_json(request) == {"product_id": [1, 2]}
            return json_response({"items": [{"offer_id": "A"}, {"offer_id": "B"}]})

        http, _ = make_http(handler)
        client = OzonClient(OzonCredentials("ozon-key", client_id="42"), http)

        raw_page = await client.fetch_page(DataType.PRODUCTS, None, FetchOptions(limit=2))

        assert raw_page.size == 2
        assert raw_page.next_cursor == "abc"
        assert raw_page.total == 5
        assert len(raw_page.payload["items"]) == 2

    @pytest.mark.asyncio
    async def test_postings_offset_cursor(self, make_http):
        def handler(request):
            body = request_json(request)
            assert body["filter"]["since"] == "2024-03-01T00:00:00Z"
            return json_response({"result": {"postings": [{"posting_number": "P"}], "has_next": body["offset"] == 0}})

        http, _ = make_http(handler)
        client = OzonClient(OzonCredentials("ozon-key", client_id="42"), http)
        options = FetchOptions(fetch_all=True, from_date=date(2024, 3, 1), to_date=date(2024, 3, 31))

        first = await client.fetch_page(DataType.ORDERS, None, options)
        second = await client.fetch_page(DataType.ORDERS, first.next_cursor, options)

        assert first.next_cursor == 1
        assert second.next_cursor is None


class TestErrorMapping:
    """Test raw HTTP failures never leave the client"""

    @pytest.mark.asyncio
    async def test_server_error(self, make_http):
        http, _ = make_http(lambda request: httpx.Response(503, text="unavailable"))
        client = OzonClient(OzonCredentials("k", client_id="1"), http)

        with pytest.raises(TransientUpstreamError) as exc_info:
            await client.fetch_page(DataType.ORDERS, None, FetchOptions())

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_timeout(self, make_http):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        http, _ = make_http(handler)
        client = WildberriesClient(WildberriesCredentials("k"), http)

        with pytest.raises(TransientUpstreamError):
            await client.fetch_page(DataType.PRODUCTS, None, FetchOptions())

    @pytest.mark.asyncio
    async def test_connection_error(self, make_http):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        http, _ = make_http(handler)
        client = UzumClient(UzumCredentials("k"), http)

        with pytest.raises(TransientUpstreamError):
            await client.fetch_page(DataType.PRODUCTS, None, FetchOptions())

    @pytest.mark.asyncio
    async def test_non_json_body(self, make_http):
        http, _ = make_http(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        client = WildberriesClient(WildberriesCredentials("k"), http)

        with pytest.raises(TransientUpstreamError):
            await client.fetch_page(DataType.PRODUCTS, None, FetchOptions())

    @pytest.mark.asyncio
    async def test_auth_expired(self, make_http):
        http, _ = make_http(lambda request: httpx.Response(401, json={"message": "token expired"}))
        client = YandexClient(YandexCredentials("k", business_id="1"), http)

        with pytest.raises(AuthExpired):
            await client.fetch_page(DataType.PRODUCTS, None, FetchOptions())

    @pytest.mark.asyncio
    async def test_test_connection_reports_failure(self, make_http):
        http, _ = make_http(lambda request: httpx.Response(403, json={}))
        client = WildberriesClient(WildberriesCredentials("k"), http)

        result = await client.test_connection()

        assert result["success"] is False
        assert result["marketplace"] == "wildberries"
