"""
Uzum Market seller OpenAPI integration.

Products are listed per shop (every shop the key can see); FBS orders are
listed per status because the API requires a status filter. Amounts are
already in UZS.
"""

from dataclasses import dataclass
from datetime import datetime, time as dt_time, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sellercloud.core.models import (
    DataType,
    NormalizedOrder,
    NormalizedProduct,
    OrderItem,
    OrderStatusClass,
)
from sellercloud.marketplaces.base import (
    FetchOptions,
    MarketplaceAdapter,
    MarketplaceClient,
    RawPage,
    UzumCredentials,
    as_dict,
    as_list,
    build_items,
    first_of,
    to_number,
)
from sellercloud.utils.exceptions import ConfigurationError, MalformedRecord, SellerCloudError
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)

MARKETPLACE = "uzum"

UZUM_CDN_BASE = "https://images.uzum.uz"
PRODUCTS_PAGE_SIZE = 100
ORDERS_PAGE_SIZE = 50


class UzumOrderStatus(Enum):
    """FBS order statuses of the Uzum seller OpenAPI."""
    CREATED = "CREATED"
    PACKING = "PACKING"
    PENDING_DELIVERY = "PENDING_DELIVERY"
    DELIVERING = "DELIVERING"
    DELIVERED = "DELIVERED"
    ACCEPTED_AT_DP = "ACCEPTED_AT_DP"
    DELIVERED_TO_CUSTOMER_DELIVERY_POINT = "DELIVERED_TO_CUSTOMER_DELIVERY_POINT"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"
    PENDING_CANCELLATION = "PENDING_CANCELLATION"
    RETURNED = "RETURNED"


UZUM_STATUS_CLASSES = {
    UzumOrderStatus.CREATED: OrderStatusClass.PENDING,
    UzumOrderStatus.PACKING: OrderStatusClass.PROCESSING,
    UzumOrderStatus.PENDING_DELIVERY: OrderStatusClass.PROCESSING,
    UzumOrderStatus.DELIVERING: OrderStatusClass.PROCESSING,
    UzumOrderStatus.DELIVERED: OrderStatusClass.COMPLETED,
    UzumOrderStatus.ACCEPTED_AT_DP: OrderStatusClass.COMPLETED,
    UzumOrderStatus.DELIVERED_TO_CUSTOMER_DELIVERY_POINT: OrderStatusClass.COMPLETED,
    UzumOrderStatus.COMPLETED: OrderStatusClass.COMPLETED,
    UzumOrderStatus.CANCELED: OrderStatusClass.CANCELLED,
    UzumOrderStatus.PENDING_CANCELLATION: OrderStatusClass.CANCELLED,
    UzumOrderStatus.RETURNED: OrderStatusClass.CANCELLED,
}

# Queried one by one when no status filter is given
ORDER_STATUSES = [status.value for status in UzumOrderStatus]


def absolute_picture_url(url: str) -> str:
    """Make a relative Uzum photo path absolute against the CDN."""
    if url.startswith("http"):
        return url
    if url.startswith("/"):
        return f"{UZUM_CDN_BASE}{url}"
    return f"{UZUM_CDN_BASE}/{url}"


def _photo_url(photo: Any) -> Optional[str]:
    if isinstance(photo, str):
        return photo
    photo = as_dict(photo)
    nested = photo.get("photo")
    if isinstance(nested, dict):
        return nested.get("url")
    return photo.get("url") or photo.get("photoUrl") or (nested if isinstance(nested, str) else None)


def _uzum_timestamp(value: Any) -> Optional[str]:
    """Uzum sends epoch milliseconds or ISO strings."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
    return str(value)


class UzumAdapter(MarketplaceAdapter):
    """Normalizes Uzum product cards and FBS orders. Prices are UZS."""

    marketplace = MARKETPLACE
    status_enum = UzumOrderStatus
    status_classes = UZUM_STATUS_CLASSES

    def _product_records(self, payload):
        return as_list(payload.get("productList"))

    def _order_records(self, payload):
        return as_list(payload.get("orders"))

    def _page_context(self, payload):
        return payload.get("status")

    def _normalize_product(self, record, context) -> NormalizedProduct:
        skus = [as_dict(sku) for sku in as_list(record.get("skuList") or record.get("skus"))]
        first_sku = skus[0] if skus else {}

        offer_id = first_of(record, "productId", "id") or first_sku.get("skuId")
        if not offer_id:
            raise MalformedRecord("Product card without productId", record)

        stock_fbo = sum(int(sku.get("quantityActive") or 0) for sku in skus)
        stock_fbs = sum(int(sku.get("quantityFbs") or 0) for sku in skus)

        shop_sku = (
            first_of(first_sku, "sellerItemCode", "article")
            or first_of(record, "sellerItemCode", "article")
            or first_sku.get("vendorCode") or record.get("vendorCode")
            or first_sku.get("barcode")
        )

        category = record.get("category")
        if isinstance(category, dict):
            category = category.get("title")
        category = category or record.get("categoryTitle") or ""

        status = record.get("status")
        if isinstance(status, dict):
            status = status.get("value") or status.get("title")
        availability = status or record.get("moderationStatus") or "ACTIVE"

        return NormalizedProduct(
            offer_id=str(offer_id),
            name=first_of(record, "title", "name", default=""),
            price=to_number(first_of(first_sku, "fullPrice", "purchasePrice") or record.get("price")),
            shop_sku=str(shop_sku) if shop_sku else None,
            pictures=self._pictures(record, skus),
            availability=str(availability),
            stock_fbo=stock_fbo,
            stock_fbs=stock_fbs,
            category=str(category),
            marketplace=MARKETPLACE,
        )

    @staticmethod
    def _pictures(record: Dict[str, Any], skus: List[Dict[str, Any]]) -> tuple:
        pictures: List[str] = []

        for photo in as_list(record.get("photos") or record.get("images") or record.get("photoList")):
            url = _photo_url(photo)
            if url:
                pictures.append(url)

        if not pictures:
            direct = first_of(record, "image", "previewImg", "previewImage", "photoUrl", "imageUrl")
            url = _photo_url(direct) if direct else None
            if url:
                pictures.append(url)

        if not pictures:
            for sku in skus:
                for url in [sku.get("previewImage")] + [_photo_url(p) for p in as_list(sku.get("photos"))]:
                    if url and url not in pictures:
                        pictures.append(url)

        return tuple(absolute_picture_url(url) for url in pictures)

    def _normalize_order(self, record, context) -> NormalizedOrder:
        order_id = first_of(record, "orderId", "id")
        status = record.get("status") or context
        if order_id is None or not status:
            raise MalformedRecord("Order without id or status", record)

        items = build_items(
            as_list(record.get("items") or record.get("orderItems")), MARKETPLACE, self._build_item
        )
        items_total = sum(item.price * item.count for item in items)
        total = to_number(first_of(record, "totalPrice", "totalAmount")) or items_total

        return NormalizedOrder(
            id=order_id,
            status=str(status),
            substatus=record.get("substatus") or None,
            created_at=_uzum_timestamp(first_of(record, "createdAt", "createDate", "dateCreated")),
            total=total,
            items_total=items_total,
            delivery_total=to_number(record.get("deliveryPrice")),
            items=items,
            marketplace=MARKETPLACE,
        )

    @staticmethod
    def _build_item(item: Dict[str, Any]) -> Optional[OrderItem]:
        # identifierInfo is sometimes the string "N/A"
        identifier = as_dict(item.get("identifierInfo"))
        offer_id = item.get("skuTitle") or item.get("barcode") or identifier.get("barcode") or item.get("id")
        if not offer_id:
            return None
        return OrderItem(
            offer_id=str(offer_id),
            offer_name=first_of(item, "title", "skuTitle", "productTitle", "name", default=""),
            count=int(first_of(item, "quantity", "count", "amount", default=1)),
            price=to_number(item.get("price")),
        )


@dataclass(frozen=True)
class _ShopCursor:
    shop_index: int
    page: int = 0


@dataclass(frozen=True)
class _StatusCursor:
    status_index: int
    page: int = 0


class UzumClient(MarketplaceClient):
    """
    Uzum seller OpenAPI client.

    Authenticates with the raw API key in ``Authorization`` (no scheme
    prefix). Shops are discovered from ``/v1/shops`` once per client.
    """

    base_url = "https://api-seller.uzum.uz/api/seller-openapi"

    def __init__(self, credentials: UzumCredentials, http_client, timeout: float = 30.0):
        super().__init__(credentials, http_client, timeout)
        self._shop_ids: Optional[List[str]] = None

    @property
    def marketplace_name(self) -> str:
        return MARKETPLACE

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": self.credentials.api_key}

    async def fetch_page(self, data_type: DataType, cursor, options: FetchOptions) -> RawPage:
        if data_type is DataType.PRODUCTS:
            return await self._fetch_products(cursor, options)
        return await self._fetch_orders(cursor, options)

    async def test_connection(self) -> Dict[str, Any]:
        """Test Uzum API connection."""
        try:
            shop_ids = await self._get_shop_ids()
            return {
                "success": True,
                "marketplace": MARKETPLACE,
                "shops": shop_ids,
            }
        except SellerCloudError as e:
            return {
                "success": False,
                "marketplace": MARKETPLACE,
                "error": str(e),
            }

    async def _get_shop_ids(self) -> List[str]:
        """All shop ids, the configured shop first."""
        if self._shop_ids is not None:
            return self._shop_ids

        data = await self._request("GET", "/v1/shops")
        if isinstance(data, dict):
            data = data.get("payload") or data.get("data") or []
        shops = [as_dict(shop) for shop in as_list(data)]
        shop_ids = [str(first_of(shop, "shopId", "id")) for shop in shops if first_of(shop, "shopId", "id")]

        configured = self.credentials.shop_id
        if configured:
            configured = str(configured)
            shop_ids = [configured] + [sid for sid in shop_ids if sid != configured]

        if not shop_ids:
            raise ConfigurationError("No Uzum shops available for this API key")

        logger.info(f"Uzum shops: {shop_ids}")
        self._shop_ids = shop_ids
        return shop_ids

    async def _fetch_products(self, cursor: Optional[_ShopCursor], options: FetchOptions) -> RawPage:
        shop_ids = await self._get_shop_ids()
        cursor = cursor or _ShopCursor(0)
        size = PRODUCTS_PAGE_SIZE if options.fetch_all else min(options.limit, PRODUCTS_PAGE_SIZE)

        # Empty shops are skipped so that an empty page always means the end
        while True:
            shop_id = shop_ids[cursor.shop_index]
            data = await self._request(
                "GET",
                f"/v1/product/shop/{shop_id}",
                params={"size": size, "page": cursor.page, "filter": "ALL"},
            )
            data = as_dict(data)
            products = as_list(
                data.get("productList") or as_dict(data.get("payload")).get("productList")
            )

            next_shop = None
            if cursor.shop_index + 1 < len(shop_ids):
                next_shop = _ShopCursor(cursor.shop_index + 1)

            if products:
                next_cursor = _ShopCursor(cursor.shop_index, cursor.page + 1) if len(products) >= size else next_shop
                total = data.get("totalProductsAmount") if len(shop_ids) == 1 else None
                return RawPage({"productList": products}, len(products), next_cursor, total)

            if next_shop is None:
                return RawPage({"productList": []}, 0, None)
            cursor = next_shop

    async def _fetch_orders(self, cursor: Optional[_StatusCursor], options: FetchOptions) -> RawPage:
        shop_ids = await self._get_shop_ids()
        statuses = [options.status] if options.status else ORDER_STATUSES
        cursor = cursor or _StatusCursor(0)
        size = ORDERS_PAGE_SIZE if options.fetch_all else min(options.limit, ORDERS_PAGE_SIZE)

        while True:
            status = statuses[cursor.status_index]
            params: Dict[str, Any] = {
                "size": size,
                "page": cursor.page,
                "status": status,
                "shopIds": shop_ids[0],
            }
            if options.from_date:
                params["dateFrom"] = _epoch_millis(datetime.combine(options.from_date, dt_time.min))
            if options.to_date:
                params["dateTo"] = _epoch_millis(datetime.combine(options.to_date, dt_time.max))

            logger.debug(f"Uzum orders ({status}) page {cursor.page}")
            data = as_dict(await self._request("GET", "/v2/fbs/orders", params=params))
            payload = data.get("payload")
            if isinstance(payload, dict):
                payload = payload.get("sellerOrders") or payload.get("orders") or []
            orders = as_list(payload)

            next_status = None
            if cursor.status_index + 1 < len(statuses):
                next_status = _StatusCursor(cursor.status_index + 1)

            if orders:
                next_cursor = _StatusCursor(cursor.status_index, cursor.page + 1) if len(orders) >= size else next_status
                return RawPage({"orders": orders, "status": status}, len(orders), next_cursor)

            if next_status is None:
                return RawPage({"orders": [], "status": status}, 0, None)
            cursor = next_status


def _epoch_millis(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)
