"""
Ozon marketplace integration.

Products are paged through ``/v3/product/list`` (``last_id`` cursor) and
enriched from ``/v3/product/info/list``; orders are FBS postings paged by
offset. Amounts are RUB and converted to UZS.
"""

from datetime import datetime, time as dt_time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

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
    OzonCredentials,
    RawPage,
    as_dict,
    as_list,
    build_items,
    first_of,
    to_number,
)
from sellercloud.utils.exceptions import MalformedRecord, SellerCloudError
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)

MARKETPLACE = "ozon"
CURRENCY = "RUB"

PRODUCTS_PAGE_SIZE = 100
POSTINGS_PAGE_SIZE = 50
ORDERS_LOOKBACK_DAYS = 30


class OzonPostingStatus(Enum):
    """FBS posting statuses of the Ozon Seller API."""
    ACCEPTANCE_IN_PROGRESS = "acceptance_in_progress"
    AWAITING_REGISTRATION = "awaiting_registration"
    AWAITING_APPROVE = "awaiting_approve"
    AWAITING_PACKAGING = "awaiting_packaging"
    AWAITING_DELIVER = "awaiting_deliver"
    ARBITRATION = "arbitration"
    CLIENT_ARBITRATION = "client_arbitration"
    DELIVERING = "delivering"
    DRIVER_PICKUP = "driver_pickup"
    SENT_BY_SELLER = "sent_by_seller"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    NOT_ACCEPTED = "not_accepted"


OZON_STATUS_CLASSES = {
    OzonPostingStatus.ACCEPTANCE_IN_PROGRESS: OrderStatusClass.PENDING,
    OzonPostingStatus.AWAITING_REGISTRATION: OrderStatusClass.PENDING,
    OzonPostingStatus.AWAITING_APPROVE: OrderStatusClass.PENDING,
    OzonPostingStatus.AWAITING_PACKAGING: OrderStatusClass.PROCESSING,
    OzonPostingStatus.AWAITING_DELIVER: OrderStatusClass.PROCESSING,
    OzonPostingStatus.ARBITRATION: OrderStatusClass.PROCESSING,
    OzonPostingStatus.CLIENT_ARBITRATION: OrderStatusClass.PROCESSING,
    OzonPostingStatus.DELIVERING: OrderStatusClass.PROCESSING,
    OzonPostingStatus.DRIVER_PICKUP: OrderStatusClass.PROCESSING,
    OzonPostingStatus.SENT_BY_SELLER: OrderStatusClass.PROCESSING,
    OzonPostingStatus.DELIVERED: OrderStatusClass.COMPLETED,
    OzonPostingStatus.CANCELLED: OrderStatusClass.CANCELLED,
    OzonPostingStatus.NOT_ACCEPTED: OrderStatusClass.CANCELLED,
}


class OzonAdapter(MarketplaceAdapter):
    """Normalizes Ozon product info and FBS postings, converting RUB to UZS."""

    marketplace = MARKETPLACE
    status_enum = OzonPostingStatus
    status_classes = OZON_STATUS_CLASSES

    def _product_records(self, payload):
        return as_list(payload.get("items"))

    def _order_records(self, payload):
        return as_list(payload.get("postings"))

    def _normalize_product(self, record, context) -> NormalizedProduct:
        offer_id = record.get("offer_id")
        if not offer_id:
            raise MalformedRecord("Product without offer_id", record)

        stock_fbo = 0
        stock_fbs = 0
        for stock in as_list(as_dict(record.get("stocks")).get("stocks")):
            stock = as_dict(stock)
            present = int(stock.get("present") or 0)
            if stock.get("source") == "fbo":
                stock_fbo += present
            else:
                stock_fbs += present

        primary = record.get("primary_image")
        pictures = [primary] if isinstance(primary, str) else as_list(primary)
        pictures += [url for url in as_list(record.get("images")) if url not in pictures]

        statuses = as_dict(record.get("statuses"))
        availability = statuses.get("status") or ("ARCHIVED" if record.get("is_archived") else "ACTIVE")

        return NormalizedProduct(
            offer_id=str(offer_id),
            name=record.get("name") or "",
            # Ozon sends prices as decimal strings
            price=to_number(record.get("price")),
            shop_sku=None,
            pictures=tuple(str(url) for url in pictures if url),
            availability=str(availability),
            stock_fbo=stock_fbo,
            stock_fbs=stock_fbs,
            category=str(record.get("description_category_id") or ""),
            marketplace=MARKETPLACE,
        )

    def _normalize_order(self, record, context) -> NormalizedOrder:
        posting_number = record.get("posting_number")
        status = record.get("status")
        if not posting_number or not status:
            raise MalformedRecord("Posting without posting_number or status", record)

        products = [as_dict(p) for p in as_list(record.get("products"))]
        currency = first_of(products[0], "currency_code", default=CURRENCY) if products else CURRENCY

        items = build_items(products, MARKETPLACE, lambda p: self._build_item(p, currency))
        items_total = round(sum(item.price * item.count for item in items), 2)
        items_total_uzs = self._to_local(items_total, currency)

        return NormalizedOrder(
            id=str(posting_number),
            status=str(status),
            substatus=record.get("substatus") or None,
            created_at=first_of(record, "in_process_at", "created_at"),
            total=items_total,
            total_uzs=items_total_uzs,
            items_total=items_total,
            items_total_uzs=items_total_uzs,
            delivery_total=0.0,
            delivery_total_uzs=0.0,
            items=items,
            marketplace=MARKETPLACE,
        )

    def _build_item(self, product: Dict[str, Any], currency: str) -> Optional[OrderItem]:
        offer_id = product.get("offer_id")
        if not offer_id:
            return None
        price = to_number(product.get("price"))
        return OrderItem(
            offer_id=str(offer_id),
            offer_name=product.get("name") or "",
            count=int(product.get("quantity") or 1),
            price=price,
            price_uzs=self._to_local(price, currency),
        )


class OzonClient(MarketplaceClient):
    """
    Ozon Seller API client.

    Authenticates with the ``Client-Id`` and ``Api-Key`` headers.
    """

    base_url = "https://api-seller.ozon.ru"

    credentials: OzonCredentials

    @property
    def marketplace_name(self) -> str:
        return MARKETPLACE

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Client-Id": str(self.credentials.client_id),
            "Api-Key": self.credentials.api_key,
        }

    async def fetch_page(self, data_type: DataType, cursor, options: FetchOptions) -> RawPage:
        if data_type is DataType.PRODUCTS:
            return await self._fetch_products(cursor, options)
        return await self._fetch_postings(cursor, options)

    async def test_connection(self) -> Dict[str, Any]:
        """Test Ozon API connection."""
        try:
            await self._request(
                "POST", "/v3/product/list",
                json={"filter": {"visibility": "ALL"}, "last_id": "", "limit": 1}
            )
            return {"success": True, "marketplace": MARKETPLACE}
        except SellerCloudError as e:
            return {
                "success": False,
                "marketplace": MARKETPLACE,
                "error": str(e),
            }

    async def _fetch_products(self, cursor: Optional[str], options: FetchOptions) -> RawPage:
        limit = PRODUCTS_PAGE_SIZE if options.fetch_all else min(options.limit, PRODUCTS_PAGE_SIZE)

        data = as_dict(await self._request(
            "POST", "/v3/product/list",
            json={"filter": {"visibility": "ALL"}, "last_id": cursor or "", "limit": limit}
        ))
        result = as_dict(data.get("result"))
        listed = [as_dict(item) for item in as_list(result.get("items"))]
        product_ids = [item["product_id"] for item in listed if item.get("product_id")]

        items = []
        if product_ids:
            info = as_dict(await self._request(
                "POST", "/v3/product/info/list", json={"product_id": product_ids}
            ))
            items = as_list(info.get("items") or as_dict(info.get("result")).get("items"))

        last_id = result.get("last_id")
        next_cursor = last_id if last_id and len(listed) >= limit else None
        return RawPage({"items": items}, len(listed), next_cursor, result.get("total"))

    async def _fetch_postings(self, cursor: Optional[int], options: FetchOptions) -> RawPage:
        offset = cursor or 0
        limit = POSTINGS_PAGE_SIZE if options.fetch_all else min(options.limit, POSTINGS_PAGE_SIZE)

        until = (
            datetime.combine(options.to_date, dt_time.max, tzinfo=timezone.utc)
            if options.to_date else datetime.now(timezone.utc)
        )
        since = (
            datetime.combine(options.from_date, dt_time.min, tzinfo=timezone.utc)
            if options.from_date else until - timedelta(days=ORDERS_LOOKBACK_DAYS)
        )

        posting_filter: Dict[str, Any] = {
            "since": since.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "to": until.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        if options.status:
            posting_filter["status"] = options.status

        data = as_dict(await self._request(
            "POST", "/v3/posting/fbs/list",
            json={"dir": "ASC", "filter": posting_filter, "limit": limit, "offset": offset}
        ))
        result = as_dict(data.get("result"))
        postings = as_list(result.get("postings"))

        next_cursor = offset + len(postings) if result.get("has_next") and postings else None
        return RawPage({"postings": postings}, len(postings), next_cursor)
