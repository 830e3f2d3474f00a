"""
Yandex Market (Uzbekistan storefront) marketplace integration.

Products come from the business offer-mappings endpoint with stocks merged in
from the campaign stocks endpoint; orders come from the campaign orders
endpoint, which only accepts 30-day windows. Amounts are already in UZS.
"""

import math
import re
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
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
    YandexCredentials,
    as_dict,
    as_list,
    build_items,
    first_of,
    to_number,
)
from sellercloud.utils.exceptions import ConfigurationError, MalformedRecord, SellerCloudError
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)

MARKETPLACE = "yandex"

PRODUCTS_PAGE_SIZE = 100
STOCKS_PAGE_SIZE = 200
MAX_STOCK_PAGES = 20
ORDERS_PAGE_SIZE = 50
ORDERS_CHUNK_DAYS = 30
ORDERS_LOOKBACK_DAYS = 365

# Only these stock types are sellable
SELLABLE_STOCK_TYPES = ("FIT", "AVAILABLE")

_DDMMYYYY_TIME = re.compile(r"^(\d{2})-(\d{2})-(\d{4})\s+(\d{2}):(\d{2}):(\d{2})$")
_DDMMYYYY = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")


class YandexOrderStatus(Enum):
    """Order statuses of the Yandex Market Partner API."""
    PLACING = "PLACING"
    RESERVED = "RESERVED"
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DELIVERY = "DELIVERY"
    PICKUP = "PICKUP"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    PARTIALLY_RETURNED = "PARTIALLY_RETURNED"
    RETURNED = "RETURNED"


YANDEX_STATUS_CLASSES = {
    YandexOrderStatus.PLACING: OrderStatusClass.PENDING,
    YandexOrderStatus.RESERVED: OrderStatusClass.PENDING,
    YandexOrderStatus.UNPAID: OrderStatusClass.PENDING,
    YandexOrderStatus.PENDING: OrderStatusClass.PENDING,
    YandexOrderStatus.PROCESSING: OrderStatusClass.PROCESSING,
    # Handed over to delivery or waiting at a pickup point: paid and counted
    YandexOrderStatus.DELIVERY: OrderStatusClass.COMPLETED,
    YandexOrderStatus.PICKUP: OrderStatusClass.COMPLETED,
    YandexOrderStatus.DELIVERED: OrderStatusClass.COMPLETED,
    YandexOrderStatus.CANCELLED: OrderStatusClass.CANCELLED,
    YandexOrderStatus.PARTIALLY_RETURNED: OrderStatusClass.CANCELLED,
    YandexOrderStatus.RETURNED: OrderStatusClass.CANCELLED,
}


def parse_yandex_date(raw: Optional[str]) -> Optional[str]:
    """
    Convert a Yandex order date to ISO-8601.

    ``DD-MM-YYYY HH:MM:SS`` and ``DD-MM-YYYY`` are converted to UTC ISO
    strings, ISO-like values pass through, anything else yields None.
    """
    if not raw:
        return None

    match = _DDMMYYYY_TIME.match(raw)
    if match:
        day, month, year, hour, minute, second = match.groups()
        return f"{year}-{month}-{day}T{hour}:{minute}:{second}Z"

    if "T" in raw or re.match(r"^\d{4}-", raw):
        return raw

    match = _DDMMYYYY.match(raw)
    if match:
        day, month, year = match.groups()
        return f"{year}-{month}-{day}T00:00:00Z"

    logger.debug(f"Unrecognized Yandex date format: {raw}")
    return None


class YandexAdapter(MarketplaceAdapter):
    """Normalizes Yandex offer-mapping and order pages. Prices are UZS."""

    marketplace = MARKETPLACE
    status_enum = YandexOrderStatus
    status_classes = YANDEX_STATUS_CLASSES

    def _product_records(self, payload):
        return as_list(payload.get("offerMappings"))

    def _order_records(self, payload):
        return as_list(payload.get("orders"))

    def _page_context(self, payload) -> Dict[str, tuple]:
        """Stock map ``offer_id -> (fbo, fbs)`` built from the stocks payload."""
        seller_warehouses = set(as_list(payload.get("sellerWarehouseIds")))
        stock_map: Dict[str, tuple] = {}

        for warehouse in as_list(payload.get("stocks")):
            warehouse = as_dict(warehouse)
            # Without a warehouse list every warehouse is treated as the seller's
            is_fbs = not seller_warehouses or warehouse.get("warehouseId") in seller_warehouses

            for offer in as_list(warehouse.get("offers")):
                offer = as_dict(offer)
                offer_id = offer.get("offerId")
                if not offer_id:
                    continue
                count = sum(
                    int(stock.get("count") or 0)
                    for stock in as_list(offer.get("stocks"))
                    if isinstance(stock, dict) and stock.get("type") in SELLABLE_STOCK_TYPES
                )
                fbo, fbs = stock_map.get(offer_id, (0, 0))
                stock_map[offer_id] = (fbo, fbs + count) if is_fbs else (fbo + count, fbs)

        return stock_map

    def _normalize_product(self, record, context) -> NormalizedProduct:
        offer = as_dict(record.get("offer"))
        mapping = as_dict(record.get("mapping"))
        awaiting = as_dict(record.get("awaitingModerationMapping"))

        offer_id = first_of(offer, "offerId", "shopSku")
        if not offer_id:
            raise MalformedRecord("Offer mapping without offerId", record)

        price = (
            as_dict(offer.get("basicPrice")).get("value")
            or (offer["price"].get("value") if isinstance(offer.get("price"), dict) else offer.get("price"))
            or as_dict(mapping.get("price")).get("value")
            or 0
        )

        availability = (
            mapping.get("status")
            or awaiting.get("cardStatus")
            or offer.get("cardStatus")
            or ("ARCHIVED" if offer.get("archived") else "ACTIVE")
        )

        category = offer.get("category")
        if isinstance(category, dict):
            category = category.get("name")
        category = mapping.get("marketCategoryName") or mapping.get("categoryName") or category or ""

        pictures = as_list(offer.get("pictures")) or as_list(offer.get("urls")) or as_list(mapping.get("pictures"))
        stock_fbo, stock_fbs = (context or {}).get(offer_id, (0, 0))

        return NormalizedProduct(
            offer_id=str(offer_id),
            name=first_of(offer, "name", default="") or first_of(mapping, "marketSkuName", "marketModelName", default=""),
            price=to_number(price),
            shop_sku=offer.get("shopSku") or None,
            pictures=tuple(str(p) for p in pictures if p),
            availability=str(availability),
            stock_fbo=stock_fbo,
            stock_fbs=stock_fbs,
            category=str(category),
            marketplace=MARKETPLACE,
        )

    def _normalize_order(self, record, context) -> NormalizedOrder:
        order_id = record.get("id")
        status = record.get("status")
        if order_id is None or not status:
            raise MalformedRecord("Order without id or status", record)

        items_total = to_number(first_of(record, "buyerItemsTotal", "itemsTotal", default=0))
        delivery_total = to_number(record.get("deliveryTotal"))
        total = to_number(
            first_of(record, "buyerTotal", "buyerItemsTotalBeforeDiscount", default=0)
        ) or items_total + delivery_total

        items = build_items(as_list(record.get("items")), MARKETPLACE, self._build_item)

        return NormalizedOrder(
            id=order_id,
            status=str(status),
            substatus=record.get("substatus"),
            created_at=parse_yandex_date(first_of(record, "creationDate", "createdAt")),
            total=total,
            items_total=items_total,
            delivery_total=delivery_total,
            items=items,
            marketplace=MARKETPLACE,
        )

    @staticmethod
    def _build_item(item: Dict[str, Any]) -> Optional[OrderItem]:
        offer_id = item.get("offerId")
        if not offer_id:
            return None
        return OrderItem(
            offer_id=str(offer_id),
            offer_name=item.get("offerName") or "",
            count=int(item.get("count") or 1),
            price=to_number(first_of(item, "buyerPrice", "price", default=0)),
        )


@dataclass(frozen=True)
class _OrdersCursor:
    window_start: date
    chunk_end: date
    page: int = 1


class YandexClient(MarketplaceClient):
    """
    Yandex Market Partner API client.

    Authenticates with the ``Api-Key`` header. Product pages follow
    ``nextPageToken``; order pages walk the requested window backwards in
    30-day chunks, each paged by page number.
    """

    base_url = "https://api.partner.market.yandex.ru"

    def __init__(self, credentials: YandexCredentials, http_client, timeout: float = 30.0):
        super().__init__(credentials, http_client, timeout)
        self._business_id: Optional[str] = credentials.business_id
        self._seller_warehouse_ids: Optional[List[Any]] = None

    @property
    def marketplace_name(self) -> str:
        return MARKETPLACE

    def _auth_headers(self) -> Dict[str, str]:
        return {"Api-Key": self.credentials.api_key}

    async def fetch_page(self, data_type: DataType, cursor, options: FetchOptions) -> RawPage:
        if data_type is DataType.PRODUCTS:
            return await self._fetch_products(cursor, options)
        return await self._fetch_orders(cursor, options)

    async def test_connection(self) -> Dict[str, Any]:
        """Test Yandex API connection."""
        try:
            data = as_dict(await self._request("GET", f"/campaigns/{self.credentials.campaign_id}"))
            campaign = as_dict(data.get("campaign"))
            return {
                "success": True,
                "marketplace": MARKETPLACE,
                "campaign_id": campaign.get("id"),
                "store_name": campaign.get("domain"),
            }
        except SellerCloudError as e:
            return {
                "success": False,
                "marketplace": MARKETPLACE,
                "error": str(e),
            }

    async def _get_business_id(self) -> str:
        if self._business_id:
            return self._business_id

        if not self.credentials.campaign_id:
            raise ConfigurationError("Yandex connection needs a campaign_id or business_id")

        data = as_dict(await self._request("GET", f"/campaigns/{self.credentials.campaign_id}"))
        business_id = as_dict(as_dict(data.get("campaign")).get("business")).get("id")
        if not business_id:
            raise ConfigurationError(
                "Could not resolve Yandex business id",
                {"campaign_id": self.credentials.campaign_id}
            )

        self._business_id = str(business_id)
        logger.info(f"Resolved Yandex business {self._business_id} from campaign {self.credentials.campaign_id}")
        return self._business_id

    async def _fetch_products(self, cursor: Optional[str], options: FetchOptions) -> RawPage:
        business_id = await self._get_business_id()
        limit = PRODUCTS_PAGE_SIZE if options.fetch_all else min(options.limit, PRODUCTS_PAGE_SIZE)

        params: Dict[str, Any] = {"limit": limit}
        if cursor:
            params["page_token"] = cursor

        data = as_dict(await self._request(
            "POST", f"/v2/businesses/{business_id}/offer-mappings", params=params, json={}
        ))
        result = as_dict(data.get("result"))
        mappings = as_list(result.get("offerMappings"))
        paging = as_dict(result.get("paging"))

        next_token = paging.get("nextPageToken")
        if next_token and next_token == cursor:
            logger.warning("Yandex returned the same page token twice, stopping pagination")
            next_token = None

        payload: Dict[str, Any] = {"offerMappings": mappings, "stocks": [], "sellerWarehouseIds": []}
        if mappings and self.credentials.campaign_id:
            offer_ids = [
                as_dict(entry.get("offer")).get("offerId")
                for entry in mappings if isinstance(entry, dict)
            ]
            payload["sellerWarehouseIds"] = await self._get_seller_warehouse_ids()
            payload["stocks"] = await self._fetch_stocks([oid for oid in offer_ids if oid])

        return RawPage(payload, len(mappings), next_token or None, paging.get("total"))

    async def _get_seller_warehouse_ids(self) -> List[Any]:
        """Seller's own (FBS) warehouses, fetched once per client."""
        if self._seller_warehouse_ids is None:
            data = as_dict(await self._request("GET", f"/campaigns/{self.credentials.campaign_id}/warehouses"))
            warehouses = as_list(as_dict(data.get("result")).get("warehouses") or data.get("warehouses"))
            self._seller_warehouse_ids = [wh["id"] for wh in warehouses if isinstance(wh, dict) and wh.get("id")]
            logger.debug(f"Yandex seller warehouses (FBS): {self._seller_warehouse_ids}")
        return self._seller_warehouse_ids

    async def _fetch_stocks(self, offer_ids: List[str]) -> List[Dict[str, Any]]:
        warehouses: List[Dict[str, Any]] = []
        page_token = None

        for _ in range(MAX_STOCK_PAGES):
            params: Dict[str, Any] = {"limit": STOCKS_PAGE_SIZE}
            if page_token:
                params["page_token"] = page_token

            data = as_dict(await self._request(
                "POST",
                f"/campaigns/{self.credentials.campaign_id}/offers/stocks",
                params=params,
                json={"offerIds": offer_ids},
            ))
            result = as_dict(data.get("result"))
            warehouses.extend(as_list(result.get("warehouses")))

            page_token = as_dict(result.get("paging")).get("nextPageToken")
            if not page_token:
                break

        return warehouses

    async def _fetch_orders(self, cursor: Optional[_OrdersCursor], options: FetchOptions) -> RawPage:
        if cursor is None:
            window_end = options.to_date or datetime.now(timezone.utc).date()
            window_start = options.from_date or window_end - timedelta(days=ORDERS_LOOKBACK_DAYS)
            cursor = _OrdersCursor(window_start, window_end)

        page_size = ORDERS_PAGE_SIZE if options.fetch_all else min(options.limit, ORDERS_PAGE_SIZE)

        # Empty chunks are skipped so that an empty page always means the end
        while True:
            chunk_start = max(cursor.chunk_end - timedelta(days=ORDERS_CHUNK_DAYS), cursor.window_start)
            params: Dict[str, Any] = {
                "fromDate": chunk_start.isoformat(),
                "toDate": cursor.chunk_end.isoformat(),
                "page": cursor.page,
                "pageSize": page_size,
            }
            if options.status:
                params["status"] = options.status

            logger.debug(f"Yandex orders {chunk_start}..{cursor.chunk_end} page {cursor.page}")
            data = as_dict(await self._request(
                "GET", f"/campaigns/{self.credentials.campaign_id}/orders", params=params
            ))
            orders = as_list(data.get("orders"))
            pager = as_dict(data.get("pager") or data.get("paging"))
            pages_count = pager.get("pagesCount") or math.ceil((pager.get("total") or 0) / page_size)

            next_chunk = None
            if chunk_start > cursor.window_start:
                next_chunk = _OrdersCursor(cursor.window_start, chunk_start - timedelta(days=1))

            if orders:
                if cursor.page < pages_count and len(orders) >= page_size:
                    next_cursor = replace(cursor, page=cursor.page + 1)
                else:
                    next_cursor = next_chunk
                return RawPage({"orders": orders}, len(orders), next_cursor)

            if next_chunk is None:
                return RawPage({"orders": []}, 0, None)
            cursor = next_chunk
