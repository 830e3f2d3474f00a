"""
Wildberries marketplace integration.

Products come from the Content API card list (cursor paging by
``updatedAt``/``nmID``). Orders are reconstructed from the Statistics API:
order rows first, then sales rows, which supersede the order row sharing the
same ``srid``. Amounts are RUB and converted to UZS.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
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
    RawPage,
    WildberriesCredentials,
    as_dict,
    as_list,
    first_of,
    to_number,
)
from sellercloud.utils.exceptions import MalformedRecord, SellerCloudError
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)

MARKETPLACE = "wildberries"
CURRENCY = "RUB"

CONTENT_API_URL = "https://content-api.wildberries.ru"
STATISTICS_API_URL = "https://statistics-api.wildberries.ru"

CARDS_PAGE_SIZE = 100
# Statistics API returns up to this many rows per call
STATISTICS_PAGE_ROWS = 80000
ORDERS_LOOKBACK_DAYS = 30

PHASE_ORDERS = "orders"
PHASE_SALES = "sales"


class WildberriesOrderStatus(Enum):
    """Order states derived from Statistics API rows."""
    ORDERED = "ORDERED"
    SOLD = "SOLD"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


WILDBERRIES_STATUS_CLASSES = {
    WildberriesOrderStatus.ORDERED: OrderStatusClass.PROCESSING,
    WildberriesOrderStatus.SOLD: OrderStatusClass.COMPLETED,
    WildberriesOrderStatus.CANCELLED: OrderStatusClass.CANCELLED,
    WildberriesOrderStatus.RETURNED: OrderStatusClass.CANCELLED,
}


class WildberriesAdapter(MarketplaceAdapter):
    """Normalizes Wildberries cards and statistics rows, converting RUB to UZS."""

    marketplace = MARKETPLACE
    status_enum = WildberriesOrderStatus
    status_classes = WILDBERRIES_STATUS_CLASSES

    def _product_records(self, payload):
        return as_list(payload.get("cards"))

    def _order_records(self, payload):
        return as_list(payload.get("rows"))

    def _page_context(self, payload):
        return payload.get("phase", PHASE_ORDERS)

    def _normalize_product(self, record, context) -> NormalizedProduct:
        nm_id = record.get("nmID")
        offer_id = record.get("vendorCode") or (str(nm_id) if nm_id else None)
        if not offer_id:
            raise MalformedRecord("Card without vendorCode or nmID", record)

        sizes = [as_dict(size) for size in as_list(record.get("sizes"))]
        stock = sum(
            int(as_dict(st).get("qty") or 0)
            for size in sizes
            for st in as_list(size.get("stocks"))
        )
        # Card prices are in kopeks
        price = to_number(sizes[0].get("price")) / 100 if sizes else 0.0

        pictures = []
        for photo in as_list(record.get("photos")):
            url = first_of(as_dict(photo), "big", "c246x328")
            if url:
                pictures.append(url)

        return NormalizedProduct(
            offer_id=str(offer_id),
            name=first_of(record, "title", "subjectName", default=""),
            price=price,
            shop_sku=record.get("vendorCode") or None,
            pictures=tuple(pictures),
            availability="ACTIVE",
            stock_fbo=stock,
            stock_fbs=0,
            category=record.get("subjectName") or "",
            marketplace=MARKETPLACE,
        )

    def _normalize_order(self, record, context) -> NormalizedOrder:
        order_id = first_of(record, "srid", "odid", "orderID")
        if not order_id:
            raise MalformedRecord("Statistics row without srid", record)

        if context == PHASE_SALES:
            sale_id = str(record.get("saleID") or "")
            status = WildberriesOrderStatus.RETURNED if sale_id.startswith("R") else WildberriesOrderStatus.SOLD
        else:
            status = WildberriesOrderStatus.CANCELLED if record.get("isCancel") else WildberriesOrderStatus.ORDERED

        amount = to_number(first_of(record, "totalPrice", "finishedPrice", "priceWithDisc", default=0))
        amount_uzs = self._to_local(amount, CURRENCY)

        offer_id = record.get("supplierArticle") or (str(record["nmId"]) if record.get("nmId") else None)
        items = ()
        if offer_id:
            items = (OrderItem(
                offer_id=str(offer_id),
                offer_name=first_of(record, "subject", "category", default=""),
                count=1,
                price=amount,
                price_uzs=amount_uzs,
            ),)

        return NormalizedOrder(
            id=str(order_id),
            status=status.value,
            created_at=first_of(record, "date", "lastChangeDate"),
            total=amount,
            total_uzs=amount_uzs,
            items_total=amount,
            items_total_uzs=amount_uzs,
            delivery_total=0.0,
            delivery_total_uzs=0.0,
            items=items,
            marketplace=MARKETPLACE,
        )


@dataclass(frozen=True)
class _StatisticsCursor:
    phase: str
    date_from: str
    window_start: str


class WildberriesClient(MarketplaceClient):
    """
    Wildberries API client.

    Uses the API key as the ``Authorization`` header on the content and
    statistics hosts.
    """

    base_url = CONTENT_API_URL

    credentials: WildberriesCredentials

    @property
    def marketplace_name(self) -> str:
        return MARKETPLACE

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": self.credentials.api_key}

    async def fetch_page(self, data_type: DataType, cursor, options: FetchOptions) -> RawPage:
        if data_type is DataType.PRODUCTS:
            return await self._fetch_cards(cursor, options)
        return await self._fetch_statistics(cursor, options)

    async def test_connection(self) -> Dict[str, Any]:
        """Test Wildberries API connection."""
        try:
            await self._request("GET", f"{CONTENT_API_URL}/ping")
            return {"success": True, "marketplace": MARKETPLACE}
        except SellerCloudError as e:
            return {
                "success": False,
                "marketplace": MARKETPLACE,
                "error": str(e),
            }

    async def _fetch_cards(self, cursor: Optional[Dict[str, Any]], options: FetchOptions) -> RawPage:
        limit = CARDS_PAGE_SIZE if options.fetch_all else min(options.limit, CARDS_PAGE_SIZE)

        page_cursor: Dict[str, Any] = {"limit": limit}
        if cursor:
            page_cursor.update(cursor)

        body = {"settings": {"cursor": page_cursor, "filter": {"withPhoto": -1}}}
        data = as_dict(await self._request("POST", "/content/v2/get/cards/list", json=body))
        cards = as_list(data.get("cards"))

        response_cursor = as_dict(data.get("cursor"))
        next_cursor = None
        if len(cards) >= limit and response_cursor.get("updatedAt") and response_cursor.get("nmID"):
            next_cursor = {"updatedAt": response_cursor["updatedAt"], "nmID": response_cursor["nmID"]}

        return RawPage({"cards": cards}, len(cards), next_cursor)

    async def _fetch_statistics(self, cursor: Optional[_StatisticsCursor], options: FetchOptions) -> RawPage:
        if cursor is None:
            if options.from_date:
                start = datetime.combine(options.from_date, datetime.min.time())
            else:
                start = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=ORDERS_LOOKBACK_DAYS)
            window_start = start.strftime("%Y-%m-%dT%H:%M:%S")
            cursor = _StatisticsCursor(PHASE_ORDERS, window_start, window_start)

        while True:
            url = f"{STATISTICS_API_URL}/api/v1/supplier/{cursor.phase}"
            rows = as_list(await self._request("GET", url, params={"dateFrom": cursor.date_from, "flag": 0}))
            rows = [row for row in rows if isinstance(row, dict)]
            logger.debug(f"Wildberries {cursor.phase} from {cursor.date_from}: {len(rows)} rows")

            if cursor.phase == PHASE_ORDERS:
                sales_cursor = _StatisticsCursor(PHASE_SALES, cursor.window_start, cursor.window_start)
            else:
                sales_cursor = None

            if not options.fetch_all:
                rows = rows[:options.limit]
                return RawPage({"phase": cursor.phase, "rows": rows}, len(rows), None)

            if rows:
                if len(rows) >= STATISTICS_PAGE_ROWS and rows[-1].get("lastChangeDate"):
                    next_cursor = _StatisticsCursor(cursor.phase, rows[-1]["lastChangeDate"], cursor.window_start)
                else:
                    next_cursor = sales_cursor
                return RawPage({"phase": cursor.phase, "rows": rows}, len(rows), next_cursor)

            if sales_cursor is None:
                return RawPage({"phase": cursor.phase, "rows": []}, 0, None)
            cursor = sales_cursor
