"""
Data models for SellerCloud.

Defines the normalized product and order records every marketplace adapter
produces, the unified order status classes and the single currency accessor
used by every revenue computation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class OrderStatusClass(Enum):
    """Unified order status buckets used by analytics."""
    COMPLETED = "completed"
    PENDING = "pending"
    PROCESSING = "processing"
    CANCELLED = "cancelled"  # includes returned


class DataType(Enum):
    """Kind of records fetched from a marketplace."""
    PRODUCTS = "products"
    ORDERS = "orders"


@dataclass(frozen=True)
class NormalizedProduct:
    """
    Marketplace-neutral product listing.

    ``offer_id`` is the stable key of a listing within one marketplace and user;
    only stock and price are expected to change between syncs. ``availability``
    keeps the marketplace's own status string and is not unified.
    """

    offer_id: str
    name: str = ""
    price: float = 0.0  # marketplace native currency
    shop_sku: Optional[str] = None
    pictures: Tuple[str, ...] = ()
    availability: str = ""
    stock_fbo: int = 0  # marketplace warehouses
    stock_fbs: int = 0  # seller warehouses
    category: str = ""
    marketplace: str = ""

    def __post_init__(self):
        if not self.offer_id:
            raise ValueError("offer_id cannot be empty")
        if self.stock_fbo < 0 or self.stock_fbs < 0:
            raise ValueError("Stock quantity cannot be negative")

    @property
    def stock_total(self) -> int:
        return self.stock_fbo + self.stock_fbs

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "offer_id": self.offer_id,
            "name": self.name,
            "price": self.price,
            "shop_sku": self.shop_sku,
            "pictures": list(self.pictures),
            "availability": self.availability,
            "stock_fbo": self.stock_fbo,
            "stock_fbs": self.stock_fbs,
            "category": self.category,
            "marketplace": self.marketplace,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedProduct":
        """Create a product from its dictionary representation."""
        return cls(
            offer_id=data["offer_id"],
            name=data.get("name", ""),
            price=float(data.get("price", 0.0)),
            shop_sku=data.get("shop_sku"),
            pictures=tuple(data.get("pictures") or ()),
            availability=data.get("availability", ""),
            stock_fbo=int(data.get("stock_fbo", 0)),
            stock_fbs=int(data.get("stock_fbs", 0)),
            category=data.get("category", ""),
            marketplace=data.get("marketplace", ""),
        )


@dataclass(frozen=True)
class OrderItem:
    """One line of an order."""

    offer_id: str
    offer_name: str = ""
    count: int = 1
    price: float = 0.0
    price_uzs: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offer_id": self.offer_id,
            "offer_name": self.offer_name,
            "count": self.count,
            "price": self.price,
            "price_uzs": self.price_uzs,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrderItem":
        return cls(
            offer_id=data["offer_id"],
            offer_name=data.get("offer_name", ""),
            count=int(data.get("count", 1)),
            price=float(data.get("price", 0.0)),
            price_uzs=data.get("price_uzs"),
        )


@dataclass(frozen=True)
class NormalizedOrder:
    """
    Marketplace-neutral order.

    ``status`` is the marketplace's own status string; use
    ``sellercloud.marketplaces.factory.classify_order`` to bucket it. The
    ``*_uzs`` amounts are ``None`` when the marketplace already reports in the
    local currency.
    """

    id: Union[int, str]
    status: str
    created_at: Optional[str] = None  # ISO-8601
    total: float = 0.0
    total_uzs: Optional[float] = None
    items_total: float = 0.0
    items_total_uzs: Optional[float] = None
    delivery_total: float = 0.0
    delivery_total_uzs: Optional[float] = None
    items: Tuple[OrderItem, ...] = field(default_factory=tuple)
    marketplace: str = ""
    substatus: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "status": self.status,
            "created_at": self.created_at,
            "total": self.total,
            "total_uzs": self.total_uzs,
            "items_total": self.items_total,
            "items_total_uzs": self.items_total_uzs,
            "delivery_total": self.delivery_total,
            "delivery_total_uzs": self.delivery_total_uzs,
            "items": [item.to_dict() for item in self.items],
            "marketplace": self.marketplace,
            "substatus": self.substatus,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NormalizedOrder":
        """Create an order from its dictionary representation."""
        return cls(
            id=data["id"],
            status=data["status"],
            created_at=data.get("created_at"),
            total=float(data.get("total", 0.0)),
            total_uzs=data.get("total_uzs"),
            items_total=float(data.get("items_total", 0.0)),
            items_total_uzs=data.get("items_total_uzs"),
            delivery_total=float(data.get("delivery_total", 0.0)),
            delivery_total_uzs=data.get("delivery_total_uzs"),
            items=tuple(OrderItem.from_dict(item) for item in data.get("items") or ()),
            marketplace=data.get("marketplace", ""),
            substatus=data.get("substatus"),
        )


def amount_in_local_currency(order: NormalizedOrder) -> float:
    """Order total in the local currency: ``total_uzs`` when set, else ``total``."""
    if order.total_uzs is not None:
        return order.total_uzs
    return order.total


def item_amount_in_local_currency(item: OrderItem) -> float:
    """Unit price of an order line in the local currency."""
    if item.price_uzs is not None:
        return item.price_uzs
    return item.price
