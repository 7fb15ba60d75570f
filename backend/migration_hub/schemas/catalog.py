"""
Catalog schemas — the platform's internal shape for imported entities.

Every imported entity keeps the ``source_id`` it had on the source platform;
together with (store_id, platform, entity_type) that is its idempotency key.
Version: 1.0.0
"""
from dataclasses import dataclass, field
from typing import Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, Field


class ImportedImage(BaseModel):
    source_url: str
    alt_text: Optional[str] = None
    position: int = 0


class ImportedVariant(BaseModel):
    source_id: str
    title: str
    sku: Optional[str] = None
    price: float
    compare_at_price: Optional[float] = None
    quantity: int = 0
    options: Dict[str, str] = Field(default_factory=dict)
    weight_grams: Optional[float] = None


class ImportedProduct(BaseModel):
    source_id: str
    title: str
    description: str = ""
    price: float
    compare_at_price: Optional[float] = None
    sku: Optional[str] = None
    quantity: int = 0
    track_quantity: bool = True
    weight_grams: Optional[float] = None
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    images: List[ImportedImage] = Field(default_factory=list)
    variants: List[ImportedVariant] = Field(default_factory=list)
    status: Literal["active", "draft"] = "draft"


class ImportedCollection(BaseModel):
    source_id: str
    title: str
    description: Optional[str] = None
    product_source_ids: List[str] = Field(default_factory=list)


class ImportedAddress(BaseModel):
    full_name: str
    phone: str = ""
    address_line1: str
    address_line2: Optional[str] = None
    city: str = ""
    state: str = ""
    pincode: str = ""
    country: str = ""
    is_default: bool = False


class ImportedCustomer(BaseModel):
    source_id: str
    email: str
    full_name: str
    phone: Optional[str] = None
    total_orders: int = 0
    total_spent: float = 0.0
    tags: List[str] = Field(default_factory=list)
    addresses: List[ImportedAddress] = Field(default_factory=list)


class ImportedCoupon(BaseModel):
    source_id: str
    code: str
    description: Optional[str] = None
    discount_type: Literal["percentage", "fixed_amount", "free_shipping"]
    discount_value: float = 0.0
    minimum_order_value: Optional[float] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    starts_at: Optional[str] = None
    expires_at: Optional[str] = None
    active: bool = True


class ImportedOrderItem(BaseModel):
    source_product_id: Optional[str] = None
    title: str
    quantity: int
    unit_price: float
    total_price: float


class ImportedOrder(BaseModel):
    source_id: str
    order_number: str
    customer_source_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: str = "Unknown"
    customer_phone: Optional[str] = None
    shipping_address: Dict[str, Optional[str]] = Field(default_factory=dict)
    subtotal: float = 0.0
    shipping_cost: float = 0.0
    tax_amount: float = 0.0
    discount_amount: float = 0.0
    total_amount: float = 0.0
    payment_method: str = "other"
    payment_status: Literal["pending", "paid", "failed", "refunded"] = "pending"
    order_status: Literal[
        "pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"
    ] = "pending"
    coupon_code: Optional[str] = None
    line_items: List[ImportedOrderItem] = Field(default_factory=list)
    created_at: Optional[str] = None


T = TypeVar("T")


@dataclass
class TransformResult(Generic[T]):
    """Outcome of transforming one source record: an entity or an error, never both."""
    entity: Optional[T] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.entity is not None and self.error is None

    @classmethod
    def failure(cls, message: str, warnings: Optional[List[str]] = None) -> "TransformResult[T]":
        return cls(entity=None, error=message, warnings=list(warnings or []))
