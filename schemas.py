"""
Database Schemas for the Boutique Storefront

Each Pydantic model corresponds to a document collection.
- Product -> "products"
- Order -> "orders" (keyed by the minted order number)
- Subscriber -> "subscribers"

The order counter lives in "counters" under the "orders" key and has no model.
"""
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, EmailStr


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Cancelled and failed orders have handed their stock back."""
        return self in (OrderStatus.FAILED, OrderStatus.CANCELLED)

    @property
    def holds_stock(self) -> bool:
        """The reservation is still in the building (not yet shipped out)."""
        return self in (OrderStatus.PENDING, OrderStatus.PAID)


# Legal moves for the default (non-override) status path.
TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.SHIPPED, OrderStatus.FAILED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.FAILED: set(),
    OrderStatus.CANCELLED: set(),
}


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(0, description="Units on hand; negative means back-ordered")
    description: Optional[str] = Field(None, description="Product description")
    collection: Optional[str] = Field(None, description="Collection, e.g. 'Blankets'")
    material: Optional[str] = None
    care: Optional[str] = None
    size: Optional[str] = None
    badge: Optional[str] = Field(None, description="Merchandising badge like 'New'")
    image: Optional[str] = Field(None, description="Primary image URL")
    additional_images: List[str] = Field(default_factory=list, description="Gallery image URLs")


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = None
    description: Optional[str] = None
    collection: Optional[str] = None
    material: Optional[str] = None
    care: Optional[str] = None
    size: Optional[str] = None
    badge: Optional[str] = None
    image: Optional[str] = None
    additional_images: Optional[List[str]] = None


class CartLine(BaseModel):
    product_id: str = Field(..., description="Reference to a product id")
    quantity: int = Field(..., ge=1)


class Customer(BaseModel):
    customer_name: str = Field(..., description="Customer full name")
    customer_email: EmailStr = Field(..., description="Email used for order lookup")
    customer_phone: str = Field("", description="Phone number")
    shipping_address: str = Field(..., description="Single-line shipping address")
    is_gift: bool = False
    gift_to: Optional[str] = None
    gift_from: Optional[str] = None


class OrderDraft(Customer):
    items: List[CartLine]


class OrderItem(BaseModel):
    product_id: str = Field(..., description="Reference to product id")
    name: str = Field(..., description="Product name at time of order")
    price: float = Field(..., ge=0, description="Unit price at time of order")
    quantity: int = Field(..., ge=1)
    collection: Optional[str] = None
    image: Optional[str] = None


class Order(Customer):
    id: str = Field(..., description="Sequential order number, starts at 1000")
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(0, ge=0)
    total: float = Field(..., ge=0, description="Fixed at creation: subtotal + shipping")
    status: OrderStatus = OrderStatus.PENDING
    date: str = Field(..., description="ISO-8601 creation timestamp")

    @property
    def units(self) -> int:
        return sum(item.quantity for item in self.items)


class Subscriber(BaseModel):
    email: EmailStr
    date: str
