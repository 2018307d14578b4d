"""
Database Schemas for Ekomart

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name by default.

Documents are stored with camelCase keys (the storefront and the admin
back-office both read them as-is), so every model uses a camelCase alias
generator while the Python attributes stay snake_case.

We store:
- User, Category, Product
- Cart, Wishlist (one per user)
- Order
- Notification
- ChatConversation (messages embedded)
- Banner, ActivityLog, TaxRate
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

WISHLIST_LIMIT = 100

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")

OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
NotificationType = Literal["order", "payment", "account", "promotion", "system"]
BannerPosition = Literal["hero", "top", "middle", "bottom", "sidebar"]
Role = Literal["customer", "admin"]

ActivityAction = Literal[
    "LOGIN", "LOGOUT",
    "CREATE", "UPDATE", "DELETE", "VIEW",
    "APPROVE", "REJECT", "ASSIGN",
    "UPLOAD", "DOWNLOAD", "EXPORT",
    "SEND", "RECEIVE",
    "ENABLE", "DISABLE",
]
ActivityEntity = Literal[
    "User", "Product", "Category", "Order", "Review",
    "Coupon", "Refund", "BlogPost", "Banner", "Collection",
    "GiftCard", "Warehouse", "StockTransfer", "EmailCampaign",
    "SupportTicket", "ChatConversation", "Transaction",
    "Settings", "Notification",
]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form MongoDB hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---- Accounts ----

class User(CamelModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")

    # Stored in DB, never returned in public responses
    password_hash: Optional[str] = Field(None, description="Hashed password")

    phone: Optional[str] = Field(None, description="Phone number")
    role: Role = Field("customer", description="customer | admin")
    is_active: bool = Field(True, description="Whether user is active")


# ---- Catalog ----

class Category(CamelModel):
    name: str = Field(..., max_length=100)
    slug: str = Field(..., description="URL slug, unique")
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class ProductVariant(CamelModel):
    id: str = Field(..., description="Variant id, unique within the product")
    name: str
    sku: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    is_active: bool = True
    attributes: Dict[str, str] = Field(default_factory=dict)


class Product(CamelModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., description="Product name")
    slug: str = Field(..., description="URL slug")
    sku: str = Field(..., description="Stock keeping unit")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    compare_price: Optional[float] = Field(None, ge=0, description="Original price shown struck through")
    category: str = Field(..., description="Category slug")
    stock: int = Field(0, ge=0, description="Available inventory")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    tags: List[str] = Field(default_factory=list, description="Search tags")
    is_active: bool = Field(True)
    rating: float = Field(0, ge=0, le=5, description="Average rating 0-5")
    variants: List[ProductVariant] = Field(default_factory=list)


# ---- Cart & Wishlist ----

class CartItemVariant(CamelModel):
    variant_id: Optional[str] = None
    name: Optional[str] = None
    attributes: Optional[Dict[str, str]] = None
    sku: Optional[str] = None


class CartItem(CamelModel):
    product: str = Field(..., description="Product id as string")
    quantity: int = Field(..., ge=1, description="Quantity must be at least 1")
    price: float = Field(..., ge=0, description="Snapshot price when added")
    variant: Optional[CartItemVariant] = None
    key: str = Field(..., description="Product + variant line identity")


class Cart(CamelModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


class WishlistItem(CamelModel):
    product: str
    added_at: datetime = Field(default_factory=utcnow)


class Wishlist(CamelModel):
    user_id: str
    items: List[WishlistItem] = Field(default_factory=list, max_length=WISHLIST_LIMIT)


# ---- Orders ----

class Address(CamelModel):
    name: str
    phone: str
    email: Optional[EmailStr] = None
    address: str
    city: str
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str

    @field_validator("email", "state", "zip_code", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class OrderItem(CamelModel):
    product: Optional[str] = Field(None, description="Product id, empty for custom items")
    name: str
    sku: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    total: float = Field(..., ge=0)
    variant: Optional[CartItemVariant] = None


class Order(CamelModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    order_number: str
    user_id: Optional[str] = Field(None, description="Owner, absent for guest orders")
    guest_email: Optional[EmailStr] = None
    tracking_token: Optional[str] = Field(None, description="Guest order tracking token")
    items: List[OrderItem]
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: str
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "pending"
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    currency: str = "BDT"
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None


# ---- Notifications ----

class Notification(CamelModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    read: bool = False
    link: Optional[str] = None


# ---- Chat ----

class ChatMessage(CamelModel):
    id: str
    sender: Literal["customer", "admin"]
    sender_name: str
    message: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    read: bool = False
    attachments: List[str] = Field(default_factory=list)


class ChatConversation(CamelModel):
    customer_id: str
    customer_name: str
    customer_email: str
    status: Literal["active", "pending", "resolved", "closed"] = "pending"
    priority: Literal["low", "medium", "high"] = "medium"
    subject: str = Field(..., max_length=200)
    last_message: str
    last_message_time: datetime = Field(default_factory=utcnow)
    unread_admin_count: int = Field(0, ge=0)
    unread_customer_count: int = Field(0, ge=0)
    assigned_to: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)


# ---- Content ----

class Banner(CamelModel):
    title: str = Field(..., max_length=200)
    description: Optional[str] = Field(None, max_length=500)
    image: str
    mobile_image: Optional[str] = None
    link: Optional[str] = None
    link_text: Optional[str] = Field(None, max_length=50)
    position: BannerPosition
    is_active: bool = True
    sort_order: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    clicks: int = Field(0, ge=0)
    created_by: str

    @field_validator("start_date", "end_date")
    @classmethod
    def naive_utc(cls, v):
        return to_naive_utc(v)


class ChangeSet(BaseModel):
    before: Optional[Any] = None
    after: Optional[Any] = None


class ActivityLog(CamelModel):
    """
    Activity log collection schema (append-only, expired by a TTL index)
    Collection name: "activitylog"
    """
    user_id: str
    action: ActivityAction
    entity: ActivityEntity
    entity_id: Optional[str] = None
    description: str = Field(..., max_length=500)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    changes: Optional[ChangeSet] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("action", mode="before")
    @classmethod
    def upper_action(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class TaxRate(CamelModel):
    name: str = Field(..., max_length=100)
    country: str
    state: Optional[str] = None
    zip_code: Optional[str] = None
    rate: float = Field(..., ge=0)
    type: Literal["percentage", "fixed"] = "percentage"
    is_active: bool = True
    priority: int = Field(0, ge=0)
    apply_to_shipping: bool = False

    @field_validator("country", "state", mode="before")
    @classmethod
    def upper_region(cls, v):
        if isinstance(v, str):
            v = v.strip().upper()
            return v or None
        return v

    @model_validator(mode="after")
    def check_percentage(self):
        if self.type == "percentage" and self.rate > 100:
            raise ValueError("Percentage rate cannot exceed 100%")
        return self

    def calculate_tax(self, amount: float) -> float:
        if self.type == "percentage":
            return round(amount * self.rate / 100, 2)
        return self.rate
