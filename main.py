import logging
import math
import os
import re
import secrets
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import EmailStr, Field, ValidationError
from pymongo import ReturnDocument
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import create_document, db, ensure_indexes, get_documents, next_sequence
from order_status import (
    ORDER_STATUS_NOTICES,
    PAYMENT_STATUS_NOTICES,
    InvalidTransition,
    check_order_transition,
    check_payment_transition,
    status_notice,
)
from passwords import generate_secure_password, generate_tracking_token, validate_password_strength
from schemas import (
    ORDER_STATUSES,
    WISHLIST_LIMIT,
    ActivityLog,
    Address,
    Banner,
    BannerPosition,
    CamelModel,
    CartItem,
    CartItemVariant,
    Category,
    ChangeSet,
    ChatConversation,
    ChatMessage,
    Notification,
    NotificationType,
    Order,
    OrderItem,
    PaymentStatus,
    OrderStatus,
    Product,
    ProductVariant,
    TaxRate,
    User,
    WishlistItem,
    to_naive_utc,
    utcnow,
)
from security import (
    Principal,
    TokenResponse,
    create_access_token,
    get_current_admin,
    get_current_principal,
    get_optional_principal,
    hash_password,
    verify_password,
)

# ----------------------------------------------------------------------------
# App, Config and Logging
# ----------------------------------------------------------------------------

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join("public", "uploads"))
CURRENCY = os.getenv("CURRENCY", "BDT")
SEED_ON_STARTUP = os.getenv("SEED_ON_STARTUP", "1").lower() in ("1", "true", "yes")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@ekomart.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "Admin12345")

DEFAULT_TAX_RATE = 0.08
FREE_SHIPPING_THRESHOLD = 50.0
FLAT_SHIPPING = 10.0

ALLOWED_UPLOAD_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}
MAX_UPLOAD_SIZE = 5 * 1024 * 1024  # 5MB

structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, LOG_LEVEL, logging.INFO)),
)
logger = structlog.get_logger(__name__)

app = FastAPI(title="Ekomart API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------------------------------------------------------------
# Error envelope
# ----------------------------------------------------------------------------

def _error_fields(errors) -> List[Dict[str, str]]:
    out = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        out.append({"field": ".".join(loc), "message": err.get("msg", "")})
    return out


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation error", "errors": _error_fields(exc.errors())},
    )


@app.exception_handler(ValidationError)
async def schema_validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation error", "errors": _error_fields(exc.errors())},
    )


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=400, content={"success": False, "message": str(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error", method=request.method, path=request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

def oid_str(oid) -> str:
    return str(oid) if isinstance(oid, ObjectId) else oid


def parse_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def doc_to_public(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = oid_str(doc.pop("_id"))
    # hide sensitive fields
    doc.pop("passwordHash", None)
    return doc


def find_by_id(collection: str, id_str: str, **extra) -> Optional[Dict[str, Any]]:
    oid = parse_object_id(id_str)
    if oid is None:
        return None
    return db[collection].find_one({"_id": oid, **extra})


def build_pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": pages,
        "hasNext": page < pages,
        "hasPrev": page > 1,
    }


def search_regex(term: str) -> Dict[str, str]:
    return {"$regex": re.escape(term), "$options": "i"}


def client_ip(request: Optional[Request]) -> Optional[str]:
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else None)


def create_notification(user_id: str, type: str, title: str, message: str, link: Optional[str] = None) -> str:
    notification = Notification(user_id=user_id, type=type, title=title, message=message, link=link)
    return create_document("notification", notification)


def log_activity(
    principal: Principal,
    action: str,
    entity: str,
    description: str,
    entity_id: Optional[str] = None,
    changes: Optional[ChangeSet] = None,
    request: Optional[Request] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    entry = ActivityLog(
        user_id=principal.id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        description=description[:500],
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent") if request else None,
        changes=changes,
        metadata=metadata,
    )
    return create_document("activitylog", entry)


def merge_validated(model_cls, existing: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Apply a partial update to a stored document and re-validate the whole."""
    merged = {k: v for k, v in existing.items() if k not in ("_id", "createdAt", "updatedAt")}
    merged.update(changes)
    return model_cls.model_validate(merged).model_dump(by_alias=True)


def diff_fields(before: Dict[str, Any], after: Dict[str, Any]) -> ChangeSet:
    keys = [k for k in after if before.get(k) != after.get(k)]
    return ChangeSet(before={k: before.get(k) for k in keys}, after={k: after[k] for k in keys})


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class RegisterRequest(CamelModel):
    name: str
    email: EmailStr
    password: str
    phone: Optional[str] = None


class LoginRequest(CamelModel):
    email: EmailStr
    password: str


class CreateCustomerRequest(CamelModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None


class ProductUpdateRequest(CamelModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    sku: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    compare_price: Optional[float] = None
    category: Optional[str] = None
    stock: Optional[int] = None
    images: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    is_active: Optional[bool] = None
    variants: Optional[List[ProductVariant]] = None


class AddCartRequest(CamelModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    variant: Optional[CartItemVariant] = None


class UpdateCartItemRequest(CamelModel):
    quantity: int = Field(..., ge=1)


class AddWishlistRequest(CamelModel):
    product_id: str = Field(..., min_length=1)


class OrderItemRequest(CamelModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    variant_id: Optional[str] = None


class CreateOrderRequest(CamelModel):
    items: List[OrderItemRequest] = Field(default_factory=list)
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: str = "cod"
    guest_email: Optional[EmailStr] = None
    notes: Optional[str] = None


class OrderUpdateRequest(CamelModel):
    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    force: bool = Field(False, description="Skip the transition table to correct a mistaken status")


class TrackOrderRequest(CamelModel):
    order_number: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    tracking_token: Optional[str] = None


class SendNotificationRequest(CamelModel):
    user_id: str
    type: NotificationType = "system"
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    link: Optional[str] = None


class StartConversationRequest(CamelModel):
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1)
    priority: str = "medium"


class SendMessageRequest(CamelModel):
    message: str = Field(..., min_length=1)
    attachments: List[str] = Field(default_factory=list)


class BannerCreateRequest(CamelModel):
    title: str
    description: Optional[str] = None
    image: str
    mobile_image: Optional[str] = None
    link: Optional[str] = None
    link_text: Optional[str] = None
    position: BannerPosition
    is_active: bool = True
    sort_order: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class BannerUpdateRequest(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    mobile_image: Optional[str] = None
    link: Optional[str] = None
    link_text: Optional[str] = None
    position: Optional[BannerPosition] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ActivityLogRequest(CamelModel):
    action: str
    entity: str
    entity_id: Optional[str] = None
    description: str
    metadata: Optional[Dict[str, Any]] = None


class TaxRateUpdateRequest(CamelModel):
    name: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    rate: Optional[float] = None
    type: Optional[str] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None
    apply_to_shipping: Optional[bool] = None


# ----------------------------------------------------------------------------
# Auth Endpoints
# ----------------------------------------------------------------------------

@app.post("/auth/register", response_model=TokenResponse)
def register(body: RegisterRequest):
    ok, errors = validate_password_strength(body.password)
    if not ok:
        raise HTTPException(status_code=400, detail=errors[0])
    if db["user"].find_one({"email": body.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(
        name=body.name,
        email=body.email,
        phone=body.phone,
        password_hash=hash_password(body.password),
    )
    uid = create_document("user", user)
    create_notification(uid, "account", "Welcome to Ekomart", "Your account has been created.")
    return TokenResponse(access_token=create_access_token({"sub": uid}))


@app.post("/auth/login", response_model=TokenResponse)
def login(body: LoginRequest):
    user = db["user"].find_one({"email": body.email})
    if not user or not user.get("passwordHash") or not verify_password(body.password, user["passwordHash"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("isActive", True):
        raise HTTPException(status_code=401, detail="Account is disabled")
    return TokenResponse(access_token=create_access_token({"sub": str(user["_id"])}))


@app.get("/me")
def me(principal: Principal = Depends(get_current_principal)):
    user = find_by_id("user", principal.id)
    return {"success": True, "data": doc_to_public(user)}


@app.post("/admin/customers", status_code=201)
def admin_create_customer(body: CreateCustomerRequest, request: Request, admin: Principal = Depends(get_current_admin)):
    """Register a walk-in or phone customer; the generated password is only shown once."""
    if db["user"].find_one({"email": body.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    password = generate_secure_password()
    user = User(name=body.name, email=body.email, phone=body.phone, password_hash=hash_password(password))
    uid = create_document("user", user)
    log_activity(admin, "CREATE", "User", f"Created customer {body.email}", entity_id=uid, request=request)
    return {"success": True, "data": {"id": uid, "email": body.email, "password": password}}


# ----------------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------------

PRODUCT_SORTS = {
    "price_asc": ("price", 1),
    "price_desc": ("price", -1),
    "rating_desc": ("rating", -1),
    "newest": ("createdAt", -1),
}


@app.get("/categories")
def list_categories():
    docs = db["category"].find({"isActive": True}).sort([("sortOrder", 1), ("name", 1)])
    return {"success": True, "data": [doc_to_public(d) for d in docs]}


@app.get("/products")
def list_products(
    q: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    sort: Optional[str] = Query(None, description="price_asc|price_desc|rating_desc|newest"),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
):
    query: Dict[str, Any] = {"isActive": True}
    if q:
        query["$or"] = [
            {"name": search_regex(q)},
            {"description": search_regex(q)},
            {"tags": search_regex(q)},
        ]
    if category:
        query["category"] = category

    field, direction = PRODUCT_SORTS.get(sort or "newest", PRODUCT_SORTS["newest"])
    total = db["product"].count_documents(query)
    cursor = db["product"].find(query).sort([(field, direction), ("_id", direction)]).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": [doc_to_public(p) for p in cursor],
        "pagination": build_pagination(page, limit, total),
    }


@app.get("/products/{product_id}")
def get_product(product_id: str):
    doc = find_by_id("product", product_id, isActive=True)
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"success": True, "data": doc_to_public(doc)}


@app.post("/admin/categories", status_code=201)
def admin_create_category(body: Category, request: Request, admin: Principal = Depends(get_current_admin)):
    if db["category"].find_one({"slug": body.slug}):
        raise HTTPException(status_code=400, detail="Category slug already exists")
    cid = create_document("category", body)
    log_activity(admin, "CREATE", "Category", f"Created category {body.name}", entity_id=cid, request=request)
    return {"success": True, "data": {"id": cid}}


@app.post("/admin/products", status_code=201)
def admin_create_product(body: Product, request: Request, admin: Principal = Depends(get_current_admin)):
    pid = create_document("product", body)
    log_activity(admin, "CREATE", "Product", f"Created product {body.name}", entity_id=pid, request=request)
    return {"success": True, "data": {"id": pid}}


@app.put("/admin/products/{product_id}")
def admin_update_product(product_id: str, body: ProductUpdateRequest, request: Request, admin: Principal = Depends(get_current_admin)):
    existing = find_by_id("product", product_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Product not found")
    changes = body.model_dump(by_alias=True, exclude_unset=True)
    updated = merge_validated(Product, existing, changes)
    db["product"].update_one({"_id": existing["_id"]}, {"$set": {**updated, "updatedAt": utcnow()}})
    log_activity(
        admin, "UPDATE", "Product", f"Updated product {updated['name']}",
        entity_id=product_id, changes=diff_fields(existing, updated), request=request,
    )
    return {"success": True, "message": "Product updated successfully", "data": doc_to_public(find_by_id("product", product_id))}


@app.delete("/admin/products/{product_id}")
def admin_delete_product(product_id: str, request: Request, admin: Principal = Depends(get_current_admin)):
    existing = find_by_id("product", product_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Product not found")
    db["product"].delete_one({"_id": existing["_id"]})
    log_activity(admin, "DELETE", "Product", f"Deleted product {existing.get('name')}", entity_id=product_id, request=request)
    return {"success": True, "message": "Product deleted successfully"}


def resolve_product_line(product: Dict[str, Any], variant_id: Optional[str]):
    """Return (price, stock, variant) for a product or one of its variants."""
    if not variant_id:
        return float(product.get("price", 0)), int(product.get("stock", 0)), None
    variant = next((v for v in product.get("variants") or [] if v.get("id") == variant_id), None)
    if not variant:
        raise HTTPException(status_code=404, detail="Selected variant not found")
    if not variant.get("isActive", True):
        raise HTTPException(status_code=400, detail="Selected variant is not available")
    return float(variant.get("price", 0)), int(variant.get("stock", 0)), variant


def line_key(product_id: str, variant_id: Optional[str]) -> str:
    return f"{product_id}:{variant_id or ''}"


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

def get_or_create_cart(user_id: str) -> Dict[str, Any]:
    now = utcnow()
    db["cart"].update_one(
        {"userId": user_id},
        {"$setOnInsert": {"items": [], "createdAt": now, "updatedAt": now}},
        upsert=True,
    )
    return db["cart"].find_one({"userId": user_id})


def cart_response(cart: Dict[str, Any]) -> Dict[str, Any]:
    data = doc_to_public(cart)
    subtotal = round(sum(float(i.get("price", 0)) * int(i.get("quantity", 1)) for i in cart.get("items", [])), 2)
    data["subtotal"] = subtotal
    data["total"] = subtotal
    return data


@app.get("/cart")
def get_cart(principal: Principal = Depends(get_current_principal)):
    return {"success": True, "data": cart_response(get_or_create_cart(principal.id))}


@app.post("/cart")
def add_to_cart(body: AddCartRequest, principal: Principal = Depends(get_current_principal)):
    product = find_by_id("product", body.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    variant_id = body.variant.variant_id if body.variant else None
    price, stock, _ = resolve_product_line(product, variant_id)
    if stock < body.quantity:
        raise HTTPException(status_code=400, detail="Insufficient stock")

    key = line_key(body.product_id, variant_id)
    cart = get_or_create_cart(principal.id)
    existing = next((i for i in cart.get("items", []) if i.get("key") == key), None)
    now = utcnow()

    pushed = False
    if existing is None:
        item = CartItem(
            product=body.product_id,
            quantity=body.quantity,
            price=price,
            variant=body.variant,
            key=key,
        ).model_dump(by_alias=True)
        res = db["cart"].update_one(
            {"_id": cart["_id"], "items.key": {"$ne": key}},
            {"$push": {"items": item}, "$set": {"updatedAt": now}},
        )
        pushed = res.modified_count == 1
    if not pushed:
        current_qty = existing["quantity"] if existing else 0
        if current_qty + body.quantity > stock:
            raise HTTPException(status_code=400, detail="Cannot add more items. Stock limit reached.")
        db["cart"].update_one(
            {"_id": cart["_id"], "items.key": key},
            {"$inc": {"items.$.quantity": body.quantity}, "$set": {"updatedAt": now}},
        )

    return {"success": True, "message": "Item added to cart", "data": cart_response(db["cart"].find_one({"_id": cart["_id"]}))}


@app.patch("/cart/items/{product_id}")
def update_cart_item(
    product_id: str,
    body: UpdateCartItemRequest,
    variant_id: Optional[str] = Query(None, alias="variantId"),
    principal: Principal = Depends(get_current_principal),
):
    product = find_by_id("product", product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    _, stock, _ = resolve_product_line(product, variant_id)
    if stock < body.quantity:
        raise HTTPException(status_code=400, detail="Insufficient stock")
    res = db["cart"].update_one(
        {"userId": principal.id, "items.key": line_key(product_id, variant_id)},
        {"$set": {"items.$.quantity": body.quantity, "updatedAt": utcnow()}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    return {"success": True, "message": "Quantity updated", "data": cart_response(db["cart"].find_one({"userId": principal.id}))}


@app.delete("/cart/items/{product_id}")
def remove_cart_item(
    product_id: str,
    variant_id: Optional[str] = Query(None, alias="variantId"),
    principal: Principal = Depends(get_current_principal),
):
    key = line_key(product_id, variant_id)
    res = db["cart"].update_one(
        {"userId": principal.id, "items.key": key},
        {"$pull": {"items": {"key": key}}, "$set": {"updatedAt": utcnow()}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    return {"success": True, "message": "Item removed from cart", "data": cart_response(db["cart"].find_one({"userId": principal.id}))}


@app.delete("/cart")
def clear_cart(principal: Principal = Depends(get_current_principal)):
    db["cart"].update_one({"userId": principal.id}, {"$set": {"items": [], "updatedAt": utcnow()}})
    return {"success": True, "message": "Cart cleared successfully"}


# ----------------------------------------------------------------------------
# Wishlist
# ----------------------------------------------------------------------------

def get_or_create_wishlist(user_id: str) -> Dict[str, Any]:
    now = utcnow()
    db["wishlist"].update_one(
        {"userId": user_id},
        {"$setOnInsert": {"items": [], "createdAt": now, "updatedAt": now}},
        upsert=True,
    )
    return db["wishlist"].find_one({"userId": user_id})


def _wishlist_rejection(wishlist: Dict[str, Any], product_id: str) -> Optional[str]:
    items = wishlist.get("items", [])
    if any(i.get("product") == product_id for i in items):
        return "Already in wishlist"
    if len(items) >= WISHLIST_LIMIT:
        return f"Wishlist cannot exceed {WISHLIST_LIMIT} items"
    return None


@app.get("/wishlist")
def get_wishlist(principal: Principal = Depends(get_current_principal)):
    return {"success": True, "data": doc_to_public(get_or_create_wishlist(principal.id))}


@app.post("/wishlist")
def add_to_wishlist(body: AddWishlistRequest, principal: Principal = Depends(get_current_principal)):
    if not find_by_id("product", body.product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    wishlist = get_or_create_wishlist(principal.id)
    rejection = _wishlist_rejection(wishlist, body.product_id)
    if rejection:
        raise HTTPException(status_code=400, detail=rejection)

    # the filter re-checks both rules so a concurrent add cannot slip past them
    now = utcnow()
    res = db["wishlist"].update_one(
        {
            "_id": wishlist["_id"],
            "items.product": {"$ne": body.product_id},
            f"items.{WISHLIST_LIMIT - 1}": {"$exists": False},
        },
        {"$push": {"items": WishlistItem(product=body.product_id, added_at=now).model_dump(by_alias=True)}, "$set": {"updatedAt": now}},
    )
    wishlist = db["wishlist"].find_one({"_id": wishlist["_id"]})
    if res.modified_count == 0:
        raise HTTPException(status_code=400, detail=_wishlist_rejection(wishlist, body.product_id) or "Wishlist was modified, try again")
    return {"success": True, "message": "Added to wishlist", "data": doc_to_public(wishlist)}


@app.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, principal: Principal = Depends(get_current_principal)):
    res = db["wishlist"].update_one(
        {"userId": principal.id, "items.product": product_id},
        {"$pull": {"items": {"product": product_id}}, "$set": {"updatedAt": utcnow()}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Item not found in wishlist")
    return {"success": True, "message": "Removed from wishlist", "data": doc_to_public(db["wishlist"].find_one({"userId": principal.id}))}


@app.delete("/wishlist")
def clear_wishlist(principal: Principal = Depends(get_current_principal)):
    db["wishlist"].update_one({"userId": principal.id}, {"$set": {"items": [], "updatedAt": utcnow()}})
    return {"success": True, "message": "Wishlist cleared"}


# ----------------------------------------------------------------------------
# Tax
# ----------------------------------------------------------------------------

def find_tax_rate(country: Optional[str], state: Optional[str] = None, zip_code: Optional[str] = None) -> Optional[TaxRate]:
    """Highest-priority active rate for the address, most specific on ties."""
    if not country:
        return None
    state = state.strip().upper() if state else None
    candidates = [
        rate for rate in get_documents("taxrate", {"country": country.strip().upper(), "isActive": True})
        if (not rate.get("state") or rate["state"] == state) and (not rate.get("zipCode") or rate["zipCode"] == zip_code)
    ]
    if not candidates:
        return None
    best = max(candidates, key=lambda r: (r.get("priority", 0), bool(r.get("state")) + bool(r.get("zipCode"))))
    return TaxRate.model_validate(best)


def compute_tax(subtotal: float, shipping: float, address: Address) -> float:
    rate = find_tax_rate(address.country, address.state, address.zip_code)
    if rate is None:
        return round(subtotal * DEFAULT_TAX_RATE, 2)
    base = subtotal + shipping if rate.apply_to_shipping else subtotal
    return rate.calculate_tax(base)


@app.get("/tax/calculate")
def calculate_tax(
    amount: float = Query(..., ge=0),
    country: str = Query(..., min_length=1),
    state: Optional[str] = Query(None),
    zip_code: Optional[str] = Query(None, alias="zipCode"),
):
    rate = find_tax_rate(country, state, zip_code)
    if rate is None:
        return {"success": True, "data": {"rate": None, "tax": round(amount * DEFAULT_TAX_RATE, 2)}}
    return {"success": True, "data": {"rate": rate.model_dump(by_alias=True), "tax": rate.calculate_tax(amount)}}


@app.get("/admin/tax-rates")
def admin_list_tax_rates(admin: Principal = Depends(get_current_admin)):
    docs = db["taxrate"].find({}).sort([("country", 1), ("priority", -1)])
    return {"success": True, "data": [doc_to_public(d) for d in docs]}


@app.post("/admin/tax-rates", status_code=201)
def admin_create_tax_rate(body: TaxRate, request: Request, admin: Principal = Depends(get_current_admin)):
    tid = create_document("taxrate", body)
    log_activity(admin, "CREATE", "Settings", f"Created tax rate {body.name}", entity_id=tid, request=request)
    return {"success": True, "data": {"id": tid}}


@app.put("/admin/tax-rates/{rate_id}")
def admin_update_tax_rate(rate_id: str, body: TaxRateUpdateRequest, request: Request, admin: Principal = Depends(get_current_admin)):
    existing = find_by_id("taxrate", rate_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Tax rate not found")
    updated = merge_validated(TaxRate, existing, body.model_dump(by_alias=True, exclude_unset=True))
    db["taxrate"].update_one({"_id": existing["_id"]}, {"$set": {**updated, "updatedAt": utcnow()}})
    log_activity(
        admin, "UPDATE", "Settings", f"Updated tax rate {updated['name']}",
        entity_id=rate_id, changes=diff_fields(existing, updated), request=request,
    )
    return {"success": True, "data": doc_to_public(find_by_id("taxrate", rate_id))}


@app.delete("/admin/tax-rates/{rate_id}")
def admin_delete_tax_rate(rate_id: str, request: Request, admin: Principal = Depends(get_current_admin)):
    existing = find_by_id("taxrate", rate_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Tax rate not found")
    db["taxrate"].delete_one({"_id": existing["_id"]})
    log_activity(admin, "DELETE", "Settings", f"Deleted tax rate {existing.get('name')}", entity_id=rate_id, request=request)
    return {"success": True, "message": "Tax rate deleted successfully"}


# ----------------------------------------------------------------------------
# Orders (Checkout & Tracking)
# ----------------------------------------------------------------------------

PUBLIC_ORDER_FIELDS = (
    "orderNumber", "items", "subtotal", "tax", "shipping", "discount", "total", "currency",
    "paymentMethod", "orderStatus", "paymentStatus", "shippingAddress", "billingAddress",
    "trackingNumber", "shippedAt", "deliveredAt", "createdAt", "updatedAt",
)


def order_filter(base: Dict[str, Any], search: str, status: str, payment_status: Optional[str] = None) -> Dict[str, Any]:
    if status != "all" and status not in ORDER_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status '{status}'")
    query = dict(base)
    if search:
        query["$or"] = [
            {"orderNumber": search_regex(search)},
            {"items.name": search_regex(search)},
        ]
    if status != "all":
        query["orderStatus"] = status
    if payment_status:
        query["paymentStatus"] = payment_status
    return query


def paginated_orders(query: Dict[str, Any], page: int, limit: int) -> Dict[str, Any]:
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort([("createdAt", -1), ("_id", -1)]).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": [doc_to_public(o) for o in cursor],
        "pagination": build_pagination(page, limit, total),
    }


def order_lines_from_cart(cart: Dict[str, Any]) -> List[Dict[str, Any]]:
    lines = []
    for item in cart.get("items", []):
        product = find_by_id("product", item["product"])
        if not product:
            raise HTTPException(status_code=400, detail="Product in cart no longer exists")
        variant = item.get("variant") or None
        lines.append({
            "product": item["product"],
            "variant_id": (variant or {}).get("variantId"),
            "name": product.get("name", ""),
            "sku": (variant or {}).get("sku") or product.get("sku") or "N/A",
            "price": float(item["price"]),
            "quantity": int(item["quantity"]),
            "variant": variant,
        })
    return lines


def order_lines_from_request(items: List[OrderItemRequest]) -> List[Dict[str, Any]]:
    lines = []
    for item in items:
        product = find_by_id("product", item.product_id)
        if not product or not product.get("isActive", True):
            raise HTTPException(status_code=404, detail=f"Product not found: {item.product_id}")
        price, stock, variant = resolve_product_line(product, item.variant_id)
        if stock < item.quantity:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product.get('name')}")
        lines.append({
            "product": item.product_id,
            "variant_id": item.variant_id,
            "name": product.get("name", ""),
            "sku": (variant or {}).get("sku") or product.get("sku") or "N/A",
            "price": price,
            "quantity": item.quantity,
            "variant": {"variantId": variant["id"], "name": variant.get("name"), "sku": variant.get("sku")} if variant else None,
        })
    return lines


def _stock_update(line: Dict[str, Any], qty: int):
    oid = ObjectId(line["product"])
    if line["variant_id"]:
        return (
            {"_id": oid, "variants": {"$elemMatch": {"id": line["variant_id"], "stock": {"$gte": -qty}}}},
            {"$inc": {"variants.$.stock": qty}},
        )
    return {"_id": oid, "stock": {"$gte": -qty}}, {"$inc": {"stock": qty}}


def reserve_stock(lines: List[Dict[str, Any]]):
    """Decrement stock line by line, undoing earlier lines if one runs short."""
    reserved = []
    for line in lines:
        flt, update = _stock_update(line, -line["quantity"])
        if db["product"].update_one(flt, update).modified_count == 0:
            release_stock(reserved)
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {line['name']}")
        reserved.append(line)


def release_stock(lines: List[Dict[str, Any]]):
    for line in lines:
        oid = ObjectId(line["product"])
        if line["variant_id"]:
            db["product"].update_one({"_id": oid, "variants.id": line["variant_id"]}, {"$inc": {"variants.$.stock": line["quantity"]}})
        else:
            db["product"].update_one({"_id": oid}, {"$inc": {"stock": line["quantity"]}})


@app.post("/orders", status_code=201)
def create_order(body: CreateOrderRequest, principal: Optional[Principal] = Depends(get_optional_principal)):
    """Checkout: signed-in shoppers order their cart, guests send the items."""
    lines: List[Dict[str, Any]] = []
    cart = None
    if principal:
        cart = db["cart"].find_one({"userId": principal.id})
        if cart and cart.get("items"):
            lines = order_lines_from_cart(cart)
    if not lines:
        if not body.items:
            raise HTTPException(status_code=400, detail="Cart is empty" if principal else "No items in order")
        lines = order_lines_from_request(body.items)

    items = [
        OrderItem(
            product=line["product"],
            name=line["name"],
            sku=line["sku"],
            price=line["price"],
            quantity=line["quantity"],
            total=round(line["price"] * line["quantity"], 2),
            variant=line["variant"],
        )
        for line in lines
    ]
    subtotal = round(sum(i.total for i in items), 2)
    shipping = 0.0 if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING
    tax = compute_tax(subtotal, shipping, body.shipping_address)
    total = round(subtotal + tax + shipping, 2)

    reserve_stock(lines)

    is_guest = principal is None
    order = Order(
        order_number=f"ORD-{next_sequence('order'):06d}",
        user_id=principal.id if principal else None,
        guest_email=body.guest_email if is_guest else None,
        tracking_token=generate_tracking_token() if is_guest else None,
        items=items,
        shipping_address=body.shipping_address,
        billing_address=body.billing_address,
        payment_method=body.payment_method,
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        total=total,
        currency=CURRENCY,
        notes=body.notes,
    )

    order_id = create_document("order", order)
    logger.info("order_placed", order_id=order_id, order_number=order.order_number, guest=is_guest, total=total)

    if principal:
        if cart:
            db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": [], "updatedAt": utcnow()}})
        create_notification(
            principal.id, "order", "Order placed",
            f"Your order {order.order_number} has been placed.",
            link=f"/dashboard/orders/{order_id}",
        )

    data = {"id": order_id, "orderNumber": order.order_number, "total": total, "orderStatus": order.order_status}
    if is_guest:
        data["trackingToken"] = order.tracking_token
    return {"success": True, "message": "Order placed successfully", "data": data}


@app.get("/orders")
@app.get("/dashboard/orders")
def list_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = Query(""),
    status: str = Query("all"),
    principal: Principal = Depends(get_current_principal),
):
    query = order_filter({"userId": principal.id}, search, status)
    return paginated_orders(query, page, limit)


@app.get("/orders/stats")
@app.get("/dashboard/orders/stats")
def my_order_stats(principal: Principal = Depends(get_current_principal)):
    by_status = {status: 0 for status in ORDER_STATUSES}
    total_spent = 0.0
    pipeline = [
        {"$match": {"userId": principal.id}},
        {"$group": {"_id": "$orderStatus", "count": {"$sum": 1}, "spent": {"$sum": "$total"}}},
    ]
    for row in db["order"].aggregate(pipeline):
        by_status[row["_id"]] = row["count"]
        if row["_id"] != "cancelled":
            total_spent += row["spent"]
    return {
        "success": True,
        "data": {
            "totalOrders": sum(by_status.values()),
            "totalSpent": round(total_spent, 2),
            "ordersByStatus": by_status,
        },
    }


@app.get("/dashboard/orders/{order_id}")
def get_my_order(order_id: str, principal: Principal = Depends(get_current_principal)):
    # another user's order looks exactly like a missing one
    doc = find_by_id("order", order_id, userId=principal.id)
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found or you do not have permission to view it")
    return {"success": True, "data": doc_to_public(doc)}


def public_order_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    data = {"id": str(doc["_id"])}
    data.update({field: doc.get(field) for field in PUBLIC_ORDER_FIELDS})
    data["isGuestOrder"] = not doc.get("userId")
    return data


@app.get("/orders/{order_id}")
def get_public_order(order_id: str):
    """Order lookup for guests and confirmation pages; owner identity is never exposed."""
    if not order_id.strip():
        raise HTTPException(status_code=400, detail="Order ID is required")
    doc = find_by_id("order", order_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "data": public_order_view(doc)}


def order_contact_matches(order: Dict[str, Any], body: TrackOrderRequest) -> bool:
    if body.tracking_token and order.get("trackingToken"):
        if secrets.compare_digest(body.tracking_token, order["trackingToken"]):
            return True

    owner = find_by_id("user", order["userId"]) if order.get("userId") else None
    address = order.get("shippingAddress") or {}
    if body.email:
        emails = {order.get("guestEmail"), address.get("email"), (owner or {}).get("email")}
        if body.email.strip().lower() in {e.lower() for e in emails if e}:
            return True
    if body.phone:
        phones = {address.get("phone"), (owner or {}).get("phone")}
        if body.phone.strip() in {p for p in phones if p}:
            return True
    return False


@app.post("/track-order")
def track_order(body: TrackOrderRequest):
    """Let a shopper follow an order without signing in."""
    if not (body.email or body.phone or body.tracking_token):
        raise HTTPException(status_code=400, detail="Email, phone number or tracking token is required")
    order = db["order"].find_one({"orderNumber": body.order_number.strip()})
    # a wrong contact looks exactly like a wrong order number
    if not order or not order_contact_matches(order, body):
        raise HTTPException(status_code=404, detail="Order not found with the provided information")
    return {"success": True, "data": public_order_view(order)}


# ----------------------------------------------------------------------------
# Admin: Order Management
# ----------------------------------------------------------------------------

@app.get("/admin/orders")
def admin_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = Query(""),
    status: str = Query("all"),
    payment_status: Optional[PaymentStatus] = Query(None, alias="paymentStatus"),
    admin: Principal = Depends(get_current_admin),
):
    return paginated_orders(order_filter({}, search, status, payment_status), page, limit)


@app.get("/admin/orders/{order_id}")
def admin_get_order(order_id: str, admin: Principal = Depends(get_current_admin)):
    doc = find_by_id("order", order_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "data": doc_to_public(doc)}


@app.patch("/admin/orders/{order_id}")
def admin_update_order(order_id: str, body: OrderUpdateRequest, request: Request, admin: Principal = Depends(get_current_admin)):
    current = find_by_id("order", order_id)
    if not current:
        raise HTTPException(status_code=404, detail="Order not found")

    old_status = current.get("orderStatus", "pending")
    old_payment = current.get("paymentStatus", "pending")
    status_changed = check_order_transition(old_status, body.order_status, body.force)
    payment_changed = check_payment_transition(old_payment, body.payment_status, body.force)

    now = utcnow()
    update: Dict[str, Any] = {"updatedAt": now}
    if status_changed:
        update["orderStatus"] = body.order_status
        if body.order_status == "shipped":
            update["shippedAt"] = now
        elif body.order_status == "delivered":
            update["deliveredAt"] = now
        elif body.order_status == "cancelled" and body.cancellation_reason:
            update["cancellationReason"] = body.cancellation_reason
    if payment_changed:
        update["paymentStatus"] = body.payment_status
    if body.tracking_number is not None:
        update["trackingNumber"] = body.tracking_number
    if body.notes is not None:
        update["notes"] = body.notes

    # guarded on the statuses we validated against
    res = db["order"].update_one(
        {"_id": current["_id"], "orderStatus": old_status, "paymentStatus": old_payment},
        {"$set": update},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=409, detail="Order was modified by someone else, reload and try again")

    number = current.get("orderNumber", "")
    owner = current.get("userId")
    link = f"/dashboard/orders/{order_id}"
    if status_changed:
        logger.info("order_status_changed", order_id=order_id, old=old_status, new=body.order_status)
        notice = status_notice(ORDER_STATUS_NOTICES, body.order_status, number)
        if owner and notice:
            create_notification(owner, "order", notice[0], notice[1], link=link)
    if payment_changed:
        logger.info("payment_status_changed", order_id=order_id, old=old_payment, new=body.payment_status)
        notice = status_notice(PAYMENT_STATUS_NOTICES, body.payment_status, number)
        if owner and notice:
            create_notification(owner, "payment", notice[0], notice[1], link=link)

    log_activity(
        admin, "UPDATE", "Order", f"Updated order {number}",
        entity_id=order_id,
        changes=ChangeSet(
            before={"orderStatus": old_status, "paymentStatus": old_payment},
            after={"orderStatus": update.get("orderStatus", old_status), "paymentStatus": update.get("paymentStatus", old_payment)},
        ),
        request=request,
        metadata={"forced": True} if body.force else None,
    )
    return {"success": True, "message": "Order updated successfully", "data": doc_to_public(find_by_id("order", order_id))}


@app.delete("/admin/orders/{order_id}")
def admin_delete_order(order_id: str, request: Request, admin: Principal = Depends(get_current_admin)):
    oid = parse_object_id(order_id)
    doc = db["order"].find_one_and_delete({"_id": oid}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    log_activity(admin, "DELETE", "Order", f"Deleted order {doc.get('orderNumber')}", entity_id=order_id, request=request)
    return {"success": True, "message": "Order deleted successfully"}


# ----------------------------------------------------------------------------
# Notifications
# ----------------------------------------------------------------------------

def unread_count(user_id: str) -> int:
    return db["notification"].count_documents({"userId": user_id, "read": False})


@app.get("/notifications")
def list_notifications(limit: int = Query(50, ge=1, le=200), principal: Principal = Depends(get_current_principal)):
    docs = db["notification"].find({"userId": principal.id}).sort([("createdAt", -1), ("_id", -1)]).limit(limit)
    return {
        "success": True,
        "data": [doc_to_public(n) for n in docs],
        # counted separately so it covers notifications beyond the page
        "unreadCount": unread_count(principal.id),
    }


@app.delete("/notifications")
def delete_all_notifications(principal: Principal = Depends(get_current_principal)):
    res = db["notification"].delete_many({"userId": principal.id})
    return {"success": True, "message": "All notifications deleted successfully", "deletedCount": res.deleted_count}


@app.get("/notifications/unread-count")
def get_unread_count(principal: Principal = Depends(get_current_principal)):
    return {"success": True, "unreadCount": unread_count(principal.id)}


@app.patch("/notifications/mark-all-read")
def mark_all_notifications_read(principal: Principal = Depends(get_current_principal)):
    res = db["notification"].update_many(
        {"userId": principal.id, "read": False},
        {"$set": {"read": True, "updatedAt": utcnow()}},
    )
    return {"success": True, "message": "All notifications marked as read", "modifiedCount": res.modified_count}


@app.patch("/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, principal: Principal = Depends(get_current_principal)):
    oid = parse_object_id(notification_id)
    doc = None
    if oid:
        doc = db["notification"].find_one_and_update(
            {"_id": oid, "userId": principal.id},
            {"$set": {"read": True, "updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    if not doc:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True, "message": "Notification marked as read", "notification": doc_to_public(doc)}


@app.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, principal: Principal = Depends(get_current_principal)):
    oid = parse_object_id(notification_id)
    doc = db["notification"].find_one_and_delete({"_id": oid, "userId": principal.id}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True, "message": "Notification deleted successfully"}


@app.post("/admin/notifications", status_code=201)
def admin_send_notification(body: SendNotificationRequest, request: Request, admin: Principal = Depends(get_current_admin)):
    if not find_by_id("user", body.user_id):
        raise HTTPException(status_code=404, detail="User not found")
    nid = create_notification(body.user_id, body.type, body.title, body.message, body.link)
    log_activity(admin, "SEND", "Notification", f"Sent notification '{body.title}'", entity_id=nid, request=request)
    return {"success": True, "data": {"id": nid}}


# ----------------------------------------------------------------------------
# Chat Support
# ----------------------------------------------------------------------------

def load_conversation(conversation_id: str, principal: Principal) -> Dict[str, Any]:
    conversation = find_by_id("chatconversation", conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if not principal.is_admin and conversation.get("customerId") != principal.id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return conversation


@app.get("/chat/conversations")
def list_conversations(
    status: Optional[str] = Query(None),
    principal: Principal = Depends(get_current_principal),
):
    query: Dict[str, Any] = {} if principal.is_admin else {"customerId": principal.id}
    if status:
        query["status"] = status
    docs = db["chatconversation"].find(query, {"messages": 0}).sort([("lastMessageTime", -1), ("_id", -1)])
    return {"success": True, "data": [doc_to_public(c) for c in docs]}


@app.post("/chat/conversations", status_code=201)
def start_conversation(body: StartConversationRequest, principal: Principal = Depends(get_current_principal)):
    if principal.is_admin:
        raise HTTPException(status_code=403, detail="Only customers can start conversations")
    first = ChatMessage(id=str(ObjectId()), sender="customer", sender_name=principal.name, message=body.message)
    conversation = ChatConversation(
        customer_id=principal.id,
        customer_name=principal.name,
        customer_email=principal.email,
        priority=body.priority,
        subject=body.subject,
        last_message=first.message,
        last_message_time=first.timestamp,
        unread_admin_count=1,
        messages=[first],
    )
    cid = create_document("chatconversation", conversation)
    return {"success": True, "data": doc_to_public(find_by_id("chatconversation", cid))}


@app.get("/chat/conversations/{conversation_id}")
def get_conversation(conversation_id: str, principal: Principal = Depends(get_current_principal)):
    return {"success": True, "data": doc_to_public(load_conversation(conversation_id, principal))}


@app.post("/chat/conversations/{conversation_id}/messages", status_code=201)
def send_message(conversation_id: str, body: SendMessageRequest, principal: Principal = Depends(get_current_principal)):
    conversation = load_conversation(conversation_id, principal)
    sender = "admin" if principal.is_admin else "customer"
    message = ChatMessage(
        id=str(ObjectId()),
        sender=sender,
        sender_name=principal.name,
        message=body.message,
        attachments=body.attachments,
    )
    now = utcnow()
    update: Dict[str, Any] = {
        "$push": {"messages": message.model_dump(by_alias=True)},
        "$set": {"lastMessage": message.message, "lastMessageTime": message.timestamp, "updatedAt": now},
        # the counter belongs to whoever has to read the new message
        "$inc": {"unreadCustomerCount" if sender == "admin" else "unreadAdminCount": 1},
    }
    if sender == "admin" and conversation.get("status") == "pending":
        update["$set"]["status"] = "active"
    db["chatconversation"].update_one({"_id": conversation["_id"]}, update)
    return {"success": True, "data": message.model_dump(by_alias=True)}


@app.post("/chat/conversations/{conversation_id}/mark-read")
def mark_conversation_read(conversation_id: str, principal: Principal = Depends(get_current_principal)):
    conversation = load_conversation(conversation_id, principal)

    # each side only clears messages written by the other side
    other_party = "customer" if principal.is_admin else "admin"
    update: Dict[str, Any] = {"unreadAdminCount" if principal.is_admin else "unreadCustomerCount": 0}
    for index, msg in enumerate(conversation.get("messages", [])):
        if msg.get("sender") == other_party and not msg.get("read"):
            update[f"messages.{index}.read"] = True

    db["chatconversation"].update_one({"_id": conversation["_id"]}, {"$set": update})
    return {"success": True, "message": "Messages marked as read"}


# ----------------------------------------------------------------------------
# Banners
# ----------------------------------------------------------------------------

@app.get("/banners")
def list_banners(
    position: Optional[BannerPosition] = Query(None),
    status: Optional[str] = Query(None, description="active|inactive"),
    live: bool = Query(False, description="Only active banners inside their date window"),
):
    query: Dict[str, Any] = {}
    if position:
        query["position"] = position
    if status:
        query["isActive"] = status == "active"
    if live:
        now = utcnow()
        query["isActive"] = True
        query["$and"] = [
            {"$or": [{"startDate": None}, {"startDate": {"$lte": now}}]},
            {"$or": [{"endDate": None}, {"endDate": {"$gte": now}}]},
        ]
    banners = db["banner"].find(query).sort([("sortOrder", 1), ("createdAt", -1)])

    total = db["banner"].count_documents({})
    active = db["banner"].count_documents({"isActive": True})
    clicks = list(db["banner"].aggregate([{"$group": {"_id": None, "total": {"$sum": "$clicks"}}}]))
    stats = {
        "total": total,
        "active": active,
        "inactive": total - active,
        "hero": db["banner"].count_documents({"position": "hero"}),
        "totalClicks": clicks[0]["total"] if clicks else 0,
    }
    return {"success": True, "data": {"banners": [doc_to_public(b) for b in banners], "stats": stats}}


@app.post("/banners/{banner_id}/click")
def record_banner_click(banner_id: str):
    oid = parse_object_id(banner_id)
    doc = None
    if oid:
        doc = db["banner"].find_one_and_update(
            {"_id": oid},
            {"$inc": {"clicks": 1}},
            return_document=ReturnDocument.AFTER,
        )
    if not doc:
        raise HTTPException(status_code=404, detail="Banner not found")
    return {"success": True, "clicks": doc["clicks"]}


@app.post("/admin/banners", status_code=201)
def admin_create_banner(body: BannerCreateRequest, request: Request, admin: Principal = Depends(get_current_admin)):
    banner = Banner(**body.model_dump(), created_by=admin.id)
    bid = create_document("banner", banner)
    log_activity(admin, "CREATE", "Banner", f"Created banner {banner.title}", entity_id=bid, request=request)
    return {"success": True, "data": doc_to_public(find_by_id("banner", bid))}


@app.put("/admin/banners/{banner_id}")
def admin_update_banner(banner_id: str, body: BannerUpdateRequest, request: Request, admin: Principal = Depends(get_current_admin)):
    existing = find_by_id("banner", banner_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Banner not found")
    changes = body.model_dump(by_alias=True, exclude_unset=True)
    updated = merge_validated(Banner, existing, changes)
    # clicks only move through the click endpoint
    updated.pop("clicks", None)
    db["banner"].update_one({"_id": existing["_id"]}, {"$set": {**updated, "updatedAt": utcnow()}})
    log_activity(
        admin, "UPDATE", "Banner", f"Updated banner {updated['title']}",
        entity_id=banner_id, changes=diff_fields(existing, updated), request=request,
    )
    return {"success": True, "data": doc_to_public(find_by_id("banner", banner_id))}


@app.delete("/admin/banners/{banner_id}")
def admin_delete_banner(banner_id: str, request: Request, admin: Principal = Depends(get_current_admin)):
    oid = parse_object_id(banner_id)
    doc = db["banner"].find_one_and_delete({"_id": oid}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail="Banner not found")
    log_activity(admin, "DELETE", "Banner", f"Deleted banner {doc.get('title')}", entity_id=banner_id, request=request)
    return {"success": True, "message": "Banner deleted successfully"}


# ----------------------------------------------------------------------------
# Activity Logs
# ----------------------------------------------------------------------------

@app.get("/admin/activity-logs")
def admin_list_activity_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    action: Optional[str] = Query(None),
    entity: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    search: Optional[str] = Query(None),
    admin: Principal = Depends(get_current_admin),
):
    query: Dict[str, Any] = {}
    if action:
        query["action"] = action.upper()
    if entity:
        query["entity"] = entity
    if user_id:
        query["userId"] = user_id
    if start_date or end_date:
        query["createdAt"] = {}
        if start_date:
            query["createdAt"]["$gte"] = to_naive_utc(start_date)
        if end_date:
            query["createdAt"]["$lte"] = to_naive_utc(end_date)
    if search:
        query["$or"] = [{"description": search_regex(search)}, {"ipAddress": search_regex(search)}]

    logs = db["activitylog"].find(query).sort([("createdAt", -1), ("_id", -1)]).skip((page - 1) * limit).limit(limit)
    total = db["activitylog"].count_documents(query)

    now = utcnow()
    start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    stats = {
        "total": db["activitylog"].count_documents({}),
        "today": db["activitylog"].count_documents({"createdAt": {"$gte": start_of_today}}),
        "thisWeek": db["activitylog"].count_documents({"createdAt": {"$gte": now - timedelta(days=7)}}),
        "thisMonth": db["activitylog"].count_documents({"createdAt": {"$gte": start_of_today.replace(day=1)}}),
        "byAction": list(db["activitylog"].aggregate([
            {"$group": {"_id": "$action", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ])),
        "byEntity": list(db["activitylog"].aggregate([
            {"$group": {"_id": "$entity", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
            {"$limit": 10},
        ])),
    }
    pagination = build_pagination(page, limit, total)
    return {
        "success": True,
        "data": {
            "logs": [doc_to_public(entry) for entry in logs],
            "pagination": pagination,
            "stats": stats,
        },
    }


@app.get("/admin/activity-logs/{log_id}")
def admin_get_activity_log(log_id: str, admin: Principal = Depends(get_current_admin)):
    doc = find_by_id("activitylog", log_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Activity log not found")
    return {"success": True, "data": doc_to_public(doc)}


@app.post("/activity-logs", status_code=201)
def create_activity_log(body: ActivityLogRequest, request: Request, principal: Principal = Depends(get_current_principal)):
    log_id = log_activity(
        principal, body.action, body.entity, body.description,
        entity_id=body.entity_id, request=request, metadata=body.metadata,
    )
    return {"success": True, "message": "Activity logged successfully", "data": doc_to_public(find_by_id("activitylog", log_id))}


@app.delete("/admin/activity-logs")
def admin_purge_activity_logs(days: int = Query(90, ge=0), admin: Principal = Depends(get_current_admin)):
    cutoff = utcnow() - timedelta(days=days)
    res = db["activitylog"].delete_many({"createdAt": {"$lt": cutoff}})
    logger.info("activity_logs_purged", days=days, deleted=res.deleted_count)
    return {"success": True, "message": f"Deleted {res.deleted_count} logs older than {days} days", "deletedCount": res.deleted_count}


# ----------------------------------------------------------------------------
# Uploads
# ----------------------------------------------------------------------------

async def read_upload(file: UploadFile) -> Tuple[UploadFile, bytes]:
    if file.content_type not in ALLOWED_UPLOAD_TYPES:
        raise HTTPException(status_code=400, detail="Invalid file type. Only images are allowed.")
    content = await file.read()
    if len(content) > MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=400, detail="File size too large. Maximum 5MB allowed.")
    return file, content


def write_uploads(uploads: List[Tuple[UploadFile, bytes]]) -> List[Dict[str, Any]]:
    """Write already validated uploads; a failed write removes the ones written before it."""
    target_dir = Path(UPLOAD_DIR) / "categories"
    written: List[Path] = []
    stored = []
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        for file, content in uploads:
            original = file.filename or ""
            extension = original.rsplit(".", 1)[-1].lower() if "." in original else file.content_type.split("/")[-1]
            filename = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}.{extension}"
            path = target_dir / filename
            path.write_bytes(content)
            written.append(path)
            stored.append({"filename": filename, "url": f"/uploads/categories/{filename}", "size": len(content), "type": file.content_type})
    except OSError:
        logger.exception("upload_write_failed", written=len(written))
        for path in written:
            path.unlink(missing_ok=True)
        raise HTTPException(status_code=500, detail="Failed to upload file")

    for entry in stored:
        logger.info("upload_stored", filename=entry["filename"], size=entry["size"])
    return stored


@app.post("/upload")
async def upload_file(file: Optional[UploadFile] = File(None)):
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    data = write_uploads([await read_upload(file)])[0]
    return {"success": True, "message": "File uploaded successfully", "data": data}


@app.post("/upload/multiple")
async def upload_files(files: List[UploadFile] = File(...)):
    # every file is checked before any is written
    uploads = [await read_upload(f) for f in files]
    stored = write_uploads(uploads)
    return {"success": True, "message": f"{len(stored)} files uploaded successfully", "data": stored}


# ----------------------------------------------------------------------------
# Health and Test
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Ekomart API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available" if db is None else "✅ Connected",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "collections": [],
    }
    try:
        if db is not None:
            response["collections"] = db.list_collection_names()
    except Exception as e:
        response["database"] = f"⚠️ Error: {str(e)[:100]}"
    return response


# ----------------------------------------------------------------------------
# Seed Data (idempotent) and Startup Hook
# ----------------------------------------------------------------------------

SAMPLE_CATEGORIES = [
    {"name": "Fruits & Vegetables", "slug": "fruits-vegetables", "sort_order": 1},
    {"name": "Dairy & Eggs", "slug": "dairy-eggs", "sort_order": 2},
    {"name": "Bakery", "slug": "bakery", "sort_order": 3},
    {"name": "Beverages", "slug": "beverages", "sort_order": 4},
]

SAMPLE_PRODUCTS = [
    {
        "name": "Organic Bananas",
        "slug": "organic-bananas",
        "sku": "FV-BAN-001",
        "description": "Sweet, ripe organic bananas, sold per dozen.",
        "price": 1.99,
        "category": "fruits-vegetables",
        "stock": 150,
        "tags": ["fruit", "organic"],
        "rating": 4.6,
    },
    {
        "name": "Fresh Whole Milk 1L",
        "slug": "fresh-whole-milk-1l",
        "sku": "DE-MLK-001",
        "description": "Pasteurised full-cream milk from local farms.",
        "price": 1.25,
        "category": "dairy-eggs",
        "stock": 80,
        "tags": ["milk", "dairy"],
        "rating": 4.4,
    },
    {
        "name": "Sourdough Loaf",
        "slug": "sourdough-loaf",
        "sku": "BK-SRD-001",
        "description": "Slow-fermented sourdough baked every morning.",
        "price": 4.5,
        "category": "bakery",
        "stock": 40,
        "tags": ["bread"],
        "rating": 4.8,
    },
    {
        "name": "Cold Brew Coffee",
        "slug": "cold-brew-coffee",
        "sku": "BV-CBC-001",
        "description": "Ready-to-drink cold brew, 330ml.",
        "price": 3.25,
        "category": "beverages",
        "stock": 60,
        "tags": ["coffee", "drink"],
        "rating": 4.3,
        "variants": [
            {"id": "cbc-330", "name": "330ml", "sku": "BV-CBC-330", "price": 3.25, "stock": 60},
            {"id": "cbc-1l", "name": "1L", "sku": "BV-CBC-1L", "price": 7.5, "stock": 25},
        ],
    },
]


def seed_data():
    if not db["user"].find_one({"email": ADMIN_EMAIL}):
        admin = User(name="Admin", email=ADMIN_EMAIL, password_hash=hash_password(ADMIN_PASSWORD), role="admin")
        create_document("user", admin)

    if db["category"].count_documents({}) == 0:
        for c in SAMPLE_CATEGORIES:
            create_document("category", Category(**c))

    if db["product"].count_documents({}) == 0:
        for p in SAMPLE_PRODUCTS:
            create_document("product", Product(**p))


@app.post("/admin/seed")
def trigger_seed(admin: Principal = Depends(get_current_admin)):
    seed_data()
    return {"success": True, "seeded": True}


@app.on_event("startup")
def on_startup():
    if db is None:
        logger.warning("database_not_configured")
        return
    ensure_indexes()
    if SEED_ON_STARTUP:
        try:
            seed_data()
        except Exception:
            logger.exception("seed_failed")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
