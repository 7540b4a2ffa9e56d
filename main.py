import os
import logging
import random
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional

import structlog
from fastapi import FastAPI, Depends, Request, Response, Body
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyCookie
from pydantic import BaseModel, EmailStr, Field
from jose import jwt, JWTError
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError
from bson import ObjectId
from bson.errors import InvalidId

from dotenv import load_dotenv
load_dotenv()

from database import db, create_document, get_documents, ensure_indexes
from schemas import User, Product, Cart, Order, OrderItem, OrderStatus, ShippingMethod, ORDER_TRANSITIONS
from errors import StoreError, ValidationError, Unauthenticated, Forbidden, NotFound, Conflict
from catalog import (
    DEFAULT_PAGE_SIZE, SEARCH_PREVIEW_LIMIT, RANDOM_SAMPLE_SIZE, RELATED_SAMPLE_SIZE,
    serialize_doc, name_filter, paginate, sample, size_rules,
)
from payments import MercadoPagoGateway, PaymentOrchestrator
from shipping import PlacesClient

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
TOKEN_EXPIRE_DAYS = int(os.getenv("TOKEN_EXPIRE_DAYS", "7"))
TOKEN_COOKIE = "token"
MP_ACCESS_TOKEN = os.getenv("MP_ACCESS_TOKEN")
MP_API_URL = os.getenv("MP_API_URL", "https://api.mercadopago.com")
MP_NOTIFICATION_URL = os.getenv("MP_NOTIFICATION_URL")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "ARS")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY")
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))
PROVIDER_MAX_CONCURRENCY = int(os.getenv("PROVIDER_MAX_CONCURRENCY", "8"))
ENABLE_SEED = os.getenv("ENABLE_SEED", "false").lower() in ("1", "true", "yes")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CART_WRITE_ATTEMPTS = 3

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, LOG_LEVEL.upper(), logging.INFO)),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)
logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
cookie_scheme = APIKeyCookie(name=TOKEN_COOKIE, auto_error=False)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        try:
            ensure_indexes(db)
        except Exception as exc:
            logger.warning("ensure_indexes_failed", error=str(exc))
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in FRONTEND_URL.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(method=request.method, path=request.url.path)
    return await call_next(request)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error")
    return JSONResponse(status_code=500, content={"detail": "Server error"})


# Utilities
def create_access_token(data: dict, expires_days: int = TOKEN_EXPIRE_DAYS):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(days=expires_days)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def to_object_id(value: str, message: str = "Not found") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(message)


def get_current_user(token: Optional[str] = Depends(cookie_scheme)) -> dict:
    if not token:
        raise Unauthenticated("Access denied, no token")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise Forbidden("Invalid token")
        oid = ObjectId(user_id)
    except (JWTError, InvalidId, TypeError):
        raise Forbidden("Invalid token")

    user = db["user"].find_one({"_id": oid})
    if not user:
        raise Unauthenticated("User not found")
    user["_id"] = str(user["_id"])
    return user


def require_admin(user: dict = Depends(get_current_user)):
    if user.get("role") != "admin":
        raise Forbidden("Admin only")
    return user


@lru_cache
def get_payment_gateway() -> MercadoPagoGateway:
    return MercadoPagoGateway(MP_ACCESS_TOKEN, api_url=MP_API_URL, timeout=PROVIDER_TIMEOUT_SECONDS,
                              max_concurrency=PROVIDER_MAX_CONCURRENCY)


def get_payment_orchestrator(gateway=Depends(get_payment_gateway)) -> PaymentOrchestrator:
    return PaymentOrchestrator(gateway, db["order"], db["product"], FRONTEND_URL.split(",")[0].strip(),
                               currency=PAYMENT_CURRENCY, notification_url=MP_NOTIFICATION_URL)


@lru_cache
def get_places_client() -> PlacesClient:
    return PlacesClient(GOOGLE_MAPS_API_KEY, timeout=PROVIDER_TIMEOUT_SECONDS)


# Health checks
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:100]}"
    return response


# Auth models
class RegisterPayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class ProfilePayload(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr


def public_user(doc: dict) -> dict:
    return {"_id": str(doc["_id"]), "name": doc.get("name"), "email": doc.get("email"), "role": doc.get("role", "customer")}


@app.post("/auth/register", status_code=201)
def register(payload: RegisterPayload):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise ValidationError("User already exists")
    user = User(name=payload.name, email=email, password_hash=hash_password(payload.password))
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise ValidationError("User already exists")
    logger.info("user_registered", user_id=user_id)
    return {"message": "User registered", "user": {"_id": user_id, "name": user.name, "email": user.email}}


@app.post("/auth/login")
def login(payload: LoginPayload, response: Response):
    doc = db["user"].find_one({"email": payload.email.lower()})
    if not doc or not verify_password(payload.password, doc.get("password_hash", "")):
        raise ValidationError("Invalid credentials")
    token = create_access_token({"sub": str(doc["_id"]), "role": doc.get("role", "customer")})
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        max_age=TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=True,
        samesite="none",
    )
    return {"message": "Login successful", "name": doc.get("name")}


@app.post("/auth/logout")
def logout(response: Response):
    response.delete_cookie(TOKEN_COOKIE, httponly=True, secure=True, samesite="none")
    return {"message": "Logged out"}


@app.get("/auth/me")
def me(user: dict = Depends(get_current_user)):
    return {"_id": user["_id"], "name": user.get("name"), "email": user.get("email")}


@app.get("/auth/user")
def current_profile(user: dict = Depends(get_current_user)):
    return public_user(user)


@app.put("/auth/update")
def update_profile(payload: ProfilePayload, user: dict = Depends(get_current_user)):
    email = payload.email.lower()
    oid = ObjectId(user["_id"])
    if db["user"].find_one({"email": email, "_id": {"$ne": oid}}):
        raise ValidationError("Email already in use")
    try:
        db["user"].update_one(
            {"_id": oid},
            {"$set": {"name": payload.name, "email": email, "updated_at": datetime.now(timezone.utc)}},
        )
    except DuplicateKeyError:
        raise ValidationError("Email already in use")
    return {"message": "Profile updated", "name": payload.name, "email": email}


# Products
class PricePayload(BaseModel):
    price: float = Field(..., ge=0)


def find_product(product_id: str) -> dict:
    doc = db["product"].find_one({"_id": to_object_id(product_id, "Product not found")})
    if not doc:
        raise NotFound("Product not found")
    return doc


@app.post("/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(payload: Product):
    product_id = create_document("product", payload)
    return serialize_doc(db["product"].find_one({"_id": ObjectId(product_id)}))


@app.get("/products")
def list_products():
    return [serialize_doc(p) for p in get_documents("product")]


@app.get("/products/search")
def search_products(query: Optional[str] = None):
    if not query:
        return []
    return [serialize_doc(p) for p in db["product"].find(name_filter(query)).limit(SEARCH_PREVIEW_LIMIT)]


@app.get("/products/search/all")
def search_products_paginated(query: Optional[str] = None, page: int = 1, limit: int = DEFAULT_PAGE_SIZE):
    return paginate(db["product"], name_filter(query), page, limit, sort=[("_id", 1)])


@app.get("/products/paginated")
def list_products_paginated(page: int = 1):
    return paginate(db["product"], {}, page, DEFAULT_PAGE_SIZE, sort=[("_id", 1)])


@app.get("/products/random")
def random_products():
    return sample(db["product"], RANDOM_SAMPLE_SIZE)


@app.put("/products/update-prices", dependencies=[Depends(require_admin)])
def update_prices(payload: PricePayload):
    res = db["product"].update_many({}, {"$set": {"price": payload.price}})
    logger.info("prices_overwritten", price=payload.price, modified=res.modified_count)
    return {"message": "Prices updated", "updatedCount": res.modified_count}


@app.put("/products/update-sizes", dependencies=[Depends(require_admin)])
def update_sizes():
    updated = 0
    for product in db["product"].find():
        rules = size_rules(product.get("category"), product.get("name"))
        res = db["product"].update_one({"_id": product["_id"]}, {"$set": rules})
        updated += res.modified_count
    return {"message": "Sizes updated", "updatedCount": updated}


@app.get("/products/category/{category}")
def products_by_category(category: str, page: int = 1, limit: int = DEFAULT_PAGE_SIZE):
    return paginate(db["product"], {"category": category}, page, limit, sort=[("_id", 1)])


@app.get("/products/category/{category}/subcategory/{sub_category}")
def products_by_subcategory(category: str, sub_category: str, page: int = 1, limit: int = DEFAULT_PAGE_SIZE):
    return paginate(db["product"], {"category": category, "subCategory": sub_category}, page, limit, sort=[("_id", 1)])


@app.get("/products/{product_id}")
def get_product(product_id: str):
    return serialize_doc(find_product(product_id))


@app.get("/products/{product_id}/related")
def related_products(product_id: str):
    current = find_product(product_id)
    return sample(db["product"], RELATED_SAMPLE_SIZE, match={"category": current.get("category"), "_id": {"$ne": current["_id"]}})


# Cart
class CartAddPayload(BaseModel):
    productId: str
    size: Optional[str] = None
    quantity: int = Field(default=1, ge=1)


class CartQuantityPayload(BaseModel):
    productId: str
    size: Optional[str] = None
    quantity: int


class CartLinePayload(BaseModel):
    productId: str
    size: Optional[str] = None


def get_or_create_cart(user_id: str) -> dict:
    cart = db["cart"].find_one({"user": user_id})
    if cart:
        return cart
    try:
        create_document("cart", Cart(user=user_id))
    except DuplicateKeyError:
        pass  # created by a concurrent request
    return db["cart"].find_one({"user": user_id})


def line_index(items: List[dict], product_id: str, size: Optional[str]) -> int:
    for i, item in enumerate(items):
        if str(item.get("product")) == product_id and item.get("size") == size:
            return i
    return -1


def mutate_cart(user_id: str, mutate: Callable[[List[dict]], List[dict]], **extra: Any) -> dict:
    """Apply `mutate` to the cart's items with a compare-and-swap on `version`."""
    for _ in range(CART_WRITE_ATTEMPTS):
        cart = get_or_create_cart(user_id)
        items = mutate([dict(item) for item in cart.get("items", [])])
        version = cart.get("version")
        match = {"_id": cart["_id"], "version": version} if version is not None else {"_id": cart["_id"], "version": {"$exists": False}}
        new_version = (version or 0) + 1
        changes = {"items": items, "version": new_version, "updated_at": datetime.now(timezone.utc), **extra}
        res = db["cart"].update_one(match, {"$set": changes})
        if res.matched_count == 1:
            cart.update(changes)
            return cart
        logger.info("cart_version_conflict", user_id=user_id, version=version)
    raise Conflict("Cart was modified concurrently, please retry")


def populate_cart(cart: dict) -> dict:
    ids = [ObjectId(str(item["product"])) for item in cart.get("items", []) if ObjectId.is_valid(str(item["product"]))]
    products = {str(p["_id"]): serialize_doc(p) for p in db["product"].find({"_id": {"$in": ids}})}
    result = serialize_doc(cart)
    for item in result.get("items", []):
        item["product"] = products.get(str(item["product"]))
    return result


@app.get("/cart")
def get_cart(user: dict = Depends(get_current_user)):
    return populate_cart(get_or_create_cart(user["_id"]))


@app.post("/cart/add")
def add_to_cart(payload: CartAddPayload, user: dict = Depends(get_current_user)):
    product = find_product(payload.productId)
    if product.get("hasSize"):
        if not payload.size:
            raise ValidationError("size required")
        sizes = product.get("availableSizes") or []
        if sizes and payload.size not in sizes:
            raise ValidationError(f"Size {payload.size} is not available")
    size = payload.size if product.get("hasSize") else None
    product_id = str(product["_id"])

    def add(items: List[dict]) -> List[dict]:
        idx = line_index(items, product_id, size)
        if idx >= 0:
            items[idx]["quantity"] = items[idx].get("quantity", 1) + payload.quantity
        else:
            items.append({"product": product_id, "quantity": payload.quantity, "size": size})
        return items

    return serialize_doc(mutate_cart(user["_id"], add))


@app.post("/cart/update")
def update_cart_line(payload: CartQuantityPayload, user: dict = Depends(get_current_user)):
    def update(items: List[dict]) -> List[dict]:
        idx = line_index(items, payload.productId, payload.size)
        if idx < 0:
            raise NotFound("Product not found in cart")
        if payload.quantity <= 0:
            items.pop(idx)
        else:
            items[idx]["quantity"] = payload.quantity
        return items

    return serialize_doc(mutate_cart(user["_id"], update))


@app.post("/cart/remove")
def remove_cart_line(payload: CartLinePayload, user: dict = Depends(get_current_user)):
    def remove(items: List[dict]) -> List[dict]:
        return [i for i in items if not (str(i.get("product")) == payload.productId and i.get("size") == payload.size)]

    return serialize_doc(mutate_cart(user["_id"], remove))


@app.post("/cart/increase")
def increase_cart_line(payload: CartLinePayload, user: dict = Depends(get_current_user)):
    def increase(items: List[dict]) -> List[dict]:
        idx = line_index(items, payload.productId, payload.size)
        if idx < 0:
            raise NotFound("Product not found in cart")
        items[idx]["quantity"] = items[idx].get("quantity", 1) + 1
        return items

    return serialize_doc(mutate_cart(user["_id"], increase))


@app.post("/cart/decrease")
def decrease_cart_line(payload: CartLinePayload, user: dict = Depends(get_current_user)):
    def decrease(items: List[dict]) -> List[dict]:
        idx = line_index(items, payload.productId, payload.size)
        if idx < 0:
            return items
        if items[idx].get("quantity", 1) > 1:
            items[idx]["quantity"] -= 1
        else:
            items.pop(idx)
        return items

    return serialize_doc(mutate_cart(user["_id"], decrease))


@app.post("/cart/clear")
def clear_cart(user: dict = Depends(get_current_user)):
    mutate_cart(user["_id"], lambda items: [], paid=False)
    return {"message": "Cart cleared"}


def snapshot_items(raw_items: List[dict]) -> List[OrderItem]:
    """Resolve each line against the catalog and freeze its name and price."""
    order_items: List[OrderItem] = []
    for item in raw_items:
        try:
            product = db["product"].find_one({"_id": ObjectId(str(item["product"]))})
        except InvalidId:
            product = None
        if not product:
            raise ValidationError(f"Product with ID {item['product']} not found")
        order_items.append(OrderItem(
            product=str(product["_id"]),
            productName=product.get("name") or "",
            price=float(product.get("price") or 0),
            quantity=int(item.get("quantity", 1)),
            size=item.get("size"),
        ))
    return order_items


def order_total(items: List[OrderItem]) -> float:
    return round(sum(i.price * i.quantity for i in items), 2)


@app.post("/cart/checkout")
def checkout_cart(user: dict = Depends(get_current_user)):
    cart = get_or_create_cart(user["_id"])
    if not cart.get("items"):
        raise ValidationError("Cart is empty")
    if cart.get("paid"):
        raise Conflict("This cart has already been paid")
    order_items = snapshot_items(cart["items"])

    order = Order(user=user["_id"], items=order_items, totalAmount=order_total(order_items),
                  shippingMethod="pickup_in_store", shippingDetails={})
    order_id = create_document("order", order)

    version = cart.get("version")
    match = {"_id": cart["_id"], "version": version} if version is not None else {"_id": cart["_id"], "version": {"$exists": False}}
    res = db["cart"].update_one(match, {"$set": {"items": [], "paid": False, "version": (version or 0) + 1,
                                                 "updated_at": datetime.now(timezone.utc)}})
    if res.matched_count != 1:
        # Lost the race to another cart write
        db["order"].delete_one({"_id": ObjectId(order_id)})
        raise Conflict("Cart was modified concurrently, please retry")

    logger.info("cart_checked_out", order_id=order_id, user_id=user["_id"])
    return {"message": "Order created from cart", "order": serialize_doc(db["order"].find_one({"_id": ObjectId(order_id)}))}


# Orders
class OrderLinePayload(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None


class CreateOrderPayload(BaseModel):
    items: List[OrderLinePayload] = []
    totalAmount: Optional[float] = None
    shippingMethod: ShippingMethod
    shippingAddress: Optional[Dict[str, Any]] = None
    pickupPoint: Optional[Dict[str, Any]] = None


class OrderStatusPayload(BaseModel):
    status: OrderStatus


def populate_order(order: dict, fields: Dict[str, int]) -> dict:
    ids = [ObjectId(str(i["product"])) for i in order.get("items", []) if ObjectId.is_valid(str(i["product"]))]
    products = {str(p["_id"]): serialize_doc(p) for p in db["product"].find({"_id": {"$in": ids}}, fields)}
    result = serialize_doc(order)
    for item in result.get("items", []):
        item["product"] = products.get(str(item["product"]))
    return result


@app.post("/orders", status_code=201)
def create_order(payload: CreateOrderPayload, user: dict = Depends(get_current_user)):
    if not payload.items:
        raise ValidationError("No products in the order")
    if payload.shippingMethod == "home_delivery" and not payload.shippingAddress:
        raise ValidationError("Shipping address required for home delivery")
    if payload.shippingMethod == "pickup_point" and not payload.pickupPoint:
        raise ValidationError("Pickup point required")

    order_items = snapshot_items([i.model_dump() for i in payload.items])
    total = order_total(order_items)
    if payload.totalAmount is not None and abs(payload.totalAmount - total) > 0.01:
        logger.warning("order_total_mismatch", client_total=payload.totalAmount, total=total)

    details: Dict[str, Any] = {"userInfo": payload.shippingAddress}
    if payload.shippingMethod == "home_delivery":
        details["address"] = payload.shippingAddress
    elif payload.shippingMethod == "pickup_point":
        details["pickupPoint"] = payload.pickupPoint

    order = Order(user=user["_id"], items=order_items, totalAmount=total,
                  shippingMethod=payload.shippingMethod, shippingDetails=details)
    order_id = create_document("order", order)
    logger.info("order_created", order_id=order_id, user_id=user["_id"], total=total)
    return {"message": "Order created", "order": serialize_doc(db["order"].find_one({"_id": ObjectId(order_id)}))}


@app.get("/orders")
def my_orders(user: dict = Depends(get_current_user)):
    cursor = db["order"].find({"user": user["_id"]}).sort([("created_at", -1), ("_id", -1)])
    return [populate_order(o, {"name": 1, "price": 1}) for o in cursor]


@app.post("/orders/webhook")
def payment_webhook(payload: Any = Body(None), payments: PaymentOrchestrator = Depends(get_payment_orchestrator)):
    # Empty or form-encoded deliveries are acknowledged as non-payment events
    if not isinstance(payload, dict):
        payload = {}
    logger.info("webhook_received", type=payload.get("type"))
    return payments.handle_notification(payload)


@app.get("/orders/{order_id}")
def order_detail(order_id: str, user: dict = Depends(get_current_user)):
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order not found"), "user": user["_id"]})
    if not order:
        raise NotFound("Order not found")
    return populate_order(order, {"name": 1, "price": 1, "image": 1})


@app.put("/orders/{order_id}")
def update_order_status(order_id: str, payload: OrderStatusPayload, admin: dict = Depends(require_admin)):
    oid = to_object_id(order_id, "Order not found")
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise NotFound("Order not found")
    current = order.get("status", "pending")
    if payload.status != current:
        if payload.status not in ORDER_TRANSITIONS.get(current, set()):
            raise Conflict(f"Cannot move order from {current} to {payload.status}")
        now = datetime.now(timezone.utc)
        changes: Dict[str, Any] = {"status": payload.status, "updated_at": now}
        if payload.status == "paid":
            changes["paidAt"] = now
        res = db["order"].update_one({"_id": oid, "status": current}, {"$set": changes})
        if res.matched_count != 1:
            raise Conflict("Order was modified concurrently, please retry")
        logger.info("order_status_changed", order_id=order_id, old=current, new=payload.status, by=admin["_id"])
    return {"message": "Order updated", "order": serialize_doc(db["order"].find_one({"_id": oid}))}


@app.delete("/orders/{order_id}")
def delete_order(order_id: str, user: dict = Depends(get_current_user)):
    oid = to_object_id(order_id, "Order not found")
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise NotFound("Order not found")
    if order.get("user") != user["_id"]:
        raise Forbidden("Not allowed to delete this order")
    db["order"].delete_one({"_id": oid})
    return {"message": "Order deleted"}


@app.post("/orders/{order_id}/pagar")
def pay_order(order_id: str, user: dict = Depends(get_current_user),
              payments: PaymentOrchestrator = Depends(get_payment_orchestrator)):
    return payments.create_payment_request(order_id, user["_id"], user.get("email"))


# Shipping
class RetailersPayload(BaseModel):
    localidad: str = Field(..., min_length=1)
    provincia: str = Field(..., min_length=1)


@app.post("/api/shipping/retailers")
def pickup_points(payload: RetailersPayload, places: PlacesClient = Depends(get_places_client)):
    return places.find_pickup_points(payload.localidad, payload.provincia)


# Demo data
DEMO_CATEGORIES = [
    ("t-shirts", "basic"), ("hoodies", "oversize"), ("jackets", "puffer"), ("polos", "classic"),
    ("shorts", "cargo"), ("pants", "jogger"), ("swim shorts", "printed"), ("sneakers", "urban"),
    ("accessories", "caps"),
]


@app.post("/seed")
def seed_demo(count: int = 40):
    if not ENABLE_SEED:
        raise NotFound("Not found")
    from faker import Faker
    fake = Faker()
    admin_created = False
    if not db["user"].find_one({"role": "admin"}):
        admin = User(name="Admin", email=os.getenv("ADMIN_EMAIL", "admin@storefront.io"),
                     password_hash=hash_password(os.getenv("ADMIN_PASSWORD", "Admin@123")), role="admin")
        create_document("user", admin)
        admin_created = True
    created = 0
    for _ in range(max(0, count)):
        category, sub_category = random.choice(DEMO_CATEGORIES)
        name = f"{fake.color_name()} {fake.word().title()} {category.title()}"
        product = Product(
            name=name,
            price=round(random.uniform(5000, 90000), 2),
            category=category,
            subCategory=sub_category,
            image=fake.image_url(),
            stock=random.randint(0, 50),
            description=fake.sentence(nb_words=12),
            **size_rules(category, name),
        )
        create_document("product", product)
        created += 1
    return {"admin_created": admin_created, "created_products": created}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
