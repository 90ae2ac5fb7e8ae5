import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database

from auth import (
    MIN_PASSWORD_LENGTH,
    Identity,
    authorize,
    hash_password,
    open_session,
    public_customer,
    resolve_identity,
    verify_password,
)
from database import db, get_db, to_naive_utc, utcnow
from errors import NotFoundError, StoreError, ValidationError
from inventory import StockLedger
from orders import delete_order, place_order, update_order_status
from repository import Store
from schemas import (
    COLLECTIONS,
    CategoryIn,
    CompleteOrderRequest,
    CustomerUpdate,
    LoginRequest,
    PaymentUpdate,
    ProductIn,
    ProductImageIn,
    ProductUpdate,
    RegisterRequest,
    ReviewIn,
    Role,
    ShippingUpdate,
    StatusUpdate,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Online Store API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Malformed request bodies answer 400, the same as business validation errors.
@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# Dependencies
def get_store(database: Database = Depends(get_db)) -> Store:
    return Store(database)


def get_current_user(
    authorization: Optional[str] = Header(None),
    store: Store = Depends(get_store),
) -> Identity:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")
    identity = resolve_identity(store, authorization[7:].strip())
    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return identity


def require_admin(caller: Identity = Depends(get_current_user)) -> Identity:
    authorize(caller, admin_only=True)
    return caller


def found(doc: Optional[dict], kind: str, doc_id: str) -> dict:
    if doc is None:
        raise NotFoundError(f"{kind} with ID {doc_id} not found.")
    return doc


def owned_order(store: Store, caller: Identity, order_id: str) -> dict:
    order = found(store.orders.find(order_id), "Order", order_id)
    authorize(caller, owner_id=order["customer_id"])
    return order


@app.get("/")
async def root():
    return {"message": "Online Store API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


# Collection schemas (for viewers/tools)
@app.get("/schema")
def get_schema():
    return {model.__name__.lower(): model.model_json_schema() for model in COLLECTIONS}


# Auth endpoints
@app.post("/auth/register", status_code=201)
def register(req: RegisterRequest, store: Store = Depends(get_store)):
    logger.info("Registration attempt for username: %s", req.username)
    if not all(v.strip() for v in (req.name, req.email, req.username, req.password)):
        raise ValidationError("Name, email, username, and password are required")
    if len(req.password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if store.customers.find_by_username(req.username) is not None:
        logger.warning("Registration failed: username %s already exists", req.username)
        raise ValidationError("Username already exists")

    customer = store.customers.create({
        "name": req.name,
        "email": req.email,
        "phone": req.phone or "",
        "address": req.address or "",
        "username": req.username,
        "password_hash": hash_password(req.password),
        "role": Role.CUSTOMER.value,
    })
    logger.info("Customer registered: %s (ID: %s)", req.username, customer["id"])
    return {"token": open_session(store, customer["id"]), "customer": public_customer(customer)}


@app.post("/auth/login")
def login(req: LoginRequest, store: Store = Depends(get_store)):
    logger.info("Login attempt for username: %s", req.username)
    if not req.username or not req.password:
        raise ValidationError("Username and password are required")

    customer = store.customers.find_by_username(req.username)
    if customer is None or not verify_password(req.password, customer.get("password_hash", "")):
        logger.warning("Login failed for username: %s", req.username)
        raise HTTPException(status_code=401, detail="Invalid username or password")

    return {"token": open_session(store, customer["id"]), "customer": public_customer(customer)}


@app.get("/auth/me")
def me(caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    customer = found(store.customers.find(caller.customer_id), "Customer", caller.customer_id)
    return public_customer(customer)


@app.post("/auth/logout")
def logout(
    authorization: Optional[str] = Header(None),
    caller: Identity = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    store.sessions.close(authorization[7:].strip())
    return {"logged_out": True}


# Customers
@app.get("/customers/all")
def list_customers(caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    return [public_customer(c) for c in store.customers.list()]


@app.get("/customers/{customer_id}")
def get_customer(customer_id: str, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    authorize(caller, owner_id=customer_id)
    return public_customer(found(store.customers.find(customer_id), "Customer", customer_id))


@app.put("/customers/{customer_id}")
def update_customer(
    customer_id: str,
    payload: CustomerUpdate,
    caller: Identity = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    authorize(caller, owner_id=customer_id)
    updates = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "role" in updates:
        authorize(caller, admin_only=True)
        updates["role"] = updates["role"].value
    if not updates:
        return public_customer(found(store.customers.find(customer_id), "Customer", customer_id))
    return public_customer(found(store.customers.update(customer_id, updates), "Customer", customer_id))


@app.delete("/customers/{customer_id}")
def delete_customer(customer_id: str, caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    if store.orders.count({"customer_id": customer_id}):
        raise ValidationError("Customer has orders and cannot be deleted")
    if not store.customers.delete(customer_id):
        raise NotFoundError(f"Customer with ID {customer_id} not found.")
    return {"deleted": True}


# Categories
@app.get("/categories")
def list_categories(store: Store = Depends(get_store)):
    return store.categories.list()


@app.get("/categories/exists/{category_id}")
def category_exists(category_id: str, store: Store = Depends(get_store)):
    return store.categories.exists(category_id)


@app.get("/categories/{category_id}")
def get_category(category_id: str, store: Store = Depends(get_store)):
    return found(store.categories.find(category_id), "Category", category_id)


@app.post("/categories", status_code=201)
def create_category(payload: CategoryIn, caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    return store.categories.create(payload.model_dump())


@app.put("/categories/{category_id}")
def update_category(
    category_id: str,
    payload: CategoryIn,
    caller: Identity = Depends(require_admin),
    store: Store = Depends(get_store),
):
    return found(store.categories.update(category_id, payload.model_dump()), "Category", category_id)


@app.delete("/categories/{category_id}")
def delete_category(category_id: str, caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    if store.products.count({"category_id": category_id}):
        raise ValidationError("Category is in use by products")
    if not store.categories.delete(category_id):
        raise NotFoundError(f"Category with ID {category_id} not found.")
    return {"deleted": True}


# Products (reads are public, writes need an admin)
def check_category(store: Store, category_id: Optional[str]) -> None:
    if category_id is not None and not store.categories.exists(category_id):
        raise ValidationError(f"Category with ID {category_id} does not exist")


@app.get("/products")
def list_products(category_id: Optional[str] = None, store: Store = Depends(get_store)):
    return store.products.list({"category_id": category_id} if category_id else None)


@app.get("/products/exists/{product_id}")
def product_exists(product_id: str, store: Store = Depends(get_store)):
    return store.products.exists(product_id)


@app.get("/products/{product_id}")
def get_product(product_id: str, store: Store = Depends(get_store)):
    return found(store.products.find(product_id), "Product", product_id)


@app.get("/products/{product_id}/availability")
def product_availability(product_id: str, quantity: int = 1, store: Store = Depends(get_store)):
    found(store.products.find(product_id), "Product", product_id)
    ledger = StockLedger(store.products)
    return {"product_id": product_id, "quantity": quantity, "available": ledger.check_available(product_id, quantity)}


@app.get("/products/{product_id}/reviews")
def product_reviews(product_id: str, store: Store = Depends(get_store)):
    found(store.products.find(product_id), "Product", product_id)
    return store.reviews.for_product(product_id)


# Product image gallery
@app.get("/products/{product_id}/images")
def product_images(product_id: str, store: Store = Depends(get_store)):
    found(store.products.find(product_id), "Product", product_id)
    return store.product_images.for_product(product_id)


@app.post("/products/{product_id}/images", status_code=201)
def add_product_image(
    product_id: str,
    payload: ProductImageIn,
    caller: Identity = Depends(require_admin),
    store: Store = Depends(get_store),
):
    found(store.products.find(product_id), "Product", product_id)
    return store.product_images.create({"product_id": product_id, **payload.model_dump()})


@app.put("/images/{image_id}")
def update_product_image(
    image_id: str,
    payload: ProductImageIn,
    caller: Identity = Depends(require_admin),
    store: Store = Depends(get_store),
):
    return found(store.product_images.update(image_id, payload.model_dump()), "Image", image_id)


@app.delete("/images/{image_id}")
def delete_product_image(image_id: str, caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    if not store.product_images.delete(image_id):
        raise NotFoundError(f"Image with ID {image_id} not found.")
    return {"deleted": True}


@app.post("/products", status_code=201)
def create_product(p: ProductIn, caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    check_category(store, p.category_id)
    return store.products.create(p.model_dump())


@app.put("/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    caller: Identity = Depends(require_admin),
    store: Store = Depends(get_store),
):
    updates = {k: v for k, v in payload.model_dump().items() if v is not None}
    check_category(store, updates.get("category_id"))
    if not updates:
        return found(store.products.find(product_id), "Product", product_id)
    return found(store.products.update(product_id, updates), "Product", product_id)


@app.delete("/products/{product_id}")
def delete_product(product_id: str, caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    if store.order_items.count({"product_id": product_id}):
        raise ValidationError("Product has order history and cannot be deleted")
    if not store.products.delete(product_id):
        raise NotFoundError(f"Product with ID {product_id} not found.")
    store.product_images.delete_for_product(product_id)
    return {"deleted": True}


# Orders
@app.post("/orders/complete", status_code=201)
def create_complete_order(
    req: CompleteOrderRequest,
    caller: Identity = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    return place_order(store, caller, req)


@app.get("/orders/all")
def list_orders(caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    return store.orders.list()


@app.get("/orders/exists/{order_id}")
def order_exists(order_id: str, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    return store.orders.exists(order_id)


@app.get("/orders/customer/{customer_id}")
def customer_orders(customer_id: str, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    authorize(caller, owner_id=customer_id)
    return store.orders.for_customer(customer_id)


@app.get("/orders/{order_id}")
def get_order(order_id: str, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    return owned_order(store, caller, order_id)


@app.get("/orders/{order_id}/items")
def get_order_items(order_id: str, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    owned_order(store, caller, order_id)
    return store.order_items.for_order(order_id)


@app.put("/orders/{order_id}/status")
def set_order_status(
    order_id: str,
    payload: StatusUpdate,
    caller: Identity = Depends(get_current_user),
    store: Store = Depends(get_store),
):
    return update_order_status(store, caller, order_id, payload.status)


@app.delete("/orders/{order_id}")
def remove_order(order_id: str, caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    if not delete_order(store, order_id):
        raise NotFoundError(f"Order with ID {order_id} not found.")
    return {"deleted": True}


# Payments
@app.get("/payments/all")
def list_payments(caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    return store.payments.list()


@app.get("/payments/exists/{payment_id}")
def payment_exists(payment_id: str, caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    return store.payments.exists(payment_id)


@app.get("/payments/order/{order_id}")
def order_payment(order_id: str, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    owned_order(store, caller, order_id)
    return found(store.payments.for_order(order_id), "Payment for order", order_id)


@app.get("/payments/{payment_id}")
def get_payment(payment_id: str, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    payment = found(store.payments.find(payment_id), "Payment", payment_id)
    owned_order(store, caller, payment["order_id"])
    return payment


@app.put("/payments/{payment_id}")
def update_payment(
    payment_id: str,
    payload: PaymentUpdate,
    caller: Identity = Depends(require_admin),
    store: Store = Depends(get_store),
):
    if not payload.payment_method.strip():
        raise ValidationError("Payment method is required")
    updates = {"payment_method": payload.payment_method.strip()}
    return found(store.payments.update(payment_id, updates), "Payment", payment_id)


# Shipping
@app.get("/shipping/all")
def list_shipping(caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    return store.shipping.list()


@app.get("/shipping/exists/{shipping_id}")
def shipping_exists(shipping_id: str, caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    return store.shipping.exists(shipping_id)


@app.get("/shipping/order/{order_id}")
def order_shipping(order_id: str, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    owned_order(store, caller, order_id)
    return found(store.shipping.for_order(order_id), "Shipping for order", order_id)


@app.put("/shipping/{shipping_id}")
def update_shipping(
    shipping_id: str,
    payload: ShippingUpdate,
    caller: Identity = Depends(require_admin),
    store: Store = Depends(get_store),
):
    updates = {k: v for k, v in payload.model_dump().items() if v is not None}
    if "shipping_status" in updates:
        updates["shipping_status"] = int(updates["shipping_status"])
    for key in ("estimated_delivery_date", "actual_delivery_date"):
        if key in updates:
            updates[key] = to_naive_utc(updates[key])
    if not updates:
        return found(store.shipping.find(shipping_id), "Shipping", shipping_id)
    return found(store.shipping.update(shipping_id, updates), "Shipping", shipping_id)


# Reviews
@app.post("/reviews", status_code=201)
def create_review(payload: ReviewIn, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    if not store.products.exists(payload.product_id):
        raise ValidationError(f"Product with ID {payload.product_id} does not exist")
    return store.reviews.create({
        "product_id": payload.product_id,
        "customer_id": caller.customer_id,
        "rating": payload.rating,
        "review_text": payload.review_text,
        "review_date": utcnow(),
    })


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, caller: Identity = Depends(get_current_user), store: Store = Depends(get_store)):
    review = found(store.reviews.find(review_id), "Review", review_id)
    authorize(caller, owner_id=review["customer_id"])
    store.reviews.delete(review_id)
    return {"deleted": True}


# Admin dashboard counters
@app.get("/admin/stats")
def admin_stats(caller: Identity = Depends(require_admin), store: Store = Depends(get_store)):
    stats = store.orders.stats()
    stats["total_customers"] = store.customers.count()
    stats["total_products"] = store.products.count()
    return stats


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
