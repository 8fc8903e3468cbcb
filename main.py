import os
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import (
    ADMIN_ROLE,
    check_rate_limit,
    get_current_user,
    get_optional_user,
    is_admin,
    public_user,
    register_user,
    require_admin,
    token_for,
    verify_password,
)
from cart import CartLedger, MongoCartStorage, line_from_product
from checkout import place_order
from coupons import normalize_code, validate_coupon
from database import create_document, get_db, get_documents
from errors import CommerceError
from fulfillment import serialize_order, transition_order, view_for
from pricing import available_plans, resolve_price
from schemas import (
    PUBLIC_PRODUCT_PROJECTION,
    AddToCartPayload,
    Coupon,
    CouponPayload,
    CouponValidatePayload,
    CreateOrderPayload,
    LoginPayload,
    OrderUpdatePayload,
    Product,
    ProductPayload,
    QuantityPayload,
    RegisterPayload,
)

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@storefront.io")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "Admin@123")

app = FastAPI(title="Digital Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CommerceError)
async def commerce_error_handler(request: Request, exc: CommerceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code, **exc.extra})


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid id")


def serialize(doc: dict) -> dict:
    doc["_id"] = str(doc["_id"])
    return doc


# Health checks
@app.get("/")
def root():
    return {"message": "Digital Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        db = get_db()
        response["database"] = "✅ Available"
        response["database_name"] = db.name
        response["connection_status"] = "Connected"
        response["collections"] = db.list_collection_names()
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:100]}"
    return response


# Auth
@app.post("/api/auth/register")
def register(payload: RegisterPayload, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email.lower()}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = register_user(db, payload.name, payload.email, payload.password, phone=payload.phone)
    return {"token": token_for(user), "user": public_user(user)}


@app.post("/api/auth/login")
def login(payload: LoginPayload, request: Request, db: Database = Depends(get_db)):
    # Rate limit per IP
    ip = request.client.host if request.client else "unknown"
    check_rate_limit(ip)

    doc = db["user"].find_one({"email": payload.email.lower()})
    if not doc or not verify_password(payload.password, doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": token_for(doc), "user": public_user(doc)}


@app.post("/api/auth/seed")
def seed_admin(db: Database = Depends(get_db)):
    """Ensure one admin account exists."""
    if db["user"].find_one({"role": ADMIN_ROLE}):
        return {"created": 0}
    register_user(db, "Admin", ADMIN_EMAIL, ADMIN_PASSWORD, role=ADMIN_ROLE)
    return {"created": 1}


# Products
def product_view(doc: dict) -> dict:
    product = Product.model_validate(doc)
    standard = resolve_price(product)
    doc = serialize(doc)
    doc["standard"] = {
        "price": standard.unit_price,
        "regular_price": standard.reference_price,
        "discount_percent": standard.discount_percent,
    }
    doc["plans"] = []
    for plan in available_plans(product):
        resolved = resolve_price(product, plan)
        doc["plans"].append({
            "plan": resolved.plan_key,
            "price": resolved.unit_price,
            "regular_price": resolved.reference_price,
            "validity_label": resolved.validity_label,
            "discount_percent": resolved.discount_percent,
        })
    return doc


@app.get("/api/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, db: Database = Depends(get_db)):
    filter_q = {"is_available": True}
    if q:
        filter_q["title"] = {"$regex": q, "$options": "i"}
    if category:
        filter_q["category"] = category
    items = db["product"].find(filter_q, PUBLIC_PRODUCT_PROJECTION).sort("created_at", -1)
    return [product_view(it) for it in items]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    doc = db["product"].find_one({"_id": oid(product_id)}, PUBLIC_PRODUCT_PROJECTION)
    if not doc:
        raise HTTPException(status_code=404, detail="Not found")
    return product_view(doc)


@app.post("/api/products", dependencies=[Depends(require_admin)])
def create_product(payload: ProductPayload, db: Database = Depends(get_db)):
    if db["product"].find_one({"slug": payload.slug}):
        raise HTTPException(status_code=400, detail="Slug already in use")
    prod_id = create_document("product", payload.to_product(), database=db)
    return {"_id": prod_id}


@app.put("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductPayload, db: Database = Depends(get_db)):
    update_doc = {k: v for k, v in payload.model_dump(exclude={"sales_count"}).items() if v is not None}
    res = db["product"].update_one({"_id": oid(product_id)}, {"$set": update_doc, "$currentDate": {"updated_at": True}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Not found")
    return {"updated": True}


@app.delete("/api/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, db: Database = Depends(get_db)):
    # orders keep their own item snapshots, so past orders are unaffected
    res = db["product"].delete_one({"_id": oid(product_id)})
    return {"deleted": res.deleted_count == 1}


# Cart
def load_cart(cart_key: str, db: Database) -> CartLedger:
    return CartLedger.load(MongoCartStorage(db), cart_key)


@app.get("/api/cart/{cart_key}")
def get_cart(cart_key: str, db: Database = Depends(get_db)):
    return load_cart(cart_key, db).to_dict()


@app.post("/api/cart/{cart_key}/items")
def add_to_cart(cart_key: str, payload: AddToCartPayload, db: Database = Depends(get_db)):
    doc = db["product"].find_one({"_id": oid(payload.product_id), "is_available": True})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    ledger = load_cart(cart_key, db)
    line = ledger.add(line_from_product(payload.product_id, Product.model_validate(doc), payload.plan, payload.quantity))
    return {"item": line.model_dump(), **ledger.to_dict()}


@app.patch("/api/cart/{cart_key}/items/{cart_id}")
def update_cart_item(cart_key: str, cart_id: str, payload: QuantityPayload, db: Database = Depends(get_db)):
    ledger = load_cart(cart_key, db)
    ledger.set_quantity(cart_id, payload.quantity)
    return ledger.to_dict()


@app.delete("/api/cart/{cart_key}/items/{cart_id}")
def remove_cart_item(cart_key: str, cart_id: str, db: Database = Depends(get_db)):
    ledger = load_cart(cart_key, db)
    removed = ledger.remove(cart_id)
    return {"removed": removed, **ledger.to_dict()}


@app.delete("/api/cart/{cart_key}")
def clear_cart(cart_key: str, db: Database = Depends(get_db)):
    load_cart(cart_key, db).clear()
    return {"cleared": True}


# Coupons
def coupon_response(code: str, subtotal: float, db: Database) -> dict:
    check = validate_coupon(db, code, subtotal)
    body = {"valid": check.valid, "discount": check.discount_amount}
    if check.valid:
        body["coupon"] = {"code": check.code, "discount_type": check.discount_type}
    else:
        body["reason"] = check.reason
        body["message"] = check.message
    return body


@app.get("/api/coupons/validate")
def validate_coupon_query(code: str = "", subtotal: float = 0, db: Database = Depends(get_db)):
    return coupon_response(code, max(0.0, subtotal), db)


@app.post("/api/coupons/validate")
def validate_coupon_body(payload: CouponValidatePayload, db: Database = Depends(get_db)):
    return coupon_response(payload.code, payload.subtotal, db)


@app.get("/api/admin/coupons", dependencies=[Depends(require_admin)])
def list_coupons(db: Database = Depends(get_db)):
    return [serialize(c) for c in get_documents("coupon", database=db)]


@app.post("/api/admin/coupons", dependencies=[Depends(require_admin)])
def create_coupon(payload: CouponPayload, db: Database = Depends(get_db)):
    code = normalize_code(payload.code)
    if db["coupon"].find_one({"code": code}):
        raise HTTPException(status_code=409, detail="Coupon code already exists")
    coupon = Coupon(**{**payload.model_dump(), "code": code})
    try:
        coupon_id = create_document("coupon", coupon, database=db)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Coupon code already exists")
    return {"_id": coupon_id, "code": code}


@app.put("/api/admin/coupons/{coupon_id}", dependencies=[Depends(require_admin)])
def update_coupon(coupon_id: str, payload: CouponPayload, db: Database = Depends(get_db)):
    # used_count is owned by redemption and never set from here
    update_doc = {**payload.model_dump(), "code": normalize_code(payload.code), "updated_at": datetime.now(timezone.utc)}
    clash = db["coupon"].find_one({"code": update_doc["code"], "_id": {"$ne": oid(coupon_id)}})
    if clash:
        raise HTTPException(status_code=409, detail="Coupon code already exists")
    updated = db["coupon"].find_one_and_update(
        {"_id": oid(coupon_id)},
        {"$set": update_doc},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return serialize(updated)


@app.delete("/api/admin/coupons/{coupon_id}", dependencies=[Depends(require_admin)])
def delete_coupon(coupon_id: str, db: Database = Depends(get_db)):
    res = db["coupon"].delete_one({"_id": oid(coupon_id)})
    return {"deleted": res.deleted_count == 1}


# Orders
@app.post("/api/orders")
def create_order(payload: CreateOrderPayload, db: Database = Depends(get_db), user: Optional[dict] = Depends(get_optional_user)):
    if payload.cart_key:
        ledger = load_cart(payload.cart_key, db)
    else:
        ledger = CartLedger(lines=payload.items)
    placed = place_order(db, ledger, payload.contact, payload.payment, payload.coupon_code, current_user=user)
    return {"success": True, **placed.model_dump()}


@app.get("/api/orders")
def list_orders(user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    query = {} if is_admin(user) else {"user": str(user["_id"])}
    orders = get_documents("order", query, database=db)
    return {"success": True, "orders": [view_for(o, user) for o in orders]}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = db["order"].find_one({"_id": oid(order_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "order": view_for(doc, user)}


@app.put("/api/orders/{order_id}")
def update_order(order_id: str, payload: OrderUpdatePayload, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    updated = transition_order(db, order_id, payload.status, user, payload.delivered_content)
    return {"success": True, "order": serialize_order(updated)}


# Admin dashboard
@app.get("/api/admin/stats", dependencies=[Depends(require_admin)])
def admin_stats(db: Database = Depends(get_db)):
    revenue = list(db["order"].aggregate([
        {"$match": {"status": "completed"}},
        {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
    ]))
    stats = {
        "total_users": db["user"].count_documents({"role": "user"}),
        "total_products": db["product"].count_documents({}),
        "total_orders": db["order"].count_documents({}),
        "pending_orders": db["order"].count_documents({"status": "pending"}),
        "completed_orders": db["order"].count_documents({"status": "completed"}),
        "total_revenue": round(revenue[0]["total"], 2) if revenue else 0,
    }
    return {"success": True, "stats": stats}


# Users (admin)
@app.get("/api/auth/users", dependencies=[Depends(require_admin)])
def list_users(db: Database = Depends(get_db)):
    return [public_user(u) for u in get_documents("user", database=db)]


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
