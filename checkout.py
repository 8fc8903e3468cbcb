"""
Order placement.

Turns a cart ledger plus buyer contact and payment proof into a single
pending order. Prices, titles and variants are copied from the cart lines;
only a plan that has since been disabled is re-priced (to the standard tier).
Payment is asserted by the buyer and verified later by an admin.
"""
import logging
from typing import Callable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel, EmailStr, TypeAdapter
from pydantic import ValidationError as SchemaError
from pymongo.database import Database
from pymongo.errors import PyMongoError

from auth import provision_buyer
from cart import CartLedger, LineKey
from coupons import validate_coupon
from database import create_document
from errors import OrderFailedError, ValidationError
from pricing import plan_is_enabled, standard_price
from schemas import STANDARD_PLAN, CartLine, ContactInfo, Order, OrderItem, PaymentProof, Product

logger = logging.getLogger(__name__)

FREE_TRANSACTION_ID = "FREE"
FREE_PAYMENT_METHOD = "Free Checkout"
NO_SENDER = "N/A"
DEFAULT_PAYMENT_METHOD = "Manual"

_email = TypeAdapter(EmailStr)

Provisioner = Callable[[Database, ContactInfo], Tuple[dict, bool, Optional[str]]]


class PlacedOrder(BaseModel):
    order_id: str
    amount: float
    subtotal: float
    discount_amount: float = 0
    is_new_user: bool = False
    token: Optional[str] = None


def _require_contact(contact: ContactInfo) -> None:
    missing = [field for field in ("name", "email", "phone") if not getattr(contact, field).strip()]
    if missing:
        raise ValidationError("Fill contact details", {"fields": missing})
    try:
        _email.validate_python(contact.email.strip())
    except SchemaError:
        raise ValidationError("Enter a valid email address", {"fields": ["email"]})


def _load_product(db: Database, product_id: str) -> Optional[Product]:
    try:
        doc = db["product"].find_one({"_id": ObjectId(product_id)})
    except InvalidId:
        return None
    if not doc:
        return None
    return Product.model_validate(doc)


def snapshot_line(db: Database, line: CartLine) -> OrderItem:
    """Project a cart line onto an order item, checking the plan is still on sale."""
    product = _load_product(db, line.product_id)
    if product is None or not product.is_available:
        raise ValidationError(f"Product not available: {line.name}", {"cart_id": line.cart_id})

    plan_key = LineKey.of(line).plan_key
    price, variant = line.price, line.validity or "Standard"
    if plan_key != STANDARD_PLAN and not plan_is_enabled(product, plan_key):
        fallback = standard_price(product)
        logger.warning(
            "Plan %s disabled on product %s, charging standard price %s",
            plan_key, line.product_id, fallback.unit_price,
        )
        price, variant, plan_key = fallback.unit_price, fallback.validity_label, fallback.plan_key

    return OrderItem(
        product=line.product_id,
        quantity=line.quantity,
        price=price,
        title=line.name,
        variant=variant,
        plan=plan_key,
    )


def place_order(
    db: Database,
    ledger: CartLedger,
    contact: ContactInfo,
    payment: PaymentProof,
    coupon_code: Optional[str] = None,
    current_user: Optional[dict] = None,
    provision: Provisioner = provision_buyer,
) -> PlacedOrder:
    if ledger.is_empty():
        raise ValidationError("Cart is empty")
    _require_contact(contact)

    items: List[OrderItem] = [snapshot_line(db, line) for line in ledger.lines]
    # totals are kept to cents
    subtotal = round(sum(item.price * item.quantity for item in items), 2)

    discount = 0.0
    applied_code = None
    if coupon_code and coupon_code.strip():
        check = validate_coupon(db, coupon_code, subtotal)
        if not check.valid:
            raise ValidationError(check.message, {"reason": check.reason})
        discount, applied_code = check.discount_amount, check.code
    amount = round(max(0.0, subtotal - discount), 2)

    if amount == 0:
        transaction_id, method, sender = FREE_TRANSACTION_ID, FREE_PAYMENT_METHOD, NO_SENDER
    else:
        transaction_id = (payment.transaction_id or "").strip()
        if not transaction_id:
            raise ValidationError("Transaction ID is required", {"fields": ["transaction_id"]})
        method = (payment.method or "").strip() or DEFAULT_PAYMENT_METHOD
        sender = (payment.sender_number or "").strip() or NO_SENDER

    is_new_user, token = False, None
    if current_user is not None:
        user_id = str(current_user["_id"])
    else:
        try:
            user, is_new_user, token = provision(db, contact)
        except PyMongoError:
            logger.exception("Buyer provisioning failed")
            raise OrderFailedError("User creation failed. Please try logging in.")
        user_id = str(user["_id"])

    order = Order(
        user=user_id,
        products=items,
        transaction_id=transaction_id,
        sender_number=sender,
        payment_method=method,
        subtotal=subtotal,
        amount=amount,
        discount_amount=discount if applied_code else None,
        coupon_code=applied_code,
    )
    try:
        order_id = create_document("order", order, database=db)
    except PyMongoError:
        logger.exception("Order creation failed for user %s", user_id)
        raise OrderFailedError("Order creation failed")

    logger.info("Order %s placed by %s for %s", order_id, user_id, amount)
    ledger.clear()
    return PlacedOrder(
        order_id=order_id,
        amount=amount,
        subtotal=subtotal,
        discount_amount=discount,
        is_new_user=is_new_user,
        token=token,
    )
