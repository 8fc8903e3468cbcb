"""
Order fulfillment state machine.

    pending --complete--> processing --> completed
    pending --decline---> cancelled
    processing --reopen--> pending

`pending` is the only state with outgoing admin decisions; `completed` and
`cancelled` are terminal. An admin may reopen an order left in `processing`
by a completion that never finished. `processing` is held only while a completion
applies its side effects (coupon redemption, delivery content), so two admins
completing the same order cannot both get past the claim. Every transition is
a conditional update on the current status.

This module is the only writer of `delivered_content`.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import is_admin
from coupons import EXHAUSTED, MISSING, redeem_coupon, release_coupon
from errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from schemas import ACCOUNT_ACCESS, SUBSCRIPTION_PLANS, DeliveredContent, Order, OrderItem, Product

logger = logging.getLogger(__name__)

COLLECTION = "order"

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
CANCELLED = "cancelled"
DECLINED = "declined"

ACCOUNT_DELIVERY_NOTE = "Your account credentials have been securely delivered."
VERIFYING_PAYMENT_MESSAGE = "We are verifying your payment. Your access details will appear here once the order is completed."
CANCELLED_MESSAGE = "This order was cancelled. Contact support if you believe this is a mistake."


def _oid(order_id: str) -> ObjectId:
    try:
        return ObjectId(order_id)
    except (InvalidId, TypeError):
        raise NotFoundError("Order not found")


def _require_admin(actor: Optional[dict]) -> None:
    if not is_admin(actor):
        raise PermissionDeniedError("Unauthorized: Admins only")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _refused(db: Database, oid: ObjectId) -> ConflictError:
    """Explain why a transition was refused by naming the current status."""
    doc = db[COLLECTION].find_one({"_id": oid}, {"status": 1})
    if doc is None:
        raise NotFoundError("Order not found")
    status = doc.get("status")
    return ConflictError(f"Order already {status}", {"status": status})


def _release_claim(db: Database, oid: ObjectId) -> None:
    db[COLLECTION].update_one(
        {"_id": oid, "status": PROCESSING},
        {"$set": {"status": PENDING, "updated_at": _now()}},
    )


def product_delivery(product: Product, plan_key: str) -> DeliveredContent:
    """Delivery secrets stored on the product for the purchased plan."""
    if plan_key == ACCOUNT_ACCESS:
        return DeliveredContent(
            account_email=product.account_access.account_email,
            account_password=product.account_access.account_password,
            download_link=product.access_link,
            access_notes=product.access_note or ACCOUNT_DELIVERY_NOTE,
        )
    if plan_key in SUBSCRIPTION_PLANS:
        plan = getattr(product.pricing, plan_key)
        if plan.is_enabled:
            return DeliveredContent(download_link=plan.access_link, access_notes=plan.access_note)
    return DeliveredContent(download_link=product.access_link, access_notes=product.access_note)


def _line_delivery(db: Database, item: OrderItem) -> DeliveredContent:
    try:
        doc = db["product"].find_one({"_id": ObjectId(item.product)})
    except InvalidId:
        doc = None
    if not doc:
        logger.warning("Product %s for delivery no longer exists", item.product)
        return DeliveredContent()
    return product_delivery(Product.model_validate(doc), item.plan)


def build_delivery(db: Database, order: Order, supplied: Optional[DeliveredContent] = None) -> DeliveredContent:
    """
    Merge admin-supplied content with the products' stored secrets.

    Non-empty fields supplied by the admin win. Blank fields are filled from
    every order line, in order: distinct non-empty values for a field are
    joined one per line, so a cart holding a monthly and a yearly plan
    delivers both links.
    """
    supplied = supplied or DeliveredContent()
    stored = [_line_delivery(db, item) for item in order.products]

    merged = {}
    for field in DeliveredContent.model_fields:
        value = (getattr(supplied, field) or "").strip()
        if not value:
            values = []
            for content in stored:
                candidate = getattr(content, field)
                if candidate and candidate not in values:
                    values.append(candidate)
            value = "\n".join(values)
        merged[field] = value
    return DeliveredContent(**merged)


def complete_order(db: Database, order_id: str, actor: Optional[dict], supplied: Optional[DeliveredContent] = None) -> Dict[str, Any]:
    _require_admin(actor)
    oid = _oid(order_id)

    claimed = db[COLLECTION].find_one_and_update(
        {"_id": oid, "status": PENDING},
        {"$set": {"status": PROCESSING, "updated_at": _now()}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        raise _refused(db, oid)

    redeemed_now = False
    try:
        order = Order.model_validate(claimed)
        content = build_delivery(db, order, supplied)
        if content.is_empty():
            raise ValidationError("Delivery content is required to complete an order")

        if order.coupon_code and not order.coupon_redeemed:
            outcome = redeem_coupon(db, order.coupon_code)
            if outcome == EXHAUSTED:
                raise ConflictError("Coupon usage limit reached", {"status": PENDING, "reason": "usage_limit_reached"})
            if outcome == MISSING:
                # the discount was priced in when the order was placed
                logger.warning("Coupon %s on order %s no longer exists; completing without redemption", order.coupon_code, order_id)
            else:
                redeemed_now = True

        completed = db[COLLECTION].find_one_and_update(
            {"_id": oid, "status": PROCESSING},
            {"$set": {
                "status": COMPLETED,
                "payment_status": "paid",
                "delivered_content": content.model_dump(),
                "coupon_redeemed": order.coupon_redeemed or redeemed_now,
                "completed_at": _now(),
                "updated_at": _now(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        if completed is None:
            raise _refused(db, oid)
    except Exception:
        if redeemed_now:
            release_coupon(db, order.coupon_code)
        _release_claim(db, oid)
        raise

    for item in order.products:
        try:
            db["product"].update_one({"_id": ObjectId(item.product)}, {"$inc": {"sales_count": item.quantity}})
        except InvalidId:
            logger.warning("Skipping sales count for invalid product id %s", item.product)

    logger.info("Order %s completed by %s", order_id, actor.get("_id"))
    return completed


def decline_order(db: Database, order_id: str, actor: Optional[dict]) -> Dict[str, Any]:
    _require_admin(actor)
    oid = _oid(order_id)
    cancelled = db[COLLECTION].find_one_and_update(
        {"_id": oid, "status": PENDING},
        {"$set": {"status": CANCELLED, "payment_status": "failed", "updated_at": _now()}},
        return_document=ReturnDocument.AFTER,
    )
    if cancelled is None:
        raise _refused(db, oid)
    logger.info("Order %s declined by %s", order_id, actor.get("_id"))
    return cancelled


def reopen_order(db: Database, order_id: str, actor: Optional[dict]) -> Dict[str, Any]:
    """
    Hand a stuck `processing` claim back to `pending`.

    A completion that dies between its claim and its final write (process
    killed, connection lost) never reaches its own release, leaving the order
    in `processing` where no other transition applies. Side effects of such a
    completion were not committed, except a coupon use that `coupon_redeemed`
    did not record, which stays consumed.
    """
    _require_admin(actor)
    oid = _oid(order_id)
    reopened = db[COLLECTION].find_one_and_update(
        {"_id": oid, "status": PROCESSING},
        {"$set": {"status": PENDING, "updated_at": _now()}},
        return_document=ReturnDocument.AFTER,
    )
    if reopened is None:
        raise _refused(db, oid)
    logger.warning("Order %s reopened from processing by %s", order_id, actor.get("_id"))
    return reopened


def transition_order(db: Database, order_id: str, status: str, actor: Optional[dict], supplied: Optional[DeliveredContent] = None) -> Dict[str, Any]:
    """Apply an admin decision. `declined` is stored as `cancelled`."""
    if status == COMPLETED:
        return complete_order(db, order_id, actor, supplied)
    if status in (DECLINED, CANCELLED):
        return decline_order(db, order_id, actor)
    if status == PENDING:
        return reopen_order(db, order_id, actor)
    raise ValidationError(f"Unsupported order status: {status}")


def serialize_order(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    out["_id"] = str(out["_id"])
    return out


def buyer_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Order as shown to its buyer: delivery secrets only once completed."""
    out = serialize_order(doc)
    status = out.get("status")
    if status == COMPLETED:
        out["delivery_message"] = None
        return out
    out["delivered_content"] = None
    out["delivery_message"] = CANCELLED_MESSAGE if status == CANCELLED else VERIFYING_PAYMENT_MESSAGE
    return out


def view_for(doc: Dict[str, Any], viewer: dict) -> Dict[str, Any]:
    if is_admin(viewer):
        return serialize_order(doc)
    if str(doc.get("user")) != str(viewer.get("_id")):
        raise NotFoundError("Order not found")
    return buyer_view(doc)
