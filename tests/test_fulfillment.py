import pytest
from bson import ObjectId

from cart import CartLedger, line_from_product
from checkout import place_order
from errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from fulfillment import buyer_view, complete_order, decline_order, reopen_order, transition_order, view_for
from schemas import ContactInfo, DeliveredContent, PaymentProof


@pytest.fixture
def place(db, product, buyer):
    """Place an order for `plan` on the shared product, optionally with a coupon."""
    product_id, model = product

    def _place(plan=None, quantity=1, coupon_code=None):
        ledger = CartLedger()
        ledger.add(line_from_product(product_id, model, plan, quantity))
        placed = place_order(
            db, ledger, ContactInfo(name="Buyer", email="buyer@shopmail.com", phone="01700000000"),
            PaymentProof(transaction_id="TRX"), coupon_code=coupon_code, current_user=buyer,
        )
        return placed.order_id
    return _place


def fetch(db, order_id):
    return db["order"].find_one({"_id": ObjectId(order_id)})


def test_complete_attaches_delivery_and_marks_paid(db, admin, place):
    order_id = place()
    supplied = DeliveredContent(download_link="https://dl.test/custom")

    done = complete_order(db, order_id, admin, supplied)

    assert done["status"] == "completed"
    assert done["payment_status"] == "paid"
    assert done["delivered_content"]["download_link"] == "https://dl.test/custom"
    # blanks are filled from the product's stored secrets
    assert done["delivered_content"]["access_notes"] == "Standard download"
    assert fetch(db, order_id)["completed_at"] is not None


def test_complete_fills_plan_secrets(db, admin, place):
    order_id = place("yearly")
    done = complete_order(db, order_id, admin)
    assert done["delivered_content"]["download_link"] == "https://vip.test/yearly"
    assert done["delivered_content"]["access_notes"] == "Yearly group invite"


def test_complete_account_access_delivers_credentials(db, admin, place):
    order_id = place("account_access")
    content = complete_order(db, order_id, admin)["delivered_content"]
    assert content["account_email"] == "shared@vault.test"
    assert content["account_password"] == "s3cret"
    assert content["download_link"] == "https://dl.test/standard"


def test_complete_requires_some_content(db, admin, place, product):
    product_id, _ = product
    db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"access_link": "", "access_note": ""}})
    order_id = place()

    with pytest.raises(ValidationError):
        complete_order(db, order_id, admin, DeliveredContent(access_notes="   "))
    assert fetch(db, order_id)["status"] == "pending"


def test_complete_increments_sales_count(db, admin, place, product):
    product_id, _ = product
    complete_order(db, place(quantity=3), admin)
    assert db["product"].find_one({"_id": ObjectId(product_id)})["sales_count"] == 3


def test_only_admin_may_transition(db, buyer, place):
    order_id = place()
    with pytest.raises(PermissionDeniedError):
        complete_order(db, order_id, buyer, DeliveredContent(access_notes="x"))
    with pytest.raises(PermissionDeniedError):
        decline_order(db, order_id, None)
    assert fetch(db, order_id)["status"] == "pending"


def test_terminal_states_refuse_transitions(db, admin, place):
    completed_id, cancelled_id = place(), place()
    complete_order(db, completed_id, admin)
    decline_order(db, cancelled_id, admin)

    with pytest.raises(ConflictError) as exc:
        complete_order(db, completed_id, admin)
    assert exc.value.extra["status"] == "completed"
    with pytest.raises(ConflictError):
        decline_order(db, completed_id, admin)
    with pytest.raises(ConflictError) as exc:
        complete_order(db, cancelled_id, admin)
    assert exc.value.extra["status"] == "cancelled"


def test_decline_fails_payment_and_keeps_content_empty(db, admin, place, add_coupon):
    add_coupon(code="TEN", discount_type="percentage", discount_amount=10, usage_limit=5)
    order_id = place(coupon_code="TEN")

    declined = transition_order(db, order_id, "declined", admin)

    assert declined["status"] == "cancelled"
    assert declined["payment_status"] == "failed"
    assert DeliveredContent(**declined["delivered_content"]).is_empty()
    assert db["coupon"].find_one({"code": "TEN"})["used_count"] == 0


def test_coupon_consumed_once_on_completion(db, admin, place, add_coupon):
    add_coupon(code="TEN", discount_type="percentage", discount_amount=10, usage_limit=5)
    order_id = place(coupon_code="TEN")
    assert db["coupon"].find_one({"code": "TEN"})["used_count"] == 0

    complete_order(db, order_id, admin)
    with pytest.raises(ConflictError):
        complete_order(db, order_id, admin)

    assert db["coupon"].find_one({"code": "TEN"})["used_count"] == 1
    assert fetch(db, order_id)["coupon_redeemed"] is True


def test_coupon_usage_bound_across_orders(db, admin, place, add_coupon):
    add_coupon(code="ONE", discount_type="fixed", discount_amount=50, usage_limit=1)
    first, second = place(coupon_code="ONE"), place(coupon_code="ONE")

    complete_order(db, first, admin)
    with pytest.raises(ConflictError) as exc:
        complete_order(db, second, admin)

    assert exc.value.extra["reason"] == "usage_limit_reached"
    assert fetch(db, second)["status"] == "pending"
    assert db["order"].count_documents({"status": "completed", "coupon_code": "ONE"}) == 1
    assert db["coupon"].find_one({"code": "ONE"})["used_count"] == 1


def test_claimed_order_cannot_be_completed_twice(db, admin, place):
    order_id = place()
    # another admin holds the claim
    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "processing"}})

    with pytest.raises(ConflictError) as exc:
        complete_order(db, order_id, admin)
    assert exc.value.extra["status"] == "processing"


class _OrdersMovedOn:
    """Order collection where the order is cancelled between claim and completion."""

    def __init__(self, collection):
        self._collection = collection

    def __getattr__(self, name):
        return getattr(self._collection, name)

    def find_one_and_update(self, filter, update, **kwargs):
        if filter.get("status") == "processing":
            self._collection.update_one({"_id": filter["_id"]}, {"$set": {"status": "cancelled"}})
            return None
        return self._collection.find_one_and_update(filter, update, **kwargs)


class _RacingDatabase:
    def __init__(self, db):
        self._db = db

    def __getitem__(self, name):
        if name == "order":
            return _OrdersMovedOn(self._db[name])
        return self._db[name]


def test_lost_race_gives_coupon_back(db, admin, place, add_coupon):
    add_coupon(code="TEN", discount_type="percentage", discount_amount=10, usage_limit=1)
    order_id = place(coupon_code="TEN")

    with pytest.raises(ConflictError) as exc:
        complete_order(_RacingDatabase(db), order_id, admin)

    assert exc.value.extra["status"] == "cancelled"
    assert db["coupon"].find_one({"code": "TEN"})["used_count"] == 0
    assert DeliveredContent(**fetch(db, order_id)["delivered_content"]).is_empty()


def test_unknown_order(db, admin):
    with pytest.raises(NotFoundError):
        complete_order(db, str(ObjectId()), admin)
    with pytest.raises(NotFoundError):
        decline_order(db, "not-an-id", admin)


def test_unsupported_status(db, admin, place):
    with pytest.raises(ValidationError):
        transition_order(db, place(), "processing", admin)


def test_buyer_never_sees_secrets_before_completion(db, admin, buyer, place):
    order_id = place("yearly")
    pending = view_for(fetch(db, order_id), buyer)
    assert pending["delivered_content"] is None
    assert "verifying" in pending["delivery_message"].lower()

    complete_order(db, order_id, admin)
    done = view_for(fetch(db, order_id), buyer)
    assert done["delivered_content"]["download_link"] == "https://vip.test/yearly"


def test_cancelled_order_view_has_no_content(db, admin, place):
    order_id = place()
    decline_order(db, order_id, admin)
    view = buyer_view(fetch(db, order_id))
    assert view["delivered_content"] is None
    assert "cancelled" in view["delivery_message"]


def test_other_buyers_cannot_view_order(db, admin, place):
    order_id = place()
    stranger = {"_id": str(ObjectId()), "role": "user"}
    with pytest.raises(NotFoundError):
        view_for(fetch(db, order_id), stranger)
    assert view_for(fetch(db, order_id), admin)["_id"] == order_id


def test_deleted_coupon_does_not_block_completion(db, admin, place, add_coupon):
    add_coupon(code="GONE", discount_type="fixed", discount_amount=50, usage_limit=3)
    order_id = place(coupon_code="GONE")
    db["coupon"].delete_one({"code": "GONE"})

    done = complete_order(db, order_id, admin)

    assert done["status"] == "completed"
    assert done["discount_amount"] == 50
    assert done["coupon_redeemed"] is False


def test_multi_line_order_delivers_every_plan(db, admin, buyer, product):
    product_id, model = product
    ledger = CartLedger()
    ledger.add(line_from_product(product_id, model, "monthly", 1))
    ledger.add(line_from_product(product_id, model, "yearly", 1))
    placed = place_order(
        db, ledger, ContactInfo(name="Buyer", email="buyer@shopmail.com", phone="01700000000"),
        PaymentProof(transaction_id="TRX"), current_user=buyer,
    )

    content = complete_order(db, placed.order_id, admin)["delivered_content"]

    assert content["download_link"] == "https://vip.test/monthly\nhttps://vip.test/yearly"
    assert content["access_notes"] == "Monthly group invite\nYearly group invite"


def test_admin_link_overrides_every_line(db, admin, place):
    order_id = place("yearly")
    content = complete_order(db, order_id, admin, DeliveredContent(download_link="https://dl.test/one"))["delivered_content"]
    assert content["download_link"] == "https://dl.test/one"


def test_reopen_stuck_claim(db, admin, buyer, place):
    order_id = place()
    # a completion that died after claiming the order
    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "processing"}})

    with pytest.raises(PermissionDeniedError):
        reopen_order(db, order_id, buyer)

    reopened = transition_order(db, order_id, "pending", admin)
    assert reopened["status"] == "pending"
    assert complete_order(db, order_id, admin)["status"] == "completed"


def test_reopen_only_applies_to_processing(db, admin, place):
    order_id = place()
    with pytest.raises(ConflictError) as exc:
        reopen_order(db, order_id, admin)
    assert exc.value.extra["status"] == "pending"
