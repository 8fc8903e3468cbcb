"""
Shared fixtures: an in-memory MongoDB, the API client, an admin and a
catalog product with every pricing tier configured.
"""
import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import ADMIN_ROLE, register_user, token_for
from database import create_document, get_db
from main import app
from schemas import AccountAccess, Coupon, PlanPricing, Product, ProductPricing


def make_product(**overrides) -> Product:
    fields = dict(
        title="Python Mastery",
        slug="python-mastery",
        thumbnail="https://cdn.test/python.png",
        category="Courses",
        default_price=500,
        sale_price=0,
        regular_price=600,
        pricing=ProductPricing(
            monthly=PlanPricing(
                is_enabled=True, price=100, regular_price=150, validity_label="1 Month",
                access_link="https://vip.test/monthly", access_note="Monthly group invite",
            ),
            yearly=PlanPricing(
                is_enabled=True, price=900, regular_price=1200, validity_label="1 Year",
                access_link="https://vip.test/yearly", access_note="Yearly group invite",
            ),
            lifetime=PlanPricing(is_enabled=False, price=3000, validity_label="Lifetime"),
        ),
        account_access=AccountAccess(
            is_enabled=True, price=2000, account_email="shared@vault.test", account_password="s3cret",
        ),
        access_link="https://dl.test/standard",
        access_note="Standard download",
    )
    fields.update(overrides)
    return Product(**fields)


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def admin(db):
    return register_user(db, "Admin", "admin@storefront.io", "Admin@123", role=ADMIN_ROLE)


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {token_for(admin)}"}


@pytest.fixture
def buyer(db):
    return register_user(db, "Buyer", "buyer@shopmail.com", "Buyer@123", phone="01700000000")


@pytest.fixture
def buyer_headers(buyer):
    return {"Authorization": f"Bearer {token_for(buyer)}"}


@pytest.fixture
def product(db):
    """(product_id, Product) for a product with standard, monthly, yearly and account tiers."""
    model = make_product()
    return create_document("product", model, database=db), model


@pytest.fixture
def add_coupon(db):
    def _add(code="SAVE10", discount_type="percentage", discount_amount=10, **extra):
        coupon = Coupon(code=code, discount_type=discount_type, discount_amount=discount_amount, **extra)
        create_document("coupon", coupon, database=db)
        return coupon
    return _add


@pytest.fixture
def contact():
    return {"name": "Rahim", "email": "rahim@shopmail.com", "phone": "01811111111"}
