"""
Database Schemas for the digital goods storefront

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase of the class name.
Request payloads used by the API live at the bottom of the file.
"""
from typing import Optional, List, Literal, Dict
from pydantic import BaseModel, Field, EmailStr
from datetime import datetime

PlanType = Literal["monthly", "yearly", "lifetime", "account_access"]

SUBSCRIPTION_PLANS = ("monthly", "yearly", "lifetime")
ACCOUNT_ACCESS = "account_access"
STANDARD_PLAN = "default"


# Users collection
class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = None
    password_hash: str = Field(..., min_length=10)
    role: Literal["ADMIN", "user"] = "user"
    is_active: bool = True


# Products collection
class PlanPricing(BaseModel):
    is_enabled: bool = False
    price: float = Field(0, ge=0)
    regular_price: float = Field(0, ge=0)
    validity_label: str = ""
    description: str = ""
    access_link: str = ""  # secret
    access_note: str = ""  # secret


class AccountAccess(BaseModel):
    is_enabled: bool = False
    price: float = Field(0, ge=0)
    account_email: str = ""  # secret
    account_password: str = ""  # secret


class ProductPricing(BaseModel):
    monthly: PlanPricing = Field(default_factory=PlanPricing)
    yearly: PlanPricing = Field(default_factory=PlanPricing)
    lifetime: PlanPricing = Field(default_factory=PlanPricing)


class Product(BaseModel):
    title: str
    slug: str
    thumbnail: str = ""
    description: Optional[str] = None
    category: Optional[str] = None
    is_available: bool = True
    sales_count: int = Field(0, ge=0)

    default_price: float = Field(0, ge=0)
    sale_price: float = Field(0, ge=0)
    regular_price: float = Field(0, ge=0)

    pricing: ProductPricing = Field(default_factory=ProductPricing)
    account_access: AccountAccess = Field(default_factory=AccountAccess)

    # Standard tier delivery data
    access_link: str = ""  # secret
    access_note: str = ""  # secret


# Projection that hides delivery secrets from public product reads
PRODUCT_SECRET_FIELDS = (
    "access_link",
    "access_note",
    "pricing.monthly.access_link",
    "pricing.monthly.access_note",
    "pricing.yearly.access_link",
    "pricing.yearly.access_note",
    "pricing.lifetime.access_link",
    "pricing.lifetime.access_note",
    "account_access.account_email",
    "account_access.account_password",
)
PUBLIC_PRODUCT_PROJECTION: Dict[str, int] = {field: 0 for field in PRODUCT_SECRET_FIELDS}


# Cart line (client-held, persisted per cart key in the cart collection)
class CartLine(BaseModel):
    cart_id: str
    product_id: str
    name: str
    image: str = ""
    category: Optional[str] = None
    price: float = Field(..., ge=0)
    regular_price: float = Field(0, ge=0)
    quantity: int = Field(1, ge=1)
    plan_type: Optional[PlanType] = None
    validity: str = "Standard"


# Coupons collection
class Coupon(BaseModel):
    code: str = Field(..., min_length=1)
    discount_type: Literal["fixed", "percentage"]
    discount_amount: float = Field(..., gt=0)
    expiration_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    used_count: int = Field(0, ge=0)
    is_active: bool = True


# Orders collection
class OrderItem(BaseModel):
    product: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    title: str
    variant: str = "Standard"
    plan: str = STANDARD_PLAN


class DeliveredContent(BaseModel):
    account_email: str = ""
    account_password: str = ""
    download_link: str = ""
    access_notes: str = ""

    def is_empty(self) -> bool:
        return not any((self.account_email, self.account_password, self.download_link, self.access_notes))


class Order(BaseModel):
    user: str
    products: List[OrderItem]

    # Payment proof asserted by the buyer
    transaction_id: str
    sender_number: str = "N/A"
    payment_method: str = "Manual"

    subtotal: float = Field(..., ge=0)
    amount: float = Field(..., ge=0)
    discount_amount: Optional[float] = None
    coupon_code: Optional[str] = None
    coupon_redeemed: bool = False

    payment_status: Literal["unpaid", "paid", "failed"] = "unpaid"
    status: Literal["pending", "processing", "completed", "cancelled"] = "pending"
    delivered_content: DeliveredContent = Field(default_factory=DeliveredContent)
    completed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------

class RegisterPayload(BaseModel):
    name: str
    email: EmailStr
    password: str
    phone: Optional[str] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class ProductPayload(Product):
    # sales are counted by order completion only
    def to_product(self) -> Product:
        return Product(**self.model_dump(exclude={"sales_count"}))


class AddToCartPayload(BaseModel):
    product_id: str
    plan: Optional[str] = None
    quantity: int = Field(1, ge=1)


class QuantityPayload(BaseModel):
    quantity: int


class CouponValidatePayload(BaseModel):
    code: str = ""
    subtotal: float = Field(0, ge=0)


class CouponPayload(BaseModel):
    code: str = Field(..., min_length=1)
    discount_type: Literal["fixed", "percentage"]
    discount_amount: float = Field(..., gt=0)
    expiration_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    is_active: bool = True


class ContactInfo(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""


class PaymentProof(BaseModel):
    method: Optional[str] = None
    sender_number: Optional[str] = None
    transaction_id: Optional[str] = None


class CreateOrderPayload(BaseModel):
    contact: ContactInfo
    payment: PaymentProof = Field(default_factory=PaymentProof)
    items: List[CartLine] = Field(default_factory=list)
    cart_key: Optional[str] = None
    coupon_code: Optional[str] = None


class OrderUpdatePayload(BaseModel):
    status: Literal["completed", "declined", "cancelled", "pending"]
    delivered_content: Optional[DeliveredContent] = None
