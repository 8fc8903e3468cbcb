"""
Pricing resolution for products sold under several concurrent plans.

A product has a standard tier (default/sale/regular price), up to three
subscription plans and an optional account-access plan. Only enabled plans
can be priced; anything else resolves to the standard tier so a selection
is never left unpriced.
"""
import math
from typing import List, NamedTuple, Optional

from schemas import ACCOUNT_ACCESS, STANDARD_PLAN, SUBSCRIPTION_PLANS, Product

STANDARD_LABEL = "Standard"
ACCOUNT_ACCESS_LABEL = "Full Account Access"
VIP_FALLBACK_LABEL = "VIP Access"


class ResolvedPrice(NamedTuple):
    unit_price: float
    reference_price: float
    validity_label: str
    plan_key: str

    @property
    def discount_percent(self) -> int:
        return discount_percent(self.unit_price, self.reference_price)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def discount_percent(unit_price: float, reference_price: float) -> int:
    if reference_price <= unit_price:
        return 0
    return round_half_up((reference_price - unit_price) / reference_price * 100)


def plan_is_enabled(product: Product, plan_key: Optional[str]) -> bool:
    if plan_key in SUBSCRIPTION_PLANS:
        return getattr(product.pricing, plan_key).is_enabled
    if plan_key == ACCOUNT_ACCESS:
        return product.account_access.is_enabled
    return False


def available_plans(product: Product) -> List[str]:
    plans = [key for key in SUBSCRIPTION_PLANS if getattr(product.pricing, key).is_enabled]
    if product.account_access.is_enabled:
        plans.append(ACCOUNT_ACCESS)
    return plans


def standard_price(product: Product) -> ResolvedPrice:
    unit = product.sale_price if product.sale_price > 0 else product.default_price
    return ResolvedPrice(unit, product.regular_price, STANDARD_LABEL, STANDARD_PLAN)


def resolve_price(product: Product, requested_plan: Optional[str] = None) -> ResolvedPrice:
    """
    Return the effective unit price, reference price, validity label and
    canonical plan key for `requested_plan` on `product`.

    Disabled or unknown plans fall back to the standard tier.
    """
    if requested_plan in SUBSCRIPTION_PLANS:
        plan = getattr(product.pricing, requested_plan)
        if plan.is_enabled:
            label = plan.validity_label.strip() or VIP_FALLBACK_LABEL
            return ResolvedPrice(plan.price, plan.regular_price, label, requested_plan)
    elif requested_plan == ACCOUNT_ACCESS:
        if product.account_access.is_enabled:
            return ResolvedPrice(product.account_access.price, 0, ACCOUNT_ACCESS_LABEL, ACCOUNT_ACCESS)
    return standard_price(product)
