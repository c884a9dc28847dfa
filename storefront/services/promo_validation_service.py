"""
Promo code validator.

Validation is advisory: it runs without locks and may be overtaken by a
concurrent checkout. The authoritative usage check is the ledger reservation.
Rejections are returned as PromoDecision values, never raised.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func

from storefront.metrics import promo_validations_total
from storefront.models import PromoCode, Order, OrderStatus, DiscountApplication, normalize_code
from storefront.services.cart_service import CartLineItem
from storefront.services.pricing_service import (
    DiscountRule, compute_discount_cents, eligible_subtotal_cents
)
from storefront.utils.clock import utcnow
from storefront.utils.formatters import money, discount_label

logger = logging.getLogger(__name__)


class PromoResult(str, enum.Enum):
    """Result codes returned to the UI layer."""
    ACCEPTED = 'ACCEPTED'
    CODE_NOT_FOUND = 'CODE_NOT_FOUND'
    CODE_EXPIRED = 'CODE_EXPIRED'
    CODE_NOT_YET_ACTIVE = 'CODE_NOT_YET_ACTIVE'
    NOT_APPLICABLE_TO_CART = 'NOT_APPLICABLE_TO_CART'
    BELOW_MINIMUM_ORDER = 'BELOW_MINIMUM_ORDER'
    NEW_CUSTOMERS_ONLY_RESTRICTION = 'NEW_CUSTOMERS_ONLY_RESTRICTION'
    USAGE_LIMIT_REACHED = 'USAGE_LIMIT_REACHED'
    PER_USER_LIMIT_REACHED = 'PER_USER_LIMIT_REACHED'
    PROMO_NO_LONGER_AVAILABLE = 'PROMO_NO_LONGER_AVAILABLE'


REJECTION_MESSAGES = {
    PromoResult.CODE_NOT_FOUND: 'Invalid promo code',
    PromoResult.CODE_EXPIRED: 'This promo code has expired',
    PromoResult.CODE_NOT_YET_ACTIVE: 'This promo code is not yet active',
    PromoResult.NOT_APPLICABLE_TO_CART: 'This promo code does not apply to any items in your cart',
    PromoResult.NEW_CUSTOMERS_ONLY_RESTRICTION: 'This promo code is for new customers only',
    PromoResult.USAGE_LIMIT_REACHED: 'This promo code has reached its usage limit',
    PromoResult.PER_USER_LIMIT_REACHED: 'You have already used this promo code',
    PromoResult.PROMO_NO_LONGER_AVAILABLE: 'This promo code is no longer available; your order was priced without it',
}


@dataclass(frozen=True)
class PromoDecision:
    """Outcome of validating a code against a cart."""
    result: PromoResult
    message: str
    promo_code_id: Optional[int] = None
    code: Optional[str] = None
    discount_cents: int = 0
    eligible_subtotal_cents: int = 0
    eligible_item_count: int = 0

    @property
    def accepted(self) -> bool:
        return self.result == PromoResult.ACCEPTED

    @classmethod
    def reject(cls, result: PromoResult, message: str = None, code: str = None) -> 'PromoDecision':
        return cls(result=result, message=message or REJECTION_MESSAGES[result], code=code)

    def to_dict(self):
        data = {
            'valid': self.accepted,
            'result': self.result.value,
            'message': self.message,
            'code': self.code,
        }
        if self.accepted:
            data['promo_code_id'] = self.promo_code_id
            data['discount'] = {
                'cents': self.discount_cents,
                'formatted': money(self.discount_cents),
                'eligible_item_count': self.eligible_item_count,
            }
        return data


@dataclass(frozen=True)
class CustomerPromoHistory:
    """What the validator needs to know about the customer's past."""
    paid_order_count: int = 0
    code_application_count: int = 0


def evaluate_promo_code(
    promo: Optional[PromoCode],
    cart: Iterable[CartLineItem],
    customer_key: str,
    now: datetime,
    history: CustomerPromoHistory = CustomerPromoHistory()
) -> PromoDecision:
    """
    Run the validation rules in their fixed order, stopping at the first failure.

    1. exists and active         5. new customers only
    2. validity window           6. global usage (advisory)
    3. applicability             7. per-customer usage
    4. minimum order (eligible subtotal)
    """
    lines = tuple(cart)

    if promo is None or not promo.is_active:
        return PromoDecision.reject(PromoResult.CODE_NOT_FOUND)
    code = promo.code

    # Restricted codes are indistinguishable from unknown ones
    if promo.specific_customer_keys and customer_key not in promo.specific_customer_keys:
        return PromoDecision.reject(PromoResult.CODE_NOT_FOUND, code=code)

    if promo.starts_at is not None and now < promo.starts_at:
        return PromoDecision.reject(PromoResult.CODE_NOT_YET_ACTIVE, code=code)
    if promo.expires_at is not None and now >= promo.expires_at:
        return PromoDecision.reject(PromoResult.CODE_EXPIRED, code=code)

    rule = DiscountRule.from_promo(promo)
    eligible_lines = [line for line in lines if rule.is_eligible(line)]
    if not eligible_lines:
        return PromoDecision.reject(PromoResult.NOT_APPLICABLE_TO_CART, code=code)

    eligible_cents = eligible_subtotal_cents(eligible_lines)
    if promo.min_order_cents and eligible_cents < promo.min_order_cents:
        return PromoDecision.reject(
            PromoResult.BELOW_MINIMUM_ORDER,
            message=f"Minimum order of {money(promo.min_order_cents)} required for this promo code",
            code=code
        )

    if promo.new_customers_only and history.paid_order_count > 0:
        return PromoDecision.reject(PromoResult.NEW_CUSTOMERS_ONLY_RESTRICTION, code=code)

    if promo.max_uses is not None and (promo.current_uses or 0) >= promo.max_uses:
        return PromoDecision.reject(PromoResult.USAGE_LIMIT_REACHED, code=code)

    if history.code_application_count >= (promo.max_uses_per_user or 1):
        return PromoDecision.reject(PromoResult.PER_USER_LIMIT_REACHED, code=code)

    discount = compute_discount_cents(rule, eligible_cents)
    return PromoDecision(
        result=PromoResult.ACCEPTED,
        message=f"{discount_label(promo.discount_type.value, promo.discount_value)} applied!",
        promo_code_id=promo.id,
        code=code,
        discount_cents=discount,
        eligible_subtotal_cents=eligible_cents,
        eligible_item_count=len(eligible_lines),
    )


def find_promo_code(session, code: str) -> Optional[PromoCode]:
    normalized = normalize_code(code)
    if not normalized:
        return None
    return session.query(PromoCode).filter(PromoCode.code == normalized).first()


def load_customer_history(session, promo: PromoCode, customer_key: str) -> CustomerPromoHistory:
    """Count the customer's paid orders and prior applications of this code."""
    paid_orders = 0
    if promo.new_customers_only:
        paid_orders = session.query(func.count(Order.id)).filter(
            Order.customer_key == customer_key,
            Order.status == OrderStatus.PAID
        ).scalar() or 0

    applications = session.query(func.count(DiscountApplication.id)).filter(
        DiscountApplication.promo_code_id == promo.id,
        DiscountApplication.customer_key == customer_key
    ).scalar() or 0

    return CustomerPromoHistory(paid_order_count=paid_orders, code_application_count=applications)


def validate_promo_code(
    session,
    code: str,
    cart: Iterable[CartLineItem],
    customer_key: str,
    now: Optional[datetime] = None
) -> PromoDecision:
    """Load promo state and evaluate `code` for this cart and customer."""
    now = now or utcnow()
    promo = find_promo_code(session, code)

    history = CustomerPromoHistory()
    if promo is not None and promo.is_active:
        history = load_customer_history(session, promo, customer_key)

    decision = evaluate_promo_code(promo, cart, customer_key, now, history)

    promo_validations_total.labels(result=decision.result.value).inc()

    if decision.accepted:
        logger.info(f"[PROMO] {decision.code} accepted for {customer_key}: {decision.discount_cents} cents")
    else:
        logger.info(f"[PROMO] {normalize_code(code)} rejected for {customer_key}: {decision.result.value}")
    return decision
