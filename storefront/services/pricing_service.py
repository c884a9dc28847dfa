"""
Pricing calculator.

Pure and deterministic: the same cart and discount rule always produce the
same Pricing. Every amount is an integer number of cents and the tax rate is
an integer number of basis points, so no float ever touches a money value.
"""
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Mapping, Optional

from storefront.models.promo_code import DiscountType
from storefront.services.cart_service import CartLineItem, ItemKind


BASIS_POINTS = 10000


@dataclass(frozen=True)
class PricingSettings:
    """Store-wide pricing constants."""
    free_shipping_threshold_cents: int = 5000
    flat_shipping_cents: int = 999
    tax_rate_basis_points: int = 800

    @classmethod
    def from_config(cls, config: Mapping) -> 'PricingSettings':
        return cls(
            free_shipping_threshold_cents=int(config.get('FREE_SHIPPING_THRESHOLD_CENTS', 5000)),
            flat_shipping_cents=int(config.get('FLAT_SHIPPING_CENTS', 999)),
            tax_rate_basis_points=int(config.get('TAX_RATE_BASIS_POINTS', 800)),
        )


@dataclass(frozen=True)
class DiscountRule:
    """The pricing-relevant part of a promo code, detached from the session."""
    promo_code_id: int
    discount_type: DiscountType
    discount_value: int
    max_discount_cents: Optional[int] = None
    applies_to_games: bool = True
    applies_to_merch: bool = True
    specific_item_ids: FrozenSet[str] = field(default_factory=frozenset)
    excluded_item_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_promo(cls, promo) -> 'DiscountRule':
        return cls(
            promo_code_id=promo.id,
            discount_type=promo.discount_type,
            discount_value=promo.discount_value,
            max_discount_cents=promo.max_discount_cents,
            applies_to_games=bool(promo.applies_to_games),
            applies_to_merch=bool(promo.applies_to_merch),
            specific_item_ids=frozenset(promo.specific_item_ids or ()),
            excluded_item_ids=frozenset(promo.excluded_item_ids or ()),
        )

    def is_eligible(self, line: CartLineItem) -> bool:
        if line.item_kind == ItemKind.GAME and not self.applies_to_games:
            return False
        if line.item_kind == ItemKind.MERCH and not self.applies_to_merch:
            return False
        if self.specific_item_ids and line.target_key not in self.specific_item_ids:
            return False
        if line.target_key in self.excluded_item_ids:
            return False
        return True


@dataclass(frozen=True)
class Pricing:
    """Priced checkout totals, all in cents."""
    subtotal_cents: int
    eligible_subtotal_cents: int
    discount_cents: int
    shipping_cents: int
    taxable_cents: int
    tax_cents: int
    total_cents: int
    promo_code_id: Optional[int] = None

    def to_dict(self):
        return {
            'subtotal_cents': self.subtotal_cents,
            'eligible_subtotal_cents': self.eligible_subtotal_cents,
            'discount_cents': self.discount_cents,
            'shipping_cents': self.shipping_cents,
            'tax_cents': self.tax_cents,
            'total_cents': self.total_cents,
            'promo_code_id': self.promo_code_id,
        }


def eligible_subtotal_cents(cart: Iterable[CartLineItem], rule: Optional[DiscountRule] = None) -> int:
    """Sum of line totals the rule may discount (the whole cart without a rule)."""
    if rule is None:
        return sum(line.line_total_cents for line in cart)
    return sum(line.line_total_cents for line in cart if rule.is_eligible(line))


def compute_discount_cents(rule: DiscountRule, eligible_cents: int) -> int:
    """
    Discount for an eligible subtotal.

    percentage: floor(eligible * value / 100); fixed: value. The result is
    clamped to max_discount_cents and then to the eligible subtotal.
    """
    if eligible_cents <= 0:
        return 0

    if rule.discount_type == DiscountType.PERCENTAGE:
        discount = eligible_cents * rule.discount_value // 100
    else:
        discount = min(rule.discount_value, eligible_cents)

    if rule.max_discount_cents is not None:
        discount = min(discount, rule.max_discount_cents)

    return max(0, min(discount, eligible_cents))


def compute_tax_cents(taxable_cents: int, tax_rate_basis_points: int) -> int:
    """Flat-rate tax, rounded half up to the cent."""
    return (taxable_cents * tax_rate_basis_points + BASIS_POINTS // 2) // BASIS_POINTS


def compute_pricing(
    cart: Iterable[CartLineItem],
    rule: Optional[DiscountRule] = None,
    settings: PricingSettings = PricingSettings()
) -> Pricing:
    """Price a cart with an optional accepted discount."""
    lines = tuple(cart)
    subtotal = sum(line.line_total_cents for line in lines)
    eligible = eligible_subtotal_cents(lines, rule)
    discount = compute_discount_cents(rule, eligible) if rule else 0

    # Free shipping is judged on the merchandise subtotal, before discounts
    if subtotal > settings.free_shipping_threshold_cents:
        shipping = 0
    else:
        shipping = settings.flat_shipping_cents

    taxable = max(0, subtotal - discount)
    tax = compute_tax_cents(taxable, settings.tax_rate_basis_points)

    return Pricing(
        subtotal_cents=subtotal,
        eligible_subtotal_cents=eligible,
        discount_cents=discount,
        shipping_cents=shipping,
        taxable_cents=taxable,
        tax_cents=tax,
        total_cents=taxable + shipping + tax,
        promo_code_id=rule.promo_code_id if rule else None,
    )
