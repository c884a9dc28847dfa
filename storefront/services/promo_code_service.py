"""Promo code administration."""
import logging
from datetime import datetime
from typing import Iterable, Optional

from storefront.exceptions import BusinessLogicError
from storefront.models import PromoCode, DiscountType, normalize_code
from storefront.utils.clock import utcnow

logger = logging.getLogger(__name__)


def create_promo_code(
    session,
    code: str,
    discount_type: str,
    discount_value: int,
    description: Optional[str] = None,
    min_order_cents: Optional[int] = None,
    max_discount_cents: Optional[int] = None,
    max_uses: Optional[int] = None,
    max_uses_per_user: int = 1,
    applies_to_games: bool = True,
    applies_to_merch: bool = True,
    new_customers_only: bool = False,
    specific_item_ids: Optional[Iterable[str]] = None,
    excluded_item_ids: Optional[Iterable[str]] = None,
    specific_customer_keys: Optional[Iterable[str]] = None,
    starts_at: Optional[datetime] = None,
    expires_at: Optional[datetime] = None,
) -> PromoCode:
    """
    Validate and persist a new promo code.

    Raises:
        BusinessLogicError: invalid values or duplicate code
    """
    normalized = normalize_code(code)
    if not normalized:
        raise BusinessLogicError('Code is required')

    try:
        kind = DiscountType(discount_type)
    except ValueError:
        raise BusinessLogicError(f'Unknown discount type: {discount_type}')

    if kind == DiscountType.PERCENTAGE and not 1 <= discount_value <= 100:
        raise BusinessLogicError('Percentage discounts must be between 1 and 100')
    if kind == DiscountType.FIXED and discount_value <= 0:
        raise BusinessLogicError('Fixed discounts must be positive')
    if max_uses is not None and max_uses < 1:
        raise BusinessLogicError('max_uses must be at least 1')
    if max_uses_per_user < 1:
        raise BusinessLogicError('max_uses_per_user must be at least 1')
    if not applies_to_games and not applies_to_merch:
        raise BusinessLogicError('A promo code must apply to games or merch')

    starts_at = starts_at or utcnow()
    if expires_at is not None and expires_at <= starts_at:
        raise BusinessLogicError('expires_at must be after starts_at')

    if session.query(PromoCode).filter(PromoCode.code == normalized).first():
        raise BusinessLogicError(f'Promo code {normalized} already exists')

    promo = PromoCode(
        code=normalized,
        description=description,
        discount_type=kind,
        discount_value=discount_value,
        min_order_cents=min_order_cents,
        max_discount_cents=max_discount_cents,
        max_uses=max_uses,
        max_uses_per_user=max_uses_per_user,
        current_uses=0,
        applies_to_games=applies_to_games,
        applies_to_merch=applies_to_merch,
        new_customers_only=new_customers_only,
        specific_item_ids=list(specific_item_ids) if specific_item_ids else None,
        excluded_item_ids=list(excluded_item_ids) if excluded_item_ids else None,
        specific_customer_keys=list(specific_customer_keys) if specific_customer_keys else None,
        starts_at=starts_at,
        expires_at=expires_at,
        is_active=True,
    )
    session.add(promo)
    session.commit()

    logger.info(f"[PROMO] Created promo code {promo.code} ({kind.value} {discount_value})")
    return promo
