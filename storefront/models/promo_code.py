"""Promo code model."""
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Enum, JSON, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, IdType
import enum


class DiscountType(enum.Enum):
    """How discount_value is interpreted."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"


def normalize_code(code: str) -> str:
    """Codes are matched case-insensitively, ignoring surrounding whitespace."""
    return (code or '').strip().upper()


class PromoCode(Base):
    """
    Promo code definition plus its redemption counter.

    `current_uses` counts live reservations and committed applications. It is
    written only by the discount ledger.
    """

    __tablename__ = 'promo_code'
    __table_args__ = (
        CheckConstraint('current_uses >= 0', name='ck_promo_code_current_uses_non_negative'),
        CheckConstraint(
            'max_uses IS NULL OR current_uses <= max_uses',
            name='ck_promo_code_current_uses_within_max'
        ),
        CheckConstraint('max_uses_per_user >= 1', name='ck_promo_code_max_uses_per_user'),
    )

    id = Column(IdType, primary_key=True, autoincrement=True)
    code = Column(String(50), nullable=False, unique=True, index=True)
    description = Column(String(255))

    discount_type = Column(Enum(DiscountType, name='discount_type'), nullable=False)
    discount_value = Column(Integer, nullable=False)  # percentage 1-100, fixed = cents
    min_order_cents = Column(Integer)
    max_discount_cents = Column(Integer)

    max_uses = Column(Integer)
    max_uses_per_user = Column(Integer, nullable=False, default=1, server_default='1')
    current_uses = Column(Integer, nullable=False, default=0, server_default='0')

    applies_to_games = Column(Boolean, nullable=False, default=True)
    applies_to_merch = Column(Boolean, nullable=False, default=True)
    new_customers_only = Column(Boolean, nullable=False, default=False)

    # Optional targeting, lists of "<kind>:<item_id>" / customer keys
    specific_item_ids = Column(JSON)
    excluded_item_ids = Column(JSON)
    specific_customer_keys = Column(JSON)

    starts_at = Column(DateTime, nullable=False, server_default=func.now())
    expires_at = Column(DateTime)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())

    # Relationships
    applications = relationship('DiscountApplication', back_populates='promo_code')

    @property
    def remaining_uses(self):
        if self.max_uses is None:
            return None
        return max(0, self.max_uses - (self.current_uses or 0))

    def to_dict(self):
        """Public representation (no counters)."""
        return {
            'id': self.id,
            'code': self.code,
            'description': self.description,
            'discount_type': self.discount_type.value,
            'discount_value': self.discount_value,
        }

    def __repr__(self):
        return f"<PromoCode(code='{self.code}', uses={self.current_uses}/{self.max_uses})>"
