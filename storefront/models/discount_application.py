"""Discount application model (one per paid order that used a promo code)."""
from sqlalchemy import Column, BigInteger, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, IdType


class DiscountApplication(Base):
    """
    Permanent record of a redeemed promo code.

    Written only by DiscountLedger.commit. The unique order_id makes a
    replayed confirmation a no-op.
    """

    __tablename__ = 'discount_application'

    id = Column(IdType, primary_key=True, autoincrement=True)
    promo_code_id = Column(BigInteger, ForeignKey('promo_code.id'), nullable=False, index=True)
    order_id = Column(BigInteger, ForeignKey('customer_order.id'), nullable=False, unique=True)
    customer_key = Column(String(255), nullable=False, index=True)
    discount_cents = Column(Integer, nullable=False)
    applied_at = Column(DateTime, nullable=False, server_default=func.now())

    # Relationships
    promo_code = relationship('PromoCode', back_populates='applications')
    order = relationship('Order')

    def __repr__(self):
        return f"<DiscountApplication(promo_code_id={self.promo_code_id}, order_id={self.order_id})>"
