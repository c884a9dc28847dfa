"""Promo reservation model (provisional claim on one use of a promo code)."""
from sqlalchemy import Column, BigInteger, String, DateTime, Enum, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, IdType
import enum


class ReservationStatus(enum.Enum):
    """Reservation lifecycle: ACTIVE -> COMMITTED | RELEASED | EXPIRED."""
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"


class PromoReservation(Base):
    """One unit of a promo code's quota held by an in-flight checkout."""

    __tablename__ = 'promo_reservation'

    id = Column(IdType, primary_key=True, autoincrement=True)
    token = Column(String(64), nullable=False, unique=True, index=True)
    promo_code_id = Column(BigInteger, ForeignKey('promo_code.id'), nullable=False, index=True)
    customer_key = Column(String(255), nullable=False, index=True)
    order_id = Column(BigInteger, ForeignKey('customer_order.id'), nullable=True)
    status = Column(
        Enum(ReservationStatus, name='reservation_status'),
        nullable=False,
        default=ReservationStatus.ACTIVE,
        index=True
    )
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    expires_at = Column(DateTime, nullable=False, index=True)
    closed_at = Column(DateTime)

    promo_code = relationship('PromoCode')

    @property
    def is_active(self):
        return self.status == ReservationStatus.ACTIVE

    def __repr__(self):
        return f"<PromoReservation(token='{self.token}', status={self.status.value})>"
