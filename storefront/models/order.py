"""Order model and its status state machine."""
from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Enum, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, IdType
from storefront.exceptions import InvalidTransitionError
from storefront.utils.clock import utcnow
import enum


class OrderStatus(enum.Enum):
    """Order status enum."""
    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


# PAID and CANCELLED are terminal; PAYMENT_FAILED -> PENDING_PAYMENT is the retry path.
ORDER_TRANSITIONS = {
    OrderStatus.DRAFT: {OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED},
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PAID, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED},
    OrderStatus.PAYMENT_FAILED: {OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED},
    OrderStatus.PAID: set(),
    OrderStatus.CANCELLED: set(),
}


class Order(Base):
    """
    Customer order priced from a frozen copy of the cart snapshot.

    Lines are copied at creation and never re-read from the cart.
    """

    __tablename__ = 'customer_order'

    id = Column(IdType, primary_key=True, autoincrement=True)
    customer_key = Column(String(255), nullable=False, index=True)
    status = Column(Enum(OrderStatus, name='order_status'), nullable=False, default=OrderStatus.DRAFT, index=True)

    subtotal_cents = Column(Integer, nullable=False, default=0)
    discount_cents = Column(Integer, nullable=False, default=0)
    shipping_cents = Column(Integer, nullable=False, default=0)
    tax_cents = Column(Integer, nullable=False, default=0)
    total_cents = Column(Integer, nullable=False, default=0)

    promo_code_id = Column(BigInteger, ForeignKey('promo_code.id'), nullable=True)
    payment_intent_ref = Column(String(128), index=True)

    shipping_address_ref = Column(String(128))
    payment_method_ref = Column(String(128))

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())
    paid_at = Column(DateTime)

    # Relationships
    promo_code = relationship('PromoCode')
    lines = relationship('OrderLine', back_populates='order', cascade='all, delete-orphan',
                         order_by='OrderLine.id')
    status_history = relationship('OrderStatusHistory', back_populates='order',
                                  cascade='all, delete-orphan', order_by='OrderStatusHistory.id')

    @property
    def is_terminal(self):
        return not ORDER_TRANSITIONS[self.status]

    def can_transition_to(self, target: OrderStatus) -> bool:
        return target in ORDER_TRANSITIONS[self.status]

    def transition_to(self, target: OrderStatus, note: str = None):
        """Move to `target`, recording history. Raises InvalidTransitionError."""
        if not self.can_transition_to(target):
            raise InvalidTransitionError('Order', self.status, target)

        from storefront.models.order_status_history import OrderStatusHistory
        previous = self.status
        self.status = target
        self.status_history.append(OrderStatusHistory(
            from_status=previous.value,
            to_status=target.value,
            note=note,
            created_at=utcnow()
        ))

    def apply_pricing(self, pricing, promo_code_id=None):
        """Copy computed totals onto the order."""
        self.subtotal_cents = pricing.subtotal_cents
        self.discount_cents = pricing.discount_cents
        self.shipping_cents = pricing.shipping_cents
        self.tax_cents = pricing.tax_cents
        self.total_cents = pricing.total_cents
        self.promo_code_id = promo_code_id

    def to_dict(self):
        return {
            'id': self.id,
            'status': self.status.value,
            'subtotal_cents': self.subtotal_cents,
            'discount_cents': self.discount_cents,
            'shipping_cents': self.shipping_cents,
            'tax_cents': self.tax_cents,
            'total_cents': self.total_cents,
            'promo_code_id': self.promo_code_id,
            'payment_intent_ref': self.payment_intent_ref,
            'lines': [line.to_dict() for line in self.lines],
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
        }

    def __repr__(self):
        return f"<Order(id={self.id}, total_cents={self.total_cents}, status={self.status.value})>"


class OrderLine(Base):
    """Order line copied from a cart line item."""

    __tablename__ = 'order_line'

    id = Column(IdType, primary_key=True, autoincrement=True)
    order_id = Column(BigInteger, ForeignKey('customer_order.id', ondelete='CASCADE'), nullable=False, index=True)
    item_id = Column(String(64), nullable=False)
    item_kind = Column(String(10), nullable=False)  # 'game' or 'merch'
    variant = Column(String(50))
    unit_price_cents = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    line_total_cents = Column(Integer, nullable=False)

    order = relationship('Order', back_populates='lines')

    def to_dict(self):
        return {
            'item_id': self.item_id,
            'item_kind': self.item_kind,
            'variant': self.variant,
            'unit_price_cents': self.unit_price_cents,
            'quantity': self.quantity,
            'line_total_cents': self.line_total_cents,
        }

    def __repr__(self):
        return f"<OrderLine(item={self.item_kind}:{self.item_id}, qty={self.quantity})>"
