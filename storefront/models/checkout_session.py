"""Checkout session model - persistent state of one checkout attempt."""
from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Enum, JSON, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from storefront.database import Base, IdType
from storefront.exceptions import InvalidTransitionError
import enum


class CheckoutState(enum.Enum):
    """Checkout orchestration states."""
    SHIPPING_SELECTION = "shipping_selection"
    PAYMENT_SELECTION = "payment_selection"
    ORDER_CREATED = "order_created"
    AWAITING_PAYMENT_CONFIRMATION = "awaiting_payment_confirmation"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


CHECKOUT_TRANSITIONS = {
    CheckoutState.SHIPPING_SELECTION: {CheckoutState.PAYMENT_SELECTION, CheckoutState.CANCELLED},
    CheckoutState.PAYMENT_SELECTION: {CheckoutState.ORDER_CREATED, CheckoutState.CANCELLED},
    CheckoutState.ORDER_CREATED: {
        CheckoutState.AWAITING_PAYMENT_CONFIRMATION,
        CheckoutState.PAYMENT_FAILED,
        CheckoutState.CANCELLED,
    },
    CheckoutState.AWAITING_PAYMENT_CONFIRMATION: {
        CheckoutState.PAID,
        CheckoutState.PAYMENT_FAILED,
        CheckoutState.CANCELLED,
    },
    CheckoutState.PAYMENT_FAILED: {CheckoutState.AWAITING_PAYMENT_CONFIRMATION, CheckoutState.CANCELLED},
    CheckoutState.PAID: set(),
    CheckoutState.CANCELLED: set(),
}


class CheckoutSession(Base):
    """
    One checkout attempt for one customer.

    The cart snapshot is stored as JSON when checkout starts and is never
    modified afterwards. The last promo decision is kept together with the
    time it was made so that stale decisions get re-validated.
    """

    __tablename__ = 'checkout_session'

    id = Column(IdType, primary_key=True, autoincrement=True)
    customer_key = Column(String(255), nullable=False, index=True)
    state = Column(
        Enum(CheckoutState, name='checkout_state'),
        nullable=False,
        default=CheckoutState.SHIPPING_SELECTION
    )
    cart_json = Column(JSON, nullable=False)

    shipping_address_ref = Column(String(128))
    payment_method_ref = Column(String(128))

    # Last accepted promo decision
    promo_code = Column(String(50))
    promo_code_id = Column(BigInteger, ForeignKey('promo_code.id'), nullable=True)
    promo_validated_at = Column(DateTime)
    promo_notice = Column(String(50))  # last rejection / race-loss result shown to the customer

    order_id = Column(BigInteger, ForeignKey('customer_order.id'), nullable=True)
    reservation_token = Column(String(64))
    payment_attempts = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    # Relationships
    order = relationship('Order')

    def transition_to(self, target: CheckoutState):
        if target not in CHECKOUT_TRANSITIONS[self.state]:
            raise InvalidTransitionError('Checkout', self.state, target)
        self.state = target

    def clear_promo(self):
        self.promo_code = None
        self.promo_code_id = None
        self.promo_validated_at = None

    def to_dict(self):
        return {
            'id': self.id,
            'state': self.state.value,
            'shipping_address_ref': self.shipping_address_ref,
            'payment_method_ref': self.payment_method_ref,
            'promo_code': self.promo_code,
            'promo_notice': self.promo_notice,
            'order_id': self.order_id,
            'payment_attempts': self.payment_attempts,
        }

    def __repr__(self):
        return f"<CheckoutSession(id={self.id}, state={self.state.value})>"
