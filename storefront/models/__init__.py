"""Models package - exports all SQLAlchemy models."""
from storefront.models.promo_code import PromoCode, DiscountType, normalize_code
from storefront.models.promo_reservation import PromoReservation, ReservationStatus
from storefront.models.discount_application import DiscountApplication
from storefront.models.order import Order, OrderLine, OrderStatus, ORDER_TRANSITIONS
from storefront.models.order_status_history import OrderStatusHistory
from storefront.models.checkout_session import CheckoutSession, CheckoutState, CHECKOUT_TRANSITIONS
from storefront.models.payment_webhook_event import PaymentWebhookEvent

__all__ = [
    # Promo codes
    'PromoCode', 'DiscountType', 'normalize_code',
    'PromoReservation', 'ReservationStatus', 'DiscountApplication',
    # Orders
    'Order', 'OrderLine', 'OrderStatus', 'ORDER_TRANSITIONS', 'OrderStatusHistory',
    # Checkout
    'CheckoutSession', 'CheckoutState', 'CHECKOUT_TRANSITIONS',
    'PaymentWebhookEvent',
]
