"""
Checkout orchestration.

    shipping_selection -> payment_selection -> order_created
        -> awaiting_payment_confirmation -> paid | payment_failed

payment_failed allows a single retry (new payment intent); a second failure
cancels the order and the customer has to start a new checkout. Each public
method is one unit of work: it commits on success and rolls back on error.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping, Optional, Tuple

from storefront.exceptions import (
    StorefrontError, BusinessLogicError, NotFoundError, InvalidTransitionError,
    CheckoutFailedError, PaymentGatewayError, InvariantViolationError, ReservationLapsedError
)
from storefront.metrics import checkout_orders_total
from storefront.models import (
    CheckoutSession, CheckoutState, Order, OrderLine, OrderStatus, PromoCode
)
from storefront.services.cart_service import CartLineItem, parse_cart, serialize_cart
from storefront.services.discount_ledger import DiscountLedger, DEFAULT_RESERVATION_TTL_SECONDS
from storefront.services.payment_gateway import PaymentGateway, IntentStatus
from storefront.services.pricing_service import (
    DiscountRule, Pricing, PricingSettings, compute_pricing
)
from storefront.services.promo_validation_service import (
    PromoDecision, PromoResult, validate_promo_code
)
from storefront.utils.clock import utcnow

logger = logging.getLogger(__name__)

MAX_PAYMENT_ATTEMPTS = 2


@dataclass(frozen=True)
class CheckoutSettings:
    """Checkout tunables, normally read from the Flask config."""
    pricing: PricingSettings = PricingSettings()
    promo_revalidation_seconds: int = 300
    reservation_ttl_seconds: int = DEFAULT_RESERVATION_TTL_SECONDS
    gateway_max_attempts: int = 3
    gateway_backoff_seconds: float = 0.5
    store_open: bool = True

    @classmethod
    def from_config(cls, config: Mapping) -> 'CheckoutSettings':
        return cls(
            pricing=PricingSettings.from_config(config),
            promo_revalidation_seconds=int(config.get('PROMO_REVALIDATION_SECONDS', 300)),
            reservation_ttl_seconds=int(config.get('PROMO_RESERVATION_TTL_SECONDS', DEFAULT_RESERVATION_TTL_SECONDS)),
            gateway_max_attempts=int(config.get('GATEWAY_MAX_ATTEMPTS', 3)),
            gateway_backoff_seconds=float(config.get('GATEWAY_BACKOFF_SECONDS', 0.5)),
            store_open=bool(config.get('STORE_OPEN', True)),
        )


@dataclass(frozen=True)
class PromoQuote:
    """Promo decision together with the pricing it produces."""
    decision: PromoDecision
    pricing: Pricing


@dataclass(frozen=True)
class PlacedOrder:
    """Result of placing (or re-pricing) an order."""
    checkout: CheckoutSession
    order: Order
    notice: Optional[PromoResult] = None


class CheckoutService:
    """Drives a CheckoutSession through its states."""

    def __init__(self, session, gateway: PaymentGateway, settings: Optional[CheckoutSettings] = None):
        self.session = session
        self.gateway = gateway
        self.settings = settings or CheckoutSettings()
        self.ledger = DiscountLedger(session, ttl_seconds=self.settings.reservation_ttl_seconds)

    # =====================================================
    # LOOKUPS
    # =====================================================

    def get_checkout(self, checkout_id: int, customer_key: Optional[str] = None) -> CheckoutSession:
        checkout = self.session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
        if not checkout or (customer_key is not None and checkout.customer_key != customer_key):
            raise NotFoundError('Checkout not found')
        return checkout

    def get_order(self, order_id: int, customer_key: Optional[str] = None) -> Order:
        order = self.session.query(Order).filter(Order.id == order_id).first()
        if not order or (customer_key is not None and order.customer_key != customer_key):
            raise NotFoundError('Order not found')
        return order

    def cart_of(self, checkout: CheckoutSession) -> Tuple[CartLineItem, ...]:
        return parse_cart(checkout.cart_json)

    def preview_pricing(self, checkout: CheckoutSession) -> Pricing:
        """Pricing with the currently attached promo code, without re-validating it."""
        rule = None
        if checkout.promo_code_id:
            promo = self.session.get(PromoCode, checkout.promo_code_id)
            if promo is not None:
                rule = DiscountRule.from_promo(promo)
        return compute_pricing(self.cart_of(checkout), rule, self.settings.pricing)

    # =====================================================
    # SHIPPING / PAYMENT SELECTION
    # =====================================================

    def start_checkout(self, cart: Iterable[CartLineItem], customer_key: str) -> CheckoutSession:
        """Freeze the cart snapshot and open a checkout in shipping_selection."""
        lines = tuple(cart)
        if not lines:
            raise BusinessLogicError('Cart is empty')
        if not customer_key:
            raise BusinessLogicError('customer_key is required')

        checkout = CheckoutSession(
            customer_key=customer_key,
            state=CheckoutState.SHIPPING_SELECTION,
            cart_json=serialize_cart(lines),
            payment_attempts=0
        )
        self.session.add(checkout)
        self._commit()
        logger.info(f"[CHECKOUT] Started checkout {checkout.id} for {customer_key} ({len(lines)} lines)")
        return checkout

    def select_shipping(self, checkout_id: int, address_ref: str, customer_key: Optional[str] = None) -> CheckoutSession:
        checkout = self.get_checkout(checkout_id, customer_key)
        if not address_ref:
            raise BusinessLogicError('A shipping address is required')

        if checkout.state == CheckoutState.SHIPPING_SELECTION:
            checkout.transition_to(CheckoutState.PAYMENT_SELECTION)
        elif checkout.state != CheckoutState.PAYMENT_SELECTION:
            raise InvalidTransitionError('Checkout', checkout.state, CheckoutState.PAYMENT_SELECTION)

        checkout.shipping_address_ref = address_ref
        self._commit()
        return checkout

    def select_payment_method(self, checkout_id: int, payment_method_ref: str,
                              customer_key: Optional[str] = None) -> CheckoutSession:
        checkout = self.get_checkout(checkout_id, customer_key)
        self._require_state(checkout, CheckoutState.PAYMENT_SELECTION)
        if not payment_method_ref:
            raise BusinessLogicError('A payment method is required')

        checkout.payment_method_ref = payment_method_ref
        self._commit()
        return checkout

    def apply_promo_code(self, checkout_id: int, code: str, customer_key: Optional[str] = None,
                         now: Optional[datetime] = None) -> PromoQuote:
        """Validate a code during payment selection and remember the decision."""
        now = now or utcnow()
        checkout = self.get_checkout(checkout_id, customer_key)
        self._require_state(checkout, CheckoutState.PAYMENT_SELECTION)

        cart = self.cart_of(checkout)
        decision = validate_promo_code(self.session, code, cart, checkout.customer_key, now)

        if decision.accepted:
            checkout.promo_code = decision.code
            checkout.promo_code_id = decision.promo_code_id
            checkout.promo_validated_at = now
            checkout.promo_notice = None
        else:
            checkout.clear_promo()
            checkout.promo_notice = decision.result.value

        pricing = self.preview_pricing(checkout)
        self._commit()
        return PromoQuote(decision=decision, pricing=pricing)

    def remove_promo_code(self, checkout_id: int, customer_key: Optional[str] = None) -> Pricing:
        checkout = self.get_checkout(checkout_id, customer_key)
        self._require_state(checkout, CheckoutState.PAYMENT_SELECTION)
        checkout.clear_promo()
        checkout.promo_notice = None
        pricing = self.preview_pricing(checkout)
        self._commit()
        return pricing

    # =====================================================
    # ORDER CREATION
    # =====================================================

    def place_order(self, checkout_id: int, customer_key: Optional[str] = None,
                    now: Optional[datetime] = None) -> PlacedOrder:
        """
        Price and persist the order, reserving the promo code if one is attached.

        Losing the reservation race is not an error: the order is re-priced
        without the discount and the notice PROMO_NO_LONGER_AVAILABLE is returned.
        Calling this again for the same checkout returns the existing order.
        """
        now = now or utcnow()
        checkout = self.get_checkout(checkout_id, customer_key)

        if checkout.order_id is not None:
            notice = PromoResult(checkout.promo_notice) if checkout.promo_notice else None
            return PlacedOrder(checkout=checkout, order=checkout.order, notice=notice)

        self._require_state(checkout, CheckoutState.PAYMENT_SELECTION)
        if not checkout.shipping_address_ref:
            raise BusinessLogicError('Select a shipping address first')
        if not checkout.payment_method_ref:
            raise BusinessLogicError('Select a payment method first')

        try:
            cart = self.cart_of(checkout)
            rule, notice = self._current_rule(checkout, cart, now)
            pricing = compute_pricing(cart, rule, self.settings.pricing)

            order = Order(
                customer_key=checkout.customer_key,
                status=OrderStatus.DRAFT,
                shipping_address_ref=checkout.shipping_address_ref,
                payment_method_ref=checkout.payment_method_ref,
                created_at=now
            )
            order.lines = [
                OrderLine(
                    item_id=line.item_id,
                    item_kind=line.item_kind.value,
                    variant=line.variant,
                    unit_price_cents=line.unit_price_cents,
                    quantity=line.quantity,
                    line_total_cents=line.line_total_cents
                )
                for line in cart
            ]
            order.apply_pricing(pricing, rule.promo_code_id if rule else None)
            self.session.add(order)
            self.session.flush()

            if rule is not None:
                reservation = self.ledger.try_reserve(rule.promo_code_id, checkout.customer_key, order.id, now)
                if reservation.reserved:
                    checkout.reservation_token = reservation.token
                else:
                    logger.info(
                        f"[CHECKOUT] Order {order.id} lost promo {rule.promo_code_id} "
                        f"({reservation.result.value}); re-pricing without discount"
                    )
                    notice = PromoResult.PROMO_NO_LONGER_AVAILABLE
                    order.apply_pricing(compute_pricing(cart, None, self.settings.pricing), None)
                    checkout.clear_promo()

            order.transition_to(OrderStatus.PENDING_PAYMENT, note='Order created')
            checkout.order_id = order.id
            checkout.order = order
            checkout.promo_notice = notice.value if notice else None
            checkout.transition_to(CheckoutState.ORDER_CREATED)
            self._commit()
        except StorefrontError:
            self.session.rollback()
            raise

        self._count_order(OrderStatus.PENDING_PAYMENT)
        logger.info(f"[CHECKOUT] Order {order.id} created: {order.total_cents} cents (discount {order.discount_cents})")
        return PlacedOrder(checkout=checkout, order=order, notice=notice)

    def _current_rule(self, checkout: CheckoutSession, cart, now: datetime):
        """Discount rule to price with, re-validating a stale decision first."""
        if not checkout.promo_code_id:
            return None, None

        window = timedelta(seconds=self.settings.promo_revalidation_seconds)
        if checkout.promo_validated_at is None or now - checkout.promo_validated_at > window:
            decision = validate_promo_code(self.session, checkout.promo_code, cart, checkout.customer_key, now)
            if not decision.accepted:
                logger.info(f"[CHECKOUT] Promo {checkout.promo_code} no longer valid: {decision.result.value}")
                checkout.clear_promo()
                return None, decision.result
            checkout.promo_validated_at = now

        promo = self.session.get(PromoCode, checkout.promo_code_id)
        if promo is None:
            checkout.clear_promo()
            return None, PromoResult.CODE_NOT_FOUND
        return DiscountRule.from_promo(promo), None

    # =====================================================
    # PAYMENT
    # =====================================================

    def request_payment(self, checkout_id: int, customer_key: Optional[str] = None,
                        now: Optional[datetime] = None) -> Order:
        """Create the payment intent for exactly the order total."""
        now = now or utcnow()
        checkout = self.get_checkout(checkout_id, customer_key)
        order = checkout.order

        if checkout.state == CheckoutState.AWAITING_PAYMENT_CONFIRMATION and order.payment_intent_ref:
            return order
        self._require_state(checkout, CheckoutState.ORDER_CREATED, target=CheckoutState.AWAITING_PAYMENT_CONFIRMATION)

        if not self.settings.store_open:
            raise BusinessLogicError('The store is not open for orders yet', status_code=503)
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise InvalidTransitionError('Order', order.status, OrderStatus.PENDING_PAYMENT)

        return self._start_payment_attempt(checkout, order, now)

    def retry_payment(self, checkout_id: int, customer_key: Optional[str] = None,
                      now: Optional[datetime] = None) -> PlacedOrder:
        """The single permitted retry after a failed payment."""
        now = now or utcnow()
        checkout = self.get_checkout(checkout_id, customer_key)

        if checkout.state == CheckoutState.CANCELLED:
            raise CheckoutFailedError(payload={'checkout_id': checkout.id})
        self._require_state(checkout, CheckoutState.PAYMENT_FAILED, target=CheckoutState.AWAITING_PAYMENT_CONFIRMATION)

        order = checkout.order
        notice = None
        try:
            if order.promo_code_id:
                reservation = self.ledger.try_reserve(order.promo_code_id, checkout.customer_key, order.id, now)
                if reservation.reserved:
                    checkout.reservation_token = reservation.token
                else:
                    notice = PromoResult.PROMO_NO_LONGER_AVAILABLE
                    order.apply_pricing(compute_pricing(self.cart_of(checkout), None, self.settings.pricing), None)
                    checkout.clear_promo()
                    checkout.promo_notice = notice.value

            order.transition_to(OrderStatus.PENDING_PAYMENT, note='Payment retry')
            order.payment_intent_ref = None
        except StorefrontError:
            self.session.rollback()
            raise

        order = self._start_payment_attempt(checkout, order, now)
        return PlacedOrder(checkout=checkout, order=order, notice=notice)

    def confirm_payment(self, order_id: int, customer_key: Optional[str] = None,
                        now: Optional[datetime] = None) -> Tuple[Order, IntentStatus]:
        """Client-side success callback: ask the gateway and apply its answer."""
        order, status = self.sync_payment_status(order_id, customer_key, now=now)
        if order.status == OrderStatus.CANCELLED:
            raise CheckoutFailedError(payload={'order_id': order.id})
        return order, status

    def sync_payment_status(self, order_id: int, customer_key: Optional[str] = None,
                            now: Optional[datetime] = None) -> Tuple[Order, IntentStatus]:
        """Fetch the current intent's status from the gateway and apply it."""
        order = self.get_order(order_id, customer_key)
        if not order.payment_intent_ref:
            raise BusinessLogicError('No payment has been started for this order')

        intent_ref = order.payment_intent_ref
        status = self._with_retry(
            lambda: self.gateway.get_status(intent_ref),
            f'status of order {order.id}'
        )
        order = self.handle_payment_result(order.id, status, intent_ref=intent_ref, now=now)
        return order, status

    def handle_payment_result(self, order_id: int, status, intent_ref: Optional[str] = None,
                              now: Optional[datetime] = None) -> Order:
        """
        Apply a gateway outcome to an order (callback or webhook).

        Replays are no-ops: a paid or cancelled order never changes again, and
        the ledger commit is idempotent on the order.
        """
        now = now or utcnow()
        status = IntentStatus(status)

        order = self.session.query(Order).filter(Order.id == order_id).with_for_update().first()
        if not order:
            raise NotFoundError('Order not found')

        if intent_ref and order.payment_intent_ref and intent_ref != order.payment_intent_ref:
            logger.info(f"[CHECKOUT] Ignoring {status.value} for superseded intent {intent_ref} of order {order.id}")
            return order
        if status == IntentStatus.PENDING:
            return order
        if order.status in (OrderStatus.PAID, OrderStatus.CANCELLED):
            if status == IntentStatus.FAILED or order.status == OrderStatus.CANCELLED:
                logger.warning(f"[CHECKOUT] {status.value} for order {order.id} in {order.status.value}; ignored")
            return order
        if status == IntentStatus.FAILED and order.status == OrderStatus.PAYMENT_FAILED:
            return order

        checkout = self.session.query(CheckoutSession).filter(CheckoutSession.order_id == order.id).first()
        if checkout is None:
            raise InvariantViolationError(f'Order {order.id} has no checkout session')

        lapsed = None
        try:
            if status == IntentStatus.SUCCEEDED:
                lapsed = self._mark_paid(checkout, order, now)
            else:
                self._fail_payment(checkout, order, now, note='Payment failed')
            self._commit()
        except StorefrontError:
            self.session.rollback()
            raise

        if lapsed is not None:
            logger.error(f"[CHECKOUT] Order {order.id} paid but discount could not be recorded: {lapsed.message}")
            raise lapsed
        return order

    def cancel_checkout(self, checkout_id: int, customer_key: Optional[str] = None,
                        now: Optional[datetime] = None) -> CheckoutSession:
        now = now or utcnow()
        checkout = self.get_checkout(checkout_id, customer_key)
        if checkout.state == CheckoutState.CANCELLED:
            return checkout
        if checkout.state == CheckoutState.PAID:
            raise InvalidTransitionError('Checkout', checkout.state, CheckoutState.CANCELLED)

        try:
            self._release_reservation(checkout, now)
            order = checkout.order
            if order is not None and order.can_transition_to(OrderStatus.CANCELLED):
                order.transition_to(OrderStatus.CANCELLED, note='Checkout cancelled')
                self._count_order(OrderStatus.CANCELLED)
            checkout.transition_to(CheckoutState.CANCELLED)
            self._commit()
        except StorefrontError:
            self.session.rollback()
            raise

        logger.info(f"[CHECKOUT] Checkout {checkout.id} cancelled")
        return checkout

    # =====================================================
    # PRIVATE HELPERS
    # =====================================================

    def _start_payment_attempt(self, checkout: CheckoutSession, order: Order, now: datetime) -> Order:
        attempt = checkout.payment_attempts + 1
        idempotency_key = f"order-{order.id}-attempt-{attempt}"
        checkout.payment_attempts = attempt

        try:
            intent_ref = self._with_retry(
                lambda: self.gateway.create_intent(order.id, order.total_cents, idempotency_key),
                f'intent for order {order.id}'
            )
        except PaymentGatewayError as e:
            logger.error(f"[CHECKOUT] Payment intent for order {order.id} failed: {e.message}")
            self._fail_payment(checkout, order, now, note='Payment intent could not be created')
            self._commit()
            if checkout.state == CheckoutState.CANCELLED:
                raise CheckoutFailedError(payload={'order_id': order.id}) from e
            raise

        order.payment_intent_ref = intent_ref
        if checkout.state != CheckoutState.AWAITING_PAYMENT_CONFIRMATION:
            checkout.transition_to(CheckoutState.AWAITING_PAYMENT_CONFIRMATION)
        self._commit()
        logger.info(f"[CHECKOUT] Order {order.id} awaiting payment (intent {intent_ref}, attempt {attempt})")
        return order

    def _mark_paid(self, checkout: CheckoutSession, order: Order, now: datetime) -> Optional[ReservationLapsedError]:
        lapsed = None
        note = 'Payment confirmed'
        if checkout.reservation_token:
            try:
                self.ledger.commit(checkout.reservation_token, order.id, order.discount_cents, now)
            except ReservationLapsedError as e:
                lapsed = e
                note = 'Payment confirmed; discount reservation had lapsed'

        order.transition_to(OrderStatus.PAID, note=note)
        order.paid_at = now
        checkout.transition_to(CheckoutState.PAID)
        self._count_order(OrderStatus.PAID)
        logger.info(f"[CHECKOUT] Order {order.id} paid")
        return lapsed

    def _fail_payment(self, checkout: CheckoutSession, order: Order, now: datetime, note: str):
        """Record a failed payment, give the promo use back and cancel once retries are spent."""
        if order.status == OrderStatus.PENDING_PAYMENT:
            order.transition_to(OrderStatus.PAYMENT_FAILED, note=note)
            self._count_order(OrderStatus.PAYMENT_FAILED)
        self._release_reservation(checkout, now)

        if checkout.payment_attempts >= MAX_PAYMENT_ATTEMPTS:
            order.transition_to(OrderStatus.CANCELLED, note='Payment failed after retry')
            checkout.transition_to(CheckoutState.CANCELLED)
            self._count_order(OrderStatus.CANCELLED)
            logger.warning(f"[CHECKOUT] Order {order.id} cancelled after {checkout.payment_attempts} failed payments")
        elif checkout.state != CheckoutState.PAYMENT_FAILED:
            checkout.transition_to(CheckoutState.PAYMENT_FAILED)
            logger.info(f"[CHECKOUT] Order {order.id} payment failed; one retry left")

    def _release_reservation(self, checkout: CheckoutSession, now: datetime):
        if checkout.reservation_token:
            self.ledger.release(checkout.reservation_token, now)
            checkout.reservation_token = None

    def _with_retry(self, call: Callable, description: str):
        """Retry an idempotent gateway call with exponential backoff."""
        attempts = max(1, self.settings.gateway_max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return call()
            except PaymentGatewayError as e:
                if attempt == attempts:
                    raise
                delay = self.settings.gateway_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"[GATEWAY] {description}: attempt {attempt} failed ({e.message}); retrying in {delay}s")
                time.sleep(delay)

    def _require_state(self, checkout: CheckoutSession, expected: CheckoutState,
                       target: Optional[CheckoutState] = None):
        if checkout.state != expected:
            raise InvalidTransitionError('Checkout', checkout.state, target or expected)

    def _commit(self):
        try:
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    @staticmethod
    def _count_order(status: OrderStatus):
        checkout_orders_total.labels(status=status.value).inc()
