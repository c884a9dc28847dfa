"""Checkout blueprint - JSON API driving the checkout state machine."""
from flask import Blueprint, request, jsonify, g, session, current_app
from flask_wtf.csrf import generate_csrf
from storefront.database import get_session
from storefront.decorators.rate_limit import promo_rate_limit
from storefront.exceptions import BusinessLogicError
from storefront.middleware import require_customer, customer_key_for_email
from storefront.services.cart_service import parse_cart
from storefront.services.checkout_service import CheckoutService, CheckoutSettings
from storefront.services.payment_gateway import get_payment_gateway
from storefront.services.pricing_service import DiscountRule, compute_pricing
from storefront.services.promo_validation_service import (
    PromoResult, REJECTION_MESSAGES, validate_promo_code, find_promo_code
)

checkout_bp = Blueprint('checkout', __name__, url_prefix='/checkout')


def _service():
    return CheckoutService(
        get_session(),
        get_payment_gateway(),
        CheckoutSettings.from_config(current_app.config)
    )


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BusinessLogicError('Expected a JSON object body')
    return data


def _notice(result):
    if not result:
        return None
    result = PromoResult(result)
    return {'result': result.value, 'message': REJECTION_MESSAGES.get(result, 'Promo code not applied')}


def _checkout_payload(service, checkout):
    data = {'checkout': checkout.to_dict(), 'notice': _notice(checkout.promo_notice)}
    if checkout.order is not None:
        data['order'] = checkout.order.to_dict()
    else:
        data['pricing'] = service.preview_pricing(checkout).to_dict()
    return data


@checkout_bp.route('/csrf-token', methods=['GET'])
def csrf_token():
    """Token to send back in the X-CSRFToken header."""
    return jsonify({'csrf_token': generate_csrf()})


@checkout_bp.route('/identity', methods=['POST'])
def set_guest_identity():
    """Guest checkout: remember the email the customer entered."""
    email = (_json_body().get('email') or '').strip()
    if '@' not in email:
        raise BusinessLogicError('A valid email is required')
    session['guest_email'] = email
    return jsonify({'customer_key': customer_key_for_email(email)})


@checkout_bp.route('/promo-codes/validate', methods=['POST'])
@promo_rate_limit
@require_customer
def validate_promo():
    """Stand-alone validation used by the cart page before checkout starts."""
    data = _json_body()
    cart = parse_cart(data.get('items'))
    db_session = get_session()

    decision = validate_promo_code(db_session, data.get('code', ''), cart, g.customer_key)

    rule = None
    if decision.accepted:
        rule = DiscountRule.from_promo(find_promo_code(db_session, decision.code))
    pricing = compute_pricing(cart, rule, CheckoutSettings.from_config(current_app.config).pricing)

    response = decision.to_dict()
    response['pricing'] = pricing.to_dict()
    return jsonify(response)


@checkout_bp.route('/sessions', methods=['POST'])
@require_customer
def start():
    service = _service()
    cart = parse_cart(_json_body().get('items'))
    checkout = service.start_checkout(cart, g.customer_key)
    current_app.logger.info(f"[CHECKOUT] Session {checkout.id} opened via API")
    return jsonify(_checkout_payload(service, checkout)), 201


@checkout_bp.route('/sessions/<int:checkout_id>', methods=['GET'])
@require_customer
def show(checkout_id):
    service = _service()
    checkout = service.get_checkout(checkout_id, g.customer_key)
    return jsonify(_checkout_payload(service, checkout))


@checkout_bp.route('/sessions/<int:checkout_id>/shipping', methods=['POST'])
@require_customer
def select_shipping(checkout_id):
    service = _service()
    checkout = service.select_shipping(checkout_id, _json_body().get('address_ref'), g.customer_key)
    return jsonify(_checkout_payload(service, checkout))


@checkout_bp.route('/sessions/<int:checkout_id>/payment-method', methods=['POST'])
@require_customer
def select_payment_method(checkout_id):
    service = _service()
    checkout = service.select_payment_method(checkout_id, _json_body().get('payment_method_ref'), g.customer_key)
    return jsonify(_checkout_payload(service, checkout))


@checkout_bp.route('/sessions/<int:checkout_id>/promo-code', methods=['POST'])
@promo_rate_limit
@require_customer
def apply_promo(checkout_id):
    """Apply a code. A rejection is a normal 200 response with valid=false."""
    service = _service()
    quote = service.apply_promo_code(checkout_id, _json_body().get('code', ''), g.customer_key)
    response = quote.decision.to_dict()
    response['pricing'] = quote.pricing.to_dict()
    return jsonify(response)


@checkout_bp.route('/sessions/<int:checkout_id>/promo-code', methods=['DELETE'])
@require_customer
def remove_promo(checkout_id):
    pricing = _service().remove_promo_code(checkout_id, g.customer_key)
    return jsonify({'pricing': pricing.to_dict()})


@checkout_bp.route('/sessions/<int:checkout_id>/order', methods=['POST'])
@require_customer
def place_order(checkout_id):
    """Create the order. Submitting twice returns the same order."""
    placed = _service().place_order(checkout_id, g.customer_key)
    return jsonify({
        'checkout': placed.checkout.to_dict(),
        'order': placed.order.to_dict(),
        'notice': _notice(placed.notice),
    }), 201


@checkout_bp.route('/sessions/<int:checkout_id>/payment-intent', methods=['POST'])
@require_customer
def request_payment(checkout_id):
    service = _service()
    order = service.request_payment(checkout_id, g.customer_key)
    return jsonify({
        'order_id': order.id,
        'payment_intent_ref': order.payment_intent_ref,
        'amount_cents': order.total_cents,
    })


@checkout_bp.route('/sessions/<int:checkout_id>/retry', methods=['POST'])
@require_customer
def retry_payment(checkout_id):
    placed = _service().retry_payment(checkout_id, g.customer_key)
    return jsonify({
        'checkout': placed.checkout.to_dict(),
        'order': placed.order.to_dict(),
        'notice': _notice(placed.notice),
    })


@checkout_bp.route('/sessions/<int:checkout_id>/cancel', methods=['POST'])
@require_customer
def cancel(checkout_id):
    service = _service()
    checkout = service.cancel_checkout(checkout_id, g.customer_key)
    return jsonify(_checkout_payload(service, checkout))


@checkout_bp.route('/orders/<int:order_id>/confirm', methods=['POST'])
@require_customer
def confirm_payment(order_id):
    """Client-side success callback; the gateway status is authoritative."""
    order, status = _service().confirm_payment(order_id, g.customer_key)
    return jsonify({'order': order.to_dict(), 'payment_status': status.value})
