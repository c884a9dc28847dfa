"""
Integration tests for the payment webhook.
"""

import hashlib
import hmac
import json
import pytest

from storefront.models import DiscountApplication, Order, OrderStatus, PaymentWebhookEvent, PromoCode
from storefront.services.checkout_service import CheckoutService, CheckoutSettings
from storefront.services.payment_gateway import IntentStatus


def _post(client, payload, secret='test-webhook-secret'):
    body = json.dumps(payload).encode()
    headers = {}
    if secret:
        headers['X-Signature'] = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post('/webhooks/payments', data=body, content_type='application/json', headers=headers)


@pytest.fixture
def checkout_service(app, session, app_gateway):
    return CheckoutService(session, app_gateway, CheckoutSettings.from_config(app.config))


@pytest.fixture
def awaiting_order(session, cart, make_promo, checkout_service):
    """Order with a reserved SAVE20 use, waiting for the payment outcome."""
    promo_id = make_promo(max_uses=1).id
    checkout = checkout_service.start_checkout(cart, 'user:1')
    checkout_service.select_shipping(checkout.id, 'addr_1')
    checkout_service.select_payment_method(checkout.id, 'pm_card')
    checkout_service.apply_promo_code(checkout.id, 'SAVE20')
    checkout_service.place_order(checkout.id)
    order = checkout_service.request_payment(checkout.id)
    return {'order_id': order.id, 'intent_ref': order.payment_intent_ref, 'promo_id': promo_id}


class TestPaymentWebhook:
    """POST /webhooks/payments"""

    def test_success_marks_order_paid_once(self, client, session, app_gateway, awaiting_order):
        app_gateway.set_status(awaiting_order['intent_ref'], IntentStatus.SUCCEEDED)
        payload = {'id': 'evt_1', 'type': 'payment.succeeded', 'data': {'order_id': awaiting_order['order_id']}}

        first = _post(client, payload)
        replay = _post(client, payload)

        assert first.get_json()['status'] == 'processed'
        assert replay.get_json()['status'] == 'ignored'
        order = session.get(Order, awaiting_order['order_id'])
        assert order.status == OrderStatus.PAID
        assert session.get(PromoCode, awaiting_order['promo_id']).current_uses == 1
        assert session.query(PaymentWebhookEvent).count() == 1

    def test_failure_releases_promo_use(self, client, session, app_gateway, awaiting_order):
        app_gateway.set_status(awaiting_order['intent_ref'], IntentStatus.FAILED)
        payload = {'id': 'evt_2', 'type': 'payment.failed', 'data': {'order_id': awaiting_order['order_id']}}

        response = _post(client, payload)

        assert response.status_code == 200
        assert session.get(Order, awaiting_order['order_id']).status == OrderStatus.PAYMENT_FAILED
        assert session.get(PromoCode, awaiting_order['promo_id']).current_uses == 0

    def test_event_type_does_not_decide_the_outcome(self, client, session, awaiting_order):
        # The gateway still reports the intent as pending
        payload = {'id': 'evt_3', 'type': 'payment.succeeded', 'data': {'order_id': awaiting_order['order_id']}}

        response = _post(client, payload)

        assert response.status_code == 200
        assert session.get(Order, awaiting_order['order_id']).status == OrderStatus.PENDING_PAYMENT
        assert session.query(DiscountApplication).count() == 0
        assert session.get(PromoCode, awaiting_order['promo_id']).current_uses == 1

    def test_late_failure_after_success_is_ignored(self, client, session, app_gateway, awaiting_order):
        order_id = awaiting_order['order_id']
        app_gateway.set_status(awaiting_order['intent_ref'], IntentStatus.SUCCEEDED)
        _post(client, {'id': 'evt_4', 'type': 'payment.succeeded', 'data': {'order_id': order_id}})

        app_gateway.set_status(awaiting_order['intent_ref'], IntentStatus.FAILED)
        _post(client, {'id': 'evt_5', 'type': 'payment.failed', 'data': {'order_id': order_id}})

        assert session.get(Order, order_id).status == OrderStatus.PAID
        assert session.get(PromoCode, awaiting_order['promo_id']).current_uses == 1

    def test_success_after_payment_failed_is_rejected(self, client, session, app_gateway,
                                                      checkout_service, awaiting_order):
        order_id = awaiting_order['order_id']
        checkout_service.handle_payment_result(order_id, IntentStatus.FAILED)
        app_gateway.set_status(awaiting_order['intent_ref'], IntentStatus.SUCCEEDED)

        response = _post(client, {'id': 'evt_6', 'type': 'payment.succeeded', 'data': {'order_id': order_id}})

        assert response.status_code == 409
        assert session.get(Order, order_id).status == OrderStatus.PAYMENT_FAILED
        assert session.query(DiscountApplication).count() == 0
        assert session.get(PromoCode, awaiting_order['promo_id']).current_uses == 0

    def test_invalid_signature(self, client, session, app_gateway, awaiting_order):
        app_gateway.set_status(awaiting_order['intent_ref'], IntentStatus.SUCCEEDED)
        payload = {'id': 'evt_7', 'type': 'payment.succeeded', 'data': {'order_id': awaiting_order['order_id']}}

        response = _post(client, payload, secret='wrong-secret')

        assert response.status_code == 401
        assert session.get(Order, awaiting_order['order_id']).status == OrderStatus.PENDING_PAYMENT

    def test_unsigned_rejected_without_secret_in_production(self, app, client, session, app_gateway,
                                                            awaiting_order, monkeypatch):
        monkeypatch.setitem(app.config, 'MP_WEBHOOK_SECRET', None)
        monkeypatch.setitem(app.config, 'TESTING', False)
        monkeypatch.setitem(app.config, 'DEBUG', False)
        app_gateway.set_status(awaiting_order['intent_ref'], IntentStatus.SUCCEEDED)
        payload = {'id': 'evt_8', 'type': 'payment.succeeded', 'data': {'order_id': awaiting_order['order_id']}}

        response = _post(client, payload, secret=None)

        assert response.status_code == 401
        assert session.get(Order, awaiting_order['order_id']).status == OrderStatus.PENDING_PAYMENT
        assert session.query(PaymentWebhookEvent).count() == 0

    def test_unknown_order(self, client, session):
        response = _post(client, {'id': 'evt_9', 'type': 'payment.succeeded', 'data': {'order_id': 999999}})

        assert response.status_code == 404
        event = session.query(PaymentWebhookEvent).one()
        assert event.status == 'FAILED'

    def test_malformed_payload(self, client, session):
        response = _post(client, {'type': 'payment.succeeded'})

        assert response.status_code == 400

    def test_unhandled_event_type(self, client, session):
        response = _post(client, {'id': 'evt_10', 'type': 'refund.created', 'data': {}})

        assert response.status_code == 200
        assert response.get_json()['status'] == 'ignored'
