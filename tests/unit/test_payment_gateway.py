"""
Unit tests for payment gateway clients.
"""

import pytest
import requests
from unittest.mock import MagicMock, patch

from storefront.exceptions import PaymentGatewayError
from storefront.services.payment_gateway import IntentStatus, MercadoPagoGateway, SimulatedPaymentGateway


def _response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.text = str(payload)
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(response=response)
    return response


class TestSimulatedPaymentGateway:
    """Tests for the in-process gateway."""

    def test_create_is_idempotent_on_key(self):
        gateway = SimulatedPaymentGateway()

        first = gateway.create_intent(1, 5184, 'order-1-attempt-1')
        second = gateway.create_intent(1, 5184, 'order-1-attempt-1')
        third = gateway.create_intent(1, 5184, 'order-1-attempt-2')

        assert first == second
        assert third != first
        assert gateway.amount_for(first) == 5184

    def test_status_follows_default_and_overrides(self):
        gateway = SimulatedPaymentGateway(default_status=IntentStatus.SUCCEEDED)
        intent = gateway.create_intent(1, 100, 'k')

        assert gateway.get_status(intent) == IntentStatus.SUCCEEDED
        gateway.set_status(intent, IntentStatus.FAILED)
        assert gateway.get_status(intent) == IntentStatus.FAILED

    def test_injected_outage(self):
        gateway = SimulatedPaymentGateway()
        gateway.fail_next_creates(1)

        with pytest.raises(PaymentGatewayError):
            gateway.create_intent(1, 100, 'k')
        assert gateway.create_intent(1, 100, 'k')

    def test_unknown_intent(self):
        with pytest.raises(PaymentGatewayError):
            SimulatedPaymentGateway().get_status('missing')


class TestMercadoPagoGateway:
    """Tests for the Mercado Pago client (HTTP mocked)."""

    def test_requires_token(self):
        with pytest.raises(ValueError):
            MercadoPagoGateway(access_token='')

    @patch('storefront.services.payment_gateway.requests.post')
    def test_create_intent_sends_idempotency_key(self, mock_post):
        mock_post.return_value = _response({'id': 'pref_123'})
        gateway = MercadoPagoGateway(access_token='TEST-token')

        intent = gateway.create_intent(12, 5184, 'order-12-attempt-1')

        assert intent == 'pref_123'
        _, kwargs = mock_post.call_args
        assert kwargs['headers']['X-Idempotency-Key'] == 'order-12-attempt-1'
        assert kwargs['json']['external_reference'] == '12'
        assert kwargs['json']['items'][0]['unit_price'] == 51.84

    @patch('storefront.services.payment_gateway.requests.post')
    def test_create_intent_http_error(self, mock_post):
        mock_post.return_value = _response({'message': 'bad'}, status_code=400)

        with pytest.raises(PaymentGatewayError):
            MercadoPagoGateway(access_token='TEST-token').create_intent(1, 100, 'k')

    @patch('storefront.services.payment_gateway.requests.post')
    def test_create_intent_network_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError('down')

        with pytest.raises(PaymentGatewayError):
            MercadoPagoGateway(access_token='TEST-token').create_intent(1, 100, 'k')

    @pytest.mark.parametrize('payments, expected', [
        ([{'status': 'approved'}], IntentStatus.SUCCEEDED),
        ([{'status': 'rejected'}], IntentStatus.FAILED),
        ([{'status': 'rejected'}, {'status': 'approved'}], IntentStatus.SUCCEEDED),
        ([{'status': 'in_process'}], IntentStatus.PENDING),
        ([], IntentStatus.PENDING),
    ])
    @patch('storefront.services.payment_gateway.requests.get')
    def test_get_status(self, mock_get, payments, expected):
        mock_get.side_effect = [
            _response({'id': 'pref_123', 'external_reference': '12'}),
            _response({'results': payments}),
        ]

        assert MercadoPagoGateway(access_token='TEST-token').get_status('pref_123') == expected
