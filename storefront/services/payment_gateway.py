"""
Payment gateway collaborator.

The checkout engine needs exactly two calls from the provider:

    create_intent(order_id, amount_cents, idempotency_key) -> intent_ref
    get_status(intent_ref) -> IntentStatus

`create_intent` must be idempotent on the key: a retried request returns the
same intent instead of creating a second one.
"""
import enum
import logging
import threading
import uuid
from decimal import Decimal
from typing import Dict, Optional

import requests
from flask import Flask, current_app

from storefront.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)


class IntentStatus(str, enum.Enum):
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    PENDING = 'pending'


class PaymentGateway:
    """Interface of the payment provider."""

    name = 'abstract'

    def create_intent(self, order_id: int, amount_cents: int, idempotency_key: str) -> str:
        raise NotImplementedError

    def get_status(self, intent_ref: str) -> IntentStatus:
        raise NotImplementedError


class SimulatedPaymentGateway(PaymentGateway):
    """
    In-process gateway used when no provider is configured (test mode).

    Intents start in `default_status`. Tests drive outcomes with
    set_status() and inject transient outages with fail_next_creates().
    """

    name = 'simulated'

    def __init__(self, default_status: IntentStatus = IntentStatus.PENDING):
        self.default_status = IntentStatus(default_status)
        self._lock = threading.Lock()
        self._intents_by_key: Dict[str, str] = {}
        self._intents: Dict[str, dict] = {}
        self._pending_create_failures = 0
        self.create_calls = 0

    def create_intent(self, order_id: int, amount_cents: int, idempotency_key: str) -> str:
        with self._lock:
            self.create_calls += 1
            if self._pending_create_failures > 0:
                self._pending_create_failures -= 1
                raise PaymentGatewayError('Simulated gateway outage')

            existing = self._intents_by_key.get(idempotency_key)
            if existing is not None:
                return existing

            intent_ref = f"sim_pi_{uuid.uuid4().hex[:16]}"
            self._intents_by_key[idempotency_key] = intent_ref
            self._intents[intent_ref] = {
                'order_id': order_id,
                'amount_cents': amount_cents,
                'status': self.default_status,
            }
            logger.info(f"[GATEWAY] Simulated intent {intent_ref} for order {order_id}: {amount_cents} cents")
            return intent_ref

    def get_status(self, intent_ref: str) -> IntentStatus:
        intent = self._intents.get(intent_ref)
        if intent is None:
            raise PaymentGatewayError(f'Unknown payment intent {intent_ref}')
        return intent['status']

    def amount_for(self, intent_ref: str) -> Optional[int]:
        intent = self._intents.get(intent_ref)
        return intent['amount_cents'] if intent else None

    def set_status(self, intent_ref: str, status: IntentStatus):
        with self._lock:
            if intent_ref not in self._intents:
                raise PaymentGatewayError(f'Unknown payment intent {intent_ref}')
            self._intents[intent_ref]['status'] = IntentStatus(status)

    def fail_next_creates(self, count: int = 1):
        with self._lock:
            self._pending_create_failures = count


class MercadoPagoGateway(PaymentGateway):
    """Mercado Pago Checkout Pro: a preference is the payment intent."""

    name = 'mercadopago'
    BASE_URL = "https://api.mercadopago.com"

    APPROVED_STATUSES = {'approved'}
    FAILED_STATUSES = {'rejected', 'cancelled', 'refunded', 'charged_back'}

    def __init__(self, access_token: str, currency_id: str = 'USD', timeout: int = 10):
        if not access_token:
            raise ValueError("MP_ACCESS_TOKEN is required")
        self.currency_id = currency_id
        self.timeout = timeout
        self.headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json'
        }

    def create_intent(self, order_id: int, amount_cents: int, idempotency_key: str) -> str:
        url = f"{self.BASE_URL}/checkout/preferences"
        payload = {
            "external_reference": str(order_id),
            "items": [{
                "title": f"Order {order_id}",
                "quantity": 1,
                "currency_id": self.currency_id,
                # Provider wants a decimal number; converted from cents only here
                "unit_price": float(Decimal(amount_cents) / 100),
            }],
        }
        headers = dict(self.headers, **{'X-Idempotency-Key': idempotency_key})

        logger.info(f"[GATEWAY] Creating MP preference for order {order_id}")
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as e:
            logger.error(f"[GATEWAY] Error creating preference: {e.response.text}")
            raise PaymentGatewayError(f'Payment provider rejected the request ({e.response.status_code})')
        except requests.RequestException as e:
            logger.error(f"[GATEWAY] Provider unreachable: {e}")
            raise PaymentGatewayError('Payment provider unreachable')

        logger.info(f"[GATEWAY] Preference created: {data.get('id')}")
        return data['id']

    def get_status(self, intent_ref: str) -> IntentStatus:
        try:
            preference = requests.get(
                f"{self.BASE_URL}/checkout/preferences/{intent_ref}",
                headers=self.headers, timeout=self.timeout
            )
            preference.raise_for_status()
            external_reference = preference.json().get('external_reference')

            search = requests.get(
                f"{self.BASE_URL}/v1/payments/search",
                params={'external_reference': external_reference, 'sort': 'date_created', 'criteria': 'desc'},
                headers=self.headers, timeout=self.timeout
            )
            search.raise_for_status()
            results = search.json().get('results', [])
        except requests.HTTPError as e:
            logger.error(f"[GATEWAY] Error getting status for {intent_ref}: {e.response.text}")
            raise PaymentGatewayError('Payment provider rejected the status request')
        except requests.RequestException as e:
            logger.error(f"[GATEWAY] Provider unreachable: {e}")
            raise PaymentGatewayError('Payment provider unreachable')

        statuses = {payment.get('status') for payment in results}
        if statuses & self.APPROVED_STATUSES:
            return IntentStatus.SUCCEEDED
        if results and statuses <= self.FAILED_STATUSES:
            return IntentStatus.FAILED
        return IntentStatus.PENDING


def init_payment_gateway(app: Flask) -> PaymentGateway:
    """Build the configured gateway and register it on the app."""
    kind = app.config.get('PAYMENT_GATEWAY', 'simulated')

    if kind == 'mercadopago' and app.config.get('MP_ACCESS_TOKEN'):
        gateway = MercadoPagoGateway(
            access_token=app.config['MP_ACCESS_TOKEN'],
            currency_id=app.config.get('MP_CURRENCY_ID', 'USD'),
            timeout=app.config.get('GATEWAY_TIMEOUT_SECONDS', 10)
        )
    else:
        if kind == 'mercadopago':
            app.logger.warning("[GATEWAY] MP_ACCESS_TOKEN missing; falling back to simulated payments")
        gateway = SimulatedPaymentGateway(
            default_status=app.config.get('SIMULATED_PAYMENT_OUTCOME', IntentStatus.PENDING)
        )

    app.extensions['payment_gateway'] = gateway
    app.logger.info(f"[GATEWAY] Using {gateway.name} payment gateway")
    return gateway


def get_payment_gateway() -> PaymentGateway:
    """Gateway registered on the current app."""
    return current_app.extensions['payment_gateway']
