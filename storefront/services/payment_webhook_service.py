"""Idempotent processing of payment provider webhooks."""
import hashlib
import logging
from typing import Any, Dict

from sqlalchemy.exc import IntegrityError

from storefront.exceptions import BusinessLogicError, InvariantViolationError
from storefront.models import PaymentWebhookEvent
from storefront.services.checkout_service import CheckoutService
from storefront.utils.clock import utcnow

logger = logging.getLogger(__name__)

# Provider notifications that mean "this order's payment changed"
PAYMENT_EVENT_TYPES = frozenset({'payment.succeeded', 'payment.failed', 'payment.pending'})


def webhook_dedupe_key(event_type: str, event_id: str) -> str:
    return hashlib.sha256(f"{event_type}:{event_id}".encode()).hexdigest()


class PaymentWebhookService:
    """Record each provider event once and re-sync its order from the gateway."""

    def __init__(self, session, checkout_service: CheckoutService):
        self.db = session
        self.checkout = checkout_service

    def process(self, payload: Dict[str, Any]) -> bool:
        """
        Process a webhook payload (idempotent).

        Payload shape:
            {"id": "evt_1", "type": "payment.succeeded", "data": {"order_id": 12}}

        The event only names the order. Its outcome is whatever the gateway
        reports for the order's current payment intent, never the event type.

        Returns:
            True if the order was re-synced, False if the event was a duplicate or ignored.

        Raises:
            BusinessLogicError: malformed payload, or no payment started for the order
            InvariantViolationError: order paid but its discount could not be recorded
        """
        event_id = payload.get('id')
        event_type = payload.get('type')
        data = payload.get('data') or {}
        order_id = data.get('order_id')

        if not event_id or not event_type:
            raise BusinessLogicError('Webhook payload requires id and type')

        if event_type not in PAYMENT_EVENT_TYPES:
            logger.info(f"[WEBHOOK] Ignoring event type {event_type}")
            return False
        try:
            order_id = int(order_id)
        except (TypeError, ValueError):
            raise BusinessLogicError('Webhook payload requires data.order_id')

        dedupe_key = webhook_dedupe_key(event_type, str(event_id))
        event = self.db.query(PaymentWebhookEvent).filter(
            PaymentWebhookEvent.dedupe_key == dedupe_key
        ).first()

        if event is not None and event.status != 'FAILED':
            logger.info(f"[WEBHOOK] Event already received: {dedupe_key[:16]}...")
            return False

        if event is None:
            event = PaymentWebhookEvent(
                event_type=event_type,
                provider_event_id=str(event_id),
                order_ref=str(order_id),
                payload_json=payload,
                dedupe_key=dedupe_key,
                status='PROCESSING'
            )
            try:
                self.db.add(event)
                self.db.commit()
            except IntegrityError:
                # Another worker stored the same event first
                self.db.rollback()
                logger.warning(f"[WEBHOOK] Dedupe conflict (race): {dedupe_key[:16]}...")
                return False
        else:
            event.status = 'PROCESSING'
            self.db.commit()

        try:
            order, status = self.checkout.sync_payment_status(order_id)
        except InvariantViolationError:
            # The order itself is already stored as paid; keep the event for follow-up
            self._finish(event, 'FAILED')
            raise
        except Exception:
            self.db.rollback()
            self._finish(event, 'FAILED')
            raise

        self._finish(event, 'PROCESSED')
        if event_type != f'payment.{status.value}':
            logger.warning(f"[WEBHOOK] {event_type} for order {order_id} but gateway reports {status.value}")
        logger.info(f"[WEBHOOK] Order {order_id} synced from gateway: {status.value} (order {order.status.value})")
        return True

    def _finish(self, event: PaymentWebhookEvent, status: str):
        event.status = status
        event.processed_at = utcnow()
        self.db.commit()
