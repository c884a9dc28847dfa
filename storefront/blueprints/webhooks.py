"""
Webhooks Blueprint for payment provider notifications.
A notification triggers a status re-sync from the gateway; signatures are
HMAC-SHA256 of the raw body.
"""

import logging
import hmac
import hashlib
from flask import Blueprint, request, jsonify, current_app
from storefront.database import get_session
from storefront.exceptions import StorefrontError
from storefront.services.checkout_service import CheckoutService, CheckoutSettings
from storefront.services.payment_gateway import get_payment_gateway
from storefront.services.payment_webhook_service import PaymentWebhookService

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/webhooks')


def verify_signature(request_data: bytes, signature: str) -> bool:
    """
    Verify the webhook signature.

    Without MP_WEBHOOK_SECRET only debug and testing apps accept unsigned calls.
    """
    secret = current_app.config.get('MP_WEBHOOK_SECRET')

    if not secret:
        if current_app.debug or current_app.testing:
            logger.info("Skipping webhook signature verification (MP_WEBHOOK_SECRET not set, dev mode)")
            return True
        logger.error("MP_WEBHOOK_SECRET not set; rejecting payment webhook")
        return False

    if not signature:
        logger.warning("Missing X-Signature header in payment webhook")
        return False

    expected_signature = hmac.new(
        secret.encode('utf-8'),
        request_data,
        hashlib.sha256
    ).hexdigest()

    is_valid = hmac.compare_digest(signature, expected_signature)
    if not is_valid:
        logger.warning("Invalid payment webhook signature")
    return is_valid


@webhooks_bp.route('/payments', methods=['POST'])
def payment_webhook():
    """
    Handle payment provider notifications.

    Expected events:
    - payment.succeeded
    - payment.failed
    - payment.pending
    """
    signature = request.headers.get('X-Signature', '')
    if not verify_signature(request.get_data(), signature):
        return jsonify({'error': 'Invalid signature'}), 401

    data = request.get_json(silent=True)
    if not data:
        logger.warning("Empty webhook payload")
        return jsonify({'error': 'Empty payload'}), 400

    logger.info(f"Received payment webhook: type={data.get('type')}, id={data.get('id')}")

    db_session = get_session()
    checkout_service = CheckoutService(
        db_session,
        get_payment_gateway(),
        CheckoutSettings.from_config(current_app.config)
    )

    try:
        applied = PaymentWebhookService(db_session, checkout_service).process(data)
    except StorefrontError as e:
        logger.error(f"Error processing payment webhook: {e.message}")
        return jsonify(e.to_dict()), e.status_code

    return jsonify({'status': 'processed' if applied else 'ignored'}), 200
