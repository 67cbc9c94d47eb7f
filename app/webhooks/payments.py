"""
Payment processor webhook endpoint.

Stripe sends:
- payment_intent.succeeded
- payment_intent.payment_failed
- checkout.session.completed

The body is verified against the gateway's signing secret before anything is
read from it. Every event is safe to receive more than once.
"""
from flask import Blueprint, current_app, jsonify, request

from ..services.payment_gateway import get_payment_gateway
from ..services.settlement_service import SettlementService
from ..utils.errors import ErrorCode, error_response, internal_error
from ..utils.exceptions import ConfigurationError, SignatureInvalidError

payment_webhook_bp = Blueprint('payment_webhook', __name__)


@payment_webhook_bp.route('', methods=['POST'])
def handle_payment_webhook():
    payload = request.get_data()
    gateway = get_payment_gateway()
    signature = request.headers.get(gateway.signature_header)

    try:
        event = gateway.verify_webhook_signature(payload, signature)
    except ConfigurationError as e:
        current_app.logger.error(f'[Payment Webhook] {e.message}')
        return internal_error('Webhook secret not configured')
    except SignatureInvalidError as e:
        current_app.logger.warning(f'[Payment Webhook] Rejected: {e.message}')
        return error_response(e.message, ErrorCode.INVALID_SIGNATURE, 400, log_error=False)

    result = SettlementService(gateway=gateway).handle_gateway_event(event)
    current_app.logger.info(f'[Payment Webhook] {event.raw_type} ({event.event_id}): {result}')

    # Anything but a 2xx makes the processor retry; only retry on our own faults
    if result.get('error_code') == 'INTERNAL_ERROR':
        return jsonify(result), 500
    return jsonify(result)
