"""
Payments API: checkout and payment confirmation.

Handles:
- Checkout with a client-side PaymentIntent (or points)
- Checkout through a hosted Stripe Checkout redirect
- Confirmation after the client finishes paying
- Listing the customer's saved cards
"""
from flask import Blueprint, current_app, g, jsonify, request

from ..middleware.auth import require_user
from ..services.settlement_service import FLOW_INTENT, FLOW_REDIRECT, SettlementService
from ..utils.errors import ErrorCode, bad_request, result_error_response

payments_bp = Blueprint('payments', __name__)


def _checkout(payment_flow: str):
    data = request.get_json(silent=True) or {}

    items = data.get('items')
    if not items:
        return bad_request('items is required', ErrorCode.MISSING_FIELD)

    success_url = cancel_url = None
    if payment_flow == FLOW_REDIRECT:
        frontend = current_app.config.get('FRONTEND_URL', '').rstrip('/')
        success_url = data.get('success_url') or f'{frontend}/order-success'
        cancel_url = data.get('cancel_url') or f'{frontend}/cart'

    service = SettlementService()
    result = service.checkout(
        user_id=g.user_id,
        cart_items=items,
        cafe_id=data.get('cafe_id'),
        coupon_code=data.get('coupon_code'),
        use_points=bool(data.get('use_points', False)),
        order_type=data.get('order_type') or 'pickup',
        pickup_time=data.get('pickup_time'),
        customer_notes=data.get('customer_notes'),
        payment_flow=payment_flow,
        success_url=success_url,
        cancel_url=cancel_url,
        currency=current_app.config.get('CURRENCY', 'usd'),
        payment_method_id=data.get('payment_method_id') if payment_flow == FLOW_INTENT else None,
        save_payment_method=bool(data.get('save_payment_method', False)) and payment_flow == FLOW_INTENT,
    )

    if not result['success']:
        if result.get('pending_reconciliation'):
            return jsonify(result), 202
        return result_error_response(result)
    return jsonify(result), 201


@payments_bp.route('/create-payment-intent', methods=['POST'])
@require_user
def create_payment_intent():
    """
    Create a pending order and start paying for it.

    JSON body:
        items: [{item_id, item_type?, quantity, customizations?}] (required)
        cafe_id: Cafe the order is for
        coupon_code: Optional coupon
        use_points: Pay with loyalty points
        order_type: pickup | delivery | dine_in
        pickup_time: ISO datetime
        customer_notes: Notes for the barista
        payment_method_id: Saved card to charge now (see /payment-methods)
        save_payment_method: Keep this card for later orders

    Returns:
        Order plus client_secret for processor payments, or the settled
        order when a saved card went through
    """
    return _checkout(FLOW_INTENT)


@payments_bp.route('/checkout-session', methods=['POST'])
@require_user
def create_checkout_session():
    """Same as create-payment-intent but returns a hosted checkout URL."""
    return _checkout(FLOW_REDIRECT)


@payments_bp.route('/confirm-payment', methods=['POST'])
@require_user
def confirm_payment():
    """
    Confirm a processor payment from the client.

    JSON body:
        order_id: Order to confirm
        payment_intent_id: PaymentIntent id or Checkout Session id (cs_...)
    """
    data = request.get_json(silent=True) or {}
    order_id = data.get('order_id')
    handle = data.get('payment_intent_id') or data.get('session_id')
    if not order_id and not handle:
        return bad_request('order_id or payment_intent_id is required', ErrorCode.MISSING_FIELD)

    result = SettlementService().confirm_payment(g.user_id, order_id=order_id, handle=handle)

    if result['success']:
        return jsonify(result)
    if result.get('pending_reconciliation'):
        return jsonify(result), 202
    return result_error_response(result)


@payments_bp.route('/payment-methods', methods=['GET'])
@require_user
def list_payment_methods():
    """Cards saved by the current user; empty until one is saved."""
    result = SettlementService().saved_payment_methods(g.user_id)
    if not result['success']:
        return result_error_response(result)
    return jsonify(result)
