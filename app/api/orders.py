"""
Orders API endpoints.
"""
from flask import Blueprint, g, jsonify, request

from ..middleware.auth import require_staff, require_user
from ..models.order import OrderStatus
from ..services.settlement_service import SettlementService
from ..utils.errors import ErrorCode, bad_request, result_error_response

orders_bp = Blueprint('orders', __name__)


@orders_bp.route('', methods=['GET'])
@require_user
def list_orders():
    """
    List the current user's orders, newest first.

    Query params:
        status: Filter by status
        limit: Page size (default 20, max 100)
        offset: Page offset
    """
    status = request.args.get('status')
    if status and status not in [s.value for s in OrderStatus]:
        return bad_request(f'Invalid status: {status}', ErrorCode.VALIDATION_ERROR)

    limit = min(request.args.get('limit', 20, type=int), 100)
    offset = max(request.args.get('offset', 0, type=int), 0)

    result = SettlementService().list_orders(g.user_id, status=status, limit=limit, offset=offset)
    return jsonify(result)


@orders_bp.route('/<int:order_id>', methods=['GET'])
@require_user
def get_order(order_id):
    result = SettlementService().get_order(g.user_id, order_id, is_staff=g.is_staff)
    if not result['success']:
        return result_error_response(result)
    return jsonify(result)


@orders_bp.route('/<int:order_id>/cancel', methods=['POST'])
@require_user
def cancel_order(order_id):
    """
    Cancel a pending or confirmed order. Paid orders are refunded.

    JSON body:
        reason: Optional cancellation reason
    """
    data = request.get_json(silent=True) or {}
    result = SettlementService().cancel_order(
        g.user_id, order_id, reason=data.get('reason'), is_staff=g.is_staff
    )
    if not result['success']:
        return result_error_response(result)
    return jsonify(result)


@orders_bp.route('/<int:order_id>/status', methods=['POST'])
@require_staff
def update_order_status(order_id):
    """
    Move an order along preparing -> ready -> completed (staff only).

    JSON body:
        status: New status
        reason: Reason, when cancelling
    """
    data = request.get_json(silent=True) or {}
    new_status = data.get('status')
    if not new_status:
        return bad_request('status is required', ErrorCode.MISSING_FIELD)

    result = SettlementService().advance_status(order_id, new_status, is_staff=True, reason=data.get('reason'))
    if not result['success']:
        return result_error_response(result)
    return jsonify(result)
