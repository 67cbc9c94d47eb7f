"""
Points API endpoints: balance and history for the signed-in user.
"""
from flask import Blueprint, g, jsonify, request

from ..middleware.auth import require_user
from ..services.points_service import PointsLedger
from ..utils.errors import result_error_response

points_bp = Blueprint('points', __name__)


@points_bp.route('', methods=['GET'])
@require_user
def get_points():
    """Current balance with the most recent history entries."""
    result = PointsLedger().summary(g.user_id, limit=10)
    if not result['success']:
        return result_error_response(result)
    return jsonify(result)


@points_bp.route('/history', methods=['GET'])
@require_user
def get_points_history():
    """
    Query params:
        limit: Page size (default 50, max 200)
        offset: Page offset
    """
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)
    ledger = PointsLedger()
    entries = ledger.history(g.user_id, limit=limit, offset=offset)
    return jsonify({
        'success': True,
        'points': ledger.balance(g.user_id),
        'history': [e.to_dict() for e in entries],
        'limit': limit,
        'offset': offset,
    })
