"""
Coupons API endpoints.

Handles:
- Active coupon listing
- Coupon validation against a cart total
- In-store coupon use
- Coupon generation (staff)
- Per-user usage history
"""
import math

from flask import Blueprint, g, jsonify, request

from ..middleware.auth import require_staff, require_user
from ..services.coupon_service import CouponService
from ..utils.errors import ErrorCode, bad_request, result_error_response

coupons_bp = Blueprint('coupons', __name__)


def _order_total(data):
    try:
        total = float(data.get('order_total', 0))
    except (TypeError, ValueError):
        return None
    # JSON allows NaN and Infinity
    return total if math.isfinite(total) else None


@coupons_bp.route('', methods=['GET'])
@require_user
def list_active_coupons():
    """
    List coupons usable right now.

    Query params:
        cafe_id: Only coupons valid at this cafe
    """
    coupons = CouponService().list_active(cafe_id=request.args.get('cafe_id'))
    return jsonify({'success': True, 'coupons': [c.to_dict() for c in coupons]})


@coupons_bp.route('/validate', methods=['POST'])
@require_user
def validate_coupon():
    """
    Check a code against an order total.

    JSON body:
        code: Coupon code (required)
        order_total: Pre-discount total
        cafe_id: Cafe the order is for
    """
    data = request.get_json(silent=True) or {}
    code = data.get('code')
    if not code:
        return bad_request('code is required', ErrorCode.MISSING_FIELD)

    order_total = _order_total(data)
    if order_total is None or order_total < 0:
        return bad_request('order_total must be a non-negative number', ErrorCode.VALIDATION_ERROR)

    result = CouponService().validate_code(code, g.user_id, order_total, cafe_id=data.get('cafe_id'))
    if not result['success']:
        return result_error_response(result)
    return jsonify(result)


@coupons_bp.route('/apply', methods=['POST'])
@require_user
def apply_coupon():
    """Use a coupon at the counter (not through an app order)."""
    data = request.get_json(silent=True) or {}
    code = data.get('code')
    if not code:
        return bad_request('code is required', ErrorCode.MISSING_FIELD)

    order_total = _order_total(data)
    if order_total is None or order_total < 0:
        return bad_request('order_total must be a non-negative number', ErrorCode.VALIDATION_ERROR)

    result = CouponService().apply_in_store(code, g.user_id, order_total, cafe_id=data.get('cafe_id'))
    if not result['success']:
        return result_error_response(result)
    return jsonify(result)


@coupons_bp.route('/generate', methods=['POST'])
@require_staff
def generate_coupon():
    """
    Create a coupon with a random code (staff only).

    JSON body:
        name, type, value (required)
        minimum_purchase, max_uses, max_uses_per_user, valid_days (default 30),
        applicable_cafes, free_item {category, max_value}, points_bonus {multiplier, base_points}
    """
    data = request.get_json(silent=True) or {}
    result = CouponService().create_coupon(data, created_by_id=g.user_id)
    if not result['success']:
        return result_error_response(result)
    return jsonify(result), 201


@coupons_bp.route('/my-usage', methods=['GET'])
@require_user
def my_coupon_usage():
    usages = CouponService().usage_for_user(g.user_id)
    return jsonify({'success': True, 'usage': [u.to_dict() for u in usages]})
