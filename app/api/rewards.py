"""
Rewards API endpoints for the SipGrounds loyalty program.

Handles:
- Rewards catalog listing
- Reward redemption for points
- The user's redemption history
"""
from flask import Blueprint, g, jsonify, request

from ..middleware.auth import require_user
from ..models.reward import RewardCategory
from ..services.reward_service import RewardService
from ..utils.errors import ErrorCode, bad_request, not_found, result_error_response

rewards_bp = Blueprint('rewards', __name__)


@rewards_bp.route('', methods=['GET'])
def list_rewards():
    """
    List available rewards, cheapest first.

    Query params:
        category: drink, food, pastry, merchandise or experience
        cafe_id: Only rewards offered at this cafe
    """
    category = request.args.get('category')
    if category and category not in [c.value for c in RewardCategory]:
        return bad_request(f'Invalid category: {category}', ErrorCode.VALIDATION_ERROR)

    rewards = RewardService().list_rewards(category=category, cafe_id=request.args.get('cafe_id'))
    return jsonify({'success': True, 'rewards': [r.to_dict() for r in rewards]})


@rewards_bp.route('/<int:reward_id>', methods=['GET'])
def get_reward(reward_id):
    reward = RewardService().get_reward(reward_id)
    if not reward:
        return not_found('Reward not found', ErrorCode.REWARD_NOT_FOUND)
    return jsonify({'success': True, 'reward': reward.to_dict()})


@rewards_bp.route('/<int:reward_id>/redeem', methods=['POST'])
@require_user
def redeem_reward(reward_id):
    """
    Spend points on a reward.

    JSON body:
        cafe_id: Cafe where the reward will be claimed

    Returns:
        Redemption details including the code to show at the counter
    """
    data = request.get_json(silent=True) or {}
    result = RewardService().redeem(g.user_id, reward_id, cafe_id=data.get('cafe_id'))
    if not result['success']:
        return result_error_response(result)
    return jsonify(result), 201


@rewards_bp.route('/my-redemptions', methods=['GET'])
@require_user
def my_redemptions():
    redemptions = RewardService().redemptions_for_user(g.user_id)
    return jsonify({'success': True, 'redemptions': [r.to_dict() for r in redemptions]})
