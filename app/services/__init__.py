"""
Business logic services for SipGrounds.
"""
from .coupon_service import CouponService
from .order_state import OrderStateMachine
from .points_service import PointsLedger
from .reward_service import RewardService
from .settlement_service import SettlementService

__all__ = [
    'CouponService',
    'OrderStateMachine',
    'PointsLedger',
    'RewardService',
    'SettlementService',
]
