"""
Reward redemption.

Spending points on a reward is the second consumer of the points ledger and
follows the same rules: the debit and the redeemed_count bump are guarded
updates inside one transaction, so a reward never oversells and a balance is
never spent twice.
"""
import secrets
import string
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.reward import Reward, RewardRedemption
from ..models.user import User
from ..utils.errors import GENERIC_ERROR_MESSAGE
from ..utils.exceptions import (
    InsufficientPointsError,
    NotFoundError,
    RewardUnavailableError,
    SettlementError,
    UserNotFoundError,
)
from .points_service import PointsLedger

REDEMPTION_CODE_LENGTH = 8


def generate_redemption_code() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(REDEMPTION_CODE_LENGTH))


class RewardService:
    """Rewards catalog reads and point redemptions."""

    def __init__(self, ledger: PointsLedger = None):
        self.ledger = ledger or PointsLedger()

    def list_rewards(self, category: str = None, cafe_id=None, include_unavailable: bool = False) -> List[Reward]:
        query = Reward.query.filter(Reward.is_active.is_(True))
        if category:
            query = query.filter(Reward.category == category)
        rewards = query.order_by(Reward.points_cost.asc()).all()
        rewards = [r for r in rewards if r.applies_to_cafe(cafe_id)]
        if not include_unavailable:
            rewards = [r for r in rewards if r.is_available()]
        return rewards

    def get_reward(self, reward_id: int) -> Optional[Reward]:
        return db.session.get(Reward, reward_id)

    def redeem(self, user_id: int, reward_id: int, cafe_id=None) -> Dict[str, Any]:
        """
        Spend points on a reward and issue a redemption code.

        Args:
            user_id: Customer redeeming
            reward_id: Reward to redeem
            cafe_id: Cafe where it will be claimed

        Returns:
            Dict with the redemption record and the new balance
        """
        try:
            reward = db.session.get(Reward, reward_id)
            if reward is None:
                raise NotFoundError('Reward', reward_id, 'REWARD_NOT_FOUND')
            if db.session.get(User, user_id) is None:
                raise UserNotFoundError(user_id)

            if not reward.is_available():
                raise RewardUnavailableError()
            if not reward.applies_to_cafe(cafe_id):
                raise RewardUnavailableError('This reward is not available at this cafe')

            if reward.max_per_user:
                already = db.session.execute(
                    select(func.count(RewardRedemption.id))
                    .where(RewardRedemption.reward_id == reward.id)
                    .where(RewardRedemption.user_id == user_id)
                ).scalar_one()
                if already >= reward.max_per_user:
                    raise RewardUnavailableError('You have reached the maximum redemptions for this reward')

            # Take one unit of the reward's stock
            result = db.session.execute(
                update(Reward)
                .where(Reward.id == reward.id)
                .where(Reward.is_active.is_(True))
                .where(or_(Reward.stock_limit.is_(None), Reward.redeemed_count < Reward.stock_limit))
                .values(redeemed_count=Reward.redeemed_count + 1)
            )
            if result.rowcount != 1:
                raise RewardUnavailableError('This reward is out of stock')

            self.ledger.debit(
                user_id,
                reward.points_cost,
                f'Redeemed reward: {reward.name}',
                related_reward_id=reward.id,
            )

            now = datetime.utcnow()
            expiry_days = reward.expiry_days or current_app.config.get('REWARD_EXPIRY_DAYS', 30)
            redemption = RewardRedemption(
                user_id=user_id,
                reward_id=reward.id,
                cafe_id=str(cafe_id) if cafe_id is not None else None,
                points_cost=reward.points_cost,
                redemption_code=generate_redemption_code(),
                redeemed_at=now,
                expires_at=now + timedelta(days=expiry_days),
            )
            db.session.add(redemption)
            db.session.commit()
        except InsufficientPointsError as e:
            db.session.rollback()
            return {
                'success': False,
                'error': 'Insufficient points balance',
                'error_code': e.code,
                'points_balance': e.current,
                'points_needed': e.required,
            }
        except SettlementError as e:
            db.session.rollback()
            return {'success': False, 'error': e.message, 'error_code': e.code}
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception(f"Reward redemption failed: user {user_id}, reward {reward_id}")
            return {'success': False, 'error': GENERIC_ERROR_MESSAGE, 'error_code': 'INTERNAL_ERROR'}

        current_app.logger.info(
            f"Reward redeemed: user {user_id} spent {reward.points_cost} pts on {reward.name} "
            f"(code {redemption.redemption_code})"
        )
        return {
            'success': True,
            'redemption': redemption.to_dict(),
            'points_balance': self.ledger.balance(user_id),
        }

    def redemptions_for_user(self, user_id: int, limit: int = 50) -> List[RewardRedemption]:
        return (
            RewardRedemption.query
            .filter_by(user_id=user_id)
            .order_by(RewardRedemption.redeemed_at.desc())
            .limit(limit)
            .all()
        )
