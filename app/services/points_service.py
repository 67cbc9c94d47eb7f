"""
Points Ledger for SipGrounds.

The user's points column is a cached balance over the append-only
points_history table:

    points == sum(earned) - sum(redeemed),  points >= 0

Every change is a single conditional UPDATE on users plus one history row,
inside the caller's transaction. A debit whose guard fails changes nothing,
so two requests racing on the same balance can never both spend it.

Earning rule: floor(total_amount) points for an order paid through the
payment processor. Orders paid with points earn nothing.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update

from ..extensions import db
from ..models.user import PointsEntryType, PointsHistoryEntry, User
from ..utils.exceptions import InsufficientPointsError, UserNotFoundError
from ..utils.money import floor_points

logger = logging.getLogger(__name__)


def points_for_total(total_amount) -> int:
    """Points earned for a paid order total."""
    return max(0, floor_points(total_amount))


class PointsLedger:
    """
    Central service for points balance changes.

    credit() and debit() do not commit; the settlement and reward services
    commit or roll back around them.

    Usage:
        ledger = PointsLedger()
        ledger.credit(user.id, 12, 'Order SG-...', related_order_id=order.id)
        ledger.debit(user.id, 150, 'Reward: Free Latte', related_reward_id=reward.id)
        db.session.commit()
    """

    def credit(
        self,
        user_id: int,
        amount: int,
        description: str,
        related_order_id: int = None,
        related_reward_id: int = None
    ) -> Optional[PointsHistoryEntry]:
        """
        Add points and append an earned entry.

        Non-positive amounts are a no-op (an order under $1 earns nothing).

        Raises:
            UserNotFoundError: No such user
        """
        amount = int(amount)
        if amount <= 0:
            return None

        result = db.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(points=User.points + amount)
        )
        if result.rowcount != 1:
            raise UserNotFoundError(user_id)

        entry = PointsHistoryEntry(
            user_id=user_id,
            entry_type=PointsEntryType.EARNED.value,
            amount=amount,
            description=description,
            related_order_id=related_order_id,
            related_reward_id=related_reward_id,
        )
        db.session.add(entry)
        logger.info(f"Points credited: user {user_id} +{amount} ({description})")
        return entry

    def debit(
        self,
        user_id: int,
        amount: int,
        description: str,
        related_order_id: int = None,
        related_reward_id: int = None,
        minimum_balance: int = None
    ) -> Optional[PointsHistoryEntry]:
        """
        Remove points if, and only if, the balance covers them.

        Args:
            user_id: User to debit
            amount: Points to remove
            description: History text
            related_order_id: Order paid with these points
            related_reward_id: Reward bought with these points
            minimum_balance: Balance required for the debit to go through when
                it is larger than amount (points-paid orders require the
                balance to cover the unrounded total)

        Raises:
            InsufficientPointsError: Balance below the guard; nothing changed
            UserNotFoundError: No such user
        """
        amount = int(amount)
        if amount < 0:
            raise ValueError('Debit amount must not be negative')

        guard = max(amount, minimum_balance or 0)
        result = db.session.execute(
            update(User)
            .where(User.id == user_id)
            .where(User.points >= guard)
            .values(points=User.points - amount)
        )
        if result.rowcount != 1:
            current = db.session.execute(
                select(User.points).where(User.id == user_id)
            ).scalar_one_or_none()
            if current is None:
                raise UserNotFoundError(user_id)
            raise InsufficientPointsError(current, guard)

        if amount == 0:
            return None

        entry = PointsHistoryEntry(
            user_id=user_id,
            entry_type=PointsEntryType.REDEEMED.value,
            amount=amount,
            description=description,
            related_order_id=related_order_id,
            related_reward_id=related_reward_id,
        )
        db.session.add(entry)
        logger.info(f"Points debited: user {user_id} -{amount} ({description})")
        return entry

    # ==================== Queries ====================

    def balance(self, user_id: int) -> int:
        points = db.session.execute(
            select(User.points).where(User.id == user_id)
        ).scalar_one_or_none()
        if points is None:
            raise UserNotFoundError(user_id)
        return points

    def history(self, user_id: int, limit: int = 50, offset: int = 0) -> List[PointsHistoryEntry]:
        return (
            PointsHistoryEntry.query
            .filter_by(user_id=user_id)
            .order_by(PointsHistoryEntry.created_at.desc(), PointsHistoryEntry.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def history_total(self, user_id: int) -> int:
        """Balance recomputed from the history entries."""
        rows = db.session.execute(
            select(PointsHistoryEntry.entry_type, func.coalesce(func.sum(PointsHistoryEntry.amount), 0))
            .where(PointsHistoryEntry.user_id == user_id)
            .group_by(PointsHistoryEntry.entry_type)
        ).all()
        totals = {entry_type: int(total) for entry_type, total in rows}
        return totals.get(PointsEntryType.EARNED.value, 0) - totals.get(PointsEntryType.REDEEMED.value, 0)

    def verify(self, user_id: int) -> Dict[str, Any]:
        """
        Compare the cached balance with the history.

        Returns:
            Dict with balance, history_total and consistent flag
        """
        balance = self.balance(user_id)
        history_total = self.history_total(user_id)
        if balance != history_total:
            logger.error(
                f"Points ledger mismatch for user {user_id}: balance {balance}, history {history_total}"
            )
        return {
            'user_id': user_id,
            'balance': balance,
            'history_total': history_total,
            'consistent': balance == history_total,
        }

    def summary(self, user_id: int, limit: int = 20) -> Dict[str, Any]:
        """Balance and recent history for the points endpoints."""
        try:
            balance = self.balance(user_id)
        except UserNotFoundError as e:
            return {'success': False, 'error': e.message, 'error_code': e.code}

        return {
            'success': True,
            'points': balance,
            'history': [entry.to_dict() for entry in self.history(user_id, limit=limit)],
        }
