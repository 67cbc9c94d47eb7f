"""
Rewards catalog and redemption records.

Users spend points on rewards; each redemption debits the points ledger and
bumps redeemed_count in the same transaction.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from ..extensions import db


class RewardCategory(str, Enum):
    DRINK = 'drink'
    FOOD = 'food'
    PASTRY = 'pastry'
    MERCHANDISE = 'merchandise'
    EXPERIENCE = 'experience'


class Reward(db.Model):
    """
    Redeemable rewards catalog.

    Design notes:
    - stock_limit NULL means unlimited
    - applicable_cafes empty means every cafe
    - expiry_days is how long the redemption code stays valid
    """
    __tablename__ = 'rewards'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(1000))
    category = db.Column(db.String(30), nullable=False)  # RewardCategory
    points_cost = db.Column(db.Integer, nullable=False)
    monetary_value = db.Column(db.Numeric(10, 2))
    image_url = db.Column(db.String(500))

    is_active = db.Column(db.Boolean, default=True)
    stock_limit = db.Column(db.Integer)
    redeemed_count = db.Column(db.Integer, nullable=False, default=0)

    applicable_cafes = db.Column(db.JSON, default=list)
    max_per_user = db.Column(db.Integer)
    expiry_days = db.Column(db.Integer, default=30)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    redemptions = db.relationship('RewardRedemption', backref='reward', lazy='dynamic')

    __table_args__ = (
        db.CheckConstraint('points_cost >= 1', name='points_cost_positive'),
        db.CheckConstraint(
            'stock_limit IS NULL OR redeemed_count <= stock_limit',
            name='redeemed_within_stock'
        ),
        db.Index('ix_rewards_category_active', 'category', 'is_active'),
    )

    def __repr__(self):
        return f'<Reward {self.name}: {self.points_cost} pts>'

    def is_available(self) -> bool:
        """Active and not sold out."""
        if not self.is_active:
            return False
        if self.stock_limit is not None and (self.redeemed_count or 0) >= self.stock_limit:
            return False
        return True

    def remaining_quantity(self) -> Optional[int]:
        if self.stock_limit is None:
            return None
        return max(0, self.stock_limit - (self.redeemed_count or 0))

    def applies_to_cafe(self, cafe_id) -> bool:
        if not self.applicable_cafes or cafe_id is None:
            return True
        return str(cafe_id) in [str(c) for c in self.applicable_cafes]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'category': self.category,
            'points_cost': self.points_cost,
            'monetary_value': float(self.monetary_value) if self.monetary_value is not None else None,
            'image_url': self.image_url,
            'is_active': self.is_active,
            'is_available': self.is_available(),
            'stock_limit': self.stock_limit,
            'redeemed_count': self.redeemed_count or 0,
            'remaining_quantity': self.remaining_quantity(),
            'applicable_cafes': self.applicable_cafes or [],
            'max_per_user': self.max_per_user,
            'expiry_days': self.expiry_days,
        }


class RewardRedemption(db.Model):
    """A user's claimed reward, shown at the counter by its code."""
    __tablename__ = 'reward_redemptions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    reward_id = db.Column(db.Integer, db.ForeignKey('rewards.id'), nullable=False, index=True)
    cafe_id = db.Column(db.String(50))

    points_cost = db.Column(db.Integer, nullable=False)
    redemption_code = db.Column(db.String(20), unique=True, nullable=False)

    redeemed_at = db.Column(db.DateTime, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime)
    used_at = db.Column(db.DateTime)

    def __repr__(self):
        return f'<RewardRedemption {self.redemption_code}: reward {self.reward_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'reward_id': self.reward_id,
            'reward_name': self.reward.name if self.reward else None,
            'cafe_id': self.cafe_id,
            'points_cost': self.points_cost,
            'redemption_code': self.redemption_code,
            'redeemed_at': self.redeemed_at.isoformat() if self.redeemed_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'used_at': self.used_at.isoformat() if self.used_at else None,
        }
