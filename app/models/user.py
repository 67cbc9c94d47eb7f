"""
User and points history models for SipGrounds.

A user's points balance is a cached sum of the append-only history:
    points == sum(earned) - sum(redeemed)
Only the points ledger service writes either of them.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class PointsEntryType(str, Enum):
    """Direction of a points history entry."""
    EARNED = 'earned'
    REDEEMED = 'redeemed'


class User(db.Model):
    """
    Café customer (or staff member) known to the settlement engine.

    Identity comes from the upstream auth layer; rows are provisioned the
    first time a user id is seen.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    username = db.Column(db.String(100))
    role = db.Column(db.String(20), default='customer')  # customer, staff

    points = db.Column(db.Integer, nullable=False, default=0)

    # Stripe customer for saved cards
    stripe_customer_id = db.Column(db.String(100))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    points_history = db.relationship(
        'PointsHistoryEntry', backref='user', lazy='dynamic',
        order_by='PointsHistoryEntry.created_at.desc()'
    )
    orders = db.relationship('Order', backref='user', lazy='dynamic')

    __table_args__ = (
        db.CheckConstraint('points >= 0', name='points_non_negative'),
    )

    def __repr__(self):
        return f'<User {self.email}: {self.points} pts>'

    @property
    def is_staff(self) -> bool:
        return self.role == 'staff'

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'username': self.username,
            'points': self.points or 0,
            'role': self.role,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }


class PointsHistoryEntry(db.Model):
    """One earned or redeemed movement of points. Never updated or deleted."""
    __tablename__ = 'points_history'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)

    entry_type = db.Column(db.String(20), nullable=False)  # PointsEntryType
    amount = db.Column(db.Integer, nullable=False)  # Always positive
    description = db.Column(db.String(500))

    related_order_id = db.Column(db.Integer, db.ForeignKey('orders.id'))
    related_reward_id = db.Column(db.Integer, db.ForeignKey('rewards.id'))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint('amount > 0', name='amount_positive'),
    )

    def __repr__(self):
        return f'<PointsHistoryEntry {self.entry_type} {self.amount} for user {self.user_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.entry_type,
            'amount': self.amount,
            'description': self.description,
            'related_order_id': self.related_order_id,
            'related_reward_id': self.related_reward_id,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }
