"""
Coupon models for SipGrounds.

used_count always equals the number of CouponUsage rows; both are written
together by the coupon service when an order settles.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class CouponType(str, Enum):
    """How a coupon discounts an order."""
    PERCENTAGE = 'percentage'       # value is a percent of the order total
    FIXED_AMOUNT = 'fixed_amount'   # value is a dollar amount
    FREE_ITEM = 'free_item'         # cheapest matching line up to a max value
    POINTS_BONUS = 'points_bonus'   # no monetary discount


class Coupon(db.Model):
    """Discount code redeemable at checkout."""
    __tablename__ = 'coupons'

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), unique=True, nullable=False, index=True)  # Stored upper-case
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))

    coupon_type = db.Column(db.String(20), nullable=False)  # CouponType
    value = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    # free_item parameters
    free_item_category = db.Column(db.String(50))
    free_item_max_value = db.Column(db.Numeric(10, 2))

    # points_bonus parameters
    points_bonus_multiplier = db.Column(db.Numeric(5, 2), default=1)
    points_bonus_base = db.Column(db.Integer, default=0)

    # Limits
    minimum_purchase = db.Column(db.Numeric(10, 2), default=0)
    max_uses = db.Column(db.Integer)  # Null = unlimited
    used_count = db.Column(db.Integer, nullable=False, default=0)
    max_uses_per_user = db.Column(db.Integer, nullable=False, default=1)

    valid_from = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    valid_until = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, default=True)

    applicable_cafes = db.Column(db.JSON, default=list)  # Empty = all cafes

    created_by_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    usages = db.relationship('CouponUsage', backref='coupon', lazy='dynamic')

    __table_args__ = (
        db.CheckConstraint(
            'max_uses IS NULL OR used_count <= max_uses',
            name='used_within_max'
        ),
    )

    def __repr__(self):
        return f'<Coupon {self.code}: {self.coupon_type} {self.value}>'

    def applies_to_cafe(self, cafe_id) -> bool:
        if not self.applicable_cafes or cafe_id is None:
            return True
        return str(cafe_id) in [str(c) for c in self.applicable_cafes]

    def remaining_uses(self):
        if self.max_uses is None:
            return None
        return max(0, self.max_uses - (self.used_count or 0))

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'name': self.name,
            'description': self.description,
            'type': self.coupon_type,
            'value': float(self.value or 0),
            'free_item': {
                'category': self.free_item_category,
                'max_value': float(self.free_item_max_value) if self.free_item_max_value is not None else None,
            } if self.coupon_type == CouponType.FREE_ITEM.value else None,
            'points_bonus': {
                'multiplier': float(self.points_bonus_multiplier or 1),
                'base_points': self.points_bonus_base or 0,
            } if self.coupon_type == CouponType.POINTS_BONUS.value else None,
            'minimum_purchase': float(self.minimum_purchase or 0),
            'max_uses': self.max_uses,
            'used_count': self.used_count or 0,
            'remaining_uses': self.remaining_uses(),
            'max_uses_per_user': self.max_uses_per_user,
            'valid_from': self.valid_from.isoformat() if self.valid_from else None,
            'valid_until': self.valid_until.isoformat() if self.valid_until else None,
            'is_active': self.is_active,
            'applicable_cafes': self.applicable_cafes or [],
        }


class CouponUsage(db.Model):
    """One settled use of a coupon. Append-only."""
    __tablename__ = 'coupon_usages'

    id = db.Column(db.Integer, primary_key=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey('coupons.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), unique=True)
    cafe_id = db.Column(db.String(50))
    discount_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    used_in_store = db.Column(db.Boolean, default=False)
    used_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<CouponUsage coupon={self.coupon_id} user={self.user_id} order={self.order_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'coupon_id': self.coupon_id,
            'coupon_code': self.coupon.code if self.coupon else None,
            'order_id': self.order_id,
            'cafe_id': self.cafe_id,
            'discount_amount': float(self.discount_amount or 0),
            'used_in_store': bool(self.used_in_store),
            'used_at': self.used_at.isoformat() if self.used_at else None,
        }
