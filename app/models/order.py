"""
Order aggregate models for SipGrounds.

An order is created pending at checkout, then moved forward only by the
settlement service:

    pending -> confirmed -> preparing -> ready -> completed
    pending | confirmed -> cancelled

Line items snapshot the catalog (name, unit price with customizations) so
later catalog edits never change what was charged.
"""
import random
import string
import time
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict
from ..extensions import db


class OrderStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    PREPARING = 'preparing'
    READY = 'ready'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class OrderType(str, Enum):
    PICKUP = 'pickup'
    DELIVERY = 'delivery'
    DINE_IN = 'dine_in'


class PaymentMethod(str, Enum):
    STRIPE = 'stripe'
    POINTS = 'points'
    SIMULATED = 'simulated'


class RefundStatus(str, Enum):
    NONE = 'none'
    PENDING = 'pending'
    PROCESSED = 'processed'
    FAILED = 'failed'


class ItemKind(str, Enum):
    """Which catalog a line item was resolved from."""
    PRODUCT = 'product'
    DRINK = 'drink'
    FOOD = 'food'


# Preparation time estimate (minutes)
PREP_MINUTES_PER_UNIT = 3
PREP_MINUTES_PER_EXTRA = 1
MIN_PREP_MINUTES = 5
MAX_PREP_MINUTES = 30


def generate_order_number() -> str:
    """SG-<epoch millis>-<5 random chars>, assigned once before first flush."""
    suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f'SG-{int(time.time() * 1000)}-{suffix}'


class Order(db.Model):
    """Customer order with its payment, discount and refund state."""
    __tablename__ = 'orders'

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(40), unique=True, nullable=False, default=generate_order_number)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    cafe_id = db.Column(db.String(50))

    # Amounts
    subtotal = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_points_earned = db.Column(db.Integer, default=0)

    # Coupon applied at checkout
    coupon_id = db.Column(db.Integer, db.ForeignKey('coupons.id'))
    coupon_code = db.Column(db.String(30))

    # Fulfilment
    status = db.Column(db.String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    order_type = db.Column(db.String(20), nullable=False, default=OrderType.PICKUP.value)
    pickup_time = db.Column(db.DateTime)
    estimated_ready_time = db.Column(db.DateTime)
    customer_notes = db.Column(db.String(500))
    internal_notes = db.Column(db.Text)

    # Payment
    payment_method = db.Column(db.String(20), nullable=False)  # PaymentMethod
    payment_handle = db.Column(db.String(255), index=True)  # Stripe PaymentIntent or Checkout Session id
    transaction_id = db.Column(db.String(255))
    paid = db.Column(db.Boolean, nullable=False, default=False)
    paid_at = db.Column(db.DateTime)
    failure_reason = db.Column(db.String(500))

    # Refund
    refund_status = db.Column(db.String(20), nullable=False, default=RefundStatus.NONE.value)
    refund_amount = db.Column(db.Numeric(10, 2), default=0)
    refund_id = db.Column(db.String(255))
    refund_reason = db.Column(db.String(500))
    refund_processed_at = db.Column(db.DateTime)
    refund_failure_reason = db.Column(db.String(500))

    confirmed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = db.relationship(
        'OrderItem', backref='order', lazy='selectin',
        cascade='all, delete-orphan', order_by='OrderItem.id'
    )
    coupon = db.relationship('Coupon')

    __table_args__ = (
        db.CheckConstraint('total_amount >= 0', name='total_non_negative'),
        db.CheckConstraint('subtotal >= 0', name='subtotal_non_negative'),
        db.Index('ix_orders_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self):
        return f'<Order {self.order_number}: {self.status} ${self.total_amount}>'

    @property
    def is_paid_by_points(self) -> bool:
        return self.payment_method == PaymentMethod.POINTS.value

    def estimated_prep_minutes(self) -> int:
        """Per unit 3 minutes plus 1 per extra, clamped to 5..30."""
        minutes = 0
        for item in self.items:
            extras = (item.customizations or {}).get('extras') or []
            minutes += (PREP_MINUTES_PER_UNIT + PREP_MINUTES_PER_EXTRA * len(extras)) * item.quantity
        return max(MIN_PREP_MINUTES, min(MAX_PREP_MINUTES, minutes))

    def add_internal_note(self, note: str) -> None:
        stamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S')
        line = f'[{stamp}] {note}'
        self.internal_notes = f'{self.internal_notes}\n{line}' if self.internal_notes else line

    def to_dict(self, include_internal: bool = False) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'order_number': self.order_number,
            'user_id': self.user_id,
            'cafe_id': self.cafe_id,
            'items': [item.to_dict() for item in self.items],
            'subtotal': float(self.subtotal or 0),
            'discount': {
                'amount': float(self.discount_amount or 0),
                'coupon_id': self.coupon_id,
                'coupon_code': self.coupon_code,
            },
            'total_amount': float(self.total_amount or 0),
            'total_points_earned': self.total_points_earned or 0,
            'status': self.status,
            'order_type': self.order_type,
            'pickup_time': self.pickup_time.isoformat() if self.pickup_time else None,
            'estimated_ready_time': self.estimated_ready_time.isoformat() if self.estimated_ready_time else None,
            'customer_notes': self.customer_notes,
            'payment': {
                'method': self.payment_method,
                'handle': self.payment_handle,
                'transaction_id': self.transaction_id,
                'paid': bool(self.paid),
                'paid_at': self.paid_at.isoformat() if self.paid_at else None,
                'failure_reason': self.failure_reason,
            },
            'refund': {
                'status': self.refund_status,
                'amount': float(self.refund_amount or 0),
                'refund_id': self.refund_id,
                'reason': self.refund_reason,
                'processed_at': self.refund_processed_at.isoformat() if self.refund_processed_at else None,
                'failure_reason': self.refund_failure_reason,
            },
            'confirmed_at': self.confirmed_at.isoformat() if self.confirmed_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if include_internal:
            data['internal_notes'] = self.internal_notes
        return data


class OrderItem(db.Model):
    """One cart line, priced and snapshotted at checkout."""
    __tablename__ = 'order_items'

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey('orders.id'), nullable=False, index=True)

    item_kind = db.Column(db.String(20), nullable=False)  # ItemKind
    catalog_item_id = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(50))

    unit_price = db.Column(db.Numeric(10, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    stock_taken = db.Column(db.Integer, nullable=False, default=0)  # Units taken from stock at payment
    customizations = db.Column(db.JSON, default=dict)  # size, milk, extras, special_instructions
    points_earned = db.Column(db.Integer, default=0)  # Per unit, informational

    __table_args__ = (
        db.CheckConstraint('quantity >= 1', name='quantity_positive'),
    )

    def __repr__(self):
        return f'<OrderItem {self.name} x{self.quantity}>'

    @property
    def line_total(self) -> Decimal:
        return Decimal(str(self.unit_price)) * self.quantity

    def to_dict(self):
        return {
            'id': self.id,
            'item_kind': self.item_kind,
            'item_id': self.catalog_item_id,
            'name': self.name,
            'category': self.category,
            'price': float(self.unit_price),
            'quantity': self.quantity,
            'customizations': self.customizations or {},
            'points_earned': self.points_earned or 0,
        }
