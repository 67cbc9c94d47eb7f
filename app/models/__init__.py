"""
Database models for SipGrounds.
Orders, loyalty points, coupons and rewards for the café app.
"""
from .user import User, PointsHistoryEntry, PointsEntryType
from .catalog import Product, MenuItem, ProductCategory, MenuItemType
from .order import (
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    PaymentMethod,
    RefundStatus,
    ItemKind,
    generate_order_number,
)
from .coupon import Coupon, CouponUsage, CouponType
from .reward import Reward, RewardRedemption, RewardCategory

__all__ = [
    'User',
    'PointsHistoryEntry',
    'PointsEntryType',
    'Product',
    'MenuItem',
    'ProductCategory',
    'MenuItemType',
    'Order',
    'OrderItem',
    'OrderStatus',
    'OrderType',
    'PaymentMethod',
    'RefundStatus',
    'ItemKind',
    'generate_order_number',
    'Coupon',
    'CouponUsage',
    'CouponType',
    'Reward',
    'RewardRedemption',
    'RewardCategory',
]
