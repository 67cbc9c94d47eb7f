"""
Coupon Evaluator for SipGrounds.

Validation checks run in a fixed order and the first failure is reported:
    active -> validity window -> global limit -> per-user limit
    -> minimum purchase -> cafe

Checkout is lenient (a bad code just means no discount). The standalone
validate endpoint is strict and reports the reason.

Usage is recorded once per settled order, after payment is confirmed, under
a row lock on the coupon so two orders cannot both take its last use. Until
then an unpaid pending order that carries the coupon holds one use of it, so
the same user cannot open a second discounted order before the first settles.
"""
import logging
import secrets
import string
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select, update

from ..extensions import db
from ..models.coupon import Coupon, CouponType, CouponUsage
from ..models.order import Order, OrderStatus, PaymentMethod
from ..utils.exceptions import InvalidCouponError, ValidationError
from ..utils.money import ZERO, to_money

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8

# Reasons, in check order
REASON_INACTIVE = 'Coupon is not active'
REASON_NOT_YET_VALID = 'Coupon is not yet valid'
REASON_EXPIRED = 'Coupon has expired'
REASON_LIMIT_REACHED = 'Coupon usage limit reached'
REASON_USER_LIMIT = 'User has reached maximum uses for this coupon'
REASON_WRONG_CAFE = 'Coupon is not valid at this cafe'
REASON_NOT_FOUND = 'Invalid coupon code'


def normalize_code(code: Optional[str]) -> str:
    return (code or '').strip().upper()


def generate_code(length: int = CODE_LENGTH) -> str:
    """Random upper-case alphanumeric code."""
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class CouponService:
    """
    Coupon validation, discount computation and usage recording.

    Usage:
        service = CouponService()
        coupon = service.find_active(code)
        ok, reason = service.validate(coupon, user_id, subtotal, cafe_id)
        discount = service.compute_discount(coupon, subtotal, line_items)
    """

    # ==================== Lookup ====================

    def find_by_code(self, code: str) -> Optional[Coupon]:
        normalized = normalize_code(code)
        if not normalized:
            return None
        return Coupon.query.filter_by(code=normalized).first()

    def find_active(self, code: str) -> Optional[Coupon]:
        """Coupon with this code that is switched on, or None."""
        coupon = self.find_by_code(code)
        if coupon and coupon.is_active:
            return coupon
        return None

    def user_usage_count(self, coupon_id: int, user_id: int) -> int:
        return db.session.execute(
            select(func.count(CouponUsage.id))
            .where(CouponUsage.coupon_id == coupon_id)
            .where(CouponUsage.user_id == user_id)
        ).scalar_one()

    def held_count(self, coupon_id: int, user_id: int = None) -> int:
        """
        Unpaid processor orders carrying the coupon, optionally for one user.

        Points orders settle (and take their use) in the checkout transaction,
        so a pending one has been refused and will never be paid.
        """
        query = (
            select(func.count(Order.id))
            .where(Order.coupon_id == coupon_id)
            .where(Order.status == OrderStatus.PENDING.value)
            .where(Order.paid.is_(False))
            .where(Order.payment_method != PaymentMethod.POINTS.value)
        )
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
        return db.session.execute(query).scalar_one()

    # ==================== Evaluation ====================

    def validate(
        self,
        coupon: Coupon,
        user_id: int,
        order_total,
        cafe_id=None,
        now: datetime = None
    ) -> Tuple[bool, Optional[str]]:
        """
        Check whether a user may apply a coupon to an order of this size.

        Limits count settled uses plus the uses held by unpaid pending orders.

        Returns:
            (True, None) or (False, reason) for the first failing rule
        """
        now = now or datetime.utcnow()

        if not coupon.is_active:
            return False, REASON_INACTIVE

        if coupon.valid_from and now < coupon.valid_from:
            return False, REASON_NOT_YET_VALID
        if coupon.valid_until and now > coupon.valid_until:
            return False, REASON_EXPIRED

        if coupon.max_uses is not None:
            if (coupon.used_count or 0) + self.held_count(coupon.id) >= coupon.max_uses:
                return False, REASON_LIMIT_REACHED

        if coupon.max_uses_per_user is not None and user_id is not None:
            taken = self.user_usage_count(coupon.id, user_id) + self.held_count(coupon.id, user_id)
            if taken >= coupon.max_uses_per_user:
                return False, REASON_USER_LIMIT

        minimum = to_money(coupon.minimum_purchase)
        if minimum > ZERO and to_money(order_total) < minimum:
            return False, f'Minimum purchase of ${minimum:.2f} required'

        if not coupon.applies_to_cafe(cafe_id):
            return False, REASON_WRONG_CAFE

        return True, None

    def compute_discount(self, coupon: Coupon, order_total, line_items: Iterable = ()) -> Decimal:
        """
        Monetary discount for an order. Never negative, never above the total.

        Args:
            coupon: Coupon being applied
            order_total: Pre-discount subtotal
            line_items: Priced lines (anything with category, item_kind, unit_price)
        """
        total = to_money(order_total)
        if total <= ZERO:
            return ZERO

        coupon_type = coupon.coupon_type
        value = to_money(coupon.value)

        if coupon_type == CouponType.PERCENTAGE.value:
            discount = to_money(total * value / Decimal('100'))
        elif coupon_type == CouponType.FIXED_AMOUNT.value:
            discount = value
        elif coupon_type == CouponType.FREE_ITEM.value:
            discount = self._free_item_discount(coupon, line_items)
        else:
            # points_bonus gives no money off
            discount = ZERO

        return max(ZERO, min(discount, total))

    def _free_item_discount(self, coupon: Coupon, line_items: Iterable) -> Decimal:
        """Price of the cheapest matching line within the max value."""
        category = (coupon.free_item_category or '').lower()
        max_value = to_money(coupon.free_item_max_value) if coupon.free_item_max_value is not None else None

        candidates = []
        for line in line_items:
            line_category = (getattr(line, 'category', None) or '').lower()
            line_kind = str(getattr(line, 'item_kind', '') or '').lower()
            if category and category not in (line_category, line_kind):
                continue
            price = to_money(line.unit_price)
            if max_value is not None and price > max_value:
                continue
            candidates.append(price)

        return min(candidates) if candidates else ZERO

    def evaluate_for_checkout(
        self,
        code: Optional[str],
        user_id: int,
        subtotal,
        line_items: Iterable,
        cafe_id=None
    ) -> Tuple[Optional[Coupon], Decimal]:
        """
        Lenient checkout path: an unknown or invalid code gives no discount.

        Returns:
            (coupon or None, discount)
        """
        if not code:
            return None, ZERO

        coupon = self.find_active(code)
        if not coupon:
            logger.info(f"Checkout ignored unknown coupon code {normalize_code(code)}")
            return None, ZERO

        ok, reason = self.validate(coupon, user_id, subtotal, cafe_id)
        if not ok:
            logger.info(f"Checkout ignored coupon {coupon.code} for user {user_id}: {reason}")
            return None, ZERO

        return coupon, self.compute_discount(coupon, subtotal, line_items)

    def validate_code(
        self,
        code: str,
        user_id: int,
        order_total,
        line_items: Iterable = (),
        cafe_id=None
    ) -> Dict[str, Any]:
        """
        Strict validation for the coupon endpoint.

        Returns:
            Dict with the coupon, discount and final total, or the failure reason
        """
        coupon = self.find_by_code(code)
        if not coupon:
            return {'success': False, 'error': REASON_NOT_FOUND, 'error_code': 'NOT_FOUND'}

        ok, reason = self.validate(coupon, user_id, order_total, cafe_id)
        if not ok:
            return {'success': False, 'error': reason, 'error_code': 'INVALID_COUPON'}

        total = to_money(order_total)
        discount = self.compute_discount(coupon, total, line_items)
        return {
            'success': True,
            'coupon': coupon.to_dict(),
            'discount': float(discount),
            'final_total': float(max(ZERO, total - discount)),
        }

    # ==================== Usage ====================

    def record_usage(
        self,
        coupon_id: int,
        user_id: int,
        order_id: Optional[int],
        cafe_id=None,
        discount_amount=ZERO,
        used_in_store: bool = False
    ) -> CouponUsage:
        """
        Take one use of the coupon for a settling order.

        The coupon row is locked first so concurrent settlements of the same
        coupon run one at a time. Limits are re-checked under the lock and the
        method raises before writing anything, so callers can carry on without
        the usage when it is refused. Nothing is committed here.

        Raises:
            InvalidCouponError: Global or per-user limit already reached
        """
        coupon = db.session.execute(
            select(Coupon).where(Coupon.id == coupon_id).with_for_update()
        ).scalar_one_or_none()
        if coupon is None:
            raise InvalidCouponError(REASON_NOT_FOUND)

        if coupon.max_uses_per_user is not None:
            if self.user_usage_count(coupon_id, user_id) >= coupon.max_uses_per_user:
                raise InvalidCouponError(REASON_USER_LIMIT)

        result = db.session.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id)
            .where(or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses))
            .values(used_count=Coupon.used_count + 1)
        )
        if result.rowcount != 1:
            raise InvalidCouponError(REASON_LIMIT_REACHED)

        usage = CouponUsage(
            coupon_id=coupon_id,
            user_id=user_id,
            order_id=order_id,
            cafe_id=str(cafe_id) if cafe_id is not None else None,
            discount_amount=to_money(discount_amount),
            used_in_store=used_in_store,
        )
        db.session.add(usage)
        logger.info(f"Coupon {coupon.code} used by user {user_id} on order {order_id}")
        return usage

    def apply_in_store(self, code: str, user_id: int, order_total, cafe_id=None) -> Dict[str, Any]:
        """Redeem a coupon at the counter, outside an app order."""
        validation = self.validate_code(code, user_id, order_total, cafe_id=cafe_id)
        if not validation['success']:
            return validation

        coupon = self.find_by_code(code)
        try:
            usage = self.record_usage(
                coupon.id, user_id, None, cafe_id,
                discount_amount=validation['discount'], used_in_store=True
            )
            db.session.commit()
        except InvalidCouponError as e:
            db.session.rollback()
            return {'success': False, 'error': e.message, 'error_code': e.code}

        validation['usage'] = usage.to_dict()
        return validation

    # ==================== Administration ====================

    def create_coupon(self, data: Dict[str, Any], created_by_id: int = None) -> Dict[str, Any]:
        """
        Generate a coupon with a fresh random code.

        Args:
            data: name, type, value and optional limits; valid_days defaults to 30
            created_by_id: Staff user creating it
        """
        try:
            coupon = self._build_coupon(data, created_by_id)
        except ValidationError as e:
            return {'success': False, 'error': e.message, 'error_code': 'VALIDATION_ERROR'}

        for _ in range(10):
            code = generate_code()
            if not Coupon.query.filter_by(code=code).first():
                coupon.code = code
                break
        else:
            return {'success': False, 'error': 'Could not generate a unique code', 'error_code': 'INTERNAL_ERROR'}

        db.session.add(coupon)
        db.session.commit()
        logger.info(f"Coupon {coupon.code} generated by user {created_by_id}")
        return {'success': True, 'coupon': coupon.to_dict()}

    def _build_coupon(self, data: Dict[str, Any], created_by_id: int = None) -> Coupon:
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError('name is required', 'name')

        coupon_type = data.get('type') or data.get('coupon_type')
        valid_types = [t.value for t in CouponType]
        if coupon_type not in valid_types:
            raise ValidationError(f'type must be one of: {valid_types}', 'type')

        try:
            value = to_money(data.get('value', 0))
            valid_days = int(data.get('valid_days', 30))
            max_uses = data.get('max_uses')
            max_uses = int(max_uses) if max_uses is not None else None
            max_per_user = int(data.get('max_uses_per_user', 1))
        except (ArithmeticError, TypeError, ValueError):
            raise ValidationError('value, valid_days and limits must be numbers')

        if value < ZERO:
            raise ValidationError('value must not be negative', 'value')
        if coupon_type == CouponType.PERCENTAGE.value and value > Decimal('100'):
            raise ValidationError('percentage value must be at most 100', 'value')
        if valid_days < 1:
            raise ValidationError('valid_days must be positive', 'valid_days')

        now = datetime.utcnow()
        free_item = data.get('free_item') or {}
        points_bonus = data.get('points_bonus') or {}

        return Coupon(
            name=name,
            description=data.get('description'),
            coupon_type=coupon_type,
            value=value,
            free_item_category=free_item.get('category'),
            free_item_max_value=to_money(free_item['max_value']) if free_item.get('max_value') is not None else None,
            points_bonus_multiplier=points_bonus.get('multiplier', 1),
            points_bonus_base=int(points_bonus.get('base_points', 0)),
            minimum_purchase=to_money(data.get('minimum_purchase', 0)),
            max_uses=max_uses,
            max_uses_per_user=max_per_user,
            valid_from=now,
            valid_until=now + timedelta(days=valid_days),
            is_active=True,
            applicable_cafes=[str(c) for c in data.get('applicable_cafes') or []],
            created_by_id=created_by_id,
        )

    def list_active(self, cafe_id=None) -> List[Coupon]:
        """Coupons a customer could use right now."""
        now = datetime.utcnow()
        coupons = (
            Coupon.query
            .filter(Coupon.is_active.is_(True))
            .filter(Coupon.valid_from <= now)
            .filter(Coupon.valid_until >= now)
            .filter(or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses))
            .order_by(Coupon.valid_until.asc())
            .all()
        )
        return [c for c in coupons if c.applies_to_cafe(cafe_id)]

    def usage_for_user(self, user_id: int, limit: int = 50) -> List[CouponUsage]:
        return (
            CouponUsage.query
            .filter_by(user_id=user_id)
            .order_by(CouponUsage.used_at.desc())
            .limit(limit)
            .all()
        )
