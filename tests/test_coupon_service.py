"""
Tests for the Coupon Evaluator.

Covers rule order, discount computation per coupon type, the lenient
checkout path versus strict validation, and guarded usage recording.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.extensions import db
from app.models.coupon import Coupon, CouponUsage
from app.models.order import Order
from app.services.coupon_service import (
    REASON_EXPIRED,
    REASON_INACTIVE,
    REASON_LIMIT_REACHED,
    REASON_NOT_YET_VALID,
    REASON_USER_LIMIT,
    REASON_WRONG_CAFE,
    CouponService,
    normalize_code,
)
from app.utils.exceptions import InvalidCouponError
from tests.conftest import make_coupon


def line(category, unit_price, item_kind='drink'):
    return SimpleNamespace(category=category, item_kind=item_kind, unit_price=Decimal(unit_price))


class TestCouponValidation:
    """Tests for CouponService.validate rule order."""

    def test_valid_coupon(self, customer, percent_coupon):
        assert CouponService().validate(percent_coupon, customer.id, Decimal('10.00')) == (True, None)

    def test_inactive(self, customer, percent_coupon):
        percent_coupon.is_active = False
        assert CouponService().validate(percent_coupon, customer.id, 10) == (False, REASON_INACTIVE)

    def test_not_yet_valid(self, customer):
        coupon = make_coupon('SOON', valid_from=datetime.utcnow() + timedelta(days=2))
        assert CouponService().validate(coupon, customer.id, 10) == (False, REASON_NOT_YET_VALID)

    def test_expired(self, customer):
        coupon = make_coupon('OLD', valid_until=datetime.utcnow() - timedelta(minutes=1))
        assert CouponService().validate(coupon, customer.id, 10) == (False, REASON_EXPIRED)

    def test_global_limit(self, customer):
        coupon = make_coupon('ONCE', max_uses=1, used_count=1)
        assert CouponService().validate(coupon, customer.id, 10) == (False, REASON_LIMIT_REACHED)

    def test_per_user_limit(self, customer, other_customer, percent_coupon):
        """Test that one user's usage does not block another user."""
        db.session.add(CouponUsage(coupon_id=percent_coupon.id, user_id=customer.id, discount_amount=Decimal('2')))
        db.session.commit()

        service = CouponService()
        assert service.validate(percent_coupon, customer.id, 10) == (False, REASON_USER_LIMIT)
        assert service.validate(percent_coupon, other_customer.id, 10) == (True, None)

    def test_open_order_holds_a_use(self, customer, other_customer, percent_coupon):
        """Test that an unpaid processor order counts against the per-user limit."""
        db.session.add(Order(
            user_id=customer.id, coupon_id=percent_coupon.id, coupon_code='SAVE20',
            subtotal=Decimal('10'), discount_amount=Decimal('2'), total_amount=Decimal('8'),
            payment_method='simulated',
        ))
        db.session.commit()

        service = CouponService()
        assert service.held_count(percent_coupon.id, customer.id) == 1
        assert service.validate(percent_coupon, customer.id, 10) == (False, REASON_USER_LIMIT)
        assert service.validate(percent_coupon, other_customer.id, 10) == (True, None)

    def test_minimum_purchase(self, customer, percent_coupon):
        ok, reason = CouponService().validate(percent_coupon, customer.id, Decimal('4.99'))

        assert ok is False
        assert reason == 'Minimum purchase of $5.00 required'

    def test_minimum_purchase_is_inclusive(self, customer, percent_coupon):
        assert CouponService().validate(percent_coupon, customer.id, Decimal('5.00')) == (True, None)

    def test_wrong_cafe(self, customer):
        coupon = make_coupon('DOWNTOWN', applicable_cafes=['cafe-1'])
        service = CouponService()

        assert service.validate(coupon, customer.id, 10, cafe_id='cafe-2') == (False, REASON_WRONG_CAFE)
        assert service.validate(coupon, customer.id, 10, cafe_id='cafe-1') == (True, None)

    def test_first_failure_wins(self, customer):
        """Test that an inactive, expired coupon reports inactive."""
        coupon = make_coupon(
            'DEAD', is_active=False,
            valid_until=datetime.utcnow() - timedelta(days=1),
            minimum_purchase=Decimal('50'),
        )
        assert CouponService().validate(coupon, customer.id, 10) == (False, REASON_INACTIVE)


class TestComputeDiscount:
    """Tests for CouponService.compute_discount."""

    def test_percentage(self, percent_coupon):
        """Test 20% of a $10.00 subtotal."""
        assert CouponService().compute_discount(percent_coupon, Decimal('10.00')) == Decimal('2.00')

    def test_percentage_rounds_to_cents(self, app):
        coupon = make_coupon('THIRD', value='33.33')
        assert CouponService().compute_discount(coupon, Decimal('10.00')) == Decimal('3.33')

    def test_fixed_amount(self, fixed_coupon):
        assert CouponService().compute_discount(fixed_coupon, Decimal('12.00')) == Decimal('5.00')

    def test_fixed_amount_capped_at_total(self, fixed_coupon):
        assert CouponService().compute_discount(fixed_coupon, Decimal('3.00')) == Decimal('3.00')

    def test_free_item_takes_cheapest_matching_line(self, free_pastry_coupon):
        lines = [
            line('espresso', '5.25'),
            line('pastry', '3.75', 'food'),
            line('pastry', '3.25', 'food'),
        ]
        discount = CouponService().compute_discount(free_pastry_coupon, Decimal('12.25'), lines)
        assert discount == Decimal('3.25')

    def test_free_item_respects_max_value(self, free_pastry_coupon):
        lines = [line('pastry', '4.50', 'food')]
        assert CouponService().compute_discount(free_pastry_coupon, Decimal('4.50'), lines) == Decimal('0.00')

    def test_free_item_without_match(self, free_pastry_coupon):
        lines = [line('espresso', '3.00')]
        assert CouponService().compute_discount(free_pastry_coupon, Decimal('3.00'), lines) == Decimal('0.00')

    def test_points_bonus_gives_no_money_off(self, app):
        coupon = make_coupon('DOUBLE', 'points_bonus', '0', points_bonus_multiplier=Decimal('2'))
        assert CouponService().compute_discount(coupon, Decimal('20.00')) == Decimal('0.00')

    def test_zero_total(self, percent_coupon):
        assert CouponService().compute_discount(percent_coupon, 0) == Decimal('0.00')


class TestCheckoutAndStrictPaths:
    """The checkout path ignores bad codes; the validate endpoint reports them."""

    def test_checkout_ignores_unknown_code(self, customer):
        coupon, discount = CouponService().evaluate_for_checkout('NOPE', customer.id, Decimal('10'), [])
        assert coupon is None
        assert discount == Decimal('0.00')

    def test_checkout_ignores_failing_coupon(self, customer, percent_coupon):
        coupon, discount = CouponService().evaluate_for_checkout('save20', customer.id, Decimal('4.00'), [])
        assert coupon is None
        assert discount == Decimal('0.00')

    def test_checkout_applies_valid_coupon(self, customer, percent_coupon):
        coupon, discount = CouponService().evaluate_for_checkout(' save20 ', customer.id, Decimal('10.00'), [])
        assert coupon.id == percent_coupon.id
        assert discount == Decimal('2.00')

    def test_validate_code_unknown(self, customer):
        result = CouponService().validate_code('NOPE', customer.id, 10)

        assert result['success'] is False
        assert result['error'] == 'Invalid coupon code'
        assert result['error_code'] == 'NOT_FOUND'

    def test_validate_code_reports_reason(self, customer, percent_coupon):
        result = CouponService().validate_code('SAVE20', customer.id, 4)

        assert result['success'] is False
        assert result['error_code'] == 'INVALID_COUPON'
        assert result['error'] == 'Minimum purchase of $5.00 required'

    def test_validate_code_success(self, customer, percent_coupon):
        result = CouponService().validate_code('SAVE20', customer.id, 10)

        assert result['success'] is True
        assert result['discount'] == 2.0
        assert result['final_total'] == 8.0
        assert result['coupon']['code'] == 'SAVE20'


class TestRecordUsage:
    """Tests for the guarded usage write."""

    def test_records_usage_and_increments(self, customer, percent_coupon):
        usage = CouponService().record_usage(percent_coupon.id, customer.id, None, 'cafe-1', Decimal('2.00'))
        db.session.commit()
        db.session.refresh(percent_coupon)

        assert percent_coupon.used_count == 1
        assert usage.cafe_id == 'cafe-1'
        assert usage.discount_amount == Decimal('2.00')

    def test_per_user_limit_refused_without_writes(self, customer, percent_coupon):
        service = CouponService()
        service.record_usage(percent_coupon.id, customer.id, None)
        db.session.commit()

        with pytest.raises(InvalidCouponError) as exc_info:
            service.record_usage(percent_coupon.id, customer.id, None)
        db.session.rollback()
        db.session.refresh(percent_coupon)

        assert exc_info.value.reason == REASON_USER_LIMIT
        assert percent_coupon.used_count == 1
        assert CouponUsage.query.count() == 1

    def test_global_limit_refused(self, customer, other_customer):
        """Test that the last use cannot be taken twice."""
        coupon = make_coupon('LASTONE', max_uses=1)
        service = CouponService()
        service.record_usage(coupon.id, customer.id, None)
        db.session.commit()

        with pytest.raises(InvalidCouponError) as exc_info:
            service.record_usage(coupon.id, other_customer.id, None)
        db.session.rollback()
        db.session.refresh(coupon)

        assert exc_info.value.reason == REASON_LIMIT_REACHED
        assert coupon.used_count == 1

    def test_apply_in_store(self, customer, percent_coupon):
        result = CouponService().apply_in_store('SAVE20', customer.id, 10)

        assert result['success'] is True
        assert result['usage']['used_in_store'] is True
        assert CouponService().apply_in_store('SAVE20', customer.id, 10)['error_code'] == 'INVALID_COUPON'


class TestCouponAdministration:

    def test_create_coupon(self, staff_user):
        result = CouponService().create_coupon(
            {'name': 'Spring Sale', 'type': 'percentage', 'value': 15, 'max_uses': 100},
            created_by_id=staff_user.id,
        )

        assert result['success'] is True
        code = result['coupon']['code']
        assert len(code) == 8
        assert code == code.upper()
        coupon = Coupon.query.filter_by(code=code).one()
        assert (coupon.valid_until - coupon.valid_from).days == 30
        assert coupon.max_uses_per_user == 1

    def test_create_free_item_coupon(self, staff_user):
        result = CouponService().create_coupon({
            'name': 'Free Pastry',
            'type': 'free_item',
            'free_item': {'category': 'pastry', 'max_value': 4},
            'valid_days': 7,
        })

        assert result['success'] is True
        assert result['coupon']['free_item'] == {'category': 'pastry', 'max_value': 4.0}

    @pytest.mark.parametrize('data', [
        {'type': 'percentage', 'value': 10},
        {'name': 'X', 'type': 'bogus', 'value': 10},
        {'name': 'X', 'type': 'percentage', 'value': 150},
        {'name': 'X', 'type': 'fixed_amount', 'value': -1},
        {'name': 'X', 'type': 'fixed_amount', 'value': 'lots'},
        {'name': 'X', 'type': 'fixed_amount', 'value': 1, 'valid_days': 0},
    ])
    def test_create_coupon_rejects_bad_input(self, app, data):
        result = CouponService().create_coupon(data)

        assert result['success'] is False
        assert result['error_code'] == 'VALIDATION_ERROR'

    def test_list_active(self, customer, percent_coupon):
        make_coupon('OLD', valid_until=datetime.utcnow() - timedelta(days=1))
        make_coupon('USEDUP', max_uses=1, used_count=1)
        make_coupon('OTHERCAFE', applicable_cafes=['cafe-9'])

        codes = [c.code for c in CouponService().list_active(cafe_id='cafe-1')]

        assert codes == ['SAVE20']

    def test_normalize_code(self):
        assert normalize_code('  save20 ') == 'SAVE20'
        assert normalize_code(None) == ''
