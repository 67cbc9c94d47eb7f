"""
Concurrency tests for the guarded counters.

These run against a SQLite file instead of the shared in-memory database so
every thread gets its own connection and its own session. Threads wait on a
barrier and then hit the same order, balance or coupon together.
"""
import threading
from decimal import Decimal

import pytest

from app import create_app
from app.config import TestingConfig
from app.extensions import db
from app.models import Coupon, Product, User
from app.models.coupon import CouponUsage
from app.models.order import Order
from app.services.coupon_service import REASON_LIMIT_REACHED, CouponService
from app.services.points_service import PointsLedger
from app.services.settlement_service import SettlementService
from app.utils.exceptions import InvalidCouponError
from tests.conftest import make_coupon

THREADS = 5


@pytest.fixture
def file_app(tmp_path, monkeypatch):
    monkeypatch.setattr(TestingConfig, 'SQLALCHEMY_DATABASE_URI', f"sqlite:///{tmp_path / 'settlement.db'}")
    monkeypatch.setattr(
        TestingConfig, 'SQLALCHEMY_ENGINE_OPTIONS',
        {'connect_args': {'timeout': 30, 'check_same_thread': False}},
        raising=False,
    )
    app = create_app('testing')
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def run_together(app, work, count=THREADS):
    """Call work(index) from count threads released at the same moment."""
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        with app.app_context():
            try:
                barrier.wait(timeout=30)
                results[index] = work(index)
            except Exception as e:
                results[index] = e
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    errors = [r for r in results if isinstance(r, Exception)]
    assert not errors, errors
    return results


def seed_users(count):
    users = [
        User(id=i + 1, email=f'guest{i + 1}@example.com', username=f'guest{i + 1}', role='customer', points=0)
        for i in range(count)
    ]
    db.session.add_all(users)
    db.session.commit()
    return [u.id for u in users]


def seed_beans():
    beans = Product(name='House Blend 250g', category='coffee', price=Decimal('10.00'), stock_quantity=5)
    db.session.add(beans)
    db.session.commit()
    return beans.id


class TestConcurrentSettlement:
    """Tests for settlement under simultaneous requests."""

    def test_points_balance_pays_once(self, file_app):
        """Test that ten points pay for exactly one of five simultaneous $10 orders."""
        with file_app.app_context():
            user_id = seed_users(1)[0]
            beans_id = seed_beans()
            PointsLedger().credit(user_id, 10, 'Test grant')
            db.session.commit()

        def pay(_):
            service = SettlementService(gateway=file_app.extensions['payment_gateway'])
            return service.checkout(
                user_id, [{'item_id': beans_id, 'item_type': 'product', 'quantity': 1}], use_points=True
            )

        results = run_together(file_app, pay)

        assert sum(1 for r in results if r['success']) == 1
        assert {r['error_code'] for r in results if not r['success']} == {'INSUFFICIENT_POINTS'}
        with file_app.app_context():
            check = PointsLedger().verify(user_id)
            assert check['balance'] == 0
            assert check['consistent'] is True
            assert db.session.get(Product, beans_id).stock_quantity == 4
            assert Order.query.filter_by(paid=True).count() == 1

    def test_processor_payment_confirmed_once(self, file_app):
        """Test that simultaneous confirmations credit points and take stock once."""
        with file_app.app_context():
            user_id = seed_users(1)[0]
            beans_id = seed_beans()
            service = SettlementService(gateway=file_app.extensions['payment_gateway'])
            started = service.checkout(user_id, [{'item_id': beans_id, 'item_type': 'product', 'quantity': 1}])
            assert started['success'], started
            order_id = started['order']['id']

        def confirm(_):
            service = SettlementService(gateway=file_app.extensions['payment_gateway'])
            return service.confirm_payment(user_id, order_id=order_id)

        results = run_together(file_app, confirm)

        assert all(r['success'] for r in results)
        assert sum(1 for r in results if not r.get('already_settled')) == 1
        with file_app.app_context():
            assert PointsLedger().balance(user_id) == 10
            assert PointsLedger().verify(user_id)['consistent'] is True
            assert db.session.get(Product, beans_id).stock_quantity == 4

    def test_last_coupon_use_taken_once(self, file_app):
        """Test that a coupon with one use left is recorded for exactly one of five users."""
        with file_app.app_context():
            user_ids = seed_users(THREADS)
            coupon_id = make_coupon('LASTONE', max_uses=1).id

        def take(index):
            try:
                usage = CouponService().record_usage(coupon_id, user_ids[index], None)
                db.session.commit()
                return usage.id
            except InvalidCouponError as e:
                db.session.rollback()
                return e.reason

        results = run_together(file_app, take)

        assert sum(1 for r in results if isinstance(r, int)) == 1
        assert [r for r in results if not isinstance(r, int)] == [REASON_LIMIT_REACHED] * (THREADS - 1)
        with file_app.app_context():
            assert db.session.get(Coupon, coupon_id).used_count == 1
            assert CouponUsage.query.filter_by(coupon_id=coupon_id).count() == 1
