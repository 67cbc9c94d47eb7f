"""
Shared fixtures for the SipGrounds test suite.

Each test gets a fresh in-memory database and a SimulatedGateway. The app
context stays pushed for the whole test so objects created in fixtures are
still attached when the test client handles a request.
"""
import json
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app import create_app
from app.extensions import db
from app.models import Coupon, MenuItem, Product, Reward, User
from app.services.points_service import PointsLedger


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gateway(app):
    """The SimulatedGateway registered on the app."""
    return app.extensions['payment_gateway']


@pytest.fixture
def ledger(app):
    return PointsLedger()


# ============================================================================
# USERS
# ============================================================================

def _make_user(user_id, email, role='customer'):
    user = User(id=user_id, email=email, username=email.split('@')[0], role=role, points=0)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def customer(app):
    return _make_user(1, 'ava@example.com')


@pytest.fixture
def other_customer(app):
    return _make_user(2, 'ben@example.com')


@pytest.fixture
def staff_user(app):
    return _make_user(99, 'barista@sipgrounds.example', role='staff')


@pytest.fixture
def give_points(ledger):
    """Credit points through the ledger so balance and history agree."""
    def _give(user, amount):
        ledger.credit(user.id, amount, 'Test grant')
        db.session.commit()
        return ledger.balance(user.id)
    return _give


def auth_headers(user):
    return {
        'X-User-Id': str(user.id),
        'X-User-Email': user.email,
        'X-User-Role': user.role,
    }


@pytest.fixture
def headers(customer):
    return auth_headers(customer)


@pytest.fixture
def staff_headers(staff_user):
    return auth_headers(staff_user)


# ============================================================================
# CATALOG
# ============================================================================

@pytest.fixture
def latte(app):
    """Drink with size, milk and extra options; stock untracked."""
    item = MenuItem(
        name='Caffe Latte',
        item_type='drink',
        category='espresso',
        price=Decimal('4.50'),
        customization={
            'sizes': [
                {'name': 'Tall', 'price': 4.50, 'points_earned': 5},
                {'name': 'Grande', 'price': 5.25, 'points_earned': 6},
                {'name': 'Venti', 'price': 5.95, 'points_earned': 7},
            ],
            'milk_options': [
                {'name': 'Whole', 'extra_charge': 0},
                {'name': 'Oat', 'extra_charge': 0.70},
            ],
            'extras': [
                {'name': 'Extra Shot', 'price': 0.90},
                {'name': 'Vanilla Syrup', 'price': 0.60},
            ],
        },
    )
    db.session.add(item)
    db.session.commit()
    return item


@pytest.fixture
def croissant(app):
    item = MenuItem(
        name='Butter Croissant',
        item_type='food',
        category='pastry',
        price=Decimal('3.25'),
        stock_quantity=10,
        customization={
            'milk_options': [{'name': 'Oat', 'extra_charge': 0.70}],
            'extras': [{'name': 'Jam', 'price': 0.50}],
        },
    )
    db.session.add(item)
    db.session.commit()
    return item


@pytest.fixture
def beans(app):
    """Retail bag of beans, $10.00, five in stock."""
    product = Product(
        name='House Blend 250g',
        category='coffee',
        price=Decimal('10.00'),
        stock_quantity=5,
    )
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture
def mug(app):
    product = Product(
        name='SipGrounds Mug',
        category='merchandise',
        price=Decimal('12.00'),
        stock_quantity=1,
    )
    db.session.add(product)
    db.session.commit()
    return product


# ============================================================================
# COUPONS & REWARDS
# ============================================================================

def make_coupon(code, coupon_type='percentage', value='20', **overrides):
    now = datetime.utcnow()
    fields = {
        'code': code,
        'name': code.title(),
        'coupon_type': coupon_type,
        'value': Decimal(str(value)),
        'minimum_purchase': Decimal('0'),
        'max_uses': None,
        'used_count': 0,
        'max_uses_per_user': 1,
        'valid_from': now - timedelta(days=1),
        'valid_until': now + timedelta(days=30),
        'is_active': True,
        'applicable_cafes': [],
    }
    fields.update(overrides)
    coupon = Coupon(**fields)
    db.session.add(coupon)
    db.session.commit()
    return coupon


@pytest.fixture
def percent_coupon(app):
    """20% off with a $5 minimum."""
    return make_coupon('SAVE20', 'percentage', '20', minimum_purchase=Decimal('5.00'))


@pytest.fixture
def fixed_coupon(app):
    return make_coupon('FIVEOFF', 'fixed_amount', '5', minimum_purchase=Decimal('10.00'))


@pytest.fixture
def free_pastry_coupon(app):
    return make_coupon(
        'FREEPASTRY', 'free_item', '0',
        free_item_category='pastry', free_item_max_value=Decimal('4.00'),
    )


@pytest.fixture
def free_latte_reward(app):
    reward = Reward(
        name='Free Latte',
        category='drink',
        points_cost=150,
        monetary_value=Decimal('5.25'),
        stock_limit=2,
        redeemed_count=0,
        is_active=True,
        expiry_days=14,
    )
    db.session.add(reward)
    db.session.commit()
    return reward


# ============================================================================
# HELPERS
# ============================================================================

def cart_line(item, quantity=1, item_type=None, customizations=None):
    line = {'item_id': item.id, 'quantity': quantity}
    if item_type:
        line['item_type'] = item_type
    elif isinstance(item, MenuItem):
        line['item_type'] = 'menu_item'
    if customizations:
        line['customizations'] = customizations
    return line


def signed_webhook(gateway, event_type, handle, order_id=None, failure_reason=None, event_id='evt_test'):
    """Body and headers for a SimulatedGateway webhook."""
    body = json.dumps({
        'type': event_type,
        'id': event_id,
        'data': {
            'handle': handle,
            'order_id': order_id,
            'failure_reason': failure_reason,
        },
    }).encode('utf-8')
    return body, {'X-Simulated-Signature': gateway.sign(body), 'Content-Type': 'application/json'}
