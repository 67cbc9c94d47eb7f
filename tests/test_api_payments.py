"""
Tests for the checkout and payment confirmation endpoints.
"""
from app.extensions import db
from app.models.order import Order
from app.models.user import User
from app.services.payment_gateway import OUTCOME_FAILED, OUTCOME_PENDING
from app.utils.exceptions import GatewayTimeoutError
from tests.conftest import auth_headers, cart_line


class TestAuth:
    """Tests for the forwarded identity headers."""

    def test_checkout_requires_user(self, client):
        response = client.post('/api/payments/create-payment-intent', json={'items': []})

        assert response.status_code == 401
        assert response.get_json()['error']['code'] == 'AUTH_REQUIRED'

    def test_unknown_user_is_provisioned(self, client, beans):
        response = client.post(
            '/api/payments/create-payment-intent',
            json={'items': [cart_line(beans)]},
            headers={'X-User-Id': '77', 'X-User-Email': 'New.Customer@Example.com'},
        )

        assert response.status_code == 201
        user = db.session.get(User, 77)
        assert user.email == 'new.customer@example.com'
        assert user.role == 'customer'

    def test_unknown_user_without_email(self, client):
        response = client.get('/api/points', headers={'X-User-Id': '77'})
        assert response.status_code == 401

    def test_non_numeric_user_id(self, client):
        response = client.get('/api/points', headers={'X-User-Id': 'ava'})
        assert response.status_code == 401


class TestCreatePaymentIntent:
    """Tests for POST /api/payments/create-payment-intent."""

    def test_missing_items(self, client, headers):
        response = client.post('/api/payments/create-payment-intent', json={}, headers=headers)

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'MISSING_FIELD'

    def test_processor_checkout(self, client, headers, beans):
        response = client.post(
            '/api/payments/create-payment-intent',
            json={'items': [cart_line(beans, 2)], 'cafe_id': 'cafe-1', 'order_type': 'pickup'},
            headers=headers,
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data['success'] is True
        assert data['client_secret']
        assert data['order']['status'] == 'pending'
        assert data['order']['total_amount'] == 20.0

    def test_points_checkout(self, client, headers, customer, beans, give_points):
        give_points(customer, 10)

        response = client.post(
            '/api/payments/create-payment-intent',
            json={'items': [cart_line(beans)], 'use_points': True},
            headers=headers,
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data['payment_required'] is False
        assert data['order']['status'] == 'confirmed'
        assert data['order_number'].startswith('SG-')

    def test_points_checkout_insufficient(self, client, headers, customer, beans, give_points):
        give_points(customer, 3)

        response = client.post(
            '/api/payments/create-payment-intent',
            json={'items': [cart_line(beans)], 'use_points': True},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INSUFFICIENT_POINTS'

    def test_out_of_stock(self, client, headers, mug):
        response = client.post(
            '/api/payments/create-payment-intent',
            json={'items': [cart_line(mug, 3)]},
            headers=headers,
        )

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INSUFFICIENT_STOCK'

    def test_unknown_item(self, client, headers):
        response = client.post(
            '/api/payments/create-payment-intent',
            json={'items': [{'item_id': 555, 'quantity': 1}]},
            headers=headers,
        )
        assert response.status_code == 404

    def test_timeout_accepted_for_reconciliation(self, client, headers, gateway, beans):
        gateway.fail_next_create = GatewayTimeoutError()

        response = client.post(
            '/api/payments/create-payment-intent',
            json={'items': [cart_line(beans)]},
            headers=headers,
        )

        assert response.status_code == 202
        assert response.get_json()['pending_reconciliation'] is True

    def test_saved_card_checkout(self, client, headers, customer, gateway, beans):
        customer.stripe_customer_id = gateway.create_customer(customer.email, customer.username, customer.id)
        db.session.commit()
        card = gateway.add_payment_method(customer.stripe_customer_id)

        response = client.post(
            '/api/payments/create-payment-intent',
            json={'items': [cart_line(beans)], 'payment_method_id': card},
            headers=headers,
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data['payment_required'] is False
        assert data['order']['status'] == 'confirmed'


class TestCheckoutSession:

    def test_redirect_urls_default_to_frontend(self, client, headers, beans):
        response = client.post(
            '/api/payments/checkout-session',
            json={'items': [cart_line(beans)]},
            headers=headers,
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data['payment_handle'].startswith('cs_sim_')
        assert data['checkout_url'].startswith('http://localhost:3000/order-success')


class TestConfirmPayment:
    """Tests for POST /api/payments/confirm-payment."""

    def _checkout(self, client, headers, item):
        response = client.post(
            '/api/payments/create-payment-intent',
            json={'items': [cart_line(item)]},
            headers=headers,
        )
        return response.get_json()

    def test_requires_order_or_handle(self, client, headers):
        response = client.post('/api/payments/confirm-payment', json={}, headers=headers)
        assert response.status_code == 400

    def test_confirm(self, client, headers, customer, beans, ledger):
        started = self._checkout(client, headers, beans)

        response = client.post(
            '/api/payments/confirm-payment',
            json={'order_id': started['order']['id'], 'payment_intent_id': started['payment_handle']},
            headers=headers,
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data['order']['status'] == 'confirmed'
        assert data['total_points_earned'] == 10
        assert ledger.balance(customer.id) == 10

    def test_confirm_by_session_id(self, client, headers, beans):
        started = client.post(
            '/api/payments/checkout-session', json={'items': [cart_line(beans)]}, headers=headers,
        ).get_json()

        response = client.post(
            '/api/payments/confirm-payment',
            json={'session_id': started['payment_handle']},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.get_json()['order']['payment']['paid'] is True

    def test_declined(self, client, headers, gateway, beans):
        started = self._checkout(client, headers, beans)
        gateway.set_outcome(started['payment_handle'], OUTCOME_FAILED, 'Your card was declined.')

        response = client.post(
            '/api/payments/confirm-payment', json={'order_id': started['order']['id']}, headers=headers,
        )

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'PAYMENT_FAILED'
        assert db.session.get(Order, started['order']['id']).status == 'pending'

    def test_still_processing(self, client, headers, gateway, beans):
        started = self._checkout(client, headers, beans)
        gateway.set_outcome(started['payment_handle'], OUTCOME_PENDING)

        response = client.post(
            '/api/payments/confirm-payment', json={'order_id': started['order']['id']}, headers=headers,
        )

        assert response.status_code == 202

    def test_other_users_order(self, client, headers, other_customer, beans):
        started = self._checkout(client, headers, beans)

        response = client.post(
            '/api/payments/confirm-payment',
            json={'order_id': started['order']['id']},
            headers=auth_headers(other_customer),
        )

        assert response.status_code == 403


class TestPaymentMethods:
    """Tests for GET /api/payments/payment-methods."""

    def test_requires_user(self, client):
        assert client.get('/api/payments/payment-methods').status_code == 401

    def test_empty_before_any_card_is_saved(self, client, headers):
        response = client.get('/api/payments/payment-methods', headers=headers)

        assert response.status_code == 200
        assert response.get_json()['payment_methods'] == []

    def test_lists_saved_cards(self, client, headers, customer, beans, gateway):
        client.post(
            '/api/payments/create-payment-intent',
            json={'items': [cart_line(beans)], 'save_payment_method': True},
            headers=headers,
        )
        customer_id = db.session.get(User, customer.id).stripe_customer_id
        gateway.add_payment_method(customer_id, brand='mastercard', last4='5454')

        response = client.get('/api/payments/payment-methods', headers=headers)

        assert response.status_code == 200
        methods = response.get_json()['payment_methods']
        assert [(m['brand'], m['last4']) for m in methods] == [('mastercard', '5454')]
