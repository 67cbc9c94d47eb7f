"""
Tests for the orders endpoints.
"""
import pytest

from app.services.settlement_service import SettlementService
from tests.conftest import auth_headers, cart_line


@pytest.fixture
def pending_order(gateway, customer, beans):
    return SettlementService(gateway=gateway).checkout(customer.id, [cart_line(beans)])['order']


@pytest.fixture
def confirmed_order(gateway, customer, beans):
    service = SettlementService(gateway=gateway)
    started = service.checkout(customer.id, [cart_line(beans)])
    return service.confirm_payment(customer.id, order_id=started['order']['id'])['order']


class TestListOrders:

    def test_list(self, client, headers, pending_order):
        response = client.get('/api/orders', headers=headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data['total'] == 1
        assert data['orders'][0]['order_number'] == pending_order['order_number']

    def test_filter_by_status(self, client, headers, pending_order):
        response = client.get('/api/orders?status=confirmed', headers=headers)
        assert response.get_json()['total'] == 0

    def test_invalid_status_filter(self, client, headers):
        response = client.get('/api/orders?status=lost', headers=headers)
        assert response.status_code == 400


class TestGetOrder:

    def test_get(self, client, headers, pending_order):
        response = client.get(f"/api/orders/{pending_order['id']}", headers=headers)

        assert response.status_code == 200
        assert response.get_json()['order']['id'] == pending_order['id']

    def test_not_found(self, client, headers):
        response = client.get('/api/orders/9999', headers=headers)

        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'ORDER_NOT_FOUND'

    def test_other_customer_forbidden(self, client, pending_order, other_customer):
        response = client.get(f"/api/orders/{pending_order['id']}", headers=auth_headers(other_customer))
        assert response.status_code == 403

    def test_staff_sees_internal_notes(self, client, pending_order, staff_headers):
        response = client.get(f"/api/orders/{pending_order['id']}", headers=staff_headers)

        assert response.status_code == 200
        assert 'internal_notes' in response.get_json()['order']


class TestCancelOrder:

    def test_cancel(self, client, headers, confirmed_order, gateway):
        response = client.post(
            f"/api/orders/{confirmed_order['id']}/cancel", json={'reason': 'Running late'}, headers=headers,
        )

        assert response.status_code == 200
        data = response.get_json()
        assert data['order']['status'] == 'cancelled'
        assert data['order']['refund']['reason'] == 'Running late'
        assert len(gateway.refunds) == 1

    def test_cancel_twice_conflicts(self, client, headers, pending_order):
        client.post(f"/api/orders/{pending_order['id']}/cancel", headers=headers)
        response = client.post(f"/api/orders/{pending_order['id']}/cancel", headers=headers)

        assert response.status_code == 409
        assert response.get_json()['error']['code'] == 'INVALID_STATUS_TRANSITION'


class TestUpdateStatus:

    def test_staff_advances(self, client, staff_headers, confirmed_order):
        response = client.post(
            f"/api/orders/{confirmed_order['id']}/status", json={'status': 'preparing'}, headers=staff_headers,
        )

        assert response.status_code == 200
        assert response.get_json()['order']['status'] == 'preparing'

    def test_customer_forbidden(self, client, headers, confirmed_order):
        response = client.post(
            f"/api/orders/{confirmed_order['id']}/status", json={'status': 'preparing'}, headers=headers,
        )

        assert response.status_code == 403

    def test_invalid_transition(self, client, staff_headers, pending_order):
        response = client.post(
            f"/api/orders/{pending_order['id']}/status", json={'status': 'confirmed'}, headers=staff_headers,
        )

        assert response.status_code == 409

    def test_status_required(self, client, staff_headers, confirmed_order):
        response = client.post(f"/api/orders/{confirmed_order['id']}/status", json={}, headers=staff_headers)
        assert response.status_code == 400
