"""
Tests for the coupon, reward and points endpoints.
"""
from app.models.coupon import Coupon


class TestCouponsApi:
    """Tests for /api/coupons."""

    def test_list_active(self, client, headers, percent_coupon):
        response = client.get('/api/coupons', headers=headers)

        assert response.status_code == 200
        assert [c['code'] for c in response.get_json()['coupons']] == ['SAVE20']

    def test_validate(self, client, headers, percent_coupon):
        response = client.post('/api/coupons/validate', json={'code': 'save20', 'order_total': 10}, headers=headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data['discount'] == 2.0
        assert data['final_total'] == 8.0

    def test_validate_unknown_code(self, client, headers):
        response = client.post('/api/coupons/validate', json={'code': 'NOPE', 'order_total': 10}, headers=headers)

        assert response.status_code == 404
        assert response.get_json()['error']['message'] == 'Invalid coupon code'

    def test_validate_below_minimum(self, client, headers, percent_coupon):
        response = client.post('/api/coupons/validate', json={'code': 'SAVE20', 'order_total': 3}, headers=headers)

        assert response.status_code == 400
        error = response.get_json()['error']
        assert error['code'] == 'INVALID_COUPON'
        assert error['message'] == 'Minimum purchase of $5.00 required'

    def test_validate_requires_code(self, client, headers):
        response = client.post('/api/coupons/validate', json={'order_total': 10}, headers=headers)
        assert response.status_code == 400

    def test_validate_rejects_bad_total(self, client, headers, percent_coupon):
        response = client.post('/api/coupons/validate', json={'code': 'SAVE20', 'order_total': 'ten'}, headers=headers)
        assert response.status_code == 400

    def test_validate_rejects_non_finite_total(self, client, headers, percent_coupon):
        for raw in ('NaN', 'Infinity', '-Infinity'):
            response = client.post(
                '/api/coupons/validate',
                data=f'{{"code": "SAVE20", "order_total": {raw}}}',
                content_type='application/json',
                headers=headers,
            )

            assert response.status_code == 400
            assert response.get_json()['error']['code'] == 'VALIDATION_ERROR'

    def test_generate_rejects_non_finite_value(self, client, staff_headers):
        response = client.post(
            '/api/coupons/generate',
            data='{"name": "Broken", "type": "fixed_amount", "value": NaN}',
            content_type='application/json',
            headers=staff_headers,
        )
        assert response.status_code == 400

    def test_apply_in_store_and_usage(self, client, headers, percent_coupon):
        response = client.post('/api/coupons/apply', json={'code': 'SAVE20', 'order_total': 10}, headers=headers)
        assert response.status_code == 200

        usage = client.get('/api/coupons/my-usage', headers=headers).get_json()['usage']

        assert len(usage) == 1
        assert usage[0]['coupon_code'] == 'SAVE20'
        assert usage[0]['used_in_store'] is True

    def test_generate_as_staff(self, client, staff_headers, staff_user):
        response = client.post(
            '/api/coupons/generate',
            json={'name': 'Rainy Day', 'type': 'fixed_amount', 'value': 2, 'minimum_purchase': 6},
            headers=staff_headers,
        )

        assert response.status_code == 201
        code = response.get_json()['coupon']['code']
        assert Coupon.query.filter_by(code=code).one().created_by_id == staff_user.id

    def test_generate_rejects_bad_input(self, client, staff_headers):
        response = client.post('/api/coupons/generate', json={'name': 'Oops', 'type': 'nope'}, headers=staff_headers)
        assert response.status_code == 400

    def test_generate_requires_staff(self, client, headers):
        response = client.post(
            '/api/coupons/generate', json={'name': 'Mine', 'type': 'percentage', 'value': 100}, headers=headers,
        )
        assert response.status_code == 403


class TestRewardsApi:
    """Tests for /api/rewards."""

    def test_list_is_public(self, client, free_latte_reward):
        response = client.get('/api/rewards')

        assert response.status_code == 200
        assert response.get_json()['rewards'][0]['name'] == 'Free Latte'

    def test_invalid_category(self, client):
        assert client.get('/api/rewards?category=spaceship').status_code == 400

    def test_get_reward(self, client, free_latte_reward):
        response = client.get(f'/api/rewards/{free_latte_reward.id}')
        assert response.get_json()['reward']['remaining_quantity'] == 2

    def test_get_missing_reward(self, client):
        response = client.get('/api/rewards/404')

        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'REWARD_NOT_FOUND'

    def test_redeem(self, client, headers, customer, free_latte_reward, give_points):
        give_points(customer, 150)

        response = client.post(f'/api/rewards/{free_latte_reward.id}/redeem', json={'cafe_id': 'cafe-1'}, headers=headers)

        assert response.status_code == 201
        assert response.get_json()['points_balance'] == 0
        redemptions = client.get('/api/rewards/my-redemptions', headers=headers).get_json()['redemptions']
        assert redemptions[0]['cafe_id'] == 'cafe-1'

    def test_redeem_without_points(self, client, headers, free_latte_reward):
        response = client.post(f'/api/rewards/{free_latte_reward.id}/redeem', headers=headers)

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INSUFFICIENT_POINTS'


class TestPointsApi:
    """Tests for /api/points."""

    def test_balance(self, client, headers, customer, give_points):
        give_points(customer, 42)

        response = client.get('/api/points', headers=headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data['points'] == 42
        assert data['history'][0]['amount'] == 42

    def test_history_pagination(self, client, headers, customer, give_points):
        for amount in (1, 2, 3):
            give_points(customer, amount)

        response = client.get('/api/points/history?limit=2&offset=1', headers=headers)

        data = response.get_json()
        assert data['points'] == 6
        assert [h['amount'] for h in data['history']] == [2, 1]
        assert data['limit'] == 2
