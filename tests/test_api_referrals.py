"""
Tests for the referral API endpoints.

Tests cover:
- Code issuance, listing, validation and lifecycle
- Click tracking
- Conversions (including duplicates and fraud blocks)
- Links and analytics
- Authentication
"""


class TestCodeEndpoints:
    """Tests for /api/referrals/codes."""

    def test_issue_code(self, client, user_headers):
        response = client.post(
            '/api/referrals/codes',
            headers=user_headers('referrer_a'),
            json={'custom_code': 'friend10', 'reward_type': 'fixed', 'reward_value': 10}
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data['success'] is True
        assert data['code']['code'] == 'FRIEND10'
        assert data['code']['owner_id'] == 'referrer_a'
        assert data['code']['reward_value'] == 10.0

    def test_issue_requires_user(self, client):
        response = client.post('/api/referrals/codes', json={})

        assert response.status_code == 401
        assert response.get_json()['error']['code'] == 'AUTH_REQUIRED'

    def test_duplicate_custom_code(self, client, user_headers, make_code):
        make_code('referrer_a', custom_code='FRIEND10')

        response = client.post(
            '/api/referrals/codes',
            headers=user_headers('referrer_b'),
            json={'custom_code': 'Friend10'}
        )

        assert response.status_code == 409
        assert response.get_json()['error']['code'] == 'DUPLICATE_CODE'

    def test_malformed_numbers_rejected(self, client, user_headers):
        for body, field in [({'max_uses': 'lots'}, 'max_uses'), ({'reward_value': 'NaN'}, 'reward_value')]:
            response = client.post('/api/referrals/codes', headers=user_headers(), json=body)

            assert response.status_code == 400
            assert response.get_json()['error']['code'] == f'INVALID_{field.upper()}'

    def test_bad_expiry(self, client, user_headers):
        response = client.post(
            '/api/referrals/codes',
            headers=user_headers(),
            json={'expires_at': 'next tuesday'}
        )

        assert response.status_code == 400
        assert response.get_json()['error']['code'] == 'INVALID_EXPIRES_AT'

    def test_list_codes(self, client, user_headers, make_code):
        make_code('referrer_a')
        make_code('referrer_a')
        make_code('someone_else')

        response = client.get('/api/referrals/codes', headers=user_headers('referrer_a'))

        assert response.status_code == 200
        assert len(response.get_json()['codes']) == 2

    def test_validate_is_public(self, client, sample_code):
        response = client.get(f'/api/referrals/codes/{sample_code.code.lower()}/validate')

        data = response.get_json()
        assert response.status_code == 200
        assert data['valid'] is True
        assert data['code'] == sample_code.code
        assert data['referee_reward_value'] == 5.0

    def test_validate_unknown(self, client):
        data = client.get('/api/referrals/codes/NOPE/validate').get_json()

        assert data['valid'] is False
        assert data['reason'] == 'not_found'

    def test_pause_resume_revoke(self, client, user_headers, sample_code):
        headers = user_headers('referrer_a')
        base = f'/api/referrals/codes/{sample_code.id}'

        assert client.post(f'{base}/pause', headers=headers).get_json()['code']['status'] == 'paused'
        assert client.post(f'{base}/resume', headers=headers).get_json()['code']['status'] == 'active'
        revoked = client.post(f'{base}/revoke', headers=headers, json={'reason': 'leaked'})
        assert revoked.get_json()['code']['status'] == 'revoked'

        again = client.post(f'{base}/resume', headers=headers)
        assert again.status_code == 400
        assert again.get_json()['error']['code'] == 'INVALID_STATUS_TRANSITION'

    def test_cannot_change_someone_elses_code(self, client, user_headers, sample_code):
        response = client.post(f'/api/referrals/codes/{sample_code.id}/revoke', headers=user_headers('mallory'))

        assert response.status_code == 403
        assert sample_code.status == 'active'

    def test_unknown_code_id(self, client, user_headers):
        response = client.post('/api/referrals/codes/9999/pause', headers=user_headers())
        assert response.status_code == 404


class TestTrackEndpoint:
    """Tests for POST /api/referrals/track."""

    def test_track_click(self, client, sample_code):
        response = client.post(
            '/api/referrals/track',
            json={'code': sample_code.code, 'country': 'US', 'landing_url': 'https://example.com/join'},
            headers={'User-Agent': 'Mozilla/5.0 (iPhone)', 'X-Forwarded-For': '203.0.113.9, 10.0.0.1'}
        )

        assert response.status_code == 201
        data = response.get_json()
        assert data['tracking_id']
        assert data['click_id']

        from app.models import ReferralTracking
        tracking = ReferralTracking.query.get(data['tracking_id'])
        assert tracking.ip_address == '203.0.113.9'
        assert tracking.user_agent == 'Mozilla/5.0 (iPhone)'
        assert tracking.country == 'US'

    def test_track_invalid_code(self, client):
        response = client.post('/api/referrals/track', json={'code': 'NOPE'})

        assert response.status_code == 422
        error = response.get_json()['error']
        assert error['code'] == 'INVALID_CODE'
        assert error['details']['reason'] == 'not_found'

    def test_track_requires_code(self, client):
        assert client.post('/api/referrals/track', json={}).status_code == 400


class TestConversionEndpoint:
    """Tests for POST /api/referrals/conversions."""

    def test_convert_by_tracking_id(self, client, admin_headers, sample_tracking):
        response = client.post('/api/referrals/conversions', headers=admin_headers, json={
            'tracking_id': sample_tracking.id,
            'converted_user_id': 'referee_b',
            'conversion_type': 'purchase',
            'conversion_value': '200.00',
            'source_transaction_id': 'txn_1',
        })

        assert response.status_code == 201
        data = response.get_json()
        assert data['duplicate'] is False
        assert data['relationship']['referee_id'] == 'referee_b'
        assert data['earnings'][0]['amount'] == 20.0
        assert data['earnings'][0]['source_transaction_id'] == 'txn_1'

    def test_convert_by_click_id_and_duplicate(self, client, admin_headers, sample_tracking):
        body = {'click_id': sample_tracking.click_id, 'converted_user_id': 'referee_b'}

        first = client.post('/api/referrals/conversions', headers=admin_headers, json=body)
        second = client.post('/api/referrals/conversions', headers=admin_headers, json=body)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.get_json()['duplicate'] is True

    def test_requires_admin_key(self, client, sample_tracking):
        body = {'tracking_id': sample_tracking.id, 'converted_user_id': 'referee_b'}

        missing = client.post('/api/referrals/conversions', json=body)
        wrong = client.post('/api/referrals/conversions', json=body, headers={'X-Admin-Key': 'nope'})

        assert missing.status_code == 401
        assert wrong.status_code == 403

    def test_fraud_block(self, client, admin_headers, sample_tracking):
        response = client.post('/api/referrals/conversions', headers=admin_headers, json={
            'tracking_id': sample_tracking.id,
            'converted_user_id': 'referrer_a',
        })

        assert response.status_code == 403
        error = response.get_json()['error']
        assert error['code'] == 'FRAUD_BLOCKED'
        assert error['details']['fraud_event_id']

    def test_non_finite_value_rejected(self, client, admin_headers, sample_tracking):
        for value in ['NaN', 'Infinity', '1e12']:
            response = client.post('/api/referrals/conversions', headers=admin_headers, json={
                'tracking_id': sample_tracking.id,
                'converted_user_id': 'referee_b',
                'conversion_type': 'purchase',
                'conversion_value': value,
            })

            assert response.status_code == 400
        assert not sample_tracking.is_converted

    def test_non_integer_tracking_id(self, client, admin_headers):
        response = client.post('/api/referrals/conversions', headers=admin_headers,
                               json={'tracking_id': 'abc', 'converted_user_id': 'u'})
        assert response.status_code == 400

    def test_unknown_click_id(self, client, admin_headers):
        response = client.post('/api/referrals/conversions', headers=admin_headers,
                               json={'click_id': 'missing', 'converted_user_id': 'u'})
        assert response.status_code == 404

    def test_missing_identifier(self, client, admin_headers):
        response = client.post('/api/referrals/conversions', headers=admin_headers,
                               json={'converted_user_id': 'u'})
        assert response.status_code == 400

    def test_resettle(self, client, admin_headers, sample_tracking, convert):
        convert(sample_tracking, 'referee_b', 'signup').unwrap()

        response = client.post(f'/api/referrals/conversions/{sample_tracking.id}/resettle', headers=admin_headers)

        assert response.status_code == 200
        assert response.get_json()['achievements_unlocked'] == []


class TestLinkAndAnalytics:
    """Tests for link building and analytics."""

    def test_link(self, client, user_headers, sample_code):
        response = client.get(
            f'/api/referrals/link?code={sample_code.code}&source=twitter',
            headers=user_headers('referrer_a')
        )

        data = response.get_json()
        assert response.status_code == 200
        assert f'ref={sample_code.code}' in data['link']
        assert 'source=twitter' in data['link']
        assert data['qr_payload'] == data['link']

    def test_link_for_foreign_code(self, client, user_headers, sample_code):
        response = client.get(f'/api/referrals/link?code={sample_code.code}', headers=user_headers('mallory'))
        assert response.status_code == 404

    def test_analytics(self, client, user_headers, sample_tracking, convert):
        convert(sample_tracking, 'referee_b', 'purchase', '200.00').unwrap()

        response = client.get('/api/referrals/analytics?timeframe=7d', headers=user_headers('referrer_a'))

        assert response.status_code == 200
        overview = response.get_json()['analytics']['overview']
        assert overview['clicks'] == 1
        assert overview['conversions'] == 1

    def test_analytics_bad_timeframe(self, client, user_headers):
        response = client.get('/api/referrals/analytics?timeframe=1y', headers=user_headers())
        assert response.status_code == 400


class TestHealth:
    def test_health(self, client):
        assert client.get('/health').get_json() == {'status': 'healthy', 'service': 'referral-engine'}
