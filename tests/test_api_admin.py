"""
Tests for the affiliate, achievement, earnings and fraud review endpoints.

Tests cover:
- Affiliate profile endpoints
- Achievement progress and claims
- Earnings listing and the admin lifecycle
- Fraud event review
"""
import pytest


@pytest.fixture
def converted(app, sample_tracking, convert):
    """referrer_a -> referee_b, 200.00 purchase."""
    return convert(sample_tracking, 'referee_b', 'purchase', '200.00').unwrap()


class TestAffiliateEndpoints:
    """Tests for /api/affiliates."""

    def test_create_and_get(self, client, user_headers):
        headers = user_headers('referrer_a')

        created = client.post('/api/affiliates', headers=headers, json={'payout_schedule': 'weekly'})
        assert created.status_code == 201
        assert created.get_json()['profile']['payout_schedule'] == 'weekly'

        fetched = client.get('/api/affiliates/me', headers=headers)
        assert fetched.status_code == 200
        assert fetched.get_json()['profile']['tier'] == 'bronze'

        duplicate = client.post('/api/affiliates', headers=headers, json={})
        assert duplicate.status_code == 409

    def test_missing_profile(self, client, user_headers):
        assert client.get('/api/affiliates/me', headers=user_headers('ghost')).status_code == 404

    def test_update_preferences(self, client, user_headers):
        headers = user_headers('referrer_a')
        client.post('/api/affiliates', headers=headers, json={})

        ok = client.patch('/api/affiliates/me/preferences', headers=headers,
                          json={'preferred_payout_method': 'credits'})
        bad = client.patch('/api/affiliates/me/preferences', headers=headers,
                           json={'preferred_payout_method': 'cheque'})

        assert ok.get_json()['profile']['preferred_payout_method'] == 'credits'
        assert bad.status_code == 400

    def test_admin_status_and_leaderboard(self, client, user_headers, admin_headers):
        client.post('/api/affiliates', headers=user_headers('referrer_a'), json={})

        assert client.get('/api/affiliates/leaderboard').get_json()['leaderboard'] == []

        response = client.post('/api/affiliates/referrer_a/status', headers=admin_headers,
                               json={'status': 'active'})
        assert response.status_code == 200

        board = client.get('/api/affiliates/leaderboard').get_json()['leaderboard']
        assert len(board) == 1
        assert board[0]['rank'] == 1


class TestAchievementEndpoints:
    """Tests for /api/achievements."""

    def test_progress_initializes_defaults(self, client, user_headers):
        data = client.get('/api/achievements', headers=user_headers('user_1')).get_json()

        assert data['total'] == 6
        assert data['unlocked'] == 0

    def test_check_and_claim(self, client, user_headers, converted):
        headers = user_headers('referrer_a')

        assert client.post('/api/achievements/check', headers=headers).get_json()['unlocked'] == []

        claimed = client.post('/api/achievements/first_referral/claim', headers=headers)
        assert claimed.status_code == 200
        assert claimed.get_json()['achievement']['status'] == 'claimed'

        locked = client.post('/api/achievements/referral_pro/claim', headers=headers)
        assert locked.status_code == 400


class TestEarningsEndpoints:
    """Tests for /api/earnings."""

    def test_list_and_summary(self, client, user_headers, converted):
        headers = user_headers('referrer_a')

        listing = client.get('/api/earnings?status=pending', headers=headers).get_json()
        assert listing['total'] == 1

        summary = client.get('/api/earnings/summary', headers=headers).get_json()['summary']
        assert summary['total'] == 20.0
        assert summary['pending'] == 20.0

    def test_admin_lifecycle(self, client, admin_headers, converted):
        earning_id = converted.earnings[0].id

        approved = client.post(f'/api/earnings/{earning_id}/approve', headers=admin_headers)
        assert approved.get_json()['earning']['status'] == 'approved'

        missing_ref = client.post(f'/api/earnings/{earning_id}/pay', headers=admin_headers, json={})
        assert missing_ref.status_code == 400

        paid = client.post(f'/api/earnings/{earning_id}/pay', headers=admin_headers,
                           json={'payout_reference': 'po_42'})
        assert paid.get_json()['earning']['status'] == 'paid'

        reverse = client.post(f'/api/earnings/{earning_id}/reverse', headers=admin_headers,
                              json={'reason': 'refund'})
        assert reverse.status_code == 400

    def test_user_cannot_approve(self, client, user_headers, converted):
        earning_id = converted.earnings[0].id
        response = client.post(f'/api/earnings/{earning_id}/approve', headers=user_headers('referrer_a'))
        assert response.status_code == 401


class TestFraudReviewEndpoints:
    """Tests for /api/admin/fraud-events."""

    def test_review_flow(self, client, admin_headers, sample_tracking, convert):
        blocked = convert(sample_tracking, 'referrer_a', 'purchase', '100')
        event_id = blocked.error.fraud_event_id

        listing = client.get('/api/admin/fraud-events?review_status=open', headers=admin_headers).get_json()
        assert listing['total'] == 1

        detail = client.get(f'/api/admin/fraud-events/{event_id}', headers=admin_headers)
        assert detail.get_json()['event']['event_type'] == 'self_referral'

        resolved = client.post(f'/api/admin/fraud-events/{event_id}/resolve', headers=admin_headers,
                               json={'resolution': 'Same person', 'dismiss': False})
        event = resolved.get_json()['event']
        assert event['review_status'] == 'resolved'
        assert event['reviewed_by'] == 'reviewer@example.com'

        again = client.post(f'/api/admin/fraud-events/{event_id}/resolve', headers=admin_headers,
                            json={'resolution': 'again'})
        assert again.status_code == 400

    def test_unknown_event(self, client, admin_headers):
        assert client.get('/api/admin/fraud-events/404', headers=admin_headers).status_code == 404
        assert client.post('/api/admin/fraud-events/404/resolve', headers=admin_headers,
                           json={'resolution': 'x'}).status_code == 404
