"""
Tests for the earnings calculator.

Tests cover:
- Primary commission per reward type
- Signup fallback and zero-amount conversions
- Tier bonus cascade and its minimum
- Persisted rows and relationship totals
"""
import pytest
from decimal import Decimal


def _code(reward_type='percentage', reward_value='10'):
    from app.models import ReferralCode

    return ReferralCode(code='TESTCODE', owner_id='referrer_a',
                        reward_type=reward_type, reward_value=Decimal(reward_value))


class TestPrimaryAmount:
    """Tests for primary_amount and classify_earning."""

    @pytest.mark.parametrize('reward_type,reward_value,conversion_type,value,expected', [
        ('percentage', '10', 'purchase', '200.00', Decimal('20.00')),
        ('percentage', '10', 'purchase', '33.35', Decimal('3.34')),   # 3.335 rounds half-up
        ('percentage', '12.5', 'subscription', '19.99', Decimal('2.50')),
        ('percentage', '10', 'signup', None, Decimal('5.00')),        # signup fallback
        ('percentage', '10', 'purchase', None, Decimal('0.00')),
        ('fixed', '15', 'purchase', '999', Decimal('15.00')),
        ('credits', '7.5', 'deposit', None, Decimal('7.50')),
    ])
    def test_amounts(self, reward_type, reward_value, conversion_type, value, expected):
        from app.services.earnings_calculator import primary_amount

        assert primary_amount(reward_type, reward_value, conversion_type, value) == expected

    def test_fallback_is_configurable(self):
        from app.services.earnings_calculator import primary_amount, EarningsSettings

        settings = EarningsSettings(signup_fallback_amount=Decimal('2.00'))
        assert primary_amount('percentage', '10', 'signup', None, settings) == Decimal('2.00')

    @pytest.mark.parametrize('reward_type,conversion_type,expected', [
        ('percentage', 'purchase', 'percentage_commission'),
        ('fixed', 'purchase', 'fixed_commission'),
        ('credits', 'content_purchase', 'signup_bonus'),
        ('credits', 'purchase', 'signup_bonus'),
        ('percentage', 'signup', 'signup_bonus'),
        ('fixed', 'signup', 'signup_bonus'),
    ])
    def test_classification(self, reward_type, conversion_type, expected):
        from app.services.earnings_calculator import classify_earning

        assert classify_earning(reward_type, conversion_type) == expected


class TestCascade:
    """Tests for the tier bonus owed to the referrer's referrer."""

    def test_thirty_percent_of_primary(self):
        from app.services.earnings_calculator import cascade_amount

        assert cascade_amount(Decimal('10.00')) == Decimal('3.00')

    def test_below_minimum_is_skipped(self):
        """0.60 is under the 1.00 minimum and is never rounded up."""
        from app.services.earnings_calculator import cascade_amount

        assert cascade_amount(Decimal('2.00')) is None

    def test_minimum_compared_before_rounding(self):
        from app.services.earnings_calculator import cascade_amount

        # 3.32 * 0.30 = 0.996, which would round to 1.00
        assert cascade_amount(Decimal('3.32')) is None
        assert cascade_amount(Decimal('3.34')) == Decimal('1.00')

    def test_calculate_with_parent(self):
        from app.services.earnings_calculator import calculate_earnings

        lines = calculate_earnings(_code(), 'referrer_a', 'purchase', Decimal('100.00'),
                                   parent_referrer_id='grand_g')

        assert [(l.beneficiary_id, l.earning_type, l.amount) for l in lines] == [
            ('referrer_a', 'percentage_commission', Decimal('10.00')),
            ('grand_g', 'tier_bonus', Decimal('3.00')),
        ]
        assert lines[0].commission_rate == Decimal('10')
        assert lines[1].source_amount == Decimal('10.00')

    def test_no_rows_for_zero_primary(self):
        from app.services.earnings_calculator import calculate_earnings

        assert calculate_earnings(_code(), 'referrer_a', 'purchase', None, parent_referrer_id='grand_g') == []

    def test_parent_cannot_be_self(self):
        from app.services.earnings_calculator import calculate_earnings

        lines = calculate_earnings(_code(), 'referrer_a', 'purchase', Decimal('100'),
                                   parent_referrer_id='referrer_a')
        assert len(lines) == 1


class TestEarningsCalculator:
    """Tests for persisted earnings through conversions."""

    def test_cascade_rows_and_totals(self, app, make_code, make_click, convert):
        from app.models import ReferralEarning, ReferralRelationship

        # grand_g refers referrer_a with a signup
        grand_code = make_code('grand_g', reward_type='percentage', reward_value=10)
        convert(make_click(grand_code), 'referrer_a', 'signup').unwrap()

        # referrer_a refers referee_b with a 100.00 purchase
        code = make_code('referrer_a', reward_type='percentage', reward_value=10)
        tracking = make_click(code)
        outcome = convert(tracking, 'referee_b', 'purchase', '100.00', source_transaction_id='txn_1').unwrap()

        rows = ReferralEarning.query.filter_by(tracking_id=tracking.id).order_by(ReferralEarning.id).all()
        assert [(r.referrer_id, r.earning_type, r.amount) for r in rows] == [
            ('referrer_a', 'percentage_commission', Decimal('10.00')),
            ('grand_g', 'tier_bonus', Decimal('3.00')),
        ]
        assert all(r.status == 'pending' for r in rows)
        assert all(r.referee_id == 'referee_b' for r in rows)
        assert all(r.source_transaction_id == 'txn_1' for r in rows)
        assert len(outcome.earnings) == 2

        grand_edge = ReferralRelationship.query.filter_by(referrer_id='grand_g').one()
        direct_edge = ReferralRelationship.query.filter_by(referrer_id='referrer_a').one()
        assert rows[1].relationship_id == grand_edge.id
        assert Decimal(str(grand_edge.total_earnings)) == Decimal('8.00')  # 5.00 signup + 3.00 bonus
        assert Decimal(str(direct_edge.total_earnings)) == Decimal('10.00')

    def test_small_cascade_skipped(self, app, make_code, make_click, convert):
        from app.models import ReferralEarning

        grand_code = make_code('grand_g')
        convert(make_click(grand_code), 'referrer_a', 'signup').unwrap()

        code = make_code('referrer_a', reward_type='percentage', reward_value=10)
        tracking = make_click(code)
        convert(tracking, 'referee_b', 'purchase', '20.00').unwrap()

        rows = ReferralEarning.query.filter_by(tracking_id=tracking.id).all()
        assert len(rows) == 1
        assert rows[0].amount == Decimal('2.00')

    def test_cascade_stops_at_one_level(self, app, make_code, make_click, convert):
        from app.models import ReferralEarning

        convert(make_click(make_code('great_x')), 'grand_g', 'signup').unwrap()
        convert(make_click(make_code('grand_g')), 'referrer_a', 'signup').unwrap()

        tracking = make_click(make_code('referrer_a', reward_type='fixed', reward_value=50))
        convert(tracking, 'referee_b', 'purchase', '10.00').unwrap()

        beneficiaries = {r.referrer_id for r in ReferralEarning.query.filter_by(tracking_id=tracking.id)}
        assert beneficiaries == {'referrer_a', 'grand_g'}

    def test_create_earnings_is_idempotent(self, app, sample_tracking, convert):
        from app.services.earnings_calculator import EarningsCalculator
        from app.models import ReferralCode, ReferralRelationship, ReferralEarning

        convert(sample_tracking, 'referee_b', 'purchase', '200.00').unwrap()
        code = ReferralCode.query.get(sample_tracking.referral_code_id)
        relationship = ReferralRelationship.query.get(sample_tracking.relationship_id)

        again = EarningsCalculator().create_earnings(sample_tracking, code, relationship)

        assert len(again) == 1
        assert ReferralEarning.query.count() == 1
