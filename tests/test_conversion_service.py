"""
Tests for ConversionProcessor.

Tests cover:
- Successful conversion and full settlement
- Duplicate deliveries and the compare-and-set race
- Fraud flagging, blocking and blocked replays
- First-touch referee attribution
- Settlement failure and re-driving
"""
import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch


class TestProcessConversion:
    """Tests for the happy path and input checks."""

    def test_purchase_conversion(self, app, sample_tracking, convert):
        from app.models import ReferralRelationship, ReferralEarning

        result = convert(sample_tracking, 'referee_b', 'purchase', '200.00')

        assert result.ok
        outcome = result.value
        assert outcome.relationship.referrer_id == 'referrer_a'
        assert outcome.relationship.referee_id == 'referee_b'
        assert outcome.relationship.level == 1
        assert [e.amount for e in outcome.earnings] == [Decimal('20.00')]
        assert outcome.fraud_event_id is None
        assert outcome.achievements_unlocked == ['first_referral']

        assert sample_tracking.converted_user_id == 'referee_b'
        assert sample_tracking.conversion_value == Decimal('200.00')
        assert sample_tracking.converted_at is not None
        assert sample_tracking.is_settled
        assert ReferralRelationship.query.count() == 1
        assert ReferralEarning.query.count() == 1

    def test_outcome_serializes(self, app, sample_tracking, convert):
        payload = convert(sample_tracking, 'referee_b', 'purchase', '200.00').unwrap().to_dict()

        assert payload['tracking']['converted'] is True
        assert payload['earnings'][0]['amount'] == 20.0
        assert payload['fraud_check']['risk_score'] == 0

    def test_signup_without_value(self, app, sample_tracking, convert):
        outcome = convert(sample_tracking, 'referee_b', 'signup').unwrap()

        assert outcome.earnings[0].earning_type == 'signup_bonus'
        assert outcome.earnings[0].amount == Decimal('5.00')

    def test_zero_value_purchase_writes_no_earnings(self, app, sample_tracking, convert):
        outcome = convert(sample_tracking, 'referee_b', 'purchase').unwrap()

        assert outcome.relationship is not None
        assert outcome.earnings == []
        assert sample_tracking.is_settled

    def test_unknown_tracking(self, app):
        from app.services.conversion_service import ConversionProcessor, ConversionData
        from app.utils.exceptions import TrackingNotFoundError

        result = ConversionProcessor().process_conversion(999, ConversionData('referee_b'))
        assert isinstance(result.error, TrackingNotFoundError)

    def test_invalid_conversion_type(self, app, sample_tracking, convert):
        from app.utils.exceptions import ValidationError

        result = convert(sample_tracking, 'referee_b', 'refund')

        assert isinstance(result.error, ValidationError)
        assert not sample_tracking.is_converted

    def test_from_dict_rejects_bad_value(self):
        from app.services.conversion_service import ConversionData
        from app.utils.exceptions import ValidationError

        with pytest.raises(ValidationError):
            ConversionData.from_dict({'converted_user_id': 'u', 'conversion_value': 'lots'})

    @pytest.mark.parametrize('value', ['NaN', 'Infinity', '-Infinity', '1e12', '10000000000'])
    def test_non_finite_or_oversized_value_rejected(self, app, sample_tracking, convert, value):
        from app.services.conversion_service import ConversionData
        from app.utils.exceptions import ValidationError

        result = convert(sample_tracking, 'referee_b', 'purchase', value)

        assert isinstance(result.error, ValidationError)
        assert result.error.field == 'conversion_value'
        assert not sample_tracking.is_converted

        with pytest.raises(ValidationError):
            ConversionData.from_dict({'converted_user_id': 'u', 'conversion_value': value})

    def test_largest_column_value_accepted(self, app, sample_tracking, convert):
        outcome = convert(sample_tracking, 'referee_b', 'purchase', '9999999999.99').unwrap()

        assert sample_tracking.conversion_value == Decimal('9999999999.99')
        assert outcome.earnings[0].amount == Decimal('1000000000.00')

    def test_revoked_code_rejects_conversion(self, app, sample_code, sample_tracking, convert):
        from app.services.code_registry import CodeRegistry
        from app.utils.exceptions import InvalidCodeError

        CodeRegistry().revoke(sample_code.id)
        result = convert(sample_tracking, 'referee_b', 'purchase', '50')

        assert isinstance(result.error, InvalidCodeError)
        assert result.error.reason == 'not_active'

    def test_exhausted_code_still_converts_its_click(self, app, make_code, make_click, convert):
        """The click already consumed the last use; conversion is still allowed."""
        code = make_code('referrer_a', max_uses=1)
        tracking = make_click(code)

        assert convert(tracking, 'referee_b', 'purchase', '10').ok

    def test_affiliate_stats_updated(self, app, sample_tracking, convert):
        from app.services.affiliate_service import AffiliateTierManager

        manager = AffiliateTierManager()
        manager.create_profile('referrer_a')
        convert(sample_tracking, 'referee_b', 'purchase', '200.00').unwrap()

        profile = manager.get_profile('referrer_a')
        assert profile.lifetime_conversions == 1
        assert Decimal(str(profile.lifetime_earnings)) == Decimal('20.00')
        assert profile.period_conversions == 1


class TestDuplicates:
    """Tests for exactly-once conversion."""

    def test_second_delivery_is_benign(self, app, sample_tracking, convert):
        from app.models import ReferralEarning
        from app.utils.exceptions import AlreadyConvertedError

        convert(sample_tracking, 'referee_b', 'purchase', '200.00').unwrap()
        second = convert(sample_tracking, 'referee_b', 'purchase', '200.00')

        assert isinstance(second.error, AlreadyConvertedError)
        assert second.is_benign
        assert ReferralEarning.query.count() == 1

    def test_losing_the_compare_and_set(self, app, db, sample_tracking, convert):
        """Another worker converts the click between the checks and the write."""
        from app.services.fraud_detector import FraudCheckResult
        from app.models import ReferralTracking, ReferralRelationship, ReferralEarning
        from app.utils.exceptions import AlreadyConvertedError

        tracking_id = sample_tracking.id

        def concurrent_winner(candidate):
            ReferralTracking.query.filter_by(id=tracking_id).update(
                {'converted_user_id': 'referee_winner', 'conversion_type': 'signup',
                 'converted_at': datetime.utcnow()},
                synchronize_session=False
            )
            db.session.commit()
            return FraudCheckResult()

        with patch('app.services.conversion_service.FraudDetector.check', side_effect=concurrent_winner):
            result = convert(sample_tracking, 'referee_loser', 'purchase', '200.00')

        assert isinstance(result.error, AlreadyConvertedError)
        assert ReferralRelationship.query.count() == 0
        assert ReferralEarning.query.count() == 0

        tracking = ReferralTracking.query.get(tracking_id)
        assert tracking.converted_user_id == 'referee_winner'


class TestFraud:
    """Tests for fraud handling during conversion."""

    def test_self_referral_blocked(self, app, sample_tracking, convert):
        from app.models import ReferralFraudEvent, ReferralRelationship
        from app.utils.exceptions import FraudBlockedError

        result = convert(sample_tracking, 'referrer_a', 'purchase', '100')

        assert isinstance(result.error, FraudBlockedError)
        assert result.error.risk_score == 95
        event = ReferralFraudEvent.query.one()
        assert event.id == result.error.fraud_event_id
        assert event.event_type == 'self_referral'
        assert event.tracking_id == sample_tracking.id
        assert not sample_tracking.is_converted
        assert ReferralRelationship.query.count() == 0

    def test_blocked_click_stays_blocked(self, app, sample_tracking, convert):
        """A replay, even for a different user, reuses the original event."""
        from app.models import ReferralFraudEvent
        from app.utils.exceptions import FraudBlockedError

        first = convert(sample_tracking, 'referrer_a', 'purchase', '100')
        replay = convert(sample_tracking, 'referee_b', 'purchase', '100')

        assert isinstance(replay.error, FraudBlockedError)
        assert replay.error.fraud_event_id == first.error.fraud_event_id
        assert ReferralFraudEvent.query.count() == 1
        assert not sample_tracking.is_converted

    def test_flagged_conversion_proceeds(self, app, sample_code, make_click, convert):
        from app.models import ReferralFraudEvent

        for _ in range(3):
            make_click(sample_code, ip_address='192.0.2.50')
        tracking = make_click(sample_code, ip_address='192.0.2.50')

        outcome = convert(tracking, 'referee_b', 'purchase', '100').unwrap()

        assert outcome.fraud_check.flagged
        assert not outcome.fraud_check.auto_block
        event = ReferralFraudEvent.query.get(outcome.fraud_event_id)
        assert event.event_type == 'ip_abuse'
        assert event.automatic_action == 'flag'
        assert tracking.is_converted

    def test_conversion_ip_overrides_click_ip(self, app, sample_code, make_click, convert):
        from app.services.fraud_detector import FraudCandidate

        tracking = make_click(sample_code, ip_address='192.0.2.1')
        seen = []

        def record(candidate):
            from app.services.fraud_detector import FraudCheckResult
            seen.append(candidate)
            return FraudCheckResult()

        with patch('app.services.conversion_service.FraudDetector.check', side_effect=record):
            convert(tracking, 'referee_b', 'signup', ip_address='198.51.100.9').unwrap()

        assert isinstance(seen[0], FraudCandidate)
        assert seen[0].ip_address == '198.51.100.9'


class TestAttribution:
    """Tests for first-touch referee attribution."""

    def test_referee_keeps_first_referrer(self, app, sample_tracking, make_code, make_click, convert):
        from app.models import ReferralRelationship
        from app.utils.exceptions import RefereeAlreadyAttributedError

        convert(sample_tracking, 'referee_b', 'signup').unwrap()

        other = make_click(make_code('referrer_z'))
        result = convert(other, 'referee_b', 'purchase', '100')

        assert isinstance(result.error, RefereeAlreadyAttributedError)
        assert result.error.referrer_id == 'referrer_a'
        assert not other.is_converted
        assert ReferralRelationship.query.filter_by(referee_id='referee_b').count() == 1

    def test_repeat_purchase_through_same_referrer(self, app, sample_code, sample_tracking, make_click, convert):
        from app.models import ReferralRelationship, ReferralEarning

        first = convert(sample_tracking, 'referee_b', 'signup').unwrap()
        second = convert(make_click(sample_code), 'referee_b', 'purchase', '50.00').unwrap()

        assert second.relationship.id == first.relationship.id
        assert ReferralRelationship.query.count() == 1
        assert ReferralEarning.query.count() == 2
        assert Decimal(str(second.relationship.total_earnings)) == Decimal('10.00')


class TestSettlement:
    """Tests for partial settlement and re-driving."""

    def test_failed_step_can_be_resettled(self, app, sample_tracking, convert):
        from app.services.conversion_service import ConversionProcessor
        from app.models import ReferralEarning
        from app.utils.exceptions import SettlementError

        with patch('app.services.conversion_service.AchievementEngine.check_achievements',
                   side_effect=RuntimeError('achievement store down')):
            result = convert(sample_tracking, 'referee_b', 'purchase', '200.00')

        assert isinstance(result.error, SettlementError)
        assert result.error.step == 'achievements'
        # The conversion itself stays committed
        assert sample_tracking.is_converted
        assert sample_tracking.earnings_recorded_at is not None
        assert sample_tracking.achievements_checked_at is None

        processor = ConversionProcessor()
        assert [t.id for t in processor.pending_settlements()] == [sample_tracking.id]

        resettled = processor.resettle(sample_tracking.id)

        assert resettled.ok
        assert resettled.value.achievements_unlocked == ['first_referral']
        assert sample_tracking.is_settled
        assert ReferralEarning.query.count() == 1
        assert processor.pending_settlements() == []

    def test_repair_pending_after_earnings_failure(self, app, sample_tracking, convert):
        from app.services.conversion_service import ConversionProcessor
        from app.models import ReferralEarning, ReferralRelationship

        with patch('app.services.conversion_service.EarningsCalculator.create_earnings',
                   side_effect=RuntimeError('deadlock')):
            result = convert(sample_tracking, 'referee_b', 'purchase', '200.00')

        assert result.error.step == 'earnings'
        assert ReferralRelationship.query.count() == 1
        assert ReferralEarning.query.count() == 0

        summary = ConversionProcessor().repair_pending()

        assert summary == {'settled': 1, 'failed': []}
        assert ReferralEarning.query.count() == 1
        assert sample_tracking.is_settled

    def test_settle_requires_conversion(self, app, sample_tracking):
        from app.services.conversion_service import ConversionProcessor
        from app.utils.exceptions import ValidationError

        result = ConversionProcessor().settle(sample_tracking)
        assert isinstance(result.error, ValidationError)

    def test_resettle_settled_is_noop(self, app, sample_tracking, convert):
        from app.services.conversion_service import ConversionProcessor
        from app.models import ReferralEarning, AffiliateProfile

        convert(sample_tracking, 'referee_b', 'purchase', '200.00').unwrap()
        again = ConversionProcessor().resettle(sample_tracking.id)

        assert again.ok
        assert again.value.achievements_unlocked == []
        assert ReferralEarning.query.count() == 1
        assert AffiliateProfile.query.count() == 0

    def test_failures_are_counted_and_cleared(self, app, sample_tracking, convert):
        from app.services.conversion_service import ConversionProcessor

        with patch('app.services.conversion_service.AchievementEngine.check_achievements',
                   side_effect=RuntimeError('achievement store down')):
            convert(sample_tracking, 'referee_b', 'purchase', '200.00')

        assert sample_tracking.settlement_attempts == 1
        assert sample_tracking.settlement_error.startswith('achievements: ')

        assert ConversionProcessor().resettle(sample_tracking.id).ok
        assert sample_tracking.settlement_attempts == 1
        assert sample_tracking.settlement_error is None

    def test_unsettleable_row_is_retired(self, app, db, sample_tracking, make_code, make_click, convert):
        """A referee attributed elsewhere by a concurrent conversion fails its relationship step for good."""
        from app.services.conversion_service import ConversionProcessor
        from app.models import ReferralTracking

        convert(sample_tracking, 'referee_b', 'signup').unwrap()

        # A second referrer's click won its own compare-and-set for the same referee
        other = make_click(make_code('referrer_c'))
        ReferralTracking.query.filter_by(id=other.id).update({
            ReferralTracking.converted_user_id: 'referee_b',
            ReferralTracking.conversion_type: 'signup',
            ReferralTracking.converted_at: datetime.utcnow(),
        }, synchronize_session='fetch')
        db.session.commit()

        processor = ConversionProcessor()
        for attempt in range(1, 4):
            result = processor.resettle(other.id)
            assert result.error.step == 'relationship'
            assert other.settlement_attempts == attempt

        assert processor.pending_settlements(max_attempts=3) == []
        assert [t.id for t in processor.pending_settlements(max_attempts=4)] == [other.id]
        assert 'referee_b' in other.settlement_error

    def test_failing_rows_do_not_starve_newer_ones(self, app, db, sample_code, make_click, convert):
        from app.services.conversion_service import ConversionProcessor

        stuck = make_click(sample_code)
        with patch('app.services.conversion_service.AchievementEngine.check_achievements',
                   side_effect=RuntimeError('down')):
            convert(stuck, 'referee_b', 'signup')
        stuck.settlement_attempts = 3
        db.session.commit()

        fresh = make_click(sample_code)
        with patch('app.services.conversion_service.AchievementEngine.check_achievements',
                   side_effect=RuntimeError('down')):
            convert(fresh, 'referee_c', 'signup')

        processor = ConversionProcessor()
        assert [t.id for t in processor.pending_settlements()] == [fresh.id, stuck.id]

        summary = processor.repair_pending(limit=1)

        assert summary == {'settled': 1, 'failed': []}
        assert fresh.is_settled
        assert not stuck.is_settled
