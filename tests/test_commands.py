"""
Tests for the `flask referrals` CLI commands and scheduler setup.
"""
from datetime import datetime, timedelta
from unittest.mock import patch


class TestCommands:
    """Tests for the maintenance commands."""

    def test_expire_codes(self, app, db, sample_code):
        sample_code.expires_at = datetime.utcnow() - timedelta(days=1)
        db.session.commit()

        result = app.test_cli_runner().invoke(args=['referrals', 'expire-codes'])

        assert result.exit_code == 0
        assert 'Expired 1 referral codes' in result.output
        assert sample_code.status == 'expired'

    def test_reset_period_stats(self, app):
        from app.services.affiliate_service import AffiliateTierManager

        AffiliateTierManager().create_profile('user_1')
        result = app.test_cli_runner().invoke(args=['referrals', 'reset-period-stats'])

        assert 'Reset period stats for 1 affiliates' in result.output

    def test_resettle_pending(self, app, sample_tracking, convert):
        with patch('app.services.conversion_service.AchievementEngine.check_achievements',
                   side_effect=RuntimeError('down')):
            convert(sample_tracking, 'referee_b', 'signup')

        result = app.test_cli_runner().invoke(args=['referrals', 'resettle'])

        assert result.exit_code == 0
        assert 'Settled: 1' in result.output
        assert 'Failed: 0' in result.output

    def test_resettle_unknown_tracking(self, app):
        result = app.test_cli_runner().invoke(args=['referrals', 'resettle', '--tracking-id', '999'])
        assert result.exit_code == 1

    def test_check_achievements(self, app):
        result = app.test_cli_runner().invoke(args=['referrals', 'check-achievements', '--user-id', 'user_1'])
        assert 'No new achievements' in result.output


class TestScheduler:
    """Tests for scheduler wiring."""

    def test_disabled_in_testing(self, app):
        from app.utils import scheduler

        scheduler.init_scheduler(app)
        assert scheduler._scheduler is None or not scheduler._scheduler.running

    def test_jobs_run_in_app_context(self, app, db, sample_code):
        from app.utils import scheduler

        sample_code.expires_at = datetime.utcnow() - timedelta(days=1)
        db.session.commit()

        with patch.object(scheduler, '_flask_app', app):
            scheduler.run_code_expiration()
            scheduler.run_settlement_repair()

        db.session.refresh(sample_code)
        assert sample_code.status == 'expired'
