"""
CLI Commands for referral engine maintenance.

These commands can be run manually or via cron jobs instead of the
in-process scheduler:

# Expire codes past their expiry date (daily)
15 0 * * * cd /app && flask referrals expire-codes

# Reset affiliate period counters (1st of each month)
30 0 1 * * cd /app && flask referrals reset-period-stats

# Re-drive unfinished settlements (hourly)
5 * * * * cd /app && flask referrals resettle
"""
import click
from flask.cli import with_appcontext

from ..services.code_registry import CodeRegistry
from ..services.affiliate_service import AffiliateTierManager
from ..services.conversion_service import ConversionProcessor
from ..services.achievement_service import AchievementEngine


@click.group('referrals')
def referrals_cli():
    """Referral engine maintenance commands."""
    pass


@referrals_cli.command('expire-codes')
@with_appcontext
def expire_codes():
    """Mark codes past their expiry date as expired."""
    count = CodeRegistry().expire_stale_codes()
    click.echo(f"Expired {count} referral codes")


@referrals_cli.command('reset-period-stats')
@with_appcontext
def reset_period_stats():
    """Zero affiliate period counters. Run on the 1st of each month."""
    count = AffiliateTierManager().reset_period_stats()
    click.echo(f"Reset period stats for {count} affiliates")


@referrals_cli.command('resettle')
@click.option('--tracking-id', type=int, help='Re-drive one tracking record (default: all pending)')
@click.option('--limit', type=int, default=100, show_default=True, help='Max records when re-driving all')
@with_appcontext
def resettle(tracking_id, limit):
    """Finish settlement steps that failed after a conversion committed."""
    processor = ConversionProcessor()

    if tracking_id:
        result = processor.resettle(tracking_id)
        if result.ok:
            outcome = result.value
            click.echo(f"Tracking {tracking_id} settled: {len(outcome.earnings)} earnings")
        else:
            click.echo(f"Tracking {tracking_id} failed: {result.error.message}", err=True)
            raise SystemExit(1)
        return

    summary = processor.repair_pending(limit)
    click.echo(f"Settled: {summary['settled']}")
    click.echo(f"Failed: {len(summary['failed'])}")
    for failure in summary['failed'][:10]:
        click.echo(f"  - Tracking {failure['tracking_id']}: {failure['error']}")


@referrals_cli.command('check-achievements')
@click.option('--user-id', required=True, help='User to recompute achievements for')
@with_appcontext
def check_achievements(user_id):
    """Recompute achievement progress for one user."""
    unlocked = AchievementEngine().check_achievements(user_id)
    if unlocked:
        for achievement in unlocked:
            click.echo(f"Unlocked: {achievement.name}")
    else:
        click.echo("No new achievements")


def init_app(app):
    """Register referral commands with the Flask app."""
    app.cli.add_command(referrals_cli)
