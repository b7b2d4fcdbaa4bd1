"""
Background scheduler for automated tasks.

Handles:
- Expiring referral codes past their expiry date (daily at 00:15 UTC)
- Resetting affiliate period counters (1st of each month at 00:30 UTC)
- Settlement repair for conversions with unfinished steps (hourly)
"""
import os
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler = None
_flask_app = None  # Store Flask app reference for context


def init_scheduler(app):
    """
    Initialize the background scheduler.

    Only runs when ENABLE_SCHEDULER is set, never in testing.
    Only one process should run the scheduler.
    """
    global _scheduler, _flask_app

    _flask_app = app

    if app.config.get('TESTING'):
        logger.debug('[Scheduler] Disabled in testing mode')
        return

    if not app.config.get('ENABLE_SCHEDULER'):
        logger.info('[Scheduler] Disabled (set ENABLE_SCHEDULER=true)')
        return

    # Prevent multiple scheduler instances (important for gunicorn workers)
    if os.getenv('SCHEDULER_RUNNING') == 'true':
        logger.info('[Scheduler] Already running in another process')
        return

    _scheduler = BackgroundScheduler(
        timezone='UTC',
        job_defaults={
            'coalesce': True,  # Combine missed runs
            'max_instances': 1,  # Prevent concurrent runs
            'misfire_grace_time': 3600  # 1 hour grace period
        }
    )

    _scheduler.add_job(
        run_code_expiration,
        trigger=CronTrigger(hour=0, minute=15),
        id='code_expiration',
        name='Expire referral codes past their expiry date',
        replace_existing=True
    )

    _scheduler.add_job(
        run_period_reset,
        trigger=CronTrigger(day=1, hour=0, minute=30),
        id='affiliate_period_reset',
        name='Reset affiliate period counters',
        replace_existing=True
    )

    _scheduler.add_job(
        run_settlement_repair,
        trigger=CronTrigger(minute=5),
        id='settlement_repair',
        name='Re-drive unfinished conversion settlements',
        replace_existing=True
    )

    _scheduler.start()
    os.environ['SCHEDULER_RUNNING'] = 'true'
    logger.info(
        '[Scheduler] Started with 3 jobs: code expiration (daily 0:15 UTC), '
        'period reset (1st of month 0:30 UTC), settlement repair (hourly at :05)'
    )

    import atexit
    atexit.register(shutdown_scheduler)


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info('[Scheduler] Shutdown complete')


def run_code_expiration():
    """Mark active/paused codes past expires_at as expired."""
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        try:
            from ..services.code_registry import CodeRegistry
            count = CodeRegistry().expire_stale_codes()
            logger.info(f'[Scheduler] Code expiration complete: {count} expired')
        except Exception:
            logger.exception('[Scheduler] Code expiration failed')


def run_period_reset():
    """Zero the affiliate period counters."""
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        try:
            from ..services.affiliate_service import AffiliateTierManager
            count = AffiliateTierManager().reset_period_stats()
            logger.info(f'[Scheduler] Period reset complete: {count} affiliates')
        except Exception:
            logger.exception('[Scheduler] Period reset failed')


def run_settlement_repair():
    """Finish settlement steps that failed after a conversion committed."""
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        try:
            from ..services.conversion_service import ConversionProcessor
            result = ConversionProcessor().repair_pending()
            if result['failed']:
                logger.warning(
                    f'[Scheduler] Settlement repair: {len(result["failed"])} still failing '
                    f'(first: tracking {result["failed"][0]["tracking_id"]})'
                )
        except Exception:
            logger.exception('[Scheduler] Settlement repair failed')
