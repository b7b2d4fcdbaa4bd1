"""
CLI Commands for the referral engine.

Usage:
    flask referrals expire-codes                 # Expire codes past expires_at
    flask referrals reset-period-stats           # Zero affiliate period counters
    flask referrals resettle [--tracking-id 12]  # Re-drive unfinished settlements
    flask referrals check-achievements --user-id user_42
"""
from .referrals import init_app as init_referral_commands


def init_app(app):
    """Register all CLI commands with the Flask app."""
    init_referral_commands(app)
