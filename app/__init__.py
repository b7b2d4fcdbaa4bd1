"""
Referral Attribution & Earnings Engine
Flask application factory
"""
import os
import logging
from flask import Flask
from flask_cors import CORS

from .extensions import db, migrate
from .config import get_config, validate_config
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def create_app(config_name: str = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Setup logging before anything else
    setup_logging()
    validate_config(config_name)

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Configure CORS - origins come from the environment, comma separated
    cors_origins = [o.strip() for o in os.getenv('CORS_ORIGINS', 'http://localhost:5173').split(',') if o.strip()]
    CORS(
        app,
        origins=cors_origins,
        supports_credentials=True,
        allow_headers=['Content-Type', 'Authorization', 'X-User-ID', 'X-Admin-Key', 'X-Admin-User']
    )

    # Register blueprints
    register_blueprints(app)

    # Register CLI commands
    from .commands import init_app as init_commands
    init_commands(app)

    # Background jobs: code expiry, period resets, settlement repair
    from .utils.scheduler import init_scheduler
    init_scheduler(app)

    # Register error handlers
    register_error_handlers(app)

    # Health check endpoint
    @app.route('/health')
    def health_check():
        return {'status': 'healthy', 'service': 'referral-engine'}

    return app


def register_blueprints(app: Flask) -> None:
    """Register all API blueprints."""
    from .api.referrals import referrals_bp
    from .api.affiliates import affiliates_bp
    from .api.achievements import achievements_bp
    from .api.earnings import earnings_bp
    from .api.fraud_review import fraud_review_bp

    # Codes, clicks, conversions, analytics
    app.register_blueprint(referrals_bp, url_prefix='/api/referrals')

    # Affiliate profiles and tiers
    app.register_blueprint(affiliates_bp, url_prefix='/api/affiliates')

    # Achievements
    app.register_blueprint(achievements_bp, url_prefix='/api/achievements')

    # Earnings lifecycle
    app.register_blueprint(earnings_bp, url_prefix='/api/earnings')

    # Fraud review (admin)
    app.register_blueprint(fraud_review_bp, url_prefix='/api/admin/fraud-events')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from .utils.errors import error_from_exception, error_response, ErrorCode
    from .utils.exceptions import ReferralError

    @app.errorhandler(ReferralError)
    def referral_error(error):
        db.session.rollback()
        return error_from_exception(error)

    @app.errorhandler(400)
    def bad_request(error):
        return error_response(str(error), ErrorCode.INVALID_REQUEST, 400, log_error=False)

    @app.errorhandler(404)
    def not_found(error):
        return error_response('Not found', ErrorCode.NOT_FOUND, 404, log_error=False)

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return error_response('Internal server error', ErrorCode.INTERNAL_ERROR, 500)
