"""
Configuration management for the referral engine.
"""
import os
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


class BaseConfig:
    """Base configuration."""
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Admin endpoints (fraud review, earnings approval)
    ADMIN_API_KEY = os.getenv('ADMIN_API_KEY', '')

    # Code registry
    REFERRAL_CODE_PREFIX = os.getenv('REFERRAL_CODE_PREFIX', 'RF')
    REFERRAL_CODE_LENGTH = _env_int('REFERRAL_CODE_LENGTH', 8)
    REFERRAL_CODE_MAX_ATTEMPTS = _env_int('REFERRAL_CODE_MAX_ATTEMPTS', 10)
    REFERRAL_MAX_ACTIVE_CODES = _env_int('REFERRAL_MAX_ACTIVE_CODES', 50)
    REFERRAL_MAX_CODES_PER_DAY = _env_int('REFERRAL_MAX_CODES_PER_DAY', 20)
    REFERRAL_DEFAULT_REWARD_TYPE = os.getenv('REFERRAL_DEFAULT_REWARD_TYPE', 'percentage')
    REFERRAL_DEFAULT_REWARD_VALUE = _env_decimal('REFERRAL_DEFAULT_REWARD_VALUE', '10')

    # Link builder
    REFERRAL_BASE_URL = os.getenv('REFERRAL_BASE_URL', 'https://example.com/join')

    # Earnings
    REFERRAL_CURRENCY = os.getenv('REFERRAL_CURRENCY', 'USD')
    REFERRAL_SIGNUP_FALLBACK_AMOUNT = _env_decimal('REFERRAL_SIGNUP_FALLBACK_AMOUNT', '5.00')
    REFERRAL_CASCADE_RATE = _env_decimal('REFERRAL_CASCADE_RATE', '0.30')
    REFERRAL_CASCADE_MINIMUM = _env_decimal('REFERRAL_CASCADE_MINIMUM', '1.00')

    # Fraud scoring
    FRAUD_HIGH_VALUE_THRESHOLD = _env_decimal('FRAUD_HIGH_VALUE_THRESHOLD', '10000')
    FRAUD_FLAG_THRESHOLD = _env_int('FRAUD_FLAG_THRESHOLD', 50)
    FRAUD_BLOCK_THRESHOLD = _env_int('FRAUD_BLOCK_THRESHOLD', 80)

    # Background jobs
    ENABLE_SCHEDULER = os.getenv('ENABLE_SCHEDULER') == 'true'
    SETTLEMENT_MAX_ATTEMPTS = _env_int('SETTLEMENT_MAX_ATTEMPTS', 5)


class DevelopmentConfig(BaseConfig):
    """Development configuration."""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///referrals_dev.db'  # SQLite fallback for local dev
    )


class ProductionConfig(BaseConfig):
    """Production configuration."""
    DEBUG = False

    _db_url = os.getenv('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # SQLAlchemy requires postgresql:// not postgres://
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = _db_url

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 5,
        'pool_recycle': 300,
        'pool_pre_ping': True,  # Verify connections before using
    }

    _secret_key = os.getenv('SECRET_KEY', '')

    @classmethod
    def validate_secret_key(cls) -> str:
        """
        Validate SECRET_KEY in production environment.

        Raises:
            RuntimeError: If SECRET_KEY is missing, empty, or too short
        """
        if not cls._secret_key:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY environment variable is not set!\n"
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )

        if len(cls._secret_key) < 32:
            raise RuntimeError(
                "CRITICAL: SECRET_KEY is too short (minimum 32 characters required)!\n"
                "Generate a secure key with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )

        return cls._secret_key

    SECRET_KEY = _secret_key  # Validated at app startup


class TestingConfig(BaseConfig):
    """Testing configuration."""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    ADMIN_API_KEY = 'test-admin-key'
    ENABLE_SCHEDULER = False


config_map = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig
}


def get_config(config_name: str = 'development'):
    """Get configuration class by name."""
    return config_map.get(config_name, DevelopmentConfig)


def validate_config(config_name: str = 'development') -> None:
    """
    Validate configuration before app startup.

    Raises:
        RuntimeError: If validation fails in production
    """
    if config_name == 'production':
        ProductionConfig.validate_secret_key()
