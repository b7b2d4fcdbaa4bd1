"""
Business logic services for the referral engine.
"""
from .code_registry import CodeRegistry, CodeValidation
from .click_tracker import ClickTracker, ClickContext, build_referral_link, build_qr_payload
from .fraud_detector import FraudDetector, FraudCandidate, FraudHistory, FraudCheckResult, score_conversion
from .earnings_calculator import EarningsCalculator, calculate_earnings
from .conversion_service import ConversionProcessor, ConversionData, ConversionOutcome
from .earnings_service import EarningsService
from .affiliate_service import AffiliateTierManager
from .achievement_service import AchievementEngine
from .analytics_service import AnalyticsService
from .audit_service import record_audit

__all__ = [
    'CodeRegistry',
    'CodeValidation',
    'ClickTracker',
    'ClickContext',
    'build_referral_link',
    'build_qr_payload',
    'FraudDetector',
    'FraudCandidate',
    'FraudHistory',
    'FraudCheckResult',
    'score_conversion',
    'EarningsCalculator',
    'calculate_earnings',
    'ConversionProcessor',
    'ConversionData',
    'ConversionOutcome',
    'EarningsService',
    'AffiliateTierManager',
    'AchievementEngine',
    'AnalyticsService',
    'record_audit',
]
