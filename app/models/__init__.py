"""
Database models for the referral attribution and earnings engine.
"""
from .referral import (
    # Enums
    CodeKind,
    RewardType,
    CodeStatus,
    ConversionType,
    AttributionModel,
    RelationshipType,
    EarningType,
    EarningStatus,
    # Models
    ReferralCode,
    ReferralTracking,
    ReferralRelationship,
    ReferralEarning,
)
from .fraud import (
    FraudEventType,
    FraudSeverity,
    FraudAction,
    FraudReviewStatus,
    ReferralFraudEvent,
)
from .affiliate import (
    AffiliateTier,
    AffiliateStatus,
    PayoutMethod,
    PayoutSchedule,
    TIER_THRESHOLDS,
    AffiliateProfile,
)
from .achievement import AchievementType, AchievementStatus, ReferralAchievement
from .audit import AuditLog

__all__ = [
    'CodeKind',
    'RewardType',
    'CodeStatus',
    'ConversionType',
    'AttributionModel',
    'RelationshipType',
    'EarningType',
    'EarningStatus',
    'ReferralCode',
    'ReferralTracking',
    'ReferralRelationship',
    'ReferralEarning',
    'FraudEventType',
    'FraudSeverity',
    'FraudAction',
    'FraudReviewStatus',
    'ReferralFraudEvent',
    'AffiliateTier',
    'AffiliateStatus',
    'PayoutMethod',
    'PayoutSchedule',
    'TIER_THRESHOLDS',
    'AffiliateProfile',
    'AchievementType',
    'AchievementStatus',
    'ReferralAchievement',
    'AuditLog',
]
