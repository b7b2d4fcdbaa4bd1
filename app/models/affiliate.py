"""
Affiliate profiles and tier ladder.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from ..extensions import db


class AffiliateTier(str, Enum):
    """Ordered tier ladder. Declaration order is rank order."""
    BRONZE = 'bronze'
    SILVER = 'silver'
    GOLD = 'gold'
    PLATINUM = 'platinum'
    DIAMOND = 'diamond'

    @property
    def rank(self) -> int:
        return list(AffiliateTier).index(self)


# (min lifetime earnings, min lifetime conversions), both must be met
TIER_THRESHOLDS = {
    AffiliateTier.BRONZE: (Decimal('0'), 0),
    AffiliateTier.SILVER: (Decimal('1000'), 50),
    AffiliateTier.GOLD: (Decimal('5000'), 200),
    AffiliateTier.PLATINUM: (Decimal('20000'), 500),
    AffiliateTier.DIAMOND: (Decimal('50000'), 1000),
}


class AffiliateStatus(str, Enum):
    PENDING_APPROVAL = 'pending_approval'
    ACTIVE = 'active'
    SUSPENDED = 'suspended'


class PayoutMethod(str, Enum):
    PAYPAL = 'paypal'
    BANK_TRANSFER = 'bank_transfer'
    CREDITS = 'credits'


class PayoutSchedule(str, Enum):
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


class AffiliateProfile(db.Model):
    """
    Affiliate upgrade of a user. One per user, created once.

    Tier only ever moves up; see AffiliateTierManager.
    """
    __tablename__ = 'affiliate_profiles'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    affiliate_id = db.Column(db.String(20), nullable=False, unique=True, index=True)

    status = db.Column(db.String(20), default=AffiliateStatus.PENDING_APPROVAL.value, nullable=False)
    tier = db.Column(db.String(20), default=AffiliateTier.BRONZE.value, nullable=False)
    tier_upgraded_at = db.Column(db.DateTime)
    tier_upgraded_by = db.Column(db.String(100))

    # Lifetime counters
    lifetime_conversions = db.Column(db.Integer, default=0, nullable=False)
    lifetime_earnings = db.Column(db.Numeric(14, 2), default=Decimal('0.00'), nullable=False)

    # Trailing period counters (reset by the scheduler)
    period_conversions = db.Column(db.Integer, default=0, nullable=False)
    period_earnings = db.Column(db.Numeric(14, 2), default=Decimal('0.00'), nullable=False)
    period_started_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Payout preferences
    payout_threshold = db.Column(db.Numeric(10, 2), default=Decimal('50.00'))
    preferred_payout_method = db.Column(db.String(20), default=PayoutMethod.PAYPAL.value)
    payout_schedule = db.Column(db.String(20), default=PayoutSchedule.MONTHLY.value)
    notification_preferences = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f'<AffiliateProfile {self.affiliate_id} {self.tier}>'

    @property
    def tier_enum(self) -> AffiliateTier:
        return AffiliateTier(self.tier)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'affiliate_id': self.affiliate_id,
            'status': self.status,
            'tier': self.tier,
            'tier_upgraded_at': self.tier_upgraded_at.isoformat() if self.tier_upgraded_at else None,
            'lifetime_conversions': self.lifetime_conversions,
            'lifetime_earnings': float(self.lifetime_earnings or 0),
            'period_conversions': self.period_conversions,
            'period_earnings': float(self.period_earnings or 0),
            'period_started_at': self.period_started_at.isoformat() if self.period_started_at else None,
            'payout_threshold': float(self.payout_threshold or 0),
            'preferred_payout_method': self.preferred_payout_method,
            'payout_schedule': self.payout_schedule,
            'notification_preferences': self.notification_preferences or {},
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
