"""
Referral attribution models.

ReferralCode -> ReferralTracking (click) -> ReferralRelationship -> ReferralEarning
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from ..extensions import db


# ==================== Enums ====================

class CodeKind(str, Enum):
    STANDARD = 'standard'
    CAMPAIGN = 'campaign'


class RewardType(str, Enum):
    """How the referrer's commission is computed."""
    PERCENTAGE = 'percentage'  # % of conversion value
    FIXED = 'fixed'            # flat amount per conversion
    CREDITS = 'credits'        # flat amount, paid as platform credit


class CodeStatus(str, Enum):
    ACTIVE = 'active'
    PAUSED = 'paused'
    EXPIRED = 'expired'    # terminal
    REVOKED = 'revoked'    # terminal


class ConversionType(str, Enum):
    SIGNUP = 'signup'
    PURCHASE = 'purchase'
    SUBSCRIPTION = 'subscription'
    DEPOSIT = 'deposit'
    CONTENT_PURCHASE = 'content_purchase'


class AttributionModel(str, Enum):
    # Only last-click is implemented; the column exists for other models later
    LAST_CLICK = 'last_click'


class RelationshipType(str, Enum):
    DIRECT = 'direct'


class EarningType(str, Enum):
    SIGNUP_BONUS = 'signup_bonus'
    PERCENTAGE_COMMISSION = 'percentage_commission'
    FIXED_COMMISSION = 'fixed_commission'
    TIER_BONUS = 'tier_bonus'


class EarningStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    PAID = 'paid'
    REVERSED = 'reversed'


# ==================== Models ====================

class ReferralCode(db.Model):
    """
    A shareable referral code.

    Codes are stored upper-cased so lookups are case-insensitive. They are
    never deleted: retiring a code is a status change.
    """
    __tablename__ = 'referral_codes'

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(64), nullable=False, index=True)
    code = db.Column(db.String(50), nullable=False, unique=True, index=True)

    kind = db.Column(db.String(20), default=CodeKind.STANDARD.value, nullable=False)
    campaign_id = db.Column(db.String(64), index=True)
    description = db.Column(db.String(500))

    # Referrer reward
    reward_type = db.Column(db.String(20), default=RewardType.PERCENTAGE.value, nullable=False)
    reward_value = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal('10.00'))

    # Reward shown to the referee (applied by the surrounding application)
    referee_reward_type = db.Column(db.String(20), default=RewardType.CREDITS.value)
    referee_reward_value = db.Column(db.Numeric(12, 2), default=Decimal('5.00'))

    # Limits
    max_uses = db.Column(db.Integer)  # null = unlimited
    current_uses = db.Column(db.Integer, default=0, nullable=False)
    expires_at = db.Column(db.DateTime)

    status = db.Column(db.String(20), default=CodeStatus.ACTIVE.value, nullable=False, index=True)
    status_changed_at = db.Column(db.DateTime)

    # Timestamps
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint(
            'max_uses IS NULL OR current_uses <= max_uses',
            name='ck_referral_codes_uses_within_max'
        ),
    )

    def __repr__(self):
        return f'<ReferralCode {self.code} owner={self.owner_id}>'

    @property
    def is_expired(self) -> bool:
        return bool(self.expires_at and self.expires_at < datetime.utcnow())

    def to_dict(self):
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'code': self.code,
            'kind': self.kind,
            'campaign_id': self.campaign_id,
            'description': self.description,
            'reward_type': self.reward_type,
            'reward_value': float(self.reward_value) if self.reward_value is not None else None,
            'referee_reward_type': self.referee_reward_type,
            'referee_reward_value': float(self.referee_reward_value) if self.referee_reward_value is not None else None,
            'max_uses': self.max_uses,
            'current_uses': self.current_uses,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'status': self.status,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ReferralTracking(db.Model):
    """
    One inbound visit ("click") attributed to a referral code.

    The conversion columns are write-once: they are only ever set by a
    conditional update guarded on converted_user_id IS NULL.
    """
    __tablename__ = 'referral_tracking'

    id = db.Column(db.Integer, primary_key=True)
    referral_code_id = db.Column(db.Integer, db.ForeignKey('referral_codes.id'), nullable=False, index=True)
    referrer_id = db.Column(db.String(64), nullable=False, index=True)
    click_id = db.Column(db.String(32), nullable=False, unique=True)

    # Visit context
    source_url = db.Column(db.String(2048))
    landing_url = db.Column(db.String(2048))
    user_agent = db.Column(db.String(512))
    ip_address = db.Column(db.String(64), index=True)
    device_fingerprint = db.Column(db.String(128), index=True)
    country = db.Column(db.String(2))
    region = db.Column(db.String(100))
    city = db.Column(db.String(100))
    session_id = db.Column(db.String(128))
    attribution_model = db.Column(db.String(20), default=AttributionModel.LAST_CLICK.value, nullable=False)

    # Conversion payload (write-once)
    converted_user_id = db.Column(db.String(64), index=True)
    conversion_type = db.Column(db.String(30))
    conversion_value = db.Column(db.Numeric(12, 2))
    conversion_metadata = db.Column(db.JSON)
    converted_at = db.Column(db.DateTime)

    # Settlement markers for post-conversion steps
    relationship_id = db.Column(db.Integer, db.ForeignKey('referral_relationships.id'))
    earnings_recorded_at = db.Column(db.DateTime)
    affiliate_stats_recorded_at = db.Column(db.DateTime)
    achievements_checked_at = db.Column(db.DateTime)
    # Failed settlement runs; the repair job gives up at SETTLEMENT_MAX_ATTEMPTS
    settlement_attempts = db.Column(db.Integer, default=0, nullable=False)
    settlement_error = db.Column(db.String(500))

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    referral_code = db.relationship('ReferralCode', backref=db.backref('clicks', lazy='dynamic'))

    def __repr__(self):
        return f'<ReferralTracking {self.click_id} code={self.referral_code_id}>'

    @property
    def is_converted(self) -> bool:
        return self.converted_user_id is not None

    @property
    def is_settled(self) -> bool:
        return bool(
            self.relationship_id
            and self.earnings_recorded_at
            and self.affiliate_stats_recorded_at
            and self.achievements_checked_at
        )

    def to_dict(self):
        return {
            'id': self.id,
            'referral_code_id': self.referral_code_id,
            'referrer_id': self.referrer_id,
            'click_id': self.click_id,
            'source_url': self.source_url,
            'landing_url': self.landing_url,
            'country': self.country,
            'region': self.region,
            'city': self.city,
            'session_id': self.session_id,
            'attribution_model': self.attribution_model,
            'converted': self.is_converted,
            'converted_user_id': self.converted_user_id,
            'conversion_type': self.conversion_type,
            'conversion_value': float(self.conversion_value) if self.conversion_value is not None else None,
            'conversion_metadata': self.conversion_metadata,
            'converted_at': self.converted_at.isoformat() if self.converted_at else None,
            'settled': self.is_settled,
            'settlement_attempts': self.settlement_attempts,
            'settlement_error': self.settlement_error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ReferralRelationship(db.Model):
    """
    Durable referrer -> referee edge created by a successful conversion.

    A referee has at most one level-1 relationship (first conversion wins).
    """
    __tablename__ = 'referral_relationships'

    id = db.Column(db.Integer, primary_key=True)
    referrer_id = db.Column(db.String(64), nullable=False, index=True)
    referee_id = db.Column(db.String(64), nullable=False, index=True)
    relationship_type = db.Column(db.String(20), default=RelationshipType.DIRECT.value, nullable=False)
    level = db.Column(db.Integer, default=1, nullable=False)

    referral_code_id = db.Column(db.Integer, db.ForeignKey('referral_codes.id'))
    campaign_id = db.Column(db.String(64))
    tracking_id = db.Column(db.Integer, index=True)  # originating click

    total_earnings = db.Column(db.Numeric(12, 2), default=Decimal('0.00'), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        db.UniqueConstraint('referee_id', 'level', name='uq_referral_relationships_referee_level'),
    )

    def __repr__(self):
        return f'<ReferralRelationship {self.referrer_id}->{self.referee_id} L{self.level}>'

    def to_dict(self):
        return {
            'id': self.id,
            'referrer_id': self.referrer_id,
            'referee_id': self.referee_id,
            'relationship_type': self.relationship_type,
            'level': self.level,
            'referral_code_id': self.referral_code_id,
            'campaign_id': self.campaign_id,
            'tracking_id': self.tracking_id,
            'total_earnings': float(self.total_earnings or 0),
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class ReferralEarning(db.Model):
    """
    One monetary line item owed to a referrer.

    A tracking record fans out to one primary row plus at most one
    tier_bonus row for the referrer's own referrer.
    """
    __tablename__ = 'referral_earnings'

    id = db.Column(db.Integer, primary_key=True)
    referrer_id = db.Column(db.String(64), nullable=False, index=True)  # beneficiary
    referee_id = db.Column(db.String(64), nullable=False)               # origin of the conversion

    earning_type = db.Column(db.String(30), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), default='USD', nullable=False)

    referral_code_id = db.Column(db.Integer, db.ForeignKey('referral_codes.id'))
    campaign_id = db.Column(db.String(64))
    relationship_id = db.Column(db.Integer, db.ForeignKey('referral_relationships.id'))
    tracking_id = db.Column(db.Integer, db.ForeignKey('referral_tracking.id'), index=True)
    source_transaction_id = db.Column(db.String(100))

    commission_rate = db.Column(db.Numeric(7, 4))  # percent, e.g. 10.0000
    source_amount = db.Column(db.Numeric(12, 2))

    status = db.Column(db.String(20), default=EarningStatus.PENDING.value, nullable=False, index=True)
    approved_by = db.Column(db.String(100))
    approved_at = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    payout_reference = db.Column(db.String(100))
    reversed_at = db.Column(db.DateTime)
    reversal_reason = db.Column(db.String(500))

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    relationship = db.relationship('ReferralRelationship', backref=db.backref('earnings', lazy='dynamic'))

    def __repr__(self):
        return f'<ReferralEarning {self.earning_type} {self.amount} -> {self.referrer_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'referrer_id': self.referrer_id,
            'referee_id': self.referee_id,
            'earning_type': self.earning_type,
            'amount': float(self.amount),
            'currency': self.currency,
            'referral_code_id': self.referral_code_id,
            'campaign_id': self.campaign_id,
            'relationship_id': self.relationship_id,
            'tracking_id': self.tracking_id,
            'source_transaction_id': self.source_transaction_id,
            'commission_rate': float(self.commission_rate) if self.commission_rate is not None else None,
            'source_amount': float(self.source_amount) if self.source_amount is not None else None,
            'status': self.status,
            'approved_at': self.approved_at.isoformat() if self.approved_at else None,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
