"""
Fraud audit records.

A ReferralFraudEvent is written whenever a scoring pass crosses the flag
threshold, whether or not the conversion ended up blocked. The evidence
snapshot is never edited afterwards; only the review columns change.
"""
from datetime import datetime
from enum import Enum
from ..extensions import db


class FraudEventType(str, Enum):
    SELF_REFERRAL = 'self_referral'
    IP_ABUSE = 'ip_abuse'
    DUPLICATE_DEVICE = 'duplicate_device'
    RAPID_REFERRALS = 'rapid_referrals'
    HIGH_VALUE_CONVERSION = 'high_value_conversion'
    SUSPICIOUS_CONVERSION = 'suspicious_conversion'  # several weaker signals combined


class FraudSeverity(str, Enum):
    MEDIUM = 'medium'
    HIGH = 'high'


class FraudAction(str, Enum):
    FLAG = 'flag'        # conversion allowed, queued for review
    SUSPEND = 'suspend'  # conversion blocked


class FraudReviewStatus(str, Enum):
    OPEN = 'open'
    RESOLVED = 'resolved'    # confirmed fraud
    DISMISSED = 'dismissed'  # false positive


class ReferralFraudEvent(db.Model):
    """Append-only fraud detection record with a manual review trail."""

    __tablename__ = 'referral_fraud_events'

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(40), nullable=False, index=True)

    referrer_id = db.Column(db.String(64), index=True)
    referee_id = db.Column(db.String(64), index=True)
    referral_code_id = db.Column(db.Integer, db.ForeignKey('referral_codes.id'))
    tracking_id = db.Column(db.Integer, db.ForeignKey('referral_tracking.id'), index=True)

    detection_reason = db.Column(db.Text, nullable=False)
    evidence = db.Column(db.JSON, nullable=False, default=dict)
    # Example: {"patterns": ["ip_abuse"], "reasons": [...], "same_ip_count": 4, "extra": {}}

    risk_score = db.Column(db.Integer, nullable=False)
    severity = db.Column(db.String(10), nullable=False)
    automatic_action = db.Column(db.String(10), nullable=False)

    # Review trail
    review_status = db.Column(db.String(20), default=FraudReviewStatus.OPEN.value, nullable=False, index=True)
    reviewed_by = db.Column(db.String(100))
    resolution = db.Column(db.Text)
    reviewed_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f'<ReferralFraudEvent {self.event_type} score={self.risk_score}>'

    @property
    def blocked(self) -> bool:
        return self.automatic_action == FraudAction.SUSPEND.value

    def to_dict(self):
        return {
            'id': self.id,
            'event_type': self.event_type,
            'referrer_id': self.referrer_id,
            'referee_id': self.referee_id,
            'referral_code_id': self.referral_code_id,
            'tracking_id': self.tracking_id,
            'detection_reason': self.detection_reason,
            'evidence': self.evidence,
            'risk_score': self.risk_score,
            'severity': self.severity,
            'automatic_action': self.automatic_action,
            'review_status': self.review_status,
            'reviewed_by': self.reviewed_by,
            'resolution': self.resolution,
            'reviewed_at': self.reviewed_at.isoformat() if self.reviewed_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
