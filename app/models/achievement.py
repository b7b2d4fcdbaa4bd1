"""
Referral achievements.

Each row is one user's progress toward one milestone. Rows start locked and
are unlocked by the achievement engine once progress reaches the target.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from ..extensions import db


class AchievementType(str, Enum):
    REFERRAL_COUNT = 'referral_count'          # direct relationships
    EARNINGS_MILESTONE = 'earnings_milestone'  # non-reversed earnings total
    CONVERSION_RATE = 'conversion_rate'        # % of clicks converted


class AchievementStatus(str, Enum):
    LOCKED = 'locked'
    UNLOCKED = 'unlocked'
    CLAIMED = 'claimed'


class ReferralAchievement(db.Model):
    """A user's progress toward a referral milestone."""

    __tablename__ = 'referral_achievements'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    key = db.Column(db.String(50), nullable=False)

    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    achievement_type = db.Column(db.String(30), nullable=False)
    icon = db.Column(db.String(50), default='trophy')

    target_progress = db.Column(db.Numeric(14, 2), nullable=False)
    current_progress = db.Column(db.Numeric(14, 2), default=Decimal('0'), nullable=False)
    # Conversion-rate achievements need a minimum number of clicks to count
    min_sample_size = db.Column(db.Integer, default=0)

    status = db.Column(db.String(20), default=AchievementStatus.LOCKED.value, nullable=False, index=True)
    unlocked_at = db.Column(db.DateTime)
    claimed_at = db.Column(db.DateTime)

    # Rewards
    reward_type = db.Column(db.String(20))  # 'credits' or None
    reward_value = db.Column(db.Numeric(10, 2), default=Decimal('0'))
    reward_granted_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'key', name='uq_referral_achievements_user_key'),
    )

    def __repr__(self):
        return f'<ReferralAchievement {self.key} user={self.user_id} {self.status}>'

    @property
    def percent_complete(self) -> float:
        if not self.target_progress:
            return 100.0
        pct = float(self.current_progress or 0) / float(self.target_progress) * 100
        return round(min(pct, 100.0), 1)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'key': self.key,
            'name': self.name,
            'description': self.description,
            'achievement_type': self.achievement_type,
            'icon': self.icon,
            'target_progress': float(self.target_progress),
            'current_progress': float(self.current_progress or 0),
            'percent_complete': self.percent_complete,
            'status': self.status,
            'unlocked_at': self.unlocked_at.isoformat() if self.unlocked_at else None,
            'claimed_at': self.claimed_at.isoformat() if self.claimed_at else None,
            'reward_type': self.reward_type,
            'reward_value': float(self.reward_value or 0),
            'reward_granted': self.reward_granted_at is not None,
        }
