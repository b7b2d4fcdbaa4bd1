"""
Achievement Engine.

Recomputes referral milestone progress from aggregates and unlocks
achievements whose target has been reached.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import func

from ..extensions import db
from ..models.achievement import ReferralAchievement, AchievementType, AchievementStatus
from ..models.referral import ReferralRelationship, ReferralEarning, ReferralTracking, EarningStatus
from ..utils.exceptions import NotFoundError, InvalidStatusTransitionError
from ..utils.money import ZERO, as_decimal, quantize_money
from .audit_service import record_audit

logger = logging.getLogger(__name__)


class AchievementEngine:
    """Referral achievements: defaults, progress, unlocks and claims."""

    DEFAULT_ACHIEVEMENTS = [
        {
            'key': 'first_referral',
            'name': 'First Referral',
            'description': 'Referred your first friend',
            'icon': 'user-plus',
            'achievement_type': AchievementType.REFERRAL_COUNT.value,
            'target_progress': Decimal('1'),
            'reward_type': 'credits',
            'reward_value': Decimal('5.00'),
        },
        {
            'key': 'referral_pro',
            'name': 'Referral Pro',
            'description': 'Referred 10 friends',
            'icon': 'users',
            'achievement_type': AchievementType.REFERRAL_COUNT.value,
            'target_progress': Decimal('10'),
            'reward_type': 'credits',
            'reward_value': Decimal('25.00'),
        },
        {
            'key': 'referral_legend',
            'name': 'Referral Legend',
            'description': 'Referred 100 friends',
            'icon': 'crown',
            'achievement_type': AchievementType.REFERRAL_COUNT.value,
            'target_progress': Decimal('100'),
            'reward_type': 'credits',
            'reward_value': Decimal('250.00'),
        },
        {
            'key': 'first_hundred',
            'name': 'First Hundred',
            'description': 'Earned 100 in referral commissions',
            'icon': 'coins',
            'achievement_type': AchievementType.EARNINGS_MILESTONE.value,
            'target_progress': Decimal('100'),
            'reward_type': 'credits',
            'reward_value': Decimal('10.00'),
        },
        {
            'key': 'four_figures',
            'name': 'Four Figures',
            'description': 'Earned 1,000 in referral commissions',
            'icon': 'gem',
            'achievement_type': AchievementType.EARNINGS_MILESTONE.value,
            'target_progress': Decimal('1000'),
            'reward_type': 'credits',
            'reward_value': Decimal('50.00'),
        },
        {
            'key': 'sharp_shooter',
            'name': 'Sharp Shooter',
            'description': 'Converted 25% of your referral clicks (at least 20 clicks)',
            'icon': 'target',
            'achievement_type': AchievementType.CONVERSION_RATE.value,
            'target_progress': Decimal('25'),
            'min_sample_size': 20,
            'reward_type': 'credits',
            'reward_value': Decimal('20.00'),
        },
    ]

    def initialize_defaults(self, user_id: str, commit: bool = True) -> int:
        """Create any missing default achievements for user_id."""
        existing_keys = {
            key for (key,) in db.session.query(ReferralAchievement.key).filter_by(user_id=user_id)
        }
        created = 0
        for data in self.DEFAULT_ACHIEVEMENTS:
            if data['key'] in existing_keys:
                continue
            db.session.add(ReferralAchievement(
                user_id=user_id,
                current_progress=Decimal('0'),
                status=AchievementStatus.LOCKED.value,
                **data
            ))
            created += 1

        if created and commit:
            db.session.commit()
        return created

    def check_achievements(self, user_id: str, commit: bool = True) -> List[ReferralAchievement]:
        """
        Refresh progress on locked achievements and unlock the ones reached.

        Returns the achievements unlocked by this call. Re-running with no
        new data changes nothing.
        """
        if not ReferralAchievement.query.filter_by(user_id=user_id).first():
            self.initialize_defaults(user_id, commit=False)
            db.session.flush()

        locked = ReferralAchievement.query.filter_by(
            user_id=user_id,
            status=AchievementStatus.LOCKED.value
        ).order_by(ReferralAchievement.id).all()
        if not locked:
            return []

        stats = self._get_referrer_stats(user_id)
        now = datetime.utcnow()
        unlocked = []

        for achievement in locked:
            progress = self._progress_value(achievement.achievement_type, stats)
            if as_decimal(achievement.current_progress) != progress:
                achievement.current_progress = progress

            if progress < as_decimal(achievement.target_progress):
                continue
            if stats['clicks'] < (achievement.min_sample_size or 0):
                continue

            achievement.status = AchievementStatus.UNLOCKED.value
            achievement.unlocked_at = now
            self._grant_reward(achievement, now)
            unlocked.append(achievement)

        if commit:
            db.session.commit()

        for achievement in unlocked:
            logger.info(f'Achievement {achievement.key} unlocked for {user_id}')
        return unlocked

    def _grant_reward(self, achievement: ReferralAchievement, now: datetime) -> None:
        # Disbursement is done downstream; the grant is recorded here once
        if achievement.reward_granted_at or not achievement.reward_type:
            return
        if as_decimal(achievement.reward_value) <= ZERO:
            return

        achievement.reward_granted_at = now
        record_audit(
            actor='system',
            action='achievement_reward_granted',
            resource_type='referral_achievement',
            resource_id=achievement.id,
            details={
                'user_id': achievement.user_id,
                'key': achievement.key,
                'reward_type': achievement.reward_type,
                'reward_value': str(achievement.reward_value),
            }
        )

    def _get_referrer_stats(self, user_id: str) -> Dict[str, Any]:
        relationship_count = ReferralRelationship.query.filter_by(referrer_id=user_id, level=1).count()

        total_earnings = db.session.query(
            func.coalesce(func.sum(ReferralEarning.amount), 0)
        ).filter(
            ReferralEarning.referrer_id == user_id,
            ReferralEarning.status != EarningStatus.REVERSED.value
        ).scalar()

        clicks = ReferralTracking.query.filter_by(referrer_id=user_id).count()
        conversions = ReferralTracking.query.filter(
            ReferralTracking.referrer_id == user_id,
            ReferralTracking.converted_user_id.isnot(None)
        ).count()
        conversion_rate = (
            quantize_money(Decimal(conversions) * Decimal('100') / Decimal(clicks)) if clicks else ZERO
        )

        return {
            'relationship_count': relationship_count,
            'total_earnings': quantize_money(total_earnings),
            'clicks': clicks,
            'conversions': conversions,
            'conversion_rate': conversion_rate,
        }

    def _progress_value(self, achievement_type: str, stats: Dict[str, Any]) -> Decimal:
        if achievement_type == AchievementType.REFERRAL_COUNT.value:
            return Decimal(stats['relationship_count'])
        if achievement_type == AchievementType.EARNINGS_MILESTONE.value:
            return stats['total_earnings']
        if achievement_type == AchievementType.CONVERSION_RATE.value:
            return stats['conversion_rate']
        return ZERO

    def get_progress(self, user_id: str) -> Dict[str, Any]:
        achievements = ReferralAchievement.query.filter_by(user_id=user_id).order_by(ReferralAchievement.id).all()
        return {
            'achievements': [a.to_dict() for a in achievements],
            'total': len(achievements),
            'unlocked': sum(1 for a in achievements if a.status != AchievementStatus.LOCKED.value),
        }

    def claim(self, user_id: str, key: str) -> ReferralAchievement:
        achievement = ReferralAchievement.query.filter_by(user_id=user_id, key=key).first()
        if not achievement:
            raise NotFoundError('Achievement', key)
        if achievement.status != AchievementStatus.UNLOCKED.value:
            raise InvalidStatusTransitionError('achievement', achievement.status, AchievementStatus.CLAIMED.value)

        achievement.status = AchievementStatus.CLAIMED.value
        achievement.claimed_at = datetime.utcnow()
        db.session.commit()
        return achievement
