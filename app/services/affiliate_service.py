"""
Affiliate Tier Manager.

Keeps running lifetime and period counters per affiliate and promotes the
affiliate up the tier ladder. Tiers are never lowered here.

Tier ladder (min lifetime earnings, min lifetime conversions):
    bronze    (0, 0)
    silver    (1000, 50)
    gold      (5000, 200)
    platinum  (20000, 500)
    diamond   (50000, 1000)

Promotion goes to the highest tier whose thresholds are both met, so a
large jump can skip tiers in one update.
"""
import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models.affiliate import (
    AffiliateProfile,
    AffiliateTier,
    AffiliateStatus,
    PayoutMethod,
    PayoutSchedule,
    TIER_THRESHOLDS,
)
from ..utils.exceptions import (
    NotFoundError,
    ValidationError,
    DuplicateError,
    CodeGenerationExhaustedError,
)
from ..utils.money import as_decimal, quantize_money
from .audit_service import record_audit
from .code_registry import CODE_ALPHABET

logger = logging.getLogger(__name__)

AFFILIATE_ID_PREFIX = 'AFF'
AFFILIATE_ID_LENGTH = 8

PREFERENCE_FIELDS = (
    'payout_threshold',
    'preferred_payout_method',
    'payout_schedule',
    'notification_preferences',
)


def qualifying_tier(current: AffiliateTier, lifetime_earnings, lifetime_conversions: int) -> Optional[AffiliateTier]:
    """
    Highest tier above current whose thresholds are both met, or None.
    """
    earnings = as_decimal(lifetime_earnings)
    best = None
    for tier in AffiliateTier:
        if tier.rank <= current.rank:
            continue
        min_earnings, min_conversions = TIER_THRESHOLDS[tier]
        if earnings >= min_earnings and lifetime_conversions >= min_conversions:
            best = tier
    return best


class AffiliateTierManager:
    """Affiliate profiles, counters and tier promotion."""

    # ==================== Profiles ====================

    def get_profile(self, user_id: str) -> Optional[AffiliateProfile]:
        return AffiliateProfile.query.filter_by(user_id=user_id).first()

    def require_profile(self, user_id: str) -> AffiliateProfile:
        profile = self.get_profile(user_id)
        if not profile:
            raise NotFoundError('Affiliate profile', user_id)
        return profile

    def create_profile(self, user_id: str, **preferences) -> AffiliateProfile:
        """
        Upgrade a user to an affiliate. Once per user.

        Profiles start in pending_approval at bronze.
        """
        if not user_id:
            raise ValidationError('user_id is required', 'user_id')
        if self.get_profile(user_id):
            raise DuplicateError('Affiliate profile', user_id)

        profile = AffiliateProfile(
            user_id=user_id,
            affiliate_id=self._generate_affiliate_id(),
            status=AffiliateStatus.PENDING_APPROVAL.value,
            tier=AffiliateTier.BRONZE.value,
            lifetime_conversions=0,
            lifetime_earnings=Decimal('0.00'),
            period_conversions=0,
            period_earnings=Decimal('0.00'),
            period_started_at=datetime.utcnow(),
        )
        self._apply_preferences(profile, preferences)
        db.session.add(profile)

        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateError('Affiliate profile', user_id)

        record_audit(
            actor=user_id,
            action='affiliate_profile_created',
            resource_type='affiliate_profile',
            resource_id=profile.id,
            details={'affiliate_id': profile.affiliate_id}
        )
        db.session.commit()

        logger.info(f'Affiliate profile {profile.affiliate_id} created for {user_id}')
        return profile

    def _generate_affiliate_id(self) -> str:
        max_attempts = current_app.config['REFERRAL_CODE_MAX_ATTEMPTS']
        for _ in range(max_attempts):
            candidate = AFFILIATE_ID_PREFIX + ''.join(
                secrets.choice(CODE_ALPHABET) for _ in range(AFFILIATE_ID_LENGTH)
            )
            if not AffiliateProfile.query.filter_by(affiliate_id=candidate).first():
                return candidate

        logger.warning(f'Affiliate id generation exhausted after {max_attempts} attempts')
        raise CodeGenerationExhaustedError('affiliate id', max_attempts)

    def update_preferences(self, user_id: str, preferences: Dict[str, Any]) -> AffiliateProfile:
        profile = self.require_profile(user_id)
        self._apply_preferences(profile, preferences)
        db.session.commit()
        return profile

    def _apply_preferences(self, profile: AffiliateProfile, preferences: Dict[str, Any]) -> None:
        unknown = set(preferences) - set(PREFERENCE_FIELDS)
        if unknown:
            raise ValidationError(f'Unknown preference fields: {", ".join(sorted(unknown))}')

        if preferences.get('payout_threshold') is not None:
            threshold = quantize_money(preferences['payout_threshold'])
            if threshold < 0:
                raise ValidationError('payout_threshold cannot be negative', 'payout_threshold')
            profile.payout_threshold = threshold

        method = preferences.get('preferred_payout_method')
        if method is not None:
            if method not in {m.value for m in PayoutMethod}:
                raise ValidationError(f'Unknown payout method: {method}', 'preferred_payout_method')
            profile.preferred_payout_method = method

        schedule = preferences.get('payout_schedule')
        if schedule is not None:
            if schedule not in {s.value for s in PayoutSchedule}:
                raise ValidationError(f'Unknown payout schedule: {schedule}', 'payout_schedule')
            profile.payout_schedule = schedule

        if preferences.get('notification_preferences') is not None:
            profile.notification_preferences = dict(preferences['notification_preferences'])

    def set_status(self, user_id: str, status: str, actor: str = 'system') -> AffiliateProfile:
        """Approve or suspend an affiliate."""
        if status not in {s.value for s in AffiliateStatus}:
            raise ValidationError(f'Unknown affiliate status: {status}', 'status')

        profile = self.require_profile(user_id)
        old_status = profile.status
        profile.status = status
        record_audit(
            actor=actor,
            action='affiliate_status_changed',
            resource_type='affiliate_profile',
            resource_id=profile.id,
            details={'from': old_status, 'to': status}
        )
        db.session.commit()
        return profile

    # ==================== Counters & Tiers ====================

    def record_conversion(self, user_id: str, earnings_amount, commit: bool = True) -> Optional[AffiliateProfile]:
        """
        Add one conversion and its earnings to the affiliate's counters.

        Counters are bumped with a single UPDATE so concurrent conversions
        cannot lose increments. Returns None when the user is not an
        affiliate.
        """
        amount = quantize_money(earnings_amount)
        updated = AffiliateProfile.query.filter_by(user_id=user_id).update(
            {
                AffiliateProfile.lifetime_conversions: AffiliateProfile.lifetime_conversions + 1,
                AffiliateProfile.lifetime_earnings: AffiliateProfile.lifetime_earnings + amount,
                AffiliateProfile.period_conversions: AffiliateProfile.period_conversions + 1,
                AffiliateProfile.period_earnings: AffiliateProfile.period_earnings + amount,
            },
            synchronize_session='fetch'
        )
        if not updated:
            logger.debug(f'No affiliate profile for {user_id}; stats not recorded')
            return None

        profile = self.get_profile(user_id)
        self.evaluate_tier(profile, commit=False)
        if commit:
            db.session.commit()
        return profile

    def evaluate_tier(self, profile: AffiliateProfile, actor: str = 'system', commit: bool = True) -> Optional[AffiliateTier]:
        """Promote profile if it qualifies for a higher tier. Returns the new tier."""
        current = profile.tier_enum
        new_tier = qualifying_tier(current, profile.lifetime_earnings, profile.lifetime_conversions)
        if new_tier is None:
            return None

        profile.tier = new_tier.value
        profile.tier_upgraded_at = datetime.utcnow()
        profile.tier_upgraded_by = actor

        record_audit(
            actor=actor,
            action='affiliate_tier_upgraded',
            resource_type='affiliate_profile',
            resource_id=profile.id,
            details={
                'from': current.value,
                'to': new_tier.value,
                'lifetime_earnings': str(profile.lifetime_earnings),
                'lifetime_conversions': profile.lifetime_conversions,
            }
        )
        if commit:
            db.session.commit()

        logger.info(f'Affiliate {profile.affiliate_id} upgraded {current.value} -> {new_tier.value}')
        return new_tier

    def reset_period_stats(self, now: datetime = None) -> int:
        """Zero the period counters for every affiliate."""
        now = now or datetime.utcnow()
        count = AffiliateProfile.query.update(
            {
                AffiliateProfile.period_conversions: 0,
                AffiliateProfile.period_earnings: Decimal('0.00'),
                AffiliateProfile.period_started_at: now,
            },
            synchronize_session='fetch'
        )
        db.session.commit()
        logger.info(f'Reset period stats for {count} affiliates')
        return count

    def leaderboard(self, limit: int = 10, period: bool = False) -> List[Dict[str, Any]]:
        earnings_col = AffiliateProfile.period_earnings if period else AffiliateProfile.lifetime_earnings
        profiles = AffiliateProfile.query.filter(
            AffiliateProfile.status == AffiliateStatus.ACTIVE.value
        ).order_by(
            earnings_col.desc(),
            AffiliateProfile.id.asc()
        ).limit(limit).all()

        return [
            {
                'rank': position,
                'affiliate_id': p.affiliate_id,
                'tier': p.tier,
                'conversions': p.period_conversions if period else p.lifetime_conversions,
                'earnings': float((p.period_earnings if period else p.lifetime_earnings) or 0),
            }
            for position, p in enumerate(profiles, start=1)
        ]
