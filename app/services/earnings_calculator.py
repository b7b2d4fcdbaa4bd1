"""
Earnings Calculator.

Turns a settled conversion into pending ReferralEarning rows: one primary
row for the referrer and, when the referrer was itself referred, one
tier_bonus row for the referrer's own referrer. The cascade never goes
further up the chain than that.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from flask import current_app

from ..extensions import db
from ..models.referral import (
    ReferralCode,
    ReferralTracking,
    ReferralRelationship,
    ReferralEarning,
    RewardType,
    ConversionType,
    EarningType,
    EarningStatus,
)
from ..utils.money import ZERO, as_decimal, quantize_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EarningsSettings:
    currency: str = 'USD'
    signup_fallback_amount: Decimal = Decimal('5.00')
    cascade_rate: Decimal = Decimal('0.30')
    cascade_minimum: Decimal = Decimal('1.00')

    @classmethod
    def from_config(cls, config) -> 'EarningsSettings':
        return cls(
            currency=config['REFERRAL_CURRENCY'],
            signup_fallback_amount=as_decimal(config['REFERRAL_SIGNUP_FALLBACK_AMOUNT']),
            cascade_rate=as_decimal(config['REFERRAL_CASCADE_RATE']),
            cascade_minimum=as_decimal(config['REFERRAL_CASCADE_MINIMUM']),
        )


@dataclass(frozen=True)
class EarningLine:
    """One computed earning before it is persisted."""
    beneficiary_id: str
    earning_type: str
    amount: Decimal
    commission_rate: Optional[Decimal] = None
    source_amount: Optional[Decimal] = None


def primary_amount(
    reward_type: str,
    reward_value,
    conversion_type: str,
    conversion_value=None,
    settings: EarningsSettings = None
) -> Decimal:
    """Referrer's commission for one conversion, quantized to cents."""
    settings = settings or EarningsSettings()
    reward_value = as_decimal(reward_value)

    if reward_type == RewardType.PERCENTAGE.value:
        if conversion_value:
            return quantize_money(as_decimal(conversion_value) * reward_value / Decimal('100'))
        if conversion_type == ConversionType.SIGNUP.value:
            return quantize_money(settings.signup_fallback_amount)
        return ZERO

    # fixed and credits pay the reward value as-is
    return quantize_money(reward_value)


def classify_earning(reward_type: str, conversion_type: str) -> str:
    if conversion_type == ConversionType.SIGNUP.value:
        return EarningType.SIGNUP_BONUS.value
    if reward_type == RewardType.PERCENTAGE.value:
        return EarningType.PERCENTAGE_COMMISSION.value
    if reward_type == RewardType.FIXED.value:
        return EarningType.FIXED_COMMISSION.value
    # credits rewards are booked as a bonus whatever the conversion
    return EarningType.SIGNUP_BONUS.value


def cascade_amount(primary: Decimal, settings: EarningsSettings = None) -> Optional[Decimal]:
    """
    Tier bonus owed upstream, or None when it falls below the minimum.

    The minimum is compared before rounding; amounts under it are skipped,
    never rounded up.
    """
    settings = settings or EarningsSettings()
    raw = as_decimal(primary) * settings.cascade_rate
    if raw < settings.cascade_minimum:
        return None
    return quantize_money(raw)


def calculate_earnings(
    code: ReferralCode,
    referrer_id: str,
    conversion_type: str,
    conversion_value=None,
    parent_referrer_id: str = None,
    settings: EarningsSettings = None
) -> List[EarningLine]:
    """Pure computation of the earning lines for one conversion."""
    settings = settings or EarningsSettings()
    amount = primary_amount(code.reward_type, code.reward_value, conversion_type, conversion_value, settings)
    if amount <= ZERO:
        return []

    is_percentage = code.reward_type == RewardType.PERCENTAGE.value
    lines = [EarningLine(
        beneficiary_id=referrer_id,
        earning_type=classify_earning(code.reward_type, conversion_type),
        amount=amount,
        commission_rate=as_decimal(code.reward_value) if is_percentage else None,
        source_amount=quantize_money(conversion_value) if conversion_value is not None else None,
    )]

    if parent_referrer_id and parent_referrer_id != referrer_id:
        bonus = cascade_amount(amount, settings)
        if bonus is not None:
            lines.append(EarningLine(
                beneficiary_id=parent_referrer_id,
                earning_type=EarningType.TIER_BONUS.value,
                amount=bonus,
                commission_rate=settings.cascade_rate * Decimal('100'),
                source_amount=amount,
            ))
    return lines


class EarningsCalculator:
    """Persists earning lines for a converted tracking record."""

    def __init__(self, settings: EarningsSettings = None):
        self.settings = settings or EarningsSettings.from_config(current_app.config)

    def find_parent_relationship(self, user_id: str) -> Optional[ReferralRelationship]:
        """The level-1 relationship in which user_id was the referee."""
        return ReferralRelationship.query.filter_by(referee_id=user_id, level=1).first()

    def earnings_for_tracking(self, tracking_id: int) -> List[ReferralEarning]:
        return ReferralEarning.query.filter_by(tracking_id=tracking_id).order_by(ReferralEarning.id).all()

    def create_earnings(
        self,
        tracking: ReferralTracking,
        code: ReferralCode,
        relationship: ReferralRelationship
    ) -> List[ReferralEarning]:
        """
        Add pending earnings for tracking to the session. Does not commit.

        Idempotent per tracking id: existing rows are returned unchanged.
        """
        existing = self.earnings_for_tracking(tracking.id)
        if existing:
            return existing

        parent = self.find_parent_relationship(relationship.referrer_id)
        lines = calculate_earnings(
            code,
            referrer_id=relationship.referrer_id,
            conversion_type=tracking.conversion_type,
            conversion_value=tracking.conversion_value,
            parent_referrer_id=parent.referrer_id if parent else None,
            settings=self.settings,
        )

        source_transaction_id = (tracking.conversion_metadata or {}).get('source_transaction_id')
        earnings = []
        for line in lines:
            is_bonus = line.earning_type == EarningType.TIER_BONUS.value
            via = parent if is_bonus else relationship
            earning = ReferralEarning(
                referrer_id=line.beneficiary_id,
                referee_id=relationship.referee_id,
                earning_type=line.earning_type,
                amount=line.amount,
                currency=self.settings.currency,
                referral_code_id=code.id,
                campaign_id=code.campaign_id,
                relationship_id=via.id,
                tracking_id=tracking.id,
                source_transaction_id=source_transaction_id,
                commission_rate=line.commission_rate,
                source_amount=line.source_amount,
                status=EarningStatus.PENDING.value,
            )
            via.total_earnings = quantize_money(as_decimal(via.total_earnings) + line.amount)
            db.session.add(earning)
            earnings.append(earning)

        if earnings:
            logger.info(
                f'Earnings for tracking {tracking.id}: ' +
                ', '.join(f'{e.earning_type} {e.amount} -> {e.referrer_id}' for e in earnings)
            )
        else:
            logger.info(f'No earnings owed for tracking {tracking.id} (zero primary amount)')
        return earnings
