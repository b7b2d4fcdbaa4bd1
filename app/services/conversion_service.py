"""
Conversion Processor.

Drives one tracking record from CLICKED to CONVERTED (or BLOCKED):

    1. load the tracking row; already converted -> AlreadyConvertedError
    2. resolve and re-check the owning code
    3. fraud scoring; auto-block -> fraud event + FraudBlockedError,
       flagged -> fraud event, carry on
    4. compare-and-set the conversion payload where it is still null,
       committed on its own
    5-8. settlement: relationship, earnings, affiliate stats, achievements

Once step 4 commits the click is spent. Steps 5-8 each commit separately and
leave a marker on the tracking row, so a failed settlement can be re-driven
with resettle() and never pays twice.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models.referral import (
    ReferralCode,
    ReferralTracking,
    ReferralRelationship,
    ReferralEarning,
    ConversionType,
    RelationshipType,
    EarningType,
)
from ..models.fraud import ReferralFraudEvent, FraudAction
from ..utils.exceptions import (
    ReferralError,
    ValidationError,
    TrackingNotFoundError,
    CodeNotFoundError,
    InvalidCodeError,
    AlreadyConvertedError,
    RefereeAlreadyAttributedError,
    FraudBlockedError,
    SettlementError,
)
from ..utils.money import ZERO, parse_amount, quantize_money
from ..utils.results import ServiceResult
from .code_registry import CodeRegistry
from .fraud_detector import FraudDetector, FraudCandidate, FraudCheckResult
from .earnings_calculator import EarningsCalculator
from .affiliate_service import AffiliateTierManager
from .achievement_service import AchievementEngine

logger = logging.getLogger(__name__)

STEP_RELATIONSHIP = 'relationship'
STEP_EARNINGS = 'earnings'
STEP_AFFILIATE_STATS = 'affiliate_stats'
STEP_ACHIEVEMENTS = 'achievements'


@dataclass
class ConversionData:
    """An external conversion event."""
    converted_user_id: str
    conversion_type: str = ConversionType.SIGNUP.value
    conversion_value: Optional[Decimal] = None
    source_transaction_id: Optional[str] = None
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConversionData':
        value = data.get('conversion_value')
        if value is not None:
            value = parse_amount(value, 'conversion_value')
        return cls(
            converted_user_id=data.get('converted_user_id'),
            conversion_type=data.get('conversion_type') or ConversionType.SIGNUP.value,
            conversion_value=value,
            source_transaction_id=data.get('source_transaction_id'),
            ip_address=data.get('ip_address'),
            device_fingerprint=data.get('device_fingerprint'),
            metadata=dict(data.get('metadata') or {}),
        )

    def validate(self) -> None:
        if not self.converted_user_id:
            raise ValidationError('converted_user_id is required', 'converted_user_id')
        if self.conversion_type not in {t.value for t in ConversionType}:
            raise ValidationError(f'Unknown conversion_type: {self.conversion_type}', 'conversion_type')
        if self.conversion_value is not None:
            self.conversion_value = parse_amount(self.conversion_value, 'conversion_value')


@dataclass
class ConversionOutcome:
    tracking: ReferralTracking
    relationship: Optional[ReferralRelationship] = None
    earnings: List[ReferralEarning] = field(default_factory=list)
    fraud_check: Optional[FraudCheckResult] = None
    fraud_event_id: Optional[int] = None
    tier_upgraded: bool = False
    achievements_unlocked: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tracking': self.tracking.to_dict(),
            'relationship': self.relationship.to_dict() if self.relationship else None,
            'earnings': [e.to_dict() for e in self.earnings],
            'fraud_check': self.fraud_check.to_dict() if self.fraud_check else None,
            'fraud_event_id': self.fraud_event_id,
            'tier_upgraded': self.tier_upgraded,
            'achievements_unlocked': self.achievements_unlocked,
        }


class ConversionProcessor:
    """
    Converts tracking records and settles them.

    Usage:
        processor = ConversionProcessor()
        result = processor.process_conversion(tracking_id, ConversionData('user_9', 'purchase', Decimal('200')))
    """

    def __init__(
        self,
        registry: CodeRegistry = None,
        fraud_detector: FraudDetector = None,
        calculator: EarningsCalculator = None,
        tier_manager: AffiliateTierManager = None,
        achievements: AchievementEngine = None
    ):
        self.registry = registry or CodeRegistry()
        self.fraud_detector = fraud_detector or FraudDetector()
        self.calculator = calculator or EarningsCalculator()
        self.tier_manager = tier_manager or AffiliateTierManager()
        self.achievements = achievements or AchievementEngine()

    # ==================== Conversion ====================

    def process_conversion(self, tracking_id: int, data: ConversionData) -> ServiceResult:
        """
        Convert a tracking record.

        Returns:
            ServiceResult with a ConversionOutcome, or one of
            AlreadyConvertedError (benign), TrackingNotFoundError,
            CodeNotFoundError, InvalidCodeError, RefereeAlreadyAttributedError,
            FraudBlockedError, ValidationError, SettlementError
        """
        try:
            return ServiceResult.success(self._process(tracking_id, data))
        except AlreadyConvertedError as e:
            db.session.rollback()
            logger.info(f'Duplicate conversion ignored for tracking {tracking_id}')
            return ServiceResult.failure(e)
        except ReferralError as e:
            db.session.rollback()
            return ServiceResult.failure(e)

    def _process(self, tracking_id: int, data: ConversionData) -> ConversionOutcome:
        data.validate()

        tracking = ReferralTracking.query.get(tracking_id)
        if not tracking:
            raise TrackingNotFoundError(tracking_id)
        if tracking.is_converted:
            raise AlreadyConvertedError(tracking_id)

        blocked = self._blocking_event(tracking_id)
        if blocked:
            raise FraudBlockedError(blocked.risk_score, blocked.id, (blocked.evidence or {}).get('patterns'))

        code = ReferralCode.query.get(tracking.referral_code_id)
        if not code:
            raise CodeNotFoundError(tracking.referral_code_id)
        # The click already consumed its use, so max_uses is not re-checked
        validation = self.registry.check(code, enforce_max_uses=False)
        if not validation.valid:
            raise InvalidCodeError(validation.reason, code.code)

        attributed = ReferralRelationship.query.filter_by(referee_id=data.converted_user_id, level=1).first()
        if attributed and attributed.referrer_id != tracking.referrer_id:
            raise RefereeAlreadyAttributedError(data.converted_user_id, attributed.referrer_id)

        candidate = FraudCandidate(
            referrer_id=tracking.referrer_id,
            converted_user_id=data.converted_user_id,
            conversion_type=data.conversion_type,
            conversion_value=data.conversion_value,
            ip_address=data.ip_address or tracking.ip_address,
            device_fingerprint=data.device_fingerprint or tracking.device_fingerprint,
        )
        fraud = self.fraud_detector.check(candidate)
        outcome = ConversionOutcome(tracking=tracking, fraud_check=fraud)

        if fraud.flagged:
            event = self.fraud_detector.record_fraud_event(
                fraud,
                candidate,
                referral_code_id=code.id,
                tracking_id=tracking.id,
                extra={'conversion_type': data.conversion_type, 'source_transaction_id': data.source_transaction_id}
            )
            outcome.fraud_event_id = event.id
            if fraud.auto_block:
                raise FraudBlockedError(fraud.risk_score, event.id, fraud.patterns)

        self._mark_converted(tracking, data)
        logger.info(
            f'Tracking {tracking.id} converted: {data.conversion_type} by {data.converted_user_id} '
            f'(referrer {tracking.referrer_id})'
        )

        self._settle(tracking, outcome)
        return outcome

    def _blocking_event(self, tracking_id: int) -> Optional[ReferralFraudEvent]:
        """A blocked click stays blocked; replays reuse the original event."""
        return ReferralFraudEvent.query.filter_by(
            tracking_id=tracking_id,
            automatic_action=FraudAction.SUSPEND.value
        ).order_by(ReferralFraudEvent.id).first()

    def _mark_converted(self, tracking: ReferralTracking, data: ConversionData) -> None:
        """
        Write the conversion payload with a single conditional UPDATE.

        Only succeeds while converted_user_id is still null; a concurrent
        winner leaves rowcount at 0.
        """
        metadata = dict(data.metadata)
        if data.source_transaction_id:
            metadata['source_transaction_id'] = data.source_transaction_id

        updated = ReferralTracking.query.filter(
            ReferralTracking.id == tracking.id,
            ReferralTracking.converted_user_id.is_(None)
        ).update(
            {
                ReferralTracking.converted_user_id: data.converted_user_id,
                ReferralTracking.conversion_type: data.conversion_type,
                ReferralTracking.conversion_value: (
                    quantize_money(data.conversion_value) if data.conversion_value is not None else None
                ),
                ReferralTracking.conversion_metadata: metadata,
                ReferralTracking.converted_at: datetime.utcnow(),
            },
            synchronize_session='fetch'
        )
        if updated != 1:
            db.session.rollback()
            raise AlreadyConvertedError(tracking.id)

        db.session.commit()

    # ==================== Settlement ====================

    def settle(self, tracking: ReferralTracking) -> ServiceResult:
        """Run any settlement steps not yet recorded for a converted tracking row."""
        outcome = ConversionOutcome(tracking=tracking)
        try:
            if not tracking.is_converted:
                raise ValidationError(f'Tracking record {tracking.id} has not converted', 'tracking_id')
            self._settle(tracking, outcome)
            return ServiceResult.success(outcome)
        except ReferralError as e:
            db.session.rollback()
            return ServiceResult.failure(e)

    def resettle(self, tracking_id: int) -> ServiceResult:
        tracking = ReferralTracking.query.get(tracking_id)
        if not tracking:
            return ServiceResult.failure(TrackingNotFoundError(tracking_id))
        return self.settle(tracking)

    def pending_settlements(self, limit: int = 100, max_attempts: int = None) -> List[ReferralTracking]:
        """
        Converted tracking rows with at least one settlement step outstanding.

        Rows that have failed max_attempts times are left for a manual
        resettle(). The rest come back least-attempted first, then oldest.
        """
        if max_attempts is None:
            max_attempts = current_app.config.get('SETTLEMENT_MAX_ATTEMPTS', 5)
        return ReferralTracking.query.filter(
            ReferralTracking.converted_user_id.isnot(None),
            ReferralTracking.settlement_attempts < max_attempts,
            db.or_(
                ReferralTracking.relationship_id.is_(None),
                ReferralTracking.earnings_recorded_at.is_(None),
                ReferralTracking.affiliate_stats_recorded_at.is_(None),
                ReferralTracking.achievements_checked_at.is_(None),
            )
        ).order_by(
            ReferralTracking.settlement_attempts,
            ReferralTracking.converted_at,
            ReferralTracking.id
        ).limit(limit).all()

    def repair_pending(self, limit: int = 100) -> Dict[str, Any]:
        """Re-drive settlement for every converted row with steps outstanding."""
        settled = 0
        failed = []
        for tracking in self.pending_settlements(limit):
            tracking_id = tracking.id
            result = self.settle(tracking)
            if result.ok:
                settled += 1
            else:
                failed.append({'tracking_id': tracking_id, 'error': result.error.message})

        if settled or failed:
            logger.info(f'Settlement repair: {settled} settled, {len(failed)} failed')
        return {'settled': settled, 'failed': failed}

    def _settle(self, tracking: ReferralTracking, outcome: ConversionOutcome) -> None:
        code = ReferralCode.query.get(tracking.referral_code_id)
        if not code:
            raise CodeNotFoundError(tracking.referral_code_id)

        outcome.relationship = self._run_step(
            tracking, STEP_RELATIONSHIP, lambda: self._ensure_relationship(tracking, code)
        )
        outcome.earnings = self._run_step(
            tracking, STEP_EARNINGS, lambda: self._record_earnings(tracking, code, outcome.relationship)
        )
        outcome.tier_upgraded = self._run_step(
            tracking, STEP_AFFILIATE_STATS, lambda: self._record_affiliate_stats(tracking, outcome.earnings)
        )
        outcome.achievements_unlocked = self._run_step(
            tracking, STEP_ACHIEVEMENTS, lambda: self._check_achievements(tracking)
        )
        if tracking.settlement_error:
            tracking.settlement_error = None
            db.session.commit()

    def _run_step(self, tracking: ReferralTracking, step: str, action: Callable[[], Any]) -> Any:
        tracking_id = tracking.id
        try:
            result = action()
            db.session.commit()
            return result
        except Exception as e:
            db.session.rollback()
            logger.exception(f'Settlement step {step} failed for tracking {tracking_id}')
            self._record_failure(tracking_id, step, e)
            raise SettlementError(tracking_id, step, e)

    def _record_failure(self, tracking_id: int, step: str, error: Exception) -> None:
        try:
            ReferralTracking.query.filter(ReferralTracking.id == tracking_id).update(
                {
                    ReferralTracking.settlement_attempts: ReferralTracking.settlement_attempts + 1,
                    ReferralTracking.settlement_error: f'{step}: {error}'[:500],
                },
                synchronize_session='fetch'
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(f'Could not record settlement failure for tracking {tracking_id}')

    def _ensure_relationship(self, tracking: ReferralTracking, code: ReferralCode) -> ReferralRelationship:
        if tracking.relationship_id:
            return ReferralRelationship.query.get(tracking.relationship_id)

        relationship = ReferralRelationship.query.filter_by(
            referee_id=tracking.converted_user_id,
            level=1
        ).first()
        if relationship and relationship.referrer_id != tracking.referrer_id:
            raise RefereeAlreadyAttributedError(tracking.converted_user_id, relationship.referrer_id)

        if not relationship:
            relationship = ReferralRelationship(
                referrer_id=tracking.referrer_id,
                referee_id=tracking.converted_user_id,
                relationship_type=RelationshipType.DIRECT.value,
                level=1,
                referral_code_id=code.id,
                campaign_id=code.campaign_id,
                tracking_id=tracking.id,
                total_earnings=ZERO,
            )
            db.session.add(relationship)
            try:
                db.session.flush()
            except IntegrityError:
                db.session.rollback()
                existing = ReferralRelationship.query.filter_by(
                    referee_id=tracking.converted_user_id, level=1
                ).first()
                raise RefereeAlreadyAttributedError(
                    tracking.converted_user_id, existing.referrer_id if existing else tracking.referrer_id
                )

        tracking.relationship_id = relationship.id
        return relationship

    def _record_earnings(
        self,
        tracking: ReferralTracking,
        code: ReferralCode,
        relationship: ReferralRelationship
    ) -> List[ReferralEarning]:
        if tracking.earnings_recorded_at:
            return self.calculator.earnings_for_tracking(tracking.id)

        earnings = self.calculator.create_earnings(tracking, code, relationship)
        tracking.earnings_recorded_at = datetime.utcnow()
        return earnings

    def _record_affiliate_stats(self, tracking: ReferralTracking, earnings: List[ReferralEarning]) -> bool:
        if tracking.affiliate_stats_recorded_at:
            return False

        primary = sum(
            (e.amount for e in earnings
             if e.referrer_id == tracking.referrer_id and e.earning_type != EarningType.TIER_BONUS.value),
            ZERO
        )
        profile = self.tier_manager.get_profile(tracking.referrer_id)
        tier_before = profile.tier if profile else None

        profile = self.tier_manager.record_conversion(tracking.referrer_id, primary, commit=False)
        tracking.affiliate_stats_recorded_at = datetime.utcnow()
        return bool(profile and profile.tier != tier_before)

    def _check_achievements(self, tracking: ReferralTracking) -> List[str]:
        if tracking.achievements_checked_at:
            return []

        unlocked = self.achievements.check_achievements(tracking.referrer_id, commit=False)
        tracking.achievements_checked_at = datetime.utcnow()
        return [a.key for a in unlocked]
