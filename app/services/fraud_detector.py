"""
Fraud Detector.

Scores a prospective conversion with a fixed additive rule set. Scoring is a
pure function of the candidate and a history snapshot; the snapshot is the
only thing read from the database, so replaying the same inputs gives the
same score.

Rules:
    self_referral          referrer == converted user                 +95
    ip_abuse               >3 of the referrer's last 10 clicks share IP +60
    duplicate_device       >2 of the last 20 share device fingerprint   +50
    rapid_referrals        >10 relationships in the trailing 24h        +40
    high_value_conversion  value above the configured threshold         +30

flagged = score > flag threshold (50), auto_block = score > block threshold (80).
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app

from ..extensions import db
from ..models.referral import ReferralTracking, ReferralRelationship
from ..models.fraud import (
    ReferralFraudEvent,
    FraudEventType,
    FraudSeverity,
    FraudAction,
    FraudReviewStatus,
)
from ..utils.exceptions import NotFoundError, ValidationError, InvalidStatusTransitionError

logger = logging.getLogger(__name__)

IP_WINDOW = 10
IP_LIMIT = 3
DEVICE_WINDOW = 20
DEVICE_LIMIT = 2
VELOCITY_WINDOW = timedelta(hours=24)
VELOCITY_LIMIT = 10

SCORE_SELF_REFERRAL = 95
SCORE_IP_ABUSE = 60
SCORE_DUPLICATE_DEVICE = 50
SCORE_RAPID_REFERRALS = 40
SCORE_HIGH_VALUE = 30


@dataclass(frozen=True)
class FraudCandidate:
    referrer_id: str
    converted_user_id: str
    conversion_type: str
    conversion_value: Optional[Decimal] = None
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None


@dataclass(frozen=True)
class FraudHistory:
    """Snapshot of the referrer's recent activity, newest first."""
    recent_ips: Tuple[Optional[str], ...] = ()
    recent_devices: Tuple[Optional[str], ...] = ()
    relationships_last_24h: int = 0
    as_of: Optional[datetime] = None


@dataclass(frozen=True)
class FraudSettings:
    high_value_threshold: Decimal = Decimal('10000')
    flag_threshold: int = 50
    block_threshold: int = 80

    @classmethod
    def from_config(cls, config) -> 'FraudSettings':
        return cls(
            high_value_threshold=Decimal(str(config['FRAUD_HIGH_VALUE_THRESHOLD'])),
            flag_threshold=int(config['FRAUD_FLAG_THRESHOLD']),
            block_threshold=int(config['FRAUD_BLOCK_THRESHOLD']),
        )


@dataclass
class FraudCheckResult:
    risk_score: int = 0
    patterns: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    flagged: bool = False
    auto_block: bool = False

    @property
    def event_type(self) -> str:
        """The single pattern that explains the score, or a combined type."""
        if len(self.patterns) == 1:
            return self.patterns[0]
        if FraudEventType.SELF_REFERRAL.value in self.patterns:
            return FraudEventType.SELF_REFERRAL.value
        return FraudEventType.SUSPICIOUS_CONVERSION.value

    @property
    def severity(self) -> str:
        return FraudSeverity.HIGH.value if self.auto_block else FraudSeverity.MEDIUM.value

    @property
    def action(self) -> str:
        return FraudAction.SUSPEND.value if self.auto_block else FraudAction.FLAG.value

    def evidence(self, extra: Dict[str, Any] = None) -> Dict[str, Any]:
        return {
            'patterns': list(self.patterns),
            'reasons': list(self.reasons),
            'counts': dict(self.counts),
            'risk_score': self.risk_score,
            'extra': dict(extra or {}),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'risk_score': self.risk_score,
            'patterns': self.patterns,
            'reasons': self.reasons,
            'flagged': self.flagged,
            'auto_block': self.auto_block,
        }


def score_conversion(
    candidate: FraudCandidate,
    history: FraudHistory,
    settings: FraudSettings = None
) -> FraudCheckResult:
    """Apply every rule to the candidate. Rules are independent and additive."""
    settings = settings or FraudSettings()
    result = FraudCheckResult()

    def hit(pattern: FraudEventType, score: int, reason: str):
        result.risk_score += score
        result.patterns.append(pattern.value)
        result.reasons.append(reason)

    if candidate.referrer_id == candidate.converted_user_id:
        hit(FraudEventType.SELF_REFERRAL, SCORE_SELF_REFERRAL, 'User attempting to refer themselves')

    if candidate.ip_address:
        same_ip = sum(1 for ip in history.recent_ips[:IP_WINDOW] if ip == candidate.ip_address)
        result.counts['same_ip'] = same_ip
        if same_ip > IP_LIMIT:
            hit(FraudEventType.IP_ABUSE, SCORE_IP_ABUSE,
                f'Multiple referrals from same IP ({same_ip} instances)')

    if candidate.device_fingerprint:
        same_device = sum(
            1 for device in history.recent_devices[:DEVICE_WINDOW]
            if device == candidate.device_fingerprint
        )
        result.counts['same_device'] = same_device
        if same_device > DEVICE_LIMIT:
            hit(FraudEventType.DUPLICATE_DEVICE, SCORE_DUPLICATE_DEVICE,
                f'Multiple referrals from same device ({same_device} instances)')

    result.counts['relationships_24h'] = history.relationships_last_24h
    if history.relationships_last_24h > VELOCITY_LIMIT:
        hit(FraudEventType.RAPID_REFERRALS, SCORE_RAPID_REFERRALS,
            f'Unusually high referral rate ({history.relationships_last_24h} in 24h)')

    if candidate.conversion_value is not None and candidate.conversion_value > settings.high_value_threshold:
        hit(FraudEventType.HIGH_VALUE_CONVERSION, SCORE_HIGH_VALUE,
            f'Unusually high conversion value: {candidate.conversion_value}')

    result.flagged = result.risk_score > settings.flag_threshold
    result.auto_block = result.risk_score > settings.block_threshold
    return result


class FraudDetector:
    """Loads history, scores candidates and keeps the fraud event log."""

    def __init__(self, settings: FraudSettings = None):
        self.settings = settings or FraudSettings.from_config(current_app.config)

    def load_history(self, referrer_id: str, as_of: datetime = None) -> FraudHistory:
        """Bounded, deterministically ordered reads of the referrer's recent activity."""
        as_of = as_of or datetime.utcnow()
        window = max(IP_WINDOW, DEVICE_WINDOW)

        rows = db.session.query(
            ReferralTracking.ip_address,
            ReferralTracking.device_fingerprint
        ).filter(
            ReferralTracking.referrer_id == referrer_id,
            ReferralTracking.created_at <= as_of
        ).order_by(
            ReferralTracking.created_at.desc(),
            ReferralTracking.id.desc()
        ).limit(window).all()

        relationships = ReferralRelationship.query.filter(
            ReferralRelationship.referrer_id == referrer_id,
            ReferralRelationship.created_at > as_of - VELOCITY_WINDOW,
            ReferralRelationship.created_at <= as_of
        ).count()

        return FraudHistory(
            recent_ips=tuple(row.ip_address for row in rows[:IP_WINDOW]),
            recent_devices=tuple(row.device_fingerprint for row in rows[:DEVICE_WINDOW]),
            relationships_last_24h=relationships,
            as_of=as_of,
        )

    def check(self, candidate: FraudCandidate, as_of: datetime = None) -> FraudCheckResult:
        history = self.load_history(candidate.referrer_id, as_of)
        result = score_conversion(candidate, history, self.settings)
        if result.flagged:
            logger.warning(
                f'Fraud check for referrer {candidate.referrer_id} -> {candidate.converted_user_id}: '
                f'score={result.risk_score} patterns={result.patterns} auto_block={result.auto_block}'
            )
        return result

    # ==================== Fraud Event Log ====================

    def record_fraud_event(
        self,
        result: FraudCheckResult,
        candidate: FraudCandidate,
        referral_code_id: int = None,
        tracking_id: int = None,
        extra: Dict[str, Any] = None
    ) -> ReferralFraudEvent:
        """Append a fraud event and commit it on its own."""
        event = ReferralFraudEvent(
            event_type=result.event_type,
            referrer_id=candidate.referrer_id,
            referee_id=candidate.converted_user_id,
            referral_code_id=referral_code_id,
            tracking_id=tracking_id,
            detection_reason=', '.join(result.reasons),
            evidence=result.evidence(extra),
            risk_score=result.risk_score,
            severity=result.severity,
            automatic_action=result.action,
            review_status=FraudReviewStatus.OPEN.value,
        )
        db.session.add(event)
        db.session.commit()

        logger.warning(
            f'Fraud event {event.id} recorded: {event.event_type} '
            f'score={event.risk_score} action={event.automatic_action}'
        )
        return event

    def resolve_fraud_event(
        self,
        event_id: int,
        reviewer: str,
        resolution: str,
        dismiss: bool = False
    ) -> ReferralFraudEvent:
        """Close an open event as confirmed fraud, or dismiss it as a false positive."""
        if not reviewer:
            raise ValidationError('reviewer is required', 'reviewer')

        event = ReferralFraudEvent.query.get(event_id)
        if not event:
            raise NotFoundError('Fraud event', event_id)

        new_status = FraudReviewStatus.DISMISSED.value if dismiss else FraudReviewStatus.RESOLVED.value
        if event.review_status != FraudReviewStatus.OPEN.value:
            raise InvalidStatusTransitionError('fraud event', event.review_status, new_status)

        event.review_status = new_status
        event.reviewed_by = reviewer
        event.resolution = resolution
        event.reviewed_at = datetime.utcnow()
        db.session.commit()

        logger.info(f'Fraud event {event_id} {new_status} by {reviewer}')
        return event

    def list_fraud_events(self, filters: Dict[str, Any] = None, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        filters = filters or {}
        query = ReferralFraudEvent.query

        if filters.get('review_status'):
            query = query.filter(ReferralFraudEvent.review_status == filters['review_status'])
        if filters.get('referrer_id'):
            query = query.filter(ReferralFraudEvent.referrer_id == filters['referrer_id'])
        if filters.get('event_type'):
            query = query.filter(ReferralFraudEvent.event_type == filters['event_type'])
        if filters.get('severity'):
            query = query.filter(ReferralFraudEvent.severity == filters['severity'])

        total = query.count()
        events = query.order_by(
            ReferralFraudEvent.created_at.desc(),
            ReferralFraudEvent.id.desc()
        ).offset(offset).limit(limit).all()

        return {
            'events': [e.to_dict() for e in events],
            'total': total,
            'limit': limit,
            'offset': offset,
        }
