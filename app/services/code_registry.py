"""
Referral Code Registry.

Issues, validates and rate-limits referral codes, and owns the only two
writes a code ever sees after creation: the bounded use increment and
status transitions.

Usage:
    registry = CodeRegistry()
    result = registry.issue('user_42', {'reward_type': 'percentage', 'reward_value': 10})
    if result.ok:
        code = result.value
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models.referral import ReferralCode, CodeKind, CodeStatus, RewardType
from ..utils.exceptions import (
    ReferralError,
    ValidationError,
    DuplicateCodeError,
    LimitExceededError,
    InvalidStatusTransitionError,
    CodeGenerationExhaustedError,
    CodeNotFoundError,
)
from ..utils.money import parse_amount
from ..utils.results import ServiceResult
from .audit_service import record_audit

logger = logging.getLogger(__name__)

# 32 symbols without look-alikes (0/O, 1/I)
CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'

# Validation failure reasons
REASON_NOT_FOUND = 'not_found'
REASON_NOT_ACTIVE = 'not_active'
REASON_EXPIRED = 'expired'
REASON_MAX_USES = 'max_uses_reached'

# Terminal states have no outgoing transitions
ALLOWED_TRANSITIONS = {
    CodeStatus.ACTIVE.value: {CodeStatus.PAUSED.value, CodeStatus.EXPIRED.value, CodeStatus.REVOKED.value},
    CodeStatus.PAUSED.value: {CodeStatus.ACTIVE.value, CodeStatus.EXPIRED.value, CodeStatus.REVOKED.value},
    CodeStatus.EXPIRED.value: set(),
    CodeStatus.REVOKED.value: set(),
}


def normalize_code(code_string: Optional[str]) -> str:
    """Codes are compared trimmed and upper-cased."""
    return (code_string or '').strip().upper()


@dataclass
class CodeValidation:
    """Tri-state validation result: valid, or invalid with a reason."""
    valid: bool
    code: Optional[ReferralCode] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'reason': self.reason,
            'code': self.code.to_dict() if self.code else None,
        }


class CodeRegistry:
    """Creates, validates and rate-limits referral codes."""

    def __init__(self, config=None):
        self.config = config if config is not None else current_app.config

    # ==================== Issuance ====================

    def issue(self, owner_id: str, options: Optional[Dict[str, Any]] = None) -> ServiceResult:
        """
        Issue a new referral code for owner_id.

        Options:
            custom_code, prefix, campaign_id, description,
            reward_type, reward_value, referee_reward_type, referee_reward_value,
            max_uses, expires_at (datetime)

        Returns:
            ServiceResult with the ReferralCode, or DuplicateCodeError,
            LimitExceededError, ValidationError, CodeGenerationExhaustedError
        """
        try:
            return ServiceResult.success(self._issue(owner_id, options or {}))
        except ReferralError as e:
            db.session.rollback()
            return ServiceResult.failure(e)

    def _issue(self, owner_id: str, options: Dict[str, Any]) -> ReferralCode:
        if not owner_id:
            raise ValidationError('owner_id is required', 'owner_id')

        reward_type, reward_value = self._validate_reward(options)
        max_uses = self._parse_max_uses(options.get('max_uses'))
        expires_at = options.get('expires_at')
        if expires_at is not None and expires_at <= datetime.utcnow():
            raise ValidationError('expires_at must be in the future', 'expires_at')

        self._enforce_rate_limits(owner_id)

        custom_code = options.get('custom_code')
        if custom_code:
            code_string = normalize_code(custom_code)
            if not code_string.isalnum() or len(code_string) > 50:
                raise ValidationError('Custom code must be 1-50 letters or digits', 'custom_code')
            if self.find_by_code(code_string):
                raise DuplicateCodeError(code_string)
        else:
            prefix = normalize_code(options.get('prefix') or self.config['REFERRAL_CODE_PREFIX'])
            code_string = self.generate_unique_code(prefix)

        campaign_id = options.get('campaign_id')
        if options.get('referee_reward_value') is not None:
            referee_reward_value = parse_amount(options['referee_reward_value'], 'referee_reward_value')
        else:
            referee_reward_value = Decimal('5.00') if reward_type == RewardType.PERCENTAGE.value else Decimal('10.00')

        code = ReferralCode(
            owner_id=owner_id,
            code=code_string,
            kind=CodeKind.CAMPAIGN.value if campaign_id else CodeKind.STANDARD.value,
            campaign_id=campaign_id,
            description=options.get('description'),
            reward_type=reward_type,
            reward_value=reward_value,
            referee_reward_type=options.get('referee_reward_type', RewardType.CREDITS.value),
            referee_reward_value=referee_reward_value,
            max_uses=max_uses,
            current_uses=0,
            expires_at=expires_at,
            status=CodeStatus.ACTIVE.value,
        )
        db.session.add(code)

        try:
            db.session.flush()
        except IntegrityError:
            # Lost a race with a concurrent issue of the same string
            db.session.rollback()
            raise DuplicateCodeError(code_string)

        record_audit(
            actor=owner_id,
            action='referral_code_created',
            resource_type='referral_code',
            resource_id=code.id,
            details={'code': code.code, 'reward_type': reward_type, 'reward_value': str(reward_value)}
        )
        db.session.commit()

        logger.info(f'Referral code issued: {code.code} for {owner_id} ({reward_type} {reward_value})')
        return code

    def _validate_reward(self, options: Dict[str, Any]):
        reward_type = options.get('reward_type') or self.config['REFERRAL_DEFAULT_REWARD_TYPE']
        if reward_type not in {t.value for t in RewardType}:
            raise ValidationError(f'Unknown reward_type: {reward_type}', 'reward_type')

        raw_value = options.get('reward_value')
        if raw_value is None:
            raw_value = self.config['REFERRAL_DEFAULT_REWARD_VALUE']
        reward_value = parse_amount(raw_value, 'reward_value')
        if reward_type == RewardType.PERCENTAGE.value and reward_value > 100:
            raise ValidationError('Percentage reward cannot exceed 100', 'reward_value')
        return reward_type, reward_value

    @staticmethod
    def _parse_max_uses(raw) -> Optional[int]:
        if raw is None:
            return None
        if isinstance(raw, bool):
            raise ValidationError('max_uses must be an integer', 'max_uses')
        try:
            max_uses = int(raw)
        except (TypeError, ValueError, OverflowError):
            raise ValidationError('max_uses must be an integer', 'max_uses')
        if isinstance(raw, float) and raw != max_uses:
            raise ValidationError('max_uses must be an integer', 'max_uses')
        if max_uses < 1:
            raise ValidationError('max_uses must be at least 1', 'max_uses')
        return max_uses

    def _enforce_rate_limits(self, owner_id: str) -> None:
        max_active = self.config['REFERRAL_MAX_ACTIVE_CODES']
        live = ReferralCode.query.filter(
            ReferralCode.owner_id == owner_id,
            ReferralCode.status.in_([CodeStatus.ACTIVE.value, CodeStatus.PAUSED.value])
        ).count()
        if live >= max_active:
            raise LimitExceededError('Active referral codes', max_active, live)

        per_day = self.config['REFERRAL_MAX_CODES_PER_DAY']
        since = datetime.utcnow() - timedelta(hours=24)
        recent = ReferralCode.query.filter(
            ReferralCode.owner_id == owner_id,
            ReferralCode.created_at >= since
        ).count()
        if recent >= per_day:
            raise LimitExceededError('Daily referral codes', per_day, recent)

    def generate_unique_code(self, prefix: str) -> str:
        """Bounded retry loop; raises CodeGenerationExhaustedError when the space looks full."""
        max_attempts = self.config['REFERRAL_CODE_MAX_ATTEMPTS']
        for _ in range(max_attempts):
            candidate = f'{prefix}{self._random_part()}'
            if not self.find_by_code(candidate):
                return candidate

        logger.warning(
            f'Referral code generation exhausted after {max_attempts} attempts '
            f'(prefix={prefix!r}); code space may be under-provisioned'
        )
        raise CodeGenerationExhaustedError('referral code', max_attempts)

    def _random_part(self) -> str:
        length = self.config['REFERRAL_CODE_LENGTH']
        return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))

    # ==================== Lookup & Validation ====================

    def find_by_code(self, code_string: str) -> Optional[ReferralCode]:
        normalized = normalize_code(code_string)
        if not normalized:
            return None
        return ReferralCode.query.filter_by(code=normalized).first()

    def get_code(self, code_id: int) -> Optional[ReferralCode]:
        return ReferralCode.query.get(code_id)

    def list_codes(self, owner_id: str, status: str = None) -> List[ReferralCode]:
        query = ReferralCode.query.filter_by(owner_id=owner_id)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(ReferralCode.created_at.desc()).all()

    def validate(self, code_string: str) -> CodeValidation:
        """
        Validate a code string. Always reads current state; never cached.
        """
        code = self.find_by_code(code_string)
        if not code:
            return CodeValidation(valid=False, reason=REASON_NOT_FOUND)
        return self.check(code)

    def check(self, code: ReferralCode, enforce_max_uses: bool = True) -> CodeValidation:
        """
        Validate an already-loaded code.

        enforce_max_uses=False is used at conversion time: the click being
        converted already consumed its use.
        """
        if code.status == CodeStatus.EXPIRED.value:
            return CodeValidation(valid=False, code=code, reason=REASON_EXPIRED)

        if code.status != CodeStatus.ACTIVE.value:
            return CodeValidation(valid=False, code=code, reason=REASON_NOT_ACTIVE)

        if code.is_expired:
            return CodeValidation(valid=False, code=code, reason=REASON_EXPIRED)

        if enforce_max_uses and code.max_uses is not None and code.current_uses >= code.max_uses:
            return CodeValidation(valid=False, code=code, reason=REASON_MAX_USES)

        return CodeValidation(valid=True, code=code)

    def record_use(self, code_id: int) -> bool:
        """
        Atomically increment current_uses, never past max_uses.

        Single conditional UPDATE; returns False when the code is no longer
        active or is already at max_uses. Does not commit.
        """
        updated = ReferralCode.query.filter(
            ReferralCode.id == code_id,
            ReferralCode.status == CodeStatus.ACTIVE.value,
            or_(
                ReferralCode.max_uses.is_(None),
                ReferralCode.current_uses < ReferralCode.max_uses
            )
        ).update(
            {ReferralCode.current_uses: ReferralCode.current_uses + 1},
            synchronize_session='fetch'
        )
        return updated == 1

    # ==================== Status Transitions ====================

    def pause(self, code_id: int, actor: str = 'system') -> ReferralCode:
        return self.change_status(code_id, CodeStatus.PAUSED.value, actor)

    def resume(self, code_id: int, actor: str = 'system') -> ReferralCode:
        code = self.get_code(code_id)
        if code and code.is_expired:
            # Past its expiry date: the only way forward is expired
            raise InvalidStatusTransitionError('referral code', code.status, CodeStatus.ACTIVE.value)
        return self.change_status(code_id, CodeStatus.ACTIVE.value, actor)

    def revoke(self, code_id: int, actor: str = 'system', reason: str = None) -> ReferralCode:
        return self.change_status(code_id, CodeStatus.REVOKED.value, actor, reason=reason)

    def expire(self, code_id: int, actor: str = 'system') -> ReferralCode:
        return self.change_status(code_id, CodeStatus.EXPIRED.value, actor)

    def change_status(self, code_id: int, new_status: str, actor: str = 'system', reason: str = None) -> ReferralCode:
        """
        Move a code along the status graph.

        The write is conditional on the status we read, so a concurrent
        revoke cannot be overwritten by a stale resume.
        """
        code = self.get_code(code_id)
        if not code:
            raise CodeNotFoundError(code_id)

        old_status = code.status
        if new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
            raise InvalidStatusTransitionError('referral code', old_status, new_status)

        updated = ReferralCode.query.filter(
            ReferralCode.id == code_id,
            ReferralCode.status == old_status
        ).update(
            {ReferralCode.status: new_status, ReferralCode.status_changed_at: datetime.utcnow()},
            synchronize_session='fetch'
        )
        if updated != 1:
            db.session.rollback()
            current = self.get_code(code_id)
            raise InvalidStatusTransitionError('referral code', current.status if current else old_status, new_status)

        record_audit(
            actor=actor,
            action='referral_code_status_changed',
            resource_type='referral_code',
            resource_id=code_id,
            details={'from': old_status, 'to': new_status, 'reason': reason}
        )
        db.session.commit()
        logger.info(f'Referral code {code.code}: {old_status} -> {new_status} by {actor}')
        return code

    def expire_stale_codes(self, now: datetime = None) -> int:
        """Mark active/paused codes past their expiry date as expired."""
        now = now or datetime.utcnow()
        count = ReferralCode.query.filter(
            ReferralCode.status.in_([CodeStatus.ACTIVE.value, CodeStatus.PAUSED.value]),
            ReferralCode.expires_at.isnot(None),
            ReferralCode.expires_at < now
        ).update(
            {ReferralCode.status: CodeStatus.EXPIRED.value, ReferralCode.status_changed_at: now},
            synchronize_session='fetch'
        )
        db.session.commit()
        if count:
            logger.info(f'Expired {count} referral codes past their expiry date')
        return count
