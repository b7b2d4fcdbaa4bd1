"""
Click Tracker.

Records inbound visits against referral codes and builds shareable links.
"""
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models.referral import ReferralTracking, AttributionModel
from ..utils.exceptions import (
    ReferralError,
    InvalidCodeError,
    CodeGenerationExhaustedError,
)
from ..utils.results import ServiceResult
from .code_registry import CodeRegistry, normalize_code, REASON_MAX_USES

logger = logging.getLogger(__name__)

CLICK_ID_MAX_ATTEMPTS = 5


@dataclass
class ClickContext:
    """Where a visit came from. Every field is optional."""
    source_url: Optional[str] = None
    landing_url: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_fingerprint: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None
    session_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ClickContext':
        data = dict(data or {})
        known = {name: data.pop(name) for name in list(data) if name in cls.__dataclass_fields__ and name != 'extra'}
        return cls(extra=data, **known)


def build_referral_link(
    code: str,
    base_url: str,
    campaign_id: str = None,
    source: str = None,
    medium: str = None,
    content: str = None
) -> str:
    """
    Compose a shareable link for a code.

    Each call embeds a fresh ``tid`` token so individual shares can be told
    apart. Nothing is read or written.
    """
    params = {'ref': normalize_code(code)}
    if campaign_id:
        params['campaign'] = campaign_id
    if source:
        params['source'] = source
    if medium:
        params['medium'] = medium
    if content:
        params['content'] = content
    params['tid'] = secrets.token_urlsafe(9)

    separator = '&' if '?' in base_url else '?'
    return f'{base_url}{separator}{urlencode(params)}'


def build_qr_payload(link: str) -> str:
    """QR payload is the link itself; rendering happens client side."""
    return link


class ClickTracker:
    """Validates codes at visit time and writes tracking rows."""

    def __init__(self, registry: CodeRegistry = None):
        self.registry = registry or CodeRegistry()

    def track(self, code_string: str, context: Optional[ClickContext] = None) -> ServiceResult:
        """
        Record a click for code_string.

        Returns:
            ServiceResult with the new ReferralTracking, or InvalidCodeError
            carrying the validation reason (no row is written).
        """
        try:
            return ServiceResult.success(self._track(code_string, context or ClickContext()))
        except ReferralError as e:
            db.session.rollback()
            if e.kind == 'validation':
                logger.debug(f'Click rejected for {code_string!r}: {e.message}')
            return ServiceResult.failure(e)

    def _track(self, code_string: str, context: ClickContext) -> ReferralTracking:
        validation = self.registry.validate(code_string)
        if not validation.valid:
            raise InvalidCodeError(validation.reason, normalize_code(code_string))

        code = validation.code
        if not self.registry.record_use(code.id):
            # Lost the race for the last use, or the code changed underneath us
            db.session.rollback()
            reason = self.registry.check(code).reason or REASON_MAX_USES
            raise InvalidCodeError(reason, code.code)

        tracking = ReferralTracking(
            referral_code_id=code.id,
            referrer_id=code.owner_id,
            click_id=self._mint_click_id(),
            source_url=context.source_url,
            landing_url=context.landing_url,
            user_agent=context.user_agent,
            ip_address=context.ip_address,
            device_fingerprint=context.device_fingerprint,
            country=context.country,
            region=context.region,
            city=context.city,
            session_id=context.session_id,
            attribution_model=AttributionModel.LAST_CLICK.value,
        )
        db.session.add(tracking)

        try:
            # Use increment and tracking row land together
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise CodeGenerationExhaustedError('click id', 1)

        logger.info(f'Click {tracking.click_id} tracked for code {code.code}')
        return tracking

    def _mint_click_id(self) -> str:
        for _ in range(CLICK_ID_MAX_ATTEMPTS):
            candidate = secrets.token_urlsafe(16)
            if not ReferralTracking.query.filter_by(click_id=candidate).first():
                return candidate

        logger.warning(f'Click id generation exhausted after {CLICK_ID_MAX_ATTEMPTS} attempts')
        raise CodeGenerationExhaustedError('click id', CLICK_ID_MAX_ATTEMPTS)

    def get_by_click_id(self, click_id: str) -> Optional[ReferralTracking]:
        return ReferralTracking.query.filter_by(click_id=click_id).first()

    def referral_link(self, code: str, **params) -> str:
        base_url = params.pop('base_url', None) or current_app.config['REFERRAL_BASE_URL']
        return build_referral_link(code, base_url, **params)
