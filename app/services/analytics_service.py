"""
Referral analytics.

Read-only aggregation over tracking and earnings rows for one referrer.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, case

from ..extensions import db
from ..models.referral import ReferralTracking, ReferralRelationship
from ..utils.exceptions import ReferralError, ValidationError
from ..utils.money import ZERO, quantize_money
from ..utils.results import ServiceResult
from .earnings_service import EarningsService, summary_to_json

logger = logging.getLogger(__name__)

TIMEFRAMES = {
    '24h': timedelta(hours=24),
    '7d': timedelta(days=7),
    '30d': timedelta(days=30),
    '90d': timedelta(days=90),
    '365d': timedelta(days=365),
    'all': None,
}


def parse_timeframe(timeframe: str, now: datetime = None) -> Tuple[Optional[datetime], datetime]:
    """Map a timeframe label like '30d' to a (start, end) window."""
    now = now or datetime.utcnow()
    if timeframe not in TIMEFRAMES:
        raise ValidationError(
            f'Unknown timeframe: {timeframe}. Use one of {", ".join(TIMEFRAMES)}',
            'timeframe'
        )
    delta = TIMEFRAMES[timeframe]
    return (now - delta if delta else None), now


def classify_device(user_agent: Optional[str]) -> str:
    if not user_agent:
        return 'unknown'
    ua = user_agent.lower()
    if any(token in ua for token in ('bot', 'crawler', 'spider')):
        return 'bot'
    if 'ipad' in ua or 'tablet' in ua:
        return 'tablet'
    if any(token in ua for token in ('mobile', 'iphone', 'android')):
        return 'mobile'
    return 'desktop'


def _rate(conversions: int, clicks: int) -> float:
    if not clicks:
        return 0.0
    return round(conversions / clicks * 100, 2)


class AnalyticsService:
    """Overview, performance and earnings breakdown for a referrer."""

    def __init__(self, earnings_service: EarningsService = None):
        self.earnings_service = earnings_service or EarningsService()

    def get_analytics(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> ServiceResult:
        try:
            if not user_id:
                raise ValidationError('user_id is required', 'user_id')
            if start and end and start > end:
                raise ValidationError('start must be before end', 'start')
            return ServiceResult.success(self._build(user_id, start, end))
        except ReferralError as e:
            return ServiceResult.failure(e)

    def _tracking_filters(self, user_id, start, end):
        filters = [ReferralTracking.referrer_id == user_id]
        if start:
            filters.append(ReferralTracking.created_at >= start)
        if end:
            filters.append(ReferralTracking.created_at <= end)
        return filters

    def _build(self, user_id: str, start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Any]:
        filters = self._tracking_filters(user_id, start, end)
        converted = case((ReferralTracking.converted_user_id.isnot(None), 1), else_=0)

        clicks, conversions, conversion_value = db.session.query(
            func.count(ReferralTracking.id),
            func.coalesce(func.sum(converted), 0),
            func.coalesce(func.sum(ReferralTracking.conversion_value), 0)
        ).filter(*filters).one()
        conversions = int(conversions)

        relationship_query = ReferralRelationship.query.filter(ReferralRelationship.referrer_id == user_id)
        if start:
            relationship_query = relationship_query.filter(ReferralRelationship.created_at >= start)
        if end:
            relationship_query = relationship_query.filter(ReferralRelationship.created_at <= end)

        earnings = self.earnings_service.summarize(user_id, start, end)

        return {
            'user_id': user_id,
            'start': start.isoformat() if start else None,
            'end': end.isoformat() if end else None,
            'overview': {
                'clicks': clicks,
                'conversions': conversions,
                'conversion_rate': _rate(conversions, clicks),
                'conversion_value': float(quantize_money(conversion_value or ZERO)),
                'referrals': relationship_query.count(),
                'total_earnings': float(earnings['total']),
            },
            'performance': {
                'by_day': self._by_day(filters, converted),
                'by_country': self._by_country(filters, converted),
                'by_device': self._by_device(filters),
            },
            'earnings_breakdown': summary_to_json(earnings),
        }

    def _by_day(self, filters, converted):
        day = func.date(ReferralTracking.created_at)
        rows = db.session.query(
            day,
            func.count(ReferralTracking.id),
            func.coalesce(func.sum(converted), 0)
        ).filter(*filters).group_by(day).order_by(day).all()
        return [
            {'date': str(d), 'clicks': c, 'conversions': int(v), 'conversion_rate': _rate(int(v), c)}
            for d, c, v in rows
        ]

    def _by_country(self, filters, converted):
        rows = db.session.query(
            ReferralTracking.country,
            func.count(ReferralTracking.id),
            func.coalesce(func.sum(converted), 0)
        ).filter(*filters).group_by(ReferralTracking.country).all()
        result = [
            {'country': country or 'unknown', 'clicks': c, 'conversions': int(v), 'conversion_rate': _rate(int(v), c)}
            for country, c, v in rows
        ]
        return sorted(result, key=lambda r: (-r['clicks'], r['country']))

    def _by_device(self, filters):
        rows = db.session.query(
            ReferralTracking.user_agent,
            ReferralTracking.converted_user_id
        ).filter(*filters).all()

        buckets: Dict[str, Dict[str, int]] = {}
        for user_agent, converted_user_id in rows:
            bucket = buckets.setdefault(classify_device(user_agent), {'clicks': 0, 'conversions': 0})
            bucket['clicks'] += 1
            if converted_user_id:
                bucket['conversions'] += 1

        result = [
            {'device': device, 'clicks': b['clicks'], 'conversions': b['conversions'],
             'conversion_rate': _rate(b['conversions'], b['clicks'])}
            for device, b in buckets.items()
        ]
        return sorted(result, key=lambda r: (-r['clicks'], r['device']))
