"""
Earnings lifecycle.

Earnings are created pending by the calculator. From there:
    pending  -> approved -> paid
    pending  -> reversed
    approved -> reversed

Paying out is done by an external ledger; this service only records the
payout reference it hands back.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func

from ..extensions import db
from ..models.referral import ReferralEarning, ReferralRelationship, EarningStatus
from ..utils.exceptions import NotFoundError, ValidationError, InvalidStatusTransitionError
from ..utils.money import ZERO, as_decimal, quantize_money
from .audit_service import record_audit

logger = logging.getLogger(__name__)

EARNING_TRANSITIONS = {
    EarningStatus.PENDING.value: {EarningStatus.APPROVED.value, EarningStatus.REVERSED.value},
    EarningStatus.APPROVED.value: {EarningStatus.PAID.value, EarningStatus.REVERSED.value},
    EarningStatus.PAID.value: set(),
    EarningStatus.REVERSED.value: set(),
}


class EarningsService:
    """Approve, pay and reverse referral earnings."""

    def get_earning(self, earning_id: int) -> ReferralEarning:
        earning = ReferralEarning.query.get(earning_id)
        if not earning:
            raise NotFoundError('Earning', earning_id)
        return earning

    def list_earnings(self, referrer_id: str, status: str = None, limit: int = 50, offset: int = 0) -> Dict[str, Any]:
        query = ReferralEarning.query.filter_by(referrer_id=referrer_id)
        if status:
            query = query.filter_by(status=status)
        total = query.count()
        earnings = query.order_by(ReferralEarning.created_at.desc(), ReferralEarning.id.desc()) \
            .offset(offset).limit(limit).all()
        return {
            'earnings': [e.to_dict() for e in earnings],
            'total': total,
            'limit': limit,
            'offset': offset,
        }

    def _transition(self, earning: ReferralEarning, new_status: str) -> str:
        old_status = earning.status
        if new_status not in EARNING_TRANSITIONS.get(old_status, set()):
            raise InvalidStatusTransitionError('earning', old_status, new_status)

        updated = ReferralEarning.query.filter(
            ReferralEarning.id == earning.id,
            ReferralEarning.status == old_status
        ).update({ReferralEarning.status: new_status}, synchronize_session='fetch')
        if updated != 1:
            db.session.rollback()
            raise InvalidStatusTransitionError('earning', earning.status, new_status)
        return old_status

    def approve(self, earning_id: int, approved_by: str) -> ReferralEarning:
        if not approved_by:
            raise ValidationError('approved_by is required', 'approved_by')

        earning = self.get_earning(earning_id)
        self._transition(earning, EarningStatus.APPROVED.value)
        earning.approved_by = approved_by
        earning.approved_at = datetime.utcnow()

        record_audit(approved_by, 'earning_approved', 'referral_earning', earning.id,
                     {'amount': str(earning.amount), 'referrer_id': earning.referrer_id})
        db.session.commit()
        logger.info(f'Earning {earning.id} approved by {approved_by}')
        return earning

    def mark_paid(self, earning_id: int, payout_reference: str, actor: str = 'system') -> ReferralEarning:
        if not payout_reference:
            raise ValidationError('payout_reference is required', 'payout_reference')

        earning = self.get_earning(earning_id)
        self._transition(earning, EarningStatus.PAID.value)
        earning.paid_at = datetime.utcnow()
        earning.payout_reference = payout_reference

        record_audit(actor, 'earning_paid', 'referral_earning', earning.id,
                     {'amount': str(earning.amount), 'payout_reference': payout_reference})
        db.session.commit()
        logger.info(f'Earning {earning.id} paid ({payout_reference})')
        return earning

    def reverse(self, earning_id: int, reason: str, actor: str = 'system') -> ReferralEarning:
        """Reverse an unpaid earning and take it back out of its relationship total."""
        if not reason:
            raise ValidationError('reason is required', 'reason')

        earning = self.get_earning(earning_id)
        self._transition(earning, EarningStatus.REVERSED.value)
        earning.reversed_at = datetime.utcnow()
        earning.reversal_reason = reason

        if earning.relationship_id:
            relationship = ReferralRelationship.query.get(earning.relationship_id)
            if relationship:
                relationship.total_earnings = max(
                    ZERO, quantize_money(as_decimal(relationship.total_earnings) - as_decimal(earning.amount))
                )

        record_audit(actor, 'earning_reversed', 'referral_earning', earning.id,
                     {'amount': str(earning.amount), 'reason': reason})
        db.session.commit()
        logger.info(f'Earning {earning.id} reversed: {reason}')
        return earning

    def summarize(self, referrer_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        """Totals per status and per earning type. Reversed rows are excluded from total."""
        query = db.session.query(
            ReferralEarning.status,
            ReferralEarning.earning_type,
            func.count(ReferralEarning.id),
            func.coalesce(func.sum(ReferralEarning.amount), 0)
        ).filter(ReferralEarning.referrer_id == referrer_id)
        if start:
            query = query.filter(ReferralEarning.created_at >= start)
        if end:
            query = query.filter(ReferralEarning.created_at <= end)
        rows = query.group_by(ReferralEarning.status, ReferralEarning.earning_type).all()

        by_status = {s.value: ZERO for s in EarningStatus}
        by_type: Dict[str, Any] = {}
        count = 0
        for status, earning_type, row_count, amount in rows:
            amount = quantize_money(amount)
            by_status[status] = by_status.get(status, ZERO) + amount
            if status != EarningStatus.REVERSED.value:
                by_type[earning_type] = by_type.get(earning_type, ZERO) + amount
                count += row_count

        total = sum((v for k, v in by_status.items() if k != EarningStatus.REVERSED.value), ZERO)
        return {
            'total': total,
            'count': count,
            'pending': by_status[EarningStatus.PENDING.value],
            'approved': by_status[EarningStatus.APPROVED.value],
            'paid': by_status[EarningStatus.PAID.value],
            'reversed': by_status[EarningStatus.REVERSED.value],
            'by_type': by_type,
        }


def summary_to_json(summary: Dict[str, Any]) -> Dict[str, Any]:
    """Decimal amounts as floats for JSON responses."""
    out = {}
    for key, value in summary.items():
        if isinstance(value, dict):
            out[key] = {k: float(v) for k, v in value.items()}
        elif key == 'count':
            out[key] = value
        else:
            out[key] = float(value)
    return out
