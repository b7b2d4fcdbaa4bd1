"""
Earnings API endpoints.

Referrers can list and summarize their earnings; approval, payout
recording and reversal are admin operations.
"""
from flask import Blueprint, request, jsonify, g

from ..middleware.auth import require_user, require_admin
from ..services.earnings_service import EarningsService, summary_to_json
from ..utils.dates import parse_datetime

earnings_bp = Blueprint('earnings', __name__)


@earnings_bp.route('', methods=['GET'])
@require_user
def list_earnings():
    """Query params: status, limit (max 100), offset."""
    limit = min(request.args.get('limit', 50, type=int), 100)
    offset = request.args.get('offset', 0, type=int)
    page = EarningsService().list_earnings(
        g.user_id,
        status=request.args.get('status'),
        limit=limit,
        offset=offset
    )
    return jsonify({'success': True, **page})


@earnings_bp.route('/summary', methods=['GET'])
@require_user
def summary():
    start = parse_datetime(request.args.get('start'), 'start')
    end = parse_datetime(request.args.get('end'), 'end')
    totals = EarningsService().summarize(g.user_id, start, end)
    return jsonify({'success': True, 'summary': summary_to_json(totals)})


@earnings_bp.route('/<int:earning_id>/approve', methods=['POST'])
@require_admin
def approve(earning_id):
    earning = EarningsService().approve(earning_id, approved_by=g.admin_actor)
    return jsonify({'success': True, 'earning': earning.to_dict()})


@earnings_bp.route('/<int:earning_id>/pay', methods=['POST'])
@require_admin
def mark_paid(earning_id):
    """Record a payout made by the ledger. Body: {"payout_reference": "..."}"""
    data = request.get_json(silent=True) or {}
    earning = EarningsService().mark_paid(earning_id, data.get('payout_reference'), actor=g.admin_actor)
    return jsonify({'success': True, 'earning': earning.to_dict()})


@earnings_bp.route('/<int:earning_id>/reverse', methods=['POST'])
@require_admin
def reverse(earning_id):
    """Body: {"reason": "..."}"""
    data = request.get_json(silent=True) or {}
    earning = EarningsService().reverse(earning_id, data.get('reason'), actor=g.admin_actor)
    return jsonify({'success': True, 'earning': earning.to_dict()})
