"""
Fraud review API endpoints (admin).
"""
from flask import Blueprint, request, jsonify, g

from ..middleware.auth import require_admin
from ..models.fraud import ReferralFraudEvent
from ..services.fraud_detector import FraudDetector
from ..utils.errors import not_found

fraud_review_bp = Blueprint('fraud_review', __name__)


@fraud_review_bp.route('', methods=['GET'])
@require_admin
def list_events():
    """Query params: review_status, referrer_id, event_type, severity, limit, offset."""
    filters = {
        key: request.args.get(key)
        for key in ('review_status', 'referrer_id', 'event_type', 'severity')
        if request.args.get(key)
    }
    limit = min(request.args.get('limit', 50, type=int), 100)
    offset = request.args.get('offset', 0, type=int)

    page = FraudDetector().list_fraud_events(filters, limit=limit, offset=offset)
    return jsonify({'success': True, **page})


@fraud_review_bp.route('/<int:event_id>', methods=['GET'])
@require_admin
def get_event(event_id):
    event = ReferralFraudEvent.query.get(event_id)
    if not event:
        return not_found('Fraud event not found')
    return jsonify({'success': True, 'event': event.to_dict()})


@fraud_review_bp.route('/<int:event_id>/resolve', methods=['POST'])
@require_admin
def resolve_event(event_id):
    """
    Close a fraud event.

    Request body:
    {
        "resolution": "Confirmed duplicate accounts",
        "dismiss": false
    }
    """
    data = request.get_json(silent=True) or {}
    event = FraudDetector().resolve_fraud_event(
        event_id,
        reviewer=g.admin_actor,
        resolution=data.get('resolution'),
        dismiss=bool(data.get('dismiss', False))
    )
    return jsonify({'success': True, 'event': event.to_dict()})
