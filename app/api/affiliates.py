"""
Affiliate API endpoints.

Affiliate profile creation, preferences, leaderboard and admin status
changes.
"""
from flask import Blueprint, request, jsonify, g

from ..middleware.auth import require_user, require_admin
from ..services.affiliate_service import AffiliateTierManager, PREFERENCE_FIELDS

affiliates_bp = Blueprint('affiliates', __name__)


@affiliates_bp.route('', methods=['POST'])
@require_user
def create_profile():
    """
    Become an affiliate.

    Request body (optional):
    {
        "payout_threshold": 50,
        "preferred_payout_method": "paypal",
        "payout_schedule": "monthly"
    }
    """
    data = request.get_json(silent=True) or {}
    preferences = {k: v for k, v in data.items() if k in PREFERENCE_FIELDS}

    profile = AffiliateTierManager().create_profile(g.user_id, **preferences)
    return jsonify({
        'success': True,
        'profile': profile.to_dict(),
    }), 201


@affiliates_bp.route('/me', methods=['GET'])
@require_user
def get_my_profile():
    profile = AffiliateTierManager().require_profile(g.user_id)
    return jsonify({'success': True, 'profile': profile.to_dict()})


@affiliates_bp.route('/me/preferences', methods=['PATCH'])
@require_user
def update_preferences():
    data = request.get_json(silent=True) or {}
    profile = AffiliateTierManager().update_preferences(g.user_id, data)
    return jsonify({'success': True, 'profile': profile.to_dict()})


@affiliates_bp.route('/leaderboard', methods=['GET'])
def leaderboard():
    """Top active affiliates. ?period=true ranks by the current period."""
    limit = min(request.args.get('limit', 10, type=int), 100)
    period = request.args.get('period', 'false').lower() == 'true'
    return jsonify({
        'success': True,
        'leaderboard': AffiliateTierManager().leaderboard(limit=limit, period=period),
    })


@affiliates_bp.route('/<user_id>/status', methods=['POST'])
@require_admin
def set_status(user_id):
    """Admin: approve or suspend an affiliate. Body: {"status": "active"}"""
    data = request.get_json(silent=True) or {}
    profile = AffiliateTierManager().set_status(user_id, data.get('status'), actor=g.admin_actor)
    return jsonify({'success': True, 'profile': profile.to_dict()})
