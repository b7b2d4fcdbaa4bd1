"""
Achievement API endpoints.
"""
from flask import Blueprint, jsonify, g

from ..extensions import db
from ..middleware.auth import require_user
from ..services.achievement_service import AchievementEngine

achievements_bp = Blueprint('achievements', __name__)


@achievements_bp.route('', methods=['GET'])
@require_user
def get_progress():
    """Achievement progress for the current user."""
    engine = AchievementEngine()
    if engine.initialize_defaults(g.user_id, commit=False):
        db.session.commit()
    return jsonify({'success': True, **engine.get_progress(g.user_id)})


@achievements_bp.route('/check', methods=['POST'])
@require_user
def check_achievements():
    """Recompute progress now instead of waiting for the next conversion."""
    unlocked = AchievementEngine().check_achievements(g.user_id)
    return jsonify({
        'success': True,
        'unlocked': [a.to_dict() for a in unlocked],
    })


@achievements_bp.route('/<key>/claim', methods=['POST'])
@require_user
def claim(key):
    achievement = AchievementEngine().claim(g.user_id, key)
    return jsonify({'success': True, 'achievement': achievement.to_dict()})
