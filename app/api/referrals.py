"""
Referral API endpoints.

Code issuance and lifecycle, click tracking, conversions, links and
analytics. Every rule lives in the services; these handlers only translate
HTTP to service calls.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..middleware.auth import require_user, require_admin
from ..models.referral import ReferralTracking
from ..services.code_registry import CodeRegistry
from ..services.click_tracker import ClickTracker, ClickContext, build_qr_payload
from ..services.conversion_service import ConversionProcessor, ConversionData
from ..services.analytics_service import AnalyticsService, parse_timeframe
from ..utils.dates import parse_datetime
from ..utils.errors import error_from_exception, bad_request, not_found
from ..utils.exceptions import AuthorizationError, CodeNotFoundError

referrals_bp = Blueprint('referrals', __name__)


def _owned_code(registry: CodeRegistry, code_id: int):
    code = registry.get_code(code_id)
    if not code:
        raise CodeNotFoundError(code_id)
    if code.owner_id != g.user_id:
        raise AuthorizationError('You do not own this referral code')
    return code


def _client_ip() -> str:
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr


# ==================== CODES ====================

@referrals_bp.route('/codes', methods=['POST'])
@require_user
def issue_code():
    """
    Issue a referral code for the current user.

    Request body (all optional):
    {
        "custom_code": "SUMMER24",
        "campaign_id": "summer",
        "reward_type": "percentage",
        "reward_value": 10,
        "max_uses": 100,
        "expires_at": "2026-12-31T00:00:00Z"
    }
    """
    data = request.get_json(silent=True) or {}
    options = dict(data)
    options['expires_at'] = parse_datetime(data.get('expires_at'), 'expires_at')

    result = CodeRegistry().issue(g.user_id, options)
    if not result.ok:
        return error_from_exception(result.error)

    return jsonify({
        'success': True,
        'code': result.value.to_dict(),
    }), 201


@referrals_bp.route('/codes', methods=['GET'])
@require_user
def list_codes():
    """List the current user's codes, optionally filtered by ?status=."""
    codes = CodeRegistry().list_codes(g.user_id, status=request.args.get('status'))
    return jsonify({
        'success': True,
        'codes': [c.to_dict() for c in codes],
    })


@referrals_bp.route('/codes/<code_string>/validate', methods=['GET'])
def validate_code(code_string):
    """Public: is this code usable right now?"""
    validation = CodeRegistry().validate(code_string)
    response = {
        'valid': validation.valid,
        'reason': validation.reason,
    }
    if validation.code:
        response['code'] = validation.code.code
        response['referee_reward_type'] = validation.code.referee_reward_type
        response['referee_reward_value'] = float(validation.code.referee_reward_value or 0)
    return jsonify(response)


@referrals_bp.route('/codes/<int:code_id>/pause', methods=['POST'])
@require_user
def pause_code(code_id):
    registry = CodeRegistry()
    _owned_code(registry, code_id)
    code = registry.pause(code_id, actor=g.user_id)
    return jsonify({'success': True, 'code': code.to_dict()})


@referrals_bp.route('/codes/<int:code_id>/resume', methods=['POST'])
@require_user
def resume_code(code_id):
    registry = CodeRegistry()
    _owned_code(registry, code_id)
    code = registry.resume(code_id, actor=g.user_id)
    return jsonify({'success': True, 'code': code.to_dict()})


@referrals_bp.route('/codes/<int:code_id>/revoke', methods=['POST'])
@require_user
def revoke_code(code_id):
    data = request.get_json(silent=True) or {}
    registry = CodeRegistry()
    _owned_code(registry, code_id)
    code = registry.revoke(code_id, actor=g.user_id, reason=data.get('reason'))
    return jsonify({'success': True, 'code': code.to_dict()})


@referrals_bp.route('/link', methods=['GET'])
@require_user
def referral_link():
    """Build a shareable link (and QR payload) for one of the user's codes."""
    code_string = request.args.get('code')
    if not code_string:
        return bad_request('code is required')

    registry = CodeRegistry()
    code = registry.find_by_code(code_string)
    if not code or code.owner_id != g.user_id:
        return not_found('Referral code not found')

    link = ClickTracker(registry).referral_link(
        code.code,
        campaign_id=request.args.get('campaign_id') or code.campaign_id,
        source=request.args.get('source'),
        medium=request.args.get('medium'),
        content=request.args.get('content'),
    )
    return jsonify({
        'success': True,
        'link': link,
        'qr_payload': build_qr_payload(link),
    })


# ==================== TRACKING ====================

@referrals_bp.route('/track', methods=['POST'])
def track_click():
    """
    Public: record a visit arriving with a referral code.

    Request body:
    {
        "code": "RFABCD2345",
        "source_url": "...",
        "landing_url": "...",
        "device_fingerprint": "...",
        "country": "US",
        "session_id": "..."
    }
    """
    data = request.get_json(silent=True) or {}
    code_string = data.pop('code', None)
    if not code_string:
        return bad_request('code is required')

    context = ClickContext.from_dict(data)
    if not context.ip_address:
        context.ip_address = _client_ip()
    if not context.user_agent:
        context.user_agent = request.headers.get('User-Agent')

    result = ClickTracker().track(code_string, context)
    if not result.ok:
        return error_from_exception(result.error)

    tracking = result.value
    return jsonify({
        'success': True,
        'tracking_id': tracking.id,
        'click_id': tracking.click_id,
    }), 201


# ==================== CONVERSIONS ====================

@referrals_bp.route('/conversions', methods=['POST'])
@require_admin
def process_conversion():
    """
    Record a conversion for a tracked click. Called by the surrounding
    application (signup handler, payment webhooks).

    Request body:
    {
        "tracking_id": 12,            (or "click_id")
        "converted_user_id": "user_9",
        "conversion_type": "purchase",
        "conversion_value": 200.00,
        "source_transaction_id": "txn_123"
    }

    Duplicate deliveries answer 200 with "duplicate": true.
    """
    data = request.get_json(silent=True) or {}

    tracking_id = data.get('tracking_id')
    if tracking_id is None and data.get('click_id'):
        tracking = ReferralTracking.query.filter_by(click_id=data['click_id']).first()
        if not tracking:
            return not_found('Tracking record not found')
        tracking_id = tracking.id
    if tracking_id is None:
        return bad_request('tracking_id or click_id is required')
    try:
        tracking_id = int(tracking_id)
    except (TypeError, ValueError):
        return bad_request('tracking_id must be an integer')

    result = ConversionProcessor().process_conversion(tracking_id, ConversionData.from_dict(data))

    if result.is_benign:
        return jsonify({
            'success': True,
            'duplicate': True,
            'tracking_id': tracking_id,
        })
    if not result.ok:
        return error_from_exception(result.error)

    return jsonify({
        'success': True,
        'duplicate': False,
        **result.value.to_dict(),
    }), 201


@referrals_bp.route('/conversions/<int:tracking_id>/resettle', methods=['POST'])
@require_admin
def resettle_conversion(tracking_id):
    """Re-drive any settlement steps left unfinished for a conversion."""
    result = ConversionProcessor().resettle(tracking_id)
    if not result.ok:
        return error_from_exception(result.error)

    current_app.logger.info(f'Tracking {tracking_id} resettled by {g.admin_actor}')
    return jsonify({'success': True, **result.value.to_dict()})


# ==================== ANALYTICS ====================

@referrals_bp.route('/analytics', methods=['GET'])
@require_user
def get_analytics():
    """
    Analytics for the current user.

    Query params: timeframe (24h, 7d, 30d, 90d, 365d, all; default 30d)
    or explicit start/end ISO timestamps.
    """
    if request.args.get('start') or request.args.get('end'):
        start = parse_datetime(request.args.get('start'), 'start')
        end = parse_datetime(request.args.get('end'), 'end')
    else:
        start, end = parse_timeframe(request.args.get('timeframe', '30d'))

    result = AnalyticsService().get_analytics(g.user_id, start, end)
    if not result.ok:
        return error_from_exception(result.error)

    return jsonify({'success': True, 'analytics': result.value})
