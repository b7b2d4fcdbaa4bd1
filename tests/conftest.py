"""
Shared fixtures for the referral engine tests.

The app fixture pushes one application context for the whole test, so
model instances created in fixtures stay attached to the session the code
under test uses. Tests should not open their own app_context().
"""
from decimal import Decimal

import pytest

from app import create_app
from app.extensions import db as _db


@pytest.fixture
def app():
    """Flask app on an in-memory SQLite database."""
    app = create_app('testing')
    ctx = app.app_context()
    ctx.push()
    _db.create_all()

    yield app

    _db.session.remove()
    _db.drop_all()
    ctx.pop()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {
        'X-Admin-Key': 'test-admin-key',
        'X-Admin-User': 'reviewer@example.com',
        'Content-Type': 'application/json',
    }


@pytest.fixture
def user_headers():
    """Headers for an authenticated end user."""
    def _headers(user_id='referrer_a'):
        return {'X-User-ID': user_id, 'Content-Type': 'application/json'}
    return _headers


@pytest.fixture
def make_code(app):
    """Issue a referral code, raising on failure."""
    from app.services.code_registry import CodeRegistry

    def _make(owner_id='referrer_a', **options):
        return CodeRegistry().issue(owner_id, options).unwrap()
    return _make


@pytest.fixture
def make_click(app):
    """Track a click against a code, raising on failure."""
    from app.services.click_tracker import ClickTracker, ClickContext

    def _make(code, **context):
        code_string = code if isinstance(code, str) else code.code
        return ClickTracker().track(code_string, ClickContext(**context)).unwrap()
    return _make


@pytest.fixture
def convert(app):
    """Run a conversion through the processor and return the ServiceResult."""
    from app.services.conversion_service import ConversionProcessor, ConversionData

    def _convert(tracking, user_id, conversion_type='purchase', value=None, **extra):
        data = ConversionData(
            converted_user_id=user_id,
            conversion_type=conversion_type,
            conversion_value=Decimal(str(value)) if value is not None else None,
            **extra
        )
        return ConversionProcessor().process_conversion(tracking.id, data)
    return _convert


@pytest.fixture
def sample_code(make_code):
    """10% percentage code owned by referrer_a."""
    return make_code('referrer_a', reward_type='percentage', reward_value=10)


@pytest.fixture
def sample_tracking(make_click, sample_code):
    return make_click(sample_code, ip_address='203.0.113.7', country='US')
