"""
Pytest fixtures for paycore backend tests.

Provides test database setup, gateway response builders, and test client.
"""

from unittest.mock import MagicMock

import pytest

from paycore import create_app
from paycore.extensions import db
from paycore.services import events
from paycore.services.gateway_client import InitResult, VerificationResult


ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SSLCOMMERZ_STORE_ID': 'teststore',
        'SSLCOMMERZ_STORE_PASSWORD': 'teststore@ssl',
        'SSLCOMMERZ_IS_LIVE': False,
        'PUBLIC_BASE_URL': 'https://api.example.test',
        'FRONTEND_URL': 'https://app.example.test',
        'ADMIN_API_KEY': ADMIN_KEY,
        'CHECKOUT_CURRENCY': 'BDT',
        'CHECKOUT_AMOUNT_TOLERANCE': 0.01,
        'CHECKOUT_PENDING_TTL_HOURS': 48,
        'SUBSCRIPTION_GRACE_DAYS': 7,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def demo_mode(app, monkeypatch):
    """No gateway credentials anywhere."""
    monkeypatch.setitem(app.config, 'SSLCOMMERZ_STORE_ID', '')
    monkeypatch.setitem(app.config, 'SSLCOMMERZ_STORE_PASSWORD', '')


@pytest.fixture(scope='function')
def completed_events():
    """Record every checkout.completed emission."""
    seen = []

    def _record(session):
        seen.append(session.transaction_id)

    events.subscribe(events.CHECKOUT_COMPLETED, _record)
    yield seen
    events.unsubscribe(events.CHECKOUT_COMPLETED, _record)


@pytest.fixture
def admin_headers():
    return {'Authorization': f'Bearer {ADMIN_KEY}'}


def checkout_payload(**overrides) -> dict:
    """A valid init request for a 500.00 monthly plan."""
    payload = {
        'plan_id': 'pro',
        'plan_name': 'Pro',
        'plan_price': '500.00',
        'billing_cycle_months': 1,
        'merchant_name': 'Acme Traders',
        'merchant_email': 'owner@acme.test',
        'merchant_phone': '01700000000',
        'custom_subdomain': 'acme',
        'customer_name': 'Rahim Uddin',
        'customer_email': 'rahim@acme.test',
        'customer_phone': '01700000001',
    }
    payload.update(overrides)
    return payload


def init_result(session_key='sess_abc') -> InitResult:
    return InitResult(
        status='SUCCESS',
        gateway_page_url=f'https://sandbox.sslcommerz.com/EasyCheckOut/{session_key}',
        session_key=session_key,
        raw={},
    )


def verification(tran_id, *, status='VALIDATED', amount='500.00', val_id='v1', card_type='VISA') -> VerificationResult:
    return VerificationResult(
        status=status,
        tran_id=tran_id,
        val_id=val_id,
        amount=amount,
        store_amount=amount,
        currency='BDT',
        card_type=card_type,
        bank_transaction_id='BANK123',
        risk_level='0',
        risk_title='Safe',
        raw={},
    )


def http_response(payload, status_code=200) -> MagicMock:
    """Stand-in for httpx.Response."""
    response = MagicMock()
    response.status_code = status_code
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response
