import os

# Config is read at import time
os.environ['TESTING'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['SECRET_KEY'] = 'test-secret'
os.environ['APP_BASE_URL'] = 'https://fundraising.test'
os.environ['TWILIO_ACCOUNT_SID'] = 'ACtest'
os.environ['TWILIO_AUTH_TOKEN'] = 'test_token'
os.environ['TWILIO_FROM_NUMBER'] = '+441234567890'
os.environ.pop('ADMIN_NOTIFY_PHONE', None)

import pytest
from fundraising.app import app
from fundraising.auth import hash_password
from fundraising.floor_grid import FloorGridAllocator
from fundraising.models import (
    db, AdminUser, DonationPackage, Donor, SMSProvider, SMSSetting, SMSTemplate
)
from fundraising.rate_limiter import api_limiter, limiter

app.config.update({
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
})
limiter.enabled = False


@pytest.fixture(autouse=True)
def reset_sms_limiter():
    api_limiter.configure(1000, 10000)
    api_limiter.reset()
    yield
    api_limiter.reset()


@pytest.fixture(scope="function")
def db_session():
    """Fresh tables for each test."""
    with app.app_context():
        db.create_all()
        yield db.session
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope="function")
def client(db_session):
    """Create a test client for the Flask application."""
    with app.test_client() as client:
        yield client


@pytest.fixture
def donor(db_session):
    donor = Donor(
        name='Abebe Kebede',
        phone='07700900123',
        preferred_language='en',
        total_pledged=400.0,
        total_paid=100.0,
        balance=300.0,
        payment_status='paying',
        sms_opt_in=True
    )
    db_session.add(donor)
    db_session.commit()
    return donor


@pytest.fixture
def admin_user(db_session):
    user = AdminUser(
        name='Office Admin',
        email='admin@church.test',
        password_hash=hash_password('secret123'),
        role='admin'
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def packages(db_session):
    rows = [
        DonationPackage(label='1 m²', sqm_meters=1.0, price=400.0, sort_order=1),
        DonationPackage(label='½ m²', sqm_meters=0.5, price=200.0, sort_order=2),
        DonationPackage(label='¼ m²', sqm_meters=0.25, price=100.0, sort_order=3),
        DonationPackage(label='Custom', sqm_meters=None, price=0, sort_order=4),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture
def sms_provider(db_session):
    provider = SMSProvider(
        name='voodoosms',
        display_name='VoodooSMS',
        api_key='uid',
        api_secret='pass',
        sender_id='Church',
        is_active=True,
        is_default=True,
        cost_per_sms_pence=3.5
    )
    db_session.add(provider)
    db_session.commit()
    return provider


@pytest.fixture
def sms_settings(db_session):
    """SMS on, no quiet hours."""
    for key, value in {
        'sms_enabled': '1',
        'sms_quiet_hours_start': '00:00',
        'sms_quiet_hours_end': '00:00',
        'sms_daily_limit': '100',
    }.items():
        db_session.add(SMSSetting(setting_key=key, setting_value=value))
    db_session.commit()


@pytest.fixture
def templates(db_session):
    rows = [
        SMSTemplate(template_key='payment_reminder_3day',
                    message_en='Dear {name}, £{amount} is due on {due_date}. {portal_link}',
                    message_am='ውድ {name}, £{amount} {due_date}'),
        SMSTemplate(template_key='payment_reminder_dueday',
                    message_en='Dear {name}, £{amount} is due today. {portal_link}'),
        SMSTemplate(template_key='payment_overdue_7day',
                    message_en='Dear {name}, £{amount} due {due_date} is overdue. {portal_link}'),
        SMSTemplate(template_key='payment_confirmed',
                    message_en='Dear {name}, we received £{amount}. Thank you!'),
        SMSTemplate(template_key='pledge_approved',
                    message_en='Dear {name}, your pledge of £{amount} is approved.'),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {row.template_key: row for row in rows}


def _login_admin(client, user, csrf='test-csrf'):
    with client.session_transaction() as sess:
        sess['admin_id'] = user.id
        sess['admin_role'] = user.role
        sess['csrf_token'] = csrf
    return {'X-CSRF-Token': csrf}


def _login_donor(client, donor, csrf='test-csrf'):
    with client.session_transaction() as sess:
        sess['donor_id'] = donor.id
        sess['csrf_token'] = csrf
    return {'X-CSRF-Token': csrf}


@pytest.fixture
def admin_headers(client, admin_user):
    """Log the test client in as an admin; returns headers carrying the CSRF token."""
    return _login_admin(client, admin_user)


@pytest.fixture
def donor_headers(client, donor):
    return _login_donor(client, donor)


@pytest.fixture
def floor_grid(db_session):
    """A two-rectangle floor of 10 cells: A-1..A-8 fill before B-1..B-2."""
    allocator = FloorGridAllocator(db_session)
    allocator.populate({'A': {'cols': (1, 4), 'rows': (1, 2)}, 'B': {'cols': (5, 5), 'rows': (1, 2)}})
    return allocator
