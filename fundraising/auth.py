import functools
import hmac
import logging
import secrets
from datetime import datetime
from typing import Optional

from flask import jsonify, request, session
from werkzeug.security import check_password_hash, generate_password_hash

from .models import AdminUser

logger = logging.getLogger(__name__)

CSRF_SESSION_KEY = 'csrf_token'


def generate_csrf_token() -> str:
    token = session.get(CSRF_SESSION_KEY)
    if not token:
        token = secrets.token_hex(32)
        session[CSRF_SESSION_KEY] = token
    return token


def _submitted_csrf_token() -> str:
    token = request.headers.get('X-CSRF-Token') or request.form.get('csrf_token')
    if not token and request.is_json:
        token = (request.get_json(silent=True) or {}).get('csrf_token')
    return token or ''


def csrf_protect(f):
    """Reject state-changing requests whose CSRF token does not match the session."""
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        expected = session.get(CSRF_SESSION_KEY)
        if not expected or not hmac.compare_digest(expected, _submitted_csrf_token()):
            logger.warning(f"CSRF check failed for {request.path}")
            return jsonify({'error': 'Invalid CSRF token'}), 403
        return f(*args, **kwargs)
    return decorated_function


def login_donor(donor) -> None:
    session.clear()
    session['donor_id'] = donor.id
    generate_csrf_token()


def current_donor_id() -> Optional[int]:
    return session.get('donor_id')


def donor_required(f):
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_donor_id():
            return jsonify({'error': 'Login required'}), 401
        return f(*args, **kwargs)
    return decorated_function


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def authenticate_admin(db_session, email: str, password: str) -> Optional[AdminUser]:
    user = db_session.query(AdminUser).filter_by(email=(email or '').strip().lower(), is_active=True).first()
    if user is None or not check_password_hash(user.password_hash, password or ''):
        logger.warning(f"Failed admin login for {email}")
        return None
    user.last_login_at = datetime.utcnow()
    db_session.commit()
    return user


def login_admin(user: AdminUser) -> None:
    session.clear()
    session['admin_id'] = user.id
    session['admin_role'] = user.role
    generate_csrf_token()


def current_admin_id() -> Optional[int]:
    return session.get('admin_id')


def admin_required(f):
    """Back-office routes; registrars are not allowed."""
    @functools.wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_admin_id():
            return jsonify({'error': 'Login required'}), 401
        if session.get('admin_role') != 'admin':
            return jsonify({'error': 'Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated_function
