"""routes/auth.py

Authentication and self-service registration:
 - login / logout / me: session based (user_id, role, church_id in the Flask session)
 - register: a new editor joins an existing approved church
 - register_church: a new church (PENDING) plus its first editor, in one transaction
 - verify_email / resend_verification: email verification tokens

New accounts stay inactive until the email is verified; a church registered
here also needs an admin approval before its users can log in.
"""

import logging
import secrets
from datetime import datetime, timedelta
from flask import Blueprint, jsonify, session, current_app
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash
from models import db, User, Church
from decorators import login_required, current_user
from errors import ValidationError, ConflictError, MinistryShareError
from email_service import send_verification_email, notify_admin_new_registration
from locale_utils import get_request_locale, SUPPORTED_LOCALES
from request_utils import (
    get_json_body, required_str, optional_str, optional_int, validate_email, USERNAME_RE,
)
from activity_service import record_activity
from tasks import run_detached

logger = logging.getLogger(__name__)

auth = Blueprint('auth', __name__)


def generate_verification_token():
    """Return (token, expiry)."""
    hours = current_app.config.get('VERIFICATION_TOKEN_HOURS', 24)
    return secrets.token_hex(32), datetime.now() + timedelta(hours=hours)


def _body_locale(data):
    locale = (data.get('locale') or '').lower()
    return locale if locale in SUPPORTED_LOCALES else get_request_locale()


def _account_fields(data):
    display_name = required_str(data, 'display_name', 100)
    email = validate_email(optional_str(data, 'email', 255))
    username = required_str(data, 'username', 50, min_length=3)
    if not USERNAME_RE.match(username):
        raise ValidationError('username may only contain letters, digits and underscores.')
    password = data.get('password') or ''
    if not isinstance(password, str) or len(password) < 6 or len(password) > 100:
        raise ValidationError('password must be 6 to 100 characters.')
    return display_name, email, username, password


def _check_unique(username, email):
    if User.query.filter_by(username=username).first():
        raise ConflictError('Username already taken', code='USERNAME_TAKEN')
    if User.query.filter_by(email=email).first():
        raise ConflictError('Email already registered', code='EMAIL_TAKEN')


@auth.route('/login', methods=['POST'])
def login():
    data = get_json_body()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    if not username or not password:
        raise ValidationError('Username and password are required')

    user = User.query.filter_by(username=username).first()
    if not user or not check_password_hash(user.password_hash, password):
        return jsonify({'success': False, 'error': 'INVALID_CREDENTIALS', 'message': 'Invalid credentials'}), 401

    if user.email and not user.email_verified:
        return jsonify({
            'success': False,
            'error': 'EMAIL_NOT_VERIFIED',
            'message': 'Please verify your email before logging in.',
        }), 403

    church = user.church
    if church and church.registration_status != 'APPROVED':
        code = 'CHURCH_PENDING' if church.registration_status == 'PENDING' else 'CHURCH_REJECTED'
        return jsonify({
            'success': False,
            'error': code,
            'message': 'Your church registration is still being reviewed.'
            if code == 'CHURCH_PENDING' else 'Your church registration was not approved.',
        }), 403

    if not user.is_active:
        return jsonify({'success': False, 'error': 'INVALID_CREDENTIALS', 'message': 'Invalid credentials'}), 401

    session.clear()
    session.permanent = True
    session['user_id'] = user.id
    session['role'] = user.role
    session['church_id'] = user.church_id
    logger.info("User %s logged in", user.username)

    return jsonify({'success': True, 'user': user.to_dict(get_request_locale())})


@auth.route('/logout', methods=['POST'])
def logout():
    session.clear()
    return jsonify({'success': True})


@auth.route('/me')
@login_required
def me():
    return jsonify({'success': True, 'user': current_user().to_dict(get_request_locale())})


@auth.route('/register', methods=['POST'])
def register():
    """Editor registration for an existing, approved church."""
    data = get_json_body()
    display_name, email, username, password = _account_fields(data)
    church_id = optional_int(data, 'church_id', minimum=1)
    if not church_id:
        raise ValidationError('church_id is required.')

    _check_unique(username, email)

    church = db.session.get(Church, church_id)
    if not church or not church.is_active or church.registration_status != 'APPROVED':
        raise ValidationError('Church not found or not available for registration',
                              code='CHURCH_UNAVAILABLE')

    token, expiry = generate_verification_token()
    user = User(
        display_name=display_name,
        email=email,
        username=username,
        password_hash=generate_password_hash(password),
        church_id=church.id,
        role='EDITOR',
        is_active=False,
        email_verified=False,
        verification_token=token,
        verification_expiry=expiry,
    )
    try:
        db.session.add(user)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Registration of %s failed", username)
        raise

    run_detached(send_verification_email, email, token, _body_locale(data))
    return jsonify({'success': True}), 201


@auth.route('/register/church', methods=['POST'])
def register_church():
    """New church + first editor. The church stays PENDING until an admin decides."""
    data = get_json_body()
    church_name = required_str(data, 'church_name', 200)
    church_email = optional_str(data, 'church_email', 255)
    if church_email:
        church_email = validate_email(church_email, 'church_email')
    display_name, email, username, password = _account_fields(data)

    _check_unique(username, email)

    token, expiry = generate_verification_token()
    try:
        church = Church(
            name=church_name,
            name_es=optional_str(data, 'church_name_es', 200),
            address=optional_str(data, 'address', 300),
            city=optional_str(data, 'city', 100),
            state=optional_str(data, 'state', 2) or 'TX',
            zip=optional_str(data, 'zip', 10),
            phone=optional_str(data, 'phone', 20),
            email=church_email,
            pastor=optional_str(data, 'pastor', 100),
            is_active=False,
            registration_status='PENDING',
        )
        db.session.add(church)
        db.session.flush()

        db.session.add(User(
            display_name=display_name,
            email=email,
            username=username,
            password_hash=generate_password_hash(password),
            church_id=church.id,
            role='EDITOR',
            is_active=False,
            email_verified=False,
            verification_token=token,
            verification_expiry=expiry,
        ))
        db.session.commit()
    except MinistryShareError:
        db.session.rollback()
        raise
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Church registration for %s failed", church_name)
        raise

    run_detached(send_verification_email, email, token, _body_locale(data))
    run_detached(notify_admin_new_registration, church.id)
    return jsonify({'success': True}), 201


@auth.route('/verify-email', methods=['POST'])
def verify_email():
    data = get_json_body()
    token = data.get('token')
    if not token or not isinstance(token, str):
        raise ValidationError('Token is required')

    user = User.query.filter_by(verification_token=token).first()
    if not user:
        raise ValidationError('Invalid or expired token', code='INVALID_TOKEN')

    if user.verification_expiry and user.verification_expiry < datetime.now():
        raise ValidationError('Token has expired', code='TOKEN_EXPIRED')

    church_pending = bool(user.church and user.church.registration_status == 'PENDING')

    if user.email_verified:
        return jsonify({'success': True, 'verified': True, 'already_verified': True,
                        'church_pending': church_pending})

    user.email_verified = True
    user.is_active = True
    user.verification_token = None
    user.verification_expiry = None
    db.session.commit()

    record_activity(user.id, 'VERIFY_EMAIL', 'User', user.id, f'Verified email for {user.username}')
    return jsonify({'success': True, 'verified': True, 'church_pending': church_pending})


@auth.route('/resend-verification', methods=['POST'])
def resend_verification():
    """Issue a new token. The response never tells whether the address exists."""
    data = get_json_body()
    email = data.get('email')
    if not email or not isinstance(email, str):
        raise ValidationError('Email is required')
    email = email.strip().lower()

    user = User.query.filter_by(email=email, email_verified=False).first()
    if not user:
        return jsonify({'success': True})

    # Tokens are issued with a fixed lifetime, so the expiry tells when the last one went out
    if user.verification_expiry:
        config = current_app.config
        issued_at = user.verification_expiry - timedelta(hours=config.get('VERIFICATION_TOKEN_HOURS', 24))
        cooldown = timedelta(minutes=config.get('RESEND_COOLDOWN_MINUTES', 60))
        if datetime.now() - issued_at < cooldown:
            return jsonify({
                'success': False,
                'error': 'RATE_LIMITED',
                'message': 'Please wait before requesting another verification email',
            }), 429

    token, expiry = generate_verification_token()
    user.verification_token = token
    user.verification_expiry = expiry
    db.session.commit()

    run_detached(send_verification_email, user.email, token, _body_locale(data))
    return jsonify({'success': True})
