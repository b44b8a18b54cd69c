"""routes/admin.py

District administration (JSON). Every route is guarded by `@admin_required`.
 - stats: headline counts
 - settings: the email notification switch
 - churches: list / create / edit, and approve or reject self-registrations
 - users: list / create / edit accounts
"""

import logging
from flask import Blueprint, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash
from models import db, Church, User, Resource, Loan, LoanRequest, get_site_settings
from constants import ROLES, OPEN_LOAN_STATUSES
from decorators import admin_required, current_user
from errors import ValidationError, NotFoundError, ConflictError
from locale_utils import get_request_locale
from request_utils import get_json_body, required_str, optional_str, optional_int, validate_email, USERNAME_RE
from activity_service import record_activity
from email_service import notify_church_approved, notify_church_rejected
from tasks import run_detached

logger = logging.getLogger(__name__)

admin = Blueprint('admin_bp', __name__)

CHURCH_FIELDS = {
    'name': 200,
    'name_es': 200,
    'address': 300,
    'city': 100,
    'state': 2,
    'zip': 10,
    'phone': 20,
    'pastor': 200,
    'notes': 1000,
}


def _commit(what):
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Admin %s failed", what)
        raise


def _get_church(church_id):
    church = db.session.get(Church, church_id)
    if church is None:
        raise NotFoundError('Church not found')
    return church


def _church_email(body):
    email = optional_str(body, 'email', 200)
    return validate_email(email) if email else None


@admin.route('/stats')
@admin_required
def stats():
    return jsonify({
        'churches': Church.query.count(),
        'users': User.query.count(),
        'resources': Resource.query.count(),
        'active_loans': Loan.query.filter(Loan.status.in_(OPEN_LOAN_STATUSES)).count(),
        'pending_requests': LoanRequest.query.filter_by(status='PENDING').count(),
        'pending_registrations': Church.query.filter_by(registration_status='PENDING').count(),
    })


@admin.route('/settings', methods=['GET'])
@admin_required
def get_settings():
    return jsonify(get_site_settings().to_dict())


@admin.route('/settings', methods=['PUT'])
@admin_required
def update_settings():
    body = get_json_body()
    settings = get_site_settings()
    settings.email_notifications = bool(body.get('email_notifications'))
    _commit('settings update')

    state = 'enabled' if settings.email_notifications else 'disabled'
    record_activity(current_user().id, 'UPDATE_SETTINGS', 'SiteSettings', settings.id,
                    f'Email notifications {state}')
    return jsonify(settings.to_dict())


# --- Churches ---

@admin.route('/churches', methods=['GET'])
@admin_required
def list_churches():
    locale = get_request_locale()
    churches = Church.query.order_by(Church.name.asc()).all()
    return jsonify({'churches': [c.to_dict(locale, counts=True) for c in churches]})


@admin.route('/churches', methods=['POST'])
@admin_required
def create_church():
    body = get_json_body()
    values = {key: optional_str(body, key, limit) for key, limit in CHURCH_FIELDS.items()}
    values['name'] = required_str(body, 'name', 200)
    values['state'] = values['state'] or 'TX'

    church = Church(email=_church_email(body), is_active=True, registration_status='APPROVED', **values)
    db.session.add(church)
    _commit('church create')

    record_activity(current_user().id, 'CREATE_CHURCH', 'Church', church.id,
                    f'Created church "{church.name}"')
    return jsonify(church.to_dict(get_request_locale(), counts=True)), 201


@admin.route('/churches/<int:church_id>', methods=['PUT'])
@admin_required
def update_church(church_id):
    church = _get_church(church_id)
    body = get_json_body()

    for key, limit in CHURCH_FIELDS.items():
        if key in body:
            setattr(church, key, optional_str(body, key, limit))
    if 'name' in body:
        church.name = required_str(body, 'name', 200)
    if 'state' in body and not church.state:
        church.state = 'TX'
    if 'email' in body:
        church.email = _church_email(body)
    if 'is_active' in body:
        if not isinstance(body['is_active'], bool):
            raise ValidationError('is_active must be true or false.')
        church.is_active = body['is_active']
    _commit('church update')

    record_activity(current_user().id, 'UPDATE_CHURCH', 'Church', church.id,
                    f'Updated church "{church.name}"')
    return jsonify(church.to_dict(get_request_locale(), counts=True))


@admin.route('/churches/<int:church_id>/approve', methods=['POST'])
@admin_required
def decide_church(church_id):
    """Approve or reject a PENDING self-registered church."""
    body = get_json_body()
    action = (body.get('action') or '').upper()
    if action not in ('APPROVE', 'REJECT'):
        raise ValidationError('Action must be APPROVE or REJECT')
    reason = optional_str(body, 'rejection_reason', 1000)

    church = _get_church(church_id)
    if church.registration_status != 'PENDING':
        raise ConflictError('Church is not pending approval', code='NOT_PENDING')

    user = current_user()
    if action == 'APPROVE':
        church.registration_status = 'APPROVED'
        church.is_active = True
        _commit('church approval')
        record_activity(user.id, 'APPROVE_CHURCH', 'Church', church.id,
                        f'Approved church registration: {church.name}')
        run_detached(notify_church_approved, church.id)
    else:
        church.registration_status = 'REJECTED'
        church.rejection_reason = reason
        _commit('church rejection')
        details = f'Rejected church registration: {church.name}'
        if reason:
            details += f' ({reason})'
        record_activity(user.id, 'REJECT_CHURCH', 'Church', church.id, details)
        run_detached(notify_church_rejected, church.id, reason)

    return jsonify({'success': True, 'action': action})


@admin.route('/registrations')
@admin_required
def registrations():
    """Pending church registrations with the account that submitted each."""
    locale = get_request_locale()
    pending = Church.query.filter_by(registration_status='PENDING') \
        .order_by(Church.created_at.asc()).all()
    items = []
    for church in pending:
        data = church.to_dict(locale)
        data['users'] = [u.to_dict(locale) for u in church.users.order_by(User.created_at.asc()).all()]
        items.append(data)
    return jsonify({'churches': items})


# --- Users ---

@admin.route('/users', methods=['GET'])
@admin_required
def list_users():
    locale = get_request_locale()
    users = User.query.order_by(User.display_name.asc()).all()
    return jsonify({'users': [u.to_dict(locale) for u in users]})


def _church_for_role(role, church_id):
    if role == 'EDITOR' and not church_id:
        raise ValidationError('Editors must be assigned to a church.', code='CHURCH_REQUIRED')
    if church_id:
        _get_church(church_id)


@admin.route('/users', methods=['POST'])
@admin_required
def create_user():
    body = get_json_body()
    username = required_str(body, 'username', 50, min_length=3)
    if not USERNAME_RE.match(username) or username != username.lower():
        raise ValidationError('Username must be lowercase letters, numbers, and underscores only')
    password = body.get('password') or ''
    if not isinstance(password, str) or not 6 <= len(password) <= 100:
        raise ValidationError('password must be 6 to 100 characters.')
    display_name = required_str(body, 'display_name', 100)
    role = (body.get('role') or '').upper()
    if role not in ROLES:
        raise ValidationError('role must be EDITOR or ADMIN.')
    church_id = optional_int(body, 'church_id', minimum=1)
    _church_for_role(role, church_id)

    if User.query.filter_by(username=username).first():
        raise ConflictError('Username already exists.', code='USERNAME_TAKEN')

    new_user = User(
        username=username,
        password_hash=generate_password_hash(password),
        display_name=display_name,
        role=role,
        church_id=church_id,
        is_active=True,
    )
    db.session.add(new_user)
    _commit('user create')

    record_activity(current_user().id, 'CREATE_USER', 'User', new_user.id,
                    f'Created user "{new_user.display_name}"')
    return jsonify(new_user.to_dict(get_request_locale())), 201


@admin.route('/users/<int:user_id>', methods=['PUT'])
@admin_required
def update_user(user_id):
    actor = current_user()
    body = get_json_body()

    if body.get('is_active') is False and user_id == actor.id:
        raise ValidationError('You cannot deactivate yourself.', code='SELF_DEACTIVATE')

    target = db.session.get(User, user_id)
    if target is None:
        raise NotFoundError('User not found')

    role = (body.get('role') or target.role).upper()
    if role not in ROLES:
        raise ValidationError('role must be EDITOR or ADMIN.')
    church_id = optional_int(body, 'church_id', minimum=1) if 'church_id' in body else target.church_id
    _church_for_role(role, church_id)

    if 'display_name' in body:
        target.display_name = required_str(body, 'display_name', 100)
    if 'is_active' in body:
        if not isinstance(body['is_active'], bool):
            raise ValidationError('is_active must be true or false.')
        target.is_active = body['is_active']
    if body.get('password'):
        password = body['password']
        if not isinstance(password, str) or not 6 <= len(password) <= 100:
            raise ValidationError('password must be 6 to 100 characters.')
        target.password_hash = generate_password_hash(password)
    target.role = role
    target.church_id = church_id
    _commit('user update')

    record_activity(actor.id, 'UPDATE_USER', 'User', target.id, f'Updated user "{target.display_name}"')
    return jsonify(target.to_dict(get_request_locale()))
