"""decorators.py

Shared decorators for the JSON routes.

login_required: a logged-in, active user must be in the session, else 401.
admin_required: same, and the user must have the ADMIN role, else 403.

Views read the logged-in user through current_user().
"""

from functools import wraps
from flask import session, jsonify
from models import db, User


def current_user():
    """Return the active user of this session, or None."""
    user_id = session.get('user_id')
    if not user_id:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if current_user() is None:
            return jsonify({'success': False, 'error': 'UNAUTHORIZED', 'message': 'Please log in.'}), 401
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    """Route guard for district administrators."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user = current_user()
        if user is None:
            return jsonify({'success': False, 'error': 'UNAUTHORIZED', 'message': 'Please log in.'}), 401
        if not user.is_admin:
            return jsonify({'success': False, 'error': 'FORBIDDEN', 'message': 'Admins only.'}), 403
        return f(*args, **kwargs)
    return decorated_function
