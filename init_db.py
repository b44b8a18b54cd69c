"""init_db.py

One-shot setup: create the tables, the settings row and (optionally) the first
admin account from BOOTSTRAP_ADMIN_USERNAME / BOOTSTRAP_ADMIN_PASSWORD.

    python init_db.py
"""

from werkzeug.security import generate_password_hash
from config import app
from models import db, User, get_site_settings


def bootstrap_admin(username, password):
    """Create an ADMIN user unless the username exists. Returns True when created."""
    if not username or not password:
        return False
    if User.query.filter_by(username=username).first():
        return False
    db.session.add(User(
        username=username,
        display_name='Administrator',
        password_hash=generate_password_hash(password),
        role='ADMIN',
        is_active=True,
    ))
    db.session.commit()
    return True


def init_db():
    print("Starting database initialization...")
    with app.app_context():
        print("Creating database tables...")
        db.create_all()
        get_site_settings()
        print("Tables created.")

        username = app.config.get('BOOTSTRAP_ADMIN_USERNAME')
        if bootstrap_admin(username, app.config.get('BOOTSTRAP_ADMIN_PASSWORD')):
            print(f"Admin account '{username}' created.")
        else:
            print("No admin account created (already exists or not configured).")


if __name__ == "__main__":
    init_db()
