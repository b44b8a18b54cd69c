import os

# Must be set before config.py is imported
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['SCHEDULER_ENABLED'] = 'False'
os.environ['MAIL_SUPPRESS_SEND'] = 'True'
os.environ['MAIL_USERNAME'] = 'noreply@ministryshare.test'
os.environ['SECRET_KEY'] = 'test-secret'

import pytest
from werkzeug.security import generate_password_hash
from app import app as flask_app
from models import db, Church, User, Resource, Tag, get_site_settings
from email_service import mail

PASSWORD = 'secret123'


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def outbox(app):
    with mail.record_messages() as messages:
        yield messages


@pytest.fixture
def email_on(app):
    settings = get_site_settings()
    settings.email_notifications = True
    db.session.commit()
    return settings


@pytest.fixture
def make_church(app):
    counter = {'n': 0}

    def _make(name=None, **kwargs):
        counter['n'] += 1
        kwargs.setdefault('is_active', True)
        kwargs.setdefault('registration_status', 'APPROVED')
        kwargs.setdefault('email', f"church{counter['n']}@example.org")
        church = Church(name=name or f"Church {counter['n']}", **kwargs)
        db.session.add(church)
        db.session.commit()
        return church
    return _make


@pytest.fixture
def make_user(app):
    def _make(username, church=None, role='EDITOR', password=PASSWORD, **kwargs):
        kwargs.setdefault('display_name', username.title())
        kwargs.setdefault('is_active', True)
        kwargs.setdefault('email_verified', True)
        user = User(
            username=username,
            password_hash=generate_password_hash(password),
            role=role,
            church_id=church.id if church else None,
            **kwargs,
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_resource(app):
    def _make(church, title='The Faith We Sing', category='MUSIC', **kwargs):
        resource = Resource(church_id=church.id, title=title, category=category, **kwargs)
        db.session.add(resource)
        db.session.commit()
        return resource
    return _make


@pytest.fixture
def make_tag(app):
    def _make(name, category='BOTH'):
        tag = Tag(name=name, category=category)
        db.session.add(tag)
        db.session.commit()
        return tag
    return _make


@pytest.fixture
def login(client):
    def _login(username, password=PASSWORD):
        client.post('/auth/logout')
        response = client.post('/auth/login', json={'username': username, 'password': password})
        assert response.status_code == 200, response.get_json()
        return response
    return _login


@pytest.fixture
def two_churches(make_church, make_user):
    """Lender (owns resources) and borrower, one editor each."""
    lender = make_church('First Methodist')
    borrower = make_church('Grace Chapel')
    lender_user = make_user('lender', lender)
    borrower_user = make_user('borrower', borrower)
    return lender, borrower, lender_user, borrower_user
