"""models.py

SQLAlchemy models for the church resource-sharing application:
 - Church: a congregation that owns resources (bilingual name, registration status).
 - User: an EDITOR scoped to one church or a district ADMIN.
 - Resource: a lendable item (MUSIC / STUDY) owned by one church.
 - Tag / ResourceTag: shared labels and the resource <-> tag join table.
 - LoanRequest: a church asking to borrow another church's resource.
 - Loan: created only when a LoanRequest is approved.
 - ActivityLog: append-only audit trail.
 - SiteSettings: singleton row (id=1) holding the email notification switch.

Status fields are plain strings; the allowed values live in constants.py.
"""

from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
from locale_utils import localized_field

db = SQLAlchemy()


def _iso(value):
    return value.isoformat() if value else None


class Church(db.Model):
    """Model Church

    registration_status: PENDING (self-registered) -> APPROVED / REJECTED by an admin.
    is_active toggles visibility without deleting anything.
    """
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    name_es = db.Column(db.String(200), nullable=True)
    address = db.Column(db.String(300), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    state = db.Column(db.String(2), nullable=False, default='TX')
    zip = db.Column(db.String(10), nullable=True)
    phone = db.Column(db.String(20), nullable=True)
    email = db.Column(db.String(200), nullable=True)
    pastor = db.Column(db.String(200), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    registration_status = db.Column(db.String(20), nullable=False, default='APPROVED', index=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now)

    users = db.relationship('User', backref='church', lazy='dynamic')
    resources = db.relationship('Resource', backref='church', lazy='dynamic',
                                cascade='all, delete-orphan')

    def to_dict(self, locale='en', counts=False):
        data = {
            'id': self.id,
            'name': self.name,
            'name_es': self.name_es,
            'display_name': localized_field(locale, self.name, self.name_es),
            'address': self.address,
            'city': self.city,
            'state': self.state,
            'zip': self.zip,
            'phone': self.phone,
            'email': self.email,
            'pastor': self.pastor,
            'notes': self.notes,
            'is_active': self.is_active,
            'registration_status': self.registration_status,
            'rejection_reason': self.rejection_reason,
            'created_at': _iso(self.created_at),
        }
        if counts:
            data['resource_count'] = self.resources.count()
            data['user_count'] = self.users.count()
        return data

    def summary(self, locale='en'):
        return {
            'id': self.id,
            'name': self.name,
            'name_es': self.name_es,
            'display_name': localized_field(locale, self.name, self.name_es),
            'city': self.city,
        }


class User(db.Model):
    """Model User

    - role: EDITOR (church_id required) or ADMIN (district wide)
    - is_active: False until the email is verified, or when an admin deactivates the account
    - verification_token / verification_expiry: pending email verification
    """
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False)
    display_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='EDITOR')
    church_id = db.Column(db.Integer, db.ForeignKey('church.id'), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    email_verified = db.Column(db.Boolean, nullable=False, default=False)
    verification_token = db.Column(db.String(64), unique=True, nullable=True)
    verification_expiry = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now)

    @property
    def is_admin(self):
        return self.role == 'ADMIN'

    def to_dict(self, locale='en'):
        return {
            'id': self.id,
            'username': self.username,
            'display_name': self.display_name,
            'email': self.email,
            'role': self.role,
            'is_active': self.is_active,
            'email_verified': self.email_verified,
            'church_id': self.church_id,
            'church': self.church.summary(locale) if self.church else None,
            'created_at': _iso(self.created_at),
        }


class ResourceTag(db.Model):
    """Join table Resource <-> Tag."""
    resource_id = db.Column(db.Integer, db.ForeignKey('resource.id', ondelete='CASCADE'), primary_key=True)
    tag_id = db.Column(db.Integer, db.ForeignKey('tag.id', ondelete='CASCADE'), primary_key=True)

    tag = db.relationship('Tag')


class Tag(db.Model):
    """Model Tag: shared across churches. Names are matched case-insensitively by the import."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, index=True)
    name_es = db.Column(db.String(100), nullable=True)
    category = db.Column(db.String(10), nullable=False, default='BOTH')

    def to_dict(self, locale='en'):
        return {
            'id': self.id,
            'name': self.name,
            'name_es': self.name_es,
            'display_name': localized_field(locale, self.name, self.name_es),
            'category': self.category,
        }


class Resource(db.Model):
    """Model Resource

    availability_status is driven by the loan workflow:
    - AVAILABLE / UNAVAILABLE: no open loan
    - ON_LOAN: exactly one ACTIVE or OVERDUE loan
    """
    id = db.Column(db.Integer, primary_key=True)
    church_id = db.Column(db.Integer, db.ForeignKey('church.id'), nullable=False, index=True)
    category = db.Column(db.String(10), nullable=False, index=True)
    subcategory = db.Column(db.String(30), nullable=True)
    title = db.Column(db.String(500), nullable=False)
    title_es = db.Column(db.String(500), nullable=True)
    author_composer = db.Column(db.String(300), nullable=True)
    publisher = db.Column(db.String(300), nullable=True)
    description = db.Column(db.Text, nullable=True)
    description_es = db.Column(db.Text, nullable=True)
    format = db.Column(db.String(20), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    max_loan_weeks = db.Column(db.Integer, nullable=True)
    availability_status = db.Column(db.String(20), nullable=False, default='AVAILABLE', index=True)
    availability_notes = db.Column(db.String(500), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    tag_links = db.relationship('ResourceTag', backref='resource', lazy='select',
                                cascade='all, delete-orphan')
    loan_requests = db.relationship('LoanRequest', backref='resource', lazy='dynamic',
                                    cascade='all, delete-orphan')
    loans = db.relationship('Loan', backref='resource', lazy='dynamic',
                            cascade='all, delete-orphan')

    @property
    def tags(self):
        return [link.tag for link in self.tag_links]

    def open_loan(self):
        return self.loans.filter(Loan.status.in_(('ACTIVE', 'OVERDUE'))).first()

    def to_dict(self, locale='en', detail=False):
        data = {
            'id': self.id,
            'church_id': self.church_id,
            'church': self.church.summary(locale) if self.church else None,
            'category': self.category,
            'subcategory': self.subcategory,
            'title': self.title,
            'title_es': self.title_es,
            'display_title': localized_field(locale, self.title, self.title_es),
            'author_composer': self.author_composer,
            'publisher': self.publisher,
            'description': self.description,
            'description_es': self.description_es,
            'display_description': localized_field(locale, self.description, self.description_es),
            'format': self.format,
            'quantity': self.quantity,
            'max_loan_weeks': self.max_loan_weeks,
            'availability_status': self.availability_status,
            'availability_notes': self.availability_notes,
            'tags': [tag.to_dict(locale) for tag in self.tags],
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if detail:
            loan = self.open_loan()
            data['current_loan'] = loan.to_dict(locale) if loan else None
        return data


class LoanRequest(db.Model):
    """Model LoanRequest: PENDING -> APPROVED / DENIED / CANCELLED (terminal)."""
    id = db.Column(db.Integer, primary_key=True)
    resource_id = db.Column(db.Integer, db.ForeignKey('resource.id'), nullable=False, index=True)
    requesting_church_id = db.Column(db.Integer, db.ForeignKey('church.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='PENDING', index=True)
    needed_by_date = db.Column(db.DateTime, nullable=True)
    return_by_date = db.Column(db.DateTime, nullable=True)
    message = db.Column(db.Text, nullable=True)
    response_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    requesting_church = db.relationship('Church', foreign_keys=[requesting_church_id])

    def to_dict(self, locale='en'):
        resource = self.resource
        return {
            'id': self.id,
            'resource_id': self.resource_id,
            'resource': {
                'id': resource.id,
                'title': resource.title,
                'display_title': localized_field(locale, resource.title, resource.title_es),
                'church_id': resource.church_id,
                'church': resource.church.summary(locale),
            } if resource else None,
            'requesting_church_id': self.requesting_church_id,
            'requesting_church': self.requesting_church.summary(locale) if self.requesting_church else None,
            'status': self.status,
            'needed_by_date': _iso(self.needed_by_date),
            'return_by_date': _iso(self.return_by_date),
            'message': self.message,
            'response_message': self.response_message,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Loan(db.Model):
    """Model Loan: ACTIVE -> RETURNED / OVERDUE / LOST; OVERDUE -> RETURNED / LOST."""
    id = db.Column(db.Integer, primary_key=True)
    resource_id = db.Column(db.Integer, db.ForeignKey('resource.id'), nullable=False, index=True)
    loan_request_id = db.Column(db.Integer, db.ForeignKey('loan_request.id'), nullable=True)
    lending_church_id = db.Column(db.Integer, db.ForeignKey('church.id'), nullable=False, index=True)
    borrowing_church_id = db.Column(db.Integer, db.ForeignKey('church.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default='ACTIVE', index=True)
    start_date = db.Column(db.DateTime, default=datetime.now)
    due_date = db.Column(db.DateTime, nullable=True)
    return_date = db.Column(db.DateTime, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now)

    loan_request = db.relationship('LoanRequest', backref=db.backref('loan', uselist=False))
    lending_church = db.relationship('Church', foreign_keys=[lending_church_id])
    borrowing_church = db.relationship('Church', foreign_keys=[borrowing_church_id])

    def to_dict(self, locale='en'):
        resource = self.resource
        return {
            'id': self.id,
            'resource_id': self.resource_id,
            'resource': {
                'id': resource.id,
                'title': resource.title,
                'display_title': localized_field(locale, resource.title, resource.title_es),
            } if resource else None,
            'loan_request_id': self.loan_request_id,
            'lending_church_id': self.lending_church_id,
            'lending_church': self.lending_church.summary(locale) if self.lending_church else None,
            'borrowing_church_id': self.borrowing_church_id,
            'borrowing_church': self.borrowing_church.summary(locale) if self.borrowing_church else None,
            'status': self.status,
            'start_date': _iso(self.start_date),
            'due_date': _iso(self.due_date),
            'return_date': _iso(self.return_date),
            'notes': self.notes,
            'created_at': _iso(self.created_at),
        }


class ActivityLog(db.Model):
    """Model ActivityLog: append-only. Rows are inserted and never updated or deleted."""
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    action = db.Column(db.String(50), nullable=False, index=True)
    entity_type = db.Column(db.String(50), nullable=False, index=True)
    entity_id = db.Column(db.String(64), nullable=False)
    details = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now, index=True)

    user = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user': {
                'id': self.user.id,
                'display_name': self.user.display_name,
                'role': self.user.role,
            } if self.user else None,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'details': self.details,
            'created_at': _iso(self.created_at),
        }


class SiteSettings(db.Model):
    """Singleton row (id=1) gating notification emails."""
    id = db.Column(db.Integer, primary_key=True)
    email_notifications = db.Column(db.Boolean, nullable=False, default=False)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    def to_dict(self):
        return {
            'email_notifications': self.email_notifications,
            'updated_at': _iso(self.updated_at),
        }


def get_site_settings():
    """Return the singleton SiteSettings row, creating it on first use."""
    settings = db.session.get(SiteSettings, 1)
    if settings is None:
        settings = SiteSettings(id=1, email_notifications=False)
        db.session.add(settings)
        db.session.commit()
    return settings
