"""routes/main.py

Public read-only endpoints:
 - index: service info
 - churches / church_detail: active, approved churches and their resources
 - tags: tags for a category (plus the ones shared by both)
 - music / study: the catalog pre-filtered by category
"""

from flask import Blueprint, request, jsonify
from models import db, Church, Resource, Tag
from constants import TAG_CATEGORIES
from errors import NotFoundError, ValidationError
from locale_utils import get_request_locale
from routes.resources import search_resources

main = Blueprint('main', __name__)


@main.route('/')
def index():
    return jsonify({'success': True, 'name': 'MinistryShare Austin'})


@main.route('/churches')
def churches():
    locale = get_request_locale()
    rows = Church.query.filter_by(is_active=True, registration_status='APPROVED') \
        .order_by(Church.name.asc()).all()
    return jsonify({'churches': [c.to_dict(locale, counts=True) for c in rows]})


@main.route('/churches/<int:church_id>')
def church_detail(church_id):
    church = db.session.get(Church, church_id)
    if church is None:
        raise NotFoundError('Church not found')

    locale = get_request_locale()
    data = church.to_dict(locale)
    data['resources'] = [
        r.to_dict(locale)
        for r in church.resources.order_by(Resource.created_at.desc(), Resource.id.desc()).all()
    ]
    return jsonify(data)


@main.route('/tags')
def tags():
    """Tags usable for ?category= (that category plus BOTH), by name."""
    category = (request.args.get('category') or '').upper()
    query = Tag.query
    if category:
        if category not in TAG_CATEGORIES:
            raise ValidationError('Invalid category.')
        query = query.filter(Tag.category.in_({category, 'BOTH'}))
    locale = get_request_locale()
    return jsonify({'tags': [t.to_dict(locale) for t in query.order_by(Tag.name.asc()).all()]})


@main.route('/music')
def music():
    return jsonify(search_resources(category='MUSIC'))


@main.route('/study')
def study():
    return jsonify(search_resources(category='STUDY'))
