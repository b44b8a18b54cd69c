"""routes/resources.py

Resource catalog and management (JSON):
 - list_resources: search / filter / sort / paginate the catalog
 - detail: one resource with tags, owning church and its open loan
 - create / update / delete: admin or an editor of the owning church
 - bulk_preview / bulk_import / bulk_template: spreadsheet import

availability_status is only set by hand between AVAILABLE and UNAVAILABLE;
ON_LOAN belongs to the loan workflow in loan_service.py.
"""

import io
import logging
from flask import Blueprint, request, jsonify, Response, send_file
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from models import db, Resource, ResourceTag, Tag, Church
from constants import CATEGORIES, AVAILABILITY_STATUSES
from decorators import login_required, current_user
from errors import ValidationError, NotFoundError, PermissionDenied, ConflictError, ImportFileError
from locale_utils import get_request_locale
from request_utils import get_json_body, int_arg, optional_int
from activity_service import record_activity
from config import allowed_import_file
import bulk_import

logger = logging.getLogger(__name__)

resources = Blueprint('resources', __name__)

TEXT_LIMITS = dict(bulk_import.TEXT_LIMITS, availability_notes=500)
SCALAR_TYPES = (str, int, float, bool)
MANUAL_STATUSES = ('AVAILABLE', 'UNAVAILABLE')
SORT_ORDERS = {
    'title': (Resource.title.asc(),),
    'author': (Resource.author_composer.asc(),),
    'newest': (Resource.created_at.desc(), Resource.id.desc()),
}


def search_resources(category=None):
    """Run the catalog query described by the request's query string."""
    args = request.args
    search = (args.get('search') or '').strip()
    category = category or args.get('category')
    subcategory = args.get('subcategory')
    church_id = int_arg('church_id')
    availability = args.get('availability')
    tag_ids = [int(t) for t in (args.get('tags') or '').split(',') if t.strip().isdigit()]
    sort = args.get('sort') or 'newest'
    page = int_arg('page', 1, minimum=1)
    limit = int_arg('limit', 12, minimum=1, maximum=50)

    query = Resource.query
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            Resource.title.ilike(pattern),
            Resource.title_es.ilike(pattern),
            Resource.author_composer.ilike(pattern),
            Resource.description.ilike(pattern),
            Resource.description_es.ilike(pattern),
        ))
    if category:
        query = query.filter(Resource.category == category.upper())
    if subcategory:
        query = query.filter(Resource.subcategory == subcategory.upper())
    if church_id:
        query = query.filter(Resource.church_id == church_id)
    if availability:
        query = query.filter(Resource.availability_status == availability.upper())
    if tag_ids:
        query = query.filter(Resource.tag_links.any(ResourceTag.tag_id.in_(tag_ids)))

    query = query.order_by(*SORT_ORDERS.get(sort, SORT_ORDERS['newest']))
    paginated = query.paginate(page=page, per_page=limit, error_out=False)

    locale = get_request_locale()
    return {
        'resources': [r.to_dict(locale) for r in paginated.items],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': paginated.total,
            'total_pages': paginated.pages,
        },
    }


def _get_resource(resource_id):
    resource = db.session.get(Resource, resource_id)
    if resource is None:
        raise NotFoundError('Resource not found')
    return resource


def _check_owner(user, resource):
    if not user.is_admin and resource.church_id != user.church_id:
        raise PermissionDenied('You can only manage resources of your own church.')


def _check_text_limits(data):
    for key, limit in TEXT_LIMITS.items():
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            raise ValidationError(f'{key} must be a string.')
        if value and len(value) > limit:
            raise ValidationError(f'{key} must be at most {limit} characters.')


def _validated_fields(values):
    """Run the import row rules over a JSON body. Returns the normalized data dict."""
    row = {key: values.get(key) for key in bulk_import.CSV_COLUMNS if key != 'tags'}
    result = bulk_import.validate_row(row, 1, [])
    if not result['valid']:
        raise ValidationError('Invalid resource fields', details=result['errors'])
    return result['data']


def _json_rows(rows):
    """Rows of a JSON bulk body: objects of scalar cells. tags may also be a list of names."""
    if not isinstance(rows, list) or not rows or not all(isinstance(r, dict) for r in rows):
        raise ValidationError('resources must be a non-empty list of rows.')
    cleaned = []
    for index, row in enumerate(rows, start=1):
        item = {}
        for key, value in row.items():
            if key == 'tags' and isinstance(value, list) and all(isinstance(v, str) for v in value):
                value = ', '.join(value)
            elif value is not None and not isinstance(value, SCALAR_TYPES):
                raise ValidationError(f'Row {index}: {key} must be a single value.')
            item[key] = value
        cleaned.append(item)
    return cleaned


def _parse_tag_ids(value):
    if not isinstance(value, list):
        raise ValidationError('tag_ids must be a list.')
    try:
        tag_ids = list(dict.fromkeys(int(t) for t in value))
    except (TypeError, ValueError):
        raise ValidationError('tag_ids must contain tag ids.')
    if tag_ids and Tag.query.filter(Tag.id.in_(tag_ids)).count() != len(tag_ids):
        raise ValidationError('Unknown tag id.', code='UNKNOWN_TAG')
    return tag_ids


def _apply_fields(resource, data, body):
    resource.category = data['category']
    resource.subcategory = data['subcategory']
    resource.title = data['title']
    resource.title_es = data['title_es']
    resource.author_composer = data['author_composer']
    resource.publisher = data['publisher']
    resource.description = data['description']
    resource.description_es = data['description_es']
    resource.format = data['format']
    resource.quantity = data['quantity']
    resource.max_loan_weeks = data['max_loan_weeks']
    if 'availability_notes' in body:
        resource.availability_notes = (body.get('availability_notes') or '').strip() or None


# --- Catalog ---

@resources.route('', methods=['GET'])
def list_resources():
    return jsonify(search_resources())


@resources.route('/<int:resource_id>', methods=['GET'])
def detail(resource_id):
    resource = _get_resource(resource_id)
    return jsonify(resource.to_dict(get_request_locale(), detail=True))


# --- Management ---

@resources.route('', methods=['POST'])
@login_required
def create():
    user = current_user()
    body = get_json_body()
    _check_text_limits(body)

    if user.is_admin:
        church_id = optional_int(body, 'church_id', minimum=1)
        if not church_id:
            raise ValidationError('Admin must specify a church_id', code='CHURCH_REQUIRED')
        if db.session.get(Church, church_id) is None:
            raise NotFoundError('Church not found')
    else:
        church_id = user.church_id
        if not church_id:
            raise ValidationError('No church associated with user', code='NO_CHURCH')

    data = _validated_fields(body)
    tag_ids = _parse_tag_ids(body.get('tag_ids') or [])

    status = (body.get('availability_status') or 'AVAILABLE').upper()
    if status not in MANUAL_STATUSES:
        raise ValidationError('availability_status must be AVAILABLE or UNAVAILABLE.')

    resource = Resource(church_id=church_id, availability_status=status)
    _apply_fields(resource, data, body)
    try:
        db.session.add(resource)
        db.session.flush()
        for tag_id in tag_ids:
            db.session.add(ResourceTag(resource_id=resource.id, tag_id=tag_id))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Creating resource '%s' failed", data['title'])
        raise

    record_activity(user.id, 'CREATE_RESOURCE', 'Resource', resource.id,
                    f'Created resource "{resource.title}"')
    return jsonify({'success': True, 'resource': resource.to_dict(get_request_locale())}), 201


@resources.route('/<int:resource_id>', methods=['PUT'])
@login_required
def update(resource_id):
    user = current_user()
    resource = _get_resource(resource_id)
    _check_owner(user, resource)

    body = get_json_body()
    _check_text_limits(body)

    current = {
        'category': resource.category,
        'title': resource.title,
        'title_es': resource.title_es,
        'author_composer': resource.author_composer,
        'publisher': resource.publisher,
        'description': resource.description,
        'description_es': resource.description_es,
        'subcategory': resource.subcategory,
        'format': resource.format,
        'quantity': resource.quantity,
        'max_loan_weeks': resource.max_loan_weeks,
    }
    current.update({key: body[key] for key in current if key in body})
    data = _validated_fields(current)

    tag_ids = _parse_tag_ids(body['tag_ids']) if 'tag_ids' in body else None

    if 'availability_status' in body:
        status = (body.get('availability_status') or '').upper()
        if status not in AVAILABILITY_STATUSES:
            raise ValidationError('Invalid availability_status.')
        if status != resource.availability_status:
            if resource.availability_status == 'ON_LOAN' or resource.open_loan() is not None:
                raise ConflictError('Resource is on loan; return it first.', code='ON_LOAN')
            if status not in MANUAL_STATUSES:
                raise ValidationError('ON_LOAN is set by approving a loan request.')
            resource.availability_status = status

    _apply_fields(resource, data, body)
    if tag_ids is not None:
        kept = [link for link in resource.tag_links if link.tag_id in tag_ids]
        kept_ids = {link.tag_id for link in kept}
        resource.tag_links = kept + [ResourceTag(tag_id=t) for t in tag_ids if t not in kept_ids]
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Updating resource %s failed", resource_id)
        raise

    record_activity(user.id, 'UPDATE_RESOURCE', 'Resource', resource.id,
                    f'Updated resource "{resource.title}"')
    return jsonify({'success': True, 'resource': resource.to_dict(get_request_locale())})


@resources.route('/<int:resource_id>', methods=['DELETE'])
@login_required
def delete(resource_id):
    user = current_user()
    resource = _get_resource(resource_id)
    _check_owner(user, resource)

    if resource.open_loan() is not None:
        raise ConflictError('Resource is currently on loan and cannot be deleted.', code='ON_LOAN')

    title = resource.title
    try:
        db.session.delete(resource)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Deleting resource %s failed", resource_id)
        raise

    record_activity(user.id, 'DELETE_RESOURCE', 'Resource', resource_id, f'Deleted resource "{title}"')
    return jsonify({'success': True})


# --- Bulk import ---

def _uploaded_rows():
    file = request.files.get('file')
    if not file or not file.filename:
        raise ValidationError('No file uploaded.')
    if not allowed_import_file(file.filename):
        raise ImportFileError('Unsupported file type. Please upload a .csv or .xlsx file.')
    return bulk_import.parse_upload(file.filename, file.stream)


@resources.route('/bulk/preview', methods=['POST'])
@login_required
def bulk_preview():
    """Parse and validate an upload without saving anything."""
    rows = _uploaded_rows()
    validated = bulk_import.validate_rows(rows, Tag.query.all())
    valid_count = sum(1 for item in validated if item['valid'])
    return jsonify({
        'success': True,
        'rows': validated,
        'total': len(validated),
        'valid': valid_count,
        'invalid': len(validated) - valid_count,
    })


@resources.route('/bulk', methods=['POST'])
@login_required
def bulk_create():
    user = current_user()
    if request.files.get('file'):
        rows = _uploaded_rows()
        church_id = request.form.get('church_id', type=int)
    else:
        body = get_json_body()
        rows = _json_rows(body.get('resources'))
        church_id = optional_int(body, 'church_id', minimum=1)

    if not rows:
        raise ValidationError('The file contains no data rows.')

    church_id = bulk_import.resolve_import_church(user, church_id)
    report = bulk_import.import_resources(user, rows, church_id)
    return jsonify({'success': True, **report})


@resources.route('/bulk/template', methods=['GET'])
@login_required
def bulk_template():
    category = (request.args.get('category') or '').upper() or None
    if category and category not in CATEGORIES:
        raise ValidationError('Invalid category.')

    if (request.args.get('format') or 'csv').lower() == 'xlsx':
        return send_file(
            io.BytesIO(bulk_import.generate_xlsx_template(category)),
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            as_attachment=True,
            download_name='resource-import-template.xlsx',
        )

    return Response(
        bulk_import.generate_csv_template(category),
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename=resource-import-template.csv'},
    )
