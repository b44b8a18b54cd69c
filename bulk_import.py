"""bulk_import.py

Spreadsheet import of resources.

Pipeline:
 1. parse_upload: CSV or XLSX -> list of {canonical column: text} rows
 2. validate_row: pure per-row validation / normalization
 3. reconcile_tags: create the tag names no row could resolve, once per batch
 4. import_resources: insert valid rows in batches, link tags, log activity

Row numbers in reports are 1-based positions among the data rows (the header
row is not counted).
"""

import csv
import io
import logging
import re
import zipfile
from flask import current_app
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from models import db, Church, Resource, ResourceTag, Tag
from constants import CATEGORIES, FORMATS, SUBCATEGORIES_BY_CATEGORY, DEFAULT_NEW_TAG_CATEGORY
from errors import ImportFileError, ValidationError, NotFoundError
from activity_service import log_activities
from tasks import run_detached

logger = logging.getLogger(__name__)

CSV_COLUMNS = (
    'category',
    'title',
    'title_es',
    'author_composer',
    'publisher',
    'description',
    'description_es',
    'subcategory',
    'format',
    'quantity',
    'max_loan_weeks',
    'tags',
)

# Lowercased header -> canonical column
HEADER_ALIASES = {
    'titlees': 'title_es',
    'title (spanish)': 'title_es',
    'title (es)': 'title_es',
    'spanish title': 'title_es',
    'authorcomposer': 'author_composer',
    'author/composer': 'author_composer',
    'author': 'author_composer',
    'composer': 'author_composer',
    'descriptiones': 'description_es',
    'description (spanish)': 'description_es',
    'description (es)': 'description_es',
    'qty': 'quantity',
    'maxloanweeks': 'max_loan_weeks',
    'max loan weeks': 'max_loan_weeks',
    'loan weeks': 'max_loan_weeks',
}

SUBCATEGORY_ALIASES = {
    # Music
    'CHORAL': 'CHOIR_ANTHEM',
    'CHOIR': 'CHOIR_ANTHEM',
    'ANTHEM': 'CHOIR_ANTHEM',
    'BELL': 'HANDBELL',
    'BELLS': 'HANDBELL',
    'HANDBELLS': 'HANDBELL',
    'HYMN': 'HYMNAL',
    'HYMNBOOK': 'HYMNAL',
    'SHEET': 'SHEET_MUSIC',
    'SCORE': 'SHEET_MUSIC',
    'TRACK': 'ACCOMPANIMENT',
    'ACCOMPANIMENT_TRACK': 'ACCOMPANIMENT',
    'OTHER': 'OTHER_MUSIC',
    # Study
    'BIBLE': 'BIBLE_STUDY',
    'CURRICULUM': 'CURRICULUM_KIT',
    'DVD': 'DVD_VIDEO',
    'VIDEO': 'DVD_VIDEO',
    'GUIDE': 'LEADER_GUIDE',
    'YOUTH': 'YOUTH_CURRICULUM',
    'CHILDREN': 'CHILDREN_CURRICULUM',
    'KIDS': 'CHILDREN_CURRICULUM',
}

FORMAT_ALIASES = {
    'SHEET_MUSIC': 'SHEET',
    'SCORE': 'SHEET',
    'SHEETS': 'SHEET',
    'DISC': 'DVD',
    'VIDEO': 'DVD',
    'AUDIO': 'CD',
    'EBOOK': 'DIGITAL',
    'PDF': 'DIGITAL',
    'ONLINE': 'DIGITAL',
    'BUNDLE': 'KIT',
    'SET': 'KIT',
    'MISC': 'OTHER',
}

TAG_SPLIT_RE = re.compile(r'[,;]')
INTEGER_RE = re.compile(r'^[+-]?\d{1,12}$')

# Column sizes of Resource / Tag
MAX_QUANTITY = 2 ** 31 - 1
MAX_TAG_NAME_LENGTH = 100
TEXT_LIMITS = {
    'title': 500,
    'title_es': 500,
    'author_composer': 300,
    'publisher': 300,
    'description': 2000,
    'description_es': 2000,
}
TEXT_LIMIT_ERRORS = {
    'title': 'errorTitleTooLong',
    'title_es': 'errorTitleTooLong',
    'author_composer': 'errorAuthorTooLong',
    'publisher': 'errorPublisherTooLong',
    'description': 'errorDescriptionTooLong',
    'description_es': 'errorDescriptionTooLong',
}


def normalize_header(name):
    """Map a raw header cell to its canonical column name (unknown headers come back lowercased)."""
    key = (name or '').strip().lower()
    if key in HEADER_ALIASES:
        return HEADER_ALIASES[key]
    return key.replace(' ', '_')


def cell_text(value):
    """Coerce a cell value to the text the validator sees."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _build_row(headers, values):
    row = {}
    for index, header in enumerate(headers):
        if header in CSV_COLUMNS:
            row[header] = cell_text(values[index]) if index < len(values) else ''
    return row


def _is_blank(values):
    return all(cell_text(v).strip() == '' for v in values)


# --- Parsing ---

def parse_csv(stream):
    """Parse CSV bytes (or a binary stream) into row dicts keyed by canonical column."""
    data = stream.read() if hasattr(stream, 'read') else stream
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8-sig')
        except UnicodeDecodeError:
            raise ImportFileError('Could not read CSV file. Please save it as UTF-8.')

    try:
        reader = csv.reader(io.StringIO(data))
        header_cells = next(reader, None)
        if not header_cells or _is_blank(header_cells):
            raise ImportFileError('The file has no header row.')
        headers = [normalize_header(h) for h in header_cells]

        rows = []
        for values in reader:
            if _is_blank(values):
                continue
            rows.append(_build_row(headers, values))
    except csv.Error as e:
        raise ImportFileError(f'Could not read CSV file: {e}')
    return rows


def parse_xlsx(stream):
    """Parse the first worksheet of an XLSX workbook."""
    data = stream.read() if hasattr(stream, 'read') else stream
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError):
        raise ImportFileError('Could not read Excel file. Please check the format.')

    try:
        if not workbook.worksheets:
            raise ImportFileError('No sheets found in workbook.')
        values_iter = workbook.worksheets[0].iter_rows(values_only=True)
        header_cells = next(values_iter, None)
        if not header_cells or _is_blank(header_cells):
            raise ImportFileError('The file has no header row.')
        headers = [normalize_header(cell_text(h)) for h in header_cells]

        rows = []
        for values in values_iter:
            if _is_blank(values):
                continue
            rows.append(_build_row(headers, values))
    finally:
        workbook.close()
    return rows


def parse_upload(filename, stream):
    """Dispatch on the file extension. Raises ImportFileError for anything else."""
    extension = filename.rsplit('.', 1)[-1].lower() if filename and '.' in filename else ''
    if extension == 'csv':
        return parse_csv(stream)
    if extension == 'xlsx':
        return parse_xlsx(stream)
    raise ImportFileError('Unsupported file type. Please upload a .csv or .xlsx file.')


# --- Validation ---

def _tag_lookup(existing_tags):
    lookup = {}
    for tag in existing_tags or ():
        lookup.setdefault(tag.name.lower(), tag.id)
    return lookup


def _parse_positive_int(text):
    if not INTEGER_RE.match(text):
        return None
    return int(text)


def validate_row(row, row_index, existing_tags):
    """Validate and normalize one raw row. Pure: reads nothing but its arguments.

    Returns {row_index, valid, data, errors, warnings}. Error and warning
    entries are stable codes (errorMissingTitle, warningNewTags, ...).
    """
    errors = []
    warnings = []

    def text(key):
        return cell_text(row.get(key)).strip()

    category = text('category').upper()
    title = text('title')
    raw_subcategory = text('subcategory').upper()
    raw_format = text('format').upper()
    raw_quantity = text('quantity')
    raw_weeks = text('max_loan_weeks')
    raw_tags = text('tags')

    if not category:
        errors.append('errorMissingCategory')
    elif category not in CATEGORIES:
        errors.append('errorInvalidCategory')

    if not title:
        errors.append('errorMissingTitle')

    for key, limit in TEXT_LIMITS.items():
        code = TEXT_LIMIT_ERRORS[key]
        if len(text(key)) > limit and code not in errors:
            errors.append(code)

    subcategory = None
    if raw_subcategory and category:
        allowed = SUBCATEGORIES_BY_CATEGORY.get(category, ())
        normalized = SUBCATEGORY_ALIASES.get(raw_subcategory, raw_subcategory)
        if normalized in allowed:
            subcategory = normalized
        else:
            errors.append('errorInvalidSubcategory')

    resource_format = None
    if raw_format:
        normalized = FORMAT_ALIASES.get(raw_format, raw_format)
        if normalized in FORMATS:
            resource_format = normalized
        else:
            errors.append('errorInvalidFormat')

    quantity = 1
    if raw_quantity:
        parsed = _parse_positive_int(raw_quantity)
        if parsed is None or parsed < 1 or parsed > MAX_QUANTITY:
            errors.append('errorInvalidQuantity')
        else:
            quantity = parsed

    max_loan_weeks = None
    if raw_weeks:
        parsed = _parse_positive_int(raw_weeks)
        if parsed is None or parsed < 1 or parsed > 52:
            errors.append('errorInvalidMaxLoanWeeks')
        else:
            max_loan_weeks = parsed

    tag_ids = []
    new_tag_names = []
    if raw_tags:
        lookup = _tag_lookup(existing_tags)
        for name in TAG_SPLIT_RE.split(raw_tags):
            name = name.strip()
            if not name:
                continue
            if len(name) > MAX_TAG_NAME_LENGTH:
                if 'errorInvalidTag' not in errors:
                    errors.append('errorInvalidTag')
                continue
            tag_id = lookup.get(name.lower())
            if tag_id is not None:
                if tag_id not in tag_ids:
                    tag_ids.append(tag_id)
            elif name.lower() not in [n.lower() for n in new_tag_names]:
                new_tag_names.append(name)
    if new_tag_names:
        warnings.append('warningNewTags')

    return {
        'row_index': row_index,
        'valid': not errors,
        'data': {
            'category': category,
            'title': title,
            'title_es': text('title_es') or None,
            'author_composer': text('author_composer') or None,
            'publisher': text('publisher') or None,
            'description': text('description') or None,
            'description_es': text('description_es') or None,
            'subcategory': subcategory,
            'format': resource_format,
            'quantity': quantity,
            'max_loan_weeks': max_loan_weeks,
            'tag_ids': tag_ids,
            'new_tag_names': new_tag_names,
        },
        'errors': errors,
        'warnings': warnings,
    }


def validate_rows(rows, existing_tags):
    return [validate_row(row, index, existing_tags) for index, row in enumerate(rows, start=1)]


# --- Persistence ---

def resolve_import_church(actor, church_id=None):
    """Admins must name the target church; editors always import into their own."""
    if actor.is_admin:
        if not church_id:
            raise ValidationError('Admin must specify a church_id', code='CHURCH_REQUIRED')
        church = db.session.get(Church, church_id)
        if church is None:
            raise NotFoundError('Church not found')
        return church.id
    if not actor.church_id:
        raise ValidationError('No church associated with user', code='NO_CHURCH')
    return actor.church_id


def reconcile_tags(validated_rows):
    """Create the new tag names of all valid rows once. Returns {lowercased name: tag id}."""
    wanted = {}
    for item in validated_rows:
        if not item['valid']:
            continue
        for name in item['data']['new_tag_names']:
            wanted.setdefault(name.lower(), name)
    if not wanted:
        return {}

    tag_map = {}
    existing = Tag.query.filter(func.lower(Tag.name).in_(list(wanted))).all()
    for tag in existing:
        tag_map.setdefault(tag.name.lower(), tag.id)

    created = []
    for key, name in wanted.items():
        if key not in tag_map:
            tag = Tag(name=name, category=DEFAULT_NEW_TAG_CATEGORY)
            db.session.add(tag)
            created.append(tag)
    if created:
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to create %d import tags", len(created))
            raise
        for tag in created:
            tag_map[tag.name.lower()] = tag.id
    return tag_map


def _new_resource(data, church_id):
    return Resource(
        church_id=church_id,
        category=data['category'],
        subcategory=data['subcategory'],
        title=data['title'],
        title_es=data['title_es'],
        author_composer=data['author_composer'],
        publisher=data['publisher'],
        description=data['description'],
        description_es=data['description_es'],
        format=data['format'],
        quantity=data['quantity'],
        max_loan_weeks=data['max_loan_weeks'],
        availability_status='AVAILABLE',
    )


def _insert_batch(batch, church_id, errors):
    """Insert one batch; on failure retry row by row so only the bad rows fail."""
    resources = [_new_resource(item['data'], church_id) for item in batch]
    try:
        db.session.add_all(resources)
        db.session.commit()
        return list(zip(batch, resources))
    except Exception:
        db.session.rollback()
        logger.warning("Import batch of %d rows failed, retrying row by row", len(batch))

    inserted = []
    for item in batch:
        resource = _new_resource(item['data'], church_id)
        try:
            db.session.add(resource)
            db.session.commit()
            inserted.append((item, resource))
        except Exception as e:
            db.session.rollback()
            logger.error("Import row %s failed: %s", item['row_index'], e)
            errors.append({'row': item['row_index'], 'error': 'Could not save row'})
    return inserted


def _link_tags(inserted, tag_map, batch_size):
    links = []
    for item, resource in inserted:
        tag_ids = list(item['data']['tag_ids'])
        for name in item['data']['new_tag_names']:
            tag_id = tag_map.get(name.lower())
            if tag_id is not None:
                tag_ids.append(tag_id)
        for tag_id in dict.fromkeys(tag_ids):
            links.append(ResourceTag(resource_id=resource.id, tag_id=tag_id))

    for start in range(0, len(links), batch_size):
        try:
            db.session.add_all(links[start:start + batch_size])
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Failed to link tags for import batch starting at %d", start)


def import_resources(actor, rows, church_id, existing_tags=None, batch_size=None):
    """Validate and insert raw rows for church_id.

    Returns {created, failed, errors: [{row, error}]}. Invalid rows and rows
    the store rejects are reported, the rest are committed.
    """
    config = current_app.config
    batch_size = batch_size or config.get('IMPORT_BATCH_SIZE', 100)
    max_reported = config.get('IMPORT_MAX_REPORTED_ERRORS', 50)

    if existing_tags is None:
        existing_tags = Tag.query.all()

    validated = validate_rows(rows, existing_tags)
    errors = [
        {'row': item['row_index'], 'error': ', '.join(item['errors'])}
        for item in validated if not item['valid']
    ]
    valid = [item for item in validated if item['valid']]

    tag_map = reconcile_tags(valid)

    inserted = []
    for start in range(0, len(valid), batch_size):
        inserted.extend(_insert_batch(valid[start:start + batch_size], church_id, errors))

    _link_tags(inserted, tag_map, batch_size)

    if inserted:
        entries = [{
            'user_id': actor.id,
            'action': 'CREATE_RESOURCE',
            'entity_type': 'Resource',
            'entity_id': resource.id,
            'details': f'Bulk imported resource "{item["data"]["title"]}"',
        } for item, resource in inserted]
        run_detached(log_activities, entries)

    logger.info("Bulk import into church %s: %d created, %d failed",
                church_id, len(inserted), len(errors))

    errors.sort(key=lambda e: e['row'])
    return {
        'created': len(inserted),
        'failed': len(errors),
        'errors': errors[:max_reported],
    }


# --- Templates ---

TEMPLATE_ROWS = {
    'MUSIC': [
        ['MUSIC', 'The Faith We Sing', '', '', '', 'Hymnal supplement', '', 'HYMNAL', 'BOOK', 10, 4, 'Contemporary'],
        ['MUSIC', "Handel's Messiah", '', 'G.F. Handel', '', 'Complete cantata score', '', 'CANTATA', 'SHEET', 2, 8, ''],
    ],
    'STUDY': [
        ['STUDY', 'Disciple Bible Study', '', 'John Smith', 'Cokesbury', 'A comprehensive Bible study', '',
         'BIBLE_STUDY', 'BOOK', 5, 4, 'Bible Study'],
        ['STUDY', 'Short-Term Disciple', '', 'Various', 'Abingdon', '6-week Bible study overview', '',
         'BIBLE_STUDY', 'KIT', 3, 6, 'Bible Study'],
    ],
}


def _template_rows(category):
    if category in TEMPLATE_ROWS:
        return TEMPLATE_ROWS[category]
    return [TEMPLATE_ROWS['MUSIC'][0], TEMPLATE_ROWS['STUDY'][1]]


def generate_csv_template(category=None):
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    writer.writerows(_template_rows(category))
    return output.getvalue()


def generate_xlsx_template(category=None):
    wb = Workbook()
    ws = wb.active
    ws.title = 'Resources'

    header_fill = PatternFill(start_color='78716C', end_color='78716C', fill_type='solid')
    header_font = Font(color='FFFFFF', bold=True)

    ws.append(list(CSV_COLUMNS))
    for cell in ws[1]:
        cell.fill = header_fill
        cell.font = header_font

    for row in _template_rows(category):
        ws.append(row)

    for index, header in enumerate(CSV_COLUMNS):
        ws.column_dimensions[ws.cell(row=1, column=index + 1).column_letter].width = max(len(header) + 2, 14)

    output = io.BytesIO()
    wb.save(output)
    return output.getvalue()
