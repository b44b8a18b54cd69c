import io
import pytest
from openpyxl import load_workbook
from models import db, Resource, ResourceTag, Loan, Tag, ActivityLog


@pytest.fixture
def catalog(two_churches, make_resource, make_tag):
    lender, borrower = two_churches[0], two_churches[1]
    advent = make_tag('Advent', 'BOTH')
    hymnal = make_resource(lender, 'Hymnal X', author_composer='Various', subcategory='HYMNAL')
    messiah = make_resource(lender, 'Messiah', author_composer='Handel', subcategory='CANTATA',
                            availability_status='UNAVAILABLE')
    disciple = make_resource(borrower, 'Disciple', category='STUDY', title_es='Discípulo',
                             description='A Bible study for small groups')
    db.session.add(ResourceTag(resource_id=messiah.id, tag_id=advent.id))
    db.session.commit()
    return {'hymnal': hymnal, 'messiah': messiah, 'disciple': disciple, 'advent': advent}


def titles(response):
    return [r['title'] for r in response.get_json()['resources']]


# --- Catalog ---

def test_list_is_public_and_paginated(client, catalog):
    response = client.get('/resources?limit=2&sort=title')
    body = response.get_json()
    assert response.status_code == 200
    assert titles(response) == ['Disciple', 'Hymnal X']
    assert body['pagination'] == {'page': 1, 'limit': 2, 'total': 3, 'total_pages': 2}

    second = client.get('/resources?limit=2&page=2&sort=title')
    assert titles(second) == ['Messiah']


@pytest.mark.parametrize('query, expected', [
    ('search=handel', ['Messiah']),
    ('search=bible', ['Disciple']),
    ('search=disc%C3%ADpulo', ['Disciple']),
    ('category=music&sort=title', ['Hymnal X', 'Messiah']),
    ('subcategory=cantata', ['Messiah']),
    ('availability=available&sort=title', ['Disciple', 'Hymnal X']),
])
def test_list_filters(client, catalog, query, expected):
    assert titles(client.get(f'/resources?{query}')) == expected


def test_list_filters_by_tag_and_church(client, catalog):
    advent_id = catalog['advent'].id
    assert titles(client.get(f'/resources?tags={advent_id}')) == ['Messiah']
    church_id = catalog['disciple'].church_id
    assert titles(client.get(f'/resources?church_id={church_id}')) == ['Disciple']


def test_limit_is_capped(client, catalog):
    assert client.get('/resources?limit=500').get_json()['pagination']['limit'] == 50


def test_category_pages(client, catalog):
    assert titles(client.get('/music?sort=title')) == ['Hymnal X', 'Messiah']
    assert titles(client.get('/study')) == ['Disciple']


def test_detail_in_spanish_with_current_loan(client, catalog):
    disciple = catalog['disciple']
    response = client.get(f'/resources/{disciple.id}', headers={'Accept-Language': 'es'})
    body = response.get_json()
    assert body['display_title'] == 'Discípulo'
    assert body['current_loan'] is None

    hymnal = catalog['hymnal']
    hymnal.availability_status = 'ON_LOAN'
    db.session.add(Loan(resource_id=hymnal.id, lending_church_id=hymnal.church_id,
                        borrowing_church_id=disciple.church_id, status='ACTIVE'))
    db.session.commit()
    detail = client.get(f'/resources/{hymnal.id}').get_json()
    assert detail['current_loan']['status'] == 'ACTIVE'

    assert client.get('/resources/9999').status_code == 404


# --- Management ---

def test_create_resource_for_own_church(client, login, catalog):
    login('lender')
    response = client.post('/resources', json={
        'category': 'music',
        'title': 'Lessons and Carols',
        'subcategory': 'choral',
        'quantity': 12,
        'tag_ids': [catalog['advent'].id],
    })
    assert response.status_code == 201
    body = response.get_json()['resource']
    assert body['church_id'] == catalog['hymnal'].church_id
    assert body['subcategory'] == 'CHOIR_ANTHEM'
    assert body['quantity'] == 12
    assert [t['name'] for t in body['tags']] == ['Advent']
    assert ActivityLog.query.filter_by(action='CREATE_RESOURCE').count() == 1


def test_create_resource_validation(client, login, catalog, make_user):
    login('lender')
    missing = client.post('/resources', json={'category': 'MUSIC'})
    assert missing.status_code == 400
    assert missing.get_json()['details'] == ['errorMissingTitle']

    unknown_tag = client.post('/resources', json={'category': 'MUSIC', 'title': 'T', 'tag_ids': [999]})
    assert unknown_tag.get_json()['error'] == 'UNKNOWN_TAG'

    on_loan = client.post('/resources', json={'category': 'MUSIC', 'title': 'T',
                                              'availability_status': 'ON_LOAN'})
    assert on_loan.status_code == 400

    too_long = client.post('/resources', json={'category': 'MUSIC', 'title': 'x' * 501})
    assert too_long.status_code == 400

    huge = client.post('/resources', json={'category': 'MUSIC', 'title': 'T',
                                           'quantity': '99999999999999999999'})
    assert huge.status_code == 400
    assert huge.get_json()['details'] == ['errorInvalidQuantity']
    huge_number = client.post('/resources', json={'category': 'MUSIC', 'title': 'T', 'quantity': 10 ** 20})
    assert huge_number.get_json()['details'] == ['errorInvalidQuantity']

    make_user('admin', role='ADMIN')
    login('admin')
    no_church = client.post('/resources', json={'category': 'MUSIC', 'title': 'T'})
    assert no_church.get_json()['error'] == 'CHURCH_REQUIRED'
    assert Resource.query.count() == 3


def test_create_requires_login(client, catalog):
    assert client.post('/resources', json={'category': 'MUSIC', 'title': 'T'}).status_code == 401


def test_update_merges_fields_and_replaces_tags(client, login, catalog, make_tag):
    lent = make_tag('Lent', 'BOTH')
    messiah = catalog['messiah']
    login('lender')

    response = client.put(f'/resources/{messiah.id}', json={
        'title': 'Messiah (Watkins Shaw edition)',
        'availability_status': 'AVAILABLE',
        'tag_ids': [lent.id],
    })
    assert response.status_code == 200
    body = response.get_json()['resource']
    assert body['title'] == 'Messiah (Watkins Shaw edition)'
    assert body['author_composer'] == 'Handel'
    assert body['subcategory'] == 'CANTATA'
    assert body['availability_status'] == 'AVAILABLE'
    assert [t['name'] for t in body['tags']] == ['Lent']
    assert ResourceTag.query.count() == 1


def test_update_checks_ownership_and_loans(client, login, catalog):
    login('borrower')
    forbidden = client.put(f"/resources/{catalog['hymnal'].id}", json={'title': 'Mine now'})
    assert forbidden.status_code == 403

    hymnal = catalog['hymnal']
    hymnal.availability_status = 'ON_LOAN'
    db.session.add(Loan(resource_id=hymnal.id, lending_church_id=hymnal.church_id,
                        borrowing_church_id=catalog['disciple'].church_id, status='ACTIVE'))
    db.session.commit()

    login('lender')
    blocked = client.put(f'/resources/{hymnal.id}', json={'availability_status': 'AVAILABLE'})
    assert blocked.status_code == 409
    assert blocked.get_json()['error'] == 'ON_LOAN'

    renamed = client.put(f'/resources/{hymnal.id}', json={'title': 'Hymnal X (2nd ed.)'})
    assert renamed.status_code == 200

    cannot_delete = client.delete(f'/resources/{hymnal.id}')
    assert cannot_delete.status_code == 409


def test_delete_resource(client, login, catalog):
    messiah_id = catalog['messiah'].id
    login('lender')
    assert client.delete(f'/resources/{messiah_id}').status_code == 200
    assert db.session.get(Resource, messiah_id) is None
    assert ResourceTag.query.count() == 0
    assert client.delete(f'/resources/{messiah_id}').status_code == 404


# --- Public church and tag listings ---

def test_churches_lists_only_approved(client, catalog, make_church):
    make_church('Still Pending', registration_status='PENDING', is_active=False)
    body = client.get('/churches').get_json()
    assert [c['name'] for c in body['churches']] == ['First Methodist', 'Grace Chapel']
    assert body['churches'][0]['resource_count'] == 2

    church_id = catalog['hymnal'].church_id
    detail = client.get(f'/churches/{church_id}').get_json()
    assert sorted(r['title'] for r in detail['resources']) == ['Hymnal X', 'Messiah']
    assert client.get('/churches/9999').status_code == 404


def test_tags_by_category(client, catalog, make_tag):
    make_tag('Hymn tunes', 'MUSIC')
    make_tag('Lectionary', 'STUDY')

    music = [t['name'] for t in client.get('/tags?category=music').get_json()['tags']]
    everything = client.get('/tags').get_json()['tags']
    assert music == ['Advent', 'Hymn tunes']
    assert len(everything) == 3
    assert client.get('/tags?category=VIDEO').status_code == 400


# --- Bulk import ---

CSV_UPLOAD = (
    'Category,Title,Composer,Qty,Tags\n'
    'MUSIC,Hymnal Y,Various,2,Advent\n'
    'MUSIC,,Nobody,1,\n'
    'STUDY,Covenant,,,Small groups\n'
).encode('utf-8')


def test_bulk_preview_does_not_save(client, login, catalog):
    login('lender')
    response = client.post('/resources/bulk/preview', data={'file': (io.BytesIO(CSV_UPLOAD), 'import.csv')},
                           content_type='multipart/form-data')
    body = response.get_json()
    assert body['total'] == 3
    assert body['valid'] == 2
    assert body['invalid'] == 1
    assert body['rows'][1]['errors'] == ['errorMissingTitle']
    assert body['rows'][2]['warnings'] == ['warningNewTags']
    assert Resource.query.count() == 3


def test_bulk_upload_imports_valid_rows(client, login, catalog):
    login('lender')
    response = client.post('/resources/bulk', data={'file': (io.BytesIO(CSV_UPLOAD), 'import.csv')},
                           content_type='multipart/form-data')
    body = response.get_json()
    assert body['success'] is True
    assert body['created'] == 2
    assert body['failed'] == 1
    assert body['errors'] == [{'row': 2, 'error': 'errorMissingTitle'}]
    covenant = Resource.query.filter_by(title='Covenant').one()
    assert covenant.church_id == catalog['hymnal'].church_id
    assert Tag.query.filter_by(name='Small groups').count() == 1


def test_bulk_json_as_admin_needs_church(client, login, catalog, make_user):
    make_user('admin', role='ADMIN')
    login('admin')
    rows = [{'category': 'STUDY', 'title': 'Companions in Christ'}]

    missing = client.post('/resources/bulk', json={'resources': rows})
    assert missing.get_json()['error'] == 'CHURCH_REQUIRED'

    church_id = catalog['disciple'].church_id
    response = client.post('/resources/bulk', json={'resources': rows, 'church_id': church_id})
    assert response.get_json()['created'] == 1
    assert Resource.query.filter_by(title='Companions in Christ').one().church_id == church_id


def test_bulk_rejects_bad_uploads(client, login, catalog):
    login('lender')
    wrong_type = client.post('/resources/bulk', data={'file': (io.BytesIO(b'hello'), 'notes.txt')},
                             content_type='multipart/form-data')
    header_only = client.post('/resources/bulk', data={'file': (io.BytesIO(b'category,title\n'), 'a.csv')},
                              content_type='multipart/form-data')
    empty_json = client.post('/resources/bulk', json={'resources': []})

    assert wrong_type.get_json()['error'] == 'INVALID_FILE'
    assert header_only.status_code == 400
    assert empty_json.status_code == 400


def test_bulk_json_tag_lists_and_nested_values(client, login, catalog):
    login('lender')
    response = client.post('/resources/bulk', json={'resources': [
        {'category': 'STUDY', 'title': 'Lenten Journey', 'tags': ['Advent', 'Lent']},
    ]})
    assert response.get_json()['created'] == 1
    journey = Resource.query.filter_by(title='Lenten Journey').one()
    assert sorted(t.name for t in journey.tags) == ['Advent', 'Lent']

    nested = client.post('/resources/bulk', json={'resources': [
        {'category': 'STUDY', 'title': 'Nested', 'description': {'en': 'x'}},
    ]})
    assert nested.status_code == 400
    assert 'description' in nested.get_json()['message']
    assert Resource.query.filter_by(title='Nested').count() == 0

    long_tag = client.post('/resources/bulk', json={'resources': [
        {'category': 'STUDY', 'title': 'Tagged', 'tags': 'z' * 101},
    ]})
    assert long_tag.get_json()['errors'] == [{'row': 1, 'error': 'errorInvalidTag'}]


def test_bulk_templates(client, login, catalog):
    login('lender')
    csv_response = client.get('/resources/bulk/template?category=study')
    assert csv_response.mimetype == 'text/csv'
    assert 'attachment' in csv_response.headers['Content-Disposition']
    assert csv_response.get_data(as_text=True).startswith('category,title,')

    xlsx_response = client.get('/resources/bulk/template?format=xlsx')
    workbook = load_workbook(io.BytesIO(xlsx_response.data))
    header = [cell.value for cell in next(workbook.active.iter_rows(max_row=1))]
    assert header[:2] == ['category', 'title']

    assert client.get('/resources/bulk/template?category=VIDEO').status_code == 400
