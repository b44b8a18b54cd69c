from datetime import datetime, timedelta
import pytest
from models import db, Resource, LoanRequest, Loan, ActivityLog
from errors import (
    ConflictError, NotFoundError, OwnResourceError, PermissionDenied, ValidationError,
)
import loan_service


def assert_availability_matches_loans(resource_id):
    resource = db.session.get(Resource, resource_id)
    open_loans = Loan.query.filter(
        Loan.resource_id == resource_id, Loan.status.in_(('ACTIVE', 'OVERDUE'))
    ).count()
    assert (resource.availability_status == 'ON_LOAN') == (open_loans == 1)
    assert open_loans <= 1


@pytest.fixture
def setup(two_churches, make_resource):
    lender, borrower, lender_user, borrower_user = two_churches
    resource = make_resource(lender, title='Hymnal X')
    return lender, borrower, lender_user, borrower_user, resource


@pytest.fixture
def approved(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    due = datetime.now() + timedelta(days=14)
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id, return_by_date=due)
    _, loan = loan_service.approve_request(lender_user, req.id)
    return loan, setup


def test_create_request_is_pending(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id, message='For Advent')

    assert req.status == 'PENDING'
    assert req.requesting_church_id == borrower.id
    assert req.message == 'For Advent'
    log = ActivityLog.query.filter_by(action='CREATE_LOAN_REQUEST').one()
    assert log.entity_id == str(req.id)


def test_request_own_resource_is_refused(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    with pytest.raises(OwnResourceError) as exc:
        loan_service.create_loan_request(lender_user, resource.id, lender.id)
    assert exc.value.code == 'OWN_RESOURCE'
    assert LoanRequest.query.count() == 0


def test_request_unknown_resource(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    with pytest.raises(NotFoundError):
        loan_service.create_loan_request(borrower_user, 9999, borrower.id)


def test_request_unavailable_resource(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    resource.availability_status = 'UNAVAILABLE'
    db.session.commit()
    with pytest.raises(ConflictError) as exc:
        loan_service.create_loan_request(borrower_user, resource.id, borrower.id)
    assert exc.value.code == 'NOT_AVAILABLE'


def test_duplicate_pending_request(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    loan_service.create_loan_request(borrower_user, resource.id, borrower.id)
    with pytest.raises(ConflictError) as exc:
        loan_service.create_loan_request(borrower_user, resource.id, borrower.id)
    assert exc.value.code == 'DUPLICATE_PENDING'
    assert LoanRequest.query.count() == 1


def test_editor_cannot_request_for_another_church(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    with pytest.raises(PermissionDenied):
        loan_service.create_loan_request(lender_user, resource.id, borrower.id)


def test_return_date_before_needed_date(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    with pytest.raises(ValidationError):
        loan_service.create_loan_request(
            borrower_user, resource.id, borrower.id,
            needed_by_date=datetime(2026, 5, 10), return_by_date=datetime(2026, 5, 1),
        )


def test_approve_creates_active_loan(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    due = datetime(2026, 12, 24, 12, 0)
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id, return_by_date=due)

    req, loan = loan_service.approve_request(lender_user, req.id, 'Pick up Sunday')

    assert req.status == 'APPROVED'
    assert req.response_message == 'Pick up Sunday'
    assert loan.status == 'ACTIVE'
    assert loan.lending_church_id == lender.id
    assert loan.borrowing_church_id == borrower.id
    assert loan.loan_request_id == req.id
    assert loan.due_date == due
    assert db.session.get(Resource, resource.id).availability_status == 'ON_LOAN'
    assert Loan.query.count() == 1
    assert ActivityLog.query.filter_by(action='APPROVE_REQUEST').count() == 1
    assert_availability_matches_loans(resource.id)


def test_deny_creates_no_loan(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)

    req, loan = loan_service.deny_request(lender_user, req.id, 'Needed for our choir')

    assert req.status == 'DENIED'
    assert loan is None
    assert Loan.query.count() == 0
    assert db.session.get(Resource, resource.id).availability_status == 'AVAILABLE'


def test_cancel_by_requesting_church(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)

    req, loan = loan_service.cancel_request(borrower_user, req.id)

    assert req.status == 'CANCELLED'
    assert loan is None
    assert Loan.query.count() == 0


def test_owner_cannot_cancel_and_borrower_cannot_approve(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)

    with pytest.raises(PermissionDenied):
        loan_service.cancel_request(lender_user, req.id)
    with pytest.raises(PermissionDenied):
        loan_service.approve_request(borrower_user, req.id)
    assert db.session.get(LoanRequest, req.id).status == 'PENDING'


def test_admin_may_approve_any_request(setup, make_user):
    lender, borrower, lender_user, borrower_user, resource = setup
    admin = make_user('district', role='ADMIN')
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)

    _, loan = loan_service.approve_request(admin, req.id)
    assert loan.status == 'ACTIVE'


def test_acting_on_decided_request_conflicts(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)
    loan_service.deny_request(lender_user, req.id)

    for target in ('APPROVED', 'DENIED', 'CANCELLED'):
        actor = borrower_user if target == 'CANCELLED' else lender_user
        with pytest.raises(ConflictError) as exc:
            loan_service.transition_loan_request(actor, req.id, target)
        assert exc.value.code == 'NOT_PENDING'

    assert db.session.get(LoanRequest, req.id).status == 'DENIED'
    assert Loan.query.count() == 0


def test_not_pending_is_reported_before_forbidden(setup, make_church, make_user):
    lender, borrower, lender_user, borrower_user, resource = setup
    outsider = make_user('outsider', make_church('St. Mark'))
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)
    loan_service.deny_request(lender_user, req.id)

    with pytest.raises(ConflictError):
        loan_service.approve_request(outsider, req.id)
    with pytest.raises(NotFoundError):
        loan_service.approve_request(outsider, 4242)


def test_second_approval_on_same_resource_rolls_back(setup, make_church, make_user):
    lender, borrower, lender_user, borrower_user, resource = setup
    other_church = make_church('Trinity')
    other_user = make_user('trinity', other_church)
    first = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)
    second = loan_service.create_loan_request(other_user, resource.id, other_church.id)

    loan_service.approve_request(lender_user, first.id)
    with pytest.raises(ConflictError) as exc:
        loan_service.approve_request(lender_user, second.id)

    assert exc.value.code == 'NOT_AVAILABLE'
    assert db.session.get(LoanRequest, second.id).status == 'PENDING'
    assert Loan.query.count() == 1
    assert_availability_matches_loans(resource.id)


def test_invalid_request_target_status(setup):
    lender, borrower, lender_user, borrower_user, resource = setup
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)
    with pytest.raises(ValidationError):
        loan_service.transition_loan_request(lender_user, req.id, 'PENDING')


def test_mark_returned_frees_resource(approved):
    loan, (lender, borrower, lender_user, borrower_user, resource) = approved

    loan = loan_service.mark_returned(lender_user, loan.id, 'All copies back')

    assert loan.status == 'RETURNED'
    assert loan.return_date is not None
    assert loan.notes == 'All copies back'
    assert db.session.get(Resource, resource.id).availability_status == 'AVAILABLE'
    assert_availability_matches_loans(resource.id)


def test_mark_overdue_keeps_resource_on_loan(approved):
    loan, (lender, borrower, lender_user, borrower_user, resource) = approved

    loan = loan_service.mark_overdue(lender_user, loan.id)
    assert loan.status == 'OVERDUE'
    assert db.session.get(Resource, resource.id).availability_status == 'ON_LOAN'

    loan = loan_service.mark_returned(lender_user, loan.id)
    assert loan.status == 'RETURNED'
    assert db.session.get(Resource, resource.id).availability_status == 'AVAILABLE'


def test_mark_lost_retires_resource(approved):
    loan, (lender, borrower, lender_user, borrower_user, resource) = approved

    loan = loan_service.mark_lost(lender_user, loan.id)

    assert loan.status == 'LOST'
    assert loan.return_date is None
    assert db.session.get(Resource, resource.id).availability_status == 'UNAVAILABLE'
    assert_availability_matches_loans(resource.id)


def test_closed_loan_cannot_transition(approved):
    loan, (lender, borrower, lender_user, borrower_user, resource) = approved
    loan_service.mark_returned(lender_user, loan.id)

    for target in ('RETURNED', 'OVERDUE', 'LOST'):
        with pytest.raises(ConflictError) as exc:
            loan_service.transition_loan(lender_user, loan.id, target)
        assert exc.value.code == 'NOT_ACTIVE'
    assert db.session.get(Loan, loan.id).status == 'RETURNED'
    assert db.session.get(Resource, resource.id).availability_status == 'AVAILABLE'


def test_only_lending_church_manages_loan(approved):
    loan, (lender, borrower, lender_user, borrower_user, resource) = approved

    with pytest.raises(PermissionDenied):
        loan_service.mark_returned(borrower_user, loan.id)
    with pytest.raises(NotFoundError):
        loan_service.mark_returned(lender_user, 777)
    with pytest.raises(ValidationError):
        loan_service.transition_loan(lender_user, loan.id, 'ACTIVE')
    assert db.session.get(Loan, loan.id).status == 'ACTIVE'


def test_listing_by_direction(approved, make_resource):
    loan, (lender, borrower, lender_user, borrower_user, resource) = approved
    borrower_resource = make_resource(borrower, title='Disciple', category='STUDY')
    loan_service.create_loan_request(lender_user, borrower_resource.id, lender.id)

    incoming = loan_service.list_loan_requests(lender_user, direction='incoming')
    outgoing = loan_service.list_loan_requests(lender_user, direction='outgoing')
    everything = loan_service.list_loan_requests(lender_user)

    assert [r.resource_id for r in incoming] == [resource.id]
    assert [r.resource_id for r in outgoing] == [borrower_resource.id]
    assert len(everything) == 2
    assert [r.status for r in loan_service.list_loan_requests(lender_user, status='PENDING')] == ['PENDING']

    assert [l.id for l in loan_service.list_loans(lender_user, direction='lent')] == [loan.id]
    assert loan_service.list_loans(lender_user, direction='borrowed') == []
    assert [l.id for l in loan_service.list_loans(borrower_user, direction='borrowed')] == [loan.id]


def test_notifications_sent_when_enabled(setup, outbox):
    lender, borrower, lender_user, borrower_user, resource = setup
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id, email_enabled=True)
    loan_service.deny_request(lender_user, req.id, 'Sorry', email_enabled=True)

    assert [m.recipients for m in outbox] == [[lender.email], [borrower.email]]
    assert 'Sorry' in outbox[1].html


def test_no_notifications_when_disabled(setup, outbox):
    lender, borrower, lender_user, borrower_user, resource = setup
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)
    loan_service.approve_request(lender_user, req.id)
    assert outbox == []


def test_failing_side_effects_leave_transition_committed(setup, monkeypatch, caplog):
    import activity_service
    import email_service
    lender, borrower, lender_user, borrower_user, resource = setup
    req = loan_service.create_loan_request(borrower_user, resource.id, borrower.id)

    def broken(*args, **kwargs):
        raise RuntimeError('side effect down')

    monkeypatch.setattr(email_service, 'notify_request_approved', broken)
    monkeypatch.setattr(activity_service, 'log_activity', broken)

    with caplog.at_level('ERROR', logger='tasks'):
        req, loan = loan_service.approve_request(lender_user, req.id, email_enabled=True)

    assert db.session.get(LoanRequest, req.id).status == 'APPROVED'
    assert Loan.query.filter_by(loan_request_id=req.id).one().status == 'ACTIVE'
    assert db.session.get(Resource, resource.id).availability_status == 'ON_LOAN'
    assert ActivityLog.query.filter_by(action='APPROVE_REQUEST').count() == 0
    assert 'Detached task broken failed' in caplog.text
