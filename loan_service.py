"""loan_service.py

Loan workflow engine.

LoanRequest: PENDING -> APPROVED | DENIED | CANCELLED (all terminal)
Loan:        ACTIVE -> RETURNED | OVERDUE | LOST, OVERDUE -> RETURNED | LOST

Every transition commits its request / loan / resource writes as one unit.
The state guards are conditional UPDATEs (WHERE status = ..., WHERE
availability_status = 'AVAILABLE'), so two concurrent transitions on the same
request, loan or resource cannot both succeed.

Activity logging and email notifications run detached after the commit and
never fail or roll back a transition.
"""

import logging
from datetime import datetime
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from models import db, Resource, LoanRequest, Loan
from constants import OPEN_LOAN_STATUSES
from errors import (
    MinistryShareError, ValidationError, NotFoundError, PermissionDenied,
    ConflictError, OwnResourceError,
)
from activity_service import record_activity
from tasks import run_detached
import email_service

logger = logging.getLogger(__name__)

REQUEST_TRANSITIONS = ('APPROVED', 'DENIED', 'CANCELLED')
LOAN_TRANSITIONS = ('RETURNED', 'OVERDUE', 'LOST')
MAX_MESSAGE_LENGTH = 1000


def _check_message(value, field):
    if value is not None and len(value) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f'{field} must be at most {MAX_MESSAGE_LENGTH} characters.')
    return value or None


def _commit_or_rollback():
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Transaction failed, rolled back")
        raise


# --- Loan requests ---

def create_loan_request(actor, resource_id, requesting_church_id, needed_by_date=None,
                        return_by_date=None, message=None, email_enabled=False):
    """Create a PENDING request from requesting_church_id for resource_id.

    Raises NotFoundError, OwnResourceError, ConflictError (NOT_AVAILABLE,
    DUPLICATE_PENDING), PermissionDenied or ValidationError.
    """
    if not requesting_church_id:
        raise ValidationError('No church associated with user', code='NO_CHURCH')
    if not actor.is_admin and actor.church_id != requesting_church_id:
        raise PermissionDenied('You can only request resources for your own church.')
    message = _check_message(message, 'message')
    if needed_by_date and return_by_date and return_by_date < needed_by_date:
        raise ValidationError('The return date must be after the needed-by date.')

    resource = db.session.get(Resource, resource_id)
    if resource is None:
        raise NotFoundError('Resource not found')

    if resource.church_id == requesting_church_id:
        raise OwnResourceError("Cannot request your own church's resource")

    if resource.availability_status != 'AVAILABLE':
        raise ConflictError('Resource is not available for loan', code='NOT_AVAILABLE')

    existing = LoanRequest.query.filter_by(
        resource_id=resource.id,
        requesting_church_id=requesting_church_id,
        status='PENDING',
    ).first()
    if existing:
        raise ConflictError('A pending request already exists for this resource',
                            code='DUPLICATE_PENDING')

    loan_request = LoanRequest(
        resource_id=resource.id,
        requesting_church_id=requesting_church_id,
        needed_by_date=needed_by_date,
        return_by_date=return_by_date,
        message=message,
        status='PENDING',
    )
    db.session.add(loan_request)
    _commit_or_rollback()

    record_activity(actor.id, 'CREATE_LOAN_REQUEST', 'LoanRequest', loan_request.id,
                    f'Requested loan for "{resource.title}"')
    run_detached(email_service.notify_new_request, loan_request.id, email_enabled)
    return loan_request


def transition_loan_request(actor, request_id, target_status, response_message=None,
                            email_enabled=False):
    """Move a PENDING request to APPROVED, DENIED or CANCELLED.

    Returns (loan_request, loan); loan is only set for APPROVED.
    Approve / deny: admin or a user of the church owning the resource.
    Cancel: admin or a user of the requesting church.
    """
    if target_status not in REQUEST_TRANSITIONS:
        raise ValidationError('Invalid status transition', code='INVALID_STATUS')
    response_message = _check_message(response_message, 'response_message')

    loan_request = db.session.get(LoanRequest, request_id)
    if loan_request is None:
        raise NotFoundError('Loan request not found')

    if loan_request.status != 'PENDING':
        raise ConflictError('Request is no longer pending', code='NOT_PENDING')

    resource = loan_request.resource
    if target_status == 'CANCELLED':
        allowed = actor.is_admin or loan_request.requesting_church_id == actor.church_id
    else:
        allowed = actor.is_admin or resource.church_id == actor.church_id
    if not allowed:
        raise PermissionDenied()

    loan = None
    try:
        claimed = LoanRequest.query.filter_by(id=loan_request.id, status='PENDING').update({
            'status': target_status,
            'response_message': response_message,
            'updated_at': datetime.now(),
        })
        if claimed != 1:
            raise ConflictError('Request is no longer pending', code='NOT_PENDING')

        if target_status == 'APPROVED':
            booked = Resource.query.filter_by(id=resource.id, availability_status='AVAILABLE') \
                .update({'availability_status': 'ON_LOAN'})
            if booked != 1:
                raise ConflictError('Resource is not available for loan', code='NOT_AVAILABLE')

            loan = Loan(
                resource_id=resource.id,
                loan_request_id=loan_request.id,
                borrowing_church_id=loan_request.requesting_church_id,
                lending_church_id=resource.church_id,
                due_date=loan_request.return_by_date,
                status='ACTIVE',
            )
            db.session.add(loan)
        db.session.commit()
    except MinistryShareError:
        db.session.rollback()
        raise
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Loan request %s transition to %s failed", request_id, target_status)
        raise

    title = resource.title
    if target_status == 'APPROVED':
        record_activity(actor.id, 'APPROVE_REQUEST', 'LoanRequest', loan_request.id,
                        f'Approved loan request for "{title}"')
        run_detached(email_service.notify_request_approved, loan_request.id, email_enabled)
    elif target_status == 'DENIED':
        record_activity(actor.id, 'DENY_REQUEST', 'LoanRequest', loan_request.id,
                        f'Denied loan request for "{title}"')
        run_detached(email_service.notify_request_denied, loan_request.id, email_enabled)
    else:
        record_activity(actor.id, 'CANCEL_REQUEST', 'LoanRequest', loan_request.id,
                        f'Cancelled loan request for "{title}"')
        run_detached(email_service.notify_request_cancelled, loan_request.id, email_enabled)

    return loan_request, loan


def approve_request(actor, request_id, response_message=None, email_enabled=False):
    return transition_loan_request(actor, request_id, 'APPROVED', response_message, email_enabled)


def deny_request(actor, request_id, response_message=None, email_enabled=False):
    return transition_loan_request(actor, request_id, 'DENIED', response_message, email_enabled)


def cancel_request(actor, request_id, response_message=None, email_enabled=False):
    return transition_loan_request(actor, request_id, 'CANCELLED', response_message, email_enabled)


# --- Loans ---

def transition_loan(actor, loan_id, target_status, notes=None, email_enabled=False):
    """Move an ACTIVE / OVERDUE loan to RETURNED, OVERDUE or LOST.

    Only an admin or a user of the lending church may do this.
    RETURNED frees the resource (AVAILABLE), LOST retires it (UNAVAILABLE),
    OVERDUE leaves it ON_LOAN.
    """
    if target_status not in LOAN_TRANSITIONS:
        raise ValidationError('Invalid status', code='INVALID_STATUS')
    notes = _check_message(notes, 'notes')

    loan = db.session.get(Loan, loan_id)
    if loan is None:
        raise NotFoundError('Loan not found')

    if not actor.is_admin and loan.lending_church_id != actor.church_id:
        raise PermissionDenied()

    if loan.status not in OPEN_LOAN_STATUSES:
        raise ConflictError('Loan is not active', code='NOT_ACTIVE')

    values = {'status': target_status}
    if notes is not None:
        values['notes'] = notes
    if target_status == 'RETURNED':
        values['return_date'] = datetime.now()

    try:
        updated = Loan.query.filter(
            Loan.id == loan.id, Loan.status.in_(OPEN_LOAN_STATUSES)
        ).update(values, synchronize_session='fetch')
        if updated != 1:
            raise ConflictError('Loan is not active', code='NOT_ACTIVE')

        if target_status == 'RETURNED':
            Resource.query.filter_by(id=loan.resource_id).update({'availability_status': 'AVAILABLE'})
        elif target_status == 'LOST':
            Resource.query.filter_by(id=loan.resource_id).update({'availability_status': 'UNAVAILABLE'})
        db.session.commit()
    except MinistryShareError:
        db.session.rollback()
        raise
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Loan %s transition to %s failed", loan_id, target_status)
        raise

    title = loan.resource.title
    if target_status == 'RETURNED':
        record_activity(actor.id, 'RETURN_LOAN', 'Loan', loan.id, f'Marked "{title}" as returned')
        run_detached(email_service.notify_loan_returned, loan.id, email_enabled)
    elif target_status == 'OVERDUE':
        record_activity(actor.id, 'MARK_LOAN_OVERDUE', 'Loan', loan.id, f'Marked "{title}" as overdue')
        run_detached(email_service.notify_loan_overdue, loan.id, email_enabled)
    else:
        record_activity(actor.id, 'MARK_LOAN_LOST', 'Loan', loan.id, f'Marked "{title}" as lost')
        run_detached(email_service.notify_loan_lost, loan.id, email_enabled)

    return loan


def mark_returned(actor, loan_id, notes=None, email_enabled=False):
    return transition_loan(actor, loan_id, 'RETURNED', notes, email_enabled)


def mark_overdue(actor, loan_id, notes=None, email_enabled=False):
    return transition_loan(actor, loan_id, 'OVERDUE', notes, email_enabled)


def mark_lost(actor, loan_id, notes=None, email_enabled=False):
    return transition_loan(actor, loan_id, 'LOST', notes, email_enabled)


# --- Listing ---

def list_loan_requests(actor, direction=None, status=None, church_id=None):
    """Requests visible to actor. direction: 'incoming' (for my resources) or 'outgoing' (made by me)."""
    query = LoanRequest.query.join(Resource, LoanRequest.resource_id == Resource.id)
    if status:
        query = query.filter(LoanRequest.status == status)

    scope = actor.church_id if not actor.is_admin else church_id
    if not actor.is_admin and not scope:
        return []
    if scope:
        if direction == 'incoming':
            query = query.filter(Resource.church_id == scope)
        elif direction == 'outgoing':
            query = query.filter(LoanRequest.requesting_church_id == scope)
        else:
            query = query.filter(or_(Resource.church_id == scope,
                                     LoanRequest.requesting_church_id == scope))

    return query.order_by(LoanRequest.created_at.desc(), LoanRequest.id.desc()).all()


def list_loans(actor, direction=None, status=None, church_id=None):
    """Loans visible to actor. direction: 'lent' or 'borrowed'."""
    query = Loan.query
    if status:
        query = query.filter(Loan.status == status)

    scope = actor.church_id if not actor.is_admin else church_id
    if not actor.is_admin and not scope:
        return []
    if scope:
        if direction == 'lent':
            query = query.filter(Loan.lending_church_id == scope)
        elif direction == 'borrowed':
            query = query.filter(Loan.borrowing_church_id == scope)
        else:
            query = query.filter(or_(Loan.lending_church_id == scope,
                                     Loan.borrowing_church_id == scope))

    return query.order_by(Loan.created_at.desc(), Loan.id.desc()).all()
