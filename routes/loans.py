"""routes/loans.py

Loan requests and loans (JSON). All state changes go through loan_service:
 - GET  /loan-requests?direction=incoming|outgoing&status=&church_id=
 - POST /loan-requests                 {resource_id, needed_by_date, return_by_date, message}
 - PUT  /loan-requests/<id>            {status: APPROVED|DENIED|CANCELLED, response_message}
 - GET  /loans?direction=lent|borrowed&status=&church_id=
 - PUT  /loans/<id>                    {status: RETURNED|OVERDUE|LOST, notes}

The email switch is read once per request and handed to the service.
"""

from flask import Blueprint, request, jsonify
from models import get_site_settings
from decorators import login_required, current_user
from errors import ValidationError
from locale_utils import get_request_locale
from request_utils import get_json_body, int_arg, optional_int, optional_str, parse_date
import loan_service

loans = Blueprint('loans', __name__)


def _status_arg():
    status = request.args.get('status')
    return status.upper() if status else None


@loans.route('/loan-requests', methods=['GET'])
@login_required
def list_requests():
    requests_ = loan_service.list_loan_requests(
        current_user(),
        direction=request.args.get('direction'),
        status=_status_arg(),
        church_id=int_arg('church_id'),
    )
    locale = get_request_locale()
    return jsonify({'success': True, 'requests': [r.to_dict(locale) for r in requests_]})


@loans.route('/loan-requests', methods=['POST'])
@login_required
def create_request():
    user = current_user()
    body = get_json_body()
    resource_id = optional_int(body, 'resource_id', minimum=1)
    if not resource_id:
        raise ValidationError('resource_id is required.')

    requesting_church_id = user.church_id
    if user.is_admin and body.get('requesting_church_id') is not None:
        requesting_church_id = optional_int(body, 'requesting_church_id', minimum=1)

    loan_request = loan_service.create_loan_request(
        user,
        resource_id,
        requesting_church_id,
        needed_by_date=parse_date(body.get('needed_by_date'), 'needed_by_date'),
        return_by_date=parse_date(body.get('return_by_date'), 'return_by_date'),
        message=optional_str(body, 'message'),
        email_enabled=get_site_settings().email_notifications,
    )
    return jsonify({'success': True, 'request': loan_request.to_dict(get_request_locale())}), 201


@loans.route('/loan-requests/<int:request_id>', methods=['PUT'])
@login_required
def update_request(request_id):
    body = get_json_body()
    status = (body.get('status') or '').upper()
    if not status:
        raise ValidationError('status is required.')

    loan_request, loan = loan_service.transition_loan_request(
        current_user(),
        request_id,
        status,
        response_message=optional_str(body, 'response_message'),
        email_enabled=get_site_settings().email_notifications,
    )
    locale = get_request_locale()
    return jsonify({
        'success': True,
        'request': loan_request.to_dict(locale),
        'loan': loan.to_dict(locale) if loan else None,
    })


@loans.route('/loans', methods=['GET'])
@login_required
def list_loans():
    loans_ = loan_service.list_loans(
        current_user(),
        direction=request.args.get('direction'),
        status=_status_arg(),
        church_id=int_arg('church_id'),
    )
    locale = get_request_locale()
    return jsonify({'success': True, 'loans': [loan.to_dict(locale) for loan in loans_]})


@loans.route('/loans/<int:loan_id>', methods=['PUT'])
@login_required
def update_loan(loan_id):
    body = get_json_body()
    status = (body.get('status') or '').upper()
    if not status:
        raise ValidationError('status is required.')

    loan = loan_service.transition_loan(
        current_user(),
        loan_id,
        status,
        notes=optional_str(body, 'notes'),
        email_enabled=get_site_settings().email_notifications,
    )
    return jsonify({'success': True, 'loan': loan.to_dict(get_request_locale())})
