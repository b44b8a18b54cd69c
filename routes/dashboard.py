"""routes/dashboard.py

Signed-in overview:
 - index: counts for the user's church (district wide for admins)
 - activity: the activity feed (admins see everyone, editors their own entries)
"""

from flask import Blueprint, request, jsonify
from models import Resource, LoanRequest, Loan
from constants import OPEN_LOAN_STATUSES
from decorators import login_required, current_user
from activity_service import list_activity
from locale_utils import get_request_locale
from request_utils import int_arg

dashboard = Blueprint('dashboard', __name__)


@dashboard.route('')
@login_required
def index():
    user = current_user()
    locale = get_request_locale()
    pending = LoanRequest.query.filter(LoanRequest.status == 'PENDING')
    open_loans = Loan.query.filter(Loan.status.in_(OPEN_LOAN_STATUSES))

    if user.is_admin:
        counts = {
            'resources': Resource.query.count(),
            'incoming_pending_requests': pending.count(),
            'outgoing_pending_requests': 0,
            'active_loans_lent': open_loans.count(),
            'active_loans_borrowed': 0,
        }
    else:
        church_id = user.church_id
        counts = {
            'resources': Resource.query.filter_by(church_id=church_id).count(),
            'incoming_pending_requests': pending.join(Resource, LoanRequest.resource_id == Resource.id)
                                                .filter(Resource.church_id == church_id).count(),
            'outgoing_pending_requests': pending.filter(LoanRequest.requesting_church_id == church_id).count(),
            'active_loans_lent': open_loans.filter(Loan.lending_church_id == church_id).count(),
            'active_loans_borrowed': open_loans.filter(Loan.borrowing_church_id == church_id).count(),
        }

    return jsonify({'success': True, 'user': user.to_dict(locale), 'counts': counts})


@dashboard.route('/activity')
@login_required
def activity():
    feed = list_activity(
        current_user(),
        page=int_arg('page', 1, minimum=1),
        limit=int_arg('limit', 20, minimum=1, maximum=50),
        action=request.args.get('action') or None,
        entity_type=request.args.get('entity_type') or None,
    )
    return jsonify(feed)
