"""email_service.py

Email notifications sent through Flask-Mail.

Functions:
- build_email_html: shared HTML layout
- send_notification: workflow notifications, only when the site switch is on
- send_direct: registration mail that always goes out
- notify_*: one function per workflow / registration event. They take ids (not
  model instances) because they run as detached tasks in their own app context.

Without mail credentials (MAIL_USERNAME unset) messages are logged instead of sent.
"""

import logging
from datetime import datetime, timedelta
from flask import current_app
from flask_mail import Mail, Message
from markupsafe import escape
from models import db, Church, User, LoanRequest, Loan, get_site_settings

logger = logging.getLogger(__name__)

mail = Mail()

SITE_NAME = 'MinistryShare Austin'


def build_email_html(title, body_lines):
    """Wrap the given paragraphs (already HTML-safe) in the common email layout."""
    body = ''.join(
        f'<p style="margin:0 0 12px;color:#333;line-height:1.5">{line}</p>'
        for line in body_lines if line
    )
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="margin:0;padding:0;font-family:system-ui,-apple-system,sans-serif;background:#f5f5f4">
  <div style="max-width:560px;margin:24px auto;background:#fff;border-radius:8px;overflow:hidden;border:1px solid #e7e5e4">
    <div style="background:#78716c;padding:20px 24px">
      <h1 style="margin:0;color:#fff;font-size:18px;font-weight:600">{escape(title)}</h1>
    </div>
    <div style="padding:24px">
      {body}
    </div>
    <div style="padding:16px 24px;border-top:1px solid #e7e5e4;text-align:center">
      <p style="margin:0;color:#a8a29e;font-size:12px">{SITE_NAME}</p>
    </div>
  </div>
</body>
</html>"""


def _deliver(to, subject, html):
    config = current_app.config
    if not config.get('MAIL_USERNAME') and not config.get('MAIL_SUPPRESS_SEND'):
        logger.info("[Email] To: %s | Subject: %s", to, subject)
        return True, "Email logged (no mail server configured)."
    try:
        msg = Message(subject=subject, recipients=[to], html=html)
        mail.send(msg)
        return True, "Email sent."
    except Exception as e:
        logger.error("[Email] Failed to send '%s' to %s: %s", subject, to, e)
        return False, f"Error sending email: {e}"


def send_notification(to, subject, html, email_enabled):
    """Send a workflow notification. email_enabled is the site setting read by the caller."""
    if not email_enabled:
        return False, "Email notifications are disabled."
    if not to:
        return False, "No recipient."
    return _deliver(to, subject, html)


def send_direct(to, subject, html):
    """Send regardless of the notification switch (verification and registration mail)."""
    if not to:
        return False, "No recipient."
    return _deliver(to, subject, html)


# --- Registration emails ---

def send_verification_email(to, token, locale='en'):
    base_url = current_app.config.get('BASE_URL', '').rstrip('/')
    link = f"{base_url}/{locale}/verify-email?token={token}"
    button = ('<a href="{}" style="display:inline-block;padding:10px 20px;background:#78716c;'
              'color:#fff;border-radius:6px;text-decoration:none;font-weight:600">{}</a>')
    if locale == 'es':
        subject = f"Verifica tu correo electrónico - {SITE_NAME}"
        html = build_email_html("Verificar Correo", [
            f"Gracias por registrarte en {SITE_NAME}.",
            button.format(escape(link), "Verificar correo"),
            "Este enlace expira en 24 horas.",
        ])
    else:
        subject = f"Verify your email - {SITE_NAME}"
        html = build_email_html("Verify Email", [
            f"Thank you for registering with {SITE_NAME}.",
            button.format(escape(link), "Verify email"),
            "This link expires in 24 hours.",
        ])
    return send_direct(to, subject, html)


def notify_admin_new_registration(church_id):
    church = db.session.get(Church, church_id)
    if not church:
        return
    admins = User.query.filter(
        User.role == 'ADMIN', User.is_active == True, User.email != None
    ).all()
    subject = f"New Church Registration: {church.name}"
    html = build_email_html("New Church Registration", [
        f"A new church <strong>{escape(church.name)}</strong> has registered and is awaiting approval.",
        "Please log in to the admin dashboard to review this registration.",
    ])
    for admin in admins:
        send_direct(admin.email, subject, html)


def _first_church_contact(church):
    return church.users.filter(User.email != None).order_by(User.created_at.asc()).first()


def notify_church_approved(church_id):
    church = db.session.get(Church, church_id)
    if not church:
        return
    contact = _first_church_contact(church)
    if not contact:
        return
    html = build_email_html("Church Approved", [
        f"Hello {escape(contact.display_name)},",
        f"Great news! <strong>{escape(church.name)}</strong> has been approved on {SITE_NAME}.",
        "You can now log in and start sharing resources with other churches.",
    ])
    send_direct(contact.email, f"Your church has been approved - {SITE_NAME}", html)


def notify_church_rejected(church_id, reason=None):
    church = db.session.get(Church, church_id)
    if not church:
        return
    contact = _first_church_contact(church)
    if not contact:
        return
    lines = [
        f"Hello {escape(contact.display_name)},",
        f"We were unable to approve <strong>{escape(church.name)}</strong> on {SITE_NAME} at this time.",
    ]
    if reason:
        lines.append(f"Reason: {escape(reason)}")
    lines.append("If you have questions, please contact us.")
    send_direct(contact.email, f"Church registration update - {SITE_NAME}",
                build_email_html("Registration Update", lines))


# --- Loan request notifications ---

def notify_new_request(request_id, email_enabled):
    req = db.session.get(LoanRequest, request_id)
    if not req:
        return
    owner = req.resource.church
    subject = f"New Loan Request for {req.resource.title}"
    html = build_email_html("New Loan Request", [
        f"Hello {escape(owner.name)},",
        f"{escape(req.requesting_church.name)} has requested to borrow "
        f"<strong>&ldquo;{escape(req.resource.title)}&rdquo;</strong> from your church.",
        "Please log in to the dashboard to approve or deny this request.",
    ])
    send_notification(owner.email, subject, html, email_enabled)


def notify_request_approved(request_id, email_enabled):
    req = db.session.get(LoanRequest, request_id)
    if not req:
        return
    subject = f"Loan Request Approved: {req.resource.title}"
    html = build_email_html("Request Approved", [
        f"Hello {escape(req.requesting_church.name)},",
        f"Your request to borrow <strong>&ldquo;{escape(req.resource.title)}&rdquo;</strong> "
        f"from {escape(req.resource.church.name)} has been approved.",
        "Please coordinate pickup with the lending church.",
    ])
    send_notification(req.requesting_church.email, subject, html, email_enabled)


def notify_request_denied(request_id, email_enabled):
    req = db.session.get(LoanRequest, request_id)
    if not req:
        return
    subject = f"Loan Request Denied: {req.resource.title}"
    html = build_email_html("Request Denied", [
        f"Hello {escape(req.requesting_church.name)},",
        f"Your request to borrow <strong>&ldquo;{escape(req.resource.title)}&rdquo;</strong> "
        f"from {escape(req.resource.church.name)} has been denied.",
        f"Response: {escape(req.response_message)}" if req.response_message else None,
    ])
    send_notification(req.requesting_church.email, subject, html, email_enabled)


def notify_request_cancelled(request_id, email_enabled):
    req = db.session.get(LoanRequest, request_id)
    if not req:
        return
    owner = req.resource.church
    subject = f"Loan Request Cancelled: {req.resource.title}"
    html = build_email_html("Request Cancelled", [
        f"Hello {escape(owner.name)},",
        f"{escape(req.requesting_church.name)} has cancelled their request to borrow "
        f"<strong>&ldquo;{escape(req.resource.title)}&rdquo;</strong>.",
    ])
    send_notification(owner.email, subject, html, email_enabled)


# --- Loan notifications ---

def notify_loan_returned(loan_id, email_enabled):
    loan = db.session.get(Loan, loan_id)
    if not loan:
        return
    subject = f"Loan Returned: {loan.resource.title}"
    html = build_email_html("Loan Returned", [
        f"Hello {escape(loan.lending_church.name)},",
        f"{escape(loan.borrowing_church.name)} has returned "
        f"<strong>&ldquo;{escape(loan.resource.title)}&rdquo;</strong>.",
        "The resource is now available again.",
    ])
    send_notification(loan.lending_church.email, subject, html, email_enabled)


def notify_loan_overdue(loan_id, email_enabled):
    loan = db.session.get(Loan, loan_id)
    if not loan:
        return
    subject = f"Loan Overdue: {loan.resource.title}"
    html = build_email_html("Loan Overdue", [
        f"Hello {escape(loan.borrowing_church.name)},",
        f"The loan of <strong>&ldquo;{escape(loan.resource.title)}&rdquo;</strong> "
        f"from {escape(loan.lending_church.name)} has been marked as overdue.",
        "Please arrange return as soon as possible.",
    ])
    send_notification(loan.borrowing_church.email, subject, html, email_enabled)


def notify_loan_lost(loan_id, email_enabled):
    loan = db.session.get(Loan, loan_id)
    if not loan:
        return
    subject = f"Loan Marked Lost: {loan.resource.title}"
    html = build_email_html("Loan Marked Lost", [
        f"Hello {escape(loan.lending_church.name)},",
        f"The loan of <strong>&ldquo;{escape(loan.resource.title)}&rdquo;</strong> "
        f"to {escape(loan.borrowing_church.name)} has been marked as lost.",
        f"Please contact {escape(loan.borrowing_church.name)} to resolve.",
    ])
    send_notification(loan.lending_church.email, subject, html, email_enabled)


def send_due_reminders():
    """Remind borrowing churches about ACTIVE loans due tomorrow. Returns the number of emails sent."""
    email_enabled = get_site_settings().email_notifications
    if not email_enabled:
        return 0

    tomorrow = datetime.now() + timedelta(days=1)
    start = tomorrow.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)

    due_loans = Loan.query.filter(
        Loan.status == 'ACTIVE',
        Loan.due_date >= start,
        Loan.due_date < end,
    ).all()

    sent = 0
    for loan in due_loans:
        formatted_date = loan.due_date.strftime('%m/%d/%Y')
        html = build_email_html("Return Reminder", [
            f"Hello {escape(loan.borrowing_church.name)},",
            f"<strong>&ldquo;{escape(loan.resource.title)}&rdquo;</strong> borrowed from "
            f"{escape(loan.lending_church.name)} is due back on <strong>{formatted_date}</strong>.",
            "Please arrange the return with the lending church.",
        ])
        success, _ = send_notification(
            loan.borrowing_church.email, f"Return Reminder: {loan.resource.title}", html, email_enabled
        )
        if success:
            sent += 1
    return sent
