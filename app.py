"""app.py

Runtime wiring of the Flask app created in config.py:
 - Flask-Mail and the Flask-APScheduler scheduler (detached tasks + daily reminder job)
 - blueprints
 - JSON error handlers (service errors, upload too large, HTTP errors, anything else)
 - table creation and the settings row on startup
"""

import logging
import os
from flask import jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from config import app
from models import db, get_site_settings
from errors import MinistryShareError
from email_service import mail, send_due_reminders
from tasks import scheduler

logger = logging.getLogger(__name__)

# Initialize Flask-Mail
mail.init_app(app)


def send_daily_reminders():
    """Email borrowing churches whose loans are due tomorrow."""
    with app.app_context():
        sent = send_due_reminders()
        logger.info("Due-date reminders sent: %d", sent)


# Initialize APScheduler
scheduler.init_app(app)
if app.config.get('SCHEDULER_ENABLED'):
    scheduler.start()
    # Every day at 8:00
    scheduler.add_job(id='send_daily_reminders', func=send_daily_reminders,
                      trigger='cron', hour=8, minute=0, replace_existing=True)


@app.errorhandler(MinistryShareError)
def handle_service_error(e):
    return jsonify(e.to_dict()), e.status


@app.errorhandler(RequestEntityTooLarge)
def handle_file_too_large(e):
    limit_mb = app.config['MAX_CONTENT_LENGTH'] // (1024 * 1024)
    return jsonify({
        'success': False,
        'error': 'FILE_TOO_LARGE',
        'message': f'Uploaded file is too large. The limit is {limit_mb}MB.',
    }), 413


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return jsonify({
        'success': False,
        'error': e.name.upper().replace(' ', '_'),
        'message': e.description,
    }), e.code


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    logger.exception("Unhandled error: %s", e)
    db.session.rollback()
    return jsonify({'success': False, 'error': 'INTERNAL_ERROR', 'message': 'Internal server error'}), 500


# Import blueprints
from routes.main import main as main_blueprint
from routes.auth import auth as auth_blueprint
from routes.resources import resources as resources_blueprint
from routes.loans import loans as loans_blueprint
from routes.admin import admin as admin_blueprint
from routes.dashboard import dashboard as dashboard_blueprint

# Register blueprints with unique names and prefixes
app.register_blueprint(main_blueprint, name='main_bp')
app.register_blueprint(auth_blueprint, name='auth_bp', url_prefix='/auth')
app.register_blueprint(resources_blueprint, name='resources_bp', url_prefix='/resources')
app.register_blueprint(loans_blueprint, name='loans_bp')
app.register_blueprint(admin_blueprint, name='admin_bp', url_prefix='/admin')
app.register_blueprint(dashboard_blueprint, name='dashboard_bp', url_prefix='/dashboard')

# Make sure the tables and the settings row exist
with app.app_context():
    try:
        db.create_all()
        get_site_settings()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning("Skipped database initialisation (database unreachable?): %s", e)


if __name__ == '__main__':
    # Prefer PORT from environment, fallback to 8000
    port = int(os.environ.get('PORT', 8000))
    debug_mode = os.environ.get('FLASK_DEBUG', '0') in ('1', 'true', 'True')
    logger.info("Starting server on port %d", port)
    app.run(debug=debug_mode, port=port, host='0.0.0.0', use_reloader=False)
