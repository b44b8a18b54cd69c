"""config.py

Purpose:
 - Create and configure the Flask `app` instance.
 - Session, upload, database connection, mail and import settings.

Notes:
 - Every value can be overridden from the environment (a local `.env` is loaded first).
 - DATABASE_URL wins; otherwise the MySQL variables are used (Railway / PlanetScale style).
"""

import os
import logging
import secrets
from flask import Flask
from models import db
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=os.getenv('LOG_LEVEL', 'INFO'),
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
)

# Create Flask app
app = Flask(__name__)

logger = logging.getLogger(__name__)


def load_secret_key():
    """SECRET_KEY from the environment, else a random per-process key (sessions end on restart)."""
    key = os.getenv('SECRET_KEY')
    if key:
        return key
    logger.warning("SECRET_KEY is not set; using a random key for this process")
    return secrets.token_hex(32)


app.secret_key = load_secret_key()

# Session config
app.config['SESSION_COOKIE_SECURE'] = os.getenv('SESSION_COOKIE_SECURE', 'False') == 'True'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = 7 * 24 * 3600  # 7 days

# Spreadsheet uploads for bulk import
app.config['MAX_CONTENT_LENGTH'] = 5 * 1024 * 1024  # 5MB max
ALLOWED_IMPORT_EXTENSIONS = {'csv', 'xlsx'}

# Email configuration (Flask-Mail)
app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', 587))
app.config['MAIL_USE_TLS'] = os.getenv('MAIL_USE_TLS', 'True') == 'True'
app.config['MAIL_USE_SSL'] = os.getenv('MAIL_USE_SSL', 'False') == 'True'
app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME')
app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD')
app.config['MAIL_DEFAULT_SENDER'] = (
    os.getenv('MAIL_DEFAULT_SENDER') or os.getenv('MAIL_USERNAME') or 'noreply@ministryshare.org'
)
app.config['MAIL_SUPPRESS_SEND'] = os.getenv('MAIL_SUPPRESS_SEND', 'False') == 'True'
app.config['BASE_URL'] = os.getenv('BASE_URL', 'https://www.ministryshare.org')

# Registration / verification
app.config['VERIFICATION_TOKEN_HOURS'] = int(os.getenv('VERIFICATION_TOKEN_HOURS', 24))
app.config['RESEND_COOLDOWN_MINUTES'] = int(os.getenv('RESEND_COOLDOWN_MINUTES', 60))
app.config['BOOTSTRAP_ADMIN_USERNAME'] = os.getenv('BOOTSTRAP_ADMIN_USERNAME')
app.config['BOOTSTRAP_ADMIN_PASSWORD'] = os.getenv('BOOTSTRAP_ADMIN_PASSWORD')

# Bulk import
app.config['IMPORT_BATCH_SIZE'] = int(os.getenv('IMPORT_BATCH_SIZE', 100))
app.config['IMPORT_MAX_REPORTED_ERRORS'] = int(os.getenv('IMPORT_MAX_REPORTED_ERRORS', 50))

# Background jobs (Flask-APScheduler). Disabled -> detached tasks run inline.
app.config['SCHEDULER_ENABLED'] = os.getenv('SCHEDULER_ENABLED', 'True') == 'True'
app.config['SCHEDULER_API_ENABLED'] = False

# Prefer a generic DATABASE_URL (Postgres / SQLite) when provided
DATABASE_URL = os.getenv('DATABASE_URL') or os.getenv('DATABASE_URI')
if DATABASE_URL:
    app.config['SQLALCHEMY_DATABASE_URI'] = DATABASE_URL
else:
    MYSQL_HOST = os.getenv('MYSQLHOST') or os.getenv('MYSQL_HOST') or 'localhost'
    MYSQL_USER = os.getenv('MYSQLUSER') or os.getenv('MYSQL_USER') or 'root'
    MYSQL_PASSWORD = os.getenv('MYSQLPASSWORD') or os.getenv('MYSQL_PASSWORD') or ''
    MYSQL_DB = os.getenv('MYSQLDATABASE') or os.getenv('MYSQL_DATABASE') or 'ministryshare'
    MYSQL_PORT = os.getenv('MYSQLPORT') or os.getenv('MYSQL_PORT') or '3306'

    # URL encode password to handle special characters like @
    from urllib.parse import quote_plus
    encoded_password = quote_plus(MYSQL_PASSWORD)

    app.config["SQLALCHEMY_DATABASE_URI"] = (
        f"mysql+pymysql://{MYSQL_USER}:{encoded_password}@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}"
    )

# SQLAlchemy common config
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
if not app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite'):
    # Pool settings only apply to server databases
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_pre_ping': True,
        'pool_recycle': 280,
        'pool_size': 5,
        'max_overflow': 10,
    }

# Initialize database
db.init_app(app)


def allowed_import_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_IMPORT_EXTENSIONS
