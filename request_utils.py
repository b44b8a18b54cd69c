"""request_utils.py

Small helpers for reading and checking JSON bodies and query strings.
They raise ValidationError, which app.py renders as a 400 response.
"""

import re
from datetime import datetime
from flask import request
from errors import ValidationError

EMAIL_RE = re.compile(r"^[\w\.+-]+@[\w\.-]+\.\w+$")
USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")


def get_json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object.')
    return data


def int_arg(name, default=None, minimum=None, maximum=None):
    """Integer query-string argument clamped to [minimum, maximum]; bad values fall back to default."""
    raw = request.args.get(name)
    if raw in (None, ''):
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def optional_str(data, key, max_length=None, field=None):
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field or key} must be a string.')
    value = value.strip()
    if max_length and len(value) > max_length:
        raise ValidationError(f'{field or key} must be at most {max_length} characters.')
    return value or None


def required_str(data, key, max_length=None, min_length=1, field=None):
    value = optional_str(data, key, max_length, field)
    if not value or len(value) < min_length:
        if min_length > 1:
            raise ValidationError(f'{field or key} must be at least {min_length} characters.')
        raise ValidationError(f'{field or key} is required.')
    return value


def optional_int(data, key, minimum=None, maximum=None, field=None):
    value = data.get(key)
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValidationError(f'{field or key} must be an integer.')
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field or key} must be an integer.')
    if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
        raise ValidationError(f'{field or key} is out of range.')
    return value


def parse_date(value, field='date'):
    """Parse 'YYYY-MM-DD' or an ISO 8601 datetime. Empty values give None."""
    if value in (None, ''):
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{field} must be a date string.')
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError(f'{field} is not a valid date.')
    # Stored naive, like every other timestamp in the database
    return parsed.replace(tzinfo=None)


def validate_email(value, field='email'):
    if not value or not EMAIL_RE.match(value) or len(value) > 255:
        raise ValidationError(f'{field} is not a valid email address.')
    return value.lower()
