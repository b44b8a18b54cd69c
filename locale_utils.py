"""locale_utils.py

Helpers for the bilingual (English / Spanish) content fields.
"""

from flask import request

SUPPORTED_LOCALES = ('en', 'es')
DEFAULT_LOCALE = 'en'


def localized_field(locale, en_value, es_value):
    """Return the Spanish value for 'es' when it is set, otherwise the English one."""
    if locale == 'es' and es_value:
        return es_value
    return en_value or ''


def get_request_locale():
    """Locale for the current request: ?locale=, then Accept-Language, then 'en'."""
    locale = (request.args.get('locale') or '').lower()
    if locale in SUPPORTED_LOCALES:
        return locale
    best = request.accept_languages.best_match(SUPPORTED_LOCALES)
    return best or DEFAULT_LOCALE
