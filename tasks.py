"""tasks.py

Background work on top of Flask-APScheduler.

 - scheduler: the APScheduler instance (started in app.py when SCHEDULER_ENABLED).
 - run_detached(func, *args): fire-and-forget dispatch used for notifications and
   activity logging. The caller never waits for the result and never sees a failure.
"""

import logging
import uuid
from flask import current_app
from flask_apscheduler import APScheduler

logger = logging.getLogger(__name__)

scheduler = APScheduler()


def _run_in_app_context(app, func, args, kwargs):
    with app.app_context():
        try:
            func(*args, **kwargs)
        except Exception:
            logger.exception("Detached task %s failed", getattr(func, '__name__', func))


def run_detached(func, *args, **kwargs):
    """Schedule func(*args, **kwargs) without waiting for it.

    With the scheduler running the call becomes an immediate one-off job that
    runs in its own application context. Otherwise it runs inline; errors are
    logged and swallowed either way.
    """
    app = current_app._get_current_object()
    if scheduler.running:
        try:
            scheduler.add_job(
                id=f'detached-{uuid.uuid4().hex}',
                func=_run_in_app_context,
                args=[app, func, args, kwargs],
                trigger='date',
                misfire_grace_time=None,
            )
            return
        except Exception:
            logger.exception("Could not queue detached task %s, running inline",
                             getattr(func, '__name__', func))
    try:
        func(*args, **kwargs)
    except Exception:
        logger.exception("Detached task %s failed", getattr(func, '__name__', func))
