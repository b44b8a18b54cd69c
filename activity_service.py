"""activity_service.py

Audit trail for the application.

 - log_activity: write one ActivityLog row (failures are logged and rolled back).
 - record_activity: same, dispatched as a detached task so it never blocks or fails the caller.
 - list_activity: paginated feed; admins see everything, editors only their own entries.
"""

import logging
from models import db, ActivityLog
from tasks import run_detached

logger = logging.getLogger(__name__)


def log_activity(user_id, action, entity_type, entity_id, details=None):
    """Insert one activity log entry."""
    try:
        entry = ActivityLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            details=details or None,
        )
        db.session.add(entry)
        db.session.commit()
    except Exception:
        logger.exception("Failed to log activity %s on %s %s", action, entity_type, entity_id)
        db.session.rollback()


def log_activities(entries):
    """Insert several entries in one commit. entries: iterable of dicts with log_activity's arguments."""
    try:
        for item in entries:
            db.session.add(ActivityLog(
                user_id=item['user_id'],
                action=item['action'],
                entity_type=item['entity_type'],
                entity_id=str(item['entity_id']),
                details=item.get('details'),
            ))
        db.session.commit()
    except Exception:
        logger.exception("Failed to write activity batch")
        db.session.rollback()


def record_activity(user_id, action, entity_type, entity_id, details=None):
    run_detached(log_activity, user_id, action, entity_type, entity_id, details)


def list_activity(actor, page=1, limit=20, action=None, entity_type=None):
    page = max(1, page or 1)
    limit = min(50, max(1, limit or 20))

    query = ActivityLog.query
    if not actor.is_admin:
        query = query.filter(ActivityLog.user_id == actor.id)
    if action:
        query = query.filter(ActivityLog.action == action)
    if entity_type:
        query = query.filter(ActivityLog.entity_type == entity_type)

    total = query.count()
    logs = query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()) \
        .offset((page - 1) * limit).limit(limit).all()

    return {
        'logs': [log.to_dict() for log in logs],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'total_pages': (total + limit - 1) // limit,
        },
    }
