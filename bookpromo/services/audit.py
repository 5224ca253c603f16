import logging
from ..models import db, AuditLog

logger = logging.getLogger(__name__)


def record(event_type: str, actor_type: str, actor_id, payload: dict | None = None):
    """Add an audit row to the current session; the caller commits."""
    entry = AuditLog(
        actor_type=actor_type,
        actor_id=str(actor_id) if actor_id is not None else None,
        event_type=event_type,
        payload_json=payload or {},
    )
    db.session.add(entry)
    logger.info('audit %s by %s:%s %s', event_type, actor_type, actor_id, payload or {})
    return entry
