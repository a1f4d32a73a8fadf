import json
import logging

from flask import has_request_context, request

from models import db
from models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def _request_ip():
    if not has_request_context():
        return None
    return request.headers.get("X-Forwarded-For", request.remote_addr)


def log_event(action: str, actor_id=None, entity=None, entity_id=None, metadata=None):
    """Fire-and-forget audit sink. Never raises into the caller."""
    row = AuditLog(
        actor_id=actor_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=_request_ip(),
        metadata_json=json.dumps(metadata, default=str) if metadata else None
    )
    try:
        db.session.add(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.warning("audit write failed for %s %s:%s", action, entity, entity_id, exc_info=True)
