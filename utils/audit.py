import json
import logging

from flask import request, has_request_context, g

from models import db
from models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def _request_origin():
    if not has_request_context():
        return None, None
    ip = request.headers.get("X-Forwarded-For", request.remote_addr)
    user_agent = (request.headers.get("User-Agent") or "")[:255] or None
    return ip, user_agent


def log_event(action: str, user_id=None, entity=None, entity_id=None, metadata=None) -> AuditLog:
    """Persist one audit row. Amounts and dates in ``metadata`` are stored as strings.

    Inside a request the acting user defaults to ``g.user``; webhook and
    system events have none.
    """
    if user_id is None and has_request_context() and getattr(g, "user", None) is not None:
        user_id = g.user.id
    ip, user_agent = _request_origin()

    row = AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=ip,
        user_agent=user_agent,
        metadata_json=json.dumps(metadata, default=str, sort_keys=True) if metadata else None,
    )
    db.session.add(row)
    db.session.commit()
    logger.debug("audit %s %s=%s user=%s", action, entity, entity_id, user_id)
    return row
