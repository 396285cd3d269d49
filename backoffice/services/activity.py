"""
Audit trail for admin mutations.

Routes queue entries while handling a request; an after_request hook writes
them once the response is known to be a success. The write runs in its own
transaction after the route has committed, so a failing audit insert is
logged with the full entry and never turns a completed mutation into an error.
"""
import logging
from dataclasses import dataclass, asdict, field
from typing import Any, Dict, Optional

from flask import g
from sqlalchemy.exc import SQLAlchemyError

from backoffice.extensions import db
from backoffice.models import ActivityLog
from backoffice.services.auth import client_ip

logger = logging.getLogger(__name__)

_OUTBOX = "activity_outbox"


@dataclass(frozen=True)
class ActivityEntry:
    admin_id: int
    action: str
    entity_type: str
    entity_id: Optional[str]
    client_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None


def log_activity(*, admin, action: str, entity_type: str, entity_id: Any, client_id: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None, ip_address: Optional[str] = None) -> ActivityEntry:
    entry = ActivityEntry(
        admin_id=int(admin.id),
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        client_id=client_id,
        details=dict(details or {}),
        ip_address=ip_address if ip_address is not None else client_ip(),
    )
    g.setdefault(_OUTBOX, []).append(entry)
    return entry


def flush_activity(response):
    entries = g.pop(_OUTBOX, None)
    if not entries:
        return response
    if response.status_code >= 400:
        logger.info("activity.discarded", extra={"count": len(entries), "status": response.status_code})
        return response
    try:
        for entry in entries:
            db.session.add(ActivityLog(**asdict(entry)))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        for entry in entries:
            logger.error("activity.write_failed", extra={"entry": asdict(entry)}, exc_info=True)
    return response


def init_activity(app) -> None:
    app.after_request(flush_activity)
