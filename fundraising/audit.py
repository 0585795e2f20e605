from typing import Dict, Optional

from sqlalchemy.orm import Session

from .models import AuditLog


def log_audit(
    db_session: Session,
    entity_type: str,
    entity_id: Optional[int],
    action: str,
    user_id: Optional[int] = None,
    before: Optional[Dict] = None,
    after: Optional[Dict] = None,
    source: str = 'admin'
) -> AuditLog:
    """Add an audit row to the session; the caller's transaction commits it."""
    entry = AuditLog(
        user_id=user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        before_json=before,
        after_json=after,
        source=source
    )
    db_session.add(entry)
    return entry
