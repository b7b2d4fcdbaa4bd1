"""
Audit sink.

Rows are added to the caller's session and committed with the caller's unit
of work, so an audit entry never outlives a rolled-back change.
"""
import logging
from typing import Any, Dict, Optional

from ..extensions import db
from ..models.audit import AuditLog

logger = logging.getLogger(__name__)


def record_audit(
    actor: str,
    action: str,
    resource_type: str,
    resource_id=None,
    details: Optional[Dict[str, Any]] = None
) -> AuditLog:
    entry = AuditLog(
        actor=actor or 'system',
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details or {},
    )
    db.session.add(entry)
    logger.debug(f'Audit: {actor} {action} {resource_type}:{resource_id}')
    return entry
