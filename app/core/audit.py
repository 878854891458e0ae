"""Audit log for billing-relevant actions."""

from typing import Any

import structlog
from pymongo.errors import PyMongoError

from app.core.logging import get_logger
from app.models.audit_log import AuditLog

log = get_logger(__name__)


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs. Best effort: a failed write is logged, never raised."""
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    try:
        await AuditLog(
            user_id=user_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            request_id=request_id,
            metadata=metadata or {},
        ).insert()
    except PyMongoError as e:
        log.warning("audit_write_failed", event_type=event_type, entity_id=entity_id, reason=str(e))
