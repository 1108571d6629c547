import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select

from saas_engine.core.database import audit_entries, get_db_session
from saas_engine.core.errors import ValidationError
from saas_engine.models.audit import AuditAction, AuditEntityType, AuditEntry

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500


def _safe_truncate(value: Any, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(v) for v in value]
    return _safe_truncate(value)


class AuditRecorder:
    """Appends audit entries inside the caller's transaction.

    The recorder never commits: an entry is persisted if and only if the
    state change it describes is persisted. Entries are never updated or
    deleted.
    """

    def record(
        self,
        session,
        *,
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id: str,
        performed_by: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        safe_metadata = _json_safe(metadata or {})
        # Round-trip guards against non-JSON payloads reaching the driver
        json.dumps(safe_metadata)

        session.execute(
            insert(audit_entries).values(
                action=AuditAction(action).value,
                entity_type=AuditEntityType(entity_type).value,
                entity_id=str(entity_id),
                performed_by_user_id=performed_by,
                metadata=safe_metadata,
                created_at=datetime.now(timezone.utc),
            )
        )
        logger.debug(
            "[audit] %s %s:%s by=%s",
            AuditAction(action).value,
            AuditEntityType(entity_type).value,
            entity_id,
            performed_by or "system",
        )

    def list_entries(
        self,
        *,
        action: Optional[AuditAction] = None,
        entity_type: Optional[AuditEntityType] = None,
        entity_id: Optional[str] = None,
        performed_by: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditEntry]:
        """Newest first. start and end bound created_at inclusively."""
        if start is not None and end is not None and end < start:
            raise ValidationError("end must not be before start")
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        offset = max(0, int(offset))
        query = select(audit_entries)
        if action is not None:
            query = query.where(audit_entries.c.action == AuditAction(action).value)
        if entity_type is not None:
            query = query.where(audit_entries.c.entity_type == AuditEntityType(entity_type).value)
        if entity_id is not None:
            query = query.where(audit_entries.c.entity_id == entity_id)
        if performed_by is not None:
            query = query.where(audit_entries.c.performed_by_user_id == performed_by)
        if start is not None:
            query = query.where(audit_entries.c.created_at >= start)
        if end is not None:
            query = query.where(audit_entries.c.created_at <= end)
        query = query.order_by(audit_entries.c.id.desc()).limit(limit).offset(offset)

        with get_db_session() as session:
            rows = session.execute(query).fetchall()

        return [
            AuditEntry(
                id=row.id,
                action=AuditAction(row.action),
                entity_type=AuditEntityType(row.entity_type),
                entity_id=row.entity_id,
                performed_by_user_id=row.performed_by_user_id,
                metadata=row._mapping["metadata"] or {},
                created_at=row.created_at,
            )
            for row in rows
        ]


_recorder: Optional[AuditRecorder] = None


def get_audit_recorder() -> AuditRecorder:
    global _recorder
    if _recorder is None:
        _recorder = AuditRecorder()
    return _recorder
