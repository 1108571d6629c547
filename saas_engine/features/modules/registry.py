"""
Module registry.

Lifecycle: DRAFT -> ACTIVE <-> DISABLED -> ARCHIVED (terminal).
Keys are unique and immutable. Every mutation appends a MODULE_* audit entry
in the same transaction.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4
import logging
import re

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from saas_engine.core.database import get_db_session, modules
from saas_engine.core.errors import ConflictError, NotFoundError, ValidationError
from saas_engine.features.audit.service import AuditRecorder, get_audit_recorder
from saas_engine.models.audit import AuditAction, AuditEntityType
from saas_engine.models.module import Module
from saas_engine.models.plan import PlanTier

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,99}$")


def find_module_row(session, module_ref: str, for_update: bool = False):
    """Resolve a module by id or key."""
    query = select(modules).where(or_(modules.c.id == module_ref, modules.c.key == module_ref))
    if for_update:
        query = query.with_for_update()
    return session.execute(query).first()


class ModuleRegistry:
    def __init__(self, audit: Optional[AuditRecorder] = None, session_scope=get_db_session):
        self.audit = audit or get_audit_recorder()
        self.session_scope = session_scope

    def create_module(
        self,
        key: str,
        name: str,
        description: Optional[str] = None,
        min_plan: PlanTier = PlanTier.FREE,
        created_by: Optional[str] = None,
    ) -> Module:
        key = (key or "").strip().lower()
        name = (name or "").strip()
        if not _KEY_RE.match(key):
            raise ValidationError("Module key must be lowercase letters, digits, '-' or '_'")
        if not name:
            raise ValidationError("Module name is required")

        module_id = str(uuid4())
        now = datetime.now(timezone.utc)
        try:
            with self.session_scope() as session:
                session.execute(
                    modules.insert().values(
                        id=module_id,
                        key=key,
                        name=name,
                        description=description,
                        min_plan=PlanTier(min_plan).value,
                        enabled=False,
                        is_archived=False,
                        created_at=now,
                        updated_at=now,
                    )
                )
                self.audit.record(
                    session,
                    action=AuditAction.MODULE_CREATED,
                    entity_type=AuditEntityType.MODULE,
                    entity_id=module_id,
                    performed_by=created_by,
                    metadata={"key": key, "min_plan": PlanTier(min_plan)},
                )
        except IntegrityError:
            raise ConflictError(f"Module key '{key}' already exists", code="module_key_taken")

        logger.info("[modules] created", extra={"module_id": module_id})
        return self.get_module(module_id)

    def get_module(self, module_ref: str) -> Module:
        with self.session_scope() as session:
            row = find_module_row(session, module_ref)
        if not row:
            raise NotFoundError(f"Module {module_ref} not found")
        return Module.from_row(row)

    def list_modules(self, include_archived: bool = False) -> List[Module]:
        query = select(modules).order_by(modules.c.key)
        if not include_archived:
            query = query.where(modules.c.is_archived.is_(False))
        with self.session_scope() as session:
            rows = session.execute(query).fetchall()
        return [Module.from_row(row) for row in rows]

    def enable_module(self, module_ref: str, performed_by: Optional[str] = None) -> Module:
        return self._set_enabled(module_ref, True, performed_by)

    def disable_module(self, module_ref: str, performed_by: Optional[str] = None) -> Module:
        return self._set_enabled(module_ref, False, performed_by)

    def _set_enabled(self, module_ref: str, enabled: bool, performed_by: Optional[str]) -> Module:
        with self.session_scope() as session:
            row = self._mutable_row(session, module_ref)
            if bool(row.enabled) != enabled:
                now = datetime.now(timezone.utc)
                values = {"enabled": enabled, "updated_at": now}
                if enabled and row.activated_at is None:
                    values["activated_at"] = now
                session.execute(update(modules).where(modules.c.id == row.id).values(**values))
                self.audit.record(
                    session,
                    action=AuditAction.MODULE_ENABLED if enabled else AuditAction.MODULE_DISABLED,
                    entity_type=AuditEntityType.MODULE,
                    entity_id=row.id,
                    performed_by=performed_by,
                    metadata={"key": row.key},
                )
            module_id = row.id
        return self.get_module(module_id)

    def archive_module(self, module_ref: str, performed_by: Optional[str] = None) -> Module:
        """Irreversible. Archiving an archived module is a no-op."""
        with self.session_scope() as session:
            row = find_module_row(session, module_ref, for_update=True)
            if not row:
                raise NotFoundError(f"Module {module_ref} not found")
            if not row.is_archived:
                now = datetime.now(timezone.utc)
                session.execute(
                    update(modules)
                    .where(modules.c.id == row.id)
                    .values(is_archived=True, enabled=False, archived_at=now, updated_at=now)
                )
                self.audit.record(
                    session,
                    action=AuditAction.MODULE_ARCHIVED,
                    entity_type=AuditEntityType.MODULE,
                    entity_id=row.id,
                    performed_by=performed_by,
                    metadata={"key": row.key},
                )
            module_id = row.id
        logger.info("[modules] archived", extra={"module_id": module_id})
        return self.get_module(module_id)

    def update_module(
        self,
        module_ref: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        min_plan: Optional[PlanTier] = None,
        performed_by: Optional[str] = None,
    ) -> Module:
        with self.session_scope() as session:
            row = self._mutable_row(session, module_ref)
            values = {}
            if name is not None:
                if not name.strip():
                    raise ValidationError("Module name is required")
                if name.strip() != row.name:
                    values["name"] = name.strip()
            if description is not None and description != row.description:
                values["description"] = description
            if min_plan is not None and PlanTier(min_plan).value != row.min_plan:
                values["min_plan"] = PlanTier(min_plan).value

            if values:
                changes = {k: {"from": getattr(row, k), "to": v} for k, v in values.items()}
                values["updated_at"] = datetime.now(timezone.utc)
                session.execute(update(modules).where(modules.c.id == row.id).values(**values))
                self.audit.record(
                    session,
                    action=AuditAction.MODULE_UPDATED,
                    entity_type=AuditEntityType.MODULE,
                    entity_id=row.id,
                    performed_by=performed_by,
                    metadata={"key": row.key, "changes": changes},
                )
            module_id = row.id
        return self.get_module(module_id)

    def _mutable_row(self, session, module_ref: str):
        row = find_module_row(session, module_ref, for_update=True)
        if not row:
            raise NotFoundError(f"Module {module_ref} not found")
        if row.is_archived:
            raise ConflictError(f"Module {row.key} is archived", code="module_archived")
        return row


_registry: Optional[ModuleRegistry] = None


def get_module_registry() -> ModuleRegistry:
    global _registry
    if _registry is None:
        _registry = ModuleRegistry()
    return _registry
