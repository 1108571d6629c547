"""
Module access service.

Loads stored state and delegates every decision to the entitlement resolver.
Grants and revokes are idempotent: repeating one is a reported no-op, never
an error, and only real changes are audited.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional
import logging

from sqlalchemy import and_, delete, select
from sqlalchemy.exc import IntegrityError

from saas_engine.core.database import get_db_session, module_access_grants, modules, users
from saas_engine.core.errors import NotFoundError
from saas_engine.core.logging import log_event
from saas_engine.features.audit.service import AuditRecorder, get_audit_recorder
from saas_engine.features.entitlements.resolver import AccessDecision, can_access
from saas_engine.features.modules.registry import find_module_row
from saas_engine.models.audit import AuditAction, AuditEntityType
from saas_engine.models.module import Module, ModuleAccessGrant
from saas_engine.models.user import User

logger = logging.getLogger(__name__)


class GrantOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTED = "already_existed"


class RevokeOutcome(str, Enum):
    REVOKED = "revoked"
    NOOP = "noop"


@dataclass(frozen=True)
class ModuleAccessView:
    module: Module
    decision: AccessDecision


def _load_user(session, user_id: str) -> User:
    row = session.execute(
        select(users).where(and_(users.c.id == user_id, users.c.is_deleted.is_(False)))
    ).first()
    if not row:
        raise NotFoundError(f"User {user_id} not found")
    return User.from_row(row)


def _load_module(session, module_ref: str) -> Module:
    row = find_module_row(session, module_ref)
    if not row:
        raise NotFoundError(f"Module {module_ref} not found")
    return Module.from_row(row)


def _has_grant(session, user_id: str, module_id: str) -> bool:
    row = session.execute(
        select(module_access_grants.c.id).where(
            and_(
                module_access_grants.c.user_id == user_id,
                module_access_grants.c.module_id == module_id,
            )
        )
    ).first()
    return row is not None


class ModuleAccessService:
    def __init__(self, audit: Optional[AuditRecorder] = None, session_scope=get_db_session):
        self.audit = audit or get_audit_recorder()
        self.session_scope = session_scope

    def can_access_module(self, user_id: str, module_ref: str) -> AccessDecision:
        with self.session_scope() as session:
            user = _load_user(session, user_id)
            module = _load_module(session, module_ref)
            granted = _has_grant(session, user.id, module.id)

        decision = can_access(user, module, granted)
        if not decision.allowed:
            log_event(
                "info",
                "modules.access_denied",
                user_id=user.id,
                module_id=module.id,
                extra={"reason": decision.reason.value},
            )
        return decision

    def list_for_user(self, user_id: str) -> List[ModuleAccessView]:
        """Visible (enabled, non-archived) modules with the user's decision."""
        with self.session_scope() as session:
            user = _load_user(session, user_id)
            rows = session.execute(
                select(modules)
                .where(and_(modules.c.enabled.is_(True), modules.c.is_archived.is_(False)))
                .order_by(modules.c.key)
            ).fetchall()
            granted_ids = {
                row.module_id
                for row in session.execute(
                    select(module_access_grants.c.module_id).where(
                        module_access_grants.c.user_id == user.id
                    )
                ).fetchall()
            }

        views = []
        for row in rows:
            module = Module.from_row(row)
            views.append(ModuleAccessView(module, can_access(user, module, module.id in granted_ids)))
        return views

    def grant(self, user_id: str, module_ref: str, granted_by: Optional[str] = None) -> GrantOutcome:
        try:
            with self.session_scope() as session:
                user = _load_user(session, user_id)
                module = _load_module(session, module_ref)
                if _has_grant(session, user.id, module.id):
                    return GrantOutcome.ALREADY_EXISTED
                session.execute(
                    module_access_grants.insert().values(
                        user_id=user.id,
                        module_id=module.id,
                        granted_by=granted_by,
                    )
                )
                self.audit.record(
                    session,
                    action=AuditAction.ACCESS_GRANTED,
                    entity_type=AuditEntityType.MODULE_ACCESS,
                    entity_id=f"{user.id}:{module.id}",
                    performed_by=granted_by,
                    metadata={"user_id": user.id, "module_id": module.id, "module_key": module.key},
                )
        except IntegrityError:
            # Concurrent grant won the unique constraint
            return GrantOutcome.ALREADY_EXISTED

        log_event("info", "modules.access_granted", user_id=user.id, module_id=module.id)
        return GrantOutcome.CREATED

    def revoke(self, user_id: str, module_ref: str, revoked_by: Optional[str] = None) -> RevokeOutcome:
        with self.session_scope() as session:
            module = _load_module(session, module_ref)
            result = session.execute(
                delete(module_access_grants).where(
                    and_(
                        module_access_grants.c.user_id == user_id,
                        module_access_grants.c.module_id == module.id,
                    )
                )
            )
            if not result.rowcount:
                return RevokeOutcome.NOOP
            self.audit.record(
                session,
                action=AuditAction.ACCESS_REVOKED,
                entity_type=AuditEntityType.MODULE_ACCESS,
                entity_id=f"{user_id}:{module.id}",
                performed_by=revoked_by,
                metadata={"user_id": user_id, "module_id": module.id, "module_key": module.key},
            )

        log_event("info", "modules.access_revoked", user_id=user_id, module_id=module.id)
        return RevokeOutcome.REVOKED

    def list_grants(self, user_id: str) -> List[ModuleAccessGrant]:
        with self.session_scope() as session:
            rows = session.execute(
                select(module_access_grants)
                .where(module_access_grants.c.user_id == user_id)
                .order_by(module_access_grants.c.id)
            ).fetchall()
        return [
            ModuleAccessGrant(
                user_id=row.user_id,
                module_id=row.module_id,
                granted_by=row.granted_by,
                created_at=row.created_at,
            )
            for row in rows
        ]


_service: Optional[ModuleAccessService] = None


def get_module_access_service() -> ModuleAccessService:
    global _service
    if _service is None:
        _service = ModuleAccessService()
    return _service
