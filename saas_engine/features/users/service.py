"""
User domain service.
- create_user(email, role)
- get_user(user_id) / get_user_by_email(email)
- list_users(role, plan, limit, offset)
- set_role(user_id, role, performed_by)
- soft_delete_user(user_id, performed_by)
- purge_deleted_users(retention_days, dry_run)
- get_plan_truth(user_id)

Plan and subscription status are never written here; see
features/billing/reconciler.py.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4
import logging

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError

from saas_engine.core.config import settings
from saas_engine.core.database import get_db_session, module_access_grants, users
from saas_engine.core.errors import ConflictError, NotFoundError, ValidationError
from saas_engine.features.audit.service import get_audit_recorder
from saas_engine.models.audit import AuditAction, AuditEntityType
from saas_engine.models.plan import PlanTier
from saas_engine.models.user import Role, User

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100


def create_user(email: str, role: Role = Role.USER) -> User:
    normalized = User.normalize_email(email)
    if not normalized or "@" not in normalized:
        raise ValidationError("A valid email is required")

    user_id = str(uuid4())
    now = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            session.execute(
                users.insert().values(
                    id=user_id,
                    email=normalized,
                    role=Role(role).value,
                    created_at=now,
                    updated_at=now,
                )
            )
            get_audit_recorder().record(
                session,
                action=AuditAction.USER_CREATED,
                entity_type=AuditEntityType.USER,
                entity_id=user_id,
                metadata={"role": Role(role)},
            )
    except IntegrityError:
        raise ConflictError("A user with this email already exists", code="email_taken")

    logger.info("[users] created", extra={"user_id": user_id})
    return get_user(user_id)


def get_user(user_id: str, include_deleted: bool = False) -> Optional[User]:
    query = select(users).where(users.c.id == user_id)
    if not include_deleted:
        query = query.where(users.c.is_deleted.is_(False))
    with get_db_session() as session:
        row = session.execute(query).first()
    return User.from_row(row) if row else None


def get_user_by_email(email: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(
            select(users).where(
                and_(users.c.email == User.normalize_email(email), users.c.is_deleted.is_(False))
            )
        ).first()
    return User.from_row(row) if row else None


def list_users(
    *,
    role: Optional[Role] = None,
    plan: Optional[PlanTier] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[User], int]:
    """Live users, newest first, with the total count for the same filters."""
    limit = max(1, min(int(limit), MAX_LIST_LIMIT))
    offset = max(0, int(offset))
    conditions = [users.c.is_deleted.is_(False)]
    if role is not None:
        conditions.append(users.c.role == Role(role).value)
    if plan is not None:
        conditions.append(users.c.plan == PlanTier(plan).value)

    with get_db_session() as session:
        total = session.execute(select(func.count()).select_from(users).where(*conditions)).scalar()
        rows = session.execute(
            select(users)
            .where(*conditions)
            .order_by(users.c.created_at.desc(), users.c.id)
            .limit(limit)
            .offset(offset)
        ).fetchall()
    return [User.from_row(row) for row in rows], total


def require_user(user_id: str) -> User:
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


def set_role(user_id: str, role: Role, performed_by: Optional[str] = None) -> User:
    role = Role(role)
    with get_db_session() as session:
        row = session.execute(
            select(users.c.role).where(and_(users.c.id == user_id, users.c.is_deleted.is_(False)))
        ).first()
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        if row.role != role.value:
            session.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(role=role.value, updated_at=datetime.now(timezone.utc))
            )
            get_audit_recorder().record(
                session,
                action=AuditAction.ROLE_CHANGED,
                entity_type=AuditEntityType.USER,
                entity_id=user_id,
                performed_by=performed_by,
                metadata={"previous_role": row.role, "new_role": role},
            )
    return require_user(user_id)


def soft_delete_user(user_id: str, performed_by: Optional[str] = None) -> None:
    """Tombstone a user. Repeat calls are no-ops."""
    now = datetime.now(timezone.utc)
    with get_db_session() as session:
        row = session.execute(select(users.c.is_deleted).where(users.c.id == user_id)).first()
        if not row:
            raise NotFoundError(f"User {user_id} not found")
        if row.is_deleted:
            return
        session.execute(
            update(users)
            .where(users.c.id == user_id)
            .values(is_deleted=True, deleted_at=now, updated_at=now)
        )
        get_audit_recorder().record(
            session,
            action=AuditAction.USER_DELETED,
            entity_type=AuditEntityType.USER,
            entity_id=user_id,
            performed_by=performed_by,
        )
    logger.info("[users] soft-deleted", extra={"user_id": user_id})


def purge_deleted_users(
    retention_days: Optional[int] = None,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> List[str]:
    """
    Hard-delete users tombstoned longer than the retention window.

    Grants go with them; audit entries are kept.

    Returns:
        Ids of purged (or, with dry_run, purgeable) users
    """
    days = retention_days if retention_days is not None else settings.USER_RETENTION_DAYS
    if days < 0:
        raise ValidationError("retention_days must be >= 0")
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)

    with get_db_session() as session:
        rows = session.execute(
            select(users.c.id).where(
                and_(users.c.is_deleted.is_(True), users.c.deleted_at <= cutoff)
            )
        ).fetchall()
        user_ids = [row.id for row in rows]
        if user_ids and not dry_run:
            session.execute(
                delete(module_access_grants).where(module_access_grants.c.user_id.in_(user_ids))
            )
            session.execute(delete(users).where(users.c.id.in_(user_ids)))

    logger.info(
        f"[users] purge {'(dry run) ' if dry_run else ''}matched {len(user_ids)} user(s) older than {days}d"
    )
    return user_ids


def get_plan_truth(user_id: str) -> Dict[str, Any]:
    """
    Stored plan state for a user.

    Returns:
        {
            "user_id": str,
            "plan": str,
            "subscription_status": str,
            "has_billing_customer": bool,
            "has_subscription": bool,
            "updated_at": datetime | None,
        }
    """
    user = require_user(user_id)
    return {
        "user_id": user.id,
        "plan": user.plan.value,
        "subscription_status": user.subscription_status.value,
        "has_billing_customer": user.billing_customer_ref is not None,
        "has_subscription": user.billing_subscription_ref is not None,
        "updated_at": user.updated_at,
    }
