# admit() es idempotente: uq_group_user + releer la fila si otro insert ganó la carrera
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from runpool.core.errors import Forbidden, GroupNotFound, NotFound, Unauthenticated
from runpool.core.retry import with_store_retry
from runpool.models.group import Group
from runpool.models.membership import GroupMember
from runpool.models.user import User

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("owner", "admin")


def get_membership(db: Session, group_id: int, user_id: int, active_only: bool = True) -> GroupMember | None:
    stmt = select(GroupMember).where(
        GroupMember.group_id == group_id,
        GroupMember.user_id == user_id,
    )
    if active_only:
        stmt = stmt.where(GroupMember.is_active.is_(True))
    return db.execute(stmt).scalar_one_or_none()


def get_group(db: Session, group_id: int) -> Group:
    group = db.get(Group, group_id)
    if not group:
        raise GroupNotFound()
    return group


def require_member(db: Session, group_id: int, user: User | None) -> GroupMember:
    if user is None:
        raise Unauthenticated()
    m = get_membership(db, group_id, user.id)
    if not m:
        raise Forbidden("You must be a member of this group")
    return m


def require_admin(db: Session, group: Group, user: User | None) -> None:
    if user is None:
        raise Unauthenticated()
    if group.owner_id == user.id:
        return
    m = get_membership(db, group.id, user.id)
    if not m or m.role not in ADMIN_ROLES:
        raise Forbidden("Only the group owner or an admin can do this")


def admit_once(db: Session, user: User, group_id: int, role: str) -> GroupMember:
    # sin retry: el commit confirma también lo pendiente en la transacción
    get_group(db, group_id)

    existing = get_membership(db, group_id, user.id, active_only=False)
    if existing:
        if not existing.is_active:
            existing.is_active = True
            logger.info("membership reactivated user=%s group=%s", user.id, group_id)
        db.commit()
        return existing

    member = GroupMember(group_id=group_id, user_id=user.id, role=role)
    db.add(member)
    try:
        db.flush()  # fuerza el INSERT aquí (salta IntegrityError si duplicado)
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_membership(db, group_id, user.id, active_only=False)
        if existing is None:
            raise
        return existing

    logger.info("user=%s admitted to group=%s as %s", user.id, group_id, role)
    return member


def admit(db: Session, user: User | None, group_id: int, role: str = "member") -> GroupMember:
    if user is None:
        raise Unauthenticated()
    return with_store_retry(db, lambda: admit_once(db, user, group_id, role))


def leave(db: Session, user: User | None, group_id: int) -> GroupMember:
    if user is None:
        raise Unauthenticated()
    group = get_group(db, group_id)
    if group.owner_id == user.id:
        raise Forbidden("The owner cannot leave the group")

    m = get_membership(db, group_id, user.id)
    if not m:
        raise NotFound("You are not a member of this group")

    m.is_active = False
    db.commit()
    return m
