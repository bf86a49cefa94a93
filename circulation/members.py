from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation.db import transaction
from circulation.errors import ConflictError, ForbiddenError, InvalidInputError, NotFoundError
from circulation.identity import Caller, Role
from circulation.models import Member


def get_member(db: Session, member_id: int) -> Optional[Member]:
    return db.get(Member, member_id)


def get_member_by_user_id(db: Session, user_id: int) -> Optional[Member]:
    return db.scalars(select(Member).where(Member.user_id == user_id)).first()


def register_member(db: Session, *, user_id: int, name: str, email: Optional[str] = None) -> Member:
    member = Member(user_id=user_id, name=name, email=email)
    try:
        with transaction(db):
            db.add(member)
    except IntegrityError:
        raise ConflictError(f"A member already exists for user {user_id}")
    db.refresh(member)
    return member


def resolve_caller(db: Session, *, user_id: int, role: Role) -> Caller:
    """Build the caller identity, attaching the member profile when one exists."""
    member = get_member_by_user_id(db, user_id)
    return Caller(user_id=user_id, role=role, member_id=member.member_id if member else None)


def require_own_member(db: Session, caller: Caller) -> Member:
    if caller.member_id is None:
        raise NotFoundError("Member profile not found")
    member = get_member(db, caller.member_id)
    if member is None:
        raise NotFoundError("Member profile not found")
    return member


def resolve_target_member(
    db: Session, caller: Caller, target_member_id: Optional[int] = None
) -> Member:
    """Pick the member an operation acts on.

    Admins must name the member. Members always act on themselves; any target
    they pass is ignored.
    """
    if not caller.is_admin:
        return require_own_member(db, caller)
    if target_member_id is None:
        raise InvalidInputError("memberId is required when an admin acts for a member")
    member = get_member(db, target_member_id)
    if member is None:
        raise NotFoundError("Member not found")
    return member


def require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise ForbiddenError("Admin role required")


def ensure_owner(caller: Caller, owner_member_id: int, what: str) -> None:
    if caller.is_admin:
        return
    if caller.member_id is None or caller.member_id != owner_member_id:
        raise ForbiddenError(f"Cannot act on {what} belonging to other members")
