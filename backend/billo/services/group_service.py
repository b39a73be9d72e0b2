import logging
import uuid
from typing import Iterable

from sqlalchemy import select, delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from billo.core.errors import AccessDeniedError, NotFoundError, StateConflictError, ValidationError
from billo.models.group import Group, GroupMember, GroupRole
from billo.models.receipt import Receipt
from billo.models.settlement import Settlement
from billo.models.user import User
from billo.services.settlement_service import cancel_group_settlements

logger = logging.getLogger(__name__)


def remaining_admins(roles: Iterable[tuple[str, GroupRole]], user_id: str, new_role: GroupRole | None) -> int:
    """Admins left after ``user_id`` becomes ``new_role`` (None = removed)."""
    count = 0
    for uid, role in roles:
        if uid == user_id:
            role = new_role
        if role == GroupRole.admin:
            count += 1
    return count


async def _membership(db: AsyncSession, group_id: uuid.UUID, user_id: str) -> GroupMember | None:
    result = await db.execute(
        select(GroupMember).where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def _load_group(db: AsyncSession, group_id: uuid.UUID) -> Group:
    result = await db.execute(
        select(Group)
        .where(Group.id == group_id)
        .options(selectinload(Group.members).selectinload(GroupMember.user))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _load_member(db: AsyncSession, member_id: uuid.UUID) -> GroupMember:
    result = await db.execute(
        select(GroupMember)
        .where(GroupMember.id == member_id)
        .options(selectinload(GroupMember.user))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _require_group(db: AsyncSession, group_id: uuid.UUID) -> Group:
    group = await db.get(Group, group_id)
    if not group:
        raise NotFoundError("Group not found")
    return group


async def _require_admin(db: AsyncSession, group_id: uuid.UUID, user_id: str) -> GroupMember:
    await _require_group(db, group_id)
    member = await _membership(db, group_id, user_id)
    if not member:
        raise AccessDeniedError("Access denied to this group")
    if member.role != GroupRole.admin:
        raise AccessDeniedError("Only group admins can do this")
    return member


async def _check_last_admin(
    db: AsyncSession, group_id: uuid.UUID, user_id: str, new_role: GroupRole | None
) -> None:
    # Locks every membership row so two concurrent demotions serialise
    result = await db.execute(
        select(GroupMember.user_id, GroupMember.role)
        .where(GroupMember.group_id == group_id)
        .with_for_update()
    )
    if remaining_admins(result.all(), user_id, new_role) == 0:
        await db.rollback()
        raise StateConflictError("A group must keep at least one admin")


async def create_group(
    db: AsyncSession,
    creator: User,
    name: str,
    description: str | None = None,
    emoji: str | None = None,
    member_ids: Iterable[str] = (),
) -> Group:
    extra_ids = [uid for uid in dict.fromkeys(member_ids) if uid != creator.id]
    if extra_ids:
        users_result = await db.execute(select(User.id).where(User.id.in_(extra_ids)))
        missing = sorted(set(extra_ids) - set(users_result.scalars().all()))
        if missing:
            raise ValidationError(f"Unknown user {missing[0]}", field="memberIds")

    group = Group(name=name.strip(), description=description, emoji=emoji, created_by=creator.id)
    db.add(group)
    await db.flush()

    db.add(GroupMember(group_id=group.id, user_id=creator.id, role=GroupRole.admin))
    for uid in extra_ids:
        db.add(GroupMember(group_id=group.id, user_id=uid, role=GroupRole.member))
    await db.commit()
    group = await _load_group(db, group.id)
    logger.info(f"Group {group.id} created by {creator.id} with {len(extra_ids) + 1} member(s)")
    return group


async def list_user_groups(db: AsyncSession, user_id: str):
    result = await db.execute(
        select(Group.id, Group.name, Group.emoji, GroupMember.role, Group.created_at)
        .join(GroupMember, GroupMember.group_id == Group.id)
        .where(GroupMember.user_id == user_id)
        .order_by(Group.created_at.desc())
    )
    return result.all()


async def get_group(db: AsyncSession, group_id: uuid.UUID, user_id: str) -> Group:
    await _require_group(db, group_id)
    if not await _membership(db, group_id, user_id):
        raise AccessDeniedError("Access denied to this group")
    return await _load_group(db, group_id)


async def update_group(
    db: AsyncSession,
    group_id: uuid.UUID,
    user_id: str,
    name: str | None = None,
    description: str | None = None,
    emoji: str | None = None,
) -> Group:
    await _require_admin(db, group_id, user_id)
    group = await _require_group(db, group_id)
    if name is not None:
        group.name = name.strip()
    if description is not None:
        group.description = description or None
    if emoji is not None:
        group.emoji = emoji or None
    await db.commit()
    return await _load_group(db, group_id)


async def delete_group(db: AsyncSession, group_id: uuid.UUID, user_id: str) -> None:
    """
    Pending group settlements are cancelled; receipts and the remaining
    settlement history are kept but detached from the group.
    """
    await _require_admin(db, group_id, user_id)

    cancelled = await cancel_group_settlements(db, group_id)
    await db.execute(update(Receipt).where(Receipt.group_id == group_id).values(group_id=None))
    await db.execute(update(Settlement).where(Settlement.group_id == group_id).values(group_id=None))

    # Bulk delete members then group to avoid ORM N+1 deletion loops
    await db.execute(delete(GroupMember).where(GroupMember.group_id == group_id))
    await db.execute(delete(Group).where(Group.id == group_id))
    await db.commit()
    logger.info(f"Group {group_id} deleted by {user_id}, cancelled {cancelled} pending settlement(s)")


async def add_member(
    db: AsyncSession,
    group_id: uuid.UUID,
    actor_id: str,
    user_id: str,
    role: GroupRole = GroupRole.member,
) -> GroupMember:
    await _require_admin(db, group_id, actor_id)
    if not await db.get(User, user_id):
        raise NotFoundError("User not found")
    if await _membership(db, group_id, user_id):
        raise StateConflictError("User is already a member of this group")

    member = GroupMember(group_id=group_id, user_id=user_id, role=role)
    db.add(member)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise StateConflictError("User is already a member of this group")
    return await _load_member(db, member.id)


async def remove_member(db: AsyncSession, group_id: uuid.UUID, actor_id: str, user_id: str) -> None:
    """Admins can remove anyone; members can only leave."""
    if actor_id != user_id:
        await _require_admin(db, group_id, actor_id)
    else:
        await _require_group(db, group_id)

    member = await _membership(db, group_id, user_id)
    if not member:
        raise NotFoundError("Member not found")

    if member.role == GroupRole.admin:
        await _check_last_admin(db, group_id, user_id, None)

    await db.execute(
        delete(GroupMember).where(GroupMember.group_id == group_id, GroupMember.user_id == user_id)
    )
    await db.commit()


async def update_member_role(
    db: AsyncSession, group_id: uuid.UUID, actor_id: str, user_id: str, role: GroupRole
) -> GroupMember:
    await _require_admin(db, group_id, actor_id)
    member = await _membership(db, group_id, user_id)
    if not member:
        raise NotFoundError("Member not found")

    if member.role == GroupRole.admin and role != GroupRole.admin:
        await _check_last_admin(db, group_id, user_id, role)

    member.role = role
    await db.commit()
    return await _load_member(db, member.id)

