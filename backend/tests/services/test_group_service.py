import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from billo.core.errors import AccessDeniedError, NotFoundError, StateConflictError
from billo.models.group import GroupMember, GroupRole
from billo.services.group_service import (
    add_member, delete_group, remaining_admins, remove_member, update_member_role,
)

GROUP_ID = uuid.uuid4()
ADMIN, MEMBER, OTHER = "admin", "member", "other"


def result(scalar=None, rows=None):
    r = MagicMock()
    r.scalar_one_or_none.return_value = scalar
    r.scalar_one.return_value = scalar
    r.all.return_value = rows or []
    return r


def membership(user_id, role):
    return SimpleNamespace(id=uuid.uuid4(), group_id=GROUP_ID, user_id=user_id, role=role)


def make_db(*results):
    db = AsyncMock()
    db.add = MagicMock()
    db.get.return_value = SimpleNamespace(id=GROUP_ID)
    db.execute.side_effect = list(results)
    return db


def test_remaining_admins():
    roles = [(ADMIN, GroupRole.admin), (MEMBER, GroupRole.member)]
    assert remaining_admins(roles, ADMIN, None) == 0
    assert remaining_admins(roles, ADMIN, GroupRole.member) == 0
    assert remaining_admins(roles, MEMBER, None) == 1
    assert remaining_admins(roles, MEMBER, GroupRole.admin) == 2


@pytest.mark.asyncio
async def test_last_admin_cannot_leave():
    db = make_db(
        result(membership(ADMIN, GroupRole.admin)),
        result(rows=[(ADMIN, GroupRole.admin), (MEMBER, GroupRole.member)]),
    )
    with pytest.raises(StateConflictError, match="at least one admin"):
        await remove_member(db, GROUP_ID, ADMIN, ADMIN)
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_admin_can_leave_when_another_admin_remains():
    db = make_db(
        result(membership(ADMIN, GroupRole.admin)),
        result(rows=[(ADMIN, GroupRole.admin), (OTHER, GroupRole.admin)]),
        result(),
    )
    await remove_member(db, GROUP_ID, ADMIN, ADMIN)
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_member_cannot_remove_others():
    db = make_db(result(membership(MEMBER, GroupRole.member)))
    with pytest.raises(AccessDeniedError):
        await remove_member(db, GROUP_ID, MEMBER, OTHER)


@pytest.mark.asyncio
async def test_demoting_last_admin_is_a_conflict():
    db = make_db(
        result(membership(ADMIN, GroupRole.admin)),
        result(membership(ADMIN, GroupRole.admin)),
        result(rows=[(ADMIN, GroupRole.admin)]),
    )
    with pytest.raises(StateConflictError):
        await update_member_role(db, GROUP_ID, ADMIN, ADMIN, GroupRole.member)


@pytest.mark.asyncio
async def test_add_member_rejects_duplicates():
    db = make_db(result(membership(ADMIN, GroupRole.admin)), result(membership(OTHER, GroupRole.member)))
    with pytest.raises(StateConflictError, match="already a member"):
        await add_member(db, GROUP_ID, ADMIN, OTHER)


@pytest.mark.asyncio
async def test_add_member_requires_known_user():
    db = make_db(result(membership(ADMIN, GroupRole.admin)))
    db.get.side_effect = [SimpleNamespace(id=GROUP_ID), None]
    with pytest.raises(NotFoundError, match="User not found"):
        await add_member(db, GROUP_ID, ADMIN, "ghost")


@pytest.mark.asyncio
async def test_add_member_creates_row():
    loaded = membership(OTHER, GroupRole.member)
    db = make_db(result(membership(ADMIN, GroupRole.admin)), result(None), result(loaded))
    out = await add_member(db, GROUP_ID, ADMIN, OTHER)
    assert out is loaded
    added = db.add.call_args.args[0]
    assert isinstance(added, GroupMember)
    assert added.role == GroupRole.member


@pytest.mark.asyncio
async def test_delete_group_cancels_pending_and_detaches():
    db = make_db(
        result(membership(ADMIN, GroupRole.admin)),
        MagicMock(rowcount=3),
        result(), result(), result(), result(),
    )
    await delete_group(db, GROUP_ID, ADMIN)
    assert db.execute.await_count == 6
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_delete_group_admin_only():
    db = make_db(result(membership(MEMBER, GroupRole.member)))
    with pytest.raises(AccessDeniedError):
        await delete_group(db, GROUP_ID, MEMBER)
