import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billo.core.auth import get_current_user
from billo.core.database import get_db
from billo.models.user import User
from billo.schemas.group import (
    GroupCreate, GroupUpdate, GroupResponse, GroupListResponse, MemberAdd, MemberResponse, MemberRoleUpdate,
)
from billo.schemas.settlement import MemberBalanceResponse
from billo.services.balance_service import get_group_balances
from billo.services.group_service import (
    add_member, create_group, delete_group, get_group, list_user_groups, remove_member,
    update_group, update_member_role,
)

router = APIRouter(prefix="/api/groups", tags=["groups"])


@router.post("", response_model=GroupResponse, status_code=201)
async def create(
    body: GroupCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await create_group(db, user, body.name, body.description, body.emoji, body.member_ids)


@router.get("", response_model=list[GroupListResponse])
async def list_groups(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_user_groups(db, user.id)


@router.get("/{group_id}", response_model=GroupResponse)
async def get(
    group_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_group(db, group_id, user.id)


@router.put("/{group_id}", response_model=GroupResponse)
async def update(
    group_id: uuid.UUID,
    body: GroupUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await update_group(db, group_id, user.id, name=body.name, description=body.description, emoji=body.emoji)


@router.delete("/{group_id}", status_code=204)
async def delete(
    group_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await delete_group(db, group_id, user.id)


@router.get("/{group_id}/balances", response_model=list[MemberBalanceResponse])
async def balances(
    group_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return [b.to_dict() for b in await get_group_balances(db, group_id, user.id)]


@router.post("/{group_id}/members", response_model=MemberResponse, status_code=201)
async def add(
    group_id: uuid.UUID,
    body: MemberAdd,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await add_member(db, group_id, user.id, body.user_id, body.role)


@router.patch("/{group_id}/members/{member_id}", response_model=MemberResponse)
async def change_role(
    group_id: uuid.UUID,
    member_id: str,
    body: MemberRoleUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await update_member_role(db, group_id, user.id, member_id, body.role)


@router.delete("/{group_id}/members/{member_id}", status_code=204)
async def remove(
    group_id: uuid.UUID,
    member_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await remove_member(db, group_id, user.id, member_id)
