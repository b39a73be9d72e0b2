import uuid
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billo.core.auth import get_current_user
from billo.core.database import get_db
from billo.core.errors import ValidationError
from billo.models.settlement import SettlementStatus
from billo.models.user import User
from billo.schemas.settlement import (
    BalanceSummaryResponse, PairBalanceResponse, SettlementCreate, SettlementResponse, SettlementUpdate,
)
from billo.services.balance_service import get_balance_summary, get_counterparty_balances, get_pair_balance
from billo.services.settlement_service import (
    SettlementAction, action_for_status, create_settlement, get_settlement, list_settlements,
    transition_settlement,
)

router = APIRouter(prefix="/api/settlements", tags=["settlements"])


@router.get("", response_model=list[SettlementResponse])
async def list_all(
    group_id: Optional[uuid.UUID] = Query(None),
    status: Optional[SettlementStatus] = Query(None),
    direction: Optional[Literal["owed", "owing"]] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_settlements(db, user.id, group_id=group_id, status=status, direction=direction)


@router.post("", response_model=SettlementResponse, status_code=201)
async def create(
    body: SettlementCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await create_settlement(
        db,
        user.id,
        body.from_user_id,
        body.to_user_id,
        body.amount,
        currency=body.currency,
        group_id=body.group_id,
        receipt_id=body.receipt_id,
        notes=body.notes,
    )


@router.get("/summary", response_model=BalanceSummaryResponse)
async def summary(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await get_balance_summary(db, user.id)
    return result.to_dict(currency=user.currency_code)


@router.get("/balances", response_model=list[PairBalanceResponse])
async def counterparty_balances(
    group_id: Optional[uuid.UUID] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return [p.to_dict() for p in await get_counterparty_balances(db, user.id, group_id)]


@router.get("/balances/{other_user_id}", response_model=PairBalanceResponse)
async def pair(
    other_user_id: str,
    group_id: Optional[uuid.UUID] = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await get_pair_balance(db, user.id, other_user_id, group_id)
    return result.to_dict()


@router.get("/{settlement_id}", response_model=SettlementResponse)
async def get(
    settlement_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await get_settlement(db, settlement_id, user.id)


@router.patch("/{settlement_id}", response_model=SettlementResponse)
async def update_status(
    settlement_id: uuid.UUID,
    body: SettlementUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    action = action_for_status(body.status)
    # Cancellation only happens through receipt and group cascades
    if action == SettlementAction.cancel:
        raise ValidationError("Settlements cannot be cancelled directly", field="status")
    return await transition_settlement(db, settlement_id, action, user.id, body.notes)
