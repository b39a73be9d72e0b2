import logging
import uuid
from decimal import Decimal

from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from billo.core.errors import AccessDeniedError, NotFoundError, StateConflictError, ValidationError
from billo.models.group import GroupMember
from billo.models.receipt import Receipt, ReceiptItem, ItemAssignment, ReceiptStatus, SplitType
from billo.models.user import User
from billo.services.receipt_service import (
    assignment_rows, can_read_receipt, load_owned_receipt, load_receipt, receipt_items,
    regenerate_receipt_settlements,
)
from billo.services.settlement_service import cancel_receipt_settlements
from billo.services.split_service import SplitItem, build_assignment_rows
from billo.utils.currency_utils import compute_shares

logger = logging.getLogger(__name__)


async def _group_member_ids(db: AsyncSession, group_id: uuid.UUID) -> list[str]:
    result = await db.execute(
        select(GroupMember.user_id).where(GroupMember.group_id == group_id).order_by(GroupMember.joined_at)
    )
    return list(result.scalars().all())


async def _bump_version(db: AsyncSession, receipt_id: uuid.UUID, expected_version: int | None) -> int:
    stmt = update(Receipt).where(Receipt.id == receipt_id)
    if expected_version is not None:
        stmt = stmt.where(Receipt.version == expected_version)
    stmt = stmt.values(version=Receipt.version + 1).returning(Receipt.version)

    result = await db.execute(stmt)
    new_version = result.scalar_one_or_none()
    if new_version is None:
        await db.rollback()
        raise StateConflictError("Receipt was modified by someone else, please refresh")
    return new_version


async def save_assignments(
    db: AsyncSession,
    receipt_id: uuid.UUID,
    actor_id: str,
    payload: list,
    group_id: uuid.UUID | None = None,
) -> list[ItemAssignment]:
    """
    Replace every assignment of the receipt and regenerate its settlements.

    Shares are recomputed from the payload's split type and value; anything
    the client sent as a calculated amount is ignored.
    """
    receipt = await load_owned_receipt(db, receipt_id, actor_id)
    effective_group = group_id if group_id is not None else receipt.group_id

    allowed: set[str] | None = None
    if effective_group is not None:
        allowed = set(await _group_member_ids(db, effective_group))
        if actor_id not in allowed:
            raise AccessDeniedError("Access denied to this group")
        allowed.add(receipt.user_id)

    items = await receipt_items(db, receipt_id)
    split_items = [SplitItem(i.id, i.total_price, i.name) for i in items]
    rows = build_assignment_rows(split_items, payload)

    user_ids = {r.user_id for r in rows}
    if allowed is not None:
        outsiders = sorted(user_ids - allowed)
        if outsiders:
            raise ValidationError(f"User {outsiders[0]} is not a member of this group", field="assignments")
    elif user_ids:
        users_result = await db.execute(select(User.id).where(User.id.in_(user_ids)))
        unknown = sorted(user_ids - set(users_result.scalars().all()))
        if unknown:
            raise ValidationError(f"Unknown user {unknown[0]}", field="assignments")

    try:
        item_ids = [i.id for i in items]
        if item_ids:
            await db.execute(delete(ItemAssignment).where(ItemAssignment.receipt_item_id.in_(item_ids)))
        assignments = [
            ItemAssignment(
                receipt_item_id=r.receipt_item_id,
                user_id=r.user_id,
                split_type=r.split_type,
                split_value=r.split_value,
                calculated_amount=r.calculated_amount,
            )
            for r in rows
        ]
        if assignments:
            db.add_all(assignments)

        receipt.group_id = effective_group
        receipt.status = ReceiptStatus.completed
        receipt.version += 1
        await db.flush()

        await regenerate_receipt_settlements(db, receipt)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Receipt {receipt_id}: saved {len(assignments)} assignment(s)")
    return assignments


async def toggle_assignment(
    db: AsyncSession,
    receipt_id: uuid.UUID,
    item_id: uuid.UUID,
    user_id: str,
    actor_id: str,
    expected_version: int | None = None,
) -> dict:
    """
    Toggle one user on one item. Shares of every remaining assignee are
    recomputed so they still sum exactly to the item price.
    """
    receipt = await load_owned_receipt(db, receipt_id, actor_id)

    item_result = await db.execute(
        select(ReceiptItem).where(ReceiptItem.id == item_id, ReceiptItem.receipt_id == receipt_id)
    )
    item = item_result.scalar_one_or_none()
    if not item:
        raise NotFoundError("Item not found on this receipt")

    if receipt.group_id is None:
        user_result = await db.execute(select(User.id).where(User.id == user_id))
        if user_result.scalar_one_or_none() is None:
            raise ValidationError(f"Unknown user {user_id}", field="userId")
    elif user_id != receipt.user_id and user_id not in await _group_member_ids(db, receipt.group_id):
        raise ValidationError(f"User {user_id} is not a member of this group", field="userId")

    new_version = await _bump_version(db, receipt_id, expected_version)

    current_result = await db.execute(
        select(ItemAssignment).where(ItemAssignment.receipt_item_id == item_id)
    )
    current = list(current_result.scalars().all())

    if any(a.user_id == user_id for a in current):
        for a in current:
            if a.user_id == user_id:
                await db.delete(a)
                break
        remaining = [a for a in current if a.user_id != user_id]
        assigned = False
    else:
        new_assignment = ItemAssignment(
            receipt_item_id=item_id,
            user_id=user_id,
            split_type=SplitType.full,
            calculated_amount=Decimal("0"),
        )
        db.add(new_assignment)
        remaining = current + [new_assignment]
        assigned = True

    # Toggling always falls back to an even split of the item
    shares = compute_shares(item.total_price, [a.user_id for a in remaining])
    for a in remaining:
        a.split_type = SplitType.full
        a.split_value = None
        a.calculated_amount = shares[a.user_id]
    await db.flush()

    await regenerate_receipt_settlements(db, receipt)
    await db.commit()

    return {
        "assigned": assigned,
        "new_version": new_version,
        "assignments": [
            {"receipt_item_id": a.receipt_item_id, "user_id": a.user_id, "calculated_amount": a.calculated_amount}
            for a in remaining
        ],
    }


async def assign_all_to_group(
    db: AsyncSession,
    receipt_id: uuid.UUID,
    actor_id: str,
    expected_version: int | None = None,
) -> list[ItemAssignment]:
    receipt = await load_owned_receipt(db, receipt_id, actor_id)
    if receipt.group_id is None:
        raise ValidationError("Receipt is not attached to a group", field="groupId")

    member_ids = await _group_member_ids(db, receipt.group_id)
    await _bump_version(db, receipt_id, expected_version)

    items = await receipt_items(db, receipt_id)
    if items:
        await db.execute(
            delete(ItemAssignment).where(ItemAssignment.receipt_item_id.in_([i.id for i in items]))
        )

    new_assignments = []
    for item in items:
        for uid, share in compute_shares(item.total_price, member_ids).items():
            new_assignments.append(ItemAssignment(
                receipt_item_id=item.id,
                user_id=uid,
                split_type=SplitType.full,
                calculated_amount=share,
            ))
    if new_assignments:
        db.add_all(new_assignments)
    await db.flush()

    await regenerate_receipt_settlements(db, receipt)
    await db.commit()
    return new_assignments


async def get_assignments(db: AsyncSession, receipt_id: uuid.UUID, actor_id: str) -> list[ItemAssignment]:
    receipt = await load_receipt(db, receipt_id)
    if not await can_read_receipt(db, receipt, actor_id):
        raise AccessDeniedError("Access denied to this receipt")
    rows = await assignment_rows(db, receipt_id)
    if receipt.user_id != actor_id:
        rows = [r for r in rows if r.user_id == actor_id]
    return rows


async def clear_assignments(db: AsyncSession, receipt_id: uuid.UUID, actor_id: str) -> int:
    await load_owned_receipt(db, receipt_id, actor_id)
    item_ids = select(ReceiptItem.id).where(ReceiptItem.receipt_id == receipt_id)
    result = await db.execute(delete(ItemAssignment).where(ItemAssignment.receipt_item_id.in_(item_ids)))
    cancelled = await cancel_receipt_settlements(db, receipt_id)
    await db.execute(
        update(Receipt).where(Receipt.id == receipt_id).values(version=Receipt.version + 1)
    )
    await db.commit()
    logger.info(f"Receipt {receipt_id}: cleared assignments, cancelled {cancelled} settlement(s)")
    return result.rowcount or 0
