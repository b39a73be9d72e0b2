import enum
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from billo.core.errors import AccessDeniedError, NotFoundError, StateConflictError, ValidationError
from billo.models.group import GroupMember, GroupRole
from billo.models.settlement import Settlement, SettlementStatus
from billo.models.user import User
from billo.services.split_service import PersonTotals
from billo.utils.currency_utils import from_cents, is_supported_currency, money_str, parse_money, to_cents

logger = logging.getLogger(__name__)


class SettlementAction(str, enum.Enum):
    mark_paid = "mark_paid"
    mark_unpaid = "mark_unpaid"
    cancel = "cancel"


# action -> (required current status, resulting status)
TRANSITIONS: dict[SettlementAction, tuple[SettlementStatus, SettlementStatus]] = {
    SettlementAction.mark_paid: (SettlementStatus.pending, SettlementStatus.completed),
    SettlementAction.mark_unpaid: (SettlementStatus.completed, SettlementStatus.pending),
    SettlementAction.cancel: (SettlementStatus.pending, SettlementStatus.cancelled),
}


def next_status(current: SettlementStatus, action: SettlementAction) -> SettlementStatus:
    """Resulting status of ``action`` or StateConflictError if not allowed from ``current``."""
    current = SettlementStatus(current)
    if current == SettlementStatus.cancelled:
        raise StateConflictError("Settlement is cancelled")
    expected, target = TRANSITIONS[action]
    if current != expected:
        raise StateConflictError(f"Settlement is {current.value}, expected {expected.value}")
    return target


def action_for_status(target: SettlementStatus) -> SettlementAction:
    """Map a requested status (PATCH body) onto the action that reaches it."""
    return {
        SettlementStatus.completed: SettlementAction.mark_paid,
        SettlementStatus.pending: SettlementAction.mark_unpaid,
        SettlementStatus.cancelled: SettlementAction.cancel,
    }[SettlementStatus(target)]


def plan_receipt_settlements(
    owner_id: str,
    person_totals: PersonTotals,
    already_completed: dict[tuple[str, str], Decimal] | None = None,
) -> list[tuple[str, str, Decimal]]:
    """
    Obligations a receipt creates: (from_user_id, to_user_id, amount).

    The owner paid, so every other member owes the owner their total. Obligations
    are netted per user pair so reciprocal debts collapse into one row in the
    direction of net debt. Amounts already completed for a pair on this receipt
    are subtracted. Zero or negative nets produce nothing.
    """
    obligations = [
        (p.user_id, owner_id, p.total)
        for p in person_totals.people
        if p.user_id != owner_id and p.total > 0
    ]
    return net_obligations(obligations, already_completed)


def net_obligations(
    obligations: Iterable[tuple[str, str, Decimal]],
    already_completed: dict[tuple[str, str], Decimal] | None = None,
) -> list[tuple[str, str, Decimal]]:
    signed: dict[tuple[str, str], int] = defaultdict(int)
    order: list[tuple[str, str]] = []
    for debtor, creditor, amount in obligations:
        if debtor == creditor:
            continue
        key = (debtor, creditor) if debtor <= creditor else (creditor, debtor)
        if key not in signed:
            order.append(key)
        cents = to_cents(amount)
        signed[key] += cents if debtor == key[0] else -cents

    paid = already_completed or {}
    result = []
    for key in order:
        cents = signed[key]
        debtor, creditor = key if cents >= 0 else (key[1], key[0])
        cents = abs(cents) - to_cents(paid.get((debtor, creditor), Decimal("0")))
        if cents > 0:
            result.append((debtor, creditor, from_cents(cents)))
    return result


async def _is_group_admin(db: AsyncSession, group_id: uuid.UUID | None, user_id: str) -> bool:
    if group_id is None:
        return False
    result = await db.execute(
        select(GroupMember.id).where(
            GroupMember.group_id == group_id,
            GroupMember.user_id == user_id,
            GroupMember.role == GroupRole.admin,
        )
    )
    return result.scalar_one_or_none() is not None


async def _load(db: AsyncSession, settlement_id: uuid.UUID) -> Settlement:
    result = await db.execute(select(Settlement).where(Settlement.id == settlement_id))
    settlement = result.scalar_one_or_none()
    if not settlement:
        raise NotFoundError("Settlement not found")
    return settlement


async def _authorize(
    db: AsyncSession, settlement: Settlement, actor_id: str, action: SettlementAction
) -> None:
    if actor_id in (settlement.from_user_id, settlement.to_user_id):
        return
    # Reversal is reserved for the two parties
    if action != SettlementAction.mark_unpaid and await _is_group_admin(db, settlement.group_id, actor_id):
        return
    raise AccessDeniedError("Not allowed to change this settlement")


async def transition_settlement(
    db: AsyncSession,
    settlement_id: uuid.UUID,
    action: SettlementAction,
    actor_id: str | None,
    notes: str | None = None,
) -> Settlement:
    """
    Apply ``action`` with a conditional update so concurrent callers cannot
    both succeed: the UPDATE only matches while the row is still in the
    expected prior state. ``actor_id=None`` is a system cascade.
    """
    settlement = await _load(db, settlement_id)
    if actor_id is not None:
        await _authorize(db, settlement, actor_id, action)

    expected, _ = TRANSITIONS[action]
    target = next_status(settlement.status, action)

    values: dict = {"status": target, "updated_at": datetime.now(timezone.utc)}
    if action == SettlementAction.mark_paid:
        values["settled_at"] = datetime.now(timezone.utc)
    elif action == SettlementAction.mark_unpaid:
        values["settled_at"] = None
    if notes is not None:
        values["notes"] = notes or None

    result = await db.execute(
        update(Settlement)
        .where(Settlement.id == settlement_id, Settlement.status == expected)
        .values(**values)
        .returning(Settlement.id)
    )
    if result.scalar_one_or_none() is None:
        await db.rollback()
        raise StateConflictError(f"Settlement is no longer {expected.value}")
    await db.commit()

    if action == SettlementAction.mark_unpaid:
        logger.warning(
            f"Settlement {settlement_id} reverted to pending by {actor_id} "
            f"({settlement.from_user_id} -> {settlement.to_user_id}, {money_str(settlement.amount)})"
        )
    else:
        logger.info(f"Settlement {settlement_id}: {expected.value} -> {target.value} by {actor_id or 'system'}")

    await db.refresh(settlement)
    return settlement


async def mark_paid(db: AsyncSession, settlement_id: uuid.UUID, actor_id: str, notes: str | None = None) -> Settlement:
    return await transition_settlement(db, settlement_id, SettlementAction.mark_paid, actor_id, notes)


async def mark_unpaid(db: AsyncSession, settlement_id: uuid.UUID, actor_id: str, notes: str | None = None) -> Settlement:
    return await transition_settlement(db, settlement_id, SettlementAction.mark_unpaid, actor_id, notes)


async def cancel_settlement(db: AsyncSession, settlement_id: uuid.UUID, actor_id: str | None = None) -> Settlement:
    return await transition_settlement(db, settlement_id, SettlementAction.cancel, actor_id)


async def cancel_receipt_settlements(db: AsyncSession, receipt_id: uuid.UUID) -> int:
    """Cancel every pending settlement of a receipt. Caller commits."""
    result = await db.execute(
        update(Settlement)
        .where(Settlement.receipt_id == receipt_id, Settlement.status == SettlementStatus.pending)
        .values(status=SettlementStatus.cancelled, updated_at=datetime.now(timezone.utc))
    )
    return result.rowcount or 0


async def cancel_group_settlements(db: AsyncSession, group_id: uuid.UUID) -> int:
    """Cancel every pending settlement of a group. Caller commits."""
    result = await db.execute(
        update(Settlement)
        .where(Settlement.group_id == group_id, Settlement.status == SettlementStatus.pending)
        .values(status=SettlementStatus.cancelled, updated_at=datetime.now(timezone.utc))
    )
    return result.rowcount or 0


async def create_receipt_settlements(
    db: AsyncSession,
    receipt_id: uuid.UUID,
    owner_id: str,
    person_totals: PersonTotals,
    group_id: uuid.UUID | None,
    currency: str = "USD",
) -> list[Settlement]:
    """
    Replace the receipt's pending settlements with fresh ones. Caller commits.

    Completed rows are history and stay; their amounts are deducted from the
    new obligations so a re-save never bills a paid debt twice.
    """
    await cancel_receipt_settlements(db, receipt_id)

    completed_result = await db.execute(
        select(Settlement.from_user_id, Settlement.to_user_id, Settlement.amount).where(
            Settlement.receipt_id == receipt_id,
            Settlement.status == SettlementStatus.completed,
        )
    )
    already_completed: dict[tuple[str, str], Decimal] = defaultdict(Decimal)
    for from_user, to_user, amount in completed_result.all():
        already_completed[(from_user, to_user)] += amount

    planned = plan_receipt_settlements(owner_id, person_totals, already_completed)
    settlements = [
        Settlement(
            receipt_id=receipt_id,
            group_id=group_id,
            from_user_id=debtor,
            to_user_id=creditor,
            amount=amount,
            currency=currency,
            status=SettlementStatus.pending,
        )
        for debtor, creditor, amount in planned
    ]
    if settlements:
        db.add_all(settlements)
    logger.info(f"Receipt {receipt_id}: generated {len(settlements)} settlement(s)")
    return settlements


async def create_settlement(
    db: AsyncSession,
    actor_id: str,
    from_user_id: str,
    to_user_id: str,
    amount: str,
    currency: str = "USD",
    group_id: uuid.UUID | None = None,
    receipt_id: uuid.UUID | None = None,
    notes: str | None = None,
) -> Settlement:
    """Manually recorded IOU between two existing users."""
    value = parse_money(amount, "amount", allow_zero=False)
    currency = currency.strip().upper()
    if not is_supported_currency(currency):
        raise ValidationError(f"Unsupported currency: {currency}", field="currency")
    if from_user_id == to_user_id:
        raise ValidationError("A settlement needs two different users", field="to_user_id")
    if actor_id not in (from_user_id, to_user_id) and not await _is_group_admin(db, group_id, actor_id):
        raise AccessDeniedError("You can only record settlements you are part of")

    users_result = await db.execute(select(User.id).where(User.id.in_([from_user_id, to_user_id])))
    if len(set(users_result.scalars().all())) != 2:
        raise ValidationError("Invalid user IDs", field="from_user_id")

    settlement = Settlement(
        receipt_id=receipt_id,
        group_id=group_id,
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        amount=value,
        currency=currency,
        notes=notes or None,
        status=SettlementStatus.pending,
    )
    db.add(settlement)
    await db.commit()
    await db.refresh(settlement)
    return settlement


async def get_settlement(db: AsyncSession, settlement_id: uuid.UUID, actor_id: str) -> Settlement:
    settlement = await _load(db, settlement_id)
    if actor_id in (settlement.from_user_id, settlement.to_user_id):
        return settlement
    if settlement.group_id is not None:
        member = await db.execute(
            select(GroupMember.id).where(
                GroupMember.group_id == settlement.group_id,
                GroupMember.user_id == actor_id,
            )
        )
        if member.scalar_one_or_none() is not None:
            return settlement
    raise NotFoundError("Settlement not found or access denied")


async def list_settlements(
    db: AsyncSession,
    user_id: str,
    group_id: uuid.UUID | None = None,
    status: SettlementStatus | None = None,
    direction: str | None = None,
) -> list[Settlement]:
    """``direction``: ``owed`` = others owe me, ``owing`` = I owe others."""
    stmt = select(Settlement)
    if direction == "owed":
        stmt = stmt.where(Settlement.to_user_id == user_id)
    elif direction == "owing":
        stmt = stmt.where(Settlement.from_user_id == user_id)
    else:
        stmt = stmt.where(or_(Settlement.from_user_id == user_id, Settlement.to_user_id == user_id))
    if group_id is not None:
        stmt = stmt.where(Settlement.group_id == group_id)
    if status is not None:
        stmt = stmt.where(Settlement.status == status)
    result = await db.execute(stmt.order_by(Settlement.created_at.desc()))
    return list(result.scalars().all())


async def list_receipt_settlements(db: AsyncSession, receipt_id: uuid.UUID) -> list[Settlement]:
    result = await db.execute(
        select(Settlement)
        .where(Settlement.receipt_id == receipt_id)
        .order_by(Settlement.created_at)
    )
    return list(result.scalars().all())
