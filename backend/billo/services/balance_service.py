import uuid
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, or_, and_
from sqlalchemy.ext.asyncio import AsyncSession

from billo.core.errors import AccessDeniedError, NotFoundError
from billo.models.group import Group, GroupMember
from billo.models.settlement import Settlement, SettlementStatus
from billo.models.user import User
from billo.utils.currency_utils import from_cents, money_str, to_cents

# Sign convention everywhere in this module:
#   positive net balance = the user owes money
#   negative net balance = the user is owed money


@dataclass
class BalanceSummary:
    total_you_owe: Decimal
    total_owed_to_you: Decimal
    net_balance: Decimal
    pending_you_owe_count: int
    pending_owed_to_you_count: int
    completed_count: int

    def to_dict(self, currency: str = "USD") -> dict:
        return {
            "total_you_owe": money_str(self.total_you_owe),
            "total_owed_to_you": money_str(self.total_owed_to_you),
            "net_balance": money_str(self.net_balance),
            "pending_you_owe_count": self.pending_you_owe_count,
            "pending_owed_to_you_count": self.pending_owed_to_you_count,
            "completed_count": self.completed_count,
            "currency": currency,
        }


@dataclass
class MemberBalance:
    user_id: str
    total_owed: Decimal
    total_owed_to: Decimal
    net_balance: Decimal
    name: str | None = None
    email: str | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "total_owed": money_str(self.total_owed),
            "total_owed_to": money_str(self.total_owed_to),
            "net_balance": money_str(self.net_balance),
        }


@dataclass
class PairBalance:
    from_user_id: str
    to_user_id: str
    amount: Decimal
    settlement_count: int = 0

    @property
    def is_settled(self) -> bool:
        return self.amount == 0

    def to_dict(self) -> dict:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "amount": money_str(self.amount),
            "settlement_count": self.settlement_count,
        }


def _status(row) -> SettlementStatus:
    return SettlementStatus(row.status)


def _pending(settlements: Iterable) -> Iterable:
    return (s for s in settlements if _status(s) == SettlementStatus.pending)


def net_balance(user_id: str, settlements: Iterable) -> Decimal:
    """What ``user_id`` owes minus what they are owed, over pending rows."""
    cents = 0
    for s in _pending(settlements):
        if s.from_user_id == user_id:
            cents += to_cents(s.amount)
        if s.to_user_id == user_id:
            cents -= to_cents(s.amount)
    return from_cents(cents)


def summarize_user(user_id: str, settlements: Iterable) -> BalanceSummary:
    owe_cents = owed_cents = 0
    owe_count = owed_count = completed = 0
    for s in settlements:
        if user_id not in (s.from_user_id, s.to_user_id):
            continue
        status = _status(s)
        if status == SettlementStatus.completed:
            completed += 1
            continue
        if status != SettlementStatus.pending:
            continue
        if s.from_user_id == user_id:
            owe_cents += to_cents(s.amount)
            owe_count += 1
        else:
            owed_cents += to_cents(s.amount)
            owed_count += 1
    return BalanceSummary(
        total_you_owe=from_cents(owe_cents),
        total_owed_to_you=from_cents(owed_cents),
        net_balance=from_cents(owe_cents - owed_cents),
        pending_you_owe_count=owe_count,
        pending_owed_to_you_count=owed_count,
        completed_count=completed,
    )


def aggregate_balances(settlements: Iterable, names: dict | None = None) -> list[MemberBalance]:
    """Per-user totals over pending rows, largest debtors first."""
    owed: dict[str, int] = defaultdict(int)
    owed_to: dict[str, int] = defaultdict(int)
    order: list[str] = []

    for s in _pending(settlements):
        cents = to_cents(s.amount)
        for uid in (s.from_user_id, s.to_user_id):
            if uid not in owed and uid not in owed_to:
                order.append(uid)
        owed[s.from_user_id] += cents
        owed_to[s.to_user_id] += cents

    names = names or {}
    balances = []
    for uid in order:
        name, email = names.get(uid, (None, None))
        balances.append(MemberBalance(
            user_id=uid,
            total_owed=from_cents(owed[uid]),
            total_owed_to=from_cents(owed_to[uid]),
            net_balance=from_cents(owed[uid] - owed_to[uid]),
            name=name,
            email=email,
        ))
    balances.sort(key=lambda b: (-b.net_balance, b.user_id))
    return balances


def _pair_key(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def _net_pairs(settlements: Iterable) -> dict[tuple[str, str], list[int]]:
    """Pair key -> [signed cents, row count]; positive means key[0] owes key[1]."""
    pairs: dict[tuple[str, str], list[int]] = defaultdict(lambda: [0, 0])
    for s in _pending(settlements):
        if s.from_user_id == s.to_user_id:
            continue
        key = _pair_key(s.from_user_id, s.to_user_id)
        cents = to_cents(s.amount)
        pairs[key][0] += cents if s.from_user_id == key[0] else -cents
        pairs[key][1] += 1
    return pairs


def _to_pair_balance(key: tuple[str, str], signed: int, count: int) -> PairBalance:
    if signed >= 0:
        return PairBalance(key[0], key[1], from_cents(signed), count)
    return PairBalance(key[1], key[0], from_cents(-signed), count)


def pair_balance(user_a: str, user_b: str, settlements: Iterable) -> PairBalance:
    """
    Net pending debt between two users.

    If A owes B 10.00 on one receipt and B owes A 4.00 on another, the result
    is A -> B 6.00. When they are square the amount is 0.00 and the direction
    is A -> B.
    """
    key = _pair_key(user_a, user_b)
    signed, count = _net_pairs(
        s for s in settlements
        if _pair_key(s.from_user_id, s.to_user_id) == key
    ).get(key, [0, 0])
    if signed == 0:
        return PairBalance(user_a, user_b, from_cents(0), count)
    return _to_pair_balance(key, signed, count)


def pair_balances(user_id: str, settlements: Iterable) -> list[PairBalance]:
    """Netted balance against every counterparty of ``user_id``, non-zero only."""
    involved = (s for s in settlements if user_id in (s.from_user_id, s.to_user_id))
    result = []
    for key, (signed, count) in _net_pairs(involved).items():
        if signed == 0:
            continue
        result.append(_to_pair_balance(key, signed, count))
    result.sort(key=lambda p: (-p.amount, p.from_user_id, p.to_user_id))
    return result


_ROW_COLUMNS = (
    Settlement.from_user_id,
    Settlement.to_user_id,
    Settlement.amount,
    Settlement.status,
)


async def get_balance_summary(db: AsyncSession, user_id: str) -> BalanceSummary:
    result = await db.execute(
        select(*_ROW_COLUMNS).where(
            Settlement.status.in_([SettlementStatus.pending, SettlementStatus.completed]),
            or_(Settlement.from_user_id == user_id, Settlement.to_user_id == user_id),
        )
    )
    return summarize_user(user_id, result.all())


async def get_group_balances(
    db: AsyncSession, group_id: uuid.UUID, requesting_user_id: str
) -> list[MemberBalance]:
    group_result = await db.execute(select(Group.created_by).where(Group.id == group_id))
    created_by = group_result.scalar_one_or_none()
    if created_by is None:
        raise NotFoundError("Group not found")

    if created_by != requesting_user_id:
        member_result = await db.execute(
            select(GroupMember.id).where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == requesting_user_id,
            )
        )
        if member_result.scalar_one_or_none() is None:
            raise AccessDeniedError("Access denied to this group")

    rows_result = await db.execute(
        select(*_ROW_COLUMNS).where(
            Settlement.group_id == group_id,
            Settlement.status == SettlementStatus.pending,
        )
    )
    rows = rows_result.all()
    if not rows:
        return []

    user_ids = {r.from_user_id for r in rows} | {r.to_user_id for r in rows}
    users_result = await db.execute(
        select(User.id, User.name, User.email).where(User.id.in_(user_ids))
    )
    names = {uid: (name, email) for uid, name, email in users_result.all()}
    return aggregate_balances(rows, names)


async def get_pair_balance(
    db: AsyncSession, user_a: str, user_b: str, group_id: uuid.UUID | None = None
) -> PairBalance:
    stmt = select(*_ROW_COLUMNS).where(
        Settlement.status == SettlementStatus.pending,
        or_(
            and_(Settlement.from_user_id == user_a, Settlement.to_user_id == user_b),
            and_(Settlement.from_user_id == user_b, Settlement.to_user_id == user_a),
        ),
    )
    if group_id is not None:
        stmt = stmt.where(Settlement.group_id == group_id)
    result = await db.execute(stmt)
    return pair_balance(user_a, user_b, result.all())


async def get_counterparty_balances(
    db: AsyncSession, user_id: str, group_id: uuid.UUID | None = None
) -> list[PairBalance]:
    stmt = select(*_ROW_COLUMNS).where(
        Settlement.status == SettlementStatus.pending,
        or_(Settlement.from_user_id == user_id, Settlement.to_user_id == user_id),
    )
    if group_id is not None:
        stmt = stmt.where(Settlement.group_id == group_id)
    result = await db.execute(stmt)
    return pair_balances(user_id, result.all())
