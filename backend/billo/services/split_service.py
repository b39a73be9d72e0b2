"""
Assignment engine: who pays for which receipt line, and how much.

Everything here is pure. Callers pass items, assignments and tax in and get
totals back; nothing is cached between calls, so changing an assignment and
recomputing can never drift from recomputing from scratch.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Mapping

from billo.core.errors import ValidationError
from billo.models.receipt import SplitType
from billo.utils.currency_utils import (
    allocate_cents, compute_shares, from_cents, money_str, parse_amount, parse_money, to_cents,
)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class SplitItem:
    id: object
    total_price: Decimal
    name: str = ""


@dataclass(frozen=True)
class SplitMember:
    user_id: str
    name: str | None = None
    email: str | None = None


@dataclass
class AssignmentRow:
    receipt_item_id: object
    user_id: str
    split_type: SplitType
    split_value: Decimal | None
    calculated_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "receipt_item_id": self.receipt_item_id,
            "user_id": self.user_id,
            "split_type": self.split_type.value,
            "split_value": money_str(self.split_value) if self.split_value is not None else None,
            "calculated_amount": money_str(self.calculated_amount),
        }


@dataclass
class PersonTotal:
    user_id: str
    name: str | None
    email: str | None
    subtotal: Decimal
    tax_share: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "subtotal": money_str(self.subtotal),
            "tax_share": money_str(self.tax_share),
            "total": money_str(self.total),
        }


@dataclass
class PersonTotals:
    people: list[PersonTotal]
    items_subtotal: Decimal
    assigned_subtotal: Decimal
    tax: Decimal
    members_total: Decimal
    unassigned_item_ids: list = field(default_factory=list)

    @property
    def grand_total(self) -> Decimal:
        return self.items_subtotal + self.tax

    def for_user(self, user_id: str) -> PersonTotal | None:
        for p in self.people:
            if p.user_id == user_id:
                return p
        return None

    def to_dict(self) -> dict:
        return {
            "people": [p.to_dict() for p in self.people],
            "items_subtotal": money_str(self.items_subtotal),
            "assigned_subtotal": money_str(self.assigned_subtotal),
            "tax": money_str(self.tax),
            "members_total": money_str(self.members_total),
            "grand_total": money_str(self.grand_total),
            "unassigned_item_ids": list(self.unassigned_item_ids),
        }


class AssignmentMap:
    """Item id -> users assigned to it, in the order they were added."""

    def __init__(self, initial: Mapping | None = None):
        self._map: dict = {}
        for item_id, user_ids in (initial or {}).items():
            self._map[item_id] = list(dict.fromkeys(user_ids))

    def toggle(self, item_id, user_id: str) -> bool:
        """Add or remove ``user_id`` on the item. Returns True if now assigned."""
        users = self._map.setdefault(item_id, [])
        if user_id in users:
            users.remove(user_id)
            return False
        users.append(user_id)
        return True

    def assigned(self, item_id) -> list[str]:
        return list(self._map.get(item_id, []))

    def is_unassigned(self, item_id) -> bool:
        return not self._map.get(item_id)

    def items(self):
        return [(item_id, list(users)) for item_id, users in self._map.items()]

    def get(self, item_id, default=None):
        users = self._map.get(item_id)
        return list(users) if users is not None else default

    def __contains__(self, item_id) -> bool:
        return item_id in self._map

    def __len__(self) -> int:
        return len(self._map)


def _as_map(assignments) -> AssignmentMap:
    if isinstance(assignments, AssignmentMap):
        return assignments
    return AssignmentMap(assignments)


def compute_item_shares(total_price, user_ids: Iterable[str]) -> dict[str, Decimal]:
    """Even split of one item; n == 0 gives an empty dict."""
    return compute_shares(total_price, user_ids)


def split_evenly(items: Iterable[SplitItem], member_ids: Iterable[str]) -> AssignmentMap:
    member_ids = list(dict.fromkeys(member_ids))
    return AssignmentMap({item.id: member_ids for item in items})


def validate_assignments(items: Iterable[SplitItem], assignments) -> list[str]:
    amap = _as_map(assignments)
    errors = []
    for item in items:
        if amap.is_unassigned(item.id):
            label = item.name or str(item.id)
            errors.append(f"Item {label} has no people assigned")
    return errors


def _totals_from_item_shares(
    items: list[SplitItem],
    item_shares: dict,
    members: Iterable[SplitMember],
    tax,
) -> PersonTotals:
    # Display path: malformed tax counts as zero
    tax_amount = parse_amount(tax)

    people: dict[str, SplitMember] = {}
    for m in members:
        people.setdefault(m.user_id, m)

    subtotal_cents: dict[str, int] = defaultdict(int)
    items_subtotal_cents = 0
    assigned_cents = 0
    unassigned = []

    for item in items:
        item_cents = to_cents(item.total_price)
        items_subtotal_cents += item_cents
        shares = item_shares.get(item.id) or {}
        if not shares:
            unassigned.append(item.id)
            continue
        assigned_cents += item_cents
        for uid, share in shares.items():
            subtotal_cents[uid] += to_cents(share)
            if uid not in people:
                people[uid] = SplitMember(user_id=uid)

    user_ids = list(people.keys())
    weights = [subtotal_cents.get(uid, 0) for uid in user_ids]
    # Zero overall subtotal -> allocate_cents hands out nothing
    tax_cents = allocate_cents(to_cents(tax_amount), weights, order=user_ids)

    results = []
    for uid, tax_share in zip(user_ids, tax_cents):
        m = people[uid]
        sub = subtotal_cents.get(uid, 0)
        results.append(PersonTotal(
            user_id=uid,
            name=m.name or (m.email.split("@")[0] if m.email else None),
            email=m.email,
            subtotal=from_cents(sub),
            tax_share=from_cents(tax_share),
            total=from_cents(sub + tax_share),
        ))

    results.sort(key=lambda p: (-p.total, p.user_id))
    return PersonTotals(
        people=results,
        items_subtotal=from_cents(items_subtotal_cents),
        assigned_subtotal=from_cents(assigned_cents),
        tax=tax_amount,
        members_total=from_cents(sum(to_cents(p.total) for p in results)),
        unassigned_item_ids=unassigned,
    )


def calculate_person_totals(
    items: Iterable[SplitItem],
    assignments,
    members: Iterable[SplitMember],
    tax=None,
) -> PersonTotals:
    """
    Per-member subtotal, tax share and total for an even-split assignment map.

    Tax is split in proportion to each member's item subtotal. Items nobody is
    assigned to contribute nothing and are listed in ``unassigned_item_ids``.
    """
    items = list(items)
    amap = _as_map(assignments)
    item_shares = {item.id: compute_item_shares(item.total_price, amap.assigned(item.id)) for item in items}
    return _totals_from_item_shares(items, item_shares, members, tax)


def compute_totals(items: Iterable[SplitItem], assignments, tax=None) -> PersonTotals:
    return calculate_person_totals(items, assignments, [], tax)


def totals_from_rows(
    items: Iterable[SplitItem],
    rows: Iterable,
    members: Iterable[SplitMember],
    tax=None,
) -> PersonTotals:
    """Same as calculate_person_totals but from persisted rows of any split type."""
    items = list(items)
    item_shares: dict = defaultdict(dict)
    for row in rows:
        item_shares[row.receipt_item_id][row.user_id] = Decimal(row.calculated_amount)
    return _totals_from_item_shares(items, item_shares, members, tax)


def format_assignments_for_api(assignments, items: Iterable[SplitItem]) -> list[AssignmentRow]:
    amap = _as_map(assignments)
    by_id = {item.id: item for item in items}
    rows = []
    for item_id, user_ids in amap.items():
        item = by_id.get(item_id)
        if item is None or not user_ids:
            continue
        shares = compute_item_shares(item.total_price, user_ids)
        for uid in user_ids:
            rows.append(AssignmentRow(
                receipt_item_id=item_id,
                user_id=uid,
                split_type=SplitType.full,
                split_value=None,
                calculated_amount=shares[uid],
            ))
    return rows


def _split_value(raw, field_name: str) -> Decimal:
    return parse_money(raw, field_name, allow_zero=False)


def build_assignment_rows(items: Iterable[SplitItem], payload: Iterable) -> list[AssignmentRow]:
    """
    Validate client-supplied assignment rows and recompute every share.

    ``payload`` entries need ``receipt_item_id``, ``user_id``, ``split_type``
    and ``split_value``. Any client-side ``calculated_amount`` is ignored.
    """
    by_id = {item.id: item for item in items}
    grouped: dict = defaultdict(list)
    for i, entry in enumerate(payload):
        item_id = entry.receipt_item_id
        if item_id not in by_id:
            raise ValidationError(
                f"Item {item_id} does not belong to this receipt",
                field=f"assignments[{i}].receipt_item_id",
            )
        if entry.user_id in [e.user_id for _, e in grouped[item_id]]:
            raise ValidationError(
                f"User {entry.user_id} is assigned twice to item {item_id}",
                field=f"assignments[{i}].user_id",
            )
        grouped[item_id].append((i, entry))

    rows = []
    for item_id, entries in grouped.items():
        item = by_id[item_id]
        split_types = {SplitType(e.split_type) for _, e in entries}
        if len(split_types) > 1:
            raise ValidationError(
                f"Item {item.name or item_id} mixes split types",
                field=f"assignments[{entries[0][0]}].split_type",
            )
        split_type = split_types.pop()
        user_ids = [e.user_id for _, e in entries]

        if split_type == SplitType.full:
            shares = compute_item_shares(item.total_price, user_ids)
            values = {uid: None for uid in user_ids}
        elif split_type == SplitType.percentage:
            values = {
                e.user_id: _split_value(e.split_value, f"assignments[{i}].split_value")
                for i, e in entries
            }
            if sum(values.values()) != HUNDRED:
                raise ValidationError(
                    f"Percentages for item {item.name or item_id} must add up to 100",
                    field=f"assignments[{entries[0][0]}].split_value",
                )
            cents = allocate_cents(
                to_cents(item.total_price), [values[u] for u in user_ids], order=user_ids
            )
            shares = {uid: from_cents(c) for uid, c in zip(user_ids, cents)}
        else:
            values = {
                e.user_id: _split_value(e.split_value, f"assignments[{i}].split_value")
                for i, e in entries
            }
            if to_cents(sum(values.values())) != to_cents(item.total_price):
                raise ValidationError(
                    f"Amounts for item {item.name or item_id} must add up to {money_str(item.total_price)}",
                    field=f"assignments[{entries[0][0]}].split_value",
                )
            shares = dict(values)

        for uid in user_ids:
            rows.append(AssignmentRow(
                receipt_item_id=item_id,
                user_id=uid,
                split_type=split_type,
                split_value=values[uid],
                calculated_amount=shares[uid],
            ))
    return rows
