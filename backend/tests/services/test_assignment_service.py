import uuid
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from billo.core.errors import StateConflictError, ValidationError
from billo.models.receipt import ItemAssignment, SplitType
from billo.services import assignment_service
from billo.services.assignment_service import get_assignments, save_assignments, toggle_assignment

OWNER = "user_alice"
RECEIPT_ID = uuid.uuid4()
ITEM_ID = uuid.uuid4()


def result(scalar=None, scalars=None):
    r = MagicMock()
    r.scalar_one_or_none.return_value = scalar
    r.scalars.return_value.all.return_value = scalars or []
    return r


def receipt(group_id=None):
    return SimpleNamespace(id=RECEIPT_ID, user_id=OWNER, group_id=group_id, tax=None, version=2)


@pytest.fixture
def regenerate(monkeypatch):
    mock = AsyncMock()
    monkeypatch.setattr(assignment_service, "regenerate_receipt_settlements", mock)
    return mock


def make_db(owned, monkeypatch, *results):
    monkeypatch.setattr(assignment_service, "load_owned_receipt", AsyncMock(return_value=owned))
    db = AsyncMock()
    db.add = MagicMock()
    db.add_all = MagicMock()
    db.execute.side_effect = list(results)
    return db


@pytest.mark.asyncio
async def test_toggle_adds_user_and_resplits_item(monkeypatch, regenerate):
    item = SimpleNamespace(id=ITEM_ID, total_price=Decimal("10.01"))
    existing = ItemAssignment(
        receipt_item_id=ITEM_ID, user_id="user_bob", split_type=SplitType.full, calculated_amount=Decimal("10.01")
    )
    db = make_db(receipt(), monkeypatch, result(item), result(OWNER), result(3), result(scalars=[existing]))

    out = await toggle_assignment(db, RECEIPT_ID, ITEM_ID, OWNER, OWNER, expected_version=2)

    assert out["assigned"] is True
    assert out["new_version"] == 3
    shares = {a["user_id"]: a["calculated_amount"] for a in out["assignments"]}
    assert shares == {"user_alice": Decimal("5.01"), "user_bob": Decimal("5.00")}
    regenerate.assert_awaited_once()
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_toggle_removes_user(monkeypatch, regenerate):
    item = SimpleNamespace(id=ITEM_ID, total_price=Decimal("9.00"))
    rows = [
        ItemAssignment(receipt_item_id=ITEM_ID, user_id=uid, split_type=SplitType.full, calculated_amount=Decimal("3"))
        for uid in (OWNER, "user_bob", "user_carol")
    ]
    db = make_db(receipt(), monkeypatch, result(item), result("user_carol"), result(4), result(scalars=rows))

    out = await toggle_assignment(db, RECEIPT_ID, ITEM_ID, "user_carol", OWNER)

    assert out["assigned"] is False
    assert sum(a["calculated_amount"] for a in out["assignments"]) == Decimal("9.00")
    db.delete.assert_awaited_once_with(rows[2])


@pytest.mark.asyncio
async def test_toggle_with_stale_version_is_a_conflict(monkeypatch, regenerate):
    item = SimpleNamespace(id=ITEM_ID, total_price=Decimal("10.00"))
    db = make_db(receipt(), monkeypatch, result(item), result(OWNER), result(None))

    with pytest.raises(StateConflictError, match="modified by someone else"):
        await toggle_assignment(db, RECEIPT_ID, ITEM_ID, OWNER, OWNER, expected_version=1)

    db.rollback.assert_awaited_once()
    db.commit.assert_not_awaited()
    regenerate.assert_not_awaited()


@pytest.mark.asyncio
async def test_save_rejects_assignee_outside_group(monkeypatch, regenerate):
    group_id = uuid.uuid4()
    item = SimpleNamespace(id=ITEM_ID, total_price=Decimal("10.00"), name="Pizza")
    db = make_db(
        receipt(group_id), monkeypatch,
        result(scalars=[OWNER, "user_bob"]),
        result(scalars=[item]),
    )
    payload = [SimpleNamespace(receipt_item_id=ITEM_ID, user_id="user_mallory", split_type="full", split_value=None)]

    with pytest.raises(ValidationError, match="not a member"):
        await save_assignments(db, RECEIPT_ID, OWNER, payload)

    assert db.execute.await_count == 2
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_save_replaces_rows_and_regenerates_settlements(monkeypatch, regenerate):
    group_id = uuid.uuid4()
    owned = receipt(group_id)
    item = SimpleNamespace(id=ITEM_ID, total_price=Decimal("10.00"), name="Pizza")
    db = make_db(
        owned, monkeypatch,
        result(scalars=[OWNER, "user_bob"]),
        result(scalars=[item]),
        result(),
    )
    payload = [
        SimpleNamespace(receipt_item_id=ITEM_ID, user_id=uid, split_type="full", split_value=None)
        for uid in (OWNER, "user_bob")
    ]

    saved = await save_assignments(db, RECEIPT_ID, OWNER, payload)

    assert sorted(a.calculated_amount for a in saved) == [Decimal("5.00"), Decimal("5.00")]
    assert owned.version == 3
    regenerate.assert_awaited_once_with(db, owned)
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_toggle_rejects_unknown_user_without_group(monkeypatch, regenerate):
    item = SimpleNamespace(id=ITEM_ID, total_price=Decimal("10.00"))
    db = make_db(receipt(), monkeypatch, result(item), result(None))

    with pytest.raises(ValidationError, match="Unknown user ghost"):
        await toggle_assignment(db, RECEIPT_ID, ITEM_ID, "ghost", OWNER)

    db.add.assert_not_called()
    db.commit.assert_not_awaited()


def assignment_row(user_id):
    return SimpleNamespace(receipt_item_id=ITEM_ID, user_id=user_id, calculated_amount=Decimal("5.00"))


@pytest.fixture
def shared_receipt(monkeypatch):
    rows = [assignment_row(OWNER), assignment_row("user_bob")]
    monkeypatch.setattr(assignment_service, "load_receipt", AsyncMock(return_value=receipt()))
    monkeypatch.setattr(assignment_service, "can_read_receipt", AsyncMock(return_value=True))
    monkeypatch.setattr(assignment_service, "assignment_rows", AsyncMock(return_value=rows))
    return rows


@pytest.mark.asyncio
async def test_non_owner_sees_only_own_assignments(shared_receipt):
    rows = await get_assignments(AsyncMock(), RECEIPT_ID, "user_bob")
    assert [r.user_id for r in rows] == ["user_bob"]


@pytest.mark.asyncio
async def test_owner_sees_every_assignment(shared_receipt):
    rows = await get_assignments(AsyncMock(), RECEIPT_ID, OWNER)
    assert rows == shared_receipt
