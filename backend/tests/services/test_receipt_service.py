import uuid
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from billo.core.errors import AccessDeniedError, StateConflictError, ValidationError
from billo.models.receipt import ReceiptItem, ReceiptStatus
from billo.schemas.receipt import ExtractedReceipt, ManualItem, ManualReceiptCreate, ReceiptUpdate
from billo.services import receipt_service
from billo.services.receipt_service import (
    add_item, can_read_receipt, clean_optional, clear_items, compute_receipt_total, confirm_extraction,
    create_manual_receipt, ensure_can_transition, parse_purchase_date, prepare_items, replace_items,
    update_receipt, update_receipt_status,
)

OWNER = "owner"
RECEIPT_ID = uuid.uuid4()


def result(scalar=None, scalars=None, rows=None, rowcount=0):
    r = MagicMock()
    r.scalar_one_or_none.return_value = scalar
    r.scalar_one.return_value = scalar
    r.scalars.return_value.all.return_value = scalars or []
    r.all.return_value = rows or []
    r.rowcount = rowcount
    return r


def receipt(status=ReceiptStatus.processing, owner=OWNER):
    return SimpleNamespace(id=RECEIPT_ID, user_id=owner, group_id=None, status=status, items=[])


def extracted(**overrides):
    data = {
        "merchantName": "Luigi's",
        "purchaseDate": "2026-03-14",
        "tax": "2.00",
        "items": [
            {"name": "Pizza", "quantity": 1, "unitPrice": "20.00", "totalPrice": "20.00"},
            {"name": "Soda", "unitPrice": 2, "totalPrice": 4.0, "quantity": "2"},
        ],
    }
    data.update(overrides)
    return ExtractedReceipt.model_validate(data)


def test_clean_optional_treats_null_strings_as_missing():
    assert clean_optional("null") is None
    assert clean_optional("  ") is None
    assert clean_optional(None) is None
    assert clean_optional(" NULL ") is None
    assert clean_optional("Main St") == "Main St"


def test_parse_purchase_date():
    assert parse_purchase_date("2026-03-14") == datetime(2026, 3, 14, tzinfo=timezone.utc)
    assert parse_purchase_date("2026-03-14T18:30:00Z").hour == 18
    assert parse_purchase_date("null") is None
    assert parse_purchase_date("last tuesday") is None
    with pytest.raises(ValidationError):
        parse_purchase_date("", required=True)
    with pytest.raises(ValidationError):
        parse_purchase_date("soon", required=True)


def test_prepare_items_defaults():
    items = prepare_items(extracted().items)
    assert [i.line_number for i in items] == [1, 2]
    assert items[0].quantity == Decimal("1")
    assert items[1].total_price == Decimal("4.00")


def test_prepare_items_names_the_bad_item():
    bad = extracted(items=[
        {"name": "Pizza", "unitPrice": "20.00", "totalPrice": "20.00"},
        {"name": "Mystery", "unitPrice": "abc", "totalPrice": "3.00"},
    ])
    with pytest.raises(ValidationError) as exc:
        prepare_items(bad.items)
    assert 'for item "Mystery"' in exc.value.message
    assert exc.value.field == "items[1].unitPrice"


def test_prepare_items_missing_price():
    bad = extracted(items=[{"name": "Bread", "unitPrice": "null", "totalPrice": "2.00"}])
    with pytest.raises(ValidationError, match='item "Bread"'):
        prepare_items(bad.items)


def test_strict_items_check_line_totals():
    data = ManualReceiptCreate.model_validate({
        "merchantName": "Cafe",
        "purchaseDate": "2026-01-02",
        "items": [{"name": "Latte", "quantity": "3", "unitPrice": "4.50", "totalPrice": "12.00"}],
    })
    with pytest.raises(ValidationError, match="does not match"):
        prepare_items(data.items, strict=True)


def test_strict_items_allow_one_cent_rounding():
    data = ManualReceiptCreate.model_validate({
        "merchantName": "Deli",
        "purchaseDate": "2026-01-02",
        "items": [{"name": "Ham", "quantity": "0.333", "unitPrice": "10.00", "totalPrice": "3.34"}],
    })
    assert prepare_items(data.items, strict=True)[0].total_price == Decimal("3.34")


def test_compute_receipt_total():
    assert compute_receipt_total([Decimal("20.00"), Decimal("4.00")], Decimal("2.00")) == Decimal("26.00")
    assert compute_receipt_total([Decimal("1.10")], None) == Decimal("1.10")
    assert compute_receipt_total([], None) == Decimal("0.00")


@pytest.mark.asyncio
async def test_confirm_extraction_replaces_items_in_one_transaction():
    db = AsyncMock()
    db.add_all = MagicMock()
    fresh = receipt(ReceiptStatus.completed)
    db.execute.side_effect = [result(receipt()), result(), result(), result(), result(fresh)]

    out = await confirm_extraction(db, RECEIPT_ID, OWNER, extracted())

    assert out is fresh
    added = db.add_all.call_args.args[0]
    assert all(isinstance(i, ReceiptItem) for i in added)
    assert [i.name for i in added] == ["Pizza", "Soda"]
    db.commit.assert_awaited_once()
    db.rollback.assert_not_awaited()


@pytest.mark.asyncio
async def test_confirm_extraction_validates_before_writing():
    db = AsyncMock()
    db.execute.side_effect = [result(receipt())]
    bad = extracted(items=[{"name": "Mystery", "unitPrice": "??", "totalPrice": "1.00"}])
    with pytest.raises(ValidationError):
        await confirm_extraction(db, RECEIPT_ID, OWNER, bad)
    assert db.execute.await_count == 1
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_confirm_extraction_rolls_back_on_failure():
    db = AsyncMock()
    db.add_all = MagicMock()
    db.execute.side_effect = [result(receipt()), result(), RuntimeError("connection lost")]
    with pytest.raises(RuntimeError):
        await confirm_extraction(db, RECEIPT_ID, OWNER, extracted())
    db.rollback.assert_awaited_once()
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_confirm_extraction_owner_only():
    db = AsyncMock()
    db.execute.side_effect = [result(receipt(owner="someone-else"))]
    with pytest.raises(AccessDeniedError):
        await confirm_extraction(db, RECEIPT_ID, OWNER, extracted())


@pytest.mark.asyncio
async def test_manual_receipt_is_completed_with_total():
    db = AsyncMock()
    db.add = MagicMock()
    db.add_all = MagicMock()
    db.execute.return_value = result(receipt(ReceiptStatus.completed))
    data = ManualReceiptCreate.model_validate({
        "merchantName": "Cafe",
        "purchaseDate": "2026-01-02",
        "tax": "0.50",
        "items": [{"name": "Latte", "quantity": "2", "unitPrice": "4.50", "totalPrice": "9.00"}],
    })
    await create_manual_receipt(db, OWNER, data)
    created = db.add.call_args.args[0]
    assert created.status == ReceiptStatus.completed
    assert created.total_amount == Decimal("9.50")
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
@pytest.mark.parametrize("current,target", [
    (ReceiptStatus.pending, ReceiptStatus.uploading),
    (ReceiptStatus.uploading, ReceiptStatus.processing),
    (ReceiptStatus.processing, ReceiptStatus.failed),
    (ReceiptStatus.failed, ReceiptStatus.processing),
])
async def test_status_transitions_allowed(current, target):
    db = AsyncMock()
    db.execute.side_effect = [result(receipt(current)), result(RECEIPT_ID), result(receipt(target))]
    out = await update_receipt_status(db, RECEIPT_ID, target)
    assert out.status == target


@pytest.mark.asyncio
@pytest.mark.parametrize("current,target", [
    (ReceiptStatus.completed, ReceiptStatus.processing),
    (ReceiptStatus.pending, ReceiptStatus.completed),
    (ReceiptStatus.failed, ReceiptStatus.completed),
])
async def test_status_transitions_rejected(current, target):
    db = AsyncMock()
    db.execute.side_effect = [result(receipt(current))]
    with pytest.raises(StateConflictError):
        await update_receipt_status(db, RECEIPT_ID, target)


@pytest.mark.asyncio
async def test_confirm_extraction_twice_yields_same_items():
    snapshots = []
    for _ in range(2):
        db = AsyncMock()
        db.add_all = MagicMock()
        db.execute.side_effect = [result(receipt()), result(), result(), result(), result(receipt())]
        await confirm_extraction(db, RECEIPT_ID, OWNER, extracted())
        added = db.add_all.call_args.args[0]
        snapshots.append([(i.name, i.quantity, i.total_price) for i in added])
    assert snapshots[0] == snapshots[1]
    assert len(snapshots[0]) == 2


def test_ensure_can_transition():
    ensure_can_transition(ReceiptStatus.failed, ReceiptStatus.processing)
    with pytest.raises(StateConflictError, match="completed to processing"):
        ensure_can_transition(ReceiptStatus.completed, ReceiptStatus.processing)


def editable(tax=Decimal("1.00"), extracted_at=None):
    return SimpleNamespace(
        id=RECEIPT_ID, user_id=OWNER, group_id=None, status=ReceiptStatus.completed,
        extracted_at=extracted_at, tax=tax, total_amount=Decimal("0.00"), version=1,
        merchant_name="Cafe", items=[],
    )


def manual_item(name="Tea", price="2.50"):
    return ManualItem.model_validate({"name": name, "quantity": "1", "unitPrice": price, "totalPrice": price})


@pytest.fixture
def regenerate(monkeypatch):
    mock = AsyncMock()
    monkeypatch.setattr(receipt_service, "regenerate_receipt_settlements", mock)
    return mock


@pytest.mark.asyncio
async def test_tax_change_recomputes_total_and_settlements(regenerate):
    current = editable(tax=None)
    db = AsyncMock()
    db.execute.side_effect = [
        result(current),
        result(scalars=[Decimal("20.00"), Decimal("4.00")]),
        result(current),
    ]

    await update_receipt(db, RECEIPT_ID, OWNER, ReceiptUpdate.model_validate({"tax": "2.00"}))

    assert current.tax == Decimal("2.00")
    assert current.total_amount == Decimal("26.00")
    assert current.version == 2
    regenerate.assert_awaited_once_with(db, current)
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_merchant_edit_leaves_settlements_alone(regenerate):
    current = editable()
    db = AsyncMock()
    db.execute.side_effect = [result(current), result(current)]

    await update_receipt(db, RECEIPT_ID, OWNER, ReceiptUpdate.model_validate({"merchantName": "Bistro"}))

    assert current.merchant_name == "Bistro"
    regenerate.assert_not_awaited()


@pytest.mark.asyncio
async def test_tax_change_rolls_back_when_settlements_fail(regenerate):
    regenerate.side_effect = RuntimeError("connection lost")
    db = AsyncMock()
    db.execute.side_effect = [result(editable()), result(scalars=[Decimal("5.00")])]

    with pytest.raises(RuntimeError):
        await update_receipt(db, RECEIPT_ID, OWNER, ReceiptUpdate.model_validate({"tax": "1.00"}))

    db.rollback.assert_awaited_once()
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_assignment_holder_can_read_receipt():
    shared = receipt(owner="someone-else")
    db = AsyncMock()
    db.execute.side_effect = [result(uuid.uuid4())]
    assert await can_read_receipt(db, shared, OWNER)

    db.execute.side_effect = [result(None)]
    assert not await can_read_receipt(db, shared, "stranger")


@pytest.mark.asyncio
async def test_group_member_can_read_receipt():
    shared = SimpleNamespace(id=RECEIPT_ID, user_id="someone-else", group_id=uuid.uuid4())
    db = AsyncMock()
    db.execute.side_effect = [result(uuid.uuid4())]
    assert await can_read_receipt(db, shared, OWNER)
    assert db.execute.await_count == 1


@pytest.mark.asyncio
async def test_only_manual_receipts_take_item_edits():
    db = AsyncMock()
    db.execute.side_effect = [result(editable(extracted_at=datetime(2026, 1, 1, tzinfo=timezone.utc)))]
    with pytest.raises(ValidationError, match="Only manual receipts"):
        await replace_items(db, RECEIPT_ID, OWNER, [manual_item()])
    db.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_replace_items_recomputes_total_and_cancels_settlements():
    current = editable()
    db = AsyncMock()
    db.add_all = MagicMock()
    db.execute.side_effect = [result(current), result(), result(rowcount=2), result(scalars=["items"])]

    out = await replace_items(db, RECEIPT_ID, OWNER, [manual_item("Tea", "2.50"), manual_item("Cake", "4.00")])

    assert out == ["items"]
    assert [i.line_number for i in db.add_all.call_args.args[0]] == [1, 2]
    assert current.total_amount == Decimal("7.50")
    assert current.version == 2
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_add_item_appends_and_regenerates(regenerate):
    current = editable()
    db = AsyncMock()
    db.add = MagicMock()
    db.execute.side_effect = [
        result(current),
        result(rows=[(Decimal("9.00"), 1), (Decimal("3.00"), 2)]),
    ]

    added = await add_item(db, RECEIPT_ID, OWNER, manual_item("Tea", "2.50"))

    assert isinstance(added, ReceiptItem)
    assert added.line_number == 3
    assert current.total_amount == Decimal("15.50")
    regenerate.assert_awaited_once_with(db, current)
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_add_item_rejects_mismatched_line_total(regenerate):
    db = AsyncMock()
    db.execute.side_effect = [result(editable())]
    bad = ManualItem.model_validate({"name": "Tea", "quantity": "2", "unitPrice": "2.50", "totalPrice": "2.50"})
    with pytest.raises(ValidationError, match="does not match"):
        await add_item(db, RECEIPT_ID, OWNER, bad)
    regenerate.assert_not_awaited()


@pytest.mark.asyncio
async def test_clear_items_leaves_tax_as_total():
    current = editable(tax=Decimal("1.25"))
    db = AsyncMock()
    db.execute.side_effect = [result(current), result(rowcount=3), result()]

    removed = await clear_items(db, RECEIPT_ID, OWNER)

    assert removed == 3
    assert current.total_amount == Decimal("1.25")
    db.commit.assert_awaited_once()
