import uuid
from collections import namedtuple
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from billo.core.errors import AccessDeniedError, NotFoundError
from billo.models.settlement import SettlementStatus
from billo.services.balance_service import (
    aggregate_balances, get_balance_summary, get_group_balances, net_balance, pair_balance,
    pair_balances, summarize_user,
)

Row = namedtuple("Row", ["from_user_id", "to_user_id", "amount", "status"])

ALICE, BOB, CAROL = "alice", "bob", "carol"
GROUP_ID = uuid.uuid4()


def row(frm, to, amount, status=SettlementStatus.pending):
    return Row(frm, to, Decimal(amount), status)


def result(rows=None, scalar=None):
    r = MagicMock()
    r.all.return_value = rows or []
    r.scalar_one_or_none.return_value = scalar
    return r


def test_net_balance_sign_convention():
    rows = [row(ALICE, BOB, "10.00"), row(CAROL, ALICE, "3.50")]
    assert net_balance(ALICE, rows) == Decimal("6.50")
    assert net_balance(BOB, rows) == Decimal("-10.00")
    assert net_balance(CAROL, rows) == Decimal("3.50")


def test_only_pending_rows_count():
    rows = [
        row(ALICE, BOB, "10.00", SettlementStatus.completed),
        row(ALICE, BOB, "4.00", SettlementStatus.cancelled),
        row(ALICE, BOB, "1.00"),
    ]
    assert net_balance(ALICE, rows) == Decimal("1.00")


def test_summarize_user():
    rows = [
        row(ALICE, BOB, "10.00"),
        row(ALICE, CAROL, "2.25"),
        row(BOB, ALICE, "5.00"),
        row(ALICE, BOB, "7.00", SettlementStatus.completed),
        row(BOB, CAROL, "99.00"),
    ]
    summary = summarize_user(ALICE, rows)
    assert summary.total_you_owe == Decimal("12.25")
    assert summary.total_owed_to_you == Decimal("5.00")
    assert summary.net_balance == Decimal("7.25")
    assert summary.pending_you_owe_count == 2
    assert summary.pending_owed_to_you_count == 1
    assert summary.completed_count == 1
    assert summary.to_dict("EUR")["net_balance"] == "7.25"


def test_aggregate_balances_sorted_by_debt():
    rows = [row(ALICE, BOB, "10.00"), row(CAROL, BOB, "4.00"), row(BOB, ALICE, "1.00")]
    balances = aggregate_balances(rows, {BOB: ("Bob", "bob@example.com")})
    assert [b.user_id for b in balances] == [ALICE, CAROL, BOB]
    by_id = {b.user_id: b for b in balances}
    assert by_id[ALICE].net_balance == Decimal("9.00")
    assert by_id[BOB].net_balance == Decimal("-13.00")
    assert by_id[BOB].name == "Bob"
    assert sum(b.net_balance for b in balances) == Decimal("0.00")


def test_pair_balance_nets_reciprocal_debts():
    rows = [row(ALICE, BOB, "10.00"), row(BOB, ALICE, "4.00")]
    result_ab = pair_balance(ALICE, BOB, rows)
    assert (result_ab.from_user_id, result_ab.to_user_id, result_ab.amount) == (ALICE, BOB, Decimal("6.00"))
    assert result_ab.settlement_count == 2

    result_ba = pair_balance(BOB, ALICE, rows)
    assert (result_ba.from_user_id, result_ba.to_user_id) == (ALICE, BOB)


def test_pair_balance_square_and_unrelated():
    rows = [row(ALICE, BOB, "5.00"), row(BOB, ALICE, "5.00"), row(CAROL, BOB, "1.00")]
    square = pair_balance(ALICE, BOB, rows)
    assert square.is_settled
    assert (square.from_user_id, square.to_user_id) == (ALICE, BOB)
    assert square.to_dict()["amount"] == "0.00"


def test_pair_balances_for_settle_up():
    rows = [
        row(ALICE, BOB, "10.00"),
        row(BOB, ALICE, "10.00"),
        row(CAROL, ALICE, "8.00"),
        row(ALICE, CAROL, "3.00"),
        row(BOB, CAROL, "50.00"),
    ]
    result_list = pair_balances(ALICE, rows)
    assert len(result_list) == 1
    assert (result_list[0].from_user_id, result_list[0].to_user_id, result_list[0].amount) == (
        CAROL, ALICE, Decimal("5.00"),
    )


@pytest.mark.asyncio
async def test_get_balance_summary_queries_once():
    db = AsyncMock()
    db.execute.return_value = result([row(ALICE, BOB, "2.00")])
    summary = await get_balance_summary(db, ALICE)
    assert summary.total_you_owe == Decimal("2.00")
    assert db.execute.await_count == 1


@pytest.mark.asyncio
async def test_group_balances_missing_group():
    db = AsyncMock()
    db.execute.return_value = result(scalar=None)
    with pytest.raises(NotFoundError):
        await get_group_balances(db, GROUP_ID, ALICE)


@pytest.mark.asyncio
async def test_group_balances_rejects_outsiders():
    db = AsyncMock()
    db.execute.side_effect = [result(scalar=BOB), result(scalar=None)]
    with pytest.raises(AccessDeniedError):
        await get_group_balances(db, GROUP_ID, CAROL)


@pytest.mark.asyncio
async def test_group_balances_for_member():
    db = AsyncMock()
    db.execute.side_effect = [
        result(scalar=BOB),
        result(scalar=uuid.uuid4()),
        result([row(ALICE, BOB, "12.00")]),
        result([(ALICE, "Alice", "alice@example.com"), (BOB, "Bob", "bob@example.com")]),
    ]
    balances = await get_group_balances(db, GROUP_ID, ALICE)
    assert [b.user_id for b in balances] == [ALICE, BOB]
    assert balances[0].to_dict()["total_owed"] == "12.00"
    assert balances[0].name == "Alice"


@pytest.mark.asyncio
async def test_group_balances_creator_skips_membership_check():
    db = AsyncMock()
    db.execute.side_effect = [result(scalar=ALICE), result([])]
    assert await get_group_balances(db, GROUP_ID, ALICE) == []
    assert db.execute.await_count == 2
