from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from billo.core.errors import ValidationError
from billo.services.user_service import search_users, update_preferences


def scalars(values):
    r = MagicMock()
    r.scalars.return_value.all.return_value = values
    return r


@pytest.mark.asyncio
@pytest.mark.parametrize("query", [None, "", "   "])
async def test_blank_search_skips_the_database(query):
    db = AsyncMock()
    assert await search_users(db, "user_alice", query) == []
    db.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_search_matches_email_and_excludes_caller():
    bob = SimpleNamespace(id="user_bob", email="bob@example.com")
    db = AsyncMock()
    db.execute.return_value = scalars([bob])

    found = await search_users(db, "user_alice", "  BOB@ ")

    assert found == [bob]
    sql = str(db.execute.await_args.args[0])
    assert "lower(users.email) LIKE" in sql
    assert "users.id !=" in sql
    assert "LIMIT" in sql


@pytest.mark.asyncio
async def test_preferences_normalise_currency():
    user = SimpleNamespace(currency_code="USD")
    db = AsyncMock()
    await update_preferences(db, user, " eur ")
    assert user.currency_code == "EUR"
    db.commit.assert_awaited_once()


@pytest.mark.asyncio
async def test_preferences_reject_unknown_currency():
    db = AsyncMock()
    with pytest.raises(ValidationError) as exc:
        await update_preferences(db, SimpleNamespace(currency_code="USD"), "XYZ")
    assert exc.value.field == "currencyCode"
    db.commit.assert_not_awaited()
