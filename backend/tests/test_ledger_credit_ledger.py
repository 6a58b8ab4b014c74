"""Addon credit balances."""
import asyncio

import pytest
from pymongo.errors import DuplicateKeyError

from ledger.services.credit_ledger import APPLIED_GRANTS_KEPT, credit_ledger


@pytest.mark.asyncio
async def test_grant_creates_wallet(store):
    assert await credit_ledger.grant("user-1", "seo_audits", 5) is True
    assert await credit_ledger.balance("user-1", "seo_audits") == 5
    assert await credit_ledger.balance("user-1", "gbp_audits") == 0


@pytest.mark.asyncio
async def test_grants_accumulate(store):
    await credit_ledger.grant("user-1", "seo_audits", 5)
    await credit_ledger.grant_many("user-1", {"seo_audits": 10, "geo_audits": 3})

    wallet = await credit_ledger.get_credits("user-1")
    assert wallet.credits == {"seo_audits": 15, "geo_audits": 3}
    assert len(store.user_credits.docs) == 1


@pytest.mark.asyncio
async def test_replayed_reference_is_not_applied_twice(store):
    assert await credit_ledger.grant("user-1", "seo_audits", 10, reference_id="evt_1") is True
    assert await credit_ledger.grant("user-1", "seo_audits", 10, reference_id="evt_1") is False
    assert await credit_ledger.grant("user-1", "seo_audits", 10, reference_id="evt_2") is True
    assert await credit_ledger.balance("user-1", "seo_audits") == 20


def _lose_first_upsert(store, monkeypatch, competing_reference):
    """Another worker creates the wallet between our filter miss and our insert."""
    original = store.user_credits.update_one
    raced = []

    async def update_one(query, update, upsert=False, **kwargs):
        if upsert and not raced:
            raced.append(True)
            await credit_ledger.grant("user-1", "seo_audits", 10, reference_id=competing_reference)
            raise DuplicateKeyError("E11000 duplicate key error collection: user_credits index: user_id_1")
        return await original(query, update, upsert=upsert, **kwargs)

    monkeypatch.setattr(store.user_credits, "update_one", update_one)


@pytest.mark.asyncio
async def test_grant_losing_wallet_creation_race_still_applies(store, monkeypatch):
    _lose_first_upsert(store, monkeypatch, competing_reference="evt_a")
    assert await credit_ledger.grant("user-1", "seo_audits", 5, reference_id="evt_b") is True

    assert await credit_ledger.balance("user-1", "seo_audits") == 15
    assert store.user_credits.docs[0]["applied_grants"] == ["evt_a", "evt_b"]


@pytest.mark.asyncio
async def test_grant_without_reference_survives_wallet_creation_race(store, monkeypatch):
    _lose_first_upsert(store, monkeypatch, competing_reference="evt_a")
    assert await credit_ledger.grant("user-1", "seo_audits", 5) is True
    assert await credit_ledger.balance("user-1", "seo_audits") == 15


@pytest.mark.asyncio
async def test_same_reference_racing_is_applied_once(store, monkeypatch):
    _lose_first_upsert(store, monkeypatch, competing_reference="evt_a")
    assert await credit_ledger.grant("user-1", "seo_audits", 10, reference_id="evt_a") is False
    assert await credit_ledger.balance("user-1", "seo_audits") == 10


@pytest.mark.asyncio
async def test_applied_references_are_bounded(store):
    for i in range(APPLIED_GRANTS_KEPT + 5):
        await credit_ledger.grant("user-1", "seo_audits", 1, reference_id=f"evt_{i}")
    doc = store.user_credits.docs[0]
    assert len(doc["applied_grants"]) == APPLIED_GRANTS_KEPT
    assert doc["applied_grants"][-1] == f"evt_{APPLIED_GRANTS_KEPT + 4}"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -3, 1.5])
async def test_grant_rejects_non_positive_amounts(store, amount):
    with pytest.raises(ValueError):
        await credit_ledger.grant("user-1", "seo_audits", amount)
    assert store.user_credits.docs == []


@pytest.mark.asyncio
async def test_grant_rejects_invalid_quota_names(store):
    with pytest.raises(ValueError):
        await credit_ledger.grant("user-1", "credits.$bad", 1)
    with pytest.raises(ValueError):
        await credit_ledger.grant_many("user-1", {})


@pytest.mark.asyncio
async def test_consume_takes_one_unit(store):
    await credit_ledger.grant("user-1", "gbp_audits", 2)
    assert await credit_ledger.consume_addon("user-1", "gbp_audits") is True
    assert await credit_ledger.balance("user-1", "gbp_audits") == 1


@pytest.mark.asyncio
async def test_consume_without_wallet_or_balance(store):
    assert await credit_ledger.consume_addon("user-1", "gbp_audits") is False
    await credit_ledger.grant("user-1", "seo_audits", 1)
    assert await credit_ledger.consume_addon("user-1", "gbp_audits") is False


@pytest.mark.asyncio
async def test_concurrent_consumption_never_goes_negative(store):
    await credit_ledger.grant("user-1", "seo_audits", 3)
    results = await asyncio.gather(*(credit_ledger.consume_addon("user-1", "seo_audits") for _ in range(10)))

    assert results.count(True) == 3
    assert store.user_credits.docs[0]["credits"]["seo_audits"] == 0
