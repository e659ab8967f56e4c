import json
from decimal import Decimal

import pytest

from app import commands, queries
from app.errors import ValidationError


async def test_unknown_order_is_not_found(cache, store):
    assert await queries.get_order(cache, store, "missing") is None


async def test_malformed_order_id_is_rejected(cache, store):
    with pytest.raises(ValidationError):
        await queries.get_order(cache, store, "bad id!")


async def test_miss_reads_store_and_populates_cache(cache, store, redis):
    await store.upsert_order("ord-1", Decimal("100"), Decimal("18"), Decimal("118"))

    lookup = await queries.get_order(cache, store, "ord-1")

    assert lookup.cache_hit is False
    assert lookup.record.total == Decimal("118.0000")
    assert lookup.record.status.value == "completed"
    cached = json.loads(redis.values["order:ord-1"])
    assert cached["total"] == "118.0000"
    assert redis.ttls["order:ord-1"] == 3600


async def test_hit_refreshes_ttl(cache, store, redis):
    await store.upsert_order("ord-1", Decimal("100"), Decimal("18"), Decimal("118"))
    await queries.get_order(cache, store, "ord-1")
    redis.ttls["order:ord-1"] = 12

    lookup = await queries.get_order(cache, store, "ord-1")

    assert lookup.cache_hit is True
    assert redis.ttls["order:ord-1"] == 3600


async def test_cache_error_is_treated_as_miss(cache, store, redis):
    await store.upsert_order("ord-1", Decimal("100"), Decimal("18"), Decimal("118"))
    redis.fail("get", "setex")

    lookup = await queries.get_order(cache, store, "ord-1")

    assert lookup.cache_hit is False
    assert lookup.record.amount == Decimal("100.0000")


async def test_failed_ttl_refresh_still_serves_hit(cache, store, redis):
    await store.upsert_order("ord-1", Decimal("100"), Decimal("18"), Decimal("118"))
    await queries.get_order(cache, store, "ord-1")
    redis.fail("expire")

    lookup = await queries.get_order(cache, store, "ord-1")

    assert lookup.cache_hit is True


async def test_pending_order_reads_as_not_found(stream, cache, store):
    await commands.submit_order(stream, cache, store, "ord-1", 100)

    assert await queries.get_order(cache, store, "ord-1") is None


async def test_unreadable_cache_entry_falls_back_to_store(cache, store, redis):
    await store.upsert_order("ord-1", Decimal("100"), Decimal("18"), Decimal("118"))
    redis.values["order:ord-1"] = json.dumps({"order_id": "ord-1"})

    lookup = await queries.get_order(cache, store, "ord-1")

    assert lookup.cache_hit is False
    assert lookup.record.tax == Decimal("18.0000")


async def test_to_dict_includes_cache_flag(cache, store):
    await store.upsert_order("ord-1", Decimal("100"), Decimal("18"), Decimal("118"))

    body = (await queries.get_order(cache, store, "ord-1")).to_dict()

    assert body["cache_hit"] is False
    assert body["order_id"] == "ord-1"
    assert body["amount"] == "100.0000"
