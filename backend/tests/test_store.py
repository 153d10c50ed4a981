import asyncio
import threading

import pytest
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.schema import CreateTable

from marketplace.core.errors import ValidationFailed
from marketplace.db.models.store_node import StoreNode
from marketplace.store.keys import PushKeyGenerator
from marketplace.store.memory import MemoryKeyedStore
from marketplace.store.paths import split_path
from marketplace.store.sql import SqlKeyedStore


def test_push_keys_sort_in_creation_order():
    ticks = iter([1.000, 1.000, 1.000, 1.001, 0.999, 2.5])
    generate = PushKeyGenerator(clock=lambda: next(ticks))
    keys = [generate() for _ in range(6)]
    assert len(keys[0]) == 20
    assert keys == sorted(keys)
    assert len(set(keys)) == len(keys)


def test_split_path_rejects_bad_keys():
    assert split_path("/items/abc/") == ["items", "abc"]
    with pytest.raises(ValidationFailed):
        split_path("")
    with pytest.raises(ValidationFailed):
        split_path("items/a.b")


def test_set_get_and_delete(any_store):
    async def scenario():
        await any_store.set("items/a", {"title": "A", "ratings": {"u1": {"rating": 5}}})
        assert await any_store.get("items/a/title") == "A"
        assert await any_store.get("items/a/ratings/u1/rating") == 5
        assert await any_store.get("items") == {"a": {"title": "A", "ratings": {"u1": {"rating": 5}}}}

        await any_store.set("items/a/ratings/u1", None)
        assert await any_store.get("items/a") == {"title": "A"}

        await any_store.set("items/a", None)
        assert await any_store.get("items/a") is None
        assert await any_store.get("items") is None

    asyncio.run(scenario())


def test_update_is_shallow_merge(any_store):
    async def scenario():
        await any_store.set("users/u1", {"username": "neo", "role": "user", "socials": {"discord": "x"}})
        await any_store.update("users/u1", {"role": "staff", "socials": {"youtube": "y"}, "muted": None})
        assert await any_store.get("users/u1") == {
            "username": "neo",
            "role": "staff",
            "socials": {"youtube": "y"},
        }

    asyncio.run(scenario())


def test_list_values_at_collection_path(any_store):
    async def scenario():
        await any_store.set("categories", ["Maps", "Addons"])
        assert await any_store.get("categories") == ["Maps", "Addons"]
        await any_store.set("categories", ["Maps"])
        assert await any_store.get("categories") == ["Maps"]

    asyncio.run(scenario())


def test_query_end_at_is_inclusive_and_ordered(any_store):
    async def scenario():
        for key in ["k05", "k01", "k03", "k02", "k04"]:
            await any_store.set(f"items/{key}", {"n": key})

        head = await any_store.query("items").order_by_key().limit_to_last(2).get()
        assert [k for k, _ in head] == ["k04", "k05"]

        page = await any_store.query("items").order_by_key().end_at("k03").limit_to_last(2).get()
        assert [k for k, _ in page] == ["k02", "k03"]

        everything = await any_store.query("items").order_by_key().end_at("k99").get()
        assert [k for k, _ in everything] == ["k01", "k02", "k03", "k04", "k05"]

    asyncio.run(scenario())


def test_subscribe_delivers_initial_and_full_replacements(any_store):
    seen = []

    async def scenario():
        subscription = await any_store.subscribe("users/u1", seen.append)
        await any_store.set("users/u1", {"username": "neo", "banned": False})
        await any_store.update("users/u1", {"banned": True})
        await any_store.set("users/u2", {"username": "other"})
        await any_store.update("users", {"u1": {"username": "neo2"}})
        subscription.cancel()
        await any_store.set("users/u1", None)

    asyncio.run(scenario())
    assert seen == [
        None,
        {"username": "neo", "banned": False},
        {"username": "neo", "banned": True},
        {"username": "neo2"},
    ]
    assert any_store.subscription_count == 0


def test_async_listener_can_write_back():
    store = MemoryKeyedStore()
    seen = []

    async def on_change(value):
        seen.append(value)
        if value is None:
            await store.set("users/u1", {"role": "user"})

    async def scenario():
        await store.subscribe("users/u1", on_change)

    asyncio.run(scenario())
    assert seen == [None, {"role": "user"}]


def test_failing_listener_does_not_break_writer():
    store = MemoryKeyedStore()

    def broken(value):
        raise RuntimeError("listener bug")

    async def scenario():
        await store.subscribe("items", broken)
        await store.set("items/a", {"title": "A"})
        return await store.get("items/a")

    assert asyncio.run(scenario()) == {"title": "A"}


def test_reads_are_copies():
    store = MemoryKeyedStore({"items": {"a": {"gallery": ["x"]}}})

    async def scenario():
        value = await store.get("items/a")
        value["gallery"].append("y")
        return await store.get("items/a")

    assert asyncio.run(scenario()) == {"gallery": ["x"]}


def test_sql_store_sessions_run_off_the_event_loop(sql_store):
    released = threading.Event()
    waits = []
    open_session = sql_store._session_factory

    def slow_session():
        waits.append(released.wait(timeout=2))
        return open_session()

    store = SqlKeyedStore(slow_session)

    async def scenario():
        pending = asyncio.create_task(store.get("items"))
        await asyncio.sleep(0)
        released.set()
        return await pending

    assert asyncio.run(scenario()) is None
    assert waits == [True]


def test_store_keys_use_byte_collation_on_postgres():
    ddl = str(CreateTable(StoreNode.__table__).compile(dialect=postgresql.dialect()))
    assert 'VARCHAR(128) COLLATE "C"' in ddl
    sqlite_ddl = str(CreateTable(StoreNode.__table__).compile(dialect=sqlite.dialect()))
    assert "COLLATE" not in sqlite_ddl
