"""Tests for the local store."""

import pytest
from sqlalchemy import inspect, text

from rms_offline.core.errors import LocalStorageError, UnknownTableError
from rms_offline.db.store import SCHEMA_VERSION, LocalStore


def order(order_id: str, **fields):
    return {
        "id": order_id,
        "tenantId": "tenant-1",
        "status": "pending",
        "orderNumber": f"ORD-{order_id}",
        "orderDate": "2026-03-01T12:00:00Z",
        "updatedAt": "2026-03-01T12:00:00Z",
        **fields,
    }


class TestBasicOperations:
    """put / get / delete / query."""

    @pytest.mark.asyncio
    async def test_put_then_get_returns_row(self, store):
        saved = await store.put("orders", order("o1", total=12.5, notes={"table": 4}))

        assert saved["id"] == "o1"
        fetched = await store.get("orders", "o1")
        assert fetched["total"] == 12.5
        assert fetched["notes"] == {"table": 4}

    @pytest.mark.asyncio
    async def test_put_is_upsert(self, store):
        await store.put("orders", order("o1", status="pending"))
        await store.put("orders", order("o1", status="completed"))

        assert await store.count("orders") == 1
        assert (await store.get("orders", "o1"))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get("orders", "missing") is None

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await store.put("orders", order("o1"))

        assert await store.delete("orders", "o1") is True
        assert await store.delete("orders", "o1") is False
        assert await store.get("orders", "o1") is None

    @pytest.mark.asyncio
    async def test_query_by_indexed_field(self, store):
        await store.bulk_put("orders", [
            order("o1", status="pending"),
            order("o2", status="completed"),
            order("o3", status="pending"),
        ])

        rows = await store.query("orders", "status", "pending")
        assert sorted(row["id"] for row in rows) == ["o1", "o3"]

    @pytest.mark.asyncio
    async def test_query_unindexed_field_raises(self, store):
        with pytest.raises(KeyError):
            await store.query("orders", "customerName", "x")

    @pytest.mark.asyncio
    async def test_query_range_is_inclusive_and_ordered(self, store):
        await store.bulk_put("orders", [
            order("o3", orderDate="2026-03-03T00:00:00Z"),
            order("o1", orderDate="2026-03-01T00:00:00Z"),
            order("o2", orderDate="2026-03-02T00:00:00Z"),
            order("o4", orderDate="2026-03-04T00:00:00Z"),
        ])

        rows = await store.query_range(
            "orders", "orderDate", "2026-03-01T00:00:00Z", "2026-03-03T00:00:00Z"
        )
        assert [row["id"] for row in rows] == ["o1", "o2", "o3"]

        open_ended = await store.query_range("orders", "orderDate", lower="2026-03-03T00:00:00Z")
        assert [row["id"] for row in open_ended] == ["o3", "o4"]

    @pytest.mark.asyncio
    async def test_clear_table(self, store):
        await store.bulk_put("orders", [order("o1"), order("o2")])

        assert await store.clear("orders") == 2
        assert await store.all("orders") == []

    @pytest.mark.asyncio
    async def test_unknown_table(self, store):
        with pytest.raises(UnknownTableError):
            await store.get("nope", "1")

    @pytest.mark.asyncio
    async def test_server_table_names_are_accepted(self, store):
        await store.put("orderItems", {"id": "i1", "tenantId": "tenant-1", "orderId": "o1"})

        assert (await store.get("order_items", "i1"))["orderId"] == "o1"

    @pytest.mark.asyncio
    async def test_autoincrement_table_assigns_ids(self, store):
        first = await store.put("cart", {"foodItemId": "f1", "quantity": 1})
        second = await store.put("cart", {"foodItemId": "f2", "quantity": 2})

        assert isinstance(first["id"], int)
        assert second["id"] > first["id"]


class TestTransactions:
    """Atomic multi-step writes."""

    @pytest.mark.asyncio
    async def test_commit_on_exit(self, store):
        async with store.transaction() as tx:
            await tx.put("orders", order("o1"))
            await tx.put("order_items", {"id": "i1", "tenantId": "tenant-1", "orderId": "o1"})

        assert await store.get("orders", "o1") is not None
        assert await store.get("order_items", "i1") is not None

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            async with store.transaction() as tx:
                await tx.put("orders", order("o1"))
                raise RuntimeError("boom")

        assert await store.get("orders", "o1") is None

    @pytest.mark.asyncio
    async def test_database_error_becomes_local_storage_error(self, store):
        with pytest.raises(LocalStorageError):
            async with store.transaction() as tx:
                await tx.put("orders", order("o1"))
                await tx.session.execute(text("INSERT INTO no_such_table VALUES (1)"))

        assert await store.get("orders", "o1") is None


class TestMergeRemote:
    """Remote-wins merge used by pull and realtime."""

    @pytest.mark.asyncio
    async def test_merge_is_idempotent(self, store):
        row = order("o1", version=3, status="ready")

        assert await store.merge_remote("orders", row) is True
        first = await store.get("orders", "o1")
        await store.merge_remote("orders", row)

        assert await store.get("orders", "o1") == first
        assert await store.count("orders") == 1

    @pytest.mark.asyncio
    async def test_older_version_is_ignored(self, store):
        await store.merge_remote("orders", order("o1", version=5, status="ready"))

        changed = await store.merge_remote("orders", order("o1", version=4, status="pending"))

        assert changed is False
        assert (await store.get("orders", "o1"))["status"] == "ready"

    @pytest.mark.asyncio
    async def test_updated_at_decides_without_versions(self, store):
        await store.merge_remote("orders", order("o1", updatedAt="2026-03-02T00:00:00Z", status="ready"))

        older = order("o1", updatedAt="2026-03-01T00:00:00Z", status="pending")
        newer = order("o1", updatedAt="2026-03-03T00:00:00Z", status="served")

        assert await store.merge_remote("orders", older) is False
        assert await store.merge_remote("orders", newer) is True
        assert (await store.get("orders", "o1"))["status"] == "served"

    @pytest.mark.asyncio
    async def test_deleted_row_purges_local_copy(self, store):
        await store.put("orders", order("o1"))

        changed = await store.merge_remote("orders", order("o1", deletedAt="2026-03-05T00:00:00Z"))

        assert changed is True
        assert await store.get("orders", "o1") is None
        assert await store.merge_remote("orders", order("o1", deletedAt="2026-03-05T00:00:00Z")) is False

    @pytest.mark.asyncio
    async def test_rekey_moves_row(self, store):
        await store.put("orders", order("local-1", status="pending"))

        async with store.transaction() as tx:
            moved = await tx.rekey("orders", "local-1", "srv-9")

        assert moved["id"] == "srv-9"
        assert await store.get("orders", "local-1") is None
        assert (await store.get("orders", "srv-9"))["status"] == "pending"


class TestSchemaVersion:
    """Versioned open and upgrade."""

    @pytest.mark.asyncio
    async def test_fresh_store_records_current_version(self, database_url):
        fresh = LocalStore(database_url)
        found = await fresh.open()
        try:
            assert found == 0
            assert await fresh.schema_version() == SCHEMA_VERSION
        finally:
            await fresh.close()

    @pytest.mark.asyncio
    async def test_reopen_keeps_data(self, database_url):
        first = LocalStore(database_url)
        await first.open()
        await first.put("orders", order("o1"))
        await first.close()

        second = LocalStore(database_url)
        assert await second.open() == SCHEMA_VERSION
        try:
            assert await second.get("orders", "o1") is not None
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_upgrade_adds_missing_columns(self, database_url):
        old = LocalStore(database_url)
        await old.open()
        async with old.engine.begin() as conn:
            await conn.execute(text("ALTER TABLE sync_queue DROP COLUMN resolution"))
            await conn.execute(text("UPDATE store_meta SET value = '7' WHERE key = 'schema_version'"))
        await old.close()

        upgraded = LocalStore(database_url)
        try:
            assert await upgraded.open() == 7
            assert await upgraded.schema_version() == SCHEMA_VERSION
            async with upgraded.engine.connect() as conn:
                columns = await conn.run_sync(
                    lambda sync_conn: {c["name"] for c in inspect(sync_conn).get_columns("sync_queue")}
                )
            assert "resolution" in columns
        finally:
            await upgraded.close()

    @pytest.mark.asyncio
    async def test_refuses_newer_store(self, database_url):
        current = LocalStore(database_url)
        await current.open()
        async with current.engine.begin() as conn:
            await conn.execute(text("UPDATE store_meta SET value = '99' WHERE key = 'schema_version'"))
        await current.close()

        newer = LocalStore(database_url)
        with pytest.raises(LocalStorageError, match="newer"):
            await newer.open()
        assert newer.is_open is False
        await newer.close()
