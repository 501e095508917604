"""Tests for the repositories consumed by the UI layer."""

import pytest

from rms_offline.core.errors import ErrorKind, RemoteError
from rms_offline.models import SyncAction
from rms_offline.repositories import (
    CartRepository,
    IngredientRepository,
    OrderItemRepository,
    RecipeRepository,
    ReportRepository,
    TenantRepository,
)
from rms_offline.repositories.reports import report_id

TENANT = "tenant-1"


@pytest.fixture
def order_items(store, synchronizer, cache):
    return OrderItemRepository(store, synchronizer, TENANT, cache)


@pytest.fixture
def ingredients(store, synchronizer, cache):
    return IngredientRepository(store, synchronizer, TENANT, cache)


@pytest.fixture
def recipes(store, synchronizer, cache):
    return RecipeRepository(store, synchronizer, TENANT, cache)


@pytest.fixture
def tenants(store, synchronizer, cache):
    return TenantRepository(store, synchronizer, TENANT, cache)


@pytest.fixture
def cart(store):
    return CartRepository(store)


@pytest.fixture
def reports(store, synchronizer, cache):
    return ReportRepository(store, synchronizer, TENANT, cache)


class TestEntityRepository:

    @pytest.mark.asyncio
    async def test_create_stamps_row_and_queues_change(self, orders, queue):
        order = await orders.create({"orderNumber": "A-1", "status": "open", "syncStatus": "ignored"})

        assert order["tenantId"] == TENANT
        assert order["createdAt"] and order["updatedAt"]
        assert order["deletedAt"] is None
        assert order["syncStatus"] == "pending"
        [entry] = await queue.list()
        assert entry.action is SyncAction.CREATE
        assert entry.tenant_id == TENANT
        assert "syncStatus" not in entry.payload

    @pytest.mark.asyncio
    async def test_update_records_observed_version(self, orders, store, queue):
        await store.put("orders", {
            "id": "o1", "tenantId": TENANT, "status": "open", "version": 4,
            "updatedAt": "2026-02-01T00:00:00Z",
        })

        updated = await orders.update("o1", {"status": "ready"})

        assert updated["status"] == "ready"
        assert updated["version"] == 4
        [entry] = await queue.list()
        assert entry.action is SyncAction.UPDATE
        assert entry.base_version == "4"

    @pytest.mark.asyncio
    async def test_update_and_delete_of_missing_record(self, orders, queue):
        assert await orders.update("missing", {"status": "ready"}) is None
        assert await orders.delete("missing") is False
        assert await queue.list() == []

    @pytest.mark.asyncio
    async def test_other_tenants_rows_are_invisible(self, orders, store):
        await store.put("orders", {"id": "foreign", "tenantId": "tenant-2", "status": "open"})

        assert await orders.find_by_id("foreign") is None
        assert await orders.find_all() == []
        assert await orders.update("foreign", {"status": "void"}) is None

    @pytest.mark.asyncio
    async def test_find_all_filters_and_hides_deleted(self, orders):
        kept = await orders.create({"status": "open", "branchId": "b1", "tableNumber": "4"})
        await orders.create({"status": "open", "branchId": "b2"})
        gone = await orders.create({"status": "open", "branchId": "b1"})
        await orders.delete(gone["id"])

        rows = await orders.find_all({"branchId": "b1", "tableNumber": "4"})

        assert [row["id"] for row in rows] == [kept["id"]]
        assert len(await orders.find_all({"status": "open"})) == 2
        assert len(await orders.find_all({"status": "open"}, include_deleted=True)) == 3
        assert await orders.count({"branchId": "b1"}) == 1

    @pytest.mark.asyncio
    async def test_find_all_is_cached_until_a_write(self, orders, store, cache):
        await orders.create({"status": "open"})
        assert len(await orders.find_all()) == 1

        # Written behind the repository's back: the cached list is still served
        await store.put("orders", {"id": "direct", "tenantId": TENANT, "status": "open"})
        assert len(await orders.find_all()) == 1

        await orders.create({"status": "open"})
        assert len(await orders.find_all()) == 3

    @pytest.mark.asyncio
    async def test_pagination(self, orders):
        for n in range(5):
            await orders.create({"orderNumber": f"A-{n}", "status": "open"})

        page = await orders.find_all_paginated(page=2, limit=2)

        assert page["total"] == 5
        assert len(page["data"]) == 2
        assert len((await orders.find_all_paginated(page=3, limit=2))["data"]) == 1

    @pytest.mark.asyncio
    async def test_exists(self, orders):
        order = await orders.create({"status": "open"})

        assert await orders.exists(order["id"]) is True
        await orders.delete(order["id"])
        assert await orders.exists(order["id"]) is False


class TestOrderRepository:

    @pytest.mark.asyncio
    async def test_lookups(self, orders):
        first = await orders.create({
            "orderNumber": "A-1", "status": "open", "branchId": "b1", "orderDate": "2026-02-01T09:00:00Z",
        })
        await orders.create({
            "orderNumber": "A-2", "status": "completed", "branchId": "b1", "orderDate": "2026-02-02T09:00:00Z",
        })
        await orders.create({
            "orderNumber": "A-3", "status": "open", "branchId": "b2", "orderDate": "2026-02-05T09:00:00Z",
        })

        assert sorted(o["orderNumber"] for o in await orders.find_by_status("open")) == ["A-1", "A-3"]
        assert len(await orders.find_by_branch("b1")) == 2
        assert (await orders.find_by_order_number("A-1"))["id"] == first["id"]
        assert await orders.find_by_order_number("Z-9") is None

        in_range = await orders.find_by_date_range("2026-02-01T00:00:00Z", "2026-02-03T00:00:00Z")
        assert [o["orderNumber"] for o in in_range] == ["A-1", "A-2"]

    @pytest.mark.asyncio
    async def test_with_items(self, orders, order_items):
        order = await orders.create({"status": "open"})
        await order_items.create({"orderId": order["id"], "foodItemId": "f1", "quantity": 2})
        removed = await order_items.create({"orderId": order["id"], "foodItemId": "f2", "quantity": 1})
        await order_items.delete(removed["id"])

        full = await orders.with_items(order["id"])

        assert [item["foodItemId"] for item in full["items"]] == ["f1"]
        assert len(await order_items.find_by_order(order["id"])) == 1
        assert len(await order_items.find_by_food_item("f1")) == 1
        assert await orders.with_items("missing") is None


class TestInventoryRepositories:

    @pytest.mark.asyncio
    async def test_low_stock(self, ingredients):
        await ingredients.create({"name": "Flour", "currentStock": 2, "minimumThreshold": 5, "isActive": True})
        await ingredients.create({"name": "Salt", "currentStock": 5, "minimumThreshold": 5, "isActive": True})
        await ingredients.create({"name": "Sugar", "currentStock": 50, "minimumThreshold": 5, "isActive": True})
        await ingredients.create({"name": "Saffron", "currentStock": 0, "minimumThreshold": 1, "isActive": False})
        await ingredients.create({"name": "Water"})

        low = await ingredients.find_low_stock()

        assert sorted(row["name"] for row in low) == ["Flour", "Salt"]

    @pytest.mark.asyncio
    async def test_active_by_category(self, ingredients):
        await ingredients.create({"name": "Milk", "category": "dairy", "isActive": True})
        await ingredients.create({"name": "Cream", "category": "dairy", "isActive": False})
        await ingredients.create({"name": "Basil", "category": "herbs", "isActive": True})

        assert [row["name"] for row in await ingredients.find_active("dairy")] == ["Milk"]
        assert len(await ingredients.find_active()) == 2
        assert len(await ingredients.find_by_category("dairy")) == 2

    @pytest.mark.asyncio
    async def test_recipes(self, recipes):
        await recipes.create({"foodItemId": "pizza", "ingredientId": "flour", "quantity": 0.3})
        await recipes.create({"foodItemId": "pizza", "ingredientId": "basil", "quantity": 0.01})
        await recipes.create({"foodItemId": "bread", "ingredientId": "flour", "quantity": 0.5})

        assert len(await recipes.find_by_food_item("pizza")) == 2
        assert len(await recipes.find_by_ingredient("flour")) == 2


class TestTenantRepository:

    @pytest.mark.asyncio
    async def test_current_and_lookups(self, tenants, store):
        await store.put("tenants", {"id": TENANT, "name": "Bistro", "subdomain": "bistro", "email": "a@b.test"})
        await store.put("tenants", {"id": "tenant-2", "name": "Other", "subdomain": "other"})

        assert (await tenants.current())["name"] == "Bistro"
        assert (await tenants.find_by_subdomain("bistro"))["id"] == TENANT
        assert (await tenants.find_by_email("a@b.test"))["id"] == TENANT
        assert await tenants.find_by_subdomain("other") is None


class TestCartRepository:

    @pytest.mark.asyncio
    async def test_cart_lifecycle(self, cart, queue):
        burger = await cart.add({"foodItemId": "burger", "price": 8.5, "quantity": 2})
        await cart.add({"foodItemId": "cola", "price": 2.0, "quantity": 1})

        assert [item["foodItemId"] for item in await cart.items()] == ["burger", "cola"]
        assert await cart.total() == 19.0

        await cart.update(burger["id"], {"quantity": 1})
        assert await cart.total() == 10.5

        assert await cart.remove(burger["id"]) is True
        assert len(await cart.items()) == 1
        assert await queue.list() == []

    @pytest.mark.asyncio
    async def test_update_missing_item(self, cart):
        with pytest.raises(KeyError):
            await cart.update(999, {"quantity": 3})

    @pytest.mark.asyncio
    async def test_replace_and_clear(self, cart):
        await cart.add({"foodItemId": "old"})

        replaced = await cart.replace([
            {"id": 41, "foodItemId": "tea", "price": 3},
            {"foodItemId": "cake", "price": 4},
        ])

        assert [item["foodItemId"] for item in replaced] == ["tea", "cake"]
        assert [item["foodItemId"] for item in await cart.items()] == ["tea", "cake"]
        assert await cart.clear() == 2
        assert await cart.items() == []


class TestReportRepository:

    @pytest.mark.asyncio
    async def test_fetches_once_then_serves_local_copy(self, reports, remote, store, cache):
        remote.reports["sales"] = {"total": 120}

        assert await reports.get("sales", {"day": "2026-02-01"}) == {"total": 120}
        assert await reports.get("sales", {"day": "2026-02-01"}) == {"total": 120}
        assert remote.report_calls == 1

        cache.clear()
        assert await reports.get("sales", {"day": "2026-02-01"}) == {"total": 120}
        assert remote.report_calls == 1
        stored = await store.get("reports", report_id(TENANT, "sales", {"day": "2026-02-01"}))
        assert stored["type"] == "sales"

    @pytest.mark.asyncio
    async def test_stale_copy_is_served_offline(self, reports, remote, store):
        remote.reports["sales"] = {"total": 1}
        await reports.get("sales")
        remote.report_error = RemoteError(ErrorKind.NETWORK_ERROR, "offline")

        assert await reports.get("sales", refresh=True) == {"total": 1}
        assert await reports.get("inventory") is None

    @pytest.mark.asyncio
    async def test_max_age_refetches(self, reports, remote, store):
        rid = report_id(TENANT, "sales", None)
        await store.put("reports", {
            "id": rid, "type": "sales", "tenantId": TENANT, "payload": {"total": 1},
            "updatedAt": "2020-01-01T00:00:00Z",
        })
        remote.reports["sales"] = {"total": 2}

        assert await reports.get("sales", max_age=60) == {"total": 2}
        assert await reports.get("sales", max_age=None) == {"total": 2}

    @pytest.mark.asyncio
    async def test_list_and_invalidate(self, reports, store):
        await reports.get("sales")
        await reports.get("inventory")
        await store.put("reports", {"id": "x", "type": "sales", "tenantId": "tenant-2", "payload": {}})

        assert len(await reports.list_cached()) == 2
        assert len(await reports.list_cached("sales")) == 1
        assert await reports.invalidate() == 2
        assert await reports.list_cached() == []

    @pytest.mark.asyncio
    async def test_refresh_reports(self, reports, synchronizer, remote, store):
        remote.reports["sales"] = {"total": 1}
        await reports.get("sales")
        remote.reports["sales"] = {"total": 5}

        assert await synchronizer.refresh_reports() == 1

        [row] = await reports.list_cached("sales")
        assert row["payload"] == {"total": 5}

    @pytest.mark.asyncio
    async def test_synced_order_drops_cached_reports(self, reports, orders, synchronizer, remote, cache):
        remote.reports["sales"] = {"total": 1}
        await reports.get("sales")
        key = f"reports:{report_id(TENANT, 'sales', None)}"
        assert cache.get(key) == {"total": 1}

        await orders.create({"status": "open"})
        await synchronizer.push()

        assert cache.get(key) is None
        assert remote.report_calls == 1
