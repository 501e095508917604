"""Order and order item repositories."""

from typing import Any, Dict, List, Optional

from rms_offline.repositories.base import EntityRepository, Row


class OrderItemRepository(EntityRepository):
    table = "order_items"

    async def find_by_order(self, order_id: str) -> List[Row]:
        return await self._query_visible("orderId", order_id)

    async def find_by_food_item(self, food_item_id: str) -> List[Row]:
        return await self._query_visible("foodItemId", food_item_id)


class OrderRepository(EntityRepository):
    """Orders, plus lookups on the indexed order fields."""

    table = "orders"

    async def find_by_status(self, status: str) -> List[Row]:
        return await self.find_all({"status": status})

    async def find_by_branch(self, branch_id: str) -> List[Row]:
        return await self._query_visible("branchId", branch_id)

    async def find_by_order_number(self, order_number: str) -> Optional[Row]:
        rows = await self._query_visible("orderNumber", order_number)
        return rows[0] if rows else None

    async def find_by_date_range(self, start: str, end: str) -> List[Row]:
        """Orders with ``start <= orderDate <= end`` (ISO-8601 strings)."""
        rows = await self.store.query_range(self.table, "orderDate", start, end)
        return [row for row in rows if self.is_visible(row)]

    async def items(self, order_id: str) -> List[Row]:
        rows = await self.store.query("order_items", "orderId", order_id)
        return [
            row for row in rows
            if row.get("tenantId") == self.tenant_id and not row.get("deletedAt")
        ]

    async def with_items(self, order_id: str) -> Optional[Dict[str, Any]]:
        order = await self.find_by_id(order_id)
        if order is None:
            return None
        return {**order, "items": await self.items(order_id)}
