"""Cart repository. The cart is client-owned: it is never queued or pulled."""

from typing import Any, Dict, List

from rms_offline.core.clock import utcnow_iso
from rms_offline.db.store import LocalStore

Row = Dict[str, Any]


class CartRepository:
    table = "cart"

    def __init__(self, store: LocalStore):
        self.store = store

    async def add(self, item: Row) -> Row:
        row = {key: value for key, value in item.items() if key != "id"}
        row.setdefault("createdAt", utcnow_iso())
        return await self.store.put(self.table, row)

    async def update(self, item_id: int, changes: Row) -> Row:
        existing = await self.store.get(self.table, item_id)
        if existing is None:
            raise KeyError(item_id)
        return await self.store.put(self.table, {**existing, **changes, "id": item_id})

    async def items(self) -> List[Row]:
        rows = await self.store.all(self.table)
        return sorted(rows, key=lambda row: row["id"])

    async def remove(self, item_id: int) -> bool:
        return await self.store.delete(self.table, item_id)

    async def replace(self, items: List[Row]) -> List[Row]:
        """Swap the whole cart in one transaction."""
        now = utcnow_iso()
        async with self.store.transaction() as tx:
            await tx.clear(self.table)
            return await tx.bulk_put(
                self.table,
                [
                    {**{k: v for k, v in item.items() if k != "id"}, "createdAt": item.get("createdAt") or now}
                    for item in items
                ],
            )

    async def clear(self) -> int:
        return await self.store.clear(self.table)

    async def total(self) -> float:
        return sum(
            float(row.get("price") or 0) * float(row.get("quantity") or 1)
            for row in await self.items()
        )
