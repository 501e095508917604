"""Ingredient and recipe repositories."""

from typing import List, Optional

from rms_offline.repositories.base import EntityRepository, Row


class IngredientRepository(EntityRepository):
    table = "ingredients"

    async def find_active(self, category: Optional[str] = None) -> List[Row]:
        filters = {"isActive": True}
        if category:
            filters["category"] = category
        return await self.find_all(filters)

    async def find_by_category(self, category: str) -> List[Row]:
        return await self.find_all({"category": category})

    async def find_low_stock(self) -> List[Row]:
        """Active ingredients at or below their minimum threshold."""
        return [
            row for row in await self.find_all()
            if row.get("isActive", True)
            and row.get("currentStock") is not None
            and row.get("minimumThreshold") is not None
            and row["currentStock"] <= row["minimumThreshold"]
        ]


class RecipeRepository(EntityRepository):
    table = "recipes"

    async def find_by_food_item(self, food_item_id: str) -> List[Row]:
        return await self._query_visible("foodItemId", food_item_id)

    async def find_by_ingredient(self, ingredient_id: str) -> List[Row]:
        return await self._query_visible("ingredientId", ingredient_id)
