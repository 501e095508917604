"""
Mirrored entity tables.

Each class mirrors a subset of a server-owned table. The whole row is kept
as JSON; only the fields listed in ``__extra_indexes__`` (plus id, tenantId,
updatedAt, deletedAt) are real columns that can be queried.
"""

from typing import Any, Dict, Optional

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from rms_offline.db.base import Base, MirroredRecordMixin, RowMixin


class Tenant(MirroredRecordMixin, Base):
    __tablename__ = "tenants"
    __extra_indexes__ = {"subdomain": "subdomain", "email": "email"}

    subdomain: Mapped[Optional[str]] = mapped_column(String(120), index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)

    @classmethod
    def columns_from_row(cls, row: Dict[str, Any]) -> Dict[str, Any]:
        # A tenant row scopes itself
        columns = super().columns_from_row(row)
        if columns.get("tenant_id") is None:
            columns["tenant_id"] = row.get("id")
        return columns


class Branch(MirroredRecordMixin, Base):
    __tablename__ = "branches"
    __extra_indexes__ = {"code": "code"}

    code: Mapped[Optional[str]] = mapped_column(String(50), index=True)


class Category(MirroredRecordMixin, Base):
    __tablename__ = "categories"
    __extra_indexes__ = {"parentId": "parent_id"}

    parent_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)


class FoodItem(MirroredRecordMixin, Base):
    __tablename__ = "food_items"
    __extra_indexes__ = {"categoryId": "category_id"}

    category_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)


class Order(MirroredRecordMixin, Base):
    __tablename__ = "orders"
    __extra_indexes__ = {
        "branchId": "branch_id",
        "orderNumber": "order_number",
        "orderDate": "order_date",
        "status": "status",
    }

    branch_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    order_number: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    order_date: Mapped[Optional[str]] = mapped_column(String(40), index=True)
    status: Mapped[Optional[str]] = mapped_column(String(30), index=True)


class OrderItem(MirroredRecordMixin, Base):
    __tablename__ = "order_items"
    __extra_indexes__ = {"orderId": "order_id", "foodItemId": "food_item_id"}

    order_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    food_item_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)


class RestaurantTable(MirroredRecordMixin, Base):
    __tablename__ = "restaurant_tables"
    __extra_indexes__ = {
        "branchId": "branch_id",
        "tableNumber": "table_number",
        "status": "status",
    }

    branch_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    table_number: Mapped[Optional[str]] = mapped_column(String(20), index=True)
    status: Mapped[Optional[str]] = mapped_column(String(30), index=True)


class Customer(MirroredRecordMixin, Base):
    __tablename__ = "customers"
    __extra_indexes__ = {"phone": "phone"}

    phone: Mapped[Optional[str]] = mapped_column(String(40), index=True)


class Ingredient(MirroredRecordMixin, Base):
    __tablename__ = "ingredients"
    __extra_indexes__ = {"category": "category"}

    category: Mapped[Optional[str]] = mapped_column(String(100), index=True)


class StockTransaction(MirroredRecordMixin, Base):
    __tablename__ = "stock_transactions"
    __extra_indexes__ = {
        "ingredientId": "ingredient_id",
        "transactionDate": "transaction_date",
    }

    ingredient_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    transaction_date: Mapped[Optional[str]] = mapped_column(String(40), index=True)


class Recipe(MirroredRecordMixin, Base):
    __tablename__ = "recipes"
    __extra_indexes__ = {"foodItemId": "food_item_id", "ingredientId": "ingredient_id"}

    food_item_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    ingredient_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)


class Tax(MirroredRecordMixin, Base):
    __tablename__ = "taxes"


class CartItem(RowMixin, Base):
    """Client-owned cart line. Never synced; cleared and rewritten wholesale."""
    __tablename__ = "cart"
    __indexed_fields__ = {
        "id": "id",
        "foodItemId": "food_item_id",
        "createdAt": "created_at",
    }

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    food_item_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    created_at: Mapped[Optional[str]] = mapped_column(String(40), index=True)


class ReportCache(RowMixin, Base):
    """Cached report read-model; the aggregation itself happens server-side."""
    __tablename__ = "reports"
    __indexed_fields__ = {
        "id": "id",
        "type": "report_type",
        "updatedAt": "updated_at",
    }

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    report_type: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    updated_at: Mapped[Optional[str]] = mapped_column(String(40), index=True)
