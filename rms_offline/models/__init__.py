"""SQLAlchemy models for the local store."""

from typing import Dict, Type

from rms_offline.core.errors import UnknownTableError
from rms_offline.db.base import RowMixin
from rms_offline.models.entities import (
    Tenant,
    Branch,
    Category,
    FoodItem,
    Order,
    OrderItem,
    RestaurantTable,
    Customer,
    Ingredient,
    StockTransaction,
    Recipe,
    Tax,
    CartItem,
    ReportCache,
)
from rms_offline.models.offline_sync import (
    SyncQueueEntry,
    SyncCheckpoint,
    StoreMeta,
    QueueStatus,
    SyncAction,
    OUTSTANDING_STATUSES,
)

# Local table name -> model, for every table reachable through the store API
TABLES: Dict[str, Type[RowMixin]] = {
    model.__tablename__: model
    for model in (
        Tenant,
        Branch,
        Category,
        FoodItem,
        Order,
        OrderItem,
        RestaurantTable,
        Customer,
        Ingredient,
        StockTransaction,
        Recipe,
        Tax,
        CartItem,
        ReportCache,
    )
}

# Tables the client owns outright; they are never queued or pulled
LOCAL_ONLY_TABLES = frozenset({CartItem.__tablename__, ReportCache.__tablename__})

# Local table name -> server (camelCase) table name
WIRE_TABLE_NAMES: Dict[str, str] = {
    "tenants": "tenants",
    "branches": "branches",
    "categories": "categories",
    "food_items": "foodItems",
    "orders": "orders",
    "order_items": "orderItems",
    "restaurant_tables": "tables",
    "customers": "customers",
    "ingredients": "ingredients",
    "stock_transactions": "stockTransactions",
    "recipes": "recipes",
    "taxes": "taxes",
}

_ALIASES: Dict[str, str] = {
    **{wire: local for local, wire in WIRE_TABLE_NAMES.items()},
    "restaurantTables": "restaurant_tables",
    "syncQueue": SyncQueueEntry.__tablename__,
}


def resolve_table(name: str) -> str:
    """Normalise a local, server or realtime table name to the local name."""
    if name in TABLES:
        return name
    try:
        return _ALIASES[name]
    except KeyError:
        raise UnknownTableError(name) from None


def model_for(name: str) -> Type[RowMixin]:
    return TABLES[resolve_table(name)]


def wire_name(table: str) -> str:
    return WIRE_TABLE_NAMES.get(table, table)


__all__ = [
    "Tenant",
    "Branch",
    "Category",
    "FoodItem",
    "Order",
    "OrderItem",
    "RestaurantTable",
    "Customer",
    "Ingredient",
    "StockTransaction",
    "Recipe",
    "Tax",
    "CartItem",
    "ReportCache",
    "SyncQueueEntry",
    "SyncCheckpoint",
    "StoreMeta",
    "QueueStatus",
    "SyncAction",
    "OUTSTANDING_STATUSES",
    "TABLES",
    "LOCAL_ONLY_TABLES",
    "WIRE_TABLE_NAMES",
    "resolve_table",
    "model_for",
    "wire_name",
]
