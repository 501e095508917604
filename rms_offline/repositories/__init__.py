"""Repositories consumed by the UI layer."""

from rms_offline.repositories.base import EntityRepository
from rms_offline.repositories.cart import CartRepository
from rms_offline.repositories.inventory import IngredientRepository, RecipeRepository
from rms_offline.repositories.orders import OrderItemRepository, OrderRepository
from rms_offline.repositories.reports import ReportRepository
from rms_offline.repositories.tenants import TenantRepository

__all__ = [
    "EntityRepository",
    "CartRepository",
    "IngredientRepository",
    "RecipeRepository",
    "OrderItemRepository",
    "OrderRepository",
    "ReportRepository",
    "TenantRepository",
]
