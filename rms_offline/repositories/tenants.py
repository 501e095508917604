"""Tenant repository. A tenant row is scoped by its own id."""

from typing import Optional

from rms_offline.repositories.base import EntityRepository, Row


class TenantRepository(EntityRepository):
    table = "tenants"
    scope_field = "id"

    async def current(self) -> Optional[Row]:
        return await self.find_by_id(self.tenant_id)

    async def find_by_subdomain(self, subdomain: str) -> Optional[Row]:
        rows = await self._query_visible("subdomain", subdomain)
        return rows[0] if rows else None

    async def find_by_email(self, email: str) -> Optional[Row]:
        rows = await self._query_visible("email", email)
        return rows[0] if rows else None
