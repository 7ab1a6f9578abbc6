"""
Interfaces of the collaborators the workflow service depends on.
Postgres/Redis implementations live in catalog.db and catalog.schedule; tests use in-memory fakes.
"""
from datetime import datetime
from typing import Any, Protocol

from catalog.product import Product


class ProductRepository(Protocol):
    async def find_by_id(self, product_id: int) -> Product | None: ...

    async def save(self, product: Product) -> Product:
        """
        Persist product if its row still has product.version; bump the version.
        Raises ConcurrentUpdateError otherwise.
        """
        ...


class AuditLogWriter(Protocol):
    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: int | None,
        admin_id: int | None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class PermissionChecker(Protocol):
    async def permissions_for(self, admin_id: int | None) -> frozenset[str]: ...


class PublicationSchedule(Protocol):
    async def add(self, product_id: int, publish_at: datetime) -> None: ...

    async def remove(self, product_id: int) -> None: ...

    async def due(self, now: datetime, limit: int) -> list[int]: ...
