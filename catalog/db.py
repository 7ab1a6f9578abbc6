"""
Async Postgres: products (current status + lifecycle timestamps + JSONB transition history),
marketplace links, admin permissions and the audit log.
Saves use optimistic concurrency: UPDATE ... WHERE id = $1 AND version = $2, version bumped on success.
"""
import json
from decimal import Decimal
from typing import Any, Mapping

import asyncpg

from catalog.config import settings
from catalog.errors import ConcurrentUpdateError
from catalog.product import MarketplaceLink, Product, ProductStatus
from catalog.transition_history import TransitionHistory

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=5,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS products (
                id SERIAL PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                slug VARCHAR(255) NOT NULL UNIQUE,
                market_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
                category_id INT,
                image TEXT,
                image_path TEXT,
                description TEXT,
                status VARCHAR(30) NOT NULL DEFAULT 'draft',
                published_at TIMESTAMPTZ,
                verified_at TIMESTAMPTZ,
                verified_by INT,
                archived_at TIMESTAMPTZ,
                scheduled_at TIMESTAMPTZ,
                version INT NOT NULL DEFAULT 1,
                state_history JSONB NOT NULL DEFAULT '[]'::jsonb,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_products_status ON products(status);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS marketplace_links (
                id SERIAL PRIMARY KEY,
                product_id INT NOT NULL REFERENCES products(id) ON DELETE CASCADE,
                marketplace VARCHAR(100) NOT NULL,
                url TEXT NOT NULL,
                active BOOLEAN NOT NULL DEFAULT TRUE
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_marketplace_links_product_id
            ON marketplace_links(product_id);
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS admin_permissions (
                admin_id INT NOT NULL,
                permission VARCHAR(100) NOT NULL,
                PRIMARY KEY (admin_id, permission)
            );
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_logs (
                id BIGSERIAL PRIMARY KEY,
                action VARCHAR(50) NOT NULL,
                entity_type VARCHAR(50) NOT NULL,
                entity_id INT,
                admin_id INT,
                old_values JSONB,
                new_values JSONB,
                metadata JSONB,
                created_at TIMESTAMPTZ DEFAULT NOW()
            );
        """)


def row_to_product(row: Mapping[str, Any], link_rows: list[Mapping[str, Any]] = ()) -> Product:
    history = row["state_history"]
    if isinstance(history, str):
        history = json.loads(history)
    return Product(
        id=row["id"],
        name=row["name"],
        slug=row["slug"],
        market_price=Decimal(str(row["market_price"])),
        category_id=row["category_id"],
        image=row["image"],
        image_path=row["image_path"],
        description=row["description"],
        status=ProductStatus(row["status"]),
        published_at=row["published_at"],
        verified_at=row["verified_at"],
        verified_by=row["verified_by"],
        archived_at=row["archived_at"],
        scheduled_at=row["scheduled_at"],
        version=row["version"],
        links=[
            MarketplaceLink(id=r["id"], marketplace=r["marketplace"], url=r["url"], active=r["active"])
            for r in link_rows
        ],
        state_history=TransitionHistory.from_list(history, max_size=settings.max_state_history),
    )


class PostgresProductRepository:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def find_by_id(self, product_id: int) -> Product | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM products WHERE id = $1;", product_id)
            if row is None:
                return None
            links = await conn.fetch(
                "SELECT id, marketplace, url, active FROM marketplace_links WHERE product_id = $1 ORDER BY id;",
                product_id,
            )
        return row_to_product(row, links)

    async def save(self, product: Product) -> Product:
        history_json = json.dumps(product.state_history.to_list(), default=str)
        async with self._pool.acquire() as conn:
            if product.id is None:
                product.id = await conn.fetchval(
                    """
                    INSERT INTO products (name, slug, market_price, category_id, image, image_path, description,
                                          status, published_at, verified_at, verified_by, archived_at, scheduled_at,
                                          version, state_history)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, 1, $14::jsonb)
                    RETURNING id;
                    """,
                    product.name,
                    product.slug,
                    product.market_price,
                    product.category_id,
                    product.image,
                    product.image_path,
                    product.description,
                    product.status.value,
                    product.published_at,
                    product.verified_at,
                    product.verified_by,
                    product.archived_at,
                    product.scheduled_at,
                    history_json,
                )
                product.version = 1
                return product

            status = await conn.execute(
                """
                UPDATE products SET
                    name = $3, slug = $4, market_price = $5, category_id = $6, image = $7, image_path = $8,
                    description = $9, status = $10, published_at = $11, verified_at = $12, verified_by = $13,
                    archived_at = $14, scheduled_at = $15, state_history = $16::jsonb,
                    version = version + 1, updated_at = NOW()
                WHERE id = $1 AND version = $2;
                """,
                product.id,
                product.version,
                product.name,
                product.slug,
                product.market_price,
                product.category_id,
                product.image,
                product.image_path,
                product.description,
                product.status.value,
                product.published_at,
                product.verified_at,
                product.verified_by,
                product.archived_at,
                product.scheduled_at,
                history_json,
            )
        # asyncpg returns the command tag, e.g. "UPDATE 1"
        if status.split()[-1] == "0":
            raise ConcurrentUpdateError(product.id, product.version)
        product.version += 1
        return product


class PostgresAuditLog:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def record(
        self,
        action: str,
        entity_type: str,
        entity_id: int | None,
        admin_id: int | None,
        old_values: dict[str, Any] | None = None,
        new_values: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO audit_logs (action, entity_type, entity_id, admin_id, old_values, new_values, metadata)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7::jsonb);
                """,
                action,
                entity_type,
                entity_id,
                admin_id,
                json.dumps(old_values) if old_values is not None else None,
                json.dumps(new_values) if new_values is not None else None,
                json.dumps(metadata, default=str) if metadata is not None else None,
            )


class PostgresPermissionChecker:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def permissions_for(self, admin_id: int | None) -> frozenset[str]:
        if admin_id is None:
            return frozenset()
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT permission FROM admin_permissions WHERE admin_id = $1;", admin_id)
        return frozenset(r["permission"] for r in rows)
