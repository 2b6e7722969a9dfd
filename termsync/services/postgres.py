from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from termsync.core.slugs import slugify
from termsync.services.repository import (
    DEFAULT_PRIMARY_STATUS,
    Category,
    Entity,
    HookedRepository,
    Primary,
    RepositoryCreateError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

SCHEMA_SQL = """
create table if not exists primaries (
  id bigserial primary key,
  type text not null,
  name text not null,
  slug text not null default '',
  body text not null default '',
  status text not null default 'published',
  menu_order integer not null default 0,
  is_revision boolean not null default false,
  created_at timestamptz not null default now()
);
create index if not exists primaries_type_status_idx on primaries (type, status, id);
create index if not exists primaries_type_name_idx on primaries (type, name);

create table if not exists primary_meta (
  primary_id bigint not null references primaries (id) on delete cascade,
  meta_key text not null,
  meta_value text not null,
  primary key (primary_id, meta_key)
);

create table if not exists categories (
  id bigserial primary key,
  taxonomy text not null,
  name text not null,
  slug text not null,
  description text not null default '',
  unique (taxonomy, slug)
);
create unique index if not exists categories_taxonomy_name_key on categories (taxonomy, lower(name));

create table if not exists category_meta (
  category_id bigint not null references categories (id) on delete cascade,
  meta_key text not null,
  meta_value text not null,
  primary key (category_id, meta_key)
);

create table if not exists primary_categories (
  primary_id bigint not null references primaries (id) on delete cascade,
  category_id bigint not null references categories (id) on delete cascade,
  primary key (primary_id, category_id)
);

create table if not exists batch_progress (
  batch_id text primary key,
  payload jsonb not null,
  expires_at timestamptz not null
);
"""

_PRIMARY_SELECT = """
select
  p.id::text as id,
  p.type,
  p.name,
  p.slug,
  p.body,
  p.status,
  p.menu_order,
  p.is_revision,
  coalesce(
    (select jsonb_object_agg(m.meta_key, m.meta_value) from primary_meta m where m.primary_id = p.id),
    '{}'::jsonb
  ) as metadata,
  coalesce(
    (
      select jsonb_object_agg(t.taxonomy, t.ids)
      from (
        select c.taxonomy, jsonb_agg(c.id::text order by c.id) as ids
        from primary_categories pc
        join categories c on c.id = pc.category_id
        where pc.primary_id = p.id
        group by c.taxonomy
      ) t
    ),
    '{}'::jsonb
  ) as categories
from primaries p
"""

_CATEGORY_SELECT = """
select
  c.id::text as id,
  c.taxonomy,
  c.name,
  c.slug,
  c.description,
  (select count(*) from primary_categories pc where pc.category_id = c.id)::int as member_count,
  coalesce(
    (select jsonb_object_agg(m.meta_key, m.meta_value) from category_meta m where m.category_id = c.id),
    '{}'::jsonb
  ) as metadata
from categories c
"""


class PostgresRepository(HookedRepository):
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        super().__init__()
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_primary(
        self,
        *,
        primary_type: str,
        name: str,
        body: str = "",
        status: str = DEFAULT_PRIMARY_STATUS,
        slug: str | None = None,
        menu_order: int = 0,
        is_revision: bool = False,
    ) -> Primary:
        normalized_name = self._coerce_text(name)
        if not normalized_name:
            raise RepositoryCreateError("primary name must be a non-empty string")
        self._validate_status(status)

        pool = await self._get_pool()
        try:
            primary_id = await pool.fetchval(
                """
                insert into primaries (type, name, slug, body, status, menu_order, is_revision)
                values ($1, $2, $3, $4, $5, $6, $7)
                returning id::text
                """,
                primary_type,
                normalized_name,
                slug if slug is not None else slugify(normalized_name),
                body or "",
                status,
                int(menu_order),
                bool(is_revision),
            )
        except pg_exc.PostgresError as exc:
            raise RepositoryCreateError(f"failed to create primary: {exc}") from exc

        created = await self._fetch_primary(primary_id)
        if created is None:
            raise RepositoryCreateError("failed to create primary")
        await self._emit("primary_created", created)
        return created

    async def get_primary(self, primary_id: str) -> Primary | None:
        return await self._fetch_primary(primary_id)

    async def update_primary(self, primary_id: str, **fields: Any) -> Primary:
        before = await self._fetch_primary(primary_id)
        if before is None:
            raise RepositoryNotFoundError("primary not found")

        categories = fields.pop("categories", None)
        assignments: list[str] = []
        values: list[Any] = []
        for key, value in fields.items():
            if key not in {"name", "body", "status", "slug", "menu_order"}:
                raise RepositoryValidationError(f"unknown primary fields: {[key]}")
            if key == "name":
                value = self._coerce_text(value)
                if not value:
                    raise RepositoryValidationError("primary name must be a non-empty string")
            if key == "status":
                self._validate_status(value)
            values.append(value)
            assignments.append(f"{key} = ${len(values) + 1}")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if assignments:
                    await conn.execute(
                        f"update primaries set {', '.join(assignments)} where id = $1::bigint",
                        int(primary_id),
                        *values,
                    )
                if categories is not None:
                    for taxonomy, category_ids in dict(categories).items():
                        await self._replace_memberships(conn, int(primary_id), taxonomy, category_ids)

        after = await self._fetch_primary(primary_id)
        if after is None:
            raise RepositoryNotFoundError("primary not found")
        await self._emit("primary_updated", before, after)
        return after

    async def delete_primary(self, primary_id: str, *, hard: bool = True) -> None:
        record = await self._fetch_primary(primary_id)
        if record is None:
            raise RepositoryNotFoundError("primary not found")
        if not hard:
            await self.update_primary(primary_id, status="trashed")
            return

        await self._emit("primary_before_delete", record)
        pool = await self._get_pool()
        await pool.execute("delete from primaries where id = $1::bigint", int(primary_id))

    async def find_primary_by_exact_name(
        self, primary_type: str, name: str, status: str = DEFAULT_PRIMARY_STATUS
    ) -> Primary | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            _PRIMARY_SELECT
            + " where p.type = $1 and p.name = $2 and p.status = $3 and not p.is_revision order by p.id limit 1",
            primary_type,
            name,
            status,
        )
        return self._primary_row_to_record(row) if row else None

    async def query_primaries(
        self,
        primary_type: str,
        *,
        status: str | None = DEFAULT_PRIMARY_STATUS,
        tax_filter: tuple[str, str] | None = None,
        order: str = "created",
        limit: int | None = None,
        offset: int = 0,
        include_revisions: bool = False,
    ) -> list[Primary]:
        self._validate_ordering(order)
        conditions = ["p.type = $1"]
        params: list[Any] = [primary_type]

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if status is not None:
            conditions.append(f"p.status = {bind(status)}")
        if not include_revisions:
            conditions.append("not p.is_revision")
        if tax_filter is not None:
            _, category_id = tax_filter
            db_id = _as_db_id(category_id)
            if db_id is None:
                return []
            conditions.append(
                "exists (select 1 from primary_categories pc "
                f"where pc.primary_id = p.id and pc.category_id = {bind(db_id)})"
            )

        order_by = "p.id" if order == "created" else "p.menu_order, p.id"
        query = _PRIMARY_SELECT + f" where {' and '.join(conditions)} order by {order_by}"
        if limit is not None:
            query += f" limit {bind(max(0, int(limit)))}"
        if offset:
            query += f" offset {bind(max(0, int(offset)))}"

        pool = await self._get_pool()
        rows = await pool.fetch(query, *params)
        return [self._primary_row_to_record(row) for row in rows]

    async def count_primaries(
        self,
        primary_type: str,
        *,
        status: str | None = DEFAULT_PRIMARY_STATUS,
        include_revisions: bool = False,
    ) -> int:
        query = "select count(*) from primaries where type = $1"
        params: list[Any] = [primary_type]
        if status is not None:
            params.append(status)
            query += " and status = $2"
        if not include_revisions:
            query += " and not is_revision"
        pool = await self._get_pool()
        value = await pool.fetchval(query, *params)
        return int(value or 0)

    async def create_category(self, *, taxonomy: str, name: str, description: str = "") -> Category:
        normalized_name = self._coerce_text(name)
        if not normalized_name:
            raise RepositoryCreateError("category name must be a non-empty string")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            slug = await self._available_slug(conn, taxonomy, normalized_name, exclude_id=None)
            try:
                category_id = await conn.fetchval(
                    """
                    insert into categories (taxonomy, name, slug, description)
                    values ($1, $2, $3, $4)
                    returning id::text
                    """,
                    taxonomy,
                    normalized_name,
                    slug,
                    description or "",
                )
            except pg_exc.UniqueViolationError as exc:
                raise RepositoryCreateError("a category with this name already exists") from exc

        created = await self._fetch_category(category_id)
        if created is None:
            raise RepositoryCreateError("failed to create category")
        await self._emit("category_created", created)
        return created

    async def get_category(self, category_id: str) -> Category | None:
        return await self._fetch_category(category_id)

    async def find_category_by_exact_name(self, taxonomy: str, name: str) -> Category | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            _CATEGORY_SELECT + " where c.taxonomy = $1 and c.name = $2 limit 1",
            taxonomy,
            name,
        )
        return self._category_row_to_record(row) if row else None

    async def update_category(self, category_id: str, **fields: Any) -> Category:
        before = await self._fetch_category(category_id)
        if before is None:
            raise RepositoryNotFoundError("category not found")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            if "name" in fields:
                new_name = self._coerce_text(fields["name"])
                if not new_name:
                    raise RepositoryValidationError("category name must be a non-empty string")
                fields["name"] = new_name
                if "slug" not in fields:
                    fields["slug"] = await self._available_slug(
                        conn, before.taxonomy, new_name, exclude_id=int(category_id)
                    )
            assignments: list[str] = []
            values: list[Any] = []
            for key, value in fields.items():
                if key not in {"name", "description", "slug"}:
                    raise RepositoryValidationError(f"unknown category fields: {[key]}")
                values.append(value)
                assignments.append(f"{key} = ${len(values) + 1}")
            if assignments:
                try:
                    await conn.execute(
                        f"update categories set {', '.join(assignments)} where id = $1::bigint",
                        int(category_id),
                        *values,
                    )
                except pg_exc.UniqueViolationError as exc:
                    raise RepositoryValidationError("a category with this name already exists") from exc

        after = await self._fetch_category(category_id)
        if after is None:
            raise RepositoryNotFoundError("category not found")
        await self._emit("category_updated", before, after)
        return after

    async def delete_category(self, category_id: str) -> None:
        record = await self._fetch_category(category_id)
        if record is None:
            raise RepositoryNotFoundError("category not found")

        await self._emit("category_before_delete", record)
        pool = await self._get_pool()
        await pool.execute("delete from categories where id = $1::bigint", int(category_id))

    async def query_categories(
        self,
        taxonomy: str,
        *,
        include_empty: bool = True,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Category]:
        params: list[Any] = [taxonomy]
        query = _CATEGORY_SELECT + " where c.taxonomy = $1"
        if not include_empty:
            query += " and exists (select 1 from primary_categories pc where pc.category_id = c.id)"
        query += " order by c.id"
        if limit is not None:
            params.append(max(0, int(limit)))
            query += f" limit ${len(params)}"
        if offset:
            params.append(max(0, int(offset)))
            query += f" offset ${len(params)}"

        pool = await self._get_pool()
        rows = await pool.fetch(query, *params)
        return [self._category_row_to_record(row) for row in rows]

    async def count_categories(self, taxonomy: str) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval("select count(*) from categories where taxonomy = $1", taxonomy)
        return int(value or 0)

    async def get_meta(self, entity: Entity, key: str) -> str | None:
        table, column = _meta_table(entity)
        db_id = _as_db_id(entity.id)
        if db_id is None:
            return None
        pool = await self._get_pool()
        return await pool.fetchval(
            f"select meta_value from {table} where {column} = $1 and meta_key = $2",
            db_id,
            key,
        )

    async def set_meta(self, entity: Entity, key: str, value: str) -> None:
        table, column = _meta_table(entity)
        db_id = _as_db_id(entity.id)
        if db_id is None:
            raise RepositoryNotFoundError("entity not found")
        pool = await self._get_pool()
        try:
            await pool.execute(
                f"""
                insert into {table} ({column}, meta_key, meta_value)
                values ($1, $2, $3)
                on conflict ({column}, meta_key) do update set meta_value = excluded.meta_value
                """,
                db_id,
                key,
                value,
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("entity not found") from exc
        entity.metadata[key] = value

    async def delete_meta(self, entity: Entity, key: str) -> None:
        table, column = _meta_table(entity)
        db_id = _as_db_id(entity.id)
        if db_id is not None:
            pool = await self._get_pool()
            await pool.execute(f"delete from {table} where {column} = $1 and meta_key = $2", db_id, key)
        entity.metadata.pop(key, None)

    async def get_batch_progress(self, batch_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            "select payload from batch_progress where batch_id = $1 and expires_at > now()",
            batch_id,
        )
        if not row:
            return None
        return self._coerce_json_dict(row["payload"])

    async def save_batch_progress(self, batch_id: str, payload: dict[str, Any], *, ttl_seconds: int) -> None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("delete from batch_progress where expires_at <= now()")
                await conn.execute(
                    """
                    insert into batch_progress (batch_id, payload, expires_at)
                    values ($1, $2::jsonb, $3)
                    on conflict (batch_id) do update
                      set payload = excluded.payload, expires_at = excluded.expires_at
                    """,
                    batch_id,
                    json.dumps(payload),
                    expires_at,
                )

    async def delete_batch_progress(self, batch_id: str) -> bool:
        pool = await self._get_pool()
        status = await pool.execute("delete from batch_progress where batch_id = $1", batch_id)
        return status.endswith(" 1")

    async def _fetch_primary(self, primary_id: str) -> Primary | None:
        db_id = _as_db_id(primary_id)
        if db_id is None:
            return None
        pool = await self._get_pool()
        row = await pool.fetchrow(_PRIMARY_SELECT + " where p.id = $1", db_id)
        return self._primary_row_to_record(row) if row else None

    async def _fetch_category(self, category_id: str) -> Category | None:
        db_id = _as_db_id(category_id)
        if db_id is None:
            return None
        pool = await self._get_pool()
        row = await pool.fetchrow(_CATEGORY_SELECT + " where c.id = $1", db_id)
        return self._category_row_to_record(row) if row else None

    async def _replace_memberships(
        self,
        conn: asyncpg.Connection,
        primary_id: int,
        taxonomy: str,
        category_ids: list[str],
    ) -> None:
        await conn.execute(
            """
            delete from primary_categories pc
            using categories c
            where pc.category_id = c.id and pc.primary_id = $1 and c.taxonomy = $2
            """,
            primary_id,
            taxonomy,
        )
        db_ids = [db_id for db_id in (_as_db_id(item) for item in category_ids) if db_id is not None]
        if not db_ids:
            return
        await conn.execute(
            """
            insert into primary_categories (primary_id, category_id)
            select $1, c.id from categories c
            where c.taxonomy = $2 and c.id = any($3::bigint[])
            on conflict do nothing
            """,
            primary_id,
            taxonomy,
            db_ids,
        )

    async def _available_slug(
        self,
        conn: asyncpg.Connection,
        taxonomy: str,
        name: str,
        *,
        exclude_id: int | None,
    ) -> str:
        base = slugify(name) or "category"
        rows = await conn.fetch(
            "select slug from categories where taxonomy = $1 and slug like $2 and id <> coalesce($3, -1)",
            taxonomy,
            f"{base}%",
            exclude_id,
        )
        taken = {row["slug"] for row in rows}
        candidate = base
        suffix = 2
        while candidate in taken:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("TERMSYNC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            await pool.execute(SCHEMA_SQL)
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc
        self._pool = pool
        return self._pool

    def _primary_row_to_record(self, row: asyncpg.Record) -> Primary:
        categories = self._coerce_json_dict(row["categories"])
        return Primary(
            id=row["id"],
            type=row["type"],
            name=row["name"],
            body=row["body"] or "",
            status=row["status"],
            slug=row["slug"] or "",
            menu_order=int(row["menu_order"] or 0),
            is_revision=bool(row["is_revision"]),
            metadata={str(key): str(value) for key, value in self._coerce_json_dict(row["metadata"]).items()},
            categories={
                str(taxonomy): [str(item) for item in ids]
                for taxonomy, ids in categories.items()
                if isinstance(ids, list)
            },
        )

    def _category_row_to_record(self, row: asyncpg.Record) -> Category:
        return Category(
            id=row["id"],
            taxonomy=row["taxonomy"],
            name=row["name"],
            slug=row["slug"] or "",
            description=row["description"] or "",
            count=int(row["member_count"] or 0),
            metadata={str(key): str(value) for key, value in self._coerce_json_dict(row["metadata"]).items()},
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


def _meta_table(entity: Entity) -> tuple[str, str]:
    if isinstance(entity, Primary):
        return "primary_meta", "primary_id"
    return "category_meta", "category_id"


def _as_db_id(value: Any) -> int | None:
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None
