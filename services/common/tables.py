from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import asyncpg

from services.common.errors import StoreError

LOGGER = logging.getLogger('contractsync.tables')

Row = dict[str, Any]

SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS sync_rows (
    table_name TEXT NOT NULL,
    key TEXT NOT NULL,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (table_name, key)
)
'''


class Table(Protocol):
    name: str

    async def upsert(self, key: str, value: Row) -> None: ...

    async def get(self, key: str) -> Row | None: ...

    async def delete(self, key: str) -> None: ...

    async def query(self, filter: Row | None = None) -> list[tuple[str, Row]]: ...


def _matches(value: Row, filter: Row | None) -> bool:
    if not filter:
        return True
    return all(value.get(k) == v for k, v in filter.items())


class MemoryTable:
    def __init__(self, name: str) -> None:
        self.name = name
        self._rows: dict[str, Row] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, key: str, value: Row) -> None:
        async with self._lock:
            self._rows[key] = copy.deepcopy(value)

    async def get(self, key: str) -> Row | None:
        row = self._rows.get(key)
        return copy.deepcopy(row) if row is not None else None

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._rows.pop(key, None)

    async def query(self, filter: Row | None = None) -> list[tuple[str, Row]]:
        return [
            (key, copy.deepcopy(value))
            for key, value in sorted(self._rows.items())
            if _matches(value, filter)
        ]

    def __len__(self) -> int:
        return len(self._rows)


class PostgresTable:
    """One logical table stored as rows of the shared ``sync_rows`` JSONB store."""

    def __init__(self, name: str, pool: asyncpg.Pool) -> None:
        self.name = name
        self._pool = pool

    async def upsert(self, key: str, value: Row) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    '''
                    INSERT INTO sync_rows (table_name, key, value, updated_at)
                    VALUES ($1, $2, $3::jsonb, now())
                    ON CONFLICT (table_name, key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    ''',
                    self.name,
                    key,
                    json.dumps(value)
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreError(self.name, f'upsert key={key} failed: {exc}') from exc

    async def get(self, key: str) -> Row | None:
        try:
            async with self._pool.acquire() as conn:
                raw = await conn.fetchval(
                    'SELECT value FROM sync_rows WHERE table_name = $1 AND key = $2',
                    self.name,
                    key
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreError(self.name, f'get key={key} failed: {exc}') from exc
        if raw is None:
            return None
        return json.loads(raw)

    async def delete(self, key: str) -> None:
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    'DELETE FROM sync_rows WHERE table_name = $1 AND key = $2',
                    self.name,
                    key
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreError(self.name, f'delete key={key} failed: {exc}') from exc

    async def query(self, filter: Row | None = None) -> list[tuple[str, Row]]:
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    '''
                    SELECT key, value FROM sync_rows
                    WHERE table_name = $1 AND value @> $2::jsonb
                    ORDER BY key
                    ''',
                    self.name,
                    json.dumps(filter or {})
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise StoreError(self.name, f'query failed: {exc}') from exc
        return [(row['key'], json.loads(row['value'])) for row in rows]


async def ensure_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)


@dataclass
class AppTables:
    emps_active: Table
    emps_expired: Table
    lsps_active: Table
    lsps_expired: Table
    registered_emps: Table
    registered_lsps: Table
    erc20s: Table
    collateral_addresses: Table
    synthetic_addresses: Table
    long_addresses: Table
    short_addresses: Table
    discovery_cursors: Table
    app_stats: Table

    def by_name(self, name: str) -> Table:
        table = getattr(self, name, None)
        if table is None:
            raise KeyError(name)
        return table


TABLE_NAMES = [
    'emps_active',
    'emps_expired',
    'lsps_active',
    'lsps_expired',
    'registered_emps',
    'registered_lsps',
    'erc20s',
    'collateral_addresses',
    'synthetic_addresses',
    'long_addresses',
    'short_addresses',
    'discovery_cursors',
    'app_stats'
]


def memory_tables() -> AppTables:
    return AppTables(**{name: MemoryTable(name) for name in TABLE_NAMES})


def postgres_tables(pool: asyncpg.Pool) -> AppTables:
    return AppTables(**{name: PostgresTable(name, pool) for name in TABLE_NAMES})
