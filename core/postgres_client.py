"""
PostgreSQL Client Wrapper

Thin asyncpg pool wrapper with a consistent database access pattern for
the microservice repositories.

Usage:
    from core.postgres_client import PostgresClient

    db = PostgresClient("settlement_service")
    await db.connect()

    # Single statements
    rows = await db.query('SELECT * FROM settlement."Campaigns" WHERE "Id" = $1', [campaign_id])

    # Several statements in one database transaction
    async with db.transaction() as tx:
        await tx.execute("...", [...])
        row = await tx.query_row("...", [...])
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from .config import InfraConfig

logger = logging.getLogger(__name__)


async def _init_connection(conn: asyncpg.Connection):
    """Decode json/jsonb columns to Python objects"""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name, encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )


class _ConnectionQueries:
    """Query helpers bound to one acquired connection"""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        rows = await self._conn.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        row = await self._conn.fetchrow(sql, *(params or []))
        return dict(row) if row is not None else None

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> str:
        return await self._conn.execute(sql, *(params or []))


class PostgresClient:
    """
    asyncpg pool wrapper.

    Provides:
    - Environment driven host/port/credentials (InfraConfig)
    - Lazy pool creation on connect()
    - json/jsonb decoding
    - transaction() scope for multi-statement units of work
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
        database: Optional[str] = None,
    ):
        config = config or InfraConfig.from_env()
        self.service_name = service_name
        self.host = host or config.postgres_host
        self.port = port or config.postgres_port
        self.database = database or config.postgres_db
        self.username = config.postgres_user
        self.password = config.postgres_password
        self.min_size = config.postgres_min_pool_size
        self.max_size = config.postgres_max_pool_size
        self.command_timeout = config.postgres_command_timeout
        self._pool: Optional[asyncpg.Pool] = None

        logger.info(f"PostgreSQL client initialized for {service_name}: {self.host}:{self.port}/{self.database}")

    async def connect(self):
        """Create the connection pool (idempotent)"""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            user=self.username,
            password=self.password,
            database=self.database,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
            init=_init_connection,
        )
        logger.info(f"PostgreSQL pool ready for {self.service_name}")

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError(f"PostgreSQL pool for {self.service_name} is not connected")
        return self._pool

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        async with self._require_pool().acquire() as conn:
            return await _ConnectionQueries(conn).query(sql, params)

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        async with self._require_pool().acquire() as conn:
            return await _ConnectionQueries(conn).query_row(sql, params)

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> str:
        """Execute SQL statement and return the command status"""
        async with self._require_pool().acquire() as conn:
            return await _ConnectionQueries(conn).execute(sql, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_ConnectionQueries]:
        """Run several statements on one connection inside a database transaction"""
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                yield _ConnectionQueries(conn)

    async def health_check(self) -> Dict[str, Any]:
        """Check database health"""
        try:
            value = await self.query_row("SELECT 1 AS ok")
            return {"healthy": bool(value and value.get("ok") == 1)}
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {"healthy": False, "error": str(e)}

    async def close(self):
        """Close the pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.service_name}")


__all__ = ["PostgresClient"]
