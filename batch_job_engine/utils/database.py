"""
Database utilities for the batch job engine

Provides asyncpg connection pool management, transactions and schema
bootstrap for the execution metadata tables and item sinks.
"""

import asyncpg
from pathlib import Path
from typing import Any, List, Optional
from contextlib import asynccontextmanager

from ..core.exceptions import ExecutionStoreError


SCHEMA_FILE = Path(__file__).resolve().parent.parent / "sql" / "schema.sql"


class DatabaseManager:
    """
    Manages database connections for the engine.

    Provides pooled connections and transaction scopes shared by the
    PostgreSQL job repository and the asyncpg item writer.
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20, command_timeout: float = 60):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
            command_timeout: Per-statement timeout in seconds
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        if self.pool is not None:
            return
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=min(5, self.pool_size),
                max_size=self.pool_size + self.max_overflow,
                command_timeout=self.command_timeout
            )
        except Exception as e:
            raise ExecutionStoreError("initialization", f"Failed to create connection pool: {str(e)}")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def is_healthy(self) -> bool:
        """Check database connectivity."""
        if not self.pool:
            return False
        try:
            async with self.pool.acquire() as connection:
                await connection.execute("SELECT 1")
                return True
        except (asyncpg.PostgresError, OSError):
            return False

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise ExecutionStoreError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self):
        """Connection with an open transaction; rolled back if the block raises."""
        async with self.get_connection() as connection:
            async with connection.transaction():
                yield connection

    async def execute_script(self, sql: str) -> None:
        """Run a multi-statement SQL script."""
        try:
            async with self.get_connection() as conn:
                await conn.execute(sql)
        except asyncpg.PostgresError as e:
            raise ExecutionStoreError("execute_script", str(e))

    async def apply_schema(self, schema_file: Path = SCHEMA_FILE) -> None:
        """Create the execution metadata tables and sequences if missing."""
        await self.execute_script(schema_file.read_text(encoding="utf-8"))

    async def fetch(self, query: str, *args: Any) -> List[asyncpg.Record]:
        try:
            async with self.get_connection() as conn:
                return await conn.fetch(query, *args)
        except asyncpg.PostgresError as e:
            raise ExecutionStoreError("fetch", str(e))
