"""
AIOSQLite-based registry store.

Mappings and sets live in two tables keyed by the registry key, accessed
through aiosqlite and an aiosqlitepool connection pool.
"""

import asyncio
from contextlib import asynccontextmanager

import aiosqlite
from aiosqlitepool import (
    PoolClosedError,
    PoolConnectionAcquireTimeoutError,
    SQLiteConnectionPool,
)
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from . import BaseStore, StoreUnavailable

MAPPING_TABLE = "channels_global_mapping"
SET_TABLE = "channels_global_set"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {MAPPING_TABLE} (
    key TEXT NOT NULL,
    field TEXT NOT NULL,
    value TEXT NOT NULL,
    PRIMARY KEY (key, field)
);
CREATE TABLE IF NOT EXISTS {SET_TABLE} (
    key TEXT NOT NULL,
    member TEXT NOT NULL,
    PRIMARY KEY (key, member)
);
"""

DEFAULT_PRAGMAS = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;
PRAGMA cache_size=10000;
PRAGMA temp_store=MEMORY;
PRAGMA busy_timeout=5000;
"""

PIPELINE_SQL = {
    "set_member": f"""
        INSERT INTO {MAPPING_TABLE} (key, field, value) VALUES (?, ?, ?)
        ON CONFLICT (key, field) DO UPDATE SET value = excluded.value
    """,
    "del_member": f"DELETE FROM {MAPPING_TABLE} WHERE key = ? AND field = ?",
    "add_to_set": f"INSERT OR IGNORE INTO {SET_TABLE} (key, member) VALUES (?, ?)",
    "remove_from_set": f"DELETE FROM {SET_TABLE} WHERE key = ? AND member = ?",
    # ?1 mapping key, ?2 field, ?3 set key prefix, ?4 member, ?5 value to keep
    "remove_from_mapped_set": f"""
        DELETE FROM {SET_TABLE}
        WHERE member = ?4 AND key = (
            SELECT ?3 || value FROM {MAPPING_TABLE}
            WHERE key = ?1 AND field = ?2 AND value IS NOT ?5
        )
    """,
}

# Errors meaning the database or the pool cannot serve the call. aiosqlite
# raises ValueError once its connection has been closed.
UNAVAILABLE_ERRORS = (
    aiosqlite.Error,
    ValueError,
    PoolClosedError,
    PoolConnectionAcquireTimeoutError,
)


class AIOSQLiteStore(BaseStore):
    """
    Store backed by SQLite using aiosqlite and connection pooling.

    The database file comes either from a Django database alias (which must
    use the sqlite3 engine) or from an explicit db_path.
    """

    def __init__(self, *, database=None, db_path=None, pool_size=10):
        self.database = database
        self.db_settings = {}
        if db_path is None:
            if database is None:
                raise ImproperlyConfigured(
                    "AIOSQLiteStore needs either a database alias or a db_path"
                )
            try:
                self.db_settings = settings.DATABASES[database]
                assert "sqlite3" in self.db_settings["ENGINE"]
            except KeyError:
                raise ImproperlyConfigured(
                    f"{database} is an invalid database alias"
                )
            except AssertionError:
                raise ImproperlyConfigured(
                    "SQLite database engine is required to use this store"
                )
            db_path = self.db_settings["NAME"]
        self.db_path = str(db_path)
        self.pool_size = pool_size
        self.pool = None

        # In-flight operation tracking, used by a draining close
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def connected(self):
        return self.pool is not None

    async def connect(self):
        """Create the connection pool and the registry tables."""
        if self.pool is not None:
            return

        async def connection_factory():
            conn = await aiosqlite.connect(self.db_path)
            init_command = self.db_settings.get("OPTIONS", {}).get("init_command")
            await conn.executescript(init_command or DEFAULT_PRAGMAS)
            return conn

        self.pool = SQLiteConnectionPool(connection_factory, pool_size=self.pool_size)
        try:
            async with self._connection() as conn:
                await conn.executescript(SCHEMA)
                await conn.commit()
        except Exception:
            pool, self.pool = self.pool, None
            await pool.close()
            raise

    async def close(self, force=False):
        """Close the pool, waiting for in-flight operations unless forced."""
        if self.pool is None:
            return
        # New calls fail fast from here on
        pool, self.pool = self.pool, None
        if not force and self._inflight:
            await self._idle.wait()
        await pool.close()

    @asynccontextmanager
    async def _connection(self):
        pool = self.pool
        if pool is None:
            raise StoreUnavailable("store is not connected")
        self._inflight += 1
        self._idle.clear()
        try:
            async with pool.connection() as conn:
                yield conn
        except UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(str(e) or repr(e)) from e
        finally:
            self._inflight -= 1
            if not self._inflight:
                self._idle.set()

    async def _fetchall(self, sql, params):
        async with self._connection() as conn:
            cursor = await conn.execute(sql, params)
            return await cursor.fetchall()

    # Mapping keys

    async def get_member(self, key, field):
        rows = await self._fetchall(
            f"SELECT value FROM {MAPPING_TABLE} WHERE key = ? AND field = ?",
            (key, field),
        )
        return rows[0][0] if rows else None

    async def get_mapping(self, key):
        rows = await self._fetchall(
            f"SELECT field, value FROM {MAPPING_TABLE} WHERE key = ? ORDER BY rowid",
            (key,),
        )
        return {row[0]: row[1] for row in rows}

    async def mapping_keys(self, key):
        rows = await self._fetchall(
            f"SELECT field FROM {MAPPING_TABLE} WHERE key = ? ORDER BY rowid",
            (key,),
        )
        return [row[0] for row in rows]

    async def mapping_len(self, key):
        rows = await self._fetchall(
            f"SELECT COUNT(*) FROM {MAPPING_TABLE} WHERE key = ?", (key,)
        )
        return rows[0][0]

    async def has_member(self, key, field):
        rows = await self._fetchall(
            f"SELECT 1 FROM {MAPPING_TABLE} WHERE key = ? AND field = ? LIMIT 1",
            (key, field),
        )
        return bool(rows)

    # Set keys

    async def members_of_set(self, key):
        rows = await self._fetchall(
            f"SELECT member FROM {SET_TABLE} WHERE key = ? ORDER BY rowid", (key,)
        )
        return [row[0] for row in rows]

    # Keyspace

    async def scan_keys_by_prefix(self, prefix, cursor=None, count=100):
        rows = await self._fetchall(
            f"""
            SELECT key FROM (
                SELECT key FROM {MAPPING_TABLE}
                UNION
                SELECT key FROM {SET_TABLE}
            )
            WHERE key > ? AND substr(key, 1, ?) = ?
            ORDER BY key
            LIMIT ?
            """,
            (cursor or "", len(prefix), prefix, count),
        )
        keys = [row[0] for row in rows]
        next_cursor = keys[-1] if len(keys) == count else None
        return next_cursor, keys

    async def delete_keys(self, keys):
        keys = list(keys)
        if not keys:
            return
        placeholders = ", ".join("?" for _ in keys)
        async with self._connection() as conn:
            try:
                await conn.execute(
                    f"DELETE FROM {MAPPING_TABLE} WHERE key IN ({placeholders})", keys
                )
                await conn.execute(
                    f"DELETE FROM {SET_TABLE} WHERE key IN ({placeholders})", keys
                )
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def _execute_pipeline(self, ops):
        """
        Apply every queued write in a single transaction.

        The write lock is taken up front so ops that read a mapping see the
        value no concurrent pipeline can change before commit.
        """
        async with self._connection() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                for op, *params in ops:
                    await conn.execute(PIPELINE_SQL[op], params)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
