"""
Async Storage Backend Module

Provides the async storage interface used by the engine, an adapter that runs
any sync backend off the event loop, and production async PostgreSQL using
asyncpg. All monetary values stored as Decimal strings.

Transactions are scoped to the asyncio task that opened them: writes made
inside ``atomic()`` are invisible to other tasks until commit, and a rollback
(including one triggered by task cancellation) leaves no trace.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
import asyncio
import json

from .config import EngineConfig
from .errors import InternalFailure
from .storage import StorageInterface, InMemoryStorage, SQLiteStorage


class RowLocks:
    """
    In-process row locks keyed by record id.

    Locks are taken in sorted id order so two callers locking the same
    rows in opposite order cannot deadlock.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def locked(self, *record_ids: str):
        held = []
        try:
            for record_id in sorted(set(record_ids)):
                lock = self._locks.setdefault(record_id, asyncio.Lock())
                await lock.acquire()
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    async def initialize(self) -> None:
        """Prepare connections (default no-op)"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass

    async def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    async def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    async def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @asynccontextmanager
    async def atomic(self):
        """Context manager for atomic operations"""
        await self.begin_transaction()
        try:
            yield
        except BaseException:
            await self.rollback()
            raise
        else:
            await self.commit()


@dataclass
class _PendingTransaction:
    """Writes staged by one task; None marks a delete"""
    writes: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = field(default_factory=dict)
    depth: int = 1
    rollback_only: bool = False


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(data, default=str))


class AsyncStorageAdapter(AsyncStorageInterface):
    """Runs a sync storage backend in worker threads with task-scoped transactions"""

    def __init__(self, sync_storage: StorageInterface):
        self._sync_storage = sync_storage
        self._lock = asyncio.Lock()
        self._pending: ContextVar[Optional[_PendingTransaction]] = ContextVar(
            f"pending_transaction_{id(self)}", default=None
        )

    async def _run(self, func, *args):
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    def _overlay(self, table: str, records: List[Dict[str, Any]],
                 filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Apply this task's staged writes on top of committed records"""
        tx = self._pending.get()
        if tx is None:
            return records
        merged = {record.get('id'): record for record in records}
        for (staged_table, record_id), data in tx.writes.items():
            if staged_table != table:
                continue
            if data is None:
                merged.pop(record_id, None)
            elif filters is None or all(data.get(k) == v for k, v in filters.items()):
                merged[record_id] = _copy(data)
            else:
                merged.pop(record_id, None)
        return list(merged.values())

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record, staged if a transaction is open"""
        tx = self._pending.get()
        if tx is not None:
            tx.writes[(table, record_id)] = _copy(data)
            return
        await self._run(self._sync_storage.save, table, record_id, data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, seeing this task's staged writes"""
        tx = self._pending.get()
        if tx is not None and (table, record_id) in tx.writes:
            staged = tx.writes[(table, record_id)]
            return _copy(staged) if staged is not None else None
        return await self._run(self._sync_storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        records = await self._run(self._sync_storage.load_all, table)
        return self._overlay(table, records)

    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        tx = self._pending.get()
        if tx is not None:
            existed = await self.exists(table, record_id)
            tx.writes[(table, record_id)] = None
            return existed
        return await self._run(self._sync_storage.delete, table, record_id)

    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return await self.load(table, record_id) is not None

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        records = await self._run(self._sync_storage.find, table, filters)
        return self._overlay(table, records, filters)

    async def count(self, table: str) -> int:
        """Count records in table"""
        if self._pending.get() is None:
            return await self._run(self._sync_storage.count, table)
        return len(await self.load_all(table))

    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        await self._run(self._sync_storage.clear_table, table)

    async def close(self) -> None:
        """Close storage connection"""
        await asyncio.to_thread(self._sync_storage.close)

    async def begin_transaction(self) -> None:
        """Open (or nest into) this task's transaction"""
        tx = self._pending.get()
        if tx is not None:
            tx.depth += 1
            return
        self._pending.set(_PendingTransaction())

    async def commit(self) -> None:
        """Apply staged writes atomically once the outermost level commits"""
        tx = self._pending.get()
        if tx is None:
            return
        tx.depth -= 1
        if tx.depth > 0:
            return
        self._pending.set(None)
        if tx.rollback_only:
            raise InternalFailure("Transaction was rolled back by a nested scope")
        if tx.writes:
            await self._run(self._apply, tx.writes)

    async def rollback(self) -> None:
        """Discard this task's staged writes; a nested level only marks them doomed"""
        tx = self._pending.get()
        if tx is None:
            return
        tx.depth -= 1
        if tx.depth > 0:
            tx.rollback_only = True
            return
        self._pending.set(None)

    def _apply(self, writes: Dict[Tuple[str, str], Optional[Dict[str, Any]]]) -> None:
        with self._sync_storage.atomic():
            for (table, record_id), data in writes.items():
                if data is None:
                    self._sync_storage.delete(table, record_id)
                else:
                    self._sync_storage.save(table, record_id, data)


class AsyncInMemoryStorage(AsyncStorageAdapter):
    """Async wrapper around InMemoryStorage for testing"""

    def __init__(self):
        super().__init__(InMemoryStorage())


class AsyncPostgreSQLStorage(AsyncStorageInterface):
    """True async PostgreSQL using asyncpg"""

    def __init__(self, connection_string: str, pool_size: int = 10):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool = None
        self._tables = set()
        self._transaction: ContextVar[Optional[list]] = ContextVar(
            f"pg_transaction_{id(self)}", default=None
        )

    async def initialize(self) -> None:
        """Create connection pool; call on app startup"""
        import asyncpg

        self.pool = await asyncpg.create_pool(
            self.connection_string,
            min_size=2,
            max_size=self.pool_size,
            command_timeout=60
        )

    async def close(self) -> None:
        """Close pool; call on app shutdown"""
        if self.pool:
            await self.pool.close()

    @asynccontextmanager
    async def _connection(self):
        """Use this task's transaction connection, or borrow one from the pool"""
        if not self.pool:
            raise RuntimeError("Pool not initialized. Call initialize() first.")
        current = self._transaction.get()
        if current is not None:
            yield current[0]
            return
        async with self.pool.acquire() as conn:
            yield conn

    async def _ensure_table(self, conn, table: str) -> None:
        """Ensure table exists"""
        if table in self._tables:
            return
        await conn.execute(f'''
            CREATE TABLE IF NOT EXISTS "{table}" (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
            )
        ''')
        self._tables.add(table)

    @staticmethod
    def _decode(row) -> Dict[str, Any]:
        data = row['data']
        if isinstance(data, str):
            data = json.loads(data)
        return dict(data)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL"""
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            await conn.execute(f'''
                INSERT INTO "{table}" (id, data, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (id)
                DO UPDATE SET data = $2, updated_at = NOW()
            ''', record_id, json.dumps(data, default=str))

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            row = await conn.fetchrow(f'SELECT data FROM "{table}" WHERE id = $1', record_id)
            return self._decode(row) if row else None

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            rows = await conn.fetch(f'SELECT data FROM "{table}" ORDER BY created_at')
            return [self._decode(row) for row in rows]

    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            result = await conn.execute(f'DELETE FROM "{table}" WHERE id = $1', record_id)
            return result != 'DELETE 0'

    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            row = await conn.fetchrow(f'SELECT 1 FROM "{table}" WHERE id = $1', record_id)
            return row is not None

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            if not filters:
                rows = await conn.fetch(f'SELECT data FROM "{table}" ORDER BY created_at')
            else:
                rows = await conn.fetch(
                    f'SELECT data FROM "{table}" WHERE data @> $1::jsonb ORDER BY created_at',
                    json.dumps(filters, default=str)
                )
            return [self._decode(row) for row in rows]

    async def count(self, table: str) -> int:
        """Count records in table"""
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            row = await conn.fetchrow(f'SELECT COUNT(*) FROM "{table}"')
            return row[0]

    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        async with self._connection() as conn:
            await self._ensure_table(conn, table)
            await conn.execute(f'DELETE FROM "{table}"')

    async def begin_transaction(self) -> None:
        """Start a transaction bound to the current task"""
        if not self.pool:
            raise RuntimeError("Pool not initialized")
        current = self._transaction.get()
        if current is not None:
            current[2] += 1
            return
        conn = await self.pool.acquire()
        transaction = conn.transaction()
        await transaction.start()
        self._transaction.set([conn, transaction, 1, False])

    async def commit(self) -> None:
        """Commit current transaction"""
        current = self._transaction.get()
        if current is None:
            return
        current[2] -= 1
        if current[2] > 0:
            return
        self._transaction.set(None)
        conn, transaction, _, rollback_only = current
        try:
            if rollback_only:
                await transaction.rollback()
                raise InternalFailure("Transaction was rolled back by a nested scope")
            await transaction.commit()
        finally:
            await self.pool.release(conn)

    async def rollback(self) -> None:
        """Rollback current transaction; a nested level only marks it doomed"""
        current = self._transaction.get()
        if current is None:
            return
        current[2] -= 1
        if current[2] > 0:
            current[3] = True
            return
        self._transaction.set(None)
        conn, transaction, _, _ = current
        try:
            await transaction.rollback()
        finally:
            await self.pool.release(conn)


def create_async_storage(config: EngineConfig) -> AsyncStorageInterface:
    """Factory function to create async storage instances"""
    storage_type = config.storage_type.lower()

    if storage_type == 'postgresql':
        return AsyncPostgreSQLStorage(config.database_url, config.database_pool_size)
    if storage_type == 'sqlite':
        return AsyncStorageAdapter(SQLiteStorage(config.database_url))
    return AsyncInMemoryStorage()
