import asyncpg
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional, Any, List, Dict, TypeVar, AsyncIterator
from pydantic import BaseModel

from .errors import LedgerError, StorageFailure

logger = logging.getLogger(__name__)

T = TypeVar('T', bound=BaseModel)

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    user_id BIGINT PRIMARY KEY,
    cash_balance NUMERIC(14, 2) NOT NULL CHECK (cash_balance >= 0),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS positions (
    id BIGSERIAL PRIMARY KEY,
    user_id BIGINT NOT NULL REFERENCES accounts (user_id),
    symbol VARCHAR(10) NOT NULL,
    display_name TEXT,
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    cost_basis_total NUMERIC(14, 2) NOT NULL CHECK (cost_basis_total >= 0),
    last_known_price NUMERIC(12, 2),
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (user_id, symbol)
);

CREATE TABLE IF NOT EXISTS ledger_transactions (
    id BIGSERIAL PRIMARY KEY,
    user_id BIGINT NOT NULL REFERENCES accounts (user_id),
    symbol VARCHAR(10) NOT NULL,
    side VARCHAR(4) NOT NULL CHECK (side IN ('BUY', 'SELL')),
    quantity INTEGER NOT NULL CHECK (quantity > 0),
    price_per_share NUMERIC(12, 2) NOT NULL,
    total_amount NUMERIC(14, 2) NOT NULL,
    realized_gain NUMERIC(14, 2),
    timestamp TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
);

CREATE INDEX IF NOT EXISTS ledger_transactions_user_idx
    ON ledger_transactions (user_id, timestamp DESC, id DESC);
"""


class AsyncPostgresClient:
    def __init__(self, user: str, password: str, database: str, host: str = "localhost", port: int = 5432,
                 min_size: int = 1, max_size: int = 10, lock_timeout: float = 5.0):
        self._user = user
        self._password = password
        self._database = database
        self._host = host
        self._port = port
        self._min_size = min_size
        self._max_size = max_size
        self._lock_timeout_ms = int(lock_timeout * 1000)
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        if not self._pool:
            self._pool = await asyncpg.create_pool(
                user=self._user,
                password=self._password,
                database=self._database,
                host=self._host,
                port=self._port,
                min_size=self._min_size,
                max_size=self._max_size
            )

    async def close(self):
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def init_schema(self):
        """Create ledger tables if they do not exist"""
        await self.execute(SCHEMA)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Yield a connection inside one transaction.

        Row locks taken with SELECT ... FOR UPDATE are held until the block exits.
        Any exception rolls the whole transaction back; driver errors are re-raised
        as StorageFailure so callers see one retryable kind.
        """
        if not self._pool:
            await self.connect()
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
                    yield conn
        except LedgerError:
            raise
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.exception("Ledger transaction rolled back")
            raise StorageFailure("Could not save changes. Please try again.") from e

    async def execute(self, query: str, *args: Any):
        if not self._pool:
            await self.connect()
        await self._pool.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> List[Dict[str, Any]]:
        if not self._pool:
            await self.connect()
        rows = await self._pool.fetch(query, *args)
        return [dict(row) for row in rows]

    async def fetchrow(self, query: str, *args: Any) -> Optional[Dict[str, Any]]:
        if not self._pool:
            await self.connect()
        row = await self._pool.fetchrow(query, *args)
        return dict(row) if row else None

    async def fetchval(self, query: str, *args: Any):
        if not self._pool:
            await self.connect()
        return await self._pool.fetchval(query, *args)

    async def fetch_model(self, model_class: type[T], query: str, *args: Any) -> Optional[T]:
        """Fetch a single row and return as a Pydantic model"""
        row = await self.fetchrow(query, *args)
        if row:
            return model_class(**row)
        return None

    async def fetch_models(self, model_class: type[T], query: str, *args: Any) -> List[T]:
        """Fetch multiple rows and return as a list of Pydantic models"""
        rows = await self.fetch(query, *args)
        return [model_class(**row) for row in rows]

    async def insert_model(self, conn: asyncpg.Connection, model: BaseModel, table: str) -> Dict[str, Any]:
        """Insert a Pydantic model inside an open transaction and return the stored row"""
        fields = model.model_dump(exclude_none=True, exclude={'id'})
        fields = {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}
        field_names = list(fields.keys())
        placeholders = [f"${i+1}" for i in range(len(field_names))]

        query = f"""
            INSERT INTO {table} ({', '.join(field_names)})
            VALUES ({', '.join(placeholders)})
            RETURNING *
        """
        row = await conn.fetchrow(query, *fields.values())
        return dict(row)
