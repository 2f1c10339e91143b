import redis.asyncio as aioredis
from decimal import Decimal
from typing import Optional, Tuple
from abc import ABC

class BaseRedisClient(ABC):
    """Base Redis client with lazy connection"""

    def __init__(self, host: str = "localhost", port: int = 6379, password: Optional[str] = None, db: int = 0):
        self._host = host
        self._port = port
        self._password = password
        self._db = db
        self._conn: Optional[aioredis.Redis] = None

    async def connect(self):
        if not self._conn:
            self._conn = aioredis.Redis(
                host=self._host,
                port=self._port,
                password=self._password,
                db=self._db,
                decode_responses=True
            )

    async def close(self):
        if self._conn:
            await self._conn.aclose()
            self._conn = None

    async def conn(self) -> aioredis.Redis:
        if not self._conn:
            await self.connect()
        return self._conn


class MarketRedisClient(BaseRedisClient):
    """Published market quotes.

    Each symbol is a hash `quote:<SYMBOL>` with `price` and optional
    `display_name`.
    """

    @staticmethod
    def quote_key(symbol: str) -> str:
        return f"quote:{symbol}"

    async def set_quote(self, symbol: str, price: Decimal, display_name: Optional[str] = None):
        fields = {"price": str(price)}
        if display_name:
            fields["display_name"] = display_name
        conn = await self.conn()
        await conn.hset(self.quote_key(symbol), mapping=fields)

    async def get_quote(self, symbol: str) -> Optional[Tuple[Decimal, Optional[str]]]:
        """(price, display name) for symbol, or None if never published"""
        conn = await self.conn()
        fields = await conn.hgetall(self.quote_key(symbol))
        if not fields or not fields.get("price"):
            return None
        return Decimal(fields["price"]), fields.get("display_name")
