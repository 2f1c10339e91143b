"""Price oracle adapters.

The oracle is an unreliable collaborator: `get_quote` never raises, it returns
a Quote with a positive price or None. Every call is bounded by a timeout.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from pydantic import ValidationError
from redis.exceptions import RedisError

from .models import Quote
from .redis_client import MarketRedisClient

logger = logging.getLogger(__name__)

# price_per_share is NUMERIC(12, 2)
MAX_PRICE = Decimal('9999999999.99')


def default_display_name(symbol: str) -> str:
    return f"{symbol} Inc."


class PriceOracle(ABC):
    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        try:
            quote = await asyncio.wait_for(self._fetch(symbol), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Price lookup for %s timed out after %ss", symbol, self.timeout)
            return None

        if quote is None or quote.price <= 0 or quote.price > MAX_PRICE:
            logger.info("No usable price for %s", symbol)
            return None
        return quote

    @abstractmethod
    async def publish(self, symbol: str, price: Decimal, display_name: Optional[str] = None):
        """Set the simulated quote for a symbol"""

    @abstractmethod
    async def _fetch(self, symbol: str) -> Optional[Quote]:
        pass


class RedisPriceOracle(PriceOracle):
    """Reads quotes published to Redis by the market feed or POST /market/quotes"""

    def __init__(self, market_client: MarketRedisClient, timeout: float = 2.0):
        super().__init__(timeout)
        self.market_client = market_client

    async def publish(self, symbol: str, price: Decimal, display_name: Optional[str] = None):
        await self.market_client.set_quote(symbol, price, display_name)

    async def _fetch(self, symbol: str) -> Optional[Quote]:
        try:
            data = await self.market_client.get_quote(symbol)
        except (RedisError, OSError, InvalidOperation) as e:
            logger.warning("Price lookup for %s failed: %s", symbol, e)
            return None
        if data is None:
            return None
        price, display_name = data
        # The feed writes to Redis directly, so NaN and Infinity can reach here
        if not price.is_finite():
            logger.warning("Ignoring non-finite price %s for %s", price, symbol)
            return None
        try:
            return Quote(symbol=symbol, price=price, display_name=display_name or default_display_name(symbol))
        except ValidationError as e:
            logger.warning("Ignoring malformed quote for %s: %s", symbol, e)
            return None


class InMemoryPriceOracle(PriceOracle):
    """Quotes held in process. `delay` simulates a slow market-data source."""

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None, timeout: float = 2.0, delay: float = 0):
        super().__init__(timeout)
        self.delay = delay
        self._quotes: Dict[str, Quote] = {}
        for symbol, price in (prices or {}).items():
            self._quotes[symbol] = Quote(symbol=symbol, price=Decimal(price),
                                         display_name=default_display_name(symbol))

    async def publish(self, symbol: str, price: Decimal, display_name: Optional[str] = None):
        self._quotes[symbol] = Quote(symbol=symbol, price=price,
                                     display_name=display_name or default_display_name(symbol))

    def remove(self, symbol: str):
        self._quotes.pop(symbol, None)

    async def _fetch(self, symbol: str) -> Optional[Quote]:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._quotes.get(symbol)
