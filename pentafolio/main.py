import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from types import SimpleNamespace

import uvicorn
from fastapi import FastAPI

from .api import router
from .config import config
from .logging_config import setup_logging
from .memory import create_memory_stores
from .oracle import InMemoryPriceOracle, RedisPriceOracle
from .postgres import AsyncPostgresClient
from .redis_client import MarketRedisClient
from .services.portfolio import PortfolioService
from .services.trading import TradingService
from .stores import AccountStore, PositionStore, TransactionLog

logger = logging.getLogger(__name__)

# Simulated quotes for the in-process backend
DEMO_PRICES = {
    "AAPL": Decimal("150.00"),
    "MSFT": Decimal("330.00"),
    "GOOGL": Decimal("135.00"),
    "AMZN": Decimal("145.00"),
    "TSLA": Decimal("250.00"),
}


def build_ledger(settings=config) -> SimpleNamespace:
    """Construct the store handle, stores, oracle and services for the configured backend"""
    market_client = None
    if settings.STORAGE_BACKEND == "memory":
        database, accounts, positions, transaction_log = create_memory_stores(settings.LOCK_TIMEOUT_SECONDS)
        oracle = InMemoryPriceOracle(DEMO_PRICES, timeout=settings.ORACLE_TIMEOUT_SECONDS)
    elif settings.STORAGE_BACKEND == "postgres":
        database = AsyncPostgresClient(
            user=settings.POSTGRES_USER,
            password=settings.POSTGRES_PASSWORD,
            database=settings.POSTGRES_DATABASE,
            host=settings.POSTGRES_HOST,
            port=settings.POSTGRES_PORT,
            min_size=settings.POSTGRES_POOL_MIN,
            max_size=settings.POSTGRES_POOL_MAX,
            lock_timeout=settings.LOCK_TIMEOUT_SECONDS
        )
        accounts = AccountStore(database)
        positions = PositionStore(database)
        transaction_log = TransactionLog(database)
        market_client = MarketRedisClient(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD if settings.REDIS_PASSWORD else None,
            db=settings.REDIS_DB
        )
        oracle = RedisPriceOracle(market_client, timeout=settings.ORACLE_TIMEOUT_SECONDS)
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")

    trading_service = TradingService(database, accounts, positions, transaction_log, oracle,
                                     starting_balance=settings.STARTING_CASH_BALANCE)
    portfolio_service = PortfolioService(accounts, positions, oracle)
    return SimpleNamespace(
        database=database,
        market_client=market_client,
        oracle=oracle,
        trading_service=trading_service,
        portfolio_service=portfolio_service,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    ledger = build_ledger()

    await ledger.database.connect()
    await ledger.database.init_schema()
    if ledger.market_client:
        await ledger.market_client.connect()

    app.state.oracle = ledger.oracle
    app.state.trading_service = ledger.trading_service
    app.state.portfolio_service = ledger.portfolio_service
    logger.info("%s started with %s backend", config.APP_NAME, config.STORAGE_BACKEND)

    yield

    # Shutdown
    if ledger.market_client:
        await ledger.market_client.close()
    await ledger.database.close()
    logger.info("%s shutdown complete", config.APP_NAME)

app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION, lifespan=lifespan)

# Include API routes
app.include_router(router)

@app.get("/")
async def root():
    return {"message": config.APP_NAME, "status": "running"}

@app.get("/health")
async def health():
    return {"status": "healthy"}

if __name__ == "__main__":
    uvicorn.run(
        "pentafolio.main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG
    )
