import pytest
from contextlib import asynccontextmanager
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from pentafolio.memory import create_memory_stores
from pentafolio.models import Account
from pentafolio.oracle import InMemoryPriceOracle
from pentafolio.services.portfolio import PortfolioService
from pentafolio.services.trading import TradingService


class FakeDatabase:
    """Store handle double that counts commits and rollbacks"""

    def __init__(self):
        self.tx = MagicMock(name="tx")
        self.committed = 0
        self.rolled_back = 0

    @asynccontextmanager
    async def transaction(self):
        try:
            yield self.tx
        except BaseException:
            self.rolled_back += 1
            raise
        self.committed += 1


@pytest.fixture
def mock_stores():
    """Database double plus mocked account, position and log stores"""
    return FakeDatabase(), AsyncMock(), AsyncMock(), AsyncMock()


@pytest.fixture
def ledger():
    """Trading and portfolio services over the in-process backend"""
    database, accounts, positions, transaction_log = create_memory_stores(lock_timeout=5.0)
    oracle = InMemoryPriceOracle({"AAPL": Decimal("150.00"), "MSFT": Decimal("330.00")})
    trading = TradingService(database, accounts, positions, transaction_log, oracle,
                             starting_balance=Decimal("10000.00"))
    portfolio = PortfolioService(accounts, positions, oracle)

    def fund(user_id: int, balance: str):
        database.accounts[user_id] = Account(user_id=user_id, cash_balance=Decimal(balance))

    return SimpleNamespace(
        database=database,
        accounts=accounts,
        positions=positions,
        transaction_log=transaction_log,
        oracle=oracle,
        trading=trading,
        portfolio=portfolio,
        fund=fund,
    )
