import pytest
from decimal import Decimal
from types import SimpleNamespace
from pentafolio.config import config
from pentafolio.main import build_ledger
from pentafolio.memory import MemoryDatabase
from pentafolio.oracle import InMemoryPriceOracle, RedisPriceOracle
from pentafolio.postgres import AsyncPostgresClient

class TestConfig:
    """Test configuration loading from environment variables"""

    def test_postgres_config(self):
        """Test PostgreSQL configuration values"""
        assert isinstance(config.POSTGRES_HOST, str)
        assert isinstance(config.POSTGRES_PORT, int)
        assert isinstance(config.POSTGRES_USER, str)
        assert isinstance(config.POSTGRES_PASSWORD, str)
        assert isinstance(config.POSTGRES_DATABASE, str)
        assert config.POSTGRES_POOL_MIN <= config.POSTGRES_POOL_MAX

    def test_redis_config(self):
        """Test Redis configuration values"""
        assert isinstance(config.REDIS_HOST, str)
        assert isinstance(config.REDIS_PORT, int)
        assert isinstance(config.REDIS_DB, int)

    def test_ledger_config(self):
        """Test ledger configuration values"""
        assert config.STORAGE_BACKEND in ["postgres", "memory"]
        assert isinstance(config.STARTING_CASH_BALANCE, Decimal)
        assert config.STARTING_CASH_BALANCE >= 0
        assert config.LOCK_TIMEOUT_SECONDS > 0
        assert config.ORACLE_TIMEOUT_SECONDS > 0

    def test_app_config(self):
        """Test application configuration values"""
        assert isinstance(config.APP_NAME, str)
        assert isinstance(config.APP_VERSION, str)
        assert isinstance(config.DEBUG, bool)
        assert len(config.APP_NAME) > 0
        assert len(config.APP_VERSION) > 0

    def test_server_config(self):
        """Test server configuration values"""
        assert isinstance(config.HOST, str)
        assert isinstance(config.PORT, int)

class TestBuildLedger:
    """Backend selection from configuration"""

    def test_memory_backend(self):
        settings = SimpleNamespace(STORAGE_BACKEND="memory", LOCK_TIMEOUT_SECONDS=1.0,
                                   ORACLE_TIMEOUT_SECONDS=0.5, STARTING_CASH_BALANCE=Decimal('500'))
        ledger = build_ledger(settings)

        assert isinstance(ledger.database, MemoryDatabase)
        assert isinstance(ledger.oracle, InMemoryPriceOracle)
        assert ledger.market_client is None
        assert ledger.trading_service.starting_balance == Decimal('500.00')

    def test_postgres_backend(self):
        """Clients are only constructed here, nothing connects"""
        settings = SimpleNamespace(
            STORAGE_BACKEND="postgres", LOCK_TIMEOUT_SECONDS=1.0, ORACLE_TIMEOUT_SECONDS=0.5,
            STARTING_CASH_BALANCE=Decimal('10000'),
            POSTGRES_USER="user", POSTGRES_PASSWORD="pass", POSTGRES_DATABASE="pentafolio",
            POSTGRES_HOST="localhost", POSTGRES_PORT=5432, POSTGRES_POOL_MIN=1, POSTGRES_POOL_MAX=5,
            REDIS_HOST="localhost", REDIS_PORT=6379, REDIS_PASSWORD="", REDIS_DB=0,
        )
        ledger = build_ledger(settings)

        assert isinstance(ledger.database, AsyncPostgresClient)
        assert isinstance(ledger.oracle, RedisPriceOracle)
        assert ledger.market_client is not None

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_ledger(SimpleNamespace(STORAGE_BACKEND="sqlite"))
