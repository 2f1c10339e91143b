import os
from decimal import Decimal
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Config:
    """Configuration class for environment variables"""

    # Postgres Configuration
    POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
    POSTGRES_USER = os.getenv("POSTGRES_USER", "user")
    POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "pass")
    POSTGRES_DATABASE = os.getenv("POSTGRES_DATABASE", "pentafolio")
    POSTGRES_POOL_MIN = int(os.getenv("POSTGRES_POOL_MIN", "1"))
    POSTGRES_POOL_MAX = int(os.getenv("POSTGRES_POOL_MAX", "10"))

    # Redis Configuration
    REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", "")
    REDIS_DB = int(os.getenv("REDIS_DB", "0"))

    # Ledger Configuration
    STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "postgres").lower()  # "postgres" or "memory"
    STARTING_CASH_BALANCE = Decimal(os.getenv("STARTING_CASH_BALANCE", "10000.00"))
    LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
    ORACLE_TIMEOUT_SECONDS = float(os.getenv("ORACLE_TIMEOUT_SECONDS", "2"))

    # Application Configuration
    APP_NAME = os.getenv("APP_NAME", "Pentafolio")
    APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
    DEBUG = os.getenv("DEBUG", "false").lower() == "true"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Server Configuration
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))

# Create a global config instance
config = Config()
