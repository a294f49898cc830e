from typing import List, Optional
from pydantic_settings import BaseSettings
from functools import lru_cache

class Settings(BaseSettings):
    # App Settings
    APP_NAME: str = "TrustFi Collectibles"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # CORS
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",  # Frontend development
        "http://localhost:5173",  # Vite dev server
        "https://app.trustfi.io",  # Production frontend
    ]

    # Chain Settings
    RPC_URL: str = "http://localhost:8545"
    CHAIN_ID: int = 1287  # Moonbase Alpha
    COLLECTIBLE_CONTRACT_ADDRESS: str = "0x0000000000000000000000000000000000000000"
    RPC_TIMEOUT_SECONDS: int = 30

    # Template Registry Settings
    TEMPLATE_CACHE_TTL_SECONDS: int = 300  # 5 minutes
    TEMPLATE_FETCH_CONCURRENCY: int = 5
    TEMPLATE_DISCOVERY_STRATEGY: str = "auto"  # enumerate, probe or auto
    TEMPLATE_PROBE_MAX_ID: int = 100
    TEMPLATE_PROBE_MAX_CONSECUTIVE_EMPTY: int = 1

    # Claim Transaction Settings
    GAS_ESTIMATE_TIMEOUT_SECONDS: float = 15.0
    CONFIRMATION_POLL_INTERVAL_SECONDS: float = 2.0

    # Claim History Settings
    LOG_QUERY_TIMEOUT_SECONDS: float = 30.0
    LOG_QUERY_CHUNK_SIZE: int = 5000
    HISTORY_START_BLOCK: int = 0
    HISTORY_POLL_INTERVAL_SECONDS: float = 12.0
    HISTORY_RECONNECT_DELAY_SECONDS: float = 5.0
    HISTORY_MAX_CATCHUP_BLOCKS: int = 50000
    CLAIM_STORE_BACKEND: str = "database"  # database or memory

    # Trending Settings
    TRENDING_WINDOW_HOURS: int = 24
    TRENDING_VELOCITY_CEILING: float = 10.0  # claims per hour treated as maximum velocity
    EXPIRING_SOON_DAYS: int = 7

    # Redis Settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 10

    # Database Settings
    DATABASE_URL: Optional[str] = None  # Overrides the POSTGRES_* settings when set
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "trustfi"
    POSTGRES_MIN_POOL_SIZE: int = 5
    POSTGRES_MAX_POOL_SIZE: int = 20
    DB_LOGGING_ENABLED: bool = False

    # HTTP Client Settings
    HTTP_DEFAULT_TIMEOUT: float = 10.0
    HTTP_PRICE_FEED_TIMEOUT: float = 5.0
    HTTP_MAX_CONNECTIONS: int = 20
    HTTP_MAX_KEEPALIVE_CONNECTIONS: int = 5
    ETH_USD_PRICE_URL: Optional[str] = "https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd"

    class Config:
        env_file = ".env"
        case_sensitive = True

@lru_cache()
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
