from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional


class Settings(BaseSettings):
    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./cost_metering.db", env="DATABASE_URL")
    redis_url: str = Field(default="redis://localhost:6379/0", env="REDIS_URL")
    db_pool_size: int = Field(default=10, env="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=5, env="DB_MAX_OVERFLOW")
    db_pool_recycle_seconds: int = Field(default=3600, env="DB_POOL_RECYCLE_SECONDS")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")
    debug: bool = Field(default=False, env="DEBUG")
    cors_origins: List[str] = Field(default=["http://localhost:3000"], env="CORS_ORIGINS")

    # Cost Meter
    cost_flush_threshold: int = Field(default=100, env="COST_FLUSH_THRESHOLD")  # events per ledger write
    cost_flush_interval_seconds: float = Field(default=60.0, env="COST_FLUSH_INTERVAL_SECONDS")
    cost_flush_timer_enabled: bool = Field(default=True, env="COST_FLUSH_TIMER_ENABLED")

    # Realtime Cache
    realtime_ttl_seconds: int = Field(default=86400, env="REALTIME_TTL_SECONDS")  # 24h
    alert_mark_ttl_seconds: int = Field(default=86400, env="ALERT_MARK_TTL_SECONDS")  # 24h

    # Budget Controls
    single_operation_cap_ratio: float = Field(default=0.10, env="SINGLE_OPERATION_CAP_RATIO")
    default_alert_thresholds: List[int] = Field(default=[75, 90, 100], env="DEFAULT_ALERT_THRESHOLDS")
    default_budget_free: float = Field(default=5.00, env="DEFAULT_BUDGET_FREE")
    default_budget_premium: float = Field(default=50.00, env="DEFAULT_BUDGET_PREMIUM")
    default_budget_ultimate: float = Field(default=500.00, env="DEFAULT_BUDGET_ULTIMATE")
    budget_config_cache_ttl_seconds: int = Field(default=60, env="BUDGET_CONFIG_CACHE_TTL_SECONDS")

    # Cost Optimization
    estimate_safety_margin: float = Field(default=1.2, env="ESTIMATE_SAFETY_MARGIN")
    price_table_path: Optional[str] = Field(default=None, env="PRICE_TABLE_PATH")
    dedup_max_hamming_distance: int = Field(default=6, env="DEDUP_MAX_HAMMING_DISTANCE")
    dedup_lookback_limit: int = Field(default=500, env="DEDUP_LOOKBACK_LIMIT")
    batch_max_concurrency: int = Field(default=4, env="BATCH_MAX_CONCURRENCY")

    # Monitoring
    log_level: str = Field(default="INFO", env="LOG_LEVEL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()
