"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings


class EngineConfig(BaseSettings):
    """Payment engine configuration"""

    # Storage configuration
    storage_type: str = "memory"  # memory, sqlite or postgresql
    database_url: str = "payment_engine.db"  # SQLite path or PostgreSQL DSN
    database_pool_size: int = 10

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Account rules
    opening_balance: str = "100000.00"
    secret_hash_cost: int = 16384  # scrypt N for passwords and PINs
    max_failed_attempts: int = 5  # Lock when the counter exceeds this
    lockout_duration_minutes: int = 30

    # Circuit breaker configuration (shared defaults)
    breaker_timeout_seconds: float = 5.0
    breaker_error_threshold_percentage: float = 50.0
    breaker_reset_timeout_seconds: float = 10.0
    breaker_rolling_window_seconds: float = 10.0
    breaker_volume_threshold: int = 0

    # Payments recover more slowly than the other operation classes
    payment_breaker_reset_timeout_seconds: float = 30.0

    # Admission queue configuration
    queue_max_pending: int = 0  # 0 = unbounded

    # Mandate scheduler configuration
    scheduler_enabled: bool = True
    scheduler_tick_seconds: float = 60.0
    mandate_auto_expire: bool = True

    class Config:
        env_prefix = "PAYMENT_ENGINE_"
        env_file = ".env"
        case_sensitive = False

    def reset_timeout_for(self, operation_class: str) -> float:
        """Breaker reset timeout for an operation class"""
        if operation_class == "payment":
            return self.payment_breaker_reset_timeout_seconds
        return self.breaker_reset_timeout_seconds


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
