"""Application configuration from environment."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings loaded from env / .env."""

    app_name: str = "Plasticity Results Sync"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./plasticity_results.db"
    auto_create_tables: bool = True

    # JWT access tokens identify the player
    secret_key: str = "change-me-in-production-use-env"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Pending action queue; empty path keeps the queue in memory only
    queue_path: str = "./pending_actions.json"
    flush_base_delay_s: float = 1.0
    flush_max_delay_s: float = 30.0
    online_flush_delay_s: float = 0.25

    # Sessions remembered for offline finalize; synced ones are evicted first
    local_session_limit: int = 1000

    # Store calls slower than this surface as network failures
    store_timeout_s: float = 10.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()
