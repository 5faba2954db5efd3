"""
Application configuration module
Loads settings from environment variables via pydantic-settings
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/scoredesk.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    enable_docs: bool = False  # API docs are off in production by default
    log_level: str = "INFO"

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Redemption policy
    # A term-bound card redeemed without a term is rejected unless this is off
    require_term_for_bound_cards: bool = True

    # Expiry sweep
    expiry_sweep_minutes: int = 60

    # Issuance defaults
    pin_length: int = 12
    serial_prefix: str = "SN"
    default_card_amount: float = 100.0
    default_max_usage: int = 1
    default_school_id: Optional[str] = None

    # Brute-force guard on the public redeem endpoint
    redeem_rate_window_seconds: int = 60
    redeem_rate_max_attempts: int = 10

    # Admin (HTTP Basic Auth)
    admin_username: str = "admin"
    admin_password: str = "change-me"  # override in production!

    @property
    def cors_origins_list(self) -> List[str]:
        """Split the comma separated CORS origins into a list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton"""
    return Settings()
