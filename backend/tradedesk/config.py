from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Database
    database_url: str = "sqlite+aiosqlite:///./tradedesk.db"
    database_echo: bool = False

    # Logging
    log_level: str = "INFO"

    # Security
    encryption_key: str = ""  # Fernet key for broker tokens at rest (optional)
    webhook_secret: str = ""  # Shared secret for inbound alerts (empty = no gate)
    cron_secret: str = ""  # Bearer token for scheduler-triggered endpoints
    cors_origins: str = "http://localhost:3000"  # Comma-separated

    def get_cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, v: str) -> str:
        return v.upper()

    # Exchange used for alerts that don't name one
    default_exchange: str = "bybit"

    # ByBit V5 (linear perpetuals)
    bybit_api_key: str = ""
    bybit_api_secret: str = ""
    bybit_testnet: bool = False

    # Paper exchange
    paper_starting_equity: float = 10000.0

    # Upstream call policy
    http_timeout_seconds: float = 10.0
    read_retry_attempts: int = 3  # Idempotent reads only (positions, equity)
    read_retry_backoff_seconds: float = 0.5

    # Close confirmation before the OPEN leg of a reversal
    close_confirm_attempts: int = 5
    close_confirm_interval_seconds: float = 1.0

    # Reversal intents older than this are expired instead of resumed
    intent_resume_window_seconds: int = 300

    # Broker OAuth token lifecycle
    token_refresh_margin_seconds: int = 300  # Refresh 5 minutes before expiry

    # Tradovate
    tradovate_client_id: str = ""
    tradovate_client_secret: str = ""
    tradovate_api_url: str = "https://api.tradovate.com/v1"
    tradovate_oauth_url: str = "https://api.tradovate.com/v1/oauth/token"

    # ProjectX (TopstepX)
    projectx_client_id: str = ""
    projectx_client_secret: str = ""
    projectx_api_url: str = "https://api.topstepx.com/api"
    projectx_oauth_url: str = "https://api.topstepx.com/v1/oauth/token"

    # Alpaca (OAuth apps)
    alpaca_client_id: str = ""
    alpaca_client_secret: str = ""
    alpaca_oauth_url: str = "https://api.alpaca.markets/oauth/token"
    alpaca_paper: bool = True


settings = Settings()
