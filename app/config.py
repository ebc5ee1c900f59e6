"""Stay-online configuration — loaded from environment / .env file."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="STAYONLINE_", extra="ignore")

    env: str = "development"
    database_url: str = "sqlite+aiosqlite:///./discord.db"

    # Tenancy: single = one shared in-memory registry, multi = per-session users
    multi_tenant: bool = False

    # Bot manager
    min_token_length: int = 50
    history_limit: int = 10

    # Discord gateway
    discord_gateway_url: str = "wss://gateway.discord.gg/?v=10&encoding=json"
    discord_intents: int = 0
    discord_connect_timeout: float = 30.0

    # Sessions (multi-tenant only)
    session_cookie_name: str = "stayonline_session"
    session_max_age_days: int = 30
    session_cleanup_interval_hours: float = 24.0

    cors_origins: list[str] = ["*"]


settings = Settings()
