from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Creator Wallet API"
    log_level: str = "INFO"
    admin_username: str = "admin"
    cors_origins: list[str] = ["*"]
    user_header: str = "X-User-Id"
    seed_plans: bool = True

    model_config = SettingsConfigDict(env_prefix="WALLET_")


@lru_cache
def get_settings() -> Settings:
    return Settings()
