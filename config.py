import os
from dataclasses import dataclass, field
from typing import List


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.environ.get(name)
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    bcrypt_rounds: int = 12

    database_url: str = "sqlite:///./expenses.db"
    api_prefix: str = "/api/v1"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    rate_limit_enabled: bool = True
    general_rate_limit: int = 100
    general_rate_window: int = 15 * 60
    auth_rate_limit: int = 50
    auth_rate_window: int = 15 * 60
    auth_rate_skip_successful: bool = True
    expense_rate_limit: int = 30
    expense_rate_window: int = 60
    rate_limit_prune_seconds: int = 60

    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            secret_key=os.environ.get("SECRET_KEY", defaults.secret_key),
            algorithm=os.environ.get("ALGORITHM", defaults.algorithm),
            access_token_expire_minutes=_env_int(
                "ACCESS_TOKEN_EXPIRE_MINUTES", defaults.access_token_expire_minutes
            ),
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", defaults.bcrypt_rounds),
            database_url=os.environ.get("DATABASE_URL", defaults.database_url),
            api_prefix=os.environ.get("API_PREFIX", defaults.api_prefix),
            cors_origins=_env_list("CORS_ORIGINS", defaults.cors_origins),
            log_level=os.environ.get("LOG_LEVEL", defaults.log_level).upper(),
            rate_limit_enabled=_env_bool(
                "RATE_LIMIT_ENABLED", defaults.rate_limit_enabled
            ),
            general_rate_limit=_env_int(
                "GENERAL_RATE_LIMIT", defaults.general_rate_limit
            ),
            general_rate_window=_env_int(
                "GENERAL_RATE_WINDOW", defaults.general_rate_window
            ),
            auth_rate_limit=_env_int("AUTH_RATE_LIMIT", defaults.auth_rate_limit),
            auth_rate_window=_env_int("AUTH_RATE_WINDOW", defaults.auth_rate_window),
            auth_rate_skip_successful=_env_bool(
                "AUTH_RATE_SKIP_SUCCESSFUL", defaults.auth_rate_skip_successful
            ),
            expense_rate_limit=_env_int(
                "EXPENSE_RATE_LIMIT", defaults.expense_rate_limit
            ),
            expense_rate_window=_env_int(
                "EXPENSE_RATE_WINDOW", defaults.expense_rate_window
            ),
            rate_limit_prune_seconds=_env_int(
                "RATE_LIMIT_PRUNE_SECONDS", defaults.rate_limit_prune_seconds
            ),
            host=os.environ.get("HOST", defaults.host),
            port=_env_int("PORT", defaults.port),
        )


settings = Settings.from_env()
