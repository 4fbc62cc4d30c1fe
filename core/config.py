import os
from dataclasses import dataclass, field
from functools import lru_cache


def _env_bool(name: str, default: bool = False) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./promise_ledger.db"
    share_base_url: str = "https://yourdomain.com/promise/share/"
    signup_url: str = "https://yourdomain.com/signup"
    evaluation_window_hours: int = 24
    share_token_length: int = 20
    sql_echo: bool = False
    log_level: str = "INFO"
    cors_allow_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            share_base_url=os.getenv("SHARE_BASE_URL", cls.share_base_url),
            signup_url=os.getenv("SIGNUP_URL", cls.signup_url),
            evaluation_window_hours=int(os.getenv("EVALUATION_WINDOW_HOURS", cls.evaluation_window_hours)),
            share_token_length=int(os.getenv("SHARE_TOKEN_LENGTH", cls.share_token_length)),
            sql_echo=_env_bool("SQL_ECHO"),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            cors_allow_origins=_env_list("CORS_ALLOW_ORIGINS", "*"),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
