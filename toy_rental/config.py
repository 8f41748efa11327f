from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _env(name: str, default: str) -> str:
    value = (os.environ.get(name) or "").strip()
    return value or default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name) or default)
    except (TypeError, ValueError):
        return default


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str
    session_secret: str
    is_prod: bool = False
    log_level: str = "DEBUG"
    access_token_exp_hours: int = 24
    refresh_token_exp_days: int = 7
    token_issuer: str = "toyrentals"
    late_fee_bucket_hours: int = 48
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = True
    default_page_limit: int = 10
    max_page_limit: int = 100


def load_settings() -> Settings:
    session_secret = _require_env("SESSION_SIGNING_SECRET")
    if len(session_secret) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be at least 32 characters long.")

    is_prod = _env_bool("IS_PROD", False)
    origins = _parse_csv_env(
        "CORS_ALLOW_ORIGINS",
        "http://127.0.0.1,http://localhost,http://127.0.0.1:8080,http://localhost:8080",
    )
    allow_credentials = _env_bool("CORS_ALLOW_CREDENTIALS", True)
    if "*" in origins:
        # Browsers reject wildcard origins with credentials.
        allow_credentials = False

    bucket_hours = _env_int("LATE_FEE_BUCKET_HOURS", 48)
    return Settings(
        database_url=_require_env("TOY_RENTAL_DB_URL"),
        session_secret=session_secret,
        is_prod=is_prod,
        log_level=_env("LOG_LEVEL", "INFO" if is_prod else "DEBUG").upper(),
        access_token_exp_hours=max(_env_int("ACCESS_TOKEN_EXP_HOURS", 24), 1),
        refresh_token_exp_days=max(_env_int("REFRESH_TOKEN_EXP_DAYS", 7), 1),
        token_issuer=_env("TOKEN_ISSUER", "toyrentals"),
        late_fee_bucket_hours=bucket_hours if bucket_hours > 0 else 48,
        cors_allow_origins=tuple(origins),
        cors_allow_credentials=allow_credentials,
        default_page_limit=max(_env_int("DEFAULT_PAGE_LIMIT", 10), 1),
        max_page_limit=max(_env_int("MAX_PAGE_LIMIT", 100), 1),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
