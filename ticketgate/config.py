from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError
from .model.scancounter import BACKENDS


# ----------------------------
# Config
# ----------------------------
MIN_KEY_LENGTH = 32


@dataclass(frozen=True)
class Settings:
    database_url: str
    token_encryption_key: str
    token_checksum_secret: Optional[str] = None
    settlement_secret: str = "dev-settlement-secret"
    cron_secret: Optional[str] = None
    admin_token: Optional[str] = None
    internal_token: Optional[str] = None
    notify_url: Optional[str] = None
    scan_counter_backend: str = "pg"  # 'pg' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 64
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env

        database_url = env.get("DATABASE_URL")
        if not database_url:
            raise ConfigurationError("DATABASE_URL is required")

        key = env.get("TOKEN_ENCRYPTION_KEY", "")
        check_key(key)

        backend = env.get("SCAN_COUNTER_BACKEND", "pg").lower()
        if backend not in BACKENDS:
            raise ConfigurationError(
                f"SCAN_COUNTER_BACKEND must be 'pg' or 'redis', "
                f"got {backend!r}"
            )

        return cls(
            database_url=database_url,
            token_encryption_key=key,
            token_checksum_secret=env.get("TOKEN_CHECKSUM_SECRET") or None,
            settlement_secret=env.get(
                "SETTLEMENT_SECRET", "dev-settlement-secret"
            ),
            cron_secret=env.get("CRON_SECRET") or None,
            admin_token=env.get("ADMIN_TOKEN") or None,
            internal_token=env.get("INTERNAL_TOKEN") or None,
            notify_url=env.get("NOTIFY_URL") or None,
            scan_counter_backend=backend,
            redis_url=env.get("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=int(env.get("REDIS_MAX_CONN", "64")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )


def check_key(key: Optional[str]) -> str:
    if not key:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not set")
    if len(key) < MIN_KEY_LENGTH:
        raise ConfigurationError(
            f"TOKEN_ENCRYPTION_KEY must be at least {MIN_KEY_LENGTH} "
            f"characters"
        )
    return key
