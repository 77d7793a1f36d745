"""
Order Engine — 設定

環境変数から読み込む。各サービスと同じく DATABASE_URL / REDIS_URL を使う。
"""

import logging
import os
from dataclasses import dataclass


@dataclass
class Settings:
    database_url: str
    redis_url: str
    log_level: str = "INFO"
    db_echo: bool = False


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./orders.db"),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        db_echo=os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes"),
    )


settings = load_settings()


def setup_logging(level: str | None = None) -> None:
    """ログ設定"""
    logging.basicConfig(
        level=getattr(logging, level or settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
