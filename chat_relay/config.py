import os
from typing import Literal, Optional

from pydantic import BaseModel, Field


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


class Settings(BaseModel):

    mongo_url: str = "mongodb://localhost:27017"
    mongo_db: str = "chat_relay"
    # no REDIS_URL -> in-process bus, single worker only
    redis_url: Optional[str] = None

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "json"

    send_max_attempts: int = Field(default=3, ge=1)
    send_retry_backoff: float = Field(default=0.05, ge=0)
    send_retry_max_backoff: float = Field(default=1.0, ge=0)
    max_message_length: int = Field(default=4000, ge=1)
    history_page_limit: int = Field(default=50, ge=1)
    subscriber_queue_size: int = Field(default=256, ge=1)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongo_url=os.getenv("MONGO_URL", "mongodb://localhost:27017"),
            mongo_db=os.getenv("MONGO_DB", "chat_relay"),
            redis_url=os.getenv("REDIS_URL") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
            send_max_attempts=_int_env("SEND_MAX_ATTEMPTS", 3),
            send_retry_backoff=_float_env("SEND_RETRY_BACKOFF", 0.05),
            send_retry_max_backoff=_float_env("SEND_RETRY_MAX_BACKOFF", 1.0),
            max_message_length=_int_env("MAX_MESSAGE_LENGTH", 4000),
            history_page_limit=_int_env("HISTORY_PAGE_LIMIT", 50),
            subscriber_queue_size=_int_env("SUBSCRIBER_QUEUE_SIZE", 256),
        )
