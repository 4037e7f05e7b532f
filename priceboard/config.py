import logging
import os
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid value %r for %s; using default %s", raw, name, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


class Settings(BaseModel):
    """
    Runtime configuration for the price board backend.

    Everything can be overridden through environment variables, see
    ``Settings.from_env``. Durations are in seconds.
    """

    local_currency: str = "TRY"
    tick_interval_seconds: float = 30.0
    popup_duration_seconds: float = 8.0
    flash_duration_seconds: float = 1.2
    alarm_log_capacity: int = 30

    redis_url: str = "redis://redis:6379/0"
    rules_key: str = "alarms:rules"

    # base URL of the rate proxy (serves /api/currency, /api/gold, /api/silver);
    # unset means mock quotes
    quote_api_url: Optional[str] = None
    quote_timeout_seconds: float = 8.0

    webex_bot_token: Optional[str] = None
    webex_room_id: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            local_currency=os.getenv("LOCAL_CURRENCY", "TRY").upper(),
            tick_interval_seconds=_env_float("TICK_INTERVAL_SECONDS", 30.0),
            popup_duration_seconds=_env_float("POPUP_DURATION_SECONDS", 8.0),
            flash_duration_seconds=_env_float("FLASH_DURATION_SECONDS", 1.2),
            alarm_log_capacity=_env_int("ALARM_LOG_CAPACITY", 30),
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            rules_key=os.getenv("RULES_KEY", "alarms:rules"),
            quote_api_url=os.getenv("QUOTE_API_URL") or None,
            quote_timeout_seconds=_env_float("QUOTE_TIMEOUT_SECONDS", 8.0),
            webex_bot_token=os.getenv("WEBEX_BOT_TOKEN") or None,
            webex_room_id=os.getenv("WEBEX_ROOM_ID") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
