from __future__ import annotations

from datetime import datetime, timezone, tzinfo

import structlog
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


logger = structlog.get_logger(__name__)


def load_timezone(name: str) -> tzinfo:
    cleaned = (name or "").strip()
    if not cleaned or cleaned.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(cleaned)
    except ZoneInfoNotFoundError:
        logger.warning("Timezone not found; falling back to UTC", tz=cleaned)
        return timezone.utc


def format_ts_ms(value: int, tz: tzinfo) -> str:
    """Epoch milliseconds to a local wall-clock string; 0 renders as '-'."""
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000.0, tz=tz).strftime("%Y-%m-%d %H:%M:%S")


def format_uptime(seconds: float) -> str:
    s = max(0, int(seconds))
    hours, rem = divmod(s, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
