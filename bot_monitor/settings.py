from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Mapping

import structlog

from bot_monitor.errors import ConfigError
from bot_monitor.models import BotRecord


logger = structlog.get_logger(__name__)

_BOT_KEY_RE = re.compile(r"^bot(\d+)$", re.IGNORECASE)
# The health-check URL may contain commas; the deploy URL follows the last separator.
_BOT_VALUE_RE = re.compile(r'^\s*\{\s*"?(https?://[^"\s]+?)"?\s*,\s*"?(https?://[^",\s]+)"?\s*\}\s*$')


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


@dataclass(frozen=True)
class MonitorSettings:
    telegram_bot_token: str = field(default_factory=lambda: os.getenv("TELEGRAM_BOT_TOKEN", "").strip())
    telegram_chat_id: str = field(default_factory=lambda: os.getenv("TELEGRAM_CHAT_ID", "").strip())
    # Remediation log lines go here; falls back to the report chat.
    telegram_log_chat_id: str = field(default_factory=lambda: os.getenv("TELEGRAM_LOG_CHAT_ID", "").strip())

    host: str = field(default_factory=lambda: _env_str("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("PORT", 3000))

    check_interval_seconds: int = field(default_factory=lambda: _env_int("CHECK_INTERVAL_SECONDS", 60))
    probe_timeout_seconds: float = field(default_factory=lambda: _env_float("PROBE_TIMEOUT_SECONDS", 8.0))
    fail_threshold: int = field(default_factory=lambda: _env_int("FAIL_THRESHOLD", 2))
    deploy_grace_seconds: int = field(default_factory=lambda: _env_int("DEPLOY_GRACE_SECONDS", 10 * 60))

    state_path: str = field(default_factory=lambda: _env_str("STATE_PATH", "./.statusMessageId"))
    report_timezone: str = field(default_factory=lambda: _env_str("REPORT_TIMEZONE", "Asia/Bangkok"))
    report_title: str = field(default_factory=lambda: _env_str("REPORT_TITLE", "Bot Monitor"))

    @property
    def log_chat_id(self) -> str:
        return self.telegram_log_chat_id or self.telegram_chat_id

    def validate(self) -> None:
        if not self.telegram_bot_token or not self.telegram_chat_id:
            raise ConfigError("Missing TELEGRAM_BOT_TOKEN and/or TELEGRAM_CHAT_ID env vars")
        if self.check_interval_seconds <= 0:
            raise ConfigError(f"CHECK_INTERVAL_SECONDS must be positive, got {self.check_interval_seconds}")
        if self.fail_threshold < 1:
            raise ConfigError(f"FAIL_THRESHOLD must be >= 1, got {self.fail_threshold}")


def parse_bot_entry(key: str, raw: str | None) -> BotRecord | None:
    """
    Parse one `bot<N>` value of the form `{<probeURL>, <deployURL>}`.
    Returns None for anything malformed.
    """
    if not raw:
        return None
    m = _BOT_VALUE_RE.match(raw)
    if not m:
        return None
    return BotRecord(id=key, url=m.group(1), deploy_url=m.group(2))


def load_roster(environ: Mapping[str, str] | None = None) -> list[BotRecord]:
    env = os.environ if environ is None else environ
    found: list[tuple[int, BotRecord]] = []
    for key, raw in env.items():
        m = _BOT_KEY_RE.match(key)
        if not m:
            continue
        record = parse_bot_entry(key, raw)
        if record is None:
            logger.debug("Skipping malformed bot entry", key=key)
            continue
        found.append((int(m.group(1)), record))

    found.sort(key=lambda item: item[0])
    roster = [record for _n, record in found]

    seen: set[str] = set()
    unique: list[BotRecord] = []
    for record in roster:
        # Env keys are case-sensitive on POSIX; bot1 and BOT1 would collide.
        if record.id.lower() in seen:
            logger.debug("Skipping duplicate bot entry", key=record.id)
            continue
        seen.add(record.id.lower())
        unique.append(record)
    return unique


def require_roster(roster: list[BotRecord]) -> list[BotRecord]:
    if not roster:
        raise ConfigError("No valid bot<N> entries found in the environment")
    return roster
