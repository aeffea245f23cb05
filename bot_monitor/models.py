from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class BotStatus(str, Enum):
    UNKNOWN = "unknown"
    UP = "up"
    DOWN = "down"
    DEPLOYING = "deploying"
    ADMIN_CLOSED = "adminClosed"


STATUS_LABELS: dict[BotStatus, str] = {
    BotStatus.UNKNOWN: "UNKNOWN",
    BotStatus.UP: "ONLINE",
    BotStatus.DOWN: "OFFLINE",
    BotStatus.DEPLOYING: "DEPLOYING",
    BotStatus.ADMIN_CLOSED: "ADMIN-CLOSED",
}


@dataclass
class BotRecord:
    """
    Mutable per-bot state. Timestamps are unix epoch milliseconds; 0 means never.
    """

    id: str
    url: str
    deploy_url: str
    status: BotStatus = BotStatus.UNKNOWN
    last_check_at: int = 0
    last_deploy_at: int = 0
    last_ping_ms: int = 0
    fail_count: int = 0

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "deployUrl": self.deploy_url,
            "status": self.status.value,
            "lastCheckAt": self.last_check_at or None,
            "lastDeployAt": self.last_deploy_at or None,
            "lastPingMs": self.last_ping_ms or 0,
            "failCount": self.fail_count or 0,
        }


@dataclass(frozen=True)
class ProbeResult:
    reachable: bool
    status_code: int | None = None
    latency_ms: int = 0
    reason: str | None = None

    @property
    def ok(self) -> bool:
        if not self.reachable or self.status_code is None:
            return False
        return 200 <= self.status_code < 400


@dataclass
class MonitorState:
    published_report_id: str | None = None
    last_sweep_ms: int = 0
    last_sweep_at: int = 0
    sweeps_total: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def uptime_seconds(self) -> float:
        return max(0.0, time.monotonic() - self.started_at)


def now_ms() -> int:
    return int(time.time() * 1000)
