from __future__ import annotations

import resource
import sys
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Sequence

import structlog

from bot_monitor.errors import NotifierError
from bot_monitor.formatting import format_ts_ms, format_uptime
from bot_monitor.models import STATUS_LABELS, BotRecord, MonitorState
from bot_monitor.telegram import Notifier


logger = structlog.get_logger(__name__)


class ReportIdStore:
    """Plain-text file holding the id of the last published report message."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> str | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Failed to read report id file", path=str(self.path), error=str(exc))
            return None
        value = raw.strip()
        return value or None

    def save(self, report_id: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp")
        tmp.write_text(str(report_id), encoding="utf-8")
        tmp.replace(self.path)


@dataclass(frozen=True)
class ProcessMetrics:
    rss_mb: float
    heap_mb: float
    uptime_sec: int
    last_loop_ms: int
    interval_sec: int


def _read_proc_status_kb() -> dict[str, int]:
    """
    VmRSS / VmData from /proc/self/status (Linux only). Empty dict elsewhere.
    """
    out: dict[str, int] = {}
    try:
        with open("/proc/self/status", "r", encoding="utf-8") as f:
            for line in f:
                key, _, rest = line.partition(":")
                if key not in ("VmRSS", "VmData"):
                    continue
                parts = rest.split()
                if parts and parts[0].isdigit():
                    out[key] = int(parts[0])
    except OSError:
        return {}
    return out


def _maxrss_kb() -> int:
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # macOS reports bytes, Linux kilobytes.
    return int(usage / 1024) if sys.platform == "darwin" else int(usage)


def collect_process_metrics(state: MonitorState, *, interval_seconds: int) -> ProcessMetrics:
    status = _read_proc_status_kb()
    rss_kb = status.get("VmRSS") or _maxrss_kb()
    heap_kb = status.get("VmData") or rss_kb
    return ProcessMetrics(
        rss_mb=round(rss_kb / 1024.0, 1),
        heap_mb=round(heap_kb / 1024.0, 1),
        uptime_sec=int(state.uptime_seconds()),
        last_loop_ms=int(state.last_sweep_ms),
        interval_sec=int(interval_seconds),
    )


def _bot_block(bot: BotRecord, tz: tzinfo) -> str:
    lines = [
        bot.id.upper(),
        f"Status: {STATUS_LABELS[bot.status]}",
        f"• URL: {bot.url}",
        f"• Last Check: {format_ts_ms(bot.last_check_at, tz)}",
        f"• Last Deploy: {format_ts_ms(bot.last_deploy_at, tz)}",
    ]
    if bot.last_ping_ms:
        lines.append(f"• Ping: {bot.last_ping_ms} ms")
    return "\n".join(lines)


def render_report(
    roster: Sequence[BotRecord],
    metrics: ProcessMetrics,
    *,
    tz: tzinfo,
    title: str = "Bot Monitor",
    now: datetime | None = None,
) -> str:
    now = now or datetime.now(timezone.utc)
    blocks = [
        title,
        "\n".join(
            [
                "Monitor",
                f"• RAM: {metrics.rss_mb:.1f}MB (heap {metrics.heap_mb:.1f}MB)",
                f"• Uptime: {format_uptime(metrics.uptime_sec)}",
                f"• Loop: {metrics.last_loop_ms}ms",
                f"• Interval: {metrics.interval_sec}s",
            ]
        ),
    ]
    blocks.extend(_bot_block(bot, tz) for bot in roster)
    blocks.append(f"Updated: {now.astimezone(tz).strftime('%Y-%m-%d %H:%M:%S %Z')}")
    return "\n\n".join(blocks).strip()


def build_status_payload(
    roster: Sequence[BotRecord],
    metrics: ProcessMetrics,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        "ok": True,
        "updatedAt": now.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        "monitor": {
            "rssMb": metrics.rss_mb,
            "heapMb": metrics.heap_mb,
            "uptimeSec": metrics.uptime_sec,
            "lastLoopMs": metrics.last_loop_ms,
            "intervalSec": metrics.interval_sec,
        },
        "bots": [bot.to_json() for bot in roster],
    }


class ReportPublisher:
    """
    Keeps exactly one live report message: create it once, then edit in place.
    An edit that fails (message deleted externally) falls back to a fresh send.
    """

    def __init__(self, notifier: Notifier, store: ReportIdStore, state: MonitorState):
        self.notifier = notifier
        self.store = store
        self.state = state

    async def _send_and_persist(self, text: str) -> str | None:
        try:
            report_id = await self.notifier.send(text)
        except NotifierError as exc:
            logger.warning("Report send failed", error=str(exc))
            return None
        if not report_id:
            logger.warning("Report send returned no message id")
            return None

        self.state.published_report_id = report_id
        try:
            self.store.save(report_id)
        except OSError as exc:
            logger.warning("Failed to persist report id", path=str(self.store.path), error=str(exc))
        logger.info("Report published", report_id=report_id)
        return report_id

    async def publish(self, text: str) -> str | None:
        current = self.state.published_report_id
        if not current:
            return await self._send_and_persist(text)

        try:
            await self.notifier.edit(current, text)
            return current
        except NotifierError as exc:
            logger.warning("Report edit failed; publishing a new report", report_id=current, error=str(exc))
        return await self._send_and_persist(text)
