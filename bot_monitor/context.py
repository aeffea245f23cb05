from __future__ import annotations

from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path

import httpx

from bot_monitor.engine import EnginePolicy
from bot_monitor.formatting import load_timezone
from bot_monitor.models import BotRecord, MonitorState
from bot_monitor.report import ProcessMetrics, ReportIdStore, collect_process_metrics
from bot_monitor.settings import MonitorSettings
from bot_monitor.telegram import Notifier, TelegramConfig, TelegramNotifier


@dataclass
class MonitorContext:
    """Everything a sweep touches, owned in one place and passed explicitly."""

    settings: MonitorSettings
    roster: list[BotRecord]
    client: httpx.AsyncClient
    notifier: Notifier
    store: ReportIdStore
    state: MonitorState = field(default_factory=MonitorState)
    tz: tzinfo | None = None

    def __post_init__(self) -> None:
        if self.tz is None:
            self.tz = load_timezone(self.settings.report_timezone)

    @property
    def policy(self) -> EnginePolicy:
        return EnginePolicy.from_settings(self.settings)

    def metrics(self) -> ProcessMetrics:
        return collect_process_metrics(self.state, interval_seconds=self.settings.check_interval_seconds)


def build_context(
    settings: MonitorSettings,
    roster: list[BotRecord],
    client: httpx.AsyncClient,
) -> MonitorContext:
    notifier = TelegramNotifier(
        client,
        TelegramConfig(
            bot_token=settings.telegram_bot_token,
            chat_id=settings.telegram_chat_id,
            log_chat_id=settings.log_chat_id,
        ),
    )
    store = ReportIdStore(Path(settings.state_path))
    state = MonitorState(published_report_id=store.load())
    return MonitorContext(
        settings=settings,
        roster=roster,
        client=client,
        notifier=notifier,
        store=store,
        state=state,
    )
