from __future__ import annotations

import asyncio
import gc
import time
from datetime import datetime, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from bot_monitor.context import MonitorContext
from bot_monitor.engine import Prober, Transition, check_bot
from bot_monitor.models import BotRecord, now_ms
from bot_monitor.probe import probe, remediate
from bot_monitor.report import ReportPublisher, render_report


logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "bot-monitor-sweep"


class CheckLoop:
    """
    One sweep = probe every bot in roster order, then publish the report once.

    `run_sweep` is guarded by a single in-progress flag: a call that arrives while a
    sweep is running returns False without touching the roster.
    """

    def __init__(self, ctx: MonitorContext, *, prober: Prober | None = None):
        self.ctx = ctx
        self.prober: Prober = prober or self._default_prober
        self.publisher = ReportPublisher(ctx.notifier, ctx.store, ctx.state)
        self._sweeping = False
        self._remediations: set[asyncio.Task] = set()

    @property
    def sweeping(self) -> bool:
        return self._sweeping

    async def _default_prober(self, url: str):
        return await probe(self.ctx.client, url, timeout=self.ctx.settings.probe_timeout_seconds)

    def _spawn_remediation(self, bot: BotRecord, transition: Transition) -> asyncio.Task:
        task = asyncio.create_task(
            remediate(
                self.ctx.client,
                bot,
                transition.prev,
                notifier=self.ctx.notifier,
                tz=self.ctx.tz,
                timeout=self.ctx.settings.probe_timeout_seconds,
            ),
            name=f"remediate-{bot.id}",
        )
        self._remediations.add(task)
        task.add_done_callback(self._remediations.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight remediation calls (used on shutdown and in tests)."""
        if self._remediations:
            await asyncio.gather(*list(self._remediations), return_exceptions=True)

    async def publish_report(self) -> str | None:
        text = render_report(
            self.ctx.roster,
            self.ctx.metrics(),
            tz=self.ctx.tz,
            title=self.ctx.settings.report_title,
        )
        return await self.publisher.publish(text)

    async def run_sweep(self) -> bool:
        if self._sweeping:
            logger.info("Sweep already in progress; skipping")
            return False
        self._sweeping = True
        try:
            started = time.perf_counter()
            now = now_ms()
            policy = self.ctx.policy
            for bot in self.ctx.roster:
                try:
                    transition = await check_bot(bot, now, prober=self.prober, policy=policy)
                except Exception:
                    logger.exception("Bot check crashed", bot=bot.id)
                    continue
                if transition.remediate:
                    self._spawn_remediation(bot, transition)

            try:
                await self.publish_report()
            except Exception:
                logger.exception("Report publish crashed")

            state = self.ctx.state
            state.last_sweep_ms = int(round((time.perf_counter() - started) * 1000.0))
            state.last_sweep_at = now_ms()
            state.sweeps_total += 1
            logger.info("Sweep complete", bots=len(self.ctx.roster), elapsed_ms=state.last_sweep_ms)
            gc.collect()
            return True
        finally:
            self._sweeping = False

    def schedule(self, scheduler: AsyncIOScheduler) -> None:
        """Register the recurring sweep; the first run fires immediately."""
        scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(seconds=self.ctx.settings.check_interval_seconds),
            id=SWEEP_JOB_ID,
            name="Bot monitor sweep",
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(
            "Added interval job",
            job_id=SWEEP_JOB_ID,
            interval_seconds=self.ctx.settings.check_interval_seconds,
        )
