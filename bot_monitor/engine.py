from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

import structlog

from bot_monitor.models import BotRecord, BotStatus, ProbeResult


logger = structlog.get_logger(__name__)

DEFAULT_FAIL_THRESHOLD = 2
DEFAULT_DEPLOY_GRACE_MS = 10 * 60 * 1000

Prober = Callable[[str], Awaitable[ProbeResult]]


@dataclass(frozen=True)
class EnginePolicy:
    fail_threshold: int = DEFAULT_FAIL_THRESHOLD
    deploy_grace_ms: int = DEFAULT_DEPLOY_GRACE_MS

    @classmethod
    def from_settings(cls, settings) -> "EnginePolicy":
        return cls(
            fail_threshold=max(1, int(settings.fail_threshold)),
            deploy_grace_ms=max(0, int(settings.deploy_grace_seconds)) * 1000,
        )


@dataclass(frozen=True)
class Transition:
    bot_id: str
    prev: BotStatus
    next: BotStatus
    remediate: bool = False

    @property
    def changed(self) -> bool:
        return self.prev is not self.next


def apply_probe(bot: BotRecord, result: ProbeResult, now: int, policy: EnginePolicy) -> Transition:
    """
    Advance `bot` by one probe outcome observed at `now` (epoch ms).

    The returned transition carries `remediate=True` exactly when the bot entered
    DEPLOYING on this step; running the deploy hook is the caller's job.
    """
    prev = bot.status
    bot.last_check_at = now

    if result.ok:
        bot.status = BotStatus.UP
        bot.fail_count = 0
        bot.last_deploy_at = 0
        bot.last_ping_ms = int(result.latency_ms)
        return Transition(bot.id, prev, bot.status)

    bot.last_ping_ms = 0

    if prev is BotStatus.DEPLOYING:
        if now - bot.last_deploy_at >= policy.deploy_grace_ms:
            bot.status = BotStatus.ADMIN_CLOSED
            bot.last_deploy_at = 0
        return Transition(bot.id, prev, bot.status)

    if prev is BotStatus.ADMIN_CLOSED:
        return Transition(bot.id, prev, bot.status)

    if prev in (BotStatus.UNKNOWN, BotStatus.UP, BotStatus.DOWN):
        bot.fail_count += 1
        if bot.fail_count < policy.fail_threshold:
            bot.status = BotStatus.DOWN
            return Transition(bot.id, prev, bot.status)
        bot.status = BotStatus.DEPLOYING
        bot.last_deploy_at = now
        bot.fail_count = 0
        return Transition(bot.id, prev, bot.status, remediate=True)

    raise AssertionError(f"unhandled bot status: {prev!r}")


async def check_bot(bot: BotRecord, now: int, *, prober: Prober, policy: EnginePolicy) -> Transition:
    result = await prober(bot.url)
    transition = apply_probe(bot, result, now, policy)
    if transition.changed:
        logger.info(
            "Bot status changed",
            bot=bot.id,
            prev=transition.prev.value,
            next=transition.next.value,
            status_code=result.status_code,
            reason=result.reason,
        )
    elif not result.ok:
        logger.debug("Probe failed", bot=bot.id, status=bot.status.value, reason=result.reason)
    return transition
