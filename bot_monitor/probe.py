from __future__ import annotations

import time
from datetime import tzinfo

import httpx
import structlog

from bot_monitor.formatting import format_ts_ms
from bot_monitor.models import BotRecord, BotStatus, ProbeResult, now_ms
from bot_monitor.telegram import Notifier


logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 8.0


def _failure_reason(exc: Exception) -> str:
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.ConnectError):
        return "connect_error"
    # IDNA host decoding failures surface as UnicodeError subclasses.
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol, UnicodeError, ValueError)):
        return "bad_url"
    return f"http_error: {type(exc).__name__}"


async def probe(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> ProbeResult:
    """
    Single GET against `url`. Redirects are not followed: a 3xx is itself a healthy answer.
    Every transport or URL problem collapses to `reachable=False`.
    """
    started = time.perf_counter()
    try:
        resp = await client.get(url, follow_redirects=False, timeout=timeout)
    except Exception as e:
        return ProbeResult(reachable=False, reason=_failure_reason(e))
    elapsed_ms = int(round((time.perf_counter() - started) * 1000.0))
    return ProbeResult(reachable=True, status_code=resp.status_code, latency_ms=elapsed_ms)


async def remediate(
    client: httpx.AsyncClient,
    bot: BotRecord,
    prev_status: BotStatus,
    *,
    notifier: Notifier,
    tz: tzinfo,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> bool:
    """
    Fire the deploy hook for `bot`. Response status and body are ignored; only transport
    errors count as failure. Never raises.
    """
    try:
        await client.get(bot.deploy_url, follow_redirects=False, timeout=timeout)
        ok, reason = True, None
    except Exception as e:
        ok, reason = False, _failure_reason(e)

    ts = format_ts_ms(now_ms(), tz)
    if ok:
        line = f"[DEPLOY] {bot.id} | url={bot.url} | prev={prev_status.value} | time={ts}"
        logger.info("Remediation fired", bot=bot.id, deploy_url=bot.deploy_url, prev=prev_status.value)
    else:
        line = f"[DEPLOY-FAILED] {bot.id} | url={bot.url} | prev={prev_status.value} | reason={reason} | time={ts}"
        logger.warning("Remediation failed", bot=bot.id, deploy_url=bot.deploy_url, reason=reason)

    try:
        await notifier.log(line)
    except Exception as e:
        logger.warning("Remediation log line not delivered", bot=bot.id, error=f"{type(e).__name__}: {e}")
    return ok
