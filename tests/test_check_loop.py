from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from bot_monitor.context import MonitorContext
from bot_monitor.loop import CheckLoop
from bot_monitor.models import BotRecord, BotStatus, MonitorState, ProbeResult
from bot_monitor.report import ReportIdStore
from bot_monitor.settings import MonitorSettings


MINUTE_MS = 60 * 1000


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.edits: list[tuple[str, str]] = []
        self.logs: list[str] = []

    async def send(self, text: str) -> str:
        self.sent.append(text)
        return f"msg-{len(self.sent)}"

    async def edit(self, report_id: str, text: str) -> None:
        self.edits.append((report_id, text))

    async def log(self, text: str) -> None:
        self.logs.append(text)


class ScriptedProber:
    """Returns queued outcomes per URL; repeats the last one when the queue runs dry."""

    def __init__(self, script: dict[str, list[ProbeResult]]):
        self.script = {k: list(v) for k, v in script.items()}
        self.calls: list[str] = []

    async def __call__(self, url: str) -> ProbeResult:
        self.calls.append(url)
        queue = self.script[url]
        return queue.pop(0) if len(queue) > 1 else queue[0]


OK = ProbeResult(reachable=True, status_code=200, latency_ms=15)
TIMEOUT = ProbeResult(reachable=False, reason="timeout")


def _settings(tmp_path: Path) -> MonitorSettings:
    return MonitorSettings(
        telegram_bot_token="token",
        telegram_chat_id="chat",
        telegram_log_chat_id="",
        check_interval_seconds=60,
        probe_timeout_seconds=1.0,
        fail_threshold=2,
        deploy_grace_seconds=600,
        state_path=str(tmp_path / ".statusMessageId"),
        report_timezone="UTC",
        report_title="Bot Monitor",
    )


def _context(tmp_path: Path, roster: list[BotRecord], client: httpx.AsyncClient) -> tuple[MonitorContext, FakeNotifier]:
    settings = _settings(tmp_path)
    notifier = FakeNotifier()
    ctx = MonitorContext(
        settings=settings,
        roster=roster,
        client=client,
        notifier=notifier,
        store=ReportIdStore(Path(settings.state_path)),
        state=MonitorState(),
    )
    return ctx, notifier


def _deploy_transport(hits: list[str]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(str(request.url))
        return httpx.Response(202, text="deploying")

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_scenario_up_down_deploying_admin_closed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    clock = {"now": 1_700_000_000_000}
    monkeypatch.setattr("bot_monitor.loop.now_ms", lambda: clock["now"])

    hits: list[str] = []
    bot = BotRecord(id="bot1", url="http://ok.test", deploy_url="http://redeploy.test/bot1")
    prober = ScriptedProber({"http://ok.test": [OK, TIMEOUT]})

    async with httpx.AsyncClient(transport=_deploy_transport(hits)) as client:
        ctx, notifier = _context(tmp_path, [bot], client)
        loop = CheckLoop(ctx, prober=prober)

        assert await loop.run_sweep() is True
        assert bot.status is BotStatus.UP

        clock["now"] += MINUTE_MS
        await loop.run_sweep()
        assert bot.status is BotStatus.DOWN
        assert bot.fail_count == 1

        clock["now"] += MINUTE_MS
        await loop.run_sweep()
        await loop.drain()
        deploy_started = clock["now"]
        assert bot.status is BotStatus.DEPLOYING
        assert bot.fail_count == 0
        assert bot.last_deploy_at == deploy_started
        assert hits == ["http://redeploy.test/bot1"]
        assert len(notifier.logs) == 1
        assert notifier.logs[0].startswith("[DEPLOY] bot1 | url=http://ok.test | prev=down")

        for _ in range(9):
            clock["now"] += MINUTE_MS
            await loop.run_sweep()
            assert bot.status is BotStatus.DEPLOYING

        clock["now"] = deploy_started + 11 * MINUTE_MS
        await loop.run_sweep()
        await loop.drain()
        assert bot.status is BotStatus.ADMIN_CLOSED
        assert hits == ["http://redeploy.test/bot1"]

    # One report created, every later sweep edits it.
    assert len(notifier.sent) == 1
    assert len(notifier.edits) == ctx.state.sweeps_total - 1
    assert (tmp_path / ".statusMessageId").read_text(encoding="utf-8") == "msg-1"


@pytest.mark.asyncio
async def test_roster_is_checked_serially_in_order(tmp_path: Path) -> None:
    roster = [
        BotRecord(id="bot1", url="http://a.test", deploy_url="http://a.test/deploy"),
        BotRecord(id="bot2", url="http://b.test", deploy_url="http://b.test/deploy"),
        BotRecord(id="bot10", url="http://c.test", deploy_url="http://c.test/deploy"),
    ]
    prober = ScriptedProber({"http://a.test": [OK], "http://b.test": [TIMEOUT], "http://c.test": [OK]})
    async with httpx.AsyncClient(transport=_deploy_transport([])) as client:
        ctx, _notifier = _context(tmp_path, roster, client)
        await CheckLoop(ctx, prober=prober).run_sweep()

    assert prober.calls == ["http://a.test", "http://b.test", "http://c.test"]
    assert [b.status for b in roster] == [BotStatus.UP, BotStatus.DOWN, BotStatus.UP]


@pytest.mark.asyncio
async def test_one_crashing_check_does_not_abort_sweep(tmp_path: Path) -> None:
    roster = [
        BotRecord(id="bot1", url="http://boom.test", deploy_url="http://boom.test/deploy"),
        BotRecord(id="bot2", url="http://ok.test", deploy_url="http://ok.test/deploy"),
    ]

    async def prober(url: str) -> ProbeResult:
        if "boom" in url:
            raise RuntimeError("prober exploded")
        return OK

    async with httpx.AsyncClient(transport=_deploy_transport([])) as client:
        ctx, notifier = _context(tmp_path, roster, client)
        loop = CheckLoop(ctx, prober=prober)
        assert await loop.run_sweep() is True

    assert roster[0].status is BotStatus.UNKNOWN
    assert roster[1].status is BotStatus.UP
    assert len(notifier.sent) == 1
    assert loop.sweeping is False


@pytest.mark.asyncio
async def test_second_sweep_while_running_is_noop(tmp_path: Path) -> None:
    entered = asyncio.Event()
    release = asyncio.Event()
    calls: list[str] = []

    async def slow_prober(url: str) -> ProbeResult:
        calls.append(url)
        entered.set()
        await release.wait()
        return OK

    bot = BotRecord(id="bot1", url="http://slow.test", deploy_url="http://slow.test/deploy")
    async with httpx.AsyncClient(transport=_deploy_transport([])) as client:
        ctx, notifier = _context(tmp_path, [bot], client)
        loop = CheckLoop(ctx, prober=slow_prober)

        first = asyncio.create_task(loop.run_sweep())
        await entered.wait()
        assert loop.sweeping is True

        assert await loop.run_sweep() is False
        assert calls == ["http://slow.test"]
        assert bot.status is BotStatus.UNKNOWN
        assert notifier.sent == []

        release.set()
        assert await first is True

    assert len(notifier.sent) == 1
    assert ctx.state.sweeps_total == 1
    assert loop.sweeping is False


@pytest.mark.asyncio
async def test_guard_released_when_publish_crashes(tmp_path: Path) -> None:
    bot = BotRecord(id="bot1", url="http://ok.test", deploy_url="http://ok.test/deploy")
    async with httpx.AsyncClient(transport=_deploy_transport([])) as client:
        ctx, notifier = _context(tmp_path, [bot], client)

        async def broken_send(text: str) -> str:
            raise RuntimeError("notifier down")

        notifier.send = broken_send  # type: ignore[method-assign]
        loop = CheckLoop(ctx, prober=ScriptedProber({"http://ok.test": [OK]}))
        assert await loop.run_sweep() is True
        assert loop.sweeping is False
        assert await loop.run_sweep() is True

    assert ctx.state.published_report_id is None
    assert ctx.state.sweeps_total == 2


@pytest.mark.asyncio
async def test_failed_remediation_is_logged_and_state_unchanged(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    bot = BotRecord(id="bot3", url="http://down.test", deploy_url="http://deploy.test/bot3", status=BotStatus.DOWN, fail_count=1)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        ctx, notifier = _context(tmp_path, [bot], client)
        loop = CheckLoop(ctx, prober=ScriptedProber({"http://down.test": [TIMEOUT]}))
        await loop.run_sweep()
        await loop.drain()

    assert bot.status is BotStatus.DEPLOYING
    assert len(notifier.logs) == 1
    assert notifier.logs[0].startswith("[DEPLOY-FAILED] bot3")
    assert "reason=connect_error" in notifier.logs[0]


@pytest.mark.asyncio
async def test_sweep_records_duration(tmp_path: Path) -> None:
    async def prober(url: str) -> ProbeResult:
        await asyncio.sleep(0.02)
        return OK

    bot = BotRecord(id="bot1", url="http://ok.test", deploy_url="http://ok.test/deploy")
    async with httpx.AsyncClient(transport=_deploy_transport([])) as client:
        ctx, _notifier = _context(tmp_path, [bot], client)
        await CheckLoop(ctx, prober=prober).run_sweep()

    assert ctx.state.last_sweep_ms >= 15
    assert ctx.state.last_sweep_at > 0


@pytest.mark.asyncio
async def test_undecodable_host_counts_as_failure_and_remediates(tmp_path: Path) -> None:
    hits: list[str] = []
    bot = BotRecord(id="bot4", url="http://xn--a/", deploy_url="http://deploy.test/bot4")
    async with httpx.AsyncClient(transport=_deploy_transport(hits)) as client:
        ctx, notifier = _context(tmp_path, [bot], client)
        loop = CheckLoop(ctx)

        await loop.run_sweep()
        assert bot.status is BotStatus.DOWN
        assert bot.fail_count == 1
        assert bot.last_check_at > 0

        await loop.run_sweep()
        await loop.drain()

    assert bot.status is BotStatus.DEPLOYING
    assert hits == ["http://deploy.test/bot4"]
    assert notifier.logs[0].startswith("[DEPLOY] bot4")
