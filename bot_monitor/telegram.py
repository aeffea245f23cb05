from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from bot_monitor.errors import NotifierError


logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_LEN = 3900


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str
    log_chat_id: str | None = None


@runtime_checkable
class Notifier(Protocol):
    """Outbound channel for the status report and remediation log lines."""

    async def send(self, text: str) -> str | None: ...

    async def edit(self, report_id: str, text: str) -> None: ...

    async def log(self, text: str) -> None: ...


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        chunk = s[:cut].rstrip()
        parts.append(chunk)
        s = s[cut:].lstrip()
    return parts


def clamp_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> str:
    """A report is a single editable message; anything past the limit is cut."""
    s = (text or "").strip()
    if len(s) <= max_len:
        return s
    return s[: max(0, max_len - 1)].rstrip() + "…"


def redact_telegram_response(data: dict) -> str:
    safe = {"ok": data.get("ok")}
    if isinstance(data.get("result"), dict):
        safe["result"] = {"message_id": data["result"].get("message_id")}
    if data.get("description"):
        safe["description"] = data.get("description")
    if data.get("error"):
        safe["error"] = data.get("error")
    return json.dumps(safe, ensure_ascii=False)


def _is_not_modified(data: dict) -> bool:
    return "message is not modified" in str(data.get("description") or "").lower()


class TelegramNotifier:
    """
    Publishes the status report into one chat and remediation lines into a log chat.

    `send` returns the new message id, `edit` rewrites an existing message and raises
    NotifierError when Telegram refuses (typically because the message was deleted).
    """

    def __init__(self, client: httpx.AsyncClient, config: TelegramConfig, *, timeout: float = 15.0):
        self.client = client
        self.config = config
        self.timeout = timeout

    async def _call(self, method: str, payload: dict[str, Any]) -> dict:
        url = f"{TELEGRAM_API_BASE}/bot{self.config.bot_token}/{method}"
        try:
            resp = await self.client.post(url, json=payload, timeout=self.timeout)
            data = resp.json()
        except Exception as e:
            msg = f"{type(e).__name__}: {e}"
            if self.config.bot_token:
                msg = msg.replace(self.config.bot_token, "<redacted>")
            return {"ok": False, "error": msg}
        return data if isinstance(data, dict) else {"ok": False, "error": "non-object response"}

    async def send(self, text: str) -> str | None:
        data = await self._call(
            "sendMessage",
            {"chat_id": self.config.chat_id, "text": clamp_telegram_message(text)},
        )
        if not data.get("ok"):
            raise NotifierError(f"sendMessage failed: {redact_telegram_response(data)}")
        result = data.get("result")
        message_id = result.get("message_id") if isinstance(result, dict) else None
        return str(message_id) if message_id is not None else None

    async def edit(self, report_id: str, text: str) -> None:
        try:
            message_id: int | str = int(report_id)
        except (TypeError, ValueError):
            message_id = report_id
        data = await self._call(
            "editMessageText",
            {
                "chat_id": self.config.chat_id,
                "message_id": message_id,
                "text": clamp_telegram_message(text),
            },
        )
        if data.get("ok") or _is_not_modified(data):
            return
        raise NotifierError(f"editMessageText failed: {redact_telegram_response(data)}")

    async def log(self, text: str) -> None:
        chat_id = self.config.log_chat_id or self.config.chat_id
        try:
            for part in split_telegram_message(text):
                data = await self._call("sendMessage", {"chat_id": chat_id, "text": part})
                if not data.get("ok"):
                    logger.warning("Log line not delivered", telegram=redact_telegram_response(data))
                    return
        except Exception as e:
            logger.warning("Log line not delivered", error=f"{type(e).__name__}: {e}")
