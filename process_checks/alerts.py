from __future__ import annotations

import asyncio
import html
from typing import Any, Protocol

import httpx
import structlog


logger = structlog.get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
TELEGRAM_MAX_MESSAGE_LEN = 3900
ALERT_HEADER = "🚨 <b>PM2 Alert</b>"


class AlertSink(Protocol):
    async def send(self, text: str) -> bool: ...


def chunk_alert_text(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    """Pack whole lines into chunks of at most ``max_len`` characters; overlong lines are hard-cut."""
    limit = max(1, int(max_len))
    chunks: list[str] = []
    current = ""
    for line in (text or "").strip().splitlines():
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        candidate = f"{current}\n{line}" if current else line
        if len(candidate) > limit:
            chunks.append(current)
            current = line
        else:
            current = candidate
    if current or not chunks:
        chunks.append(current)
    return chunks


class TelegramAlertSink:
    """
    Best-effort fan-out of alert text to every configured chat.

    Each destination is sent independently; one failing chat is logged and never
    blocks the others or raises into the monitoring loop.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        bot_token: str,
        destinations: list[str],
        timeout_seconds: float = 15.0,
    ) -> None:
        self.client = client
        self.bot_token = bot_token
        self.destinations = [d for d in dict.fromkeys(str(x).strip() for x in destinations) if d]
        self.timeout_seconds = float(timeout_seconds)
        if not self.bot_token:
            logger.warning("Telegram bot token not configured; alerts will only be logged")
        elif not self.destinations:
            logger.warning("No alert destinations configured; alerts will only be logged")

    def _redact(self, text: str) -> str:
        return text.replace(self.bot_token, "<redacted>") if self.bot_token else text

    async def _post(self, chat_id: str, text: str) -> dict[str, Any]:
        url = f"{TELEGRAM_API_BASE}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        try:
            resp = await self.client.post(url, json=payload, timeout=self.timeout_seconds)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            # httpx error messages embed the request URL, token included.
            return {"ok": False, "error": self._redact(f"{type(e).__name__}: {e}")}
        if not isinstance(data, dict):
            return {"ok": False, "error": f"unexpected response: {type(data).__name__}"}
        return data

    async def _send_one(self, chat_id: str, text: str) -> bool:
        failures: list[dict[str, Any]] = []
        for chunk in chunk_alert_text(text):
            data = await self._post(chat_id, chunk)
            if not data.get("ok"):
                failures.append({k: data[k] for k in ("error_code", "description", "error") if data.get(k)})
        if failures:
            logger.warning("Alert delivery failed", chat_id=chat_id, failures=failures)
            return False
        return True

    async def send(self, text: str) -> bool:
        message = f"{ALERT_HEADER}\n\n{text}"
        if not self.bot_token or not self.destinations:
            logger.info("Alert (not delivered)", text=text)
            return False

        results = await asyncio.gather(
            *(self._send_one(chat_id, message) for chat_id in self.destinations),
            return_exceptions=True,
        )
        delivered = 0
        for chat_id, result in zip(self.destinations, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Alert delivery raised",
                    chat_id=chat_id,
                    error=self._redact(f"{type(result).__name__}: {result}"),
                )
            elif result:
                delivered += 1
        logger.info("Alert sent", delivered=delivered, destinations=len(self.destinations))
        return delivered == len(self.destinations)


def _esc(value: object) -> str:
    return html.escape(str(value), quote=False)


def build_high_cpu_alert(name: str, cpu_percent: float, threshold: float) -> str:
    return f"🔴 High CPU Alert: <b>{_esc(name)}</b> is using {cpu_percent:g}% CPU (threshold {threshold:g}%)"


def build_high_memory_alert(name: str, memory_mb: float, threshold_mb: float) -> str:
    return (
        f"🔴 High Memory Alert: <b>{_esc(name)}</b> is using {memory_mb:.0f}MB memory "
        f"(threshold {threshold_mb:g}MB)"
    )


def build_health_alert(name: str, reasons: list[str], consecutive_checks: int) -> str:
    joined = ", ".join(_esc(r) for r in reasons) or "unknown"
    return (
        f"⚠️ Health issue: <b>{_esc(name)}</b>\n"
        f"Issues: {joined}\n"
        f"Consecutive unhealthy checks: {int(consecutive_checks)}"
    )


def build_restart_performed_alert(name: str, attempt: int, threshold: int, reasons: list[str]) -> str:
    joined = ", ".join(_esc(r) for r in reasons) or "unknown"
    return (
        f"🔄 Auto-restarted <b>{_esc(name)}</b> (attempt {int(attempt)}/{int(threshold)})\n"
        f"Issues: {joined}"
    )


def build_restart_failed_alert(name: str, error: str) -> str:
    return f"❌ Failed to auto-restart <b>{_esc(name)}</b>: {_esc(error)}"


def build_manual_intervention_alert(name: str, threshold: int) -> str:
    return (
        f"🆘 CRITICAL: <b>{_esc(name)}</b> has been auto-restarted {int(threshold)} times "
        f"and is still unhealthy. Manual intervention required."
    )
