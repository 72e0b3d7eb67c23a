from __future__ import annotations

import asyncio
import re
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from process_checks.config import MonitorSettings
from process_checks.history import HealthHistoryStore, HealthRecord
from process_checks.models import HealthVerdict, ProbeResult, ProcessSnapshot
from process_checks.pm2_client import ProcessManager


logger = structlog.get_logger(__name__)

TREND_WINDOW = 5
LEAK_MIN_INCREASES = 3

# Substring of the process name -> conventional local port.
NAME_PORT_PATTERNS: list[tuple[str, int]] = [
    ("api", 3001),
    ("web", 3000),
    ("admin", 3002),
    ("worker", 3003),
]

_NAME_TOKEN_SPLIT_RE = re.compile(r"[^A-Za-z0-9]+")


def _format_duration(seconds: float) -> str:
    total = int(max(0.0, seconds))
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def check_stuck(
    record: HealthRecord,
    uptime_seconds: float | None,
    *,
    stuck_threshold_seconds: float,
    cpu_stuck_threshold_percent: float,
) -> str | None:
    if uptime_seconds is None or uptime_seconds < float(stuck_threshold_seconds):
        return None
    recent = record.recent_cpu(TREND_WINDOW)
    if len(recent) < TREND_WINDOW:
        return None
    avg = sum(recent) / float(len(recent))
    if avg < float(cpu_stuck_threshold_percent):
        return (
            f"stuck (avg CPU {avg:.2f}% over last {TREND_WINDOW} checks, "
            f"up {_format_duration(uptime_seconds)})"
        )
    return None


def check_memory_leak(record: HealthRecord, current_memory_mb: float, *, leak_threshold_mb: float) -> str | None:
    if float(current_memory_mb) <= float(leak_threshold_mb):
        return None
    recent = record.recent_memory(TREND_WINDOW)
    if len(recent) < TREND_WINDOW:
        return None
    increases = sum(1 for prev, cur in zip(recent, recent[1:]) if cur > prev)
    if increases >= LEAK_MIN_INCREASES:
        return (
            f"potential memory leak ({current_memory_mb:.0f}MB, "
            f"{increases}/{len(recent) - 1} samples increasing)"
        )
    return None


def check_restart_frequency(record: HealthRecord, restart_count: int, *, max_delta: int) -> str | None:
    # The baseline moves on every increase, flagged or not. Bursts spread over
    # several checks are therefore measured per check, not cumulatively.
    # The baseline does not start at zero: HealthHistoryStore.record_sample seeds it
    # from the first observed count, so restarts that predate the monitor never look
    # like a burst.
    current = int(restart_count)
    if current <= record.last_restart_count_seen:
        return None
    delta = current - record.last_restart_count_seen
    record.last_restart_count_seen = current
    if delta > int(max_delta):
        return f"frequent restarts (+{delta} since last check)"
    return None


def infer_port_from_name(name: str) -> int | None:
    for token in _NAME_TOKEN_SPLIT_RE.split(name or ""):
        if token.isdigit() and 2 <= len(token) <= 5:
            port = int(token)
            if 1 <= port <= 65535:
                return port
    return None


def resolve_health_endpoint(
    name: str,
    *,
    overrides: dict[str, str],
    default_port: int,
    path: str = "/health",
    host: str = "localhost",
) -> str:
    override = str((overrides or {}).get(name) or "").strip()
    if override:
        return override

    port = infer_port_from_name(name)
    if port is None:
        lowered = (name or "").lower()
        for pattern, pattern_port in NAME_PORT_PATTERNS:
            if pattern in lowered:
                port = pattern_port
                break
    if port is None:
        port = int(default_port)

    p = str(path or "/").strip() or "/"
    if not p.startswith("/"):
        p = "/" + p
    return f"http://{host}:{port}{p}"


def _body_reports_unhealthy(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    status = data.get("status")
    if isinstance(status, str) and status.strip().lower() == "unhealthy":
        return True
    return data.get("healthy") is False


async def probe_http_health(
    client: httpx.AsyncClient,
    url: str,
    *,
    timeout_seconds: float,
    slow_response_ratio: float = 0.8,
) -> ProbeResult:
    started = time.perf_counter()
    try:
        resp = await client.get(url, timeout=timeout_seconds)
    except httpx.TimeoutException:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return ProbeResult(url=url, status="timeout", latency_ms=round(elapsed_ms, 3), reasons=["timeout"])
    except httpx.ConnectError as e:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.debug("Health endpoint connect failed", url=url, error=str(e))
        return ProbeResult(
            url=url, status="connection_refused", latency_ms=round(elapsed_ms, 3), reasons=["connection refused"]
        )
    except httpx.RequestError as e:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return ProbeResult(
            url=url,
            status="network_error",
            latency_ms=round(elapsed_ms, 3),
            reasons=[f"network error: {type(e).__name__}"],
        )

    elapsed_ms = (time.perf_counter() - started) * 1000.0
    code = int(resp.status_code)
    if code >= 500:
        return ProbeResult(
            url=url, status="http_error", status_code=code, latency_ms=round(elapsed_ms, 3), reasons=[f"HTTP {code}"]
        )

    reasons: list[str] = []
    if code >= 400:
        reasons.append(f"HTTP error {code}")
    if elapsed_ms >= float(timeout_seconds) * 1000.0 * float(slow_response_ratio):
        reasons.append(f"slow response ({elapsed_ms:.0f}ms)")
    try:
        data = resp.json()
    except ValueError:
        data = None
    if _body_reports_unhealthy(data):
        reasons.append("application reports unhealthy")

    return ProbeResult(
        url=url,
        status="degraded" if reasons else "ok",
        status_code=code,
        latency_ms=round(elapsed_ms, 3),
        reasons=reasons,
    )


class HealthEvaluator(ABC):
    """Judges one online process. Records the current CPU/memory sample before judging."""

    mode: str = "abstract"

    @abstractmethod
    async def evaluate(self, snapshot: ProcessSnapshot, store: HealthHistoryStore, now: float) -> HealthVerdict:
        raise NotImplementedError

    def _record_sample(self, snapshot: ProcessSnapshot, store: HealthHistoryStore, now: float) -> HealthRecord:
        return store.record_sample(
            snapshot.name,
            cpu=snapshot.cpu_percent,
            memory=snapshot.memory_bytes,
            restart_count=snapshot.restart_count,
            now=now,
        )


class MetricHealthEvaluator(HealthEvaluator):
    """Stuck, leak, restart-burst and PM2 ping heuristics."""

    mode = "metrics"

    def __init__(
        self,
        manager: ProcessManager,
        *,
        stuck_threshold_seconds: float = 300.0,
        cpu_stuck_threshold_percent: float = 0.1,
        memory_leak_threshold_mb: float = 500.0,
        frequent_restart_delta: int = 3,
        ping_timeout_seconds: float = 5.0,
    ) -> None:
        self.manager = manager
        self.stuck_threshold_seconds = float(stuck_threshold_seconds)
        self.cpu_stuck_threshold_percent = float(cpu_stuck_threshold_percent)
        self.memory_leak_threshold_mb = float(memory_leak_threshold_mb)
        self.frequent_restart_delta = int(frequent_restart_delta)
        self.ping_timeout_seconds = float(ping_timeout_seconds)

    async def _check_responsive(self, name: str) -> str | None:
        try:
            await asyncio.wait_for(self.manager.ping(name), timeout=self.ping_timeout_seconds)
        except asyncio.TimeoutError:
            return f"unresponsive (no ping reply within {self.ping_timeout_seconds:g}s)"
        except Exception as e:
            return f"unresponsive ({type(e).__name__}: {e})"
        return None

    async def evaluate(self, snapshot: ProcessSnapshot, store: HealthHistoryStore, now: float) -> HealthVerdict:
        record = self._record_sample(snapshot, store, now)

        reasons: list[str] = []
        for reason in (
            check_stuck(
                record,
                snapshot.uptime_seconds(now),
                stuck_threshold_seconds=self.stuck_threshold_seconds,
                cpu_stuck_threshold_percent=self.cpu_stuck_threshold_percent,
            ),
            check_memory_leak(record, snapshot.memory_mb, leak_threshold_mb=self.memory_leak_threshold_mb),
            check_restart_frequency(record, snapshot.restart_count, max_delta=self.frequent_restart_delta),
            await self._check_responsive(snapshot.name),
        ):
            if reason:
                reasons.append(reason)

        return HealthVerdict.from_reasons(snapshot.name, reasons)


class HttpHealthEvaluator(HealthEvaluator):
    """HTTP GET against each app's health endpoint."""

    mode = "http"

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        path: str = "/health",
        timeout_seconds: float = 5.0,
        default_port: int = 3000,
        endpoints: dict[str, str] | None = None,
        slow_response_ratio: float = 0.8,
    ) -> None:
        self.client = client
        self.path = path
        self.timeout_seconds = float(timeout_seconds)
        self.default_port = int(default_port)
        self.endpoints = dict(endpoints or {})
        self.slow_response_ratio = float(slow_response_ratio)

    def endpoint_for(self, name: str) -> str:
        return resolve_health_endpoint(name, overrides=self.endpoints, default_port=self.default_port, path=self.path)

    async def evaluate(self, snapshot: ProcessSnapshot, store: HealthHistoryStore, now: float) -> HealthVerdict:
        self._record_sample(snapshot, store, now)
        url = self.endpoint_for(snapshot.name)
        probe = await probe_http_health(
            self.client,
            url,
            timeout_seconds=self.timeout_seconds,
            slow_response_ratio=self.slow_response_ratio,
        )
        store.record_probe(snapshot.name, status=probe.status, latency_ms=probe.latency_ms, now=now)
        logger.debug(
            "HTTP health probe",
            process=snapshot.name,
            url=url,
            status=probe.status,
            status_code=probe.status_code,
            latency_ms=probe.latency_ms,
        )
        return HealthVerdict.from_reasons(snapshot.name, probe.reasons, probe=probe)


def build_evaluator(
    settings: MonitorSettings,
    manager: ProcessManager,
    client: httpx.AsyncClient,
) -> HealthEvaluator:
    http_cfg = settings.http_health_check
    if http_cfg.enabled:
        return HttpHealthEvaluator(
            client,
            path=http_cfg.path,
            timeout_seconds=http_cfg.timeout_seconds,
            default_port=http_cfg.default_port,
            endpoints=http_cfg.endpoints,
            slow_response_ratio=http_cfg.slow_response_ratio,
        )
    return MetricHealthEvaluator(
        manager,
        stuck_threshold_seconds=settings.stuck_process_threshold_seconds,
        cpu_stuck_threshold_percent=settings.cpu_stuck_threshold_percent,
        memory_leak_threshold_mb=settings.memory_leak_threshold_mb,
        frequent_restart_delta=settings.frequent_restart_delta,
        ping_timeout_seconds=settings.ping_timeout_seconds,
    )
