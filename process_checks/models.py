from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ProcessStatus(str, Enum):
    ONLINE = "online"
    STOPPED = "stopped"
    ERRORED = "errored"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> "ProcessStatus":
        s = str(value or "").strip().lower()
        for member in cls:
            if member.value == s:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class ProcessSnapshot:
    name: str
    pid: int | None
    status: ProcessStatus
    cpu_percent: float = 0.0
    memory_bytes: int = 0
    restart_count: int = 0
    # Epoch seconds of the last (re)start as reported by PM2; None if never started.
    started_at: float | None = None
    pm_id: int | None = None
    exec_mode: str | None = None
    script_path: str | None = None

    @property
    def is_online(self) -> bool:
        return self.status is ProcessStatus.ONLINE

    @property
    def memory_mb(self) -> float:
        return self.memory_bytes / 1024.0 / 1024.0

    def uptime_seconds(self, now: float) -> float | None:
        if self.started_at is None:
            return None
        return max(0.0, float(now) - float(self.started_at))


@dataclass(frozen=True)
class ProbeResult:
    url: str
    # ok | degraded | timeout | connection_refused | network_error | http_error
    status: str
    status_code: int | None = None
    latency_ms: float | None = None
    reasons: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.reasons


@dataclass(frozen=True)
class HealthVerdict:
    name: str
    healthy: bool
    reasons: list[str] = field(default_factory=list)
    probe: ProbeResult | None = None

    @classmethod
    def from_reasons(cls, name: str, reasons: list[str], probe: ProbeResult | None = None) -> "HealthVerdict":
        return cls(name=name, healthy=not reasons, reasons=list(reasons), probe=probe)
