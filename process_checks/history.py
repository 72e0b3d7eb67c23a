from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

import structlog


logger = structlog.get_logger(__name__)

SAMPLE_CAPACITY = 10

# (value, ts) where ts is a unix timestamp in seconds.
Sample = tuple[float, float]


def _new_samples() -> deque[Sample]:
    return deque(maxlen=SAMPLE_CAPACITY)


@dataclass
class HealthRecord:
    """
    Rolling per-process state used by the trend heuristics.

    Records outlive restarts of the process they describe, so restart deltas and
    memory trends keep their baseline across PM2 restarts.
    """

    name: str
    last_healthy_time: float
    cpu_samples: deque[Sample] = field(default_factory=_new_samples)
    memory_samples: deque[Sample] = field(default_factory=_new_samples)
    last_restart_count_seen: int = 0
    consecutive_unhealthy_checks: int = 0
    consecutive_healthy_checks: int = 0
    last_alert_time: float | None = None
    last_probe_status: str | None = None
    last_probe_latency_ms: float | None = None

    def recent_cpu(self, n: int) -> list[float]:
        return [v for v, _ts in list(self.cpu_samples)[-n:]]

    def recent_memory(self, n: int) -> list[float]:
        return [v for v, _ts in list(self.memory_samples)[-n:]]


class HealthHistoryStore:
    """In-memory health records keyed by process name. Single writer: the deep health pass."""

    def __init__(self) -> None:
        self._records: dict[str, HealthRecord] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def __len__(self) -> int:
        return len(self._records)

    def names(self) -> list[str]:
        return list(self._records.keys())

    def peek(self, name: str) -> HealthRecord | None:
        return self._records.get(name)

    def get(self, name: str, now: float) -> HealthRecord:
        record = self._records.get(name)
        if record is None:
            record = HealthRecord(name=name, last_healthy_time=float(now))
            self._records[name] = record
            logger.debug("Health record created", process=name)
        return record

    def record_sample(self, name: str, *, cpu: float, memory: float, restart_count: int, now: float) -> HealthRecord:
        record = self.get(name, now)
        if not record.cpu_samples and not record.memory_samples:
            # First observation: restarts that happened before we started watching are not a burst.
            record.last_restart_count_seen = max(0, int(restart_count))
        record.cpu_samples.append((float(cpu), float(now)))
        record.memory_samples.append((float(memory), float(now)))
        return record

    def record_probe(self, name: str, *, status: str, latency_ms: float | None, now: float) -> None:
        record = self.get(name, now)
        record.last_probe_status = status
        record.last_probe_latency_ms = round(float(latency_ms), 3) if latency_ms is not None else None

    def mark_healthy(self, name: str, now: float) -> HealthRecord:
        record = self.get(name, now)
        record.consecutive_unhealthy_checks = 0
        record.consecutive_healthy_checks += 1
        record.last_healthy_time = float(now)
        return record

    def mark_unhealthy(self, name: str, now: float) -> HealthRecord:
        record = self.get(name, now)
        record.consecutive_unhealthy_checks += 1
        record.consecutive_healthy_checks = 0
        return record

    def forget_missing(self, known_names: Iterable[str]) -> list[str]:
        """Drop records of processes no longer present in the PM2 list at all."""
        known = set(known_names)
        dropped = [n for n in self._records if n not in known]
        for n in dropped:
            del self._records[n]
        if dropped:
            logger.info("Dropped health records for removed processes", processes=dropped)
        return dropped


class RestartAttemptCounter:
    """Auto-restarts performed per process since the last reset."""

    def __init__(self) -> None:
        self._counts: dict[str, int] = {}

    def get(self, name: str) -> int:
        return int(self._counts.get(name, 0))

    def increment(self, name: str) -> int:
        self._counts[name] = self.get(name) + 1
        return self._counts[name]

    def reset(self, name: str) -> None:
        self._counts[name] = 0

    def as_dict(self) -> dict[str, int]:
        return dict(self._counts)
