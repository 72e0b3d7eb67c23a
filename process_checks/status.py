from __future__ import annotations

from dataclasses import dataclass

from process_checks.history import HealthHistoryStore
from process_checks.models import ProcessSnapshot, ProcessStatus


@dataclass(frozen=True)
class ProcessStats:
    online: int
    stopped: int
    errored: int
    unknown: int

    @property
    def total(self) -> int:
        return self.online + self.stopped + self.errored + self.unknown


def get_process_stats(processes: list[ProcessSnapshot]) -> ProcessStats:
    counts = {status: 0 for status in ProcessStatus}
    for proc in processes:
        counts[proc.status] += 1
    return ProcessStats(
        online=counts[ProcessStatus.ONLINE],
        stopped=counts[ProcessStatus.STOPPED],
        errored=counts[ProcessStatus.ERRORED],
        unknown=counts[ProcessStatus.UNKNOWN],
    )


def format_bytes(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    idx = 0
    while idx < len(units) - 1 and num_bytes >= 1024 ** (idx + 1):
        idx += 1
    value = round(num_bytes / (1024 ** idx), 2)
    return f"{value:g} {units[idx]}"


def format_uptime(seconds: float) -> str:
    total = int(max(0.0, seconds))
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


_STATUS_ICONS = {
    ProcessStatus.ONLINE: "🟢",
    ProcessStatus.STOPPED: "🔴",
    ProcessStatus.ERRORED: "🟡",
    ProcessStatus.UNKNOWN: "⚪",
}


def build_status_message(
    processes: list[ProcessSnapshot],
    *,
    now: float,
    store: HealthHistoryStore | None = None,
) -> str:
    """Plain-text fleet overview, grouped by status."""
    if not processes:
        return "No PM2 processes found.\n"

    stats = get_process_stats(processes)
    lines = [
        "PM2 Status",
        f"{stats.online} online / {stats.stopped} stopped / {stats.errored} errored ({stats.total} total)",
    ]
    for status in ProcessStatus:
        group = [p for p in processes if p.status is status]
        if not group:
            continue
        lines.append("")
        lines.append(f"{_STATUS_ICONS[status]} {status.value.capitalize()} ({len(group)}):")
        for proc in group:
            uptime = proc.uptime_seconds(now)
            parts = [
                f"cpu={proc.cpu_percent:g}%",
                f"mem={format_bytes(proc.memory_bytes)}",
                f"restarts={proc.restart_count}",
            ]
            if proc.is_online and uptime is not None:
                parts.append(f"uptime={format_uptime(uptime)}")
            record = store.peek(proc.name) if store is not None else None
            if record is not None and record.consecutive_unhealthy_checks:
                parts.append(f"unhealthy_checks={record.consecutive_unhealthy_checks}")
            if record is not None and record.last_probe_status:
                parts.append(f"probe={record.last_probe_status}")
            lines.append(f"- {proc.name}: " + " ".join(parts))
    return "\n".join(lines).strip() + "\n"
