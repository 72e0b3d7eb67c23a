from __future__ import annotations

import asyncio

import pytest

from process_checks.models import ProcessSnapshot, ProcessStatus
from process_checks.pm2_client import ProviderError


def make_snapshot(
    name: str,
    *,
    status: ProcessStatus = ProcessStatus.ONLINE,
    cpu: float = 5.0,
    memory_mb: float = 50.0,
    restarts: int = 0,
    started_at: float | None = 0.0,
    pid: int | None = 1234,
) -> ProcessSnapshot:
    return ProcessSnapshot(
        name=name,
        pid=pid,
        status=status,
        cpu_percent=cpu,
        memory_bytes=int(memory_mb * 1024 * 1024),
        restart_count=restarts,
        started_at=started_at,
    )


class FakeProcessManager:
    def __init__(self) -> None:
        self.processes: list[ProcessSnapshot] = []
        self.calls: list[tuple[str, str]] = []
        self.list_calls = 0
        self.list_error: Exception | None = None
        self.list_gate: asyncio.Event | None = None
        self.restart_error: Exception | None = None
        self.ping_errors: dict[str, Exception] = {}
        self.ping_delay_seconds = 0.0

    async def list(self) -> list[ProcessSnapshot]:
        self.list_calls += 1
        if self.list_gate is not None:
            await self.list_gate.wait()
        if self.list_error is not None:
            raise self.list_error
        return list(self.processes)

    async def restart(self, name: str) -> None:
        self.calls.append(("restart", name))
        if self.restart_error is not None:
            raise self.restart_error

    async def stop(self, name: str) -> None:
        self.calls.append(("stop", name))

    async def start(self, name: str) -> None:
        self.calls.append(("start", name))

    async def reload(self, name: str) -> None:
        self.calls.append(("reload", name))

    async def ping(self, name: str) -> None:
        if self.ping_delay_seconds:
            await asyncio.sleep(self.ping_delay_seconds)
        err = self.ping_errors.get(name)
        if err is not None:
            raise err

    async def logs(self, name: str, lines: int = 20, error_only: bool = False) -> list[str]:
        return []


class RecordingAlertSink:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send(self, text: str) -> bool:
        self.messages.append(text)
        return True


@pytest.fixture
def manager() -> FakeProcessManager:
    return FakeProcessManager()


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def provider_error() -> ProviderError:
    return ProviderError("pm2 daemon unreachable", command="pm2 restart")
