from __future__ import annotations

import asyncio

import pytest

from conftest import FakeProcessManager, RecordingAlertSink, make_snapshot
from process_checks.evaluator import HealthEvaluator, MetricHealthEvaluator
from process_checks.history import HealthHistoryStore, RestartAttemptCounter
from process_checks.models import HealthVerdict, ProcessSnapshot, ProcessStatus
from process_checks.pm2_client import ProviderError
from process_checks.remediation import RemediationController, SelfIdentity
from process_checks.scheduler import MonitorScheduler


class _Clock:
    def __init__(self, start: float) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class _ExplodingEvaluator(HealthEvaluator):
    mode = "test"

    def __init__(self, explode_on: str) -> None:
        self.explode_on = explode_on
        self.seen: list[str] = []

    async def evaluate(self, snapshot: ProcessSnapshot, store: HealthHistoryStore, now: float) -> HealthVerdict:
        self.seen.append(snapshot.name)
        if snapshot.name == self.explode_on:
            raise RuntimeError("probe transport failed")
        self._record_sample(snapshot, store, now)
        return HealthVerdict.from_reasons(snapshot.name, [])


def _scheduler(
    manager: FakeProcessManager,
    alerts: RecordingAlertSink,
    *,
    evaluator: HealthEvaluator | None = None,
    clock: _Clock | None = None,
    restart_threshold: int = 5,
) -> MonitorScheduler:
    store = HealthHistoryStore()
    controller = RemediationController(
        manager,
        alerts,
        store,
        RestartAttemptCounter(),
        identity=SelfIdentity(name="pm2-health-monitor"),
        restart_threshold=restart_threshold,
    )
    return MonitorScheduler(
        manager,
        evaluator or MetricHealthEvaluator(manager),
        controller,
        alerts,
        store=store,
        cpu_threshold_percent=80.0,
        memory_threshold_mb=80.0,
        clock=clock or _Clock(1_000_000.0),
    )


@pytest.mark.asyncio
async def test_basic_pass_alerts_on_static_thresholds_only(
    manager: FakeProcessManager, alerts: RecordingAlertSink
) -> None:
    manager.processes = [
        make_snapshot("hot", cpu=95.0, memory_mb=20.0),
        make_snapshot("fat", cpu=1.0, memory_mb=120.0),
        make_snapshot("calm", cpu=10.0, memory_mb=40.0),
        make_snapshot("down", status=ProcessStatus.STOPPED, cpu=99.0, memory_mb=999.0),
    ]
    scheduler = _scheduler(manager, alerts)

    report = await scheduler.run_basic_pass()

    assert report.evaluated == ["hot", "fat", "calm"]
    assert report.alerts_sent == 2
    assert any("High CPU" in m and "hot" in m for m in alerts.messages)
    assert any("High Memory" in m and "fat" in m and "120MB" in m for m in alerts.messages)
    assert manager.calls == []
    assert len(scheduler.store) == 0


@pytest.mark.asyncio
async def test_provider_error_does_not_escape_passes(manager: FakeProcessManager, alerts: RecordingAlertSink) -> None:
    manager.list_error = ProviderError("timed out after 30s", command="pm2 jlist")
    scheduler = _scheduler(manager, alerts)

    basic = await scheduler.run_basic_pass()
    deep = await scheduler.run_health_pass()

    assert basic.fetch_error and deep.fetch_error
    assert scheduler.health_pass_in_flight is False
    assert alerts.messages == []


@pytest.mark.asyncio
async def test_overlapping_health_tick_is_dropped(manager: FakeProcessManager, alerts: RecordingAlertSink) -> None:
    manager.processes = [make_snapshot("api"), make_snapshot("worker")]
    manager.list_gate = asyncio.Event()
    scheduler = _scheduler(manager, alerts)

    first = asyncio.create_task(scheduler.run_health_pass())
    await asyncio.sleep(0)
    assert scheduler.health_pass_in_flight is True

    second = await scheduler.run_health_pass()
    assert second.skipped is True
    assert second.evaluated == []
    assert manager.list_calls == 1
    assert len(scheduler.store) == 0

    manager.list_gate.set()
    report = await first
    assert report.skipped is False
    assert report.evaluated == ["api", "worker"]
    assert scheduler.health_pass_in_flight is False

    third = await scheduler.run_health_pass()
    assert third.skipped is False


@pytest.mark.asyncio
async def test_one_process_failure_does_not_abort_pass(
    manager: FakeProcessManager, alerts: RecordingAlertSink
) -> None:
    manager.processes = [make_snapshot("a"), make_snapshot("b"), make_snapshot("c")]
    evaluator = _ExplodingEvaluator(explode_on="b")
    scheduler = _scheduler(manager, alerts, evaluator=evaluator)

    report = await scheduler.run_health_pass()

    assert evaluator.seen == ["a", "b", "c"]
    assert report.evaluated == ["a", "c"]
    assert "b" in report.errors
    assert "b" not in scheduler.store


@pytest.mark.asyncio
async def test_health_pass_only_tracks_online_processes(
    manager: FakeProcessManager, alerts: RecordingAlertSink
) -> None:
    manager.processes = [
        make_snapshot("api"),
        make_snapshot("stopped-one", status=ProcessStatus.STOPPED),
        make_snapshot("broken", status=ProcessStatus.ERRORED),
    ]
    scheduler = _scheduler(manager, alerts)

    report = await scheduler.run_health_pass()

    assert report.evaluated == ["api"]
    assert scheduler.store.names() == ["api"]


@pytest.mark.asyncio
async def test_stuck_worker_is_restarted_by_third_unhealthy_check(
    manager: FakeProcessManager, alerts: RecordingAlertSink
) -> None:
    clock = _Clock(1_000_000.0)
    manager.processes = [make_snapshot("worker", cpu=0.0, started_at=clock.now - 3600.0)]
    scheduler = _scheduler(manager, alerts, clock=clock)

    unhealthy_ticks = 0
    for _ in range(7):
        report = await scheduler.run_health_pass()
        if report.unhealthy:
            unhealthy_ticks += 1
        clock.now += 60.0

    # Ticks 1-4 lack history, ticks 5-7 are stuck; the third of those restarts.
    assert unhealthy_ticks == 3
    assert manager.calls == [("restart", "worker")]
    assert any("stuck" in m for m in alerts.messages)
    assert any("Auto-restarted" in m for m in alerts.messages)


@pytest.mark.asyncio
async def test_start_and_shutdown_register_jobs(manager: FakeProcessManager, alerts: RecordingAlertSink) -> None:
    scheduler = _scheduler(manager, alerts)
    scheduler.start()
    try:
        job_ids = sorted(job.id for job in scheduler._scheduler.get_jobs())  # noqa: SLF001
        assert job_ids == ["basic-threshold-check", "deep-health-check"]
    finally:
        scheduler.shutdown()
    assert scheduler._scheduler is None  # noqa: SLF001
