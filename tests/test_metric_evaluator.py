from __future__ import annotations

import asyncio

import pytest

from conftest import FakeProcessManager, make_snapshot
from process_checks.evaluator import (
    MetricHealthEvaluator,
    check_memory_leak,
    check_restart_frequency,
    check_stuck,
)
from process_checks.history import HealthHistoryStore
from process_checks.pm2_client import ProviderError


NOW = 1_000_000.0


def _evaluator(manager: FakeProcessManager, **kwargs) -> MetricHealthEvaluator:
    params = {
        "stuck_threshold_seconds": 300.0,
        "cpu_stuck_threshold_percent": 0.1,
        "memory_leak_threshold_mb": 500.0,
        "ping_timeout_seconds": 5.0,
    }
    params.update(kwargs)
    return MetricHealthEvaluator(manager, **params)


@pytest.mark.parametrize("n_samples", [0, 1, 2, 3, 4])
def test_stuck_check_abstains_below_five_samples(n_samples: int) -> None:
    store = HealthHistoryStore()
    for i in range(n_samples):
        store.record_sample("w", cpu=0.0, memory=1.0, restart_count=0, now=float(i))
    record = store.get("w", now=NOW)
    reason = check_stuck(record, 10_000.0, stuck_threshold_seconds=300.0, cpu_stuck_threshold_percent=0.1)
    assert reason is None


def test_stuck_check_requires_minimum_uptime() -> None:
    store = HealthHistoryStore()
    for i in range(5):
        store.record_sample("w", cpu=0.0, memory=1.0, restart_count=0, now=float(i))
    record = store.get("w", now=NOW)
    assert check_stuck(record, 299.0, stuck_threshold_seconds=300.0, cpu_stuck_threshold_percent=0.1) is None
    assert check_stuck(record, None, stuck_threshold_seconds=300.0, cpu_stuck_threshold_percent=0.1) is None
    assert check_stuck(record, 300.0, stuck_threshold_seconds=300.0, cpu_stuck_threshold_percent=0.1)


def test_stuck_check_uses_mean_of_last_five() -> None:
    store = HealthHistoryStore()
    for i, cpu in enumerate([50.0, 0.0, 0.0, 0.0, 0.0, 0.0]):
        store.record_sample("w", cpu=cpu, memory=1.0, restart_count=0, now=float(i))
    record = store.get("w", now=NOW)
    # The 50% sample has been pushed out of the 5-sample window.
    assert check_stuck(record, 1000.0, stuck_threshold_seconds=300.0, cpu_stuck_threshold_percent=0.1)

    store.record_sample("w", cpu=1.0, memory=1.0, restart_count=0, now=7.0)
    assert check_stuck(record, 1000.0, stuck_threshold_seconds=300.0, cpu_stuck_threshold_percent=0.1) is None


def test_memory_leak_scenario_flags_steady_growth() -> None:
    store = HealthHistoryStore()
    for i, mb in enumerate([100, 200, 300, 400, 500]):
        store.record_sample("api", cpu=5.0, memory=mb * 1024 * 1024, restart_count=0, now=float(i))
    record = store.get("api", now=NOW)
    reason = check_memory_leak(record, 500.0, leak_threshold_mb=450.0)
    assert reason is not None
    assert "potential memory leak" in reason
    assert "4/4" in reason


def test_memory_leak_needs_three_of_four_increases() -> None:
    store = HealthHistoryStore()
    for i, mb in enumerate([600, 700, 650, 800, 600]):
        store.record_sample("api", cpu=5.0, memory=float(mb), restart_count=0, now=float(i))
    record = store.get("api", now=NOW)
    assert check_memory_leak(record, 600.0, leak_threshold_mb=450.0) is None


def test_memory_leak_skipped_below_threshold_and_short_history() -> None:
    store = HealthHistoryStore()
    for i, mb in enumerate([100, 200, 300, 400]):
        store.record_sample("api", cpu=5.0, memory=float(mb), restart_count=0, now=float(i))
    record = store.get("api", now=NOW)
    assert check_memory_leak(record, 900.0, leak_threshold_mb=450.0) is None
    store.record_sample("api", cpu=5.0, memory=500.0, restart_count=0, now=5.0)
    assert check_memory_leak(record, 400.0, leak_threshold_mb=450.0) is None


def test_restart_frequency_baseline_moves_even_when_not_flagged() -> None:
    store = HealthHistoryStore()
    record = store.record_sample("w", cpu=1.0, memory=1.0, restart_count=10, now=0.0)

    assert check_restart_frequency(record, 12, max_delta=3) is None
    assert record.last_restart_count_seen == 12

    # Another +3 spread over a second check is not flagged either.
    assert check_restart_frequency(record, 15, max_delta=3) is None
    assert record.last_restart_count_seen == 15

    reason = check_restart_frequency(record, 20, max_delta=3)
    assert reason is not None and "frequent restarts" in reason
    assert record.last_restart_count_seen == 20

    assert check_restart_frequency(record, 20, max_delta=3) is None


@pytest.mark.asyncio
async def test_worker_with_flat_cpu_is_flagged_stuck_on_fifth_sample(manager: FakeProcessManager) -> None:
    evaluator = _evaluator(manager)
    store = HealthHistoryStore()
    snap = make_snapshot("worker", cpu=0.0, started_at=NOW - 600.0)

    verdicts = [await evaluator.evaluate(snap, store, NOW + i * 60.0) for i in range(5)]

    assert all(v.healthy for v in verdicts[:4])
    assert verdicts[4].healthy is False
    assert any("stuck" in r for r in verdicts[4].reasons)
    assert len(store.get("worker", now=NOW).cpu_samples) == 5


@pytest.mark.asyncio
async def test_ping_failure_marks_unresponsive(manager: FakeProcessManager) -> None:
    manager.ping_errors["api"] = ProviderError("no live pid for api")
    evaluator = _evaluator(manager)
    verdict = await evaluator.evaluate(make_snapshot("api"), HealthHistoryStore(), NOW)
    assert verdict.healthy is False
    assert len(verdict.reasons) == 1
    assert verdict.reasons[0].startswith("unresponsive")


@pytest.mark.asyncio
async def test_ping_timeout_marks_unresponsive(manager: FakeProcessManager) -> None:
    manager.ping_delay_seconds = 1.0
    evaluator = _evaluator(manager, ping_timeout_seconds=0.05)
    verdict = await asyncio.wait_for(evaluator.evaluate(make_snapshot("api"), HealthHistoryStore(), NOW), 5.0)
    assert verdict.healthy is False
    assert "unresponsive" in verdict.reasons[0]


@pytest.mark.asyncio
async def test_all_reasons_are_collected(manager: FakeProcessManager) -> None:
    manager.ping_errors["api"] = ProviderError("boom")
    evaluator = _evaluator(manager, memory_leak_threshold_mb=450.0)
    store = HealthHistoryStore()

    verdict = None
    for i, mb in enumerate([100, 200, 300, 400, 500]):
        snap = make_snapshot("api", cpu=0.0, memory_mb=mb, restarts=i * 5, started_at=NOW - 3600.0)
        verdict = await evaluator.evaluate(snap, store, NOW + i)

    assert verdict is not None
    joined = " | ".join(verdict.reasons)
    assert "stuck" in joined
    assert "potential memory leak" in joined
    assert "frequent restarts" in joined
    assert "unresponsive" in joined
